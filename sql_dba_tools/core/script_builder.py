from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Sequence

SESSION_SETTINGS = ("SET ANSI_NULLS ON", "SET QUOTED_IDENTIFIER ON")

_GO_RE = re.compile(r"^\s*GO\s*;?\s*$", re.IGNORECASE | re.MULTILINE)


def bracket(name: str) -> str:
    return "[" + str(name).replace("]", "]]") + "]"


def qualified_name(schema: Optional[str], name: str) -> str:
    return f"{bracket(schema)}.{bracket(name)}" if schema else bracket(name)


def is_nullable(col: Dict[str, Any]) -> bool:
    nullable = col.get("is_nullable")
    if nullable is None:
        return True
    text = str(nullable).strip().upper()
    return text in ("YES", "Y", "TRUE", "1")


def format_column_type(col: Dict[str, Any]) -> str:
    data_type = (col.get("data_type") or "").lower()
    max_len = col.get("max_length")
    precision = col.get("precision")
    scale = col.get("scale")

    type_str = data_type.upper()

    if data_type in ("varchar", "char", "binary", "varbinary"):
        if max_len == -1:
            type_str += "(MAX)"
        elif max_len and max_len > 0:
            type_str += f"({max_len})"
    elif data_type in ("nvarchar", "nchar"):
        # sys.columns reports bytes; N-types store two per character
        if max_len == -1:
            type_str += "(MAX)"
        elif max_len and max_len > 0:
            type_str += f"({max_len // 2})"
    elif data_type in ("decimal", "numeric") and precision:
        if scale is not None:
            type_str += f"({precision},{scale})"
        else:
            type_str += f"({precision})"
    elif data_type in ("datetime2", "datetimeoffset", "time") and scale is not None:
        type_str += f"({scale})"

    return type_str


def format_column_definition(col: Dict[str, Any]) -> str:
    """Column definition with identity, computed, collation and default properties."""
    col_name = bracket(col.get("name", ""))

    if col.get("is_computed"):
        persisted = " PERSISTED" if col.get("is_persisted") else ""
        return f"{col_name} AS {col.get('computed_definition', '')}{persisted}"

    parts = [col_name, format_column_type(col)]

    if col.get("collation"):
        parts.append(f"COLLATE {col.get('collation')}")

    if col.get("is_sparse"):
        parts.append("SPARSE")

    if col.get("is_identity"):
        seed = col.get("identity_seed", 1)
        incr = col.get("identity_increment", 1)
        parts.append(f"IDENTITY({seed},{incr})")

    if col.get("is_rowguidcol"):
        parts.append("ROWGUIDCOL")

    parts.append("NULL" if is_nullable(col) else "NOT NULL")

    default_val = col.get("default_value")
    if default_val:
        parts.append(f"DEFAULT {default_val}")

    return " ".join(parts)


def create_table_script(
    schema: Optional[str],
    name: str,
    columns: Sequence[Dict[str, Any]],
    primary_key: Optional[Dict[str, Any]] = None,
) -> str:
    """CREATE TABLE statement, with the primary key as a table constraint."""
    if not columns:
        raise ValueError(f"No column metadata available for {qualified_name(schema, name)}")

    col_defs = [f"    {format_column_definition(col)}" for col in columns]
    if primary_key and primary_key.get("columns"):
        col_list = ", ".join(bracket(c) for c in primary_key["columns"])
        clustered = "CLUSTERED" if primary_key.get("is_clustered", True) else "NONCLUSTERED"
        col_defs.append(
            f"    CONSTRAINT {bracket(primary_key.get('name', ''))} PRIMARY KEY {clustered} ({col_list})"
        )

    lines = [f"CREATE TABLE {qualified_name(schema, name)}("]
    lines.append(",\n".join(col_defs))
    lines.append(")")
    return "\n".join(lines)


def module_script(definition: str, uses_ansi_nulls: bool = True, uses_quoted_identifier: bool = True) -> str:
    """Script a view/procedure/function/trigger the way the server scripter does:
    session settings as separate batches ahead of the module body."""
    batches = [
        "SET ANSI_NULLS ON" if uses_ansi_nulls else "SET ANSI_NULLS OFF",
        "SET QUOTED_IDENTIFIER ON" if uses_quoted_identifier else "SET QUOTED_IDENTIFIER OFF",
        definition.replace("\r\n", "\n").strip(),
    ]
    return join_batches(batches)


def split_batches(script: str) -> List[str]:
    """Split on GO separator lines, dropping empty batches."""
    return [b.strip() for b in _GO_RE.split(script.replace("\r\n", "\n")) if b.strip()]


def join_batches(batches: Sequence[str]) -> str:
    return "\nGO\n".join(batches)


def strip_session_settings(script: str) -> str:
    """Remove the ``SET ANSI_NULLS ON`` / ``SET QUOTED_IDENTIFIER ON`` batches."""
    kept = [
        batch for batch in split_batches(script)
        if batch.rstrip(";").strip().upper() not in SESSION_SETTINGS
    ]
    return join_batches(kept)
