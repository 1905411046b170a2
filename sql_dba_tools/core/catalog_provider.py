"""Dependency discovery, object lookup and scripting backed by the SQL Server catalog views."""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence, Set, Tuple

from sql_dba_tools.core import script_builder
from sql_dba_tools.core.errors import ScriptGenerationError
from sql_dba_tools.core.models import DatabaseObject, DependencyNode, ObjectKind, Urn
from sql_dba_tools.utils.logger import get_logger

if TYPE_CHECKING:
    from sql_dba_tools.core.database import DatabaseConnection

logger = get_logger(__name__)

SYSTEM_SCHEMAS = {"sys", "information_schema"}

IDENTITY_QUERY = "SELECT CAST(@@SERVERNAME AS NVARCHAR(128)) AS server_name, DB_NAME() AS database_name"

OBJECTS_QUERY = (
    "SELECT o.object_id, s.name AS schema_name, o.name, o.type, o.parent_object_id, o.is_ms_shipped, "
    "USER_NAME(COALESCE(o.principal_id, s.principal_id)) AS owner, "
    "CAST(ISNULL(OBJECTPROPERTY(o.object_id, 'IsSchemaBound'), 0) AS BIT) AS is_schema_bound "
    "FROM sys.objects o "
    "JOIN sys.schemas s ON o.schema_id = s.schema_id "
    "WHERE o.type IN ('U','V','P','PC','FN','IF','TF','FS','FT','TR','TA','SN','SO')"
)

# (referencing_id, referenced_id): the first object needs the second one
EDGES_QUERY = (
    "SELECT d.referencing_id, d.referenced_id "
    "FROM sys.sql_expression_dependencies d "
    "WHERE d.referenced_id IS NOT NULL AND d.referencing_class = 1 AND d.referenced_class = 1 "
    "AND d.referencing_id <> d.referenced_id "
    "UNION "
    "SELECT fk.parent_object_id, fk.referenced_object_id "
    "FROM sys.foreign_keys fk "
    "WHERE fk.parent_object_id <> fk.referenced_object_id "
    "UNION "
    "SELECT tr.object_id, tr.parent_id "
    "FROM sys.triggers tr "
    "WHERE tr.parent_class = 1"
)

MODULE_QUERY = (
    "SELECT m.definition, m.uses_ansi_nulls, m.uses_quoted_identifier "
    "FROM sys.sql_modules m WHERE m.object_id = ?"
)

COLUMNS_QUERY = (
    "SELECT c.name AS column_name, ty.name AS data_type, c.max_length, c.precision, c.scale, "
    "c.is_nullable, c.is_identity, c.is_computed, c.is_sparse, c.is_rowguidcol, "
    "CAST(dc.definition AS NVARCHAR(MAX)) AS default_value, "
    "CAST(cc.definition AS NVARCHAR(MAX)) AS computed_definition, "
    "CAST(cc.is_persisted AS BIT) AS is_persisted, "
    "CAST(c.collation_name AS NVARCHAR(128)) AS collation_name, "
    "CAST(ic.seed_value AS BIGINT) AS identity_seed, "
    "CAST(ic.increment_value AS BIGINT) AS identity_increment "
    "FROM sys.columns c "
    "JOIN sys.types ty ON c.user_type_id = ty.user_type_id "
    "LEFT JOIN sys.default_constraints dc ON c.object_id = dc.parent_object_id AND c.column_id = dc.parent_column_id "
    "LEFT JOIN sys.computed_columns cc ON c.object_id = cc.object_id AND c.column_id = cc.column_id "
    "LEFT JOIN sys.identity_columns ic ON c.object_id = ic.object_id AND c.column_id = ic.column_id "
    "WHERE c.object_id = ? "
    "ORDER BY c.column_id"
)

PRIMARY_KEY_QUERY = (
    "SELECT kc.name AS pk_name, c.name AS column_name, i.type_desc "
    "FROM sys.key_constraints kc "
    "JOIN sys.indexes i ON kc.parent_object_id = i.object_id AND kc.unique_index_id = i.index_id "
    "JOIN sys.index_columns ic ON i.object_id = ic.object_id AND i.index_id = ic.index_id "
    "JOIN sys.columns c ON ic.object_id = c.object_id AND ic.column_id = c.column_id "
    "WHERE kc.type = 'PK' AND kc.parent_object_id = ? "
    "ORDER BY ic.key_ordinal"
)

SYNONYM_QUERY = "SELECT base_object_name FROM sys.synonyms WHERE object_id = ?"

SEQUENCE_QUERY = (
    "SELECT TYPE_NAME(s.user_type_id) AS type_name, "
    "CAST(s.start_value AS NVARCHAR(64)), CAST(s.increment AS NVARCHAR(64)), "
    "CAST(s.minimum_value AS NVARCHAR(64)), CAST(s.maximum_value AS NVARCHAR(64)), s.is_cycling "
    "FROM sys.sequences s WHERE s.object_id = ?"
)


@dataclass(frozen=True)
class CatalogEntry:
    object_id: int
    schema: str
    name: str
    kind: ObjectKind
    type_code: str
    parent_id: int
    is_system: bool
    owner: Optional[str]
    is_schema_bound: bool
    urn: str


class Catalog:
    """Objects and dependency edges of one database."""

    def __init__(self, server_name: str, database_name: str) -> None:
        self.server_name = server_name
        self.database_name = database_name
        self.objects: Dict[int, CatalogEntry] = {}
        self.references: Dict[int, Set[int]] = {}
        self.referenced_by: Dict[int, Set[int]] = {}
        self._by_key: Dict[Tuple[ObjectKind, str, str], int] = {}

    def load(self, object_rows: Sequence[tuple], edge_rows: Sequence[tuple]) -> "Catalog":
        raw: Dict[int, tuple] = {int(row[0]): row for row in object_rows}
        for object_id, row in raw.items():
            _oid, schema, name, type_code, parent_id, is_ms_shipped, owner, schema_bound = row
            kind = ObjectKind.from_type_code(type_code)
            parent = None
            if kind is ObjectKind.TRIGGER and parent_id and int(parent_id) in raw:
                parent_row = raw[int(parent_id)]
                parent = (ObjectKind.from_type_code(parent_row[3]), parent_row[2], parent_row[1])
            urn = Urn.for_object(
                self.server_name,
                self.database_name,
                kind,
                name,
                schema=None if parent else schema,
                parent=parent,
            )
            entry = CatalogEntry(
                object_id=object_id,
                schema=schema,
                name=name,
                kind=kind,
                type_code=(type_code or "").strip(),
                parent_id=int(parent_id or 0),
                is_system=bool(is_ms_shipped) or (schema or "").lower() in SYSTEM_SCHEMAS,
                owner=owner,
                is_schema_bound=bool(schema_bound),
                urn=str(urn),
            )
            self.objects[object_id] = entry
            self._by_key[(kind, (schema or "").lower(), name.lower())] = object_id

        for referencing_id, referenced_id in edge_rows:
            referencing_id, referenced_id = int(referencing_id), int(referenced_id)
            if referencing_id not in self.objects or referenced_id not in self.objects:
                continue
            self.references.setdefault(referencing_id, set()).add(referenced_id)
            self.referenced_by.setdefault(referenced_id, set()).add(referencing_id)
        return self

    def sort_key(self, object_id: int) -> Tuple[str, str]:
        entry = self.objects[object_id]
        return (entry.schema.lower(), entry.name.lower())

    def find_by_urn(self, urn: Urn) -> CatalogEntry:
        schema = urn.schema
        if schema is None and urn.kind is ObjectKind.TRIGGER:
            parent = urn.parent()
            schema = parent.schema if parent is not None else None
        object_id = self._by_key.get((urn.kind, (schema or "").lower(), (urn.name or "").lower()))
        if object_id is None:
            raise LookupError(f"Object not found in {self.database_name}: {urn}")
        return self.objects[object_id]

    def find_by_name(self, schema: str, name: str) -> CatalogEntry:
        for (_kind, key_schema, key_name), object_id in self._by_key.items():
            if key_schema == schema.lower() and key_name == name.lower():
                return self.objects[object_id]
        raise LookupError(f"Object not found in {self.database_name}: {schema}.{name}")


class CatalogDependencyProvider:
    """Dependency provider reading sys.objects, sys.sql_expression_dependencies,
    sys.foreign_keys and sys.triggers through a ``DatabaseConnection``."""

    def __init__(self, connection: "DatabaseConnection") -> None:
        self.connection = connection
        self._catalogs: Dict[str, Catalog] = {}
        self._server_name: Optional[str] = None

    def _connection_for(self, database: Optional[str]) -> "DatabaseConnection":
        if not database or database.lower() == (self.connection.database or "").lower():
            return self.connection
        return self.connection.for_database(database)

    @property
    def server_name(self) -> str:
        if self._server_name is None:
            rows = self.connection.execute_query(IDENTITY_QUERY)
            name = rows[0][0] if rows and rows[0][0] else None
            self._server_name = name or self.connection.server
        return self._server_name

    def refresh(self) -> None:
        """Forget cached catalogs so the next call reloads them."""
        self._catalogs.clear()

    def catalog(self, database: Optional[str] = None) -> Catalog:
        database = database or self.connection.database
        key = database.lower()
        if key not in self._catalogs:
            conn = self._connection_for(database)
            logger.info(f"Loading object catalog for {self.server_name}/{database}")
            catalog = Catalog(self.server_name, database).load(
                conn.execute_query(OBJECTS_QUERY),
                conn.execute_query(EDGES_QUERY),
            )
            logger.debug(f"{len(catalog.objects)} objects, "
                         f"{sum(len(v) for v in catalog.references.values())} dependency edges")
            self._catalogs[key] = catalog
        return self._catalogs[key]

    def _entry(self, urn: str) -> Tuple[Catalog, CatalogEntry]:
        parsed = Urn.parse(urn)
        catalog = self.catalog(parsed.database_name)
        return catalog, catalog.find_by_urn(parsed)

    def discover_dependencies(self, urns: Sequence[str], reverse: bool = False) -> DependencyNode:
        """Build the dependency tree of each URN; extra roots become tier-0 siblings.

        In the default mode the children of an object are the objects that
        reference it. With ``reverse`` they are the objects it references.
        """
        if not urns:
            raise ValueError("At least one URN is required")

        roots: List[DependencyNode] = []
        for urn in urns:
            catalog, entry = self._entry(urn)
            roots.append(self._build_tree(catalog, entry.object_id, reverse))

        for current, following in zip(roots, roots[1:]):
            current.next_sibling = following
        return roots[0]

    def _build_tree(self, catalog: Catalog, root_id: int, reverse: bool) -> DependencyNode:
        edges = catalog.references if reverse else catalog.referenced_by

        def make(object_id: int) -> DependencyNode:
            entry = catalog.objects[object_id]
            return DependencyNode(identity=entry.urn, object_type=entry.kind, is_system=entry.is_system)

        root = make(root_id)
        stack: List[Tuple[DependencyNode, int, Tuple[int, ...]]] = [(root, root_id, ())]
        while stack:
            node, object_id, path = stack.pop()
            # A repeated object stays in the tree as a leaf; flatten() reports the cycle
            if object_id in path:
                continue
            child_path = path + (object_id,)
            for child_id in sorted(edges.get(object_id, ()), key=catalog.sort_key):
                child = node.add_child(make(child_id))
                stack.append((child, child_id, child_path))
        return root

    def get_object_by_identity(self, urn: str) -> DatabaseObject:
        _catalog, entry = self._entry(urn)
        return self._to_object(entry)

    def get_object(self, schema: str, name: str, database: Optional[str] = None) -> DatabaseObject:
        """Resolve a root object by schema and name."""
        return self._to_object(self.catalog(database).find_by_name(schema, name))

    @staticmethod
    def _to_object(entry: CatalogEntry) -> DatabaseObject:
        obj = DatabaseObject.from_urn(
            entry.urn,
            owner=entry.owner,
            is_schema_bound=entry.is_schema_bound,
            is_system=entry.is_system,
        )
        obj.schema = entry.schema
        obj.properties.update({"object_id": entry.object_id, "type_code": entry.type_code})
        return obj

    def generate_script(self, obj: DatabaseObject) -> str:
        if not obj.urn:
            raise ScriptGenerationError("Object has no URN", None)
        try:
            catalog, entry = self._entry(obj.urn)
            conn = self._connection_for(catalog.database_name)
            if entry.kind.is_module:
                return self._script_module(conn, entry)
            if entry.kind is ObjectKind.TABLE:
                return self._script_table(conn, entry)
            if entry.kind is ObjectKind.SYNONYM:
                return self._script_synonym(conn, entry)
            if entry.kind is ObjectKind.SEQUENCE:
                return self._script_sequence(conn, entry)
        except ScriptGenerationError:
            raise
        except Exception as exc:
            raise ScriptGenerationError(f"Failed to script {obj.urn}: {exc}", obj.urn) from exc
        raise ScriptGenerationError(f"Scripting {entry.kind.value} objects is not supported", obj.urn)

    @staticmethod
    def _script_module(conn: "DatabaseConnection", entry: CatalogEntry) -> str:
        rows = conn.execute_query(MODULE_QUERY, [entry.object_id])
        if not rows or rows[0][0] is None:
            raise ScriptGenerationError(
                f"No definition available for {entry.schema}.{entry.name} (encrypted?)", entry.urn
            )
        definition, ansi_nulls, quoted_identifier = rows[0]
        return script_builder.module_script(definition, bool(ansi_nulls), bool(quoted_identifier))

    @staticmethod
    def _script_table(conn: "DatabaseConnection", entry: CatalogEntry) -> str:
        columns = []
        for row in conn.execute_query(COLUMNS_QUERY, [entry.object_id]):
            (col_name, dtype, max_len, prec, scale, is_nullable, is_identity, is_computed,
             is_sparse, is_rowguidcol, default_val, computed_def, is_persisted, collation,
             identity_seed, identity_increment) = row
            col_info = {
                "name": col_name,
                "data_type": dtype,
                "max_length": max_len,
                "precision": prec,
                "scale": scale,
                "is_nullable": bool(is_nullable),
            }
            if default_val:
                col_info["default_value"] = default_val
            if collation:
                col_info["collation"] = collation
            if is_identity:
                col_info.update(is_identity=True, identity_seed=identity_seed, identity_increment=identity_increment)
            if is_computed:
                col_info.update(is_computed=True, computed_definition=computed_def, is_persisted=bool(is_persisted))
            if is_sparse:
                col_info["is_sparse"] = True
            if is_rowguidcol:
                col_info["is_rowguidcol"] = True
            columns.append(col_info)

        primary_key = None
        for pk_name, col_name, type_desc in conn.execute_query(PRIMARY_KEY_QUERY, [entry.object_id]):
            if primary_key is None:
                primary_key = {
                    "name": pk_name,
                    "columns": [],
                    "is_clustered": (type_desc or "").upper() == "CLUSTERED",
                }
            primary_key["columns"].append(col_name)

        try:
            return script_builder.create_table_script(entry.schema, entry.name, columns, primary_key)
        except ValueError as exc:
            raise ScriptGenerationError(str(exc), entry.urn) from exc

    @staticmethod
    def _script_synonym(conn: "DatabaseConnection", entry: CatalogEntry) -> str:
        rows = conn.execute_query(SYNONYM_QUERY, [entry.object_id])
        if not rows:
            raise ScriptGenerationError(f"Synonym {entry.schema}.{entry.name} not found", entry.urn)
        return f"CREATE SYNONYM {script_builder.qualified_name(entry.schema, entry.name)} FOR {rows[0][0]}"

    @staticmethod
    def _script_sequence(conn: "DatabaseConnection", entry: CatalogEntry) -> str:
        rows = conn.execute_query(SEQUENCE_QUERY, [entry.object_id])
        if not rows:
            raise ScriptGenerationError(f"Sequence {entry.schema}.{entry.name} not found", entry.urn)
        type_name, start, increment, minimum, maximum, is_cycling = rows[0]
        return "\n".join([
            f"CREATE SEQUENCE {script_builder.qualified_name(entry.schema, entry.name)}",
            f"    AS [{type_name}]",
            f"    START WITH {start}",
            f"    INCREMENT BY {increment}",
            f"    MINVALUE {minimum}",
            f"    MAXVALUE {maximum}",
            "    CYCLE" if is_cycling else "    NO CYCLE",
        ])
