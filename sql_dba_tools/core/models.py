"""Object model shared by the dependency walker and the catalog provider."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ObjectKind(Enum):
    """Kinds of SQL Server objects, named as they appear in URN segments."""
    SERVER = "Server"
    DATABASE = "Database"
    SCHEMA = "Schema"
    TABLE = "Table"
    VIEW = "View"
    STORED_PROCEDURE = "StoredProcedure"
    USER_DEFINED_FUNCTION = "UserDefinedFunction"
    TRIGGER = "Trigger"
    SYNONYM = "Synonym"
    SEQUENCE = "Sequence"
    USER_DEFINED_DATA_TYPE = "UserDefinedDataType"
    USER_DEFINED_TABLE_TYPE = "UserDefinedTableType"
    UNKNOWN = "Unknown"

    @classmethod
    def from_urn_type(cls, type_name: str) -> "ObjectKind":
        for kind in cls:
            if kind.value.lower() == (type_name or "").lower():
                return kind
        return cls.UNKNOWN

    @classmethod
    def from_type_code(cls, code: str) -> "ObjectKind":
        """Map a ``sys.objects.type`` code to a kind."""
        return TYPE_CODES.get((code or "").strip().upper(), cls.UNKNOWN)

    @property
    def is_module(self) -> bool:
        return self in MODULE_KINDS


TYPE_CODES: Dict[str, ObjectKind] = {
    "U": ObjectKind.TABLE,
    "V": ObjectKind.VIEW,
    "P": ObjectKind.STORED_PROCEDURE,
    "PC": ObjectKind.STORED_PROCEDURE,
    "FN": ObjectKind.USER_DEFINED_FUNCTION,
    "IF": ObjectKind.USER_DEFINED_FUNCTION,
    "TF": ObjectKind.USER_DEFINED_FUNCTION,
    "FS": ObjectKind.USER_DEFINED_FUNCTION,
    "FT": ObjectKind.USER_DEFINED_FUNCTION,
    "TR": ObjectKind.TRIGGER,
    "TA": ObjectKind.TRIGGER,
    "SN": ObjectKind.SYNONYM,
    "SO": ObjectKind.SEQUENCE,
    "TT": ObjectKind.USER_DEFINED_TABLE_TYPE,
}

MODULE_KINDS = frozenset({
    ObjectKind.VIEW,
    ObjectKind.STORED_PROCEDURE,
    ObjectKind.USER_DEFINED_FUNCTION,
    ObjectKind.TRIGGER,
})


_SEGMENT_RE = re.compile(r"(?P<type>[A-Za-z]+)(?:\[(?P<filter>(?:[^'\]]|'(?:[^']|'')*')*)\])?")
_ATTR_RE = re.compile(r"@(?P<key>\w+)\s*=\s*'(?P<value>(?:[^']|'')*)'")


class Urn:
    """Parsed form of an object URN such as
    ``Server[@Name='SQL1']/Database[@Name='Sales']/Table[@Name='Orders' and @Schema='dbo']``.
    """

    def __init__(self, segments: List[Tuple[str, Dict[str, str]]]) -> None:
        if not segments:
            raise ValueError("A URN needs at least one segment")
        self.segments = [(type_name, dict(attrs)) for type_name, attrs in segments]

    @classmethod
    def parse(cls, text: str) -> "Urn":
        text = (text or "").strip()
        if not text:
            raise ValueError("Empty URN")

        segments: List[Tuple[str, Dict[str, str]]] = []
        pos = 0
        while True:
            match = _SEGMENT_RE.match(text, pos)
            if not match or match.end() == pos:
                raise ValueError(f"Malformed URN at position {pos}: {text}")
            attrs = {
                m.group("key"): m.group("value").replace("''", "'")
                for m in _ATTR_RE.finditer(match.group("filter") or "")
            }
            segments.append((match.group("type"), attrs))
            pos = match.end()
            if pos == len(text):
                break
            if text[pos] != "/":
                raise ValueError(f"Malformed URN at position {pos}: {text}")
            pos += 1
        return cls(segments)

    @staticmethod
    def quote(value: str) -> str:
        return "'" + str(value).replace("'", "''") + "'"

    @classmethod
    def for_object(
        cls,
        server: str,
        database: str,
        kind: ObjectKind,
        name: str,
        schema: Optional[str] = None,
        parent: Optional[Tuple[ObjectKind, str, Optional[str]]] = None,
    ) -> "Urn":
        """Build the URN of a database-scoped object.

        ``parent`` is ``(kind, name, schema)`` for objects nested under another
        object, such as table triggers.
        """
        segments: List[Tuple[str, Dict[str, str]]] = [
            (ObjectKind.SERVER.value, {"Name": server}),
            (ObjectKind.DATABASE.value, {"Name": database}),
        ]
        if parent is not None:
            parent_kind, parent_name, parent_schema = parent
            attrs = {"Name": parent_name}
            if parent_schema:
                attrs["Schema"] = parent_schema
            segments.append((parent_kind.value, attrs))
        attrs = {"Name": name}
        if schema:
            attrs["Schema"] = schema
        segments.append((kind.value, attrs))
        return cls(segments)

    @property
    def type(self) -> str:
        return self.segments[-1][0]

    @property
    def kind(self) -> ObjectKind:
        return ObjectKind.from_urn_type(self.type)

    @property
    def name(self) -> Optional[str]:
        return self.segments[-1][1].get("Name")

    @property
    def schema(self) -> Optional[str]:
        return self.segments[-1][1].get("Schema")

    def _find(self, type_name: str) -> Optional[str]:
        for seg_type, attrs in self.segments:
            if seg_type == type_name:
                return attrs.get("Name")
        return None

    @property
    def server_name(self) -> Optional[str]:
        return self._find(ObjectKind.SERVER.value)

    @property
    def database_name(self) -> Optional[str]:
        return self._find(ObjectKind.DATABASE.value)

    def parent(self) -> Optional["Urn"]:
        if len(self.segments) == 1:
            return None
        return Urn(self.segments[:-1])

    def __str__(self) -> str:
        parts = []
        for type_name, attrs in self.segments:
            if attrs:
                filt = " and ".join(f"@{k}={self.quote(v)}" for k, v in attrs.items())
                parts.append(f"{type_name}[{filt}]")
            else:
                parts.append(type_name)
        return "/".join(parts)

    def __repr__(self) -> str:
        return f"Urn({str(self)!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Urn):
            return self.segments == other.segments
        return NotImplemented

    def __hash__(self) -> int:
        return hash(str(self))


@dataclass(eq=False)
class DatabaseObject:
    """A server, database or schema-scoped object with its parent chain."""
    urn: Optional[str]
    kind: ObjectKind
    name: str
    schema: Optional[str] = None
    parent: Optional["DatabaseObject"] = None
    owner: Optional[str] = None
    is_schema_bound: bool = False
    is_system: bool = False
    properties: Dict[str, Any] = field(default_factory=dict)

    @property
    def full_name(self) -> str:
        return f"{self.schema}.{self.name}" if self.schema else self.name

    def server(self) -> Optional["DatabaseObject"]:
        """Walk parent references up to the Server object."""
        current: Optional[DatabaseObject] = self
        seen = set()
        while current is not None and id(current) not in seen:
            if current.kind is ObjectKind.SERVER:
                return current
            seen.add(id(current))
            current = current.parent
        return None

    def database(self) -> Optional["DatabaseObject"]:
        current = self
        while current is not None:
            if current.kind is ObjectKind.DATABASE:
                return current
            current = current.parent
        return None

    @classmethod
    def from_urn(cls, urn: str, **props: Any) -> "DatabaseObject":
        """Build an object (and its Server/Database ancestors) from a URN.

        Keyword arguments are applied to the leaf object only.
        """
        parsed = Urn.parse(urn)
        parent: Optional[DatabaseObject] = None
        for i in range(len(parsed.segments)):
            partial = Urn(parsed.segments[: i + 1])
            parent = cls(
                urn=str(partial),
                kind=partial.kind,
                name=partial.name or "",
                schema=partial.schema,
                parent=parent,
            )
        for key, value in props.items():
            setattr(parent, key, value)
        return parent


@dataclass(frozen=True)
class InstanceIdentity:
    computer_name: str
    instance_name: str
    sql_instance: str

    @classmethod
    def from_server_name(cls, server_name: str) -> "InstanceIdentity":
        """Split ``HOST\\INSTANCE``, ``HOST,port`` or ``tcp:HOST`` into its parts."""
        name = (server_name or "").strip()
        if name.lower().startswith(("tcp:", "np:")):
            name = name.split(":", 1)[1]
        host = name.split(",", 1)[0]
        if "\\" in host:
            computer, instance = host.split("\\", 1)
        else:
            computer, instance = host, "MSSQLSERVER"
        return cls(computer_name=computer, instance_name=instance, sql_instance=name)


@dataclass(eq=False)
class DependencyNode:
    """One node of a discovered dependency tree."""
    identity: str
    object_type: ObjectKind = ObjectKind.UNKNOWN
    tier: int = 0
    children: List["DependencyNode"] = field(default_factory=list)
    next_sibling: Optional["DependencyNode"] = None
    is_system: bool = False

    @property
    def first_child(self) -> Optional["DependencyNode"]:
        return self.children[0] if self.children else None

    @property
    def has_child_nodes(self) -> bool:
        return bool(self.children)

    def add_child(self, child: "DependencyNode") -> "DependencyNode":
        if self.children:
            self.children[-1].next_sibling = child
        child.next_sibling = None
        self.children.append(child)
        return child

    def set_children(self, children: List["DependencyNode"]) -> None:
        """Replace the children and rebuild the sibling chain."""
        self.children = []
        for child in children:
            self.add_child(child)


@dataclass(frozen=True, eq=False)
class FlattenedEntry:
    node: DependencyNode
    tier: int
    parent: Optional[DependencyNode] = None


@dataclass(frozen=True)
class ResolvedDependency:
    computer_name: str
    instance_name: str
    sql_instance: str
    dependent: str
    object_type: str
    owner: Optional[str]
    is_schema_bound: bool
    parent: Optional[str]
    parent_type: Optional[str]
    tier: int
    script: Optional[str]
    original_resource: Optional[DatabaseObject]
    urn: str
    error: Optional[Exception] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ComputerName": self.computer_name,
            "InstanceName": self.instance_name,
            "SqlInstance": self.sql_instance,
            "Dependent": self.dependent,
            "Type": self.object_type,
            "Owner": self.owner,
            "IsSchemaBound": self.is_schema_bound,
            "Parent": self.parent,
            "ParentType": self.parent_type,
            "Tier": self.tier,
            "Script": self.script,
            "OriginalResource": self.original_resource.full_name if self.original_resource else None,
            "Urn": self.urn,
            "Error": str(self.error) if self.error else None,
        }
