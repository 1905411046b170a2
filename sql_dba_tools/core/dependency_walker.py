"""Resolve the dependents (or prerequisites) of database objects into scripted records."""
from __future__ import annotations

import re
import warnings
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from sql_dba_tools.core.dependency_tree import (
    DependencyProvider,
    discover_dependencies,
    flatten,
    select_precedence,
)
from sql_dba_tools.core.errors import EmptyResultNotice, InvalidInputError, ScriptGenerationError
from sql_dba_tools.core.models import (
    DatabaseObject,
    FlattenedEntry,
    InstanceIdentity,
    ResolvedDependency,
    Urn,
)
from sql_dba_tools.core.script_builder import strip_session_settings
from sql_dba_tools.utils.logger import get_logger

logger = get_logger(__name__)

_SESSION_OFF_RE = re.compile(r"^\s*SET\s+(ANSI_NULLS|QUOTED_IDENTIFIER)\s+OFF\b", re.IGNORECASE | re.MULTILINE)
_SESSION_RESET = ["SET ANSI_NULLS ON;", "SET QUOTED_IDENTIFIER ON;", "GO", ""]


def _display_name(identity: str) -> str:
    try:
        return Urn.parse(identity).name or identity
    except ValueError:
        return identity


class DependencyWalker:
    """Walks the dependency tree of root objects and produces ``ResolvedDependency`` records.

    Args:
        provider: Discovery, lookup and scripting collaborator
        allow_system_objects: Keep system-owned objects in the tree
        parents: Resolve what the root depends on instead of what depends on it
        include_self: Emit the root object itself as the tier-0 record
        include_script: Generate a creation script per record
        enable_exception: Raise invalid-input errors instead of collecting them
    """

    def __init__(
        self,
        provider: DependencyProvider,
        allow_system_objects: bool = False,
        parents: bool = False,
        include_self: bool = False,
        include_script: bool = True,
        enable_exception: bool = False,
    ) -> None:
        self.provider = provider
        self.allow_system_objects = allow_system_objects
        self.parents = parents
        self.include_self = include_self
        self.include_script = include_script
        self.enable_exception = enable_exception
        self.failures: List[InvalidInputError] = []
        self.notices: List[str] = []

    def get_dependencies(self, objects: Iterable[DatabaseObject]) -> List[ResolvedDependency]:
        """Resolve each input in turn; results of all inputs are concatenated."""
        results: List[ResolvedDependency] = []
        for obj in objects:
            try:
                results.extend(self.resolve(obj))
            except InvalidInputError as exc:
                logger.error(f"Skipping input: {exc}")
                self.failures.append(exc)
                if self.enable_exception:
                    raise
        return results

    def resolve(self, root: DatabaseObject) -> List[ResolvedDependency]:
        try:
            tree = discover_dependencies(
                self.provider,
                root,
                allow_system_objects=self.allow_system_objects,
                reverse=self.parents,
            )
        except LookupError as exc:
            raise InvalidInputError(str(exc), root) from exc

        entries = flatten(tree, reverse=self.parents)
        if not self.include_self:
            entries = [entry for entry in entries if entry.tier != 0]

        minimum = 2 if self.include_self else 1
        if len(entries) < minimum:
            direction = "parents" if self.parents else "dependents"
            message = f"No {direction} found for {root.full_name}"
            logger.info(message)
            self.notices.append(message)
            warnings.warn(message, EmptyResultNotice, stacklevel=2)
            return []

        return self.resolve_precedence(entries, root)

    def resolve_precedence(
        self, entries: Sequence[FlattenedEntry], root: DatabaseObject
    ) -> List[ResolvedDependency]:
        """Deduplicate, order and script the flattened entries."""
        server = root.server()
        identity = InstanceIdentity.from_server_name(server.name if server else "")

        results: List[ResolvedDependency] = []
        for entry in select_precedence(entries):
            node = entry.node
            obj: Optional[DatabaseObject] = None
            script: Optional[str] = None
            error: Optional[ScriptGenerationError] = None
            try:
                obj = self.provider.get_object_by_identity(node.identity)
                if self.include_script:
                    script = strip_session_settings(self.provider.generate_script(obj))
            except ScriptGenerationError as exc:
                error = exc
            except Exception as exc:
                error = ScriptGenerationError(f"Failed to resolve {node.identity}: {exc}", node.identity)
                error.__cause__ = exc
            if error is not None:
                logger.error(f"Scripting failed for {node.identity}: {error}")

            parent = entry.parent
            results.append(ResolvedDependency(
                computer_name=identity.computer_name,
                instance_name=identity.instance_name,
                sql_instance=identity.sql_instance,
                dependent=obj.name if obj is not None else _display_name(node.identity),
                object_type=node.object_type.value,
                owner=obj.owner if obj is not None else None,
                is_schema_bound=obj.is_schema_bound if obj is not None else False,
                parent=_display_name(parent.identity) if parent is not None else None,
                parent_type=parent.object_type.value if parent is not None else None,
                tier=entry.tier,
                script=script,
                original_resource=root,
                urn=node.identity,
                error=error,
            ))

        logger.info(f"Resolved {len(results)} object(s) for {root.full_name}")
        return results

    @staticmethod
    def build_deployment_script(
        dependencies: Sequence[ResolvedDependency], database: Optional[str] = None
    ) -> str:
        """Concatenate the record scripts, in emission order, into one deployment script."""
        lines: List[str] = [
            "-- ==============================================================================",
            "-- SQL DBA Tools - Dependency Script",
            f"-- Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
            f"-- Objects: {len(dependencies)}",
            "-- ==============================================================================",
            "",
        ]
        if database:
            lines.extend([f"USE [{database.replace(']', ']]')}];", "GO", ""])
        lines.extend(["SET ANSI_NULLS ON;", "SET QUOTED_IDENTIFIER ON;", "GO", ""])

        for dep in dependencies:
            lines.append(f"-- [{dep.object_type}] {dep.dependent} (tier {dep.tier})")
            if dep.error is not None:
                for err_line in str(dep.error).splitlines() or [""]:
                    lines.append(f"-- ERROR: {err_line}")
                lines.append("")
                continue
            if not dep.script:
                lines.extend(["-- no script generated", ""])
                continue
            lines.append(dep.script)
            lines.extend(["GO", ""])
            # OFF settings persist for the session, later objects expect ON
            if _SESSION_OFF_RE.search(dep.script):
                lines.extend(_SESSION_RESET)

        return "\n".join(lines)
