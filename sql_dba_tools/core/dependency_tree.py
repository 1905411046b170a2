"""Dependency tree discovery, flattening and precedence ordering.

The tree comes from a dependency provider (see ``catalog_provider``). It is
walked depth-first into ``FlattenedEntry`` records carrying a signed tier:
positive tiers point away from the root towards objects that depend on it,
negative tiers (parents mode) point towards objects the root depends on.
``select_precedence`` then keeps one entry per object and orders them so that
applying the scripts in sequence never references an object not yet created.
"""
from __future__ import annotations

import warnings
from typing import Iterable, List, Optional, Protocol, Sequence, Tuple

from sql_dba_tools.core.errors import CycleDetectedWarning, InvalidInputError
from sql_dba_tools.core.models import DatabaseObject, DependencyNode, FlattenedEntry
from sql_dba_tools.utils.logger import get_logger

logger = get_logger(__name__)


class DependencyProvider(Protocol):
    """What the walker needs from the metadata/scripting side."""

    def discover_dependencies(self, urns: Sequence[str], reverse: bool = False) -> DependencyNode:
        ...

    def get_object_by_identity(self, urn: str) -> DatabaseObject:
        ...

    def generate_script(self, obj: DatabaseObject) -> str:
        ...


def discover_dependencies(
    provider: DependencyProvider,
    root: DatabaseObject,
    allow_system_objects: bool = False,
    reverse: bool = False,
) -> DependencyNode:
    """Ask the provider for the dependency tree rooted at ``root``.

    ``reverse`` discovers what the root depends on instead of what depends on it.
    """
    if root is None or not getattr(root, "urn", None):
        raise InvalidInputError("Input object has no URN and cannot be resolved", root)
    if root.server() is None:
        raise InvalidInputError(f"No Server ancestor found for {root.urn}", root)

    logger.debug(f"Discovering {'parents' if reverse else 'dependents'} of {root.urn}")
    tree = provider.discover_dependencies([root.urn], reverse=reverse)
    if not allow_system_objects:
        prune_system_objects(tree)
    return tree


def prune_system_objects(root: DependencyNode) -> DependencyNode:
    """Drop system-owned nodes (with their subtrees) below ``root``, in place.

    Tier-0 roots chained through ``next_sibling`` are kept but pruned too.
    """
    stack = []
    top = root
    while top is not None:
        stack.append(top)
        top = top.next_sibling
    while stack:
        node = stack.pop()
        kept = [child for child in node.children if not child.is_system]
        if len(kept) != len(node.children):
            node.set_children(kept)
        stack.extend(kept)
    return root


def count_nodes(root: Optional[DependencyNode]) -> int:
    """Number of nodes reachable through children and sibling links."""
    count = 0
    stack = [root] if root is not None else []
    while stack:
        node = stack.pop()
        count += 1
        if node.next_sibling is not None:
            stack.append(node.next_sibling)
        if node.first_child is not None:
            stack.append(node.first_child)
    return count


def flatten(
    node: Optional[DependencyNode],
    tier: int = 0,
    parent: Optional[DependencyNode] = None,
    reverse: bool = False,
) -> List[FlattenedEntry]:
    """Walk the tree depth-first (pre-order) and record each node with its tier.

    A node whose identity already appears among its ancestors is left out
    together with its subtree; traversal then carries on with its next sibling.
    """
    entries: List[FlattenedEntry] = []
    if node is None:
        return entries

    # (node, depth, parent, identities of the ancestors from the root down)
    stack: List[Tuple[DependencyNode, int, Optional[DependencyNode], Tuple[str, ...]]] = [
        (node, abs(tier), parent, ())
    ]
    while stack:
        current, depth, current_parent, ancestors = stack.pop()

        if current.next_sibling is not None:
            stack.append((current.next_sibling, depth, current_parent, ancestors))

        if depth > 0 and current.identity in ancestors:
            message = f"Circular reference detected: {current.identity} is one of its own ancestors, skipping branch"
            logger.warning(message)
            warnings.warn(message, CycleDetectedWarning, stacklevel=2)
            continue

        signed_tier = -depth if reverse else depth
        current.tier = signed_tier
        entries.append(FlattenedEntry(node=current, tier=signed_tier, parent=current_parent))

        if current.first_child is not None:
            stack.append((current.first_child, depth + 1, current, ancestors + (current.identity,)))

    return entries


def select_precedence(entries: Iterable[FlattenedEntry]) -> List[FlattenedEntry]:
    """Keep one entry per object identity and order the survivors by tier.

    The survivor is the occurrence with the largest tier magnitude, so an
    object reached through several paths is placed after everything it needs.
    Ties keep the earliest traversal occurrence, and the final ascending sort
    by tier is stable with respect to traversal order.
    """
    best: dict = {}
    for position, entry in enumerate(entries):
        key = entry.node.identity
        current = best.get(key)
        if current is None:
            best[key] = (position, entry)
        elif abs(entry.tier) > abs(current[1].tier):
            best[key] = (position, entry)

    survivors = sorted(best.values(), key=lambda item: item[0])
    return [entry for _pos, entry in sorted(survivors, key=lambda item: item[1].tier)]
