import pytest

from sql_dba_tools.core.dependency_tree import (
    count_nodes,
    discover_dependencies,
    flatten,
    prune_system_objects,
    select_precedence,
)
from sql_dba_tools.core.errors import CycleDetectedWarning, InvalidInputError
from sql_dba_tools.core.models import DatabaseObject, DependencyNode, ObjectKind, Urn


def urn(name):
    return str(Urn.for_object("SQL1", "Sales", ObjectKind.VIEW, name, schema="dbo"))


def node(name, *children, is_system=False):
    n = DependencyNode(identity=urn(name), object_type=ObjectKind.VIEW, is_system=is_system)
    for child in children:
        n.add_child(child)
    return n


def names(entries):
    return [Urn.parse(e.node.identity).name for e in entries]


class FakeProvider:
    def __init__(self, tree):
        self.tree = tree
        self.calls = []

    def discover_dependencies(self, urns, reverse=False):
        self.calls.append((list(urns), reverse))
        return self.tree

    def get_object_by_identity(self, urn):
        return DatabaseObject.from_urn(urn)

    def generate_script(self, obj):
        return ""


def test_flatten_diamond_is_preorder_with_depth_tiers():
    tree = node("A", node("B", node("D")), node("C", node("D")))

    entries = flatten(tree)

    assert names(entries) == ["A", "B", "D", "C", "D"]
    assert [e.tier for e in entries] == [0, 1, 2, 1, 2]
    assert Urn.parse(entries[2].parent.identity).name == "B"
    assert Urn.parse(entries[4].parent.identity).name == "C"
    assert entries[0].parent is None


def test_select_precedence_diamond_keeps_single_deepest_entry():
    tree = node("A", node("B", node("D")), node("C", node("D")))

    ordered = select_precedence(flatten(tree))

    assert names(ordered) == ["A", "B", "C", "D"]
    d = ordered[-1]
    assert d.tier == 2
    # tie between the two D entries keeps the first traversal occurrence
    assert Urn.parse(d.parent.identity).name == "B"


def test_cycle_branch_is_excluded_and_siblings_still_visited():
    tree = node("A", node("B", node("A", node("X")), node("E")))

    with pytest.warns(CycleDetectedWarning):
        entries = flatten(tree)

    assert names(entries) == ["A", "B", "E"]


def test_cycle_detection_logs_warning(caplog):
    tree = node("A", node("A"))

    with pytest.warns(CycleDetectedWarning):
        with caplog.at_level("WARNING"):
            entries = flatten(tree)

    assert names(entries) == ["A"]
    assert "Circular reference" in caplog.text


def test_repeated_object_in_separate_branches_is_not_a_cycle(recwarn):
    tree = node("A", node("B", node("D")), node("C", node("D")))

    flatten(tree)

    assert not [w for w in recwarn if issubclass(w.category, CycleDetectedWarning)]


def test_reverse_chain_emits_most_fundamental_first():
    tree = node("A", node("B", node("C")))

    entries = flatten(tree, reverse=True)
    ordered = select_precedence(entries)

    assert [e.tier for e in entries] == [0, -1, -2]
    assert names(ordered) == ["C", "B", "A"]
    assert tree.first_child.first_child.tier == -2


def test_reverse_dedup_keeps_greatest_magnitude():
    # A needs B and C directly; B also needs C
    tree = node("A", node("B", node("C")), node("C"))

    ordered = select_precedence(flatten(tree, reverse=True))

    assert names(ordered) == ["C", "B", "A"]
    assert ordered[0].tier == -2


def test_forward_dedup_places_object_after_its_requirements():
    # E depends on A directly and on B, which depends on A
    tree = node("A", node("B", node("E")), node("E"))

    ordered = select_precedence(flatten(tree))

    assert names(ordered) == ["A", "B", "E"]
    assert [e.tier for e in ordered] == [0, 1, 2]


def test_precedence_is_stable_within_a_tier():
    tree = node("A", node("Z"), node("M"), node("B"))

    ordered = select_precedence(flatten(tree))

    assert names(ordered) == ["A", "Z", "M", "B"]


def test_every_acyclic_node_appears_exactly_once():
    tree = node("R", node("A", node("C"), node("D", node("F"))), node("B", node("D", node("F")), node("E")))

    entries = flatten(tree)
    ordered = select_precedence(entries)

    assert len(entries) == count_nodes(tree)
    assert sorted(names(ordered)) == ["A", "B", "C", "D", "E", "F", "R"]
    tiers = [e.tier for e in ordered]
    assert tiers == sorted(tiers)


def test_flatten_follows_tier_zero_siblings():
    first = node("A", node("B"))
    first.next_sibling = node("X", node("Y"))

    entries = flatten(first)

    assert names(entries) == ["A", "B", "X", "Y"]
    assert [e.tier for e in entries] == [0, 1, 0, 1]


def test_flatten_empty_tree():
    assert flatten(None) == []


def test_prune_system_objects_rebuilds_sibling_links():
    keep_a, keep_b = node("A"), node("B")
    root = node("R", keep_a, node("S", node("T"), is_system=True), keep_b)

    prune_system_objects(root)

    assert names(flatten(root)) == ["R", "A", "B"]
    assert keep_a.next_sibling is keep_b
    assert count_nodes(root) == 3


def test_prune_system_objects_covers_tier_zero_siblings():
    first = node("A", node("B"))
    second = node("X", node("S", is_system=True), node("Y"))
    first.next_sibling = second

    prune_system_objects(first)

    assert names(flatten(first)) == ["A", "B", "X", "Y"]
    assert [Urn.parse(c.identity).name for c in second.children] == ["Y"]


def test_discover_dependencies_prunes_system_objects_unless_allowed():
    tree = node("R", node("S", is_system=True))
    provider = FakeProvider(tree)
    root = DatabaseObject.from_urn(urn("R"))

    discover_dependencies(provider, root, allow_system_objects=True)
    assert count_nodes(tree) == 2

    result = discover_dependencies(provider, root, reverse=True)
    assert count_nodes(result) == 1
    assert provider.calls[-1] == ([root.urn], True)


def test_discover_dependencies_requires_urn():
    obj = DatabaseObject(urn=None, kind=ObjectKind.TABLE, name="T")

    with pytest.raises(InvalidInputError):
        discover_dependencies(FakeProvider(node("T")), obj)


def test_discover_dependencies_requires_server_ancestor():
    obj = DatabaseObject(urn=urn("T"), kind=ObjectKind.VIEW, name="T", schema="dbo")

    with pytest.raises(InvalidInputError) as excinfo:
        discover_dependencies(FakeProvider(node("T")), obj)

    assert excinfo.value.input_object is obj
