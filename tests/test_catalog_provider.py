from __future__ import annotations

import unittest
from unittest.mock import MagicMock

from sql_dba_tools.core.catalog_provider import CatalogDependencyProvider
from sql_dba_tools.core.dependency_walker import DependencyWalker
from sql_dba_tools.core.errors import ScriptGenerationError
from sql_dba_tools.core.models import ObjectKind, Urn

OBJECTS = [
    (1, "dbo", "Orders", "U ", 0, False, "dbo", False),
    (2, "dbo", "vOrders", "V ", 0, False, "dbo", True),
    (3, "dbo", "pReport", "P ", 0, False, "dbo", False),
    (4, "dbo", "trOrders", "TR", 1, False, "dbo", False),
    (5, "dbo", "Customers", "U ", 0, False, "dbo", False),
    (6, "sys", "sysStats", "V ", 0, True, "sys", False),
    (7, "dbo", "OrderSeq", "SO", 0, False, "dbo", False),
    (8, "dbo", "OrdersSyn", "SN", 0, False, "dbo", False),
]

EDGES = [(2, 1), (3, 2), (4, 1), (1, 5), (6, 1)]

MODULES = {
    2: ("CREATE VIEW dbo.vOrders WITH SCHEMABINDING AS SELECT id FROM dbo.Orders", True, True),
    3: ("CREATE PROCEDURE dbo.pReport AS SELECT * FROM dbo.vOrders", True, False),
    4: ("CREATE TRIGGER dbo.trOrders ON dbo.Orders AFTER INSERT AS SET NOCOUNT ON", True, True),
    6: (None, True, True),
}

COLUMNS = [
    ("id", "int", 4, 10, 0, False, True, False, False, False, None, None, None, None, 1, 1),
    ("customer_id", "int", 4, 10, 0, False, False, False, False, False, None, None, None, None, None, None),
    ("note", "nvarchar", 200, 0, 0, True, False, False, False, False, "(N'')", None, None,
     "SQL_Latin1_General_CP1_CI_AS", None, None),
]


def fake_connection(objects=OBJECTS, edges=EDGES):
    conn = MagicMock()
    conn.server = "sql1"
    conn.database = "Sales"
    conn.for_database.return_value = conn

    def execute_query(query, params=None, timeout=300):
        object_id = params[0] if params else None
        if "@@SERVERNAME" in query:
            return [("SQL1", "Sales")]
        if "FROM sys.objects o" in query:
            return list(objects)
        if "sql_expression_dependencies" in query:
            return list(edges)
        if "sys.sql_modules" in query:
            return [MODULES[object_id]] if object_id in MODULES else []
        if "sys.key_constraints" in query:
            return [("PK_Orders", "id", "CLUSTERED")] if object_id == 1 else []
        if "FROM sys.columns c" in query:
            return list(COLUMNS) if object_id == 1 else []
        if "sys.synonyms" in query:
            return [("[Archive].[dbo].[Orders]",)]
        if "sys.sequences" in query:
            return [("bigint", "1", "1", "1", "9223372036854775807", False)]
        raise AssertionError(f"unexpected query: {query}")

    conn.execute_query.side_effect = execute_query
    return conn


def names(node):
    result = []
    stack = [node]
    while stack:
        current = stack.pop()
        result.append(Urn.parse(current.identity).name)
        if current.next_sibling is not None:
            stack.append(current.next_sibling)
        if current.first_child is not None:
            stack.append(current.first_child)
    return result


class TestCatalogDependencyProvider(unittest.TestCase):
    """Catalog-backed discovery, lookup and scripting."""

    def setUp(self):
        self.conn = fake_connection()
        self.provider = CatalogDependencyProvider(self.conn)

    def test_forward_children_are_referencing_objects_sorted_by_name(self):
        orders = self.provider.get_object("dbo", "Orders")

        tree = self.provider.discover_dependencies([orders.urn])

        self.assertEqual(names(tree), ["Orders", "trOrders", "vOrders", "pReport", "sysStats"])
        self.assertTrue(tree.children[-1].is_system)

    def test_reverse_children_are_referenced_objects(self):
        report = self.provider.get_object("dbo", "pReport")

        tree = self.provider.discover_dependencies([report.urn], reverse=True)

        self.assertEqual(names(tree), ["pReport", "vOrders", "Orders", "Customers"])

    def test_trigger_urn_is_nested_under_its_table(self):
        trigger = self.provider.catalog().objects[4]

        parsed = Urn.parse(trigger.urn)

        self.assertEqual(parsed.kind, ObjectKind.TRIGGER)
        self.assertEqual(parsed.parent().name, "Orders")
        self.assertIsNone(parsed.schema)
        self.assertEqual(self.provider.get_object_by_identity(trigger.urn).schema, "dbo")

    def test_multiple_urns_become_tier_zero_siblings(self):
        orders = self.provider.get_object("dbo", "Orders")
        customers = self.provider.get_object("dbo", "Customers")

        tree = self.provider.discover_dependencies([customers.urn, orders.urn])

        self.assertEqual(Urn.parse(tree.next_sibling.identity).name, "Orders")

    def test_cycle_becomes_leaf(self):
        provider = CatalogDependencyProvider(fake_connection(edges=[(2, 1), (1, 2)]))
        orders = provider.get_object("dbo", "Orders")

        tree = provider.discover_dependencies([orders.urn])

        self.assertEqual(names(tree), ["Orders", "vOrders", "Orders"])
        self.assertFalse(tree.first_child.first_child.has_child_nodes)

    def test_catalog_is_loaded_once(self):
        self.provider.get_object("dbo", "Orders")
        self.provider.get_object("dbo", "Customers")

        object_queries = [c for c in self.conn.execute_query.call_args_list if "FROM sys.objects o" in c.args[0]]
        self.assertEqual(len(object_queries), 1)

    def test_edge_query_only_follows_object_references(self):
        self.provider.get_object("dbo", "Orders")

        edge_query = next(c.args[0] for c in self.conn.execute_query.call_args_list
                          if "sql_expression_dependencies" in c.args[0])
        self.assertIn("d.referenced_class = 1", edge_query)
        self.assertIn("d.referencing_class = 1", edge_query)

    def test_get_object_by_identity_returns_rich_object(self):
        view = self.provider.get_object("dbo", "vOrders")

        obj = self.provider.get_object_by_identity(view.urn)

        self.assertEqual(obj.kind, ObjectKind.VIEW)
        self.assertTrue(obj.is_schema_bound)
        self.assertEqual(obj.owner, "dbo")
        self.assertEqual(obj.server().name, "SQL1")
        self.assertEqual(obj.database().name, "Sales")

    def test_missing_object_raises_lookup_error(self):
        missing = str(Urn.for_object("SQL1", "Sales", ObjectKind.TABLE, "Nope", schema="dbo"))

        with self.assertRaises(LookupError):
            self.provider.get_object_by_identity(missing)
        with self.assertRaises(LookupError):
            self.provider.get_object("dbo", "Nope")

    def test_module_script_carries_session_settings(self):
        proc = self.provider.get_object("dbo", "pReport")

        script = self.provider.generate_script(proc)

        self.assertIn("SET ANSI_NULLS ON\nGO\nSET QUOTED_IDENTIFIER OFF\nGO\nCREATE PROCEDURE", script)

    def test_encrypted_module_raises(self):
        obj = self.provider.get_object("sys", "sysStats")

        with self.assertRaises(ScriptGenerationError):
            self.provider.generate_script(obj)

    def test_table_script_includes_columns_and_primary_key(self):
        script = self.provider.generate_script(self.provider.get_object("dbo", "Orders"))

        self.assertIn("CREATE TABLE [dbo].[Orders](", script)
        self.assertIn("[id] INT IDENTITY(1,1) NOT NULL", script)
        self.assertIn("[note] NVARCHAR(100) COLLATE SQL_Latin1_General_CP1_CI_AS NULL DEFAULT (N'')", script)
        self.assertIn("CONSTRAINT [PK_Orders] PRIMARY KEY CLUSTERED ([id])", script)

    def test_table_without_columns_raises(self):
        with self.assertRaises(ScriptGenerationError):
            self.provider.generate_script(self.provider.get_object("dbo", "Customers"))

    def test_synonym_and_sequence_scripts(self):
        synonym = self.provider.generate_script(self.provider.get_object("dbo", "OrdersSyn"))
        sequence = self.provider.generate_script(self.provider.get_object("dbo", "OrderSeq"))

        self.assertEqual(synonym, "CREATE SYNONYM [dbo].[OrdersSyn] FOR [Archive].[dbo].[Orders]")
        self.assertIn("CREATE SEQUENCE [dbo].[OrderSeq]", sequence)
        self.assertIn("NO CYCLE", sequence)

    def test_query_failure_becomes_script_error(self):
        view = self.provider.get_object("dbo", "vOrders")
        self.conn.execute_query.side_effect = RuntimeError("timeout expired")

        with self.assertRaises(ScriptGenerationError) as ctx:
            self.provider.generate_script(view)
        self.assertIn("timeout expired", str(ctx.exception))


class TestWalkerWithCatalog(unittest.TestCase):
    """Walker end to end over the catalog provider."""

    def test_dependents_of_table_in_creation_order(self):
        provider = CatalogDependencyProvider(fake_connection())
        walker = DependencyWalker(provider, include_self=True)

        records = walker.resolve(provider.get_object("dbo", "Orders"))

        self.assertEqual([r.dependent for r in records], ["Orders", "trOrders", "vOrders", "pReport"])
        self.assertEqual([r.tier for r in records], [0, 1, 1, 2])
        self.assertEqual(records[0].computer_name, "SQL1")
        self.assertNotIn("SET ANSI_NULLS ON", records[2].script)
        self.assertTrue(records[2].is_schema_bound)

    def test_system_objects_kept_when_allowed(self):
        provider = CatalogDependencyProvider(fake_connection())
        walker = DependencyWalker(provider, allow_system_objects=True)

        records = walker.resolve(provider.get_object("dbo", "Orders"))

        system = [r for r in records if r.dependent == "sysStats"]
        self.assertEqual(len(system), 1)
        self.assertIsInstance(system[0].error, ScriptGenerationError)


if __name__ == "__main__":
    unittest.main()
