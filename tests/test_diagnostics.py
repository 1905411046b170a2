from __future__ import annotations

import unittest
from unittest.mock import MagicMock

from sql_dba_tools.core.diagnostics import (
    DIAGNOSTIC_QUERIES,
    SYSTEM_DATABASES,
    DiagnosticsRunner,
    get_query,
    rows_to_dicts,
)


def test_registry_columns_are_named_and_unique():
    for name, query in DIAGNOSTIC_QUERIES.items():
        assert query.name == name
        assert query.columns
        assert len(set(query.columns)) == len(query.columns), name
        assert "Database" not in query.columns, name


def test_system_database_queries_run_per_database():
    for query in DIAGNOSTIC_QUERIES.values():
        if query.system_databases:
            assert query.per_database


def test_unknown_query_lists_available_names():
    try:
        get_query("nope")
    except ValueError as exc:
        assert "active-queries" in str(exc)
    else:
        raise AssertionError("expected ValueError")


def test_rows_to_dicts_pairs_columns_with_values():
    rows = rows_to_dicts(("A", "B"), [(1, "x"), (2, "y")])

    assert rows == [{"A": 1, "B": "x"}, {"A": 2, "B": "y"}]


class TestDiagnosticsRunner(unittest.TestCase):
    """Runner against a mocked connection."""

    def setUp(self):
        self.conn = MagicMock()
        self.per_db = {}

        def for_database(name):
            db_conn = MagicMock()
            if name == "Broken":
                db_conn.execute_query.side_effect = RuntimeError("database is offline")
            else:
                db_conn.execute_query.return_value = [("dbo", "Orders", None, 1, "PAGE")]
            self.per_db[name] = db_conn
            return db_conn

        self.conn.for_database.side_effect = for_database

    def test_instance_query_runs_on_the_given_connection(self):
        self.conn.execute_query.return_value = [(53, "running", "SELECT", 10, 25, "select 1")]

        rows = DiagnosticsRunner(self.conn).run("active-queries")

        self.assertEqual(rows, [{
            "SessionId": 53, "Status": "running", "Command": "SELECT",
            "CpuTime": 10, "TotalElapsedTime": 25, "Text": "select 1",
        }])
        self.conn.execute_query.assert_called_once_with(DIAGNOSTIC_QUERIES["active-queries"].sql)
        self.conn.for_database.assert_not_called()

    def test_instance_query_ignores_database_list(self):
        self.conn.execute_query.return_value = []

        with self.assertLogs("sql_dba_tools.core.diagnostics", level="WARNING"):
            rows = DiagnosticsRunner(self.conn).run("version-info", databases=["Sales"])

        self.assertEqual(rows, [])
        self.conn.for_database.assert_not_called()

    def test_per_database_query_tags_rows_and_skips_failures(self):
        self.conn.execute_query.return_value = [("Broken",), ("Sales",)]

        with self.assertLogs("sql_dba_tools.core.diagnostics", level="ERROR") as logs:
            rows = DiagnosticsRunner(self.conn).run("table-compression")

        self.assertEqual(rows, [{
            "Database": "Sales", "SchemaName": "dbo", "TableName": "Orders",
            "IndexName": None, "PartitionNumber": 1, "Compression": "PAGE",
        }])
        self.assertIn("Broken", logs.output[0])
        listing = self.conn.execute_query.call_args.args[0]
        self.assertIn("database_id > 4", listing)

    def test_explicit_databases_skip_the_listing(self):
        rows = DiagnosticsRunner(self.conn).run("nonclustered-index-compression", databases=["Sales", "HR"])

        self.assertEqual([row["Database"] for row in rows], ["Sales", "HR"])
        self.conn.execute_query.assert_not_called()

    def test_system_database_query_defaults_to_system_databases(self):
        DiagnosticsRunner(self.conn).run("objects-in-system-databases")

        self.assertEqual(list(self.per_db), list(SYSTEM_DATABASES))
        self.conn.execute_query.assert_not_called()

    def test_listing_can_include_system_databases(self):
        self.conn.execute_query.return_value = [("master",)]

        DiagnosticsRunner(self.conn).run("table-compression", include_system_databases=True)

        self.assertNotIn("database_id > 4", self.conn.execute_query.call_args.args[0])
        self.assertEqual(list(self.per_db), ["master"])

    def test_unknown_query_raises_before_touching_the_server(self):
        with self.assertRaises(ValueError):
            DiagnosticsRunner(self.conn).run("nope")

        self.conn.execute_query.assert_not_called()


if __name__ == "__main__":
    unittest.main()
