from __future__ import annotations

import unittest
from unittest.mock import MagicMock, patch

import pytest

pytest.importorskip("pyodbc")
pytest.importorskip("msal")

from sql_dba_tools.core.database import ACCESS_TOKEN_ATTR, DatabaseConnection  # noqa: E402


class TestDatabaseConnection(unittest.TestCase):
    """Test database connection functionality."""

    def test_server_validation_rejects_invalid_characters(self):
        """Test that invalid characters in server name are rejected."""
        with self.assertRaises(ValueError):
            conn = DatabaseConnection(server="server;DROP TABLE", database="test", auth_type="sql")
            conn._conn_str()

    def test_empty_server_raises_error(self):
        with self.assertRaises(ValueError):
            DatabaseConnection(server="", database="test", auth_type="sql")._conn_str()

    def test_plain_host_is_forced_onto_tcp(self):
        conn = DatabaseConnection(server="localhost", database="test", auth_type="sql",
                                  username="sa", password="test123")
        conn_str = conn._conn_str()

        self.assertIn("Server=tcp:localhost;", conn_str)
        self.assertIn("Encrypt=yes", conn_str)
        self.assertIn("UID=sa", conn_str)

    def test_named_instance_keeps_server_name(self):
        conn_str = DatabaseConnection(server="SQL1\\PROD")._conn_str()

        self.assertIn("Server=SQL1\\PROD;", conn_str)
        self.assertIn("Trusted_Connection=yes;", conn_str)

    def test_for_database_keeps_credentials(self):
        conn = DatabaseConnection(server="SQL1", auth_type="SQL", username="sa", password="pw", trust_cert=True)

        other = conn.for_database("Sales")

        self.assertEqual(other.database, "Sales")
        self.assertEqual(other.username, "sa")
        self.assertTrue(other.trust_cert)
        self.assertEqual(conn.database, "master")

    @patch("sql_dba_tools.core.database.pyodbc.connect")
    def test_execute_query_passes_parameters(self, mock_connect):
        cursor = MagicMock()
        cursor.fetchall.return_value = [(1,)]
        mock_connect.return_value.__enter__.return_value.cursor.return_value = cursor

        rows = DatabaseConnection(server="SQL1").execute_query("SELECT ?", [1])

        self.assertEqual(rows, [(1,)])
        cursor.execute.assert_called_once_with("SELECT ?", 1)

    @patch("sql_dba_tools.core.database.pyodbc.connect")
    def test_entra_token_goes_through_attrs_before(self, mock_connect):
        conn = DatabaseConnection(server="SQL1", auth_type="entra")

        with patch.object(DatabaseConnection, "_acquire_token", return_value=b"token"):
            conn._connect()

        kwargs = mock_connect.call_args.kwargs
        self.assertEqual(kwargs["attrs_before"], {ACCESS_TOKEN_ATTR: b"token"})
        self.assertNotIn("Trusted_Connection", mock_connect.call_args.args[0])

    @patch("sql_dba_tools.core.database.pyodbc.connect", side_effect=RuntimeError("login failed"))
    def test_connection_failure_is_reported(self, _mock_connect):
        ok, message = DatabaseConnection(server="SQL1").test_connection()

        self.assertFalse(ok)
        self.assertIn("login failed", message)


if __name__ == "__main__":
    unittest.main()
