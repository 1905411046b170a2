"""Database connection helper for SQL Server.
Supports SQL login, Windows integrated, and Microsoft Entra interactive sign-in.
"""
from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Sequence

import pyodbc
import msal

from sql_dba_tools.utils.logger import get_logger

logger = get_logger(__name__)

# SQL_COPT_SS_ACCESS_TOKEN
ACCESS_TOKEN_ATTR = 1256


class DatabaseConnection:
    def __init__(
        self,
        server: str,
        database: str = "master",
        auth_type: str = "windows",
        username: str | None = None,
        password: str | None = None,
        encrypt: bool = True,
        trust_cert: bool = False,
        driver: str = "ODBC Driver 18 for SQL Server",
        timeout: int = 30,
    ) -> None:
        self.server = server
        self.database = database
        self.auth_type = auth_type.lower()
        self.username = username
        self.password = password
        self.encrypt = encrypt
        self.trust_cert = trust_cert
        self.driver = driver
        self.timeout = timeout
        self.client_id = "04b07795-8ddb-461a-bbee-02f9e1bf7b46"
        self.scope = ["https://database.windows.net/.default"]
        self.token_cache_path = Path.home() / ".sql_dba_tools_token_cache.bin"

    def for_database(self, database: str) -> "DatabaseConnection":
        """Return a connection helper with the same server and credentials for another database."""
        return DatabaseConnection(
            server=self.server,
            database=database,
            auth_type=self.auth_type,
            username=self.username,
            password=self.password,
            encrypt=self.encrypt,
            trust_cert=self.trust_cert,
            driver=self.driver,
            timeout=self.timeout,
        )

    def _conn_str(self) -> str:
        server = (self.server or "").strip()
        if not server:
            raise ValueError("Server name cannot be empty")

        if re.search(r'[;<>"]', server):
            raise ValueError(f"Invalid characters in server name: {server}")

        if not server.lower().startswith(("tcp:", "np:")) and "\\" not in server:
            # Named instances resolve through the browser service, so only
            # plain host names are forced onto TCP.
            server = f"tcp:{server}"

        parts = [
            f"Driver={{{self.driver}}};",
            f"Server={server};",
            f"Database={self.database};",
        ]
        parts.append("Encrypt=yes;" if self.encrypt else "Encrypt=no;")
        parts.append(f"TrustServerCertificate={'yes' if self.trust_cert else 'no'};")

        # entra: token goes through attrs_before, no auth keywords here
        if self.auth_type == "windows":
            parts.append("Trusted_Connection=yes;")
        elif self.auth_type == "sql":
            if self.username:
                parts.append(f"UID={self.username};")
            if self.password:
                parts.append(f"PWD={self.password};")
        return "".join(parts)

    def _connect(self, timeout: int | None = None) -> pyodbc.Connection:
        conn_str = self._conn_str()
        kwargs: dict[str, Any] = {"timeout": timeout or self.timeout, "autocommit": True}
        if self.auth_type == "entra":
            kwargs["attrs_before"] = {ACCESS_TOKEN_ATTR: self._acquire_token()}
        return pyodbc.connect(conn_str, **kwargs)

    def test_connection(self, timeout: int = 5) -> tuple[bool, str]:
        try:
            logger.info(f"Testing connection to {self.server}/{self.database} using {self.auth_type} auth")
            with self._connect(timeout=timeout):
                logger.info("Connection test succeeded")
                return True, "Connection succeeded"
        except Exception as exc:
            logger.error(f"Connection test failed: {exc}", exc_info=True)
            return False, str(exc)

    def execute_query(self, query: str, params: Sequence[Any] | None = None, timeout: int = 300) -> list[tuple]:
        """Run a query and return every row."""
        with self._connect() as conn:
            conn.timeout = timeout
            cursor = conn.cursor()
            if params:
                cursor.execute(query, *params)
            else:
                cursor.execute(query)
            return cursor.fetchall()

    def execute_non_query(self, statement: str, params: Sequence[Any] | None = None, timeout: int = 0) -> None:
        """Run a statement that returns no rows (DDL, DBCC, procedure calls).

        ``timeout`` of 0 waits indefinitely, which DBCC CHECKDB on large
        databases needs.
        """
        logger.debug(f"[{self.server}/{self.database}] {statement}")
        with self._connect() as conn:
            conn.timeout = timeout
            cursor = conn.cursor()
            if params:
                cursor.execute(statement, *params)
            else:
                cursor.execute(statement)
            # Drain informational result sets so errors in later batches surface
            while cursor.nextset():
                pass

    def _acquire_token(self) -> bytes:
        cache = msal.SerializableTokenCache()
        if self.token_cache_path.exists():
            cache.deserialize(self.token_cache_path.read_text())

        app = msal.PublicClientApplication(
            self.client_id,
            authority="https://login.microsoftonline.com/common",
            token_cache=cache
        )

        accounts = app.get_accounts(username=self.username) if self.username else app.get_accounts()
        result = None
        if accounts:
            result = app.acquire_token_silent(self.scope, account=accounts[0])

        if not result:
            result = app.acquire_token_interactive(
                scopes=self.scope,
                login_hint=self.username,
                parent_window_handle=None
            )

        if cache.has_state_changed:
            self.token_cache_path.write_text(cache.serialize())

        if not result or "access_token" not in result:
            error_desc = result.get("error_description", "Unknown error") if result else "No result"
            raise RuntimeError(f"Token acquisition failed: {error_desc}")

        # ACCESSTOKEN struct: 4-byte little-endian length + UTF-16LE token
        token_utf16 = result["access_token"].encode("utf-16-le")
        return len(token_utf16).to_bytes(4, byteorder="little") + token_utf16
