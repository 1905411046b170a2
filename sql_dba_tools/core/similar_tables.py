"""Find structurally similar tables by comparing column names from INFORMATION_SCHEMA."""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Tuple

from sql_dba_tools.core.models import InstanceIdentity
from sql_dba_tools.utils.logger import get_logger

if TYPE_CHECKING:
    from sql_dba_tools.core.database import DatabaseConnection

logger = get_logger(__name__)


@dataclass(frozen=True)
class SimilarTable:
    computer_name: str
    instance_name: str
    sql_instance: str
    original_database_name: str
    original_schema_name: str
    original_table_name: str
    original_table_type: str
    matching_database_name: str
    matching_schema_name: str
    matching_table_name: str
    matching_table_type: str
    matching_column_count: int
    original_column_count: int
    match_percent: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ComputerName": self.computer_name,
            "InstanceName": self.instance_name,
            "SqlInstance": self.sql_instance,
            "OriginalDatabaseName": self.original_database_name,
            "OriginalSchemaName": self.original_schema_name,
            "OriginalTableName": self.original_table_name,
            "OriginalTableType": self.original_table_type,
            "MatchingDatabaseName": self.matching_database_name,
            "MatchingSchemaName": self.matching_schema_name,
            "MatchingTableName": self.matching_table_name,
            "MatchingTableType": self.matching_table_type,
            "MatchingColumnCount": self.matching_column_count,
            "OriginalColumnCount": self.original_column_count,
            "MatchPercent": self.match_percent,
        }


# (schema, table) -> (table type, lower-cased column names)
TableColumns = Dict[Tuple[str, str], Tuple[str, frozenset]]


def build_columns_query(
    schema: Optional[str] = None,
    table: Optional[str] = None,
    exclude_views: bool = False,
) -> Tuple[str, List[str]]:
    """Return the INFORMATION_SCHEMA column query and its parameters."""
    query = (
        "SELECT t.TABLE_SCHEMA, t.TABLE_NAME, t.TABLE_TYPE, c.COLUMN_NAME "
        "FROM INFORMATION_SCHEMA.TABLES t "
        "JOIN INFORMATION_SCHEMA.COLUMNS c "
        "ON t.TABLE_CATALOG = c.TABLE_CATALOG AND t.TABLE_SCHEMA = c.TABLE_SCHEMA AND t.TABLE_NAME = c.TABLE_NAME"
    )
    conditions: List[str] = []
    params: List[str] = []
    if exclude_views:
        conditions.append("t.TABLE_TYPE = 'BASE TABLE'")
    if schema:
        conditions.append("t.TABLE_SCHEMA = ?")
        params.append(schema)
    if table:
        conditions.append("t.TABLE_NAME = ?")
        params.append(table)
    if conditions:
        query += " WHERE " + " AND ".join(conditions)
    query += " ORDER BY t.TABLE_SCHEMA, t.TABLE_NAME, c.ORDINAL_POSITION"
    return query, params


def group_columns(rows: Sequence[tuple]) -> TableColumns:
    grouped: Dict[Tuple[str, str], Tuple[str, set]] = {}
    for schema_name, table_name, table_type, column_name in rows:
        key = (schema_name, table_name)
        if key not in grouped:
            grouped[key] = (table_type, set())
        grouped[key][1].add(column_name.lower())
    return {key: (table_type, frozenset(cols)) for key, (table_type, cols) in grouped.items()}


def match_percent(matching: int, original_count: int) -> int:
    """Percentage of the original columns found in the other table, rounded half up."""
    if original_count <= 0:
        return 0
    return int(100 * matching / original_count + 0.5)


def score_tables(
    originals: TableColumns,
    candidates: TableColumns,
    threshold: int = 0,
) -> List[Tuple[Tuple[str, str], Tuple[str, str], int, int, int]]:
    """Compare every original table against every other candidate table.

    Returns ``(original key, matching key, matching count, original count, percent)``
    tuples, ordered by original table and then by descending percent.
    """
    scored = []
    for orig_key, (_orig_type, orig_cols) in originals.items():
        for cand_key, (_cand_type, cand_cols) in candidates.items():
            if cand_key == orig_key:
                continue
            matching = len(orig_cols & cand_cols)
            if matching == 0:
                continue
            percent = match_percent(matching, len(orig_cols))
            if percent < threshold:
                continue
            scored.append((orig_key, cand_key, matching, len(orig_cols), percent))

    scored.sort(key=lambda item: (item[0][0].lower(), item[0][1].lower(), -item[4],
                                  item[1][0].lower(), item[1][1].lower()))
    return scored


class SimilarTableFinder:
    def __init__(self, connection: "DatabaseConnection") -> None:
        self.connection = connection

    def list_databases(self, include_system_databases: bool = False) -> List[str]:
        """Online databases on the server, user databases only unless requested."""
        query = "SELECT name FROM sys.databases WHERE state = 0"
        if not include_system_databases:
            query += " AND database_id > 4"
        query += " ORDER BY name"
        return [row[0] for row in self.connection.execute_query(query)]

    def _server_name(self) -> str:
        rows = self.connection.execute_query("SELECT CAST(@@SERVERNAME AS NVARCHAR(128))")
        return (rows[0][0] if rows and rows[0][0] else None) or self.connection.server

    def find(
        self,
        database: Optional[str] = None,
        schema: Optional[str] = None,
        table: Optional[str] = None,
        exclude_views: bool = False,
        include_system_databases: bool = False,
        match_percent_threshold: int = 0,
    ) -> List[SimilarTable]:
        if not 0 <= match_percent_threshold <= 100:
            raise ValueError(f"match_percent_threshold must be between 0 and 100, got {match_percent_threshold}")

        identity = InstanceIdentity.from_server_name(self._server_name())
        if database:
            databases = [database]
        else:
            databases = self.list_databases(include_system_databases)

        results: List[SimilarTable] = []
        for db in databases:
            try:
                results.extend(self._find_in_database(
                    identity, db, schema, table, exclude_views, match_percent_threshold
                ))
            except Exception as exc:
                logger.error(f"Similar table search failed in {db}: {exc}", exc_info=True)
        logger.info(f"Found {len(results)} similar table pair(s) across {len(databases)} database(s)")
        return results

    def _find_in_database(
        self,
        identity: InstanceIdentity,
        database: str,
        schema: Optional[str],
        table: Optional[str],
        exclude_views: bool,
        threshold: int,
    ) -> List[SimilarTable]:
        conn = self.connection.for_database(database)
        query, params = build_columns_query(exclude_views=exclude_views)
        candidates = group_columns(conn.execute_query(query, params))
        if schema or table:
            query, params = build_columns_query(schema, table, exclude_views)
            originals = group_columns(conn.execute_query(query, params))
        else:
            originals = candidates
        logger.debug(f"{database}: {len(originals)} original table(s), {len(candidates)} candidate(s)")

        records = []
        for orig_key, cand_key, matching, original_count, percent in score_tables(originals, candidates, threshold):
            records.append(SimilarTable(
                computer_name=identity.computer_name,
                instance_name=identity.instance_name,
                sql_instance=identity.sql_instance,
                original_database_name=database,
                original_schema_name=orig_key[0],
                original_table_name=orig_key[1],
                original_table_type=originals[orig_key][0],
                matching_database_name=database,
                matching_schema_name=cand_key[0],
                matching_table_name=cand_key[1],
                matching_table_type=candidates[cand_key][0],
                matching_column_count=matching,
                original_column_count=original_count,
                match_percent=percent,
            ))
        return records
