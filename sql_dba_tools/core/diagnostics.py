"""Named DBA diagnostic queries, run at instance level or once per database."""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Tuple

from sql_dba_tools.utils.logger import get_logger

if TYPE_CHECKING:
    from sql_dba_tools.core.database import DatabaseConnection

logger = get_logger(__name__)

SYSTEM_DATABASES = ("master", "model", "msdb", "tempdb")


@dataclass(frozen=True)
class DiagnosticQuery:
    """A diagnostic query and the names of the columns it returns, in order.

    ``per_database`` queries read catalog views of the current database and run
    once per target database. ``system_databases`` queries default to the four
    system databases when no target is given.
    """
    name: str
    description: str
    sql: str
    columns: Tuple[str, ...]
    per_database: bool = False
    system_databases: bool = False


_QUERIES = [
    DiagnosticQuery(
        name="version-info",
        description="SQL Server and OS version of the instance.",
        sql="SELECT @@SERVERNAME, @@VERSION",
        columns=("ServerName", "Version"),
    ),
    DiagnosticQuery(
        name="active-queries",
        description="Requests currently executing, with their statement text.",
        sql=(
            "SELECT r.session_id, r.status, r.command, r.cpu_time, r.total_elapsed_time, t.text "
            "FROM sys.dm_exec_requests AS r "
            "CROSS APPLY sys.dm_exec_sql_text(r.sql_handle) AS t"
        ),
        columns=("SessionId", "Status", "Command", "CpuTime", "TotalElapsedTime", "Text"),
    ),
    DiagnosticQuery(
        name="blocking",
        description="Sessions waiting on a lock and the session blocking them.",
        sql=(
            "SELECT t1.resource_type, DB_NAME(t1.resource_database_id), t1.resource_associated_entity_id, "
            "t1.request_mode, t1.request_session_id, t2.wait_duration_ms, "
            "(SELECT st.text FROM sys.dm_exec_requests AS r "
            "CROSS APPLY sys.dm_exec_sql_text(r.sql_handle) AS st "
            "WHERE r.session_id = t1.request_session_id), "
            "t2.blocking_session_id, "
            "(SELECT st.text FROM sys.sysprocesses AS p "
            "CROSS APPLY sys.dm_exec_sql_text(p.sql_handle) AS st "
            "WHERE p.spid = t2.blocking_session_id) "
            "FROM sys.dm_tran_locks AS t1 WITH (NOLOCK) "
            "INNER JOIN sys.dm_os_waiting_tasks AS t2 WITH (NOLOCK) "
            "ON t1.lock_owner_address = t2.resource_address OPTION (RECOMPILE)"
        ),
        columns=("LockType", "DatabaseName", "BlockedObject", "LockRequest", "WaiterSessionId",
                 "WaitTimeMs", "WaiterBatch", "BlockerSessionId", "BlockerBatch"),
    ),
    DiagnosticQuery(
        name="connection-counts",
        description="Open connections grouped by client address, program, host and login.",
        sql=(
            "SELECT ec.client_net_address, es.program_name, es.host_name, es.login_name, "
            "COUNT(ec.session_id) "
            "FROM sys.dm_exec_sessions AS es WITH (NOLOCK) "
            "INNER JOIN sys.dm_exec_connections AS ec WITH (NOLOCK) ON es.session_id = ec.session_id "
            "GROUP BY ec.client_net_address, es.program_name, es.host_name, es.login_name "
            "ORDER BY ec.client_net_address, es.program_name OPTION (RECOMPILE)"
        ),
        columns=("ClientAddress", "ProgramName", "HostName", "LoginName", "ConnectionCount"),
    ),
    DiagnosticQuery(
        name="database-properties",
        description="Owner, compatibility level, recovery model and log reuse wait of every database.",
        sql=(
            "SELECT db.name, SUSER_SNAME(db.owner_sid), db.compatibility_level, db.recovery_model_desc, "
            "db.log_reuse_wait_desc, db.page_verify_option_desc, db.state_desc, "
            "db.is_auto_close_on, db.is_auto_shrink_on, db.is_query_store_on "
            "FROM sys.databases AS db WITH (NOLOCK) ORDER BY db.name OPTION (RECOMPILE)"
        ),
        columns=("DatabaseName", "Owner", "CompatibilityLevel", "RecoveryModel", "LogReuseWait",
                 "PageVerify", "State", "AutoClose", "AutoShrink", "QueryStore"),
    ),
    DiagnosticQuery(
        name="cpu-by-database",
        description="Cached plan CPU time per database, ranked.",
        sql=(
            "WITH DB_CPU_Stats AS ("
            "SELECT pa.DatabaseID, DB_NAME(pa.DatabaseID) AS DatabaseName, "
            "SUM(qs.total_worker_time / 1000) AS CpuTimeMs "
            "FROM sys.dm_exec_query_stats AS qs WITH (NOLOCK) "
            "CROSS APPLY (SELECT CONVERT(int, value) AS DatabaseID "
            "FROM sys.dm_exec_plan_attributes(qs.plan_handle) WHERE attribute = N'dbid') AS pa "
            "GROUP BY pa.DatabaseID) "
            "SELECT ROW_NUMBER() OVER (ORDER BY CpuTimeMs DESC), DatabaseName, CpuTimeMs, "
            "CAST(CpuTimeMs * 1.0 / SUM(CpuTimeMs) OVER () * 100.0 AS DECIMAL(5, 2)) "
            "FROM DB_CPU_Stats WHERE DatabaseID <> 32767 "
            "ORDER BY 1 OPTION (RECOMPILE)"
        ),
        columns=("CpuRank", "DatabaseName", "CpuTimeMs", "CpuPercent"),
    ),
    DiagnosticQuery(
        name="suspect-pages",
        description="Pages recorded in msdb.dbo.suspect_pages.",
        sql=(
            "SELECT DB_NAME(database_id), file_id, page_id, event_type, error_count, last_update_date "
            "FROM msdb.dbo.suspect_pages WITH (NOLOCK) ORDER BY database_id OPTION (RECOMPILE)"
        ),
        columns=("DatabaseName", "FileId", "PageId", "EventType", "ErrorCount", "LastUpdateDate"),
    ),
    DiagnosticQuery(
        name="change-tracking-databases",
        description="Databases with change tracking enabled.",
        sql=(
            "SELECT d.name, t.is_auto_cleanup_on, t.retention_period, t.retention_period_units_desc "
            "FROM sys.change_tracking_databases AS t "
            "INNER JOIN sys.databases AS d ON d.database_id = t.database_id"
        ),
        columns=("DatabaseName", "AutoCleanup", "RetentionPeriod", "RetentionPeriodUnits"),
    ),
    DiagnosticQuery(
        name="file-stats",
        description="Size, growth settings and average I/O latency of every database file.",
        sql=(
            "SELECT LEFT(mf.physical_name, 2), DB_NAME(vfs.database_id), mf.state_desc, mf.physical_name, "
            "mf.name, db.compatibility_level, db.recovery_model_desc, "
            "CONVERT(DECIMAL(20, 2), CONVERT(DECIMAL, mf.size) / 128), "
            "CASE mf.is_percent_growth WHEN 1 THEN CONVERT(VARCHAR, mf.growth) + '%' "
            "ELSE CONVERT(VARCHAR, mf.growth / 128) + ' MB' END, "
            "CASE mf.max_size WHEN 0 THEN 'No growth is allowed' "
            "WHEN -1 THEN 'File will grow until the disk is full' "
            "ELSE CONVERT(VARCHAR, mf.max_size) END, "
            "CASE WHEN vfs.num_of_reads = 0 THEN 0 ELSE vfs.io_stall_read_ms / vfs.num_of_reads END, "
            "CASE WHEN vfs.num_of_writes = 0 THEN 0 ELSE vfs.io_stall_write_ms / vfs.num_of_writes END, "
            "CASE WHEN vfs.num_of_reads = 0 AND vfs.num_of_writes = 0 THEN 0 "
            "ELSE vfs.io_stall / (vfs.num_of_reads + vfs.num_of_writes) END "
            "FROM sys.dm_io_virtual_file_stats(NULL, NULL) AS vfs "
            "JOIN sys.master_files AS mf ON vfs.database_id = mf.database_id AND vfs.file_id = mf.file_id "
            "JOIN sys.databases AS db ON vfs.database_id = db.database_id "
            "ORDER BY vfs.database_id"
        ),
        columns=("Drive", "DatabaseName", "State", "PhysicalName", "LogicalName", "CompatibilityLevel",
                 "RecoveryModel", "FileSizeMB", "GrowthIncrement", "MaxSize", "AvgReadLatencyMs",
                 "AvgWriteLatencyMs", "AvgTotalLatencyMs"),
    ),
    DiagnosticQuery(
        name="table-compression",
        description="Data compression of heaps and clustered indexes, per partition.",
        sql=(
            "SELECT SCHEMA_NAME(t.schema_id), t.name, i.name, p.partition_number, p.data_compression_desc "
            "FROM sys.partitions AS p "
            "INNER JOIN sys.tables AS t ON t.object_id = p.object_id "
            "INNER JOIN sys.indexes AS i ON i.object_id = p.object_id AND i.index_id = p.index_id "
            "WHERE p.index_id IN (0, 1) "
            "ORDER BY 1, 2, 4"
        ),
        columns=("SchemaName", "TableName", "IndexName", "PartitionNumber", "Compression"),
        per_database=True,
    ),
    DiagnosticQuery(
        name="nonclustered-index-compression",
        description="Data compression of nonclustered indexes, per partition.",
        sql=(
            "SELECT SCHEMA_NAME(t.schema_id), t.name, i.name, p.partition_number, p.data_compression_desc "
            "FROM sys.partitions AS p "
            "INNER JOIN sys.tables AS t ON t.object_id = p.object_id "
            "INNER JOIN sys.indexes AS i ON i.object_id = p.object_id AND i.index_id = p.index_id "
            "WHERE p.index_id NOT IN (0, 1) "
            "ORDER BY 1, 2, 3, 4"
        ),
        columns=("SchemaName", "TableName", "IndexName", "PartitionNumber", "Compression"),
        per_database=True,
    ),
    DiagnosticQuery(
        name="non-aligned-partition-indexes",
        description="Indexes of user tables that sit on a different kind of data space than their siblings.",
        sql=(
            "SELECT OBJECT_SCHEMA_NAME(i.object_id, DB_ID()), o.name, i.name, i.type_desc, "
            "ds.name, ds.type_desc, s.user_seeks, s.user_scans, s.user_lookups, s.user_updates, "
            "s.last_user_seek, s.last_user_update "
            "FROM sys.objects AS o "
            "JOIN sys.indexes AS i ON o.object_id = i.object_id "
            "JOIN sys.data_spaces AS ds ON ds.data_space_id = i.data_space_id "
            "LEFT OUTER JOIN sys.dm_db_index_usage_stats AS s "
            "ON i.object_id = s.object_id AND i.index_id = s.index_id AND s.database_id = DB_ID() "
            "WHERE o.type = 'U' AND i.type IN (1, 2) AND o.object_id IN ("
            "SELECT a.object_id FROM ("
            "SELECT ob.object_id, sp.type_desc FROM sys.objects AS ob "
            "JOIN sys.indexes AS ind ON ind.object_id = ob.object_id "
            "JOIN sys.data_spaces AS sp ON sp.data_space_id = ind.data_space_id "
            "GROUP BY ob.object_id, sp.type_desc) AS a "
            "GROUP BY a.object_id HAVING COUNT(*) > 1) "
            "ORDER BY o.name DESC"
        ),
        columns=("SchemaName", "ObjectName", "IndexName", "IndexType", "DataSpaceName", "DataSpaceType",
                 "UserSeeks", "UserScans", "UserLookups", "UserUpdates", "LastUserSeek", "LastUserUpdate"),
        per_database=True,
    ),
    DiagnosticQuery(
        name="objects-in-system-databases",
        description="Objects in the system databases with their schema and owning principal.",
        sql=(
            "SELECT s.name, o.name, o.object_id, o.type_desc, o.is_ms_shipped, o.create_date, o.modify_date, "
            "ISNULL(po.name, ps.name), ISNULL(po.type_desc, ps.type_desc) "
            "FROM sys.all_objects AS o "
            "INNER JOIN sys.schemas AS s ON o.schema_id = s.schema_id "
            "LEFT OUTER JOIN sys.database_principals AS po ON o.principal_id = po.principal_id "
            "LEFT OUTER JOIN sys.database_principals AS ps ON s.principal_id = ps.principal_id "
            "WHERE o.is_ms_shipped = 0"
        ),
        columns=("SchemaName", "ObjectName", "ObjectId", "TypeDesc", "IsMsShipped", "CreateDate",
                 "ModifyDate", "ObjectOwner", "OwnerType"),
        per_database=True,
        system_databases=True,
    ),
]

DIAGNOSTIC_QUERIES: Dict[str, DiagnosticQuery] = {query.name: query for query in _QUERIES}


def get_query(name: str) -> DiagnosticQuery:
    try:
        return DIAGNOSTIC_QUERIES[name]
    except KeyError:
        raise ValueError(
            f"Unknown diagnostic query '{name}'. Available: {', '.join(sorted(DIAGNOSTIC_QUERIES))}"
        ) from None


def rows_to_dicts(columns: Sequence[str], rows: Sequence[Sequence[Any]]) -> List[Dict[str, Any]]:
    return [dict(zip(columns, row)) for row in rows]


class DiagnosticsRunner:
    def __init__(self, connection: "DatabaseConnection") -> None:
        self.connection = connection

    def list_databases(self, include_system_databases: bool = False) -> List[str]:
        query = "SELECT name FROM sys.databases WHERE state = 0"
        if not include_system_databases:
            query += " AND database_id > 4"
        query += " ORDER BY name"
        return [row[0] for row in self.connection.execute_query(query)]

    def run(
        self,
        name: str,
        databases: Optional[Sequence[str]] = None,
        include_system_databases: bool = False,
    ) -> List[Dict[str, Any]]:
        """Run the named query and return one dict per row.

        Per-database queries add a ``Database`` key to each row. A database
        whose query fails is logged and skipped; instance-level failures
        propagate to the caller.
        """
        query = get_query(name)
        if not query.per_database:
            if databases:
                logger.warning(f"{name} is an instance-level query; ignoring database list")
            rows = rows_to_dicts(query.columns, self.connection.execute_query(query.sql))
            logger.info(f"{name}: {len(rows)} row(s)")
            return rows

        if databases:
            targets = list(databases)
        elif query.system_databases:
            targets = list(SYSTEM_DATABASES)
        else:
            targets = self.list_databases(include_system_databases)

        results: List[Dict[str, Any]] = []
        for db in targets:
            try:
                rows = self.connection.for_database(db).execute_query(query.sql)
            except Exception as exc:
                logger.error(f"Diagnostic query {name} failed in {db}: {exc}", exc_info=True)
                continue
            for row in rows_to_dicts(query.columns, rows):
                results.append({"Database": db, **row})
        logger.info(f"{name}: {len(results)} row(s) across {len(targets)} database(s)")
        return results
