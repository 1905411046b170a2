"""Post-upgrade maintenance of user databases after a SQL Server version upgrade."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional

from sql_dba_tools.core.models import InstanceIdentity
from sql_dba_tools.core.script_builder import bracket
from sql_dba_tools.utils.logger import get_logger

if TYPE_CHECKING:
    from sql_dba_tools.core.database import DatabaseConnection

logger = get_logger(__name__)

SUCCESS = "Success"
SKIPPED = "Skipped"
NO_CHANGE = "No change"

SYSTEM_DATABASES = ("master", "model", "msdb", "tempdb")

DATABASE_STATE_QUERY = (
    "SELECT database_id, compatibility_level, page_verify_option_desc "
    "FROM sys.databases WHERE name = ?"
)

REFRESHABLE_VIEWS_QUERY = (
    "SELECT QUOTENAME(s.name) + '.' + QUOTENAME(v.name) "
    "FROM sys.views v JOIN sys.schemas s ON v.schema_id = s.schema_id "
    "WHERE v.is_ms_shipped = 0 AND ISNULL(OBJECTPROPERTY(v.object_id, 'IsSchemaBound'), 0) = 0 "
    "ORDER BY s.name, v.name"
)


@dataclass
class UpgradeResult:
    computer_name: str
    instance_name: str
    sql_instance: str
    database: str
    original_compatibility: Optional[int] = None
    current_compatibility: Optional[int] = None
    compatibility: str = SKIPPED
    page_verify: str = SKIPPED
    data_purity: str = SKIPPED
    update_usage: str = SKIPPED
    update_stats: str = SKIPPED
    refresh_views: str = SKIPPED
    errors: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ComputerName": self.computer_name,
            "InstanceName": self.instance_name,
            "SqlInstance": self.sql_instance,
            "Database": self.database,
            "OriginalCompatibility": self.original_compatibility,
            "CurrentCompatibility": self.current_compatibility,
            "Compatibility": self.compatibility,
            "PageVerify": self.page_verify,
            "DataPurity": self.data_purity,
            "UpdateUsage": self.update_usage,
            "UpdateStats": self.update_stats,
            "RefreshViews": self.refresh_views,
        }


def compatibility_level_for(product_version: str) -> int:
    """``15.0.2000.5`` -> 150."""
    try:
        major = int(str(product_version).split(".", 1)[0])
    except ValueError as exc:
        raise ValueError(f"Unrecognised product version: {product_version!r}") from exc
    return major * 10


class DatabaseUpgrader:
    def __init__(self, connection: "DatabaseConnection") -> None:
        self.connection = connection

    def server_compatibility_level(self) -> int:
        rows = self.connection.execute_query("SELECT CAST(SERVERPROPERTY('ProductVersion') AS NVARCHAR(128))")
        return compatibility_level_for(rows[0][0])

    def _server_name(self) -> str:
        rows = self.connection.execute_query("SELECT CAST(@@SERVERNAME AS NVARCHAR(128))")
        return (rows[0][0] if rows and rows[0][0] else None) or self.connection.server

    def _user_databases(self) -> List[str]:
        rows = self.connection.execute_query(
            "SELECT name FROM sys.databases WHERE database_id > 4 AND state = 0 ORDER BY name"
        )
        return [row[0] for row in rows]

    def upgrade(
        self,
        databases: Optional[Iterable[str]] = None,
        exclude: Iterable[str] = (),
        all_user_databases: bool = False,
        force: bool = False,
        no_check_db: bool = False,
        no_update_usage: bool = False,
        no_update_stats: bool = False,
        no_refresh_view: bool = False,
    ) -> List[UpgradeResult]:
        """Run the upgrade steps against each selected database, one after another."""
        if databases:
            selected = list(databases)
        elif all_user_databases:
            selected = self._user_databases()
        else:
            raise ValueError("Specify databases to upgrade or set all_user_databases")

        excluded = {name.lower() for name in exclude}
        selected = [db for db in selected if db.lower() not in excluded]

        identity = InstanceIdentity.from_server_name(self._server_name())
        server_level = self.server_compatibility_level()
        logger.info(f"Server compatibility level is {server_level}; {len(selected)} database(s) selected")

        results: List[UpgradeResult] = []
        for db in selected:
            if db.lower() in SYSTEM_DATABASES:
                logger.warning(f"Refusing to upgrade system database {db}")
                continue
            try:
                result = self._upgrade_database(
                    identity, db, server_level, force,
                    no_check_db, no_update_usage, no_update_stats, no_refresh_view,
                )
            except Exception as exc:
                logger.error(f"Upgrade of {db} failed: {exc}", exc_info=True)
                result = UpgradeResult(identity.computer_name, identity.instance_name, identity.sql_instance, db)
                result.errors.append(str(exc))
            if result is not None:
                results.append(result)
        return results

    def _upgrade_database(
        self,
        identity: InstanceIdentity,
        db: str,
        server_level: int,
        force: bool,
        no_check_db: bool,
        no_update_usage: bool,
        no_update_stats: bool,
        no_refresh_view: bool,
    ) -> Optional[UpgradeResult]:
        rows = self.connection.execute_query(DATABASE_STATE_QUERY, [db])
        if not rows:
            raise LookupError(f"Database {db} not found on {identity.sql_instance}")
        database_id, compat_level, page_verify = rows[0]
        if database_id <= 4:
            logger.warning(f"Refusing to upgrade system database {db}")
            return None
        if compat_level >= server_level and not force:
            logger.info(f"{db} is already at compatibility level {compat_level}, skipping")
            return None

        result = UpgradeResult(
            computer_name=identity.computer_name,
            instance_name=identity.instance_name,
            sql_instance=identity.sql_instance,
            database=db,
            original_compatibility=compat_level,
            current_compatibility=compat_level,
        )
        db_conn = self.connection.for_database(db)
        quoted = bracket(db)

        if compat_level < server_level:
            result.compatibility = self._step(
                result, "compatibility level",
                lambda: self.connection.execute_non_query(
                    f"ALTER DATABASE {quoted} SET COMPATIBILITY_LEVEL = {server_level}"
                ),
            )
            if result.compatibility == SUCCESS:
                result.current_compatibility = server_level
        else:
            result.compatibility = NO_CHANGE

        if (page_verify or "").upper() != "CHECKSUM":
            result.page_verify = self._step(
                result, "page verify",
                lambda: self.connection.execute_non_query(
                    f"ALTER DATABASE {quoted} SET PAGE_VERIFY CHECKSUM WITH NO_WAIT"
                ),
            )
        else:
            result.page_verify = NO_CHANGE

        if not no_check_db:
            result.data_purity = self._step(
                result, "DBCC CHECKDB",
                lambda: db_conn.execute_non_query(f"DBCC CHECKDB ({quoted}) WITH DATA_PURITY, NO_INFOMSGS"),
            )

        if not no_update_usage:
            result.update_usage = self._step(
                result, "DBCC UPDATEUSAGE",
                lambda: db_conn.execute_non_query(f"DBCC UPDATEUSAGE ({quoted}) WITH NO_INFOMSGS"),
            )

        if not no_update_stats:
            result.update_stats = self._step(
                result, "sp_updatestats",
                lambda: db_conn.execute_non_query("EXEC sp_updatestats"),
            )

        if not no_refresh_view:
            result.refresh_views = self._refresh_views(result, db_conn)

        logger.info(f"Upgrade of {db} finished with {len(result.errors)} error(s)")
        return result

    @staticmethod
    def _step(result: UpgradeResult, name: str, action: Callable[[], None]) -> str:
        try:
            action()
        except Exception as exc:
            logger.error(f"{result.database}: {name} failed: {exc}", exc_info=True)
            result.errors.append(f"{name}: {exc}")
            return str(exc)
        logger.debug(f"{result.database}: {name} succeeded")
        return SUCCESS

    @staticmethod
    def _refresh_views(result: UpgradeResult, db_conn: "DatabaseConnection") -> str:
        try:
            views = [row[0] for row in db_conn.execute_query(REFRESHABLE_VIEWS_QUERY)]
        except Exception as exc:
            logger.error(f"{result.database}: listing views failed: {exc}", exc_info=True)
            result.errors.append(f"refresh views: {exc}")
            return str(exc)

        failures: List[str] = []
        for view in views:
            try:
                db_conn.execute_non_query("EXEC sp_refreshview ?", [view])
            except Exception as exc:
                logger.error(f"{result.database}: sp_refreshview {view} failed: {exc}")
                failures.append(f"{view}: {exc}")
        if failures:
            result.errors.extend(failures)
            return "; ".join(failures)
        return SUCCESS if views else NO_CHANGE
