"""Command line entry point for SQL DBA Tools."""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from sql_dba_tools.core.catalog_provider import CatalogDependencyProvider
from sql_dba_tools.core.database import DatabaseConnection
from sql_dba_tools.core.dependency_walker import DependencyWalker
from sql_dba_tools.core.diagnostics import DIAGNOSTIC_QUERIES, DiagnosticsRunner
from sql_dba_tools.core.models import DatabaseObject
from sql_dba_tools.core.similar_tables import SimilarTableFinder
from sql_dba_tools.core.timeline import build_timeline, render_timeline_html, timeline_rows
from sql_dba_tools.core.upgrade import DatabaseUpgrader
from sql_dba_tools.utils.config import Config
from sql_dba_tools.utils.logger import get_logger, setup_logger
from sql_dba_tools.utils.report_generator import export_results

logger = get_logger(__name__)


def _connection_parser() -> argparse.ArgumentParser:
    parent = argparse.ArgumentParser(add_help=False)
    parent.add_argument("--server", required=True, help="SQL Server instance (HOST, HOST\\INSTANCE or HOST,port).")
    parent.add_argument("--database", help="Database to connect to.")
    parent.add_argument("--auth", choices=["windows", "sql", "entra"], help="Authentication type.")
    parent.add_argument("--username", help="Login name for sql auth, account hint for entra.")
    parent.add_argument("--password", help="Password for sql auth (default: $SQL_DBA_TOOLS_PASSWORD).")
    parent.add_argument("--trust-cert", action="store_true", help="Trust the server certificate.")
    return parent


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sql-dba-tools", description="SQL Server administration utilities.")
    parser.add_argument("--config", help="Path to settings.json (default: config/settings.json).")
    parser.add_argument("--output", "-o", help="Write results to a .csv, .html, .json, .xlsx or .pdf file.")
    parser.add_argument("--verbose", "-v", action="store_true", help="Echo informational messages to the console.")

    sub = parser.add_subparsers(dest="command", required=True)
    conn = _connection_parser()

    deps = sub.add_parser("dependencies", parents=[conn], help="Resolve object dependencies in creation order.")
    deps.add_argument("--object", nargs="+", dest="objects", default=[], help="Objects as schema.name.")
    deps.add_argument("--urn", nargs="+", dest="urns", default=[], help="Objects as URNs.")
    deps.add_argument("--parents", action="store_true", default=None, help="Resolve what the objects depend on.")
    deps.add_argument("--include-self", action="store_true", default=None, help="Include the input objects.")
    deps.add_argument("--allow-system-objects", action="store_true", default=None, help="Keep system objects.")
    deps.add_argument("--no-script", action="store_true", help="Skip script generation.")
    deps.add_argument("--script-out", help="Write a combined deployment script to this file.")
    deps.add_argument("--enable-exception", action="store_true", help="Stop at the first invalid input.")

    similar = sub.add_parser("similar-tables", parents=[conn], help="Find tables with similar column sets.")
    similar.add_argument("--schema", help="Only compare tables in this schema.")
    similar.add_argument("--table", help="Only compare this table.")
    similar.add_argument("--exclude-views", action="store_true", default=None)
    similar.add_argument("--include-system-databases", action="store_true", default=None)
    similar.add_argument("--threshold", type=int, help="Minimum match percent (0-100).")

    upgrade = sub.add_parser("upgrade", parents=[conn], help="Run post-upgrade maintenance on databases.")
    upgrade.add_argument("--databases", nargs="+", default=[], help="Databases to upgrade.")
    upgrade.add_argument("--exclude", nargs="+", default=[], help="Databases to leave out.")
    upgrade.add_argument("--all-user-databases", action="store_true")
    upgrade.add_argument("--force", action="store_true", default=None)
    upgrade.add_argument("--no-check-db", action="store_true", default=None)
    upgrade.add_argument("--no-update-usage", action="store_true", default=None)
    upgrade.add_argument("--no-update-stats", action="store_true", default=None)
    upgrade.add_argument("--no-refresh-view", action="store_true", default=None)

    diag = sub.add_parser("diagnostics", parents=[conn], help="Run a named DBA diagnostic query.")
    diag.add_argument("query", choices=sorted(DIAGNOSTIC_QUERIES), help="Diagnostic query to run.")
    diag.add_argument("--databases", nargs="+", default=[], help="Databases for per-database queries.")
    diag.add_argument("--include-system-databases", action="store_true", default=None)

    timeline = sub.add_parser("timeline", help="Render job or backup history as an HTML timeline.")
    timeline.add_argument("--input", required=True, help="JSON file with a list of history records.")
    timeline.add_argument("--server-name", default="", help="Server name for records without one.")
    timeline.add_argument("--title", default="Timeline", help="Report title.")
    return parser


def _option(value: Optional[bool], section: Dict[str, Any], key: str) -> bool:
    return bool(section.get(key, False)) if value is None else value


def _make_connection(args: argparse.Namespace, config: Config) -> DatabaseConnection:
    db_cfg = config.get_section("database")
    return DatabaseConnection(
        server=args.server,
        database=args.database or "master",
        auth_type=args.auth or db_cfg.get("default_auth_type", "windows"),
        username=args.username,
        password=args.password or os.environ.get("SQL_DBA_TOOLS_PASSWORD"),
        encrypt=db_cfg.get("encrypt", True),
        trust_cert=args.trust_cert or db_cfg.get("trust_cert", False),
        driver=db_cfg.get("driver", "ODBC Driver 18 for SQL Server"),
        timeout=db_cfg.get("connection_timeout", 30),
    )


def _split_name(text: str) -> tuple[str, str]:
    if "." in text:
        schema, name = text.split(".", 1)
        return schema.strip("[]"), name.strip("[]")
    return "dbo", text.strip("[]")


def run_dependencies(args: argparse.Namespace, config: Config) -> List[Dict[str, Any]]:
    if not args.objects and not args.urns:
        raise ValueError("Give at least one --object or --urn")
    section = config.get_section("dependencies")
    provider = CatalogDependencyProvider(_make_connection(args, config))
    walker = DependencyWalker(
        provider,
        allow_system_objects=_option(args.allow_system_objects, section, "allow_system_objects"),
        parents=_option(args.parents, section, "parents"),
        include_self=_option(args.include_self, section, "include_self"),
        include_script=not args.no_script and section.get("include_script", True),
        enable_exception=args.enable_exception,
    )

    roots: List[DatabaseObject] = []
    for text in args.objects:
        schema, name = _split_name(text)
        try:
            roots.append(provider.get_object(schema, name))
        except LookupError as exc:
            logger.error(str(exc))
    for urn in args.urns:
        try:
            roots.append(provider.get_object_by_identity(urn))
        except (LookupError, ValueError) as exc:
            logger.error(f"Cannot resolve {urn}: {exc}")

    dependencies = walker.get_dependencies(roots)
    if args.script_out:
        script = walker.build_deployment_script(dependencies, database=args.database)
        Path(args.script_out).write_text(script, encoding="utf-8")
        logger.info(f"Deployment script written to {args.script_out}")
    return [dep.to_dict() for dep in dependencies]


def run_similar_tables(args: argparse.Namespace, config: Config) -> List[Dict[str, Any]]:
    section = config.get_section("similar_tables")
    finder = SimilarTableFinder(_make_connection(args, config))
    threshold = args.threshold if args.threshold is not None else section.get("match_percent_threshold", 0)
    tables = finder.find(
        database=args.database,
        schema=args.schema,
        table=args.table,
        exclude_views=_option(args.exclude_views, section, "exclude_views"),
        include_system_databases=_option(args.include_system_databases, section, "include_system_databases"),
        match_percent_threshold=threshold,
    )
    return [table.to_dict() for table in tables]


def run_upgrade(args: argparse.Namespace, config: Config) -> List[Dict[str, Any]]:
    section = config.get_section("upgrade")
    upgrader = DatabaseUpgrader(_make_connection(args, config))
    results = upgrader.upgrade(
        databases=args.databases,
        exclude=args.exclude,
        all_user_databases=args.all_user_databases,
        force=_option(args.force, section, "force"),
        no_check_db=_option(args.no_check_db, section, "no_check_db"),
        no_update_usage=_option(args.no_update_usage, section, "no_update_usage"),
        no_update_stats=_option(args.no_update_stats, section, "no_update_stats"),
        no_refresh_view=_option(args.no_refresh_view, section, "no_refresh_view"),
    )
    return [result.to_dict() for result in results]


def run_timeline(args: argparse.Namespace, config: Config) -> List[Dict[str, Any]]:
    records = json.loads(Path(args.input).read_text(encoding="utf-8"))
    entries = build_timeline(records, server=args.server_name)
    if args.output and Path(args.output).suffix.lower() in (".html", ".htm"):
        path = Path(args.output)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(render_timeline_html(entries, args.title), encoding="utf-8")
        args.output = None
        logger.info(f"Timeline written to {path}")
        return []
    return timeline_rows(entries)


def run_diagnostics(args: argparse.Namespace, config: Config) -> List[Dict[str, Any]]:
    section = config.get_section("diagnostics")
    runner = DiagnosticsRunner(_make_connection(args, config))
    databases = args.databases or None
    if not databases and args.database and DIAGNOSTIC_QUERIES[args.query].per_database:
        databases = [args.database]
    return runner.run(
        args.query,
        databases=databases,
        include_system_databases=_option(args.include_system_databases, section, "include_system_databases"),
    )


COMMANDS = {
    "dependencies": run_dependencies,
    "similar-tables": run_similar_tables,
    "upgrade": run_upgrade,
    "diagnostics": run_diagnostics,
    "timeline": run_timeline,
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = Config(Path(args.config) if args.config else None)
    log_cfg = config.get_section("logging")
    setup_logger(
        "sql_dba_tools",
        log_dir=log_cfg.get("log_dir", "logs"),
        level=getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO),
        console_level=logging.INFO if args.verbose else logging.WARNING,
    )

    try:
        rows = COMMANDS[args.command](args, config)
    except ValueError as exc:
        logger.error(str(exc))
        return 2
    except Exception as exc:
        logger.error(f"{args.command} failed: {exc}", exc_info=True)
        return 1

    if args.output:
        export_results(rows, Path(args.output))
        logger.info(f"{len(rows)} row(s) written to {args.output}")
    elif rows:
        print(json.dumps(rows, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
