"""Command-line interface for SlintORM.

Usage:
    slintorm migrate [-c slintorm.ini] [--url URL] [--schema schema.json]
    slintorm tables [--schema schema.json]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any

from slintorm.config import OrmConfig
from slintorm.errors import ConfigurationError


def main(args: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="slintorm",
        description="SlintORM - schema-driven tables and migrations",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Log every statement and migration step",
    )
    parser.add_argument(
        "-c", "--config",
        help="Path to slintorm.ini (default: auto-detect)",
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # migrate command
    migrate_parser = subparsers.add_parser("migrate", help="Create or extend tables to match the schema")
    migrate_parser.add_argument("--url", help="Database URL (overrides config)")
    migrate_parser.add_argument("--schema", help="Schema JSON file (overrides config)")
    migrate_parser.add_argument(
        "--no-timestamps",
        action="store_true",
        help="Do not add createdAt/updatedAt/deletedAt columns",
    )

    # tables command
    tables_parser = subparsers.add_parser("tables", help="List the tables the schema declares")
    tables_parser.add_argument("--schema", help="Schema JSON file (overrides config)")

    # Parse arguments
    parsed = parser.parse_args(args)

    if parsed.command is None:
        parser.print_help()
        return 1

    if parsed.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")

    try:
        if parsed.command == "migrate":
            return asyncio.run(_handle_migrate(parsed))
        if parsed.command == "tables":
            return _handle_tables(parsed)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 0


def _load_config(args: Any) -> OrmConfig:
    """Load config from args, auto-detect, or the environment."""
    if getattr(args, "config", None):
        return OrmConfig.from_ini(Path(args.config))
    return OrmConfig.auto_detect() or OrmConfig.from_env()


async def _handle_migrate(args: Any) -> int:
    """Run the migrator over every model of the schema."""
    from slintorm.orm import create_orm

    config = _load_config(args)
    schema = config.load_schema(args.schema)
    orm = await create_orm(
        args.url,
        schema,
        config,
        timestamps=False if args.no_timestamps else None,
        echo=True if args.verbose else None,
    )
    try:
        reports = await orm.migrate()
    finally:
        await orm.close()

    failed = 0
    for report in reports:
        if report.skipped:
            continue
        status = "created" if report.created else "checked"
        print(f"  {report.table}: {status}, {len(report.statements)} statement(s)")
        for failure in report.failures:
            failed += 1
            print(f"    ! {failure.statement}: {failure.error}")

    if failed:
        print(f"Migration finished with {failed} failed statement(s).")
        return 1
    print(f"Migrated {len(reports)} table(s).")
    return 0


def _handle_tables(args: Any) -> int:
    """Print each model with its table, primary key and relations."""
    config = _load_config(args)
    schema = config.load_schema(args.schema)
    for name, model in schema.items():
        print(f"{model.table} ({name}, primary key {model.primary_key})")
        for rel in model.relations:
            print(f"  {rel.field_name}: {rel.kind.value} -> {rel.target_model} via {rel.foreign_key}")
    for through, rel in schema.junction_tables().items():
        print(f"{through} (junction {rel.source_model} <-> {rel.target_model})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
