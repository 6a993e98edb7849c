"""Schema migrations: column generation, introspection and the migrator."""

from __future__ import annotations

from slintorm.migrations.introspection import Introspector
from slintorm.migrations.migrator import (
    DDLOutcome,
    MigrationReport,
    MigrationState,
    Migrator,
    timestamp_fields,
)
from slintorm.migrations.operations import (
    AddColumn,
    AddForeignKey,
    AddUniqueConstraint,
    Backfill,
    ColumnDef,
    CommentOnColumn,
    CreateEnumType,
    CreateIndex,
    CreateTable,
    ForeignKey,
    column_def,
    sql_type_for,
)

__all__ = [
    # Migrator
    "Migrator",
    "MigrationState",
    "MigrationReport",
    "DDLOutcome",
    "timestamp_fields",
    # Introspection
    "Introspector",
    # Operations
    "ColumnDef",
    "column_def",
    "sql_type_for",
    "CreateTable",
    "AddColumn",
    "CreateIndex",
    "ForeignKey",
    "AddForeignKey",
    "AddUniqueConstraint",
    "CreateEnumType",
    "CommentOnColumn",
    "Backfill",
]
