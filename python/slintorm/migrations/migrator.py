"""Idempotent, additive schema synchronisation.

The migrator compares declared fields with what the database already has
and only ever adds: missing tables, columns, indexes, foreign keys and
constraints. Introspection failures propagate; every DDL statement is run
best-effort and its outcome recorded in a :class:`MigrationReport`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from slintorm.dialects import Dialect, get_dialect
from slintorm.engine import ExecuteFn
from slintorm.fields import CURRENT_TIMESTAMP, FieldDescriptor, FieldMeta
from slintorm.migrations.introspection import Introspector
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
    Operation,
    column_def,
    default_value_sql,
    enum_type_name,
    unique_constraint_name,
)
from slintorm.relationships import RelationDescriptor, RelationKind, parent_owns_foreign_key
from slintorm.schema import Schema

logger = logging.getLogger("slintorm.migrations.migrator")


def timestamp_fields() -> dict[str, FieldDescriptor]:
    """Convenience columns added to every model that does not declare them."""
    return {
        "createdAt": FieldDescriptor("Date", FieldMeta(default=CURRENT_TIMESTAMP, index=True)),
        "updatedAt": FieldDescriptor("Date", FieldMeta(default=CURRENT_TIMESTAMP, index=True)),
        "deletedAt": FieldDescriptor("Date", FieldMeta(nullable=True, index=True, soft_delete=True)),
    }


# ========== Results ==========


@dataclass
class DDLOutcome:
    """Result of one best-effort DDL statement."""

    statement: str
    ok: bool
    error: Exception | None = None


@dataclass
class MigrationReport:
    """Everything ``ensure_table`` did (or tried to do) for one table."""

    table: str
    created: bool = False
    skipped: bool = False
    outcomes: list[DDLOutcome] = field(default_factory=list)

    @property
    def statements(self) -> list[str]:
        return [o.statement for o in self.outcomes if o.ok]

    @property
    def failures(self) -> list[DDLOutcome]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def ok(self) -> bool:
        return not self.failures


# ========== State ==========


class MigrationState:
    """Per-connection record of the tables already ensured.

    Also holds foreign keys whose referenced table did not exist yet; they
    are installed once that table is ensured.
    """

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.processed: set[str] = set()
        self.pending: list[tuple[str, ForeignKey]] = []

    async def claim(self, table: str) -> bool:
        """Mark ``table`` processed; False if it already was."""
        async with self.lock:
            if table in self.processed:
                return False
            self.processed.add(table)
            return True

    async def release(self, table: str) -> None:
        async with self.lock:
            self.processed.discard(table)

    def defer(self, table: str, foreign_key: ForeignKey) -> None:
        if (table, foreign_key) not in self.pending:
            self.pending.append((table, foreign_key))

    def take_pending(self, ref_table: str) -> list[tuple[str, ForeignKey]]:
        ready = [(t, fk) for t, fk in self.pending if fk.ref_table == ref_table]
        self.pending = [(t, fk) for t, fk in self.pending if fk.ref_table != ref_table]
        return ready

    def reset(self) -> None:
        self.processed.clear()
        self.pending.clear()


# ========== Migrator ==========


class Migrator:
    """Ensures tables match their field declarations.

    Args:
        execute: Async execute function.
        driver: ``sqlite``, ``postgres`` or ``mysql``.
        schema: Schema used to resolve relation targets and primary keys.
        state: Shared :class:`MigrationState`; a fresh one by default.
        timestamps: Add ``createdAt``/``updatedAt``/``deletedAt`` when missing.

    Example:
        >>> migrator = Migrator(engine, "sqlite", schema)
        >>> report = await migrator.ensure_table("users", schema["User"].fields)
        >>> report.created
        True
    """

    def __init__(
        self,
        execute: ExecuteFn,
        driver: str | Dialect | None = "sqlite",
        schema: Schema | None = None,
        state: MigrationState | None = None,
        timestamps: bool = True,
    ) -> None:
        self.execute = execute
        self.dialect = get_dialect(driver)
        self.schema = schema
        self.state = state or MigrationState()
        self.timestamps = timestamps
        self.introspector = Introspector(execute, self.dialect)

    def __repr__(self) -> str:
        return f"<Migrator {self.dialect.name}>"

    # ========== Public API ==========

    async def ensure_table(
        self,
        table: str,
        fields: Mapping[str, FieldDescriptor],
        relations: Sequence[RelationDescriptor] | None = None,
    ) -> MigrationReport:
        """Create ``table`` or add whatever structure it is missing.

        Tables already ensured through this migrator's state return a
        skipped report without touching the database.
        """
        if not await self.state.claim(table):
            logger.debug("Table %s already ensured, skipping", table)
            return MigrationReport(table, skipped=True)

        if self.timestamps:
            fields = {**fields, **{k: v for k, v in timestamp_fields().items() if k not in fields}}
        foreign_keys = self._declared_foreign_keys(table, fields) + self._relation_foreign_keys(
            table, fields, relations or ()
        )
        try:
            return await self._ensure(table, fields, _dedupe(foreign_keys))
        except BaseException:
            await self.state.release(table)
            raise

    async def migrate_schema(self, schema: Schema | None = None) -> list[MigrationReport]:
        """Ensure every model of ``schema`` plus its many-to-many junction tables."""
        schema = schema if schema is not None else self.schema
        if schema is None:
            return []
        self.schema = schema
        relations = [rel for model in schema.values() for rel in model.relations]

        reports = []
        for model in schema.values():
            reports.append(await self.ensure_table(model.table, model.fields, relations))

        tables = {model.table for model in schema.values()}
        for through, rel in schema.junction_tables().items():
            if through in tables:
                continue
            reports.append(await self._ensure_junction(through, rel))
        return reports

    async def apply_defaults(
        self,
        table: str,
        fields: Mapping[str, FieldDescriptor],
        report: MigrationReport | None = None,
    ) -> MigrationReport:
        """Backfill declared defaults into rows where the column is NULL."""
        if report is None:
            report = MigrationReport(table)
        for name, descriptor in fields.items():
            if descriptor.meta.default is None:
                continue
            value = default_value_sql(descriptor, self.dialect)
            if value is None:
                continue
            await self._run(report, Backfill(table, name, value))
        return report

    # ========== Planning ==========

    async def _ensure(
        self,
        table: str,
        fields: Mapping[str, FieldDescriptor],
        foreign_keys: list[ForeignKey],
    ) -> MigrationReport:
        report = MigrationReport(table)
        exists = await self.introspector.table_exists(table)

        columns: list[ColumnDef] = []
        primary_declared = False
        for name, descriptor in fields.items():
            if descriptor.meta.enum_values and self.dialect.native_enum:
                await self._ensure_enum_type(table, name, descriptor, report)
            col = column_def(name, descriptor, self.dialect, table, primary_declared)
            primary_declared = primary_declared or bool(col.primary_key)
            columns.append(col)

        if not exists:
            inline = [fk for fk in foreign_keys if await self._can_inline(table, fk)]
            constraints = [fk.clause(self.dialect) for fk in inline]
            constraints += [
                f"CONSTRAINT {unique_constraint_name(table, fk.column)} UNIQUE ({self.dialect.quote(fk.column)})"
                for fk in inline
                if fk.unique
            ]
            logger.info("Creating table %s", table)
            outcome = await self._run(report, CreateTable(table, columns, constraints))
            report.created = outcome.ok
            added = columns
            remaining = [fk for fk in foreign_keys if fk not in inline]
        else:
            existing = set(await self.introspector.columns(table))
            added = [col for col in columns if col.name.lower() not in existing]
            for col in added:
                logger.info("Adding missing column %s to %s", col.name, table)
                await self._run(report, AddColumn(table, col))
            remaining = foreign_keys

        if self.dialect.name == "postgres":
            for col in added:
                if col.comment:
                    await self._run(report, CommentOnColumn(table, col.name, col.comment))

        await self._ensure_indexes(table, fields, report)
        await self._install_foreign_keys(table, remaining, report)
        await self.apply_defaults(table, fields, report)
        await self._install_pending(table, report)

        logger.info("Finished ensuring table %s", table)
        return report

    async def _ensure_enum_type(
        self, table: str, column: str, descriptor: FieldDescriptor, report: MigrationReport
    ) -> None:
        type_name = enum_type_name(table, column)
        if not await self.introspector.enum_type_exists(type_name):
            await self._run(report, CreateEnumType(type_name, descriptor.meta.enum_values))

    async def _ensure_indexes(
        self, table: str, fields: Mapping[str, FieldDescriptor], report: MigrationReport
    ) -> None:
        wanted = []
        for name, descriptor in fields.items():
            if descriptor.meta.index:
                wanted.append(CreateIndex(table, name))
            if descriptor.meta.unique:
                wanted.append(CreateIndex(table, name, unique=True))
        if not wanted:
            return
        existing = await self.introspector.indexes(table)
        for op in wanted:
            if op.name.lower() not in existing:
                await self._run(report, op)

    async def _can_inline(self, table: str, fk: ForeignKey) -> bool:
        if fk.ref_table == table or self.dialect.allows_forward_references:
            return True
        return await self.introspector.table_exists(fk.ref_table)

    async def _install_foreign_keys(
        self, table: str, foreign_keys: list[ForeignKey], report: MigrationReport
    ) -> None:
        if not foreign_keys:
            return
        if not self.dialect.supports_alter_constraints:
            for fk in foreign_keys:
                logger.debug(
                    "%s cannot add constraints to existing tables; skipping %s.%s",
                    self.dialect.name, table, fk.column,
                )
            return

        existing = await self.introspector.foreign_keys(table)
        constraints = await self.introspector.constraints(table)

        async def install(fk: ForeignKey) -> None:
            if fk.ref_table != table and not await self.introspector.table_exists(fk.ref_table):
                logger.debug("Deferring %s.%s until %s exists", table, fk.column, fk.ref_table)
                self.state.defer(table, fk)
                return
            if fk.signature not in existing:
                await self._run(report, AddForeignKey(table, fk))
            if fk.unique:
                op = AddUniqueConstraint(table, fk.column)
                if op.name.lower() not in constraints:
                    await self._run(report, op)

        await asyncio.gather(*(install(fk) for fk in foreign_keys))

    async def _install_pending(self, table: str, report: MigrationReport) -> None:
        by_table: dict[str, list[ForeignKey]] = {}
        for source_table, fk in self.state.take_pending(table):
            by_table.setdefault(source_table, []).append(fk)
        for source_table, fks in by_table.items():
            await self._install_foreign_keys(source_table, fks, report)

    async def _ensure_junction(self, through: str, rel: RelationDescriptor) -> MigrationReport:
        related_key = rel.related_key or ""
        fields = {
            rel.foreign_key: FieldDescriptor("number", FieldMeta(index=True)),
            related_key: FieldDescriptor("number", FieldMeta(index=True)),
        }
        foreign_keys = [
            ForeignKey(rel.foreign_key, self._table_of(rel.source_model), self._primary_key_of(rel.source_model),
                       on_delete="CASCADE"),
            ForeignKey(related_key, self._table_of(rel.target_model), self._primary_key_of(rel.target_model),
                       on_delete="CASCADE"),
        ]
        if not await self.state.claim(through):
            return MigrationReport(through, skipped=True)
        try:
            return await self._ensure(through, fields, foreign_keys)
        except BaseException:
            await self.state.release(through)
            raise

    # ========== Foreign key discovery ==========

    def _table_of(self, model: str) -> str:
        if self.schema is not None and model in self.schema:
            return self.schema[model].table
        if self.schema is not None:
            found = self.schema.model_for_table(model)
            if found is not None:
                return found.table
        return model.lower()

    def _primary_key_of(self, model_or_table: str) -> str:
        if self.schema is None:
            return "id"
        model = self.schema.get(model_or_table) or self.schema.model_for_table(model_or_table)
        return model.primary_key if model is not None else "id"

    def _declared_foreign_keys(self, table: str, fields: Mapping[str, FieldDescriptor]) -> list[ForeignKey]:
        result = []
        for name, descriptor in fields.items():
            target = descriptor.meta.foreign_key_target
            if target:
                result.append(ForeignKey(name, self._table_of(target), self._primary_key_of(target)))
        return result

    def _carrier(self, rel: RelationDescriptor, fields: Mapping[str, FieldDescriptor], table: str) -> tuple[str, str]:
        """``(carrier_model, referenced_model)`` for a non many-to-many relation."""
        if rel.kind is RelationKind.ONE_TO_MANY:
            return rel.target_model, rel.source_model
        if self.schema is not None and rel.source_model in self.schema and rel.target_model in self.schema:
            source, target = self.schema[rel.source_model], self.schema[rel.target_model]
            owns = parent_owns_foreign_key(rel, source, target)
        else:
            owns = self._table_of(rel.source_model) == table and rel.foreign_key in fields
        if owns:
            return rel.source_model, rel.target_model
        return rel.target_model, rel.source_model

    def _relation_foreign_keys(
        self,
        table: str,
        fields: Mapping[str, FieldDescriptor],
        relations: Sequence[RelationDescriptor],
    ) -> list[ForeignKey]:
        result = []
        for rel in relations:
            if rel.kind is RelationKind.MANY_TO_MANY or rel.foreign_key not in fields:
                continue
            carrier, referenced = self._carrier(rel, fields, table)
            if self._table_of(carrier) != table:
                continue
            result.append(
                ForeignKey(
                    column=rel.foreign_key,
                    ref_table=self._table_of(referenced),
                    ref_column=self._primary_key_of(referenced),
                    on_delete=rel.meta.on_delete,
                    on_update=rel.meta.on_update,
                    match=rel.meta.match,
                    deferrable=rel.meta.deferrable,
                    unique=rel.kind is RelationKind.ONE_TO_ONE,
                )
            )
        return result

    # ========== Execution ==========

    async def _run(self, report: MigrationReport, operation: Operation) -> DDLOutcome:
        """Execute one DDL statement, logging and recording failures."""
        statement = operation.to_sql(self.dialect)
        try:
            await self.execute(statement, [])
        except Exception as e:
            logger.warning("Statement failed (%s): %s", e, statement)
            outcome = DDLOutcome(statement, ok=False, error=e)
        else:
            outcome = DDLOutcome(statement, ok=True)
        report.outcomes.append(outcome)
        return outcome


def _dedupe(foreign_keys: list[ForeignKey]) -> list[ForeignKey]:
    # The same column can be reached from both sides of a relation
    merged: dict[tuple[str, str], ForeignKey] = {}
    for fk in foreign_keys:
        previous = merged.get(fk.signature)
        if previous is None:
            merged[fk.signature] = fk
            continue
        merged[fk.signature] = ForeignKey(
            column=previous.column,
            ref_table=previous.ref_table,
            ref_column=previous.ref_column,
            on_delete=previous.on_delete or fk.on_delete,
            on_update=previous.on_update or fk.on_update,
            match=previous.match or fk.match,
            deferrable=previous.deferrable or fk.deferrable,
            unique=previous.unique or fk.unique,
        )
    return list(merged.values())
