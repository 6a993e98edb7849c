"""DDL operations and column definitions generated from field descriptors."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from slintorm.dialects import Dialect
from slintorm.fields import CURRENT_TIMESTAMP, FieldDescriptor, semantic_sql_type

_LENGTH_TYPES = ("CHAR", "VARCHAR")


def quote_literal(value: Any, dialect: Dialect) -> str:
    """Render a Python value as a SQL literal."""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        if dialect.name == "postgres":
            return "TRUE" if value else "FALSE"
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (dict, list)):
        value = json.dumps(value)
    return "'" + str(value).replace("'", "''") + "'"


def current_timestamp_sql(descriptor: FieldDescriptor, dialect: Dialect) -> str:
    """Expression producing "now" for a column of this field's type."""
    if dialect.name != "sqlite":
        return CURRENT_TIMESTAMP
    if descriptor.is_date and dialect.date_type == "INTEGER":
        return "(strftime('%s','now'))"
    return "(datetime('now'))"


def default_value_sql(descriptor: FieldDescriptor, dialect: Dialect) -> str | None:
    """SQL expression for the field's declared default, or None."""
    meta = descriptor.meta
    if not meta.has_default:
        return None
    value = meta.default
    if value == CURRENT_TIMESTAMP:
        return current_timestamp_sql(descriptor, dialect)
    if descriptor.is_boolean and isinstance(value, str) and value.lower() in ("true", "false"):
        value = value.lower() == "true"
    return quote_literal(value, dialect)


def enum_type_name(table: str, column: str) -> str:
    return f"{table}_{column}_enum"


def sql_type_for(name: str, descriptor: FieldDescriptor, dialect: Dialect, table: str) -> str:
    """Column type for a field.

    Priority: enum, JSON, date, then the generic semantic mapping with
    precision, length and array modifiers.
    """
    meta = descriptor.meta
    if meta.enum_values:
        if dialect.native_enum:
            return dialect.quote(enum_type_name(table, name))
        return "VARCHAR(255)"
    if meta.json:
        return dialect.json_type
    if descriptor.is_date:
        return dialect.date_type

    sql_type = semantic_sql_type(descriptor.type)
    if meta.precision is not None and sql_type in ("INTEGER", "TEXT"):
        sql_type = f"NUMERIC({meta.precision}, {meta.scale})" if meta.scale is not None else f"NUMERIC({meta.precision})"
    elif meta.length and sql_type == "TEXT" and "string" in descriptor.type.lower():
        sql_type = f"VARCHAR({meta.length})"
    elif meta.length and sql_type.startswith(_LENGTH_TYPES):
        sql_type = f"{sql_type.split('(')[0]}({meta.length})"

    if meta.array:
        return f"{sql_type}[]" if dialect.name == "postgres" else "TEXT"
    return sql_type


@dataclass
class ColumnDef:
    """One column of a CREATE TABLE or ALTER TABLE ADD COLUMN statement."""

    name: str
    type_: str
    primary_key: str = ""
    nullable: bool = True
    default: str | None = None
    generated: str | None = None
    collate: str | None = None
    checks: list[str] = field(default_factory=list)
    comment: str | None = None

    def to_sql(self, dialect: Dialect) -> str:
        parts = [dialect.quote(self.name), self.type_]
        if self.primary_key:
            parts.append(self.primary_key)
        if not self.nullable:
            parts.append("NOT NULL")
        if self.default:
            parts.append(self.default)
        if self.generated:
            parts.append(f"GENERATED ALWAYS AS ({self.generated}) STORED")
        if self.collate:
            parts.append(f"COLLATE {self.collate}")
        parts.extend(f"CHECK ({c})" for c in self.checks)
        if self.comment and dialect.name == "mysql":
            parts.append(f"COMMENT {quote_literal(self.comment, dialect)}")
        return " ".join(parts)

    def without_primary_key(self) -> ColumnDef:
        """Copy usable in ALTER TABLE ADD COLUMN, where keys cannot be added."""
        type_ = "INTEGER" if self.type_ == "SERIAL" else self.type_
        return ColumnDef(
            name=self.name,
            type_=type_,
            nullable=self.nullable,
            default=self.default,
            generated=self.generated,
            collate=self.collate,
            checks=list(self.checks),
            comment=self.comment,
        )


_AUTO_PRIMARY_KEY = {
    "sqlite": ("INTEGER", "PRIMARY KEY AUTOINCREMENT"),
    "postgres": ("SERIAL", "PRIMARY KEY"),
    "mysql": ("INTEGER", "AUTO_INCREMENT PRIMARY KEY"),
}


def column_def(
    name: str,
    descriptor: FieldDescriptor,
    dialect: Dialect,
    table: str,
    primary_declared: bool = False,
) -> ColumnDef:
    """Build the column definition for one field.

    Example:
        >>> column_def("title", FieldDescriptor("string", FieldMeta(length=255)), SQLITE, "post").to_sql(SQLITE)
        '"title" VARCHAR(255) NOT NULL'
    """
    meta = descriptor.meta
    col = ColumnDef(name=name, type_=sql_type_for(name, descriptor, dialect, table))

    if meta.auto and not primary_declared:
        col.type_, col.primary_key = _AUTO_PRIMARY_KEY.get(dialect.name, _AUTO_PRIMARY_KEY["sqlite"])
    elif meta.primary_key and not primary_declared:
        col.primary_key = "PRIMARY KEY"

    col.nullable = descriptor.is_nullable

    default = default_value_sql(descriptor, dialect)
    if meta.default_expression:
        default = meta.default_expression
    if meta.json and meta.json_default is not None:
        default = quote_literal(json.dumps(meta.json_default), dialect)
    if default is not None:
        col.default = f"DEFAULT {default}"
    if meta.on_update_now and dialect.name == "mysql":
        col.default = f"{col.default} ON UPDATE CURRENT_TIMESTAMP" if col.default else "ON UPDATE CURRENT_TIMESTAMP"
    if meta.soft_delete and not col.default:
        col.default = "DEFAULT NULL"

    col.generated = meta.generated_expression
    col.collate = meta.collate
    if meta.enum_values and not dialect.native_enum:
        values = ", ".join(quote_literal(v, dialect) for v in meta.enum_values)
        col.checks.append(f"{dialect.quote(name)} IN ({values})")
    if meta.check:
        col.checks.append(meta.check)
    col.comment = meta.comment
    return col


# ========== Operations ==========


@dataclass
class CreateTable:
    """CREATE TABLE IF NOT EXISTS with columns and inline constraints."""

    table_name: str
    columns: list[ColumnDef]
    constraints: list[str] = field(default_factory=list)

    def to_sql(self, dialect: Dialect) -> str:
        body = [c.to_sql(dialect) for c in self.columns] + self.constraints
        return f"CREATE TABLE IF NOT EXISTS {dialect.quote(self.table_name)} (\n  " + ",\n  ".join(body) + "\n)"


@dataclass
class AddColumn:
    table_name: str
    column: ColumnDef

    def to_sql(self, dialect: Dialect) -> str:
        column = self.column.without_primary_key()
        if dialect.name == "sqlite":
            # SQLite refuses non-constant defaults here, and NOT NULL without a default;
            # existing rows are backfilled afterwards instead
            if column.default and column.default.startswith("DEFAULT ("):
                column.default = None
            if not column.default:
                column.nullable = True
        return f"ALTER TABLE {dialect.quote(self.table_name)} ADD COLUMN {column.to_sql(dialect)}"


@dataclass
class CreateIndex:
    """``idx_<table>_<column>`` index, or ``unq_`` for unique ones."""

    table_name: str
    column: str
    unique: bool = False

    @property
    def name(self) -> str:
        return f"{'unq' if self.unique else 'idx'}_{self.table_name}_{self.column}"

    def to_sql(self, dialect: Dialect) -> str:
        unique = "UNIQUE " if self.unique else ""
        # MySQL has no IF NOT EXISTS for indexes; callers diff against live indexes
        guard = "" if dialect.name == "mysql" else "IF NOT EXISTS "
        return (
            f"CREATE {unique}INDEX {guard}{self.name} "
            f"ON {dialect.quote(self.table_name)} ({dialect.quote(self.column)})"
        )


@dataclass(frozen=True)
class ForeignKey:
    """A foreign key carried by ``column`` and referencing ``ref_table``."""

    column: str
    ref_table: str
    ref_column: str = "id"
    on_delete: str | None = None
    on_update: str | None = None
    match: str | None = None
    deferrable: bool = False
    unique: bool = False

    @property
    def signature(self) -> tuple[str, str]:
        return (self.column.lower(), self.ref_table.lower())

    def clause(self, dialect: Dialect) -> str:
        sql = (
            f"FOREIGN KEY ({dialect.quote(self.column)}) "
            f"REFERENCES {dialect.quote(self.ref_table)}({dialect.quote(self.ref_column)})"
        )
        if self.match:
            sql += f" MATCH {self.match}"
        if self.on_delete:
            sql += f" ON DELETE {self.on_delete}"
        if self.on_update:
            sql += f" ON UPDATE {self.on_update}"
        if self.deferrable and dialect.name != "mysql":
            sql += " DEFERRABLE INITIALLY DEFERRED"
        return sql


def foreign_key_name(table: str, column: str) -> str:
    return f"fk_{table}_{column}"


def unique_constraint_name(table: str, column: str) -> str:
    return f"unique_{table}_{column}"


@dataclass
class AddForeignKey:
    table_name: str
    foreign_key: ForeignKey

    @property
    def name(self) -> str:
        return foreign_key_name(self.table_name, self.foreign_key.column)

    def to_sql(self, dialect: Dialect) -> str:
        return (
            f"ALTER TABLE {dialect.quote(self.table_name)} "
            f"ADD CONSTRAINT {self.name} {self.foreign_key.clause(dialect)}"
        )


@dataclass
class AddUniqueConstraint:
    table_name: str
    column: str

    @property
    def name(self) -> str:
        return unique_constraint_name(self.table_name, self.column)

    def to_sql(self, dialect: Dialect) -> str:
        return (
            f"ALTER TABLE {dialect.quote(self.table_name)} "
            f"ADD CONSTRAINT {self.name} UNIQUE ({dialect.quote(self.column)})"
        )


@dataclass
class CreateEnumType:
    type_name: str
    values: tuple[str, ...]

    def to_sql(self, dialect: Dialect) -> str:
        values = ", ".join(quote_literal(v, dialect) for v in self.values)
        return f"CREATE TYPE {dialect.quote(self.type_name)} AS ENUM ({values})"


@dataclass
class CommentOnColumn:
    table_name: str
    column: str
    comment: str

    def to_sql(self, dialect: Dialect) -> str:
        target = f"{dialect.quote(self.table_name)}.{dialect.quote(self.column)}"
        return f"COMMENT ON COLUMN {target} IS {quote_literal(self.comment, dialect)}"


@dataclass
class Backfill:
    """Set ``column`` to ``value_sql`` on rows where it is still NULL."""

    table_name: str
    column: str
    value_sql: str

    def to_sql(self, dialect: Dialect) -> str:
        col = dialect.quote(self.column)
        return f"UPDATE {dialect.quote(self.table_name)} SET {col} = {self.value_sql} WHERE {col} IS NULL"


Operation = (
    CreateTable
    | AddColumn
    | CreateIndex
    | AddForeignKey
    | AddUniqueConstraint
    | CreateEnumType
    | CommentOnColumn
    | Backfill
)
