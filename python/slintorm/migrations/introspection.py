"""Live schema introspection used to diff declared fields against the database.

Failures here propagate: a migration cannot be planned without knowing
what already exists.
"""

from __future__ import annotations

from typing import Any

from slintorm.dialects import Dialect
from slintorm.engine import ExecuteFn

_TABLE_EXISTS = {
    "sqlite": "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
    "postgres": "SELECT tablename FROM pg_catalog.pg_tables WHERE tablename = $1",
    "mysql": (
        "SELECT table_name FROM information_schema.tables "
        "WHERE table_schema = DATABASE() AND table_name = ?"
    ),
}

_COLUMNS = {
    "postgres": "SELECT column_name AS name FROM information_schema.columns WHERE table_name = $1",
    "mysql": (
        "SELECT column_name AS name FROM information_schema.columns "
        "WHERE table_schema = DATABASE() AND table_name = ?"
    ),
}

_INDEXES = {
    "sqlite": "SELECT name FROM sqlite_master WHERE type='index' AND tbl_name=?",
    "postgres": "SELECT indexname AS name FROM pg_indexes WHERE tablename = $1",
    "mysql": (
        "SELECT index_name AS name FROM information_schema.statistics "
        "WHERE table_schema = DATABASE() AND table_name = ?"
    ),
}

_FOREIGN_KEYS = {
    "postgres": (
        "SELECT kcu.column_name AS column_name, ccu.table_name AS ref_table "
        "FROM information_schema.table_constraints tc "
        "JOIN information_schema.key_column_usage kcu "
        "ON tc.constraint_name = kcu.constraint_name AND tc.table_schema = kcu.table_schema "
        "JOIN information_schema.constraint_column_usage ccu "
        "ON ccu.constraint_name = tc.constraint_name AND ccu.table_schema = tc.table_schema "
        "WHERE tc.constraint_type = 'FOREIGN KEY' AND tc.table_name = $1"
    ),
    "mysql": (
        "SELECT column_name AS column_name, referenced_table_name AS ref_table "
        "FROM information_schema.key_column_usage "
        "WHERE table_schema = DATABASE() AND table_name = ? AND referenced_table_name IS NOT NULL"
    ),
}

_CONSTRAINTS = {
    "postgres": "SELECT constraint_name AS name FROM information_schema.table_constraints WHERE table_name = $1",
    "mysql": (
        "SELECT constraint_name AS name FROM information_schema.table_constraints "
        "WHERE table_schema = DATABASE() AND table_name = ?"
    ),
}


def _value(row: dict[str, Any], *keys: str) -> Any:
    # MySQL may report information_schema columns upper-cased
    for key in keys:
        for candidate in (key, key.upper()):
            if candidate in row:
                return row[candidate]
    return None


class Introspector:
    """Reads tables, columns, indexes and constraints through an execute function."""

    def __init__(self, execute: ExecuteFn, dialect: Dialect) -> None:
        self.execute = execute
        self.dialect = dialect

    async def _rows(self, sql: str, params: list[Any]) -> list[dict[str, Any]]:
        result = await self.execute(sql, params)
        return [dict(r) for r in result.rows or []]

    async def table_exists(self, table: str) -> bool:
        rows = await self._rows(_TABLE_EXISTS[self.dialect.name], [table])
        return bool(rows)

    async def columns(self, table: str) -> list[str]:
        """Lower-cased column names of ``table``."""
        if self.dialect.name == "sqlite":
            rows = await self._rows(f"PRAGMA table_info({self.dialect.quote(table)})", [])
        else:
            rows = await self._rows(_COLUMNS[self.dialect.name], [table])
        return [str(_value(r, "name", "column_name")).lower() for r in rows]

    async def indexes(self, table: str) -> set[str]:
        rows = await self._rows(_INDEXES[self.dialect.name], [table])
        return {str(_value(r, "name", "indexname", "index_name")).lower() for r in rows}

    async def foreign_keys(self, table: str) -> set[tuple[str, str]]:
        """``(column, referenced_table)`` pairs, lower-cased."""
        if self.dialect.name == "sqlite":
            rows = await self._rows(f"PRAGMA foreign_key_list({self.dialect.quote(table)})", [])
            return {(str(r["from"]).lower(), str(r["table"]).lower()) for r in rows}
        rows = await self._rows(_FOREIGN_KEYS[self.dialect.name], [table])
        return {
            (str(_value(r, "column_name")).lower(), str(_value(r, "ref_table")).lower())
            for r in rows
        }

    async def constraints(self, table: str) -> set[str]:
        """Names of the table's constraints (SQLite keeps none by name)."""
        if self.dialect.name == "sqlite":
            return set()
        rows = await self._rows(_CONSTRAINTS[self.dialect.name], [table])
        return {str(_value(r, "name", "constraint_name")).lower() for r in rows}

    async def enum_type_exists(self, type_name: str) -> bool:
        if not self.dialect.native_enum:
            return False
        rows = await self._rows("SELECT 1 FROM pg_type WHERE typname = $1", [type_name])
        return bool(rows)
