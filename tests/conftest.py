"""Pytest configuration and fixtures."""

from __future__ import annotations

import os
import re
from collections.abc import Callable, Sequence
from typing import Any

import pytest
import pytest_asyncio

from slintorm import ExecResult, Migrator, Schema, SQLiteEngine

SCHEMA: dict[str, Any] = {
    "User": {
        "table": "users",
        "fields": {
            "id": {"type": "number", "meta": {"auto": True}},
            "name": {"type": "string"},
            "lastname": {"type": "string | undefined"},
            "password": {"type": "string | undefined"},
            "active": {"type": "boolean", "meta": {"default": True}},
            "settings": {"type": "Record<string, unknown>", "meta": {"json": True, "nullable": True}},
        },
        "relations": [
            {"fieldName": "posts", "kind": "onetomany", "targetModel": "Post", "foreignKey": "userId"},
            {"fieldName": "profile", "kind": "onetoone", "targetModel": "Profile", "foreignKey": "userId"},
        ],
    },
    "Post": {
        "table": "posts",
        "fields": {
            "id": {"type": "number", "meta": {"auto": True}},
            "title": {"type": "string", "meta": {"length": 200}},
            "userId": {"type": "number", "meta": {"index": True}},
            "published": {"type": "boolean", "meta": {"default": False}},
        },
        "relations": [
            {"fieldName": "user", "kind": "manytoone", "targetModel": "User", "foreignKey": "userId"},
            {
                "fieldName": "tags",
                "kind": "manytomany",
                "targetModel": "Tag",
                "foreignKey": "postId",
                "relatedKey": "tagId",
                "through": "post_tags",
            },
        ],
    },
    "Profile": {
        "table": "profiles",
        "fields": {
            "id": {"type": "number", "meta": {"auto": True}},
            "userId": {"type": "number"},
            "bio": {"type": "string | undefined"},
        },
        "relations": [
            {"fieldName": "user", "kind": "onetoone", "targetModel": "User", "foreignKey": "userId"},
        ],
    },
    "Tag": {
        "table": "tags",
        "fields": {
            "name": {"type": "string", "meta": {"unique": True}},
        },
    },
}


class RecordingExecutor:
    """Wraps an execute function and records every statement it runs."""

    def __init__(self, execute: Callable[..., Any]) -> None:
        self._execute = execute
        self.statements: list[tuple[str, list[Any]]] = []

    async def __call__(self, statement: str, params: Sequence[Any] | None = None) -> ExecResult:
        self.statements.append((statement, list(params or [])))
        return await self._execute(statement, params)

    @property
    def sql(self) -> list[str]:
        return [s for s, _ in self.statements]

    def selects_from(self, table: str) -> list[str]:
        return [s for s in self.sql if s.startswith("SELECT") and f'FROM "{table}"' in s]

    def clear(self) -> None:
        self.statements.clear()


_CREATED_TABLE = re.compile(r'CREATE TABLE IF NOT EXISTS ["`]([^"`]+)["`]')


class FakeExecutor:
    """Scripted execute function for engines without a live database.

    ``responses`` pairs a SQL fragment with the rows (or a callable of the
    params returning rows) for statements containing it. Tables created
    through it are remembered so existence checks see them.
    """

    def __init__(
        self,
        responses: Sequence[tuple[str, Any]] = (),
        *,
        tables: Sequence[str] = (),
        failures: Sequence[str] = (),
    ) -> None:
        self.responses = list(responses)
        self.tables = set(tables)
        self.failures = list(failures)
        self.statements: list[tuple[str, list[Any]]] = []

    async def __call__(self, statement: str, params: Sequence[Any] | None = None) -> ExecResult:
        params = list(params or [])
        self.statements.append((statement, params))
        for fragment in self.failures:
            if fragment in statement:
                raise RuntimeError(f"statement rejected: {fragment}")

        created = _CREATED_TABLE.match(statement)
        if created:
            self.tables.add(created.group(1))
            return ExecResult(changes=0)

        if "pg_tables" in statement or "information_schema.tables" in statement:
            return ExecResult(rows=[{"tablename": params[0]}] if params[0] in self.tables else [])

        for fragment, rows in self.responses:
            if fragment in statement:
                rows = rows(params) if callable(rows) else rows
                return ExecResult(rows=[dict(r) for r in rows], changes=len(rows))
        return ExecResult(changes=0)

    @property
    def sql(self) -> list[str]:
        return [s for s, _ in self.statements]

    @property
    def ddl(self) -> list[str]:
        return [s for s in self.sql if s.startswith(("CREATE", "ALTER", "COMMENT"))]


@pytest.fixture
def schema() -> Schema:
    return Schema.from_dict(SCHEMA)


@pytest_asyncio.fixture
async def engine():
    """In-memory SQLite engine."""
    engine = SQLiteEngine(":memory:")
    await engine.connect()
    yield engine
    await engine.close()


@pytest_asyncio.fixture
async def seeded(engine, schema):
    """Engine with every table migrated and sample rows inserted."""
    await Migrator(engine, "sqlite", schema).migrate_schema()

    await engine.execute(
        'INSERT INTO "users" ("id", "name", "lastname", "password", "active") VALUES '
        "(?, ?, ?, ?, ?), (?, ?, ?, ?, ?), (?, ?, ?, ?, ?)",
        [1, "Alice", "Smith", "secret", 1, 2, "Bob", "Jones", "hunter2", 0, 3, "Carol", None, None, 1],
    )
    await engine.execute(
        'INSERT INTO "posts" ("id", "title", "userId", "published") VALUES (?, ?, ?, ?), (?, ?, ?, ?), (?, ?, ?, ?)',
        [1, "First", 1, 1, 2, "Second", 1, 0, 3, "Third", 3, 1],
    )
    await engine.execute('INSERT INTO "profiles" ("id", "userId", "bio") VALUES (?, ?, ?)', [1, 1, "Alice bio"])
    await engine.execute(
        'INSERT INTO "tags" ("id", "name") VALUES (?, ?), (?, ?), (?, ?)',
        [1, "python", 2, "sql", 3, "async"],
    )
    await engine.execute(
        'INSERT INTO "post_tags" ("postId", "tagId") VALUES (?, ?), (?, ?), (?, ?), (?, ?)',
        [1, 1, 1, 1, 1, 2, 3, 3],
    )
    return engine


@pytest.fixture
def recorder(seeded) -> RecordingExecutor:
    return RecordingExecutor(seeded)


@pytest_asyncio.fixture
async def postgres_engine():
    """PostgreSQL engine.

    Set DATABASE_URL to a PostgreSQL database to run these tests.
    Otherwise, this fixture is skipped.
    """
    from slintorm import create_engine

    url = os.environ.get("DATABASE_URL")
    if not url or not url.startswith(("postgres://", "postgresql://")):
        pytest.skip("DATABASE_URL not set to a PostgreSQL database")

    engine = create_engine(url)
    await engine.connect()
    yield engine
    await engine.close()
