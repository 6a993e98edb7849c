"""Fluent query builder with batched relation preloading."""

from __future__ import annotations

import copy
import logging
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from slintorm.dialects import Dialect, get_dialect
from slintorm.engine import ExecuteFn
from slintorm.errors import ConfigurationError, SchemaNotFoundError
from slintorm.fields import map_booleans
from slintorm.relationships import PreloadContext, Row, loader_for
from slintorm.schema import ModelSchema, Schema

logger = logging.getLogger("slintorm.query")

OPERATORS = ("=", "!=", "<", "<=", ">", ">=", "LIKE", "ILIKE", "IN", "NOT IN")

_STRING_LITERAL = re.compile(r"('(?:[^']|'')*')")


def normalize_operator(op: str) -> str:
    """Upper-case and validate a comparison operator.

    Raises:
        ConfigurationError: If the operator is not supported.
    """
    normalized = " ".join(str(op).upper().split())
    if normalized not in OPERATORS:
        raise ConfigurationError(f"Unsupported operator: {op!r}")
    return normalized


def remove_excluded(node: Any, paths: Sequence[str]) -> Any:
    """Drop excluded keys from a row graph.

    Undotted paths remove the key at the current level; dotted paths are
    narrowed to the matching key and applied one level down. Lists are
    walked element by element.

    Example:
        >>> remove_excluded({"a": 1, "b": {"c": 2, "d": 3}}, ["a", "b.c"])
        {'b': {'d': 3}}
    """
    paths = [p for p in paths if p]
    if not paths:
        return node
    if isinstance(node, (list, tuple)):
        return [remove_excluded(item, paths) for item in node]
    if not isinstance(node, Mapping):
        return node

    direct = {p for p in paths if "." not in p}
    result: dict[str, Any] = {}
    for key, value in node.items():
        if key in direct:
            continue
        prefix = f"{key}."
        narrowed = [p[len(prefix):] for p in paths if p.startswith(prefix)]
        result[key] = remove_excluded(value, narrowed) if narrowed else value
    return result


# ========== WHERE clauses ==========


@dataclass
class WhereClause:
    """A ``column <op> value`` predicate."""

    column: str
    operator: str
    value: Any

    def to_sql(self, dialect: Dialect, index: int) -> tuple[str, list[Any]]:
        col = dialect.quote(self.column)
        op = self.operator

        if op in ("IN", "NOT IN"):
            if isinstance(self.value, (list, tuple, set, frozenset)):
                values = list(self.value)
            else:
                values = [self.value]
            if not values:
                return ("1 = 0" if op == "IN" else "1 = 1"), []
            return f"{col} {op} ({dialect.placeholders(len(values), index)})", values

        if self.value is None and op in ("=", "!="):
            return f"{col} IS {'NOT ' if op == '!=' else ''}NULL", []

        if op == "ILIKE" and not dialect.native_ilike:
            return dialect.case_insensitive_like(self.column, index), [self.value]

        return f"{col} {op} {dialect.placeholder(index)}", [self.value]


@dataclass
class RawClause:
    """Raw SQL predicate; ``?`` markers bind ``params`` in order."""

    sql: str
    params: list[Any] = field(default_factory=list)

    def to_sql(self, dialect: Dialect, index: int) -> tuple[str, list[Any]]:
        return dialect.renumber(self.sql, index), list(self.params)


@dataclass
class CaseInsensitiveLike:
    """Substring match ignoring case, rendered per dialect."""

    column: str
    value: str

    def to_sql(self, dialect: Dialect, index: int) -> tuple[str, list[Any]]:
        return dialect.case_insensitive_like(self.column, index), [f"%{self.value}%"]


@dataclass
class JoinClause:
    kind: str
    table: str
    left: str
    operator: str
    right: str

    def to_sql(self, dialect: Dialect) -> str:
        return (
            f"{self.kind} {dialect.quote(self.table)} "
            f"ON {dialect.quote(self.left)} {self.operator} {dialect.quote(self.right)}"
        )


def _quote_column(dialect: Dialect, column: str) -> str:
    # Expressions such as COUNT(*) or "name AS alias" are passed through
    if "(" in column or " " in column:
        return column
    return dialect.quote(column)


# ========== Query builder ==========


class QueryBuilder:
    """Accumulates query intent for one model and executes it.

    Fluent methods return the builder itself. Calling :meth:`get` twice
    re-executes the same accumulated intent.

    Args:
        table: Table the base query reads from.
        execute: Async execute function returning an object with ``rows``.
        model_name: Name of the model in ``schema``.
        schema: Schema description (a :class:`Schema` or its dict form).
        dialect: Engine name or :class:`Dialect`.
        row_factory: Optional callable applied to every top-level result row.

    Example:
        >>> users = await (
        ...     QueryBuilder("users", engine.execute, "User", schema)
        ...     .where("age", ">", 18)
        ...     .preload("posts")
        ...     .exclude("password")
        ...     .get()
        ... )
    """

    def __init__(
        self,
        table: str,
        execute: ExecuteFn,
        model_name: str,
        schema: Schema | Mapping[str, Any] | None,
        dialect: str | Dialect | None = "sqlite",
        row_factory: Callable[[Row], Any] | None = None,
    ) -> None:
        if not schema:
            raise SchemaNotFoundError("Schema not found")
        if not model_name:
            raise SchemaNotFoundError("modelName not found")
        self._schema = schema if isinstance(schema, Schema) else Schema.from_dict(schema)
        self._model: ModelSchema = self._schema.resolve(model_name)
        self._table = table
        self._execute = execute
        self._dialect = get_dialect(dialect)
        self._row_factory = row_factory

        self._selects: list[str] = []
        self._distinct = False
        self._where: list[WhereClause | RawClause | CaseInsensitiveLike] = []
        self._joins: list[JoinClause] = []
        self._group_by: list[str] = []
        self._having: list[RawClause] = []
        self._order_by: list[tuple[str, str]] = []
        self._limit: int | None = None
        self._offset: int | None = None
        self._preloads: list[str] = []
        self._excludes: list[str] = []

    def __repr__(self) -> str:
        return f"<QueryBuilder {self._model.name} table={self._table!r}>"

    def clone(self) -> QueryBuilder:
        """Return an independent builder carrying the same accumulated intent."""
        result = copy.copy(self)
        result._selects = self._selects.copy()
        result._where = self._where.copy()
        result._joins = self._joins.copy()
        result._group_by = self._group_by.copy()
        result._having = self._having.copy()
        result._order_by = self._order_by.copy()
        result._preloads = self._preloads.copy()
        result._excludes = self._excludes.copy()
        return result

    @property
    def model(self) -> ModelSchema:
        return self._model

    @property
    def dialect(self) -> Dialect:
        return self._dialect

    def select(self, *columns: str) -> QueryBuilder:
        """Restrict the selected columns (``SELECT *`` when never called)."""
        self._selects.extend(columns)
        return self

    def distinct(self) -> QueryBuilder:
        self._distinct = True
        return self

    def where(self, column: str, operator: str, value: Any) -> QueryBuilder:
        """Add a ``column <operator> value`` predicate.

        ``IN``/``NOT IN`` accept a sequence and bind one parameter per
        element. ``=``/``!=`` against ``None`` render ``IS [NOT] NULL``.

        Example:
            >>> qb.where("age", ">=", 18).where("status", "IN", ["active", "banned"])
        """
        self._where.append(WhereClause(column, normalize_operator(operator), value))
        return self

    def where_raw(self, sql: str, *params: Any) -> QueryBuilder:
        """Add a raw SQL predicate, binding ``params`` to its ``?`` markers."""
        self._where.append(RawClause(sql, list(params)))
        return self

    def case_insensitive_like(self, column: str, value: str) -> QueryBuilder:
        """Match rows whose ``column`` contains ``value``, ignoring case."""
        self._where.append(CaseInsensitiveLike(column, value))
        return self

    ilike = case_insensitive_like

    def order_by(self, column: str, direction: str = "asc") -> QueryBuilder:
        """Sort by ``column``; a trailing ``ASC``/``DESC`` in ``column`` wins over ``direction``."""
        head, _, tail = column.strip().rpartition(" ")
        if head and tail.upper() in ("ASC", "DESC"):
            column, direction = head.rstrip(), tail
        direction = direction.upper()
        if direction not in ("ASC", "DESC"):
            raise ConfigurationError(f"Invalid sort direction: {direction!r}")
        self._order_by.append((column, direction))
        return self

    def group_by(self, *columns: str) -> QueryBuilder:
        self._group_by.extend(columns)
        return self

    def having(self, sql: str, *params: Any) -> QueryBuilder:
        self._having.append(RawClause(sql, list(params)))
        return self

    def limit(self, n: int) -> QueryBuilder:
        self._limit = int(n)
        return self

    def offset(self, n: int) -> QueryBuilder:
        self._offset = int(n)
        return self

    def join(self, table: str, left: str, operator: str, right: str) -> QueryBuilder:
        """Add an inner join, e.g. ``join("posts", "users.id", "=", "posts.userId")``."""
        self._joins.append(JoinClause("JOIN", table, left, operator, right))
        return self

    def left_join(self, table: str, left: str, operator: str, right: str) -> QueryBuilder:
        self._joins.append(JoinClause("LEFT JOIN", table, left, operator, right))
        return self

    def exclude(self, *paths: str) -> QueryBuilder:
        """Remove fields from the results; dotted paths reach into preloads."""
        self._excludes.extend(p for p in paths if p)
        return self

    def preload(self, path: str) -> QueryBuilder:
        """Eager load a relation; dotted paths chain through nested relations."""
        if path and path not in self._preloads:
            self._preloads.append(path)
        return self

    # ========== Statement construction ==========

    def _build(self, columns_sql: str, *, paginate: bool = True) -> tuple[str, list[Any]]:
        d = self._dialect
        params: list[Any] = []

        sql = "SELECT "
        if self._distinct:
            sql += "DISTINCT "
        sql += f"{columns_sql} FROM {d.quote(self._table)}"

        if self._joins:
            sql += " " + " ".join(j.to_sql(d) for j in self._joins)

        if self._where:
            predicates = []
            for clause in self._where:
                fragment, values = clause.to_sql(d, len(params))
                predicates.append(fragment)
                params.extend(values)
            sql += " WHERE " + " AND ".join(predicates)

        if self._group_by:
            sql += " GROUP BY " + ", ".join(_quote_column(d, c) for c in self._group_by)

        if self._having:
            predicates = []
            for clause in self._having:
                fragment, values = clause.to_sql(d, len(params))
                predicates.append(fragment)
                params.extend(values)
            sql += " HAVING " + " AND ".join(predicates)

        if paginate:
            if self._order_by:
                sql += " ORDER BY " + ", ".join(
                    f"{_quote_column(d, col)} {direction}" for col, direction in self._order_by
                )
            if self._limit is not None:
                sql += f" LIMIT {self._limit}"
            if self._offset is not None:
                sql += f" OFFSET {self._offset}"

        return sql, params

    def build_statement(self) -> tuple[str, list[Any]]:
        """Render the accumulated intent as ``(sql, params)``."""
        columns = ", ".join(_quote_column(self._dialect, c) for c in self._selects) or "*"
        return self._build(columns)

    # ========== Execution ==========

    async def get(self) -> list[Any]:
        """Run the query, resolve preloads and apply exclusions."""
        sql, params = self.build_statement()
        result = await self._execute(sql, params)
        rows = [map_booleans(row, self._model.fields) for row in result.rows or []]
        rows = await self.apply_preloads(rows)
        if self._row_factory is not None:
            return [self._row_factory(row) for row in rows]
        return rows

    async def first(self, condition: Mapping[str, Any] | str | None = None) -> Any | None:
        """Return the first matching row or ``None``.

        The condition is applied to a copy, so the builder itself is unchanged.

        Args:
            condition: A mapping of column to value (or ``{"op", "value"}``),
                or a raw SQL string whose bare column names are quoted.

        Example:
            >>> await qb.first({"email": "a@example.com"})
            >>> await qb.first({"age": {"op": ">", "value": 30}})
            >>> await qb.first("age > 30 AND name LIKE 'A%'")
        """
        query = self.clone()
        if isinstance(condition, str):
            query.where_raw(query._quote_known_columns(condition))
        elif condition:
            for column, value in condition.items():
                if isinstance(value, Mapping) and "op" in value and "value" in value:
                    query.where(column, value["op"], value["value"])
                else:
                    query.where(column, "=", value)

        if query._limit is None:
            query.limit(1)
        rows = await query.get()
        return rows[0] if rows else None

    async def count(self) -> int:
        """Count matching rows, ignoring ordering, pagination and preloads."""
        sql, params = self._build("COUNT(*) AS count", paginate=False)
        result = await self._execute(sql, params)
        rows = result.rows or []
        if not rows:
            return 0
        return int(next(iter(rows[0].values())))

    def _quote_known_columns(self, sql: str) -> str:
        columns = sorted(self._model.fields, key=len, reverse=True)
        if not columns:
            return sql
        q = re.escape(self._dialect.quote_char)
        pattern = re.compile(
            rf"(?<![\w{q}$])({'|'.join(re.escape(c) for c in columns)})(?![\w{q}])"
        )
        segments = _STRING_LITERAL.split(sql)
        for i in range(0, len(segments), 2):
            segments[i] = pattern.sub(lambda m: self._dialect.quote(m.group(1)), segments[i])
        return "".join(segments)

    # ========== Preloading ==========

    def _preload_roots(self) -> dict[str, list[str]]:
        roots: dict[str, list[str]] = {}
        for path in self._preloads:
            root, _, rest = path.partition(".")
            nested = roots.setdefault(root, [])
            if rest and rest not in nested:
                nested.append(rest)
        return roots

    def _nested_excludes(self, root: str) -> list[str]:
        prefix = f"{root}."
        return [p[len(prefix):] for p in self._excludes if p.startswith(prefix)]

    async def apply_preloads(self, rows: list[Row], context: PreloadContext | None = None) -> list[Row]:
        """Resolve preload paths for ``rows`` in place.

        Roots are resolved in the order they were first requested, each
        with a single batched query before its nested chain. Top-level
        excludes are applied last so that excluding a preloaded relation
        still removes it.
        """
        if rows and self._preloads:
            context = context or PreloadContext()
            for root, nested in self._preload_roots().items():
                await self._preload_root(rows, root, nested, context)

        top_level = [p for p in self._excludes if "." not in p]
        for row in rows:
            for name in top_level:
                row.pop(name, None)
        return rows

    async def _preload_root(
        self,
        rows: list[Row],
        root: str,
        nested: list[str],
        context: PreloadContext,
    ) -> None:
        relation = self._model.relation(root)
        if relation is None:
            logger.debug("Skipping preload %r: %s declares no such relation", root, self._model.name)
            return
        target = self._schema.get(relation.target_model)
        if target is None:
            logger.debug("Skipping preload %r: target model %s not in schema", root, relation.target_model)
            return

        loader = loader_for(relation, self._model, target, self._execute, self._dialect, rows)
        keys = list(dict.fromkeys(k for k in map(loader.lookup_key, rows) if k is not None))

        if not keys:
            for row in rows:
                row[root] = loader.empty()
            return

        related = await context.load(loader, keys)
        excludes = self._nested_excludes(root)

        assigned: list[Row] = []
        for row in rows:
            matches = related.get(loader.lookup_key(row), [])
            if not loader.collection:
                matches = matches[:1]
            cleaned = [remove_excluded(map_booleans(m, target.fields), excludes) for m in matches]
            assigned.extend(cleaned)
            row[root] = loader.value_for(cleaned)

        if nested and assigned:
            builder = QueryBuilder(target.table, self._execute, target.name, self._schema, self._dialect)
            builder._preloads = list(nested)
            builder._excludes = excludes
            await builder.apply_preloads(assigned, context)
