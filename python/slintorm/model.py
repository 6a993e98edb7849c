"""Table-bound model API: CRUD helpers, lifecycle hooks and entities."""

from __future__ import annotations

import inspect
import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from slintorm.dialects import Dialect, get_dialect
from slintorm.engine import ExecuteFn
from slintorm.errors import ConfigurationError, SchemaNotFoundError
from slintorm.fields import FieldDescriptor, map_booleans
from slintorm.migrations.migrator import Migrator
from slintorm.query import QueryBuilder, WhereClause
from slintorm.schema import ModelSchema, Schema

logger = logging.getLogger("slintorm.model")

Hook = Callable[..., Any]


async def _call_hook(hook: Hook, *args: Any) -> Any:
    result = hook(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


@dataclass
class ModelHooks:
    """Lifecycle callbacks, sync or async.

    ``before_create(item)`` and ``before_update(old, data)`` return the
    (possibly modified) payload; returning ``None`` from any ``before_*``
    hook cancels the operation.
    """

    before_create: Hook | None = None
    after_create: Hook | None = None
    before_update: Hook | None = None
    after_update: Hook | None = None
    before_delete: Hook | None = None
    after_delete: Hook | None = None


class Entity(dict):
    """A result row that can update itself by primary key.

    Example:
        >>> user = await Users.get({"email": "a@example.com"})
        >>> user = await user.patch(name="Alice")
    """

    def __init__(self, row: Mapping[str, Any], model: Model | None = None) -> None:
        super().__init__(row)
        self._model = model

    async def patch(self, **data: Any) -> Entity | None:
        if self._model is None:
            raise ConfigurationError("Entity is not bound to a model")
        pk = self._model.schema.primary_key
        if self.get(pk) is None:
            raise ConfigurationError(f"Entity has no primary key value for {pk!r}")
        return await self._model.update({pk: self[pk]}, data)


class Model:
    """CRUD operations on one table.

    The table is ensured through the migrator before the first operation;
    later calls short-circuit on the migrator's state.
    """

    def __init__(
        self,
        table: str,
        schema: ModelSchema,
        full_schema: Schema,
        execute: ExecuteFn,
        dialect: Dialect,
        migrator: Migrator,
        hooks: ModelHooks | None = None,
    ) -> None:
        self.table = table
        self.schema = schema
        self.full_schema = full_schema
        self.execute = execute
        self.dialect = dialect
        self.migrator = migrator
        self.hooks = hooks or ModelHooks()

    def __repr__(self) -> str:
        return f"<Model {self.schema.name} table={self.table!r}>"

    async def ensure(self) -> None:
        relations = [rel for model in self.full_schema.values() for rel in model.relations]
        await self.migrator.ensure_table(self.table, self.schema.fields, relations)

    # ========== Row conversion ==========

    def _stores_json(self, descriptor: FieldDescriptor) -> bool:
        # Arrays are native only on PostgreSQL; elsewhere the column is TEXT
        return descriptor.meta.json or (descriptor.meta.array and self.dialect.name != "postgres")

    def _encode(self, item: Mapping[str, Any]) -> dict[str, Any]:
        data = {}
        for key, value in item.items():
            descriptor = self.schema.fields.get(key)
            if descriptor is None:
                # Nested relation payloads are not columns
                if self.schema.relation(key) is not None or isinstance(value, (dict, list, tuple)):
                    continue
                data[key] = value
            elif self._stores_json(descriptor):
                data[key] = value if value is None or isinstance(value, str) else json.dumps(value)
            elif descriptor.meta.array and isinstance(value, tuple):
                data[key] = list(value)
            else:
                data[key] = value
        return data

    def _decode(self, row: Mapping[str, Any]) -> Entity:
        data = map_booleans(row, self.schema.fields)
        for name, descriptor in self.schema.fields.items():
            value = data.get(name)
            if not isinstance(value, str):
                continue
            if self._stores_json(descriptor):
                try:
                    data[name] = json.loads(value)
                except ValueError:
                    logger.debug("Column %s.%s holds non-JSON text", self.table, name)
        return Entity(data, self)

    def _where(self, where: Mapping[str, Any], start: int = 0, action: str = "Filter") -> tuple[str, list[Any]]:
        if not where:
            raise ConfigurationError(f"{action} must contain at least one field")
        parts, params = [], []
        for column, value in where.items():
            sql, values = WhereClause(column, "=", value).to_sql(self.dialect, start + len(params))
            parts.append(sql)
            params.extend(values)
        return " AND ".join(parts), params

    # ========== Operations ==========

    def query(self) -> QueryBuilder:
        """Start a fluent query returning :class:`Entity` rows."""
        return QueryBuilder(
            self.table, self.execute, self.schema.name, self.full_schema, self.dialect, row_factory=self._decode
        )

    async def insert(self, item: Mapping[str, Any]) -> Entity | None:
        """Insert a row and return it as stored (defaults included)."""
        await self.ensure()
        if self.hooks.before_create:
            item = await _call_hook(self.hooks.before_create, dict(item))
            if item is None:
                return None

        data = self._encode(item)
        q = self.dialect.quote
        returning = " RETURNING *" if self.dialect.name in ("sqlite", "postgres") else ""
        if data:
            columns = ", ".join(q(c) for c in data)
            sql = (
                f"INSERT INTO {q(self.table)} ({columns}) "
                f"VALUES ({self.dialect.placeholders(len(data))}){returning}"
            )
        else:
            sql = f"INSERT INTO {q(self.table)} DEFAULT VALUES{returning}"
        result = await self.execute(sql, list(data.values()))

        row = result.first()
        if row is not None:
            inserted: Entity | None = self._decode(row)
        elif result.last_insert_id is not None:
            inserted = await self.get({self.schema.primary_key: result.last_insert_id})
        else:
            inserted = await self.get(data) if data else None

        if self.hooks.after_create and inserted is not None:
            await _call_hook(self.hooks.after_create, inserted)
        return inserted

    async def update(self, where: Mapping[str, Any], data: Mapping[str, Any]) -> Entity | None:
        """Update matching rows and return the first one after the change."""
        if not where:
            raise ConfigurationError("Update 'where' condition required")
        if not data:
            raise ConfigurationError("Update data cannot be empty")
        await self.ensure()
        before = await self.get(where)

        if self.hooks.before_update:
            data = await _call_hook(self.hooks.before_update, before, dict(data))
            if data is None:
                return before

        values = self._encode(data)
        if not values:
            raise ConfigurationError("Update data cannot be empty")
        q = self.dialect.quote
        assignments = ", ".join(f"{q(c)} = {self.dialect.placeholder(i)}" for i, c in enumerate(values))
        clause, params = self._where(where, start=len(values), action="Update 'where' condition")
        await self.execute(f"UPDATE {q(self.table)} SET {assignments} WHERE {clause}", [*values.values(), *params])

        lookup = {k: values.get(k, v) for k, v in where.items()}
        after = await self.get(lookup)
        if self.hooks.after_update:
            await _call_hook(self.hooks.after_update, before, after if after is not None else dict(data))
        return after

    async def delete(self, where: Mapping[str, Any]) -> int:
        """Delete matching rows and return how many were removed."""
        if not where:
            raise ConfigurationError("Delete filter cannot be empty")
        await self.ensure()
        target = await self.get(where)
        if self.hooks.before_delete:
            if await _call_hook(self.hooks.before_delete, target if target is not None else dict(where)) is None:
                return 0

        clause, params = self._where(where, action="Delete filter")
        result = await self.execute(f"DELETE FROM {self.dialect.quote(self.table)} WHERE {clause}", params)

        if self.hooks.after_delete:
            await _call_hook(self.hooks.after_delete, target if target is not None else dict(where))
        return result.changes or 0

    async def get(self, where: Mapping[str, Any]) -> Entity | None:
        if not where:
            raise ConfigurationError("Get filter cannot be empty")
        await self.ensure()
        return await self.query().first(where)

    async def get_all(self) -> list[Entity]:
        await self.ensure()
        return await self.query().get()

    async def count(self, where: Mapping[str, Any] | None = None) -> int:
        await self.ensure()
        builder = self.query()
        for column, value in (where or {}).items():
            builder.where(column, "=", value)
        return await builder.count()

    async def exists(self, where: Mapping[str, Any]) -> bool:
        if not where:
            raise ConfigurationError("Exists filter cannot be empty")
        return await self.get(where) is not None

    async def truncate(self) -> None:
        await self.ensure()
        await self.execute(f"DELETE FROM {self.dialect.quote(self.table)}", [])


class ModelFactory:
    """Creates :class:`Model` instances bound to one execute function.

    Example:
        >>> define_model = ModelFactory(engine, schema, "sqlite")
        >>> Users = define_model("users", "User")
        >>> await Users.insert({"name": "Alice"})
    """

    def __init__(
        self,
        execute: ExecuteFn,
        schema: Schema | Mapping[str, Any],
        driver: str | Dialect | None = "sqlite",
        migrator: Migrator | None = None,
    ) -> None:
        self.execute = execute
        self.schema = schema if isinstance(schema, Schema) else Schema.from_dict(schema)
        self.dialect = get_dialect(driver)
        self.migrator = migrator or Migrator(execute, self.dialect, self.schema)

    def define_model(self, table: str, model_name: str | None = None, hooks: ModelHooks | None = None) -> Model:
        """Bind a model to ``table``.

        Raises:
            SchemaNotFoundError: If neither ``model_name`` nor ``table``
                matches a model of the schema.
        """
        if model_name:
            model = self.schema.resolve(model_name)
        else:
            model = self.schema.model_for_table(table)
            if model is None:
                try:
                    model = self.schema.resolve(table)
                except SchemaNotFoundError:
                    raise SchemaNotFoundError(f"No model for table {table!r}") from None
        return Model(table, model, self.schema, self.execute, self.dialect, self.migrator, hooks)

    __call__ = define_model
