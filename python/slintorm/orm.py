"""Top-level facade tying an engine, a schema and the migrator together."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from slintorm.config import OrmConfig
from slintorm.engine import Engine, create_engine
from slintorm.errors import ConfigurationError
from slintorm.migrations.migrator import MigrationReport, Migrator
from slintorm.model import Model, ModelFactory, ModelHooks
from slintorm.schema import Schema

logger = logging.getLogger("slintorm.orm")


@dataclass
class ORM:
    """A connected engine plus everything bound to it.

    Example:
        >>> async with await create_orm("sqlite::memory:", schema) as orm:
        ...     Users = orm.define_model("users", "User")
        ...     await Users.insert({"name": "Alice"})
    """

    engine: Engine
    schema: Schema
    migrator: Migrator
    factory: ModelFactory = field(init=False)

    def __post_init__(self) -> None:
        self.factory = ModelFactory(self.engine, self.schema, self.engine.dialect, self.migrator)

    async def __aenter__(self) -> ORM:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def driver(self) -> str:
        return self.engine.dialect.name

    def define_model(self, table: str, model_name: str | None = None, hooks: ModelHooks | None = None) -> Model:
        return self.factory.define_model(table, model_name, hooks)

    async def migrate(self) -> list[MigrationReport]:
        """Ensure every table of the schema exists with all declared structure."""
        reports = await self.migrator.migrate_schema(self.schema)
        failed = sum(len(r.failures) for r in reports)
        if failed:
            logger.warning("Migration finished with %d failed statement(s)", failed)
        return reports

    async def close(self) -> None:
        await self.engine.close()


async def create_orm(
    url: str | None = None,
    schema: Schema | Mapping[str, Any] | Path | str | None = None,
    config: OrmConfig | None = None,
    *,
    timestamps: bool | None = None,
    echo: bool | None = None,
) -> ORM:
    """Connect to ``url`` and bind ``schema`` to it.

    Missing arguments are taken from ``config``, then from a ``slintorm.ini``
    found from the working directory upwards, then from the environment.

    Args:
        url: Database URL such as ``sqlite:///app.db`` or ``postgresql://...``.
        schema: A :class:`Schema`, its mapping form, or a path to its JSON file.
        config: Explicit configuration.
        timestamps: Override the configured timestamp columns switch.
        echo: Override the configured statement echo.

    Raises:
        ConfigurationError: If no URL or no schema can be found.
    """
    if config is None:
        config = OrmConfig.auto_detect() or OrmConfig.from_env()

    if schema is None:
        schema = config.load_schema()
    elif isinstance(schema, (str, Path)):
        schema = Schema.load(schema)
    elif not isinstance(schema, Schema):
        schema = Schema.from_dict(schema)
    if not schema:
        raise ConfigurationError("Schema has no models")

    engine = create_engine(config.get_url(url), echo=config.echo if echo is None else echo)
    await engine.connect()
    migrator = Migrator(
        engine,
        engine.dialect,
        schema,
        timestamps=config.timestamps if timestamps is None else timestamps,
    )
    return ORM(engine, schema, migrator)
