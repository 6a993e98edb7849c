"""SlintORM - schema-driven async ORM core with batched preloading and additive migrations."""

from __future__ import annotations

import logging

from slintorm.config import OrmConfig
from slintorm.dialects import MYSQL, POSTGRES, SQLITE, Dialect, get_dialect
from slintorm.engine import Engine, ExecResult, PostgresEngine, SQLiteEngine, create_engine
from slintorm.errors import ConfigurationError, SchemaNotFoundError, SlintORMError, UnsupportedDriverError
from slintorm.fields import FieldDescriptor, FieldMeta, map_booleans, to_bool
from slintorm.migrations import MigrationReport, MigrationState, Migrator
from slintorm.model import Entity, Model, ModelFactory, ModelHooks
from slintorm.orm import ORM, create_orm
from slintorm.query import QueryBuilder, remove_excluded
from slintorm.relationships import PreloadContext, RelationDescriptor, RelationKind
from slintorm.schema import ModelSchema, Schema

__version__ = "0.1.0"

__all__ = [
    # Core
    "ORM",
    "create_orm",
    "create_engine",
    "Engine",
    "SQLiteEngine",
    "PostgresEngine",
    "ExecResult",
    "OrmConfig",
    # Schema
    "Schema",
    "ModelSchema",
    "FieldDescriptor",
    "FieldMeta",
    "RelationDescriptor",
    "RelationKind",
    # Models
    "Model",
    "ModelFactory",
    "ModelHooks",
    "Entity",
    # Query building
    "QueryBuilder",
    "PreloadContext",
    "remove_excluded",
    "map_booleans",
    "to_bool",
    # Dialects
    "Dialect",
    "get_dialect",
    "SQLITE",
    "POSTGRES",
    "MYSQL",
    # Migrations
    "Migrator",
    "MigrationState",
    "MigrationReport",
    # Errors
    "SlintORMError",
    "ConfigurationError",
    "SchemaNotFoundError",
    "UnsupportedDriverError",
]

logging.getLogger("slintorm").addHandler(logging.NullHandler())
