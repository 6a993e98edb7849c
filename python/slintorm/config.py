"""Configuration loading: ``slintorm.ini`` and environment variables."""

from __future__ import annotations

import configparser
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from slintorm.dialects import get_dialect
from slintorm.errors import ConfigurationError
from slintorm.schema import Schema

CONFIG_FILENAME = "slintorm.ini"
SECTION = "slintorm"


def driver_from_url(url: str | None) -> str | None:
    """Infer the driver name from a database URL scheme."""
    if not url or ":" not in url:
        return None
    scheme = url.split(":", 1)[0].lower()
    if scheme in ("sqlite", "sqlite3", "postgres", "postgresql", "mysql", "mariadb"):
        return get_dialect(scheme).name
    return None


@dataclass
class OrmConfig:
    """Settings shared by the ORM facade and the CLI.

    Example slintorm.ini:
        [slintorm]
        database_url = sqlite:///app.db
        schema = schema.json
        timestamps = true
        echo = false
    """

    database_url: str | None = None
    """Database connection URL."""

    driver: str | None = None
    """Engine name; inferred from ``database_url`` when omitted."""

    schema_path: Path | None = None
    """JSON schema description consumed by the migrator and query builder."""

    timestamps: bool = True
    """Synthesise createdAt/updatedAt/deletedAt columns."""

    echo: bool = False
    """Log every statement at INFO."""

    extra: dict[str, Any] = field(default_factory=dict)
    """Additional options from the config file."""

    _config_path: Path | None = None

    def __post_init__(self) -> None:
        if self.driver is None:
            self.driver = driver_from_url(self.database_url)
        elif self.driver:
            self.driver = get_dialect(self.driver).name

    @classmethod
    def from_ini(cls, path: Path | str) -> OrmConfig:
        """Load configuration from the ``[slintorm]`` section of an ini file.

        Relative schema paths are resolved against the file's directory.

        Raises:
            ConfigurationError: If the file or the section is missing.
        """
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}")

        config = configparser.ConfigParser()
        config.read(path)
        if SECTION not in config:
            raise ConfigurationError(f"No [{SECTION}] section in {path}")
        section = config[SECTION]

        schema_path = None
        if section.get("schema"):
            schema_path = Path(section["schema"])
            if not schema_path.is_absolute():
                schema_path = path.parent / schema_path

        known_keys = {"database_url", "driver", "schema", "timestamps", "echo"}
        return cls(
            database_url=section.get("database_url"),
            driver=section.get("driver"),
            schema_path=schema_path,
            timestamps=section.getboolean("timestamps", True),
            echo=section.getboolean("echo", False),
            extra={k: v for k, v in section.items() if k not in known_keys},
            _config_path=path,
        )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> OrmConfig:
        """Build configuration from ``DATABASE_URL``, ``SLINTORM_DRIVER`` and ``SLINTORM_SCHEMA``."""
        env = os.environ if environ is None else environ
        schema = env.get("SLINTORM_SCHEMA")
        return cls(
            database_url=env.get("DATABASE_URL"),
            driver=env.get("SLINTORM_DRIVER"),
            schema_path=Path(schema) if schema else None,
            echo=env.get("SLINTORM_ECHO", "").lower() in ("1", "true", "yes"),
        )

    @classmethod
    def auto_detect(cls, start_path: Path | str | None = None) -> OrmConfig | None:
        """Search for slintorm.ini from ``start_path`` (default: cwd) upwards."""
        current = Path.cwd() if start_path is None else Path(start_path)
        while current != current.parent:
            ini_path = current / CONFIG_FILENAME
            if ini_path.exists():
                return cls.from_ini(ini_path)
            current = current.parent
        return None

    def get_url(self, override: str | None = None) -> str:
        """Database URL, preferring ``override``.

        Raises:
            ConfigurationError: If no URL is available.
        """
        url = override or self.database_url
        if not url:
            raise ConfigurationError("No database URL configured")
        return url

    def load_schema(self, override: Path | str | None = None) -> Schema:
        """Read the schema description.

        Raises:
            ConfigurationError: If no schema path is configured.
        """
        path = override or self.schema_path
        if not path:
            raise ConfigurationError("No schema file configured")
        return Schema.load(path)
