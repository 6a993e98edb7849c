"""Tests for configuration loading."""

from __future__ import annotations

import json
from pathlib import Path
from textwrap import dedent

import pytest
from conftest import SCHEMA

from slintorm import ConfigurationError, OrmConfig
from slintorm.config import driver_from_url


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """A project directory with slintorm.ini and a schema file."""
    (tmp_path / "schema.json").write_text(json.dumps(SCHEMA), encoding="utf-8")
    ini_content = dedent("""
        [slintorm]
        database_url = sqlite:///app.db
        schema = schema.json
        timestamps = false
        echo = yes
        pool_size = 5
    """).strip()
    (tmp_path / "slintorm.ini").write_text(ini_content)
    return tmp_path


class TestFromIni:
    def test_reads_section(self, project):
        config = OrmConfig.from_ini(project / "slintorm.ini")

        assert config.database_url == "sqlite:///app.db"
        assert config.driver == "sqlite"
        assert config.schema_path == project / "schema.json"
        assert config.timestamps is False
        assert config.echo is True
        assert config.extra == {"pool_size": "5"}

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            OrmConfig.from_ini(tmp_path / "slintorm.ini")

    def test_missing_section(self, tmp_path):
        path = tmp_path / "slintorm.ini"
        path.write_text("[other]\nkey = value\n")
        with pytest.raises(ConfigurationError, match=r"\[slintorm\]"):
            OrmConfig.from_ini(path)

    def test_load_schema_relative_to_file(self, project):
        schema = OrmConfig.from_ini(project / "slintorm.ini").load_schema()
        assert set(schema) == {"User", "Post", "Profile", "Tag"}


class TestAutoDetect:
    def test_finds_config_in_parent(self, project):
        nested = project / "src" / "app"
        nested.mkdir(parents=True)
        config = OrmConfig.auto_detect(nested)
        assert config is not None
        assert config.database_url == "sqlite:///app.db"

    def test_nothing_found(self, tmp_path):
        assert OrmConfig.auto_detect(tmp_path) is None


class TestFromEnv:
    def test_reads_variables(self):
        config = OrmConfig.from_env(
            {
                "DATABASE_URL": "postgresql://u:p@localhost/app",
                "SLINTORM_SCHEMA": "schema.json",
                "SLINTORM_ECHO": "1",
            }
        )
        assert config.driver == "postgres"
        assert config.schema_path == Path("schema.json")
        assert config.echo is True

    def test_explicit_driver_is_normalised(self):
        assert OrmConfig.from_env({"SLINTORM_DRIVER": "postgresql"}).driver == "postgres"

    def test_empty_environment(self):
        config = OrmConfig.from_env({})
        assert config.database_url is None
        assert config.driver is None


class TestAccessors:
    def test_get_url_prefers_override(self):
        assert OrmConfig(database_url="sqlite::memory:").get_url("sqlite:///x.db") == "sqlite:///x.db"

    def test_get_url_missing(self):
        with pytest.raises(ConfigurationError, match="No database URL"):
            OrmConfig().get_url()

    def test_load_schema_missing(self):
        with pytest.raises(ConfigurationError, match="No schema file"):
            OrmConfig().load_schema()


@pytest.mark.parametrize(
    ("url", "driver"),
    [
        ("sqlite:///app.db", "sqlite"),
        ("postgres://localhost/app", "postgres"),
        ("postgresql://localhost/app", "postgres"),
        ("mysql://localhost/app", "mysql"),
        ("redis://localhost", None),
        (None, None),
    ],
)
def test_driver_from_url(url, driver):
    assert driver_from_url(url) == driver
