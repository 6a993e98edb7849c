"""Tests for the command-line interface."""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path

import pytest
from conftest import SCHEMA

from slintorm.cli import main


@pytest.fixture
def schema_file(tmp_path: Path) -> Path:
    path = tmp_path / "schema.json"
    path.write_text(json.dumps(SCHEMA), encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def isolated(tmp_path: Path, monkeypatch):
    """Run every command from an empty directory with no database configured."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("SLINTORM_SCHEMA", raising=False)


def test_no_command_prints_help(capsys):
    assert main([]) == 1
    assert "usage: slintorm" in capsys.readouterr().out


def test_tables(schema_file, capsys):
    assert main(["tables", "--schema", str(schema_file)]) == 0
    out = capsys.readouterr().out
    assert "users (User, primary key id)" in out
    assert "  posts: onetomany -> Post via userId" in out
    assert "post_tags (junction Post <-> Tag)" in out


def test_migrate_creates_tables(tmp_path, schema_file, capsys):
    db = tmp_path / "app.db"
    assert main(["migrate", "--url", f"sqlite:///{db}", "--schema", str(schema_file)]) == 0
    assert "Migrated 5 table(s)." in capsys.readouterr().out

    with sqlite3.connect(db) as conn:
        tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    assert {"users", "posts", "profiles", "tags", "post_tags"} <= tables


def test_migrate_twice_is_idempotent(tmp_path, schema_file, capsys):
    args = ["migrate", "--url", f"sqlite:///{tmp_path / 'app.db'}", "--schema", str(schema_file)]
    assert main(args) == 0
    capsys.readouterr()

    assert main(args) == 0
    assert "created" not in capsys.readouterr().out


def test_migrate_without_timestamps(tmp_path, schema_file):
    db = tmp_path / "app.db"
    assert main(["migrate", "--url", f"sqlite:///{db}", "--schema", str(schema_file), "--no-timestamps"]) == 0

    with sqlite3.connect(db) as conn:
        columns = {row[1] for row in conn.execute('PRAGMA table_info("users")')}
    assert "createdAt" not in columns


def test_migrate_with_config_file(tmp_path, schema_file):
    (tmp_path / "slintorm.ini").write_text(
        f"[slintorm]\ndatabase_url = sqlite:///{tmp_path / 'cfg.db'}\nschema = {schema_file.name}\n"
    )
    assert main(["-c", str(tmp_path / "slintorm.ini"), "migrate"]) == 0
    assert (tmp_path / "cfg.db").exists()


def test_missing_url_is_reported(schema_file, capsys):
    assert main(["migrate", "--schema", str(schema_file)]) == 1
    assert "No database URL configured" in capsys.readouterr().err


def test_missing_schema_is_reported(capsys):
    assert main(["tables"]) == 1
    assert "No schema file configured" in capsys.readouterr().err
