import json
import sqlite3

import pytest

from flag_editor import store as store_module
from flag_editor.db import connect
from flag_editor.document import FlagDocumentError
from flag_editor.editor import SaveRequest
from flag_editor.projects import (
    SCHEMA_URL,
    InvalidProjectNameError,
    ProjectExistsError,
    ProjectNotFoundError,
    ProjectStore,
    check_project_file,
)
from flag_editor.store import MemoryKeyValueStore, SqliteKeyValueStore

BOOLEAN_FLAG = {"state": "ENABLED", "variants": {"on": True, "off": False}, "defaultVariant": "on"}


@pytest.fixture(params=["memory", "sqlite"])
def projects(request, tmp_path) -> ProjectStore:
    if request.param == "memory":
        return ProjectStore(MemoryKeyValueStore())
    return ProjectStore(SqliteKeyValueStore(tmp_path / "data" / "flags.db"))


def test_key_value_store_backends(tmp_path) -> None:
    for store in (MemoryKeyValueStore(), SqliteKeyValueStore(tmp_path / "kv.db")):
        assert store.get("ns", "missing") is None
        store.set("ns", "b", {"z": 1, "a": [1, 2]})
        store.set("ns", "a", "text")
        store.set("other", "c", 1)
        assert store.keys("ns") == ["a", "b"]
        assert list(store.get("ns", "b")) == ["z", "a"]

        store.set("ns", "a", "updated")
        assert store.get("ns", "a") == "updated"
        store.delete("ns", "a")
        assert store.keys("ns") == ["b"]


def test_sqlite_store_persists_across_instances(tmp_path) -> None:
    db = tmp_path / "flags.db"
    SqliteKeyValueStore(db).set("projects", "demo", {"flags": {}})
    assert SqliteKeyValueStore(db).get("projects", "demo") == {"flags": {}}

    conn = connect(db)
    row = conn.execute("SELECT created_at, updated_at FROM kv_entries WHERE key = 'demo'").fetchone()
    assert row["created_at"]
    assert row["updated_at"]


def test_sqlite_store_closes_its_connections(tmp_path, monkeypatch) -> None:
    opened: list[sqlite3.Connection] = []

    def tracking_connect(db_path):
        conn = connect(db_path)
        opened.append(conn)
        return conn

    store = SqliteKeyValueStore(tmp_path / "flags.db")
    monkeypatch.setattr(store_module, "connect", tracking_connect)
    store.set("ns", "a", 1)
    assert store.get("ns", "a") == 1
    assert store.keys("ns") == ["a"]
    store.delete("ns", "a")

    assert len(opened) == 4
    for conn in opened:
        with pytest.raises(sqlite3.ProgrammingError):
            conn.execute("SELECT 1")


def test_create_and_get_project(projects: ProjectStore) -> None:
    content = projects.create_project("demo", {"dark-mode": BOOLEAN_FLAG}, {"team": "web"})
    assert content == {"$schema": SCHEMA_URL, "flags": {"dark-mode": BOOLEAN_FLAG}, "metadata": {"team": "web"}}
    assert projects.get_project("demo") == content
    assert projects.list_projects() == ["demo"]

    with pytest.raises(ProjectExistsError, match="already exists"):
        projects.create_project("demo", {})


def test_project_names_are_validated(projects: ProjectStore) -> None:
    for name in ("", "  ", "../etc", "a/b", "a\\b"):
        with pytest.raises(InvalidProjectNameError):
            projects.create_project(name, {})


def test_invalid_flags_are_rejected(projects: ProjectStore) -> None:
    with pytest.raises(FlagDocumentError, match="flag 'broken': Missing required field: state"):
        projects.create_project("demo", {"broken": {"variants": {"on": True}}})
    with pytest.raises(FlagDocumentError, match="invalid key"):
        projects.create_project("demo", {"bad key": BOOLEAN_FLAG})
    assert projects.list_projects() == []


def test_update_keeps_metadata_when_omitted(projects: ProjectStore) -> None:
    projects.create_project("demo", {"a": BOOLEAN_FLAG}, {"team": "web"})
    content = projects.update_project("demo", {"b": BOOLEAN_FLAG})
    assert content["flags"] == {"b": BOOLEAN_FLAG}
    assert content["metadata"] == {"team": "web"}

    with pytest.raises(ProjectNotFoundError):
        projects.update_project("missing", {})


def test_delete_project(projects: ProjectStore) -> None:
    projects.create_project("demo", {})
    projects.delete_project("demo")
    assert projects.list_projects() == []
    with pytest.raises(ProjectNotFoundError):
        projects.delete_project("demo")


def test_rename_flag_keeps_position(projects: ProjectStore) -> None:
    projects.create_project("demo", {"a": BOOLEAN_FLAG, "b": BOOLEAN_FLAG, "c": BOOLEAN_FLAG})
    renamed = {**BOOLEAN_FLAG, "state": "DISABLED"}
    content = projects.apply_save("demo", SaveRequest(key="b2", document=renamed, original_key="b"))
    assert list(content["flags"]) == ["a", "b2", "c"]
    assert content["flags"]["b2"] == renamed


def test_save_and_delete_single_flag(projects: ProjectStore) -> None:
    projects.create_project("demo", {"a": BOOLEAN_FLAG})
    projects.apply_save("demo", SaveRequest(key="b", document=BOOLEAN_FLAG))
    assert projects.existing_keys("demo") == ["a", "b"]

    content = projects.delete_flag("demo", "a")
    assert list(content["flags"]) == ["b"]
    with pytest.raises(ProjectNotFoundError):
        projects.delete_flag("demo", "a")


def test_editor_session_writes_back(projects: ProjectStore) -> None:
    projects.create_project("demo", {"a": BOOLEAN_FLAG, "b": BOOLEAN_FLAG})

    engine = projects.open_editor("demo", "a")
    engine.set_key("b")
    assert engine.key_error() == "duplicate"
    engine.set_key("alpha")
    engine.toggle_state()
    assert engine.save() is not None

    flags = projects.get_project("demo")["flags"]
    assert list(flags) == ["alpha", "b"]
    assert flags["alpha"]["state"] == "DISABLED"

    entries = projects.flag_entries("demo")
    assert [entry.key for entry in entries] == ["alpha", "b"]


def test_import_project(projects: ProjectStore) -> None:
    content = projects.import_project("imported", {"$schema": SCHEMA_URL, "flags": {"a": BOOLEAN_FLAG}})
    assert content["flags"] == {"a": BOOLEAN_FLAG}
    assert "metadata" not in content


def test_check_project_file(tmp_path) -> None:
    path = tmp_path / "demo.flagd.json"
    path.write_text(
        json.dumps(
            {
                "$schema": SCHEMA_URL,
                "flags": {"good": BOOLEAN_FLAG, "bad": {"state": "ENABLED", "variants": {}}},
            }
        ),
        encoding="utf-8",
    )
    reports = check_project_file(path)
    assert reports[0]["key"] == "good"
    assert reports[0]["error"] is None
    assert reports[0]["targeting"] == "none"
    assert reports[1] == {"key": "bad", "error": "Must have at least one variant"}

    assert check_project_file(tmp_path / "missing.json")[0]["key"] == "<file>"
