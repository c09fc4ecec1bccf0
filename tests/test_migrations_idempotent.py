import sqlite3

from autonews.db import connect_db
from autonews.migrations import _get_migrations, apply_migrations


def _table_columns(conn, table):
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def test_apply_migrations_idempotent(tmp_path):
    db_path = tmp_path / "autonews.sqlite3"
    conn = sqlite3.connect(str(db_path))
    apply_migrations(conn)
    apply_migrations(conn)

    rows = conn.execute("SELECT version FROM schema_migrations").fetchall()
    versions = [row[0] for row in rows]
    expected = [version for version, _ in _get_migrations()]
    assert sorted(versions) == sorted(expected)
    assert len(versions) == len(set(versions))


def test_connect_db_creates_directory_and_schema(tmp_path):
    db_path = tmp_path / "nested" / "state" / "autonews.sqlite3"
    conn = connect_db(str(db_path))
    conn2 = connect_db(str(db_path))

    assert db_path.exists()
    columns = _table_columns(conn2, "articles")
    assert {"source_url_canonical", "topic_key", "auto_image_picked"} <= columns
    assert _table_columns(conn, "generation_log") >= {"triggered_by", "count_saved"}
    conn.close()
    conn2.close()


def test_connect_db_uses_data_dir_env(tmp_path, monkeypatch):
    monkeypatch.delenv("AN_STATE_DB", raising=False)
    monkeypatch.setenv("AN_DATA_DIR", str(tmp_path / "data"))
    conn = connect_db()
    conn.close()

    assert (tmp_path / "data" / "autonews.sqlite3").exists()
