from __future__ import annotations

import os
import sqlite3

from .migrations import apply_migrations


def get_db_path() -> str:
    override = os.environ.get("AN_STATE_DB", "").strip()
    if override:
        return override
    data_dir = os.environ.get("AN_DATA_DIR", "/data")
    return os.path.join(data_dir, "autonews.sqlite3")


def connect_db(path: str | None = None) -> sqlite3.Connection:
    path = path or get_db_path()
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    conn = sqlite3.connect(path, check_same_thread=False)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute("PRAGMA busy_timeout=5000")
    apply_migrations(conn)
    return conn
