from __future__ import annotations

import logging
import sqlite3
from typing import Callable

from .utils import utc_now_iso

Migration = Callable[[sqlite3.Connection], None]


def apply_migrations(conn: sqlite3.Connection) -> None:
    logger = logging.getLogger("autonews.migrations")
    conn.execute("BEGIN IMMEDIATE")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    try:
        for version, migration in _get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _migration_initial_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS articles (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            slug TEXT NOT NULL UNIQUE,
            title TEXT NOT NULL,
            summary TEXT NOT NULL DEFAULT '',
            author TEXT NOT NULL DEFAULT '',
            category TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'draft',
            publish_at TEXT NULL,
            published_at TEXT NULL,
            geo_mode TEXT NOT NULL DEFAULT 'global',
            geo_areas_json TEXT NULL,
            tags_json TEXT NULL,
            image_public_id TEXT NULL,
            image_url TEXT NULL,
            image_alt TEXT NULL,
            auto_image_picked INTEGER NOT NULL DEFAULT 0,
            image_why TEXT NULL,
            meta_title TEXT NULL,
            meta_description TEXT NULL,
            og_image_url TEXT NULL,
            body TEXT NOT NULL DEFAULT '',
            source TEXT NOT NULL,
            source_url TEXT NULL,
            source_name TEXT NULL,
            source_url_canonical TEXT NULL,
            topic_key TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_articles_source_created ON articles(source, created_at)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_articles_source_url_canonical "
        "ON articles(source_url_canonical)"
    )


def _migration_image_library(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS image_library (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            public_id TEXT NOT NULL UNIQUE,
            url TEXT NOT NULL,
            tags_json TEXT NULL,
            category TEXT NULL,
            source TEXT NOT NULL DEFAULT 'manual',
            priority INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS image_library_tags (
            image_id INTEGER NOT NULL REFERENCES image_library(id),
            tag TEXT NOT NULL,
            PRIMARY KEY(image_id, tag)
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_image_library_tags_tag ON image_library_tags(tag)")
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_image_library_rank ON image_library(priority, created_at)"
    )


def _migration_topic_fingerprints(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS topic_fingerprints (
            topic_key TEXT PRIMARY KEY,
            category TEXT NULL,
            first_seen_at TEXT NOT NULL,
            last_seen_at TEXT NOT NULL,
            window_started_at TEXT NOT NULL,
            latest_title TEXT NULL,
            latest_link TEXT NULL,
            seed_count INTEGER NOT NULL DEFAULT 0,
            article_count INTEGER NOT NULL DEFAULT 0,
            article_ids_json TEXT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_topic_fingerprints_last_seen "
        "ON topic_fingerprints(last_seen_at)"
    )


def _migration_generation_log(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS generation_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            model TEXT NULL,
            count_requested INTEGER NOT NULL DEFAULT 0,
            count_generated INTEGER NOT NULL DEFAULT 0,
            count_saved INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL,
            reason TEXT NULL,
            error_message TEXT NULL,
            duration_ms INTEGER NOT NULL DEFAULT 0,
            request_status TEXT NULL,
            categories_json TEXT NULL,
            samples_json TEXT NULL,
            triggered_by TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_generation_log_trigger_run "
        "ON generation_log(triggered_by, run_at)"
    )


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_initial_schema", _migration_initial_schema),
        ("002_image_library", _migration_image_library),
        ("003_topic_fingerprints", _migration_topic_fingerprints),
        ("004_generation_log", _migration_generation_log),
    ]
