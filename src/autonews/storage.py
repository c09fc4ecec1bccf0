from __future__ import annotations

import json
from typing import Any, Iterable

from .models import (
    ArticleDraft,
    GenerationAuditEntry,
    ImageLibraryEntry,
    RecentArticle,
    TopicFingerprint,
)
from .utils import json_dumps, json_loads_or, utc_now_iso

_IMAGE_COLUMNS = "il.id, il.public_id, il.url, il.tags_json, il.category, il.source, il.priority, il.created_at"

_FINGERPRINT_COLUMNS = """
    topic_key, category, first_seen_at, last_seen_at, window_started_at,
    latest_title, latest_link, seed_count, article_count, article_ids_json
"""


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    payload = json_dumps(value)
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, payload, now),
    )
    conn.commit()


def slug_exists(conn: Any, slug: str) -> bool:
    cursor = conn.execute("SELECT 1 FROM articles WHERE slug = ? LIMIT 1", (slug,))
    return cursor.fetchone() is not None


def find_slug_by_canonical_url(conn: Any, canonical_url: str) -> str | None:
    if not canonical_url:
        return None
    cursor = conn.execute(
        "SELECT slug FROM articles WHERE source_url_canonical = ? ORDER BY id LIMIT 1",
        (canonical_url,),
    )
    row = cursor.fetchone()
    return row[0] if row else None


def list_recent_articles(
    conn: Any,
    since_iso: str,
    source: str = "ai-batch",
    category: str | None = None,
    limit: int = 500,
) -> list[RecentArticle]:
    if category:
        cursor = conn.execute(
            """
            SELECT id, slug, title, category, created_at
            FROM articles
            WHERE source = ? AND created_at >= ? AND lower(category) = lower(?)
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (source, since_iso, category, limit),
        )
    else:
        cursor = conn.execute(
            """
            SELECT id, slug, title, category, created_at
            FROM articles
            WHERE source = ? AND created_at >= ?
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (source, since_iso, limit),
        )
    return [
        RecentArticle(id=row[0], slug=row[1], title=row[2], category=row[3], created_at=row[4])
        for row in cursor.fetchall()
    ]


def insert_article(
    conn: Any,
    draft: ArticleDraft,
    source: str,
    published_at: str | None = None,
    now_iso: str | None = None,
) -> int:
    now = now_iso or utc_now_iso()
    cursor = conn.execute(
        """
        INSERT INTO articles
            (slug, title, summary, author, category, status, publish_at, published_at,
             geo_mode, geo_areas_json, tags_json, image_public_id, image_url, image_alt,
             auto_image_picked, image_why, meta_title, meta_description, og_image_url,
             body, source, source_url, source_url_canonical, source_name, topic_key,
             created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            draft.slug,
            draft.title,
            draft.summary,
            draft.author,
            draft.category,
            draft.status,
            draft.publish_at,
            published_at,
            draft.geo_mode,
            json_dumps(draft.geo_areas),
            json_dumps(draft.tags),
            draft.image_public_id,
            draft.image_url,
            draft.image_alt,
            1 if draft.auto_image_picked else 0,
            json_dumps(draft.image_why),
            draft.meta_title,
            draft.meta_description,
            draft.og_image_url,
            draft.body,
            source,
            draft.source_url,
            draft.source_url_canonical or None,
            draft.source_name,
            draft.topic_key,
            now,
            now,
        ),
    )
    conn.commit()
    return int(cursor.lastrowid)


def get_article(conn: Any, article_id: int) -> dict[str, object] | None:
    cursor = conn.execute(
        """
        SELECT id, slug, title, category, status, publish_at, published_at, tags_json,
               image_public_id, image_url, auto_image_picked, image_why, source,
               source_url_canonical, topic_key, created_at
        FROM articles
        WHERE id = ?
        """,
        (article_id,),
    )
    row = cursor.fetchone()
    if not row:
        return None
    return {
        "id": row[0],
        "slug": row[1],
        "title": row[2],
        "category": row[3],
        "status": row[4],
        "publish_at": row[5],
        "published_at": row[6],
        "tags": json_loads_or(row[7], []),
        "image_public_id": row[8],
        "image_url": row[9],
        "auto_image_picked": bool(row[10]),
        "image_why": json_loads_or(row[11], {}),
        "source": row[12],
        "source_url_canonical": row[13],
        "topic_key": row[14],
        "created_at": row[15],
    }


def count_articles(conn: Any, source: str | None = None) -> int:
    if source:
        cursor = conn.execute("SELECT COUNT(*) FROM articles WHERE source = ?", (source,))
    else:
        cursor = conn.execute("SELECT COUNT(*) FROM articles")
    row = cursor.fetchone()
    return int(row[0] or 0)


def upsert_image(
    conn: Any,
    public_id: str,
    url: str,
    tags: Iterable[str],
    category: str | None = None,
    source: str = "manual",
    priority: int = 0,
    created_at: str | None = None,
) -> int:
    tag_list = list(dict.fromkeys(tag for tag in tags if tag))
    created = created_at or utc_now_iso()
    conn.execute(
        """
        INSERT INTO image_library (public_id, url, tags_json, category, source, priority, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(public_id) DO UPDATE SET
            url=excluded.url,
            tags_json=excluded.tags_json,
            category=excluded.category,
            source=excluded.source,
            priority=excluded.priority
        """,
        (public_id, url, json_dumps(tag_list), category, source, int(priority), created),
    )
    row = conn.execute(
        "SELECT id FROM image_library WHERE public_id = ?", (public_id,)
    ).fetchone()
    image_id = int(row[0])
    conn.execute("DELETE FROM image_library_tags WHERE image_id = ?", (image_id,))
    conn.executemany(
        "INSERT OR IGNORE INTO image_library_tags (image_id, tag) VALUES (?, ?)",
        [(image_id, tag) for tag in tag_list],
    )
    conn.commit()
    return image_id


def find_images_by_tags(conn: Any, tags: Iterable[str], limit: int) -> list[ImageLibraryEntry]:
    values = [tag for tag in dict.fromkeys(tags) if tag]
    if not values:
        return []
    placeholders = ", ".join("?" for _ in values)
    cursor = conn.execute(
        f"""
        SELECT {_IMAGE_COLUMNS}
        FROM image_library il
        WHERE il.id IN (
            SELECT image_id FROM image_library_tags WHERE tag IN ({placeholders})
        )
        ORDER BY il.priority DESC, il.created_at DESC, il.id DESC
        LIMIT ?
        """,
        (*values, limit),
    )
    return [_row_to_image(row) for row in cursor.fetchall()]


def find_default_image(conn: Any, category: str | None = None) -> ImageLibraryEntry | None:
    """Highest ranked entry tagged ``default``; ``category=None`` matches any category."""
    if category is None:
        cursor = conn.execute(
            f"""
            SELECT {_IMAGE_COLUMNS}
            FROM image_library il
            JOIN image_library_tags t ON t.image_id = il.id
            WHERE t.tag = 'default'
            ORDER BY il.priority DESC, il.created_at DESC, il.id DESC
            LIMIT 1
            """
        )
    else:
        cursor = conn.execute(
            f"""
            SELECT {_IMAGE_COLUMNS}
            FROM image_library il
            JOIN image_library_tags t ON t.image_id = il.id
            WHERE t.tag = 'default' AND il.category = ?
            ORDER BY il.priority DESC, il.created_at DESC, il.id DESC
            LIMIT 1
            """,
            (category,),
        )
    row = cursor.fetchone()
    return _row_to_image(row) if row else None


def get_topic_fingerprint(conn: Any, topic_key: str) -> TopicFingerprint | None:
    cursor = conn.execute(
        f"SELECT {_FINGERPRINT_COLUMNS} FROM topic_fingerprints WHERE topic_key = ?",
        (topic_key,),
    )
    row = cursor.fetchone()
    return _row_to_fingerprint(row) if row else None


def record_topic_sighting(
    conn: Any,
    topic_key: str,
    category: str | None,
    title: str | None,
    link: str | None,
    now_iso: str,
    window_cutoff_iso: str,
) -> TopicFingerprint:
    """Insert-if-absent, then bump ``seed_count``; an expired window restarts at ``now_iso``."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        conn.execute(
            """
            INSERT INTO topic_fingerprints
                (topic_key, category, first_seen_at, last_seen_at, window_started_at,
                 latest_title, latest_link, seed_count, article_count, article_ids_json)
            VALUES (?, ?, ?, ?, ?, ?, ?, 1, 0, '[]')
            ON CONFLICT(topic_key) DO UPDATE SET
                seed_count = topic_fingerprints.seed_count + 1,
                last_seen_at = excluded.last_seen_at,
                latest_title = excluded.latest_title,
                latest_link = excluded.latest_link,
                category = COALESCE(excluded.category, topic_fingerprints.category),
                article_count = CASE
                    WHEN topic_fingerprints.window_started_at < ? THEN 0
                    ELSE topic_fingerprints.article_count
                END,
                window_started_at = CASE
                    WHEN topic_fingerprints.window_started_at < ? THEN excluded.window_started_at
                    ELSE topic_fingerprints.window_started_at
                END
            """,
            (
                topic_key,
                category,
                now_iso,
                now_iso,
                now_iso,
                title,
                link,
                window_cutoff_iso,
                window_cutoff_iso,
            ),
        )
        row = conn.execute(
            f"SELECT {_FINGERPRINT_COLUMNS} FROM topic_fingerprints WHERE topic_key = ?",
            (topic_key,),
        ).fetchone()
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    return _row_to_fingerprint(row)


def mark_topic_used(
    conn: Any,
    topic_key: str,
    article_id: int | None,
    category: str | None,
    now_iso: str,
    window_cutoff_iso: str,
) -> TopicFingerprint:
    conn.execute("BEGIN IMMEDIATE")
    try:
        row = conn.execute(
            f"SELECT {_FINGERPRINT_COLUMNS} FROM topic_fingerprints WHERE topic_key = ?",
            (topic_key,),
        ).fetchone()
        if row is None:
            ids = [article_id] if article_id is not None else []
            conn.execute(
                """
                INSERT INTO topic_fingerprints
                    (topic_key, category, first_seen_at, last_seen_at, window_started_at,
                     latest_title, latest_link, seed_count, article_count, article_ids_json)
                VALUES (?, ?, ?, ?, ?, NULL, NULL, 0, 1, ?)
                """,
                (topic_key, category, now_iso, now_iso, now_iso, json_dumps(ids)),
            )
        else:
            current = _row_to_fingerprint(row)
            expired = current.window_started_at < window_cutoff_iso
            count = 1 if expired else current.article_count + 1
            window_started = now_iso if expired else current.window_started_at
            ids = list(current.article_ids)
            if article_id is not None:
                ids.append(article_id)
            conn.execute(
                """
                UPDATE topic_fingerprints
                SET article_count = ?, window_started_at = ?, last_seen_at = ?,
                    article_ids_json = ?
                WHERE topic_key = ?
                """,
                (count, window_started, now_iso, json_dumps(ids), topic_key),
            )
        updated = conn.execute(
            f"SELECT {_FINGERPRINT_COLUMNS} FROM topic_fingerprints WHERE topic_key = ?",
            (topic_key,),
        ).fetchone()
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    return _row_to_fingerprint(updated)


def purge_topic_fingerprints(conn: Any, older_than_iso: str) -> int:
    cursor = conn.execute(
        "DELETE FROM topic_fingerprints WHERE last_seen_at < ?", (older_than_iso,)
    )
    conn.commit()
    return int(cursor.rowcount or 0)


def insert_generation_log(conn: Any, entry: GenerationAuditEntry) -> int:
    cursor = conn.execute(
        """
        INSERT INTO generation_log
            (run_at, model, count_requested, count_generated, count_saved, status, reason,
             error_message, duration_ms, request_status, categories_json, samples_json,
             triggered_by)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            entry.run_at,
            entry.model,
            entry.count_requested,
            entry.count_generated,
            entry.count_saved,
            entry.status,
            entry.reason,
            entry.error_message,
            entry.duration_ms,
            entry.request_status,
            json_dumps(entry.categories),
            json_dumps(entry.samples),
            entry.triggered_by,
        ),
    )
    conn.commit()
    return int(cursor.lastrowid)


def sum_saved_since(conn: Any, triggered_by: str, since_iso: str) -> int:
    cursor = conn.execute(
        """
        SELECT COALESCE(SUM(count_saved), 0)
        FROM generation_log
        WHERE triggered_by = ? AND run_at >= ?
        """,
        (triggered_by, since_iso),
    )
    row = cursor.fetchone()
    return int(row[0] or 0)


def list_generation_logs(conn: Any, limit: int = 20) -> list[GenerationAuditEntry]:
    cursor = conn.execute(
        """
        SELECT run_at, model, count_requested, count_generated, count_saved, status, reason,
               error_message, duration_ms, request_status, categories_json, samples_json,
               triggered_by
        FROM generation_log
        ORDER BY run_at DESC, id DESC
        LIMIT ?
        """,
        (limit,),
    )
    return [_row_to_generation_log(row) for row in cursor.fetchall()]


def _row_to_image(row: tuple) -> ImageLibraryEntry:
    return ImageLibraryEntry(
        id=row[0],
        public_id=row[1],
        url=row[2],
        tags=json_loads_or(row[3], []),
        category=row[4],
        source=row[5],
        priority=int(row[6] or 0),
        created_at=row[7],
    )


def _row_to_fingerprint(row: tuple) -> TopicFingerprint:
    return TopicFingerprint(
        topic_key=row[0],
        category=row[1],
        first_seen_at=row[2],
        last_seen_at=row[3],
        window_started_at=row[4],
        latest_title=row[5],
        latest_link=row[6],
        seed_count=int(row[7] or 0),
        article_count=int(row[8] or 0),
        article_ids=json_loads_or(row[9], []),
    )


def _row_to_generation_log(row: tuple) -> GenerationAuditEntry:
    return GenerationAuditEntry(
        run_at=row[0],
        model=row[1],
        count_requested=int(row[2] or 0),
        count_generated=int(row[3] or 0),
        count_saved=int(row[4] or 0),
        status=row[5],
        reason=row[6],
        error_message=row[7],
        duration_ms=int(row[8] or 0),
        request_status=row[9],
        categories=json_loads_or(row[10], []),
        samples=json_loads_or(row[11], []),
        triggered_by=row[12],
    )
