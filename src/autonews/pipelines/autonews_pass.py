from __future__ import annotations

import dataclasses
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Sequence

from ..config import Config
from ..drafts import normalize
from ..generation import GenerationError, generate_batch
from ..images import decide_and_attach
from ..ingest import fetch_seeds
from ..models import Seed
from ..novelty import (
    AI_SOURCE,
    CANONICAL_URL_DUPLICATE,
    TITLE_DUPLICATE_RECENT,
    NoveltyGuard,
    compute_topic_key,
)
from ..storage import insert_article, slug_exists
from ..utils import canonicalize_source_url, log_event, to_utc_iso, utc_now

STATUS_SUCCESS = "success"
STATUS_PARTIAL = "partial"
STATUS_SKIPPED = "skipped"


@dataclass(frozen=True)
class PassResult:
    status: str
    reason: str | None
    requested: int
    generated: int = 0
    saved: int = 0
    seeds_count: int = 0
    skipped_duplicates: int = 0
    skipped_topic: int = 0
    failed_inserts: int = 0
    model: str | None = None
    samples: list[dict[str, Any]] = field(default_factory=list)


def ensure_unique_slug(conn: Any, slug: str) -> str:
    candidate = slug
    suffix = 2
    while slug_exists(conn, candidate):
        candidate = f"{slug}-{suffix}"
        suffix += 1
    return candidate


def _is_duplicate(reasons: Sequence[str]) -> bool:
    return CANONICAL_URL_DUPLICATE in reasons or TITLE_DUPLICATE_RECENT in reasons


def select_seeds(
    guard: NoveltyGuard, seeds: Sequence[Seed], allowed: int
) -> tuple[list[tuple[Seed, str | None]], int, int]:
    selected: list[tuple[Seed, str | None]] = []
    duplicates = 0
    topics = 0
    for seed in seeds:
        if len(selected) >= allowed:
            break
        decision = guard.check_seed(seed)
        if decision.accepted:
            selected.append((seed, decision.topic_key))
        elif _is_duplicate(decision.reasons):
            duplicates += 1
        else:
            topics += 1
    return selected, duplicates, topics


def _cited_url(raw: Any) -> str:
    if not isinstance(raw, dict) or not isinstance(raw.get("sourceUrl"), str):
        return ""
    return canonicalize_source_url(raw["sourceUrl"])


def pair_items_with_seeds(
    items: Sequence[Any],
    selected: Sequence[tuple[Seed, str | None]],
    allow_unseeded: bool,
    topic_key_tokens: int = 6,
) -> tuple[list[tuple[Any, Seed | None, str | None]], int]:
    """Match model items to the seeds they were written from.

    An item citing a selected seed's link takes that seed. Otherwise an item
    whose title yields the same topic key as an unclaimed seed takes it, and
    an item with no source URL takes the next unclaimed seed in prompt
    order. Anything left has no seed and is kept only when
    ``allow_unseeded`` is set. Returns the kept items in reply order and the
    number dropped.
    """
    by_url: dict[str, int] = {}
    for position, (seed, _) in enumerate(selected):
        canonical = canonicalize_source_url(seed.link)
        if canonical:
            by_url.setdefault(canonical, position)

    cited = [_cited_url(raw) for raw in items]
    slots: list[int | None] = [None] * len(items)
    claimed: set[int] = set()
    for index, url in enumerate(cited):
        position = by_url.get(url) if url else None
        if position is not None and position not in claimed:
            slots[index] = position
            claimed.add(position)

    for index, raw in enumerate(items):
        if slots[index] is not None or not isinstance(raw, dict):
            continue
        title = raw.get("title") if isinstance(raw.get("title"), str) else None
        if not title:
            continue
        for position, (seed, topic_key) in enumerate(selected):
            if position in claimed or not topic_key:
                continue
            if compute_topic_key(title, seed.category, None, topic_key_tokens) == topic_key:
                slots[index] = position
                claimed.add(position)
                break

    free = [position for position in range(len(selected)) if position not in claimed]
    for index, raw in enumerate(items):
        if slots[index] is None and not cited[index] and isinstance(raw, dict) and free:
            slots[index] = free.pop(0)

    paired: list[tuple[Any, Seed | None, str | None]] = []
    dropped = 0
    for raw, position in zip(items, slots):
        if position is not None:
            seed, topic_key = selected[position]
            paired.append((raw, seed, topic_key))
        elif allow_unseeded:
            paired.append((raw, None, None))
        else:
            dropped += 1
    return paired, dropped


def run_autonews_pass(
    conn: Any,
    config: Config,
    logger: logging.Logger,
    allowed: int,
    categories: Sequence[str] | None = None,
    now: datetime | None = None,
) -> PassResult:
    """Fetch seeds, generate drafts and persist the ones that clear every gate.

    Raises ``GenerationError`` when the model call fails or yields nothing
    usable; the scheduler records that as an error run.
    """
    now = now or utc_now()
    guard = NoveltyGuard(conn, config.novelty, logger, now=now)
    guard.purge_expired()

    pool_size = max(allowed * 3, config.scheduler.seed_pool_min)
    seeds = fetch_seeds(config, logger, limit=pool_size, now=now)
    if not seeds and not config.scheduler.allow_unseeded:
        return PassResult(status=STATUS_SKIPPED, reason="no_fresh_seeds", requested=allowed)

    selected, skipped_duplicates, skipped_topic = select_seeds(guard, seeds, allowed)
    if seeds and not selected:
        log_event(
            logger,
            logging.INFO,
            "no_novel_seeds",
            seeds_count=len(seeds),
            skipped_duplicates=skipped_duplicates,
            skipped_topic=skipped_topic,
        )
        return PassResult(
            status=STATUS_SKIPPED,
            reason="no_novel_seeds",
            requested=allowed,
            seeds_count=len(seeds),
            skipped_duplicates=skipped_duplicates,
            skipped_topic=skipped_topic,
        )

    count = len(selected) if selected else allowed
    result = generate_batch(
        [seed for seed, _ in selected], count, categories, config.llm, logger, now=now
    )

    paired, dropped = pair_items_with_seeds(
        result.items,
        selected,
        config.scheduler.allow_unseeded,
        config.novelty.topic_key_tokens,
    )
    if dropped:
        log_event(
            logger,
            logging.WARNING,
            "unseeded_items_dropped",
            dropped=dropped,
            items=len(result.items),
            seeds=len(selected),
        )

    drafts = []
    for index, (raw, seed, topic_key) in enumerate(paired[:count]):
        draft = normalize(raw, index, seed=seed, now=now, default_author=config.llm.author, logger=logger)
        if draft is None:
            continue
        if not topic_key:
            topic_key = compute_topic_key(
                draft.title, draft.category, draft.source_url, config.novelty.topic_key_tokens
            )
        drafts.append(dataclasses.replace(draft, topic_key=topic_key))
    if not drafts:
        raise GenerationError("no_articles_generated")

    status = config.scheduler.status
    now_iso = to_utc_iso(now)
    samples: list[dict[str, Any]] = []
    failed_inserts = 0
    for draft in drafts:
        decision = guard.check_draft(draft)
        if not decision.accepted:
            if _is_duplicate(decision.reasons):
                skipped_duplicates += 1
            else:
                skipped_topic += 1
            continue

        outcome, draft = decide_and_attach(conn, draft, config.images, logger)
        draft = dataclasses.replace(
            draft, status=status, slug=ensure_unique_slug(conn, draft.slug)
        )
        try:
            article_id = insert_article(
                conn,
                draft,
                source=AI_SOURCE,
                published_at=now_iso if status == "published" else None,
                now_iso=now_iso,
            )
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            failed_inserts += 1
            log_event(logger, logging.ERROR, "article_insert_failed", slug=draft.slug, error=str(exc))
            continue

        guard.mark_used(draft.topic_key, article_id, draft.category)
        samples.append(
            {
                "article_id": article_id,
                "slug": draft.slug,
                "title": draft.title,
                "status": draft.status,
                "publish_at": draft.publish_at,
            }
        )
        log_event(
            logger,
            logging.INFO,
            "article_saved",
            article_id=article_id,
            slug=draft.slug,
            category=draft.category,
            image_outcome=outcome,
        )

    return PassResult(
        status=STATUS_PARTIAL if failed_inserts else STATUS_SUCCESS,
        reason="insert_failed" if failed_inserts else None,
        requested=count,
        generated=len(drafts),
        saved=len(samples),
        seeds_count=len(seeds),
        skipped_duplicates=skipped_duplicates,
        skipped_topic=skipped_topic,
        failed_inserts=failed_inserts,
        model=result.model,
        samples=samples,
    )
