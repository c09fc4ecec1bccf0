from __future__ import annotations

import dataclasses
import logging
import sqlite3
from typing import Any, Iterable
from urllib.parse import urlsplit

from .config import ImagesConfig
from .image_rules import NEGATIVE_TAGS_BY_CATEGORY, infer_category_bucket, is_generic_tag
from .models import ArticleDraft, ImageCandidate, ImageDecision, ImageLibraryEntry
from .storage import find_default_image, find_images_by_tags
from .tagger import extract_keywords, normalize_tag, normalize_tags
from .utils import log_event

KEPT_EXISTING_PUBLIC_ID = "kept-existing-public-id"
KEPT_EXISTING_URL = "kept-existing-url"
ATTACHED_DB_IMAGE = "attached-db-image"
ATTACHED_DB_DEFAULT_IMAGE = "attached-db-default-image"
ATTACHED_DEFAULT_IMAGE = "attached-default-image"
NO_CHANGE = "no-change"

STRONG_TAG_POINTS = 120
STRONG_KEYWORD_POINTS = 90
GENERIC_TAG_POINTS = 5
GENERIC_KEYWORD_POINTS = 2
SAME_CATEGORY_POINTS = 20
NEGATIVE_TAG_PENALTY = 60

KEYWORD_LIMIT = 40


def is_default_placeholder(public_id: str | None, image_url: str | None) -> bool:
    if public_id and ("/defaults/" in public_id or "news-images/default" in public_id):
        return True
    return bool(image_url and "news-images/default" in image_url)


def is_placeholder_url(url: str | None, placeholder_hosts: Iterable[str]) -> bool:
    if not url:
        return False
    host = (urlsplit(url).hostname or "").lower()
    if not host:
        return False
    if host.endswith(".example"):
        return True
    return any(marker in host for marker in placeholder_hosts)


def build_image_url(public_id: str, settings: ImagesConfig) -> str:
    return settings.url_template.format(public_id=public_id)


def normalize_category(value: str | None) -> str:
    return "".join(ch for ch in (value or "").strip().lower() if ch.isalnum() or ch in "-_")


def score_candidate(
    entry: ImageLibraryEntry,
    tags: list[str],
    keywords: list[str],
    category_norm: str,
    bucket: str,
    generic_extra: Iterable[str] = (),
) -> ImageCandidate:
    image_tags = normalize_tags(entry.tags)
    extra = list(generic_extra)

    matched_tags = [tag for tag in image_tags if tag in tags]
    strong_tags = [tag for tag in matched_tags if not is_generic_tag(tag, extra)]
    generic_tags = [tag for tag in matched_tags if is_generic_tag(tag, extra)]

    matched_keywords = [tag for tag in image_tags if tag in keywords]
    strong_keywords = [tag for tag in matched_keywords if not is_generic_tag(tag, extra)]
    generic_keywords = [tag for tag in matched_keywords if is_generic_tag(tag, extra)]

    entry_category = normalize_category(entry.category)
    same_category = bool(category_norm) and entry_category == category_norm

    negatives = NEGATIVE_TAGS_BY_CATEGORY.get(bucket, ()) if bucket else ()
    penalized = [tag for tag in negatives if normalize_tag(tag) in image_tags]

    score = (
        len(strong_tags) * STRONG_TAG_POINTS
        + len(strong_keywords) * STRONG_KEYWORD_POINTS
        + len(generic_tags) * GENERIC_TAG_POINTS
        + len(generic_keywords) * GENERIC_KEYWORD_POINTS
        + (SAME_CATEGORY_POINTS if same_category else 0)
        + entry.priority
        - len(penalized) * NEGATIVE_TAG_PENALTY
    )
    return ImageCandidate(
        entry=entry,
        score=score,
        strong_matches=len(set(strong_tags) | set(strong_keywords)),
        matched_tags=matched_tags,
        matched_keywords=matched_keywords,
        penalized_tags=penalized,
    )


def rank_candidates(
    conn: Any,
    title: str | None,
    summary: str | None,
    category: str | None,
    tags: Iterable[str],
    settings: ImagesConfig,
) -> tuple[list[ImageCandidate], dict[str, object]]:
    """Eligible library matches, best first, plus a ``why`` record for the search."""
    clean_tags = normalize_tags(tags)
    keywords = extract_keywords(title, summary, limit=KEYWORD_LIMIT)
    tokens = list(dict.fromkeys(clean_tags + keywords))
    bucket = infer_category_bucket(category, title, summary)
    if not tokens:
        return [], {"mode": "no-tokens", "bucket": bucket}

    entries = find_images_by_tags(conn, tokens, settings.candidate_limit)
    if not entries:
        return [], {"mode": "no-db-candidates", "bucket": bucket, "tokens": tokens[:12]}

    category_norm = normalize_category(category)
    scored = [
        score_candidate(entry, clean_tags, keywords, category_norm, bucket, settings.generic_tags)
        for entry in entries
    ]
    eligible = [
        candidate
        for candidate in scored
        if candidate.strong_matches >= settings.required_strong_matches
        and candidate.score >= settings.min_confidence
    ]
    eligible.sort(key=lambda candidate: candidate.entry.created_at, reverse=True)
    eligible.sort(key=lambda candidate: candidate.score, reverse=True)
    best = max((candidate.score for candidate in scored), default=0)
    why = {
        "mode": "db-candidates",
        "bucket": bucket,
        "candidate_count": len(entries),
        "eligible_count": len(eligible),
        "best_score": best,
    }
    return eligible, why


def list_image_candidates(
    conn: Any, meta: dict[str, Any], settings: ImagesConfig, limit: int = 24
) -> list[ImageCandidate]:
    candidates, _ = rank_candidates(
        conn,
        meta.get("title"),
        meta.get("summary"),
        meta.get("category"),
        meta.get("tags") or [],
        settings,
    )
    return candidates[:limit]


def _decision_from_candidate(candidate: ImageCandidate, search: dict[str, object]) -> ImageDecision:
    entry = candidate.entry
    penalty = len(candidate.penalized_tags) * NEGATIVE_TAG_PENALTY
    return ImageDecision(
        public_id=entry.public_id,
        url=entry.url,
        why={
            "mode": "db-advanced-match",
            "picked": entry.public_id,
            "score": candidate.score,
            "strong_match_count": candidate.strong_matches,
            "matched_tags": candidate.matched_tags,
            "matched_keywords": candidate.matched_keywords,
            "penalized_tags": candidate.penalized_tags,
            "penalty": penalty,
            "bucket": search.get("bucket", ""),
        },
        auto_picked=True,
    )


def pick_default_from_library(conn: Any, category: str | None) -> ImageDecision | None:
    raw = (category or "").strip()
    lookups: list[tuple[str, str | None]] = []
    if raw:
        lookups.append(("category", raw))
        normalized = normalize_category(raw)
        if normalized and normalized != raw:
            lookups.append(("category", normalized))
    lookups.append(("global", "global"))
    lookups.append(("any", None))

    for tier, value in lookups:
        entry = find_default_image(conn, value)
        if entry is None:
            continue
        return ImageDecision(
            public_id=entry.public_id,
            url=entry.url,
            why={
                "mode": "db-default",
                "tier": tier,
                "picked": entry.public_id,
                "reason": 'No match found, used ImageLibrary tag "default"',
            },
            auto_picked=True,
        )
    return None


def _attach(draft: ArticleDraft, decision: ImageDecision) -> ArticleDraft:
    return dataclasses.replace(
        draft,
        image_public_id=decision.public_id,
        image_url=decision.url,
        auto_image_picked=decision.auto_picked,
        image_why=decision.why,
        image_alt=draft.image_alt or draft.title,
    )


def decide_and_attach(
    conn: Any,
    draft: ArticleDraft,
    settings: ImagesConfig,
    logger: logging.Logger,
) -> tuple[str, ArticleDraft]:
    original_public_id = draft.image_public_id
    public_id = draft.image_public_id
    image_url = draft.image_url
    if is_default_placeholder(public_id, image_url):
        public_id = None
        image_url = None

    if public_id and public_id != settings.default_public_id:
        return KEPT_EXISTING_PUBLIC_ID, dataclasses.replace(
            draft, image_why={"mode": "kept-existing", "field": "public_id"}
        )
    if image_url and not is_placeholder_url(image_url, settings.placeholder_hosts):
        return KEPT_EXISTING_URL, dataclasses.replace(
            draft, image_why={"mode": "kept-existing", "field": "url"}
        )

    search: dict[str, object] = {}
    try:
        candidates, search = rank_candidates(
            conn, draft.title, draft.summary, draft.category, draft.tags, settings
        )
    except sqlite3.Error as exc:
        log_event(logger, logging.WARNING, "image_library_unavailable", slug=draft.slug, error=str(exc))
        candidates = []
        search = {"mode": "repository-error"}

    if candidates:
        decision = _decision_from_candidate(candidates[0], search)
        log_event(
            logger,
            logging.INFO,
            "image_attached",
            slug=draft.slug,
            outcome=ATTACHED_DB_IMAGE,
            public_id=decision.public_id,
            score=candidates[0].score,
        )
        return ATTACHED_DB_IMAGE, _attach(draft, decision)

    try:
        fallback = pick_default_from_library(conn, draft.category)
    except sqlite3.Error as exc:
        log_event(logger, logging.WARNING, "image_library_unavailable", slug=draft.slug, error=str(exc))
        fallback = None

    if fallback is not None:
        decision = dataclasses.replace(fallback, why={**fallback.why, "search": search})
        outcome = ATTACHED_DB_DEFAULT_IMAGE
    else:
        decision = ImageDecision(
            public_id=settings.default_public_id,
            url=build_image_url(settings.default_public_id, settings),
            why={
                "mode": "hard-default",
                "reason": "No match and no ImageLibrary default",
                "search": search,
            },
            auto_picked=False,
        )
        outcome = ATTACHED_DEFAULT_IMAGE

    if original_public_id and decision.public_id == original_public_id:
        log_event(logger, logging.DEBUG, "image_unchanged", slug=draft.slug, public_id=original_public_id)
        return NO_CHANGE, draft

    log_event(
        logger,
        logging.INFO,
        "image_attached",
        slug=draft.slug,
        outcome=outcome,
        public_id=decision.public_id,
        mode=search.get("mode"),
    )
    return outcome, _attach(draft, decision)
