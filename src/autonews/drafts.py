from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any

from .models import ArticleDraft, Seed
from .novelty import jaccard, title_tokens
from .tagger import extract_keywords, normalize_tags, tokenize
from .utils import canonicalize_source_url, log_event, parse_iso, slugify, to_utc_iso, utc_now

ALLOWED_CATEGORIES = ("World", "Business", "Tech", "Sports", "Politics", "Economy", "Science")
DEFAULT_CATEGORY = "World"
GEO_MODES = ("global", "include", "exclude")
DEFAULT_GEO_MODE = "global"
MAX_TAGS = 6
META_TITLE_MAX = 80
META_DESCRIPTION_MAX = 200
SEED_TITLE_SIMILARITY = 0.8
FILLER_TAGS = frozenset({"general", "world", "breaking"})

_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")

ENVELOPE_ARRAY = "array"
ENVELOPE_ARTICLES = "articles"
ENVELOPE_KEYED = "keyed"
ENVELOPE_SINGLE = "single"
ENVELOPE_EMPTY = "empty"


def classify_envelope(payload: Any) -> str:
    if isinstance(payload, list):
        return ENVELOPE_ARRAY
    if not isinstance(payload, dict) or not payload:
        return ENVELOPE_EMPTY
    if isinstance(payload.get("articles"), list):
        return ENVELOPE_ARTICLES
    if all(isinstance(key, str) and key.strip().isdigit() for key in payload):
        return ENVELOPE_KEYED
    return ENVELOPE_SINGLE


def coerce_articles(payload: Any) -> list[Any]:
    kind = classify_envelope(payload)
    if kind == ENVELOPE_ARRAY:
        return list(payload)
    if kind == ENVELOPE_ARTICLES:
        return list(payload["articles"])
    if kind == ENVELOPE_KEYED:
        return [payload[key] for key in sorted(payload, key=lambda key: int(key.strip()))]
    if kind == ENVELOPE_SINGLE:
        return [payload]
    return []


def normalize_category(raw: Any) -> str:
    value = str(raw or "").strip().lower()
    for category in ALLOWED_CATEGORIES:
        if category.lower() == value:
            return category
    return DEFAULT_CATEGORY


def normalize_geo(raw: dict[str, Any]) -> tuple[str, list[str]]:
    geo = raw.get("geo") if isinstance(raw.get("geo"), dict) else {}
    mode = str(geo.get("mode") or raw.get("geoMode") or DEFAULT_GEO_MODE).strip().lower()
    if mode not in GEO_MODES:
        mode = DEFAULT_GEO_MODE
    areas = geo.get("areas") if "areas" in geo else raw.get("geoAreas")
    if not isinstance(areas, list):
        areas = []
    return mode, [str(area).strip() for area in areas if isinstance(area, str) and area.strip()]


def _squash(value: str) -> str:
    return " ".join(tokenize(value))


def copies_seed_title(title: str, seed_title: str | None) -> bool:
    if not seed_title:
        return False
    if _squash(title) == _squash(seed_title):
        return True
    return jaccard(title_tokens(title), title_tokens(seed_title)) >= SEED_TITLE_SIMILARITY


def _lead_sentence(text: str) -> str:
    lead = _SENTENCE_END.split(text.strip(), maxsplit=1)[0].strip().rstrip(".")
    if len(lead) <= META_TITLE_MAX:
        return lead
    return lead[:META_TITLE_MAX].rsplit(" ", 1)[0]


def fresh_title(summary: str, seed_title: str) -> str:
    """Headline for a draft whose model title repeats its seed's."""
    lead = _lead_sentence(summary)
    if lead and not copies_seed_title(lead, seed_title):
        return lead
    return f"{seed_title}: what we know so far"


def enrich_tags(
    tags: list[str], title: str, summary: str, body: str, limit: int = MAX_TAGS
) -> list[str]:
    if len(tags) >= limit:
        return tags[:limit]
    keywords = [
        keyword
        for keyword in extract_keywords(title, f"{summary} {body}")
        if keyword not in FILLER_TAGS
    ]
    return normalize_tags([*tags, *keywords], limit=limit)


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _publish_at(raw: dict[str, Any], seed: Seed | None, now: datetime) -> str:
    value = raw.get("publishAt")
    parsed = parse_iso(value) if isinstance(value, str) else None
    if parsed is not None:
        return to_utc_iso(parsed)
    if seed is not None:
        return to_utc_iso(seed.published_at)
    return to_utc_iso(now)


def normalize(
    raw: Any,
    index: int,
    seed: Seed | None = None,
    now: datetime | None = None,
    default_author: str = "Desk",
    logger: logging.Logger | None = None,
) -> ArticleDraft | None:
    """Turn one model item into an ``ArticleDraft``.

    Returns ``None`` when the item is not an object or lacks a title or body.
    A title that repeats the seed's headline is replaced, and model tags are
    topped up with keywords from the text. Slug uniqueness against the store
    is left to the caller.
    """
    logger = logger or logging.getLogger("autonews.drafts")
    if not isinstance(raw, dict):
        log_event(logger, logging.DEBUG, "draft_dropped", index=index, reason="not_an_object")
        return None
    title = _text(raw.get("title"))
    body = _text(raw.get("body"))
    if not title or not body:
        log_event(logger, logging.DEBUG, "draft_dropped", index=index, reason="missing_title_or_body")
        return None

    now = now or utc_now()
    summary = _text(raw.get("summary"))
    if seed is not None and copies_seed_title(title, seed.title):
        rewritten = fresh_title(summary, seed.title)
        log_event(
            logger,
            logging.INFO,
            "draft_title_rewritten",
            index=index,
            title=title[:60],
            new_title=rewritten[:60],
        )
        title = rewritten
    category = normalize_category(raw.get("category"))
    geo_mode, geo_areas = normalize_geo(raw)
    tags_raw = raw.get("tags") if isinstance(raw.get("tags"), list) else []
    tags = enrich_tags(normalize_tags(tags_raw, limit=MAX_TAGS), title, summary, body)

    seo = raw.get("seo") if isinstance(raw.get("seo"), dict) else {}
    image_alt = _text(seo.get("imageAlt")) or _text(raw.get("imageAlt")) or title
    meta_title = (_text(seo.get("metaTitle")) or title)[:META_TITLE_MAX]
    meta_description = (_text(seo.get("metaDescription")) or summary or title)[
        :META_DESCRIPTION_MAX
    ]
    og_image_url = _text(seo.get("ogImageUrl")) or _text(raw.get("ogImage")) or None

    model_slug = _text(raw.get("slug"))
    slug = slugify(model_slug) if model_slug else slugify(title)

    source_url = _text(raw.get("sourceUrl")) or (seed.link if seed else "")
    source_name = _text(raw.get("sourceName")) or (
        (seed.feed_title or seed.feed_url) if seed else ""
    )

    log_event(
        logger,
        logging.INFO,
        "draft_normalized",
        index=index,
        title=title[:60],
        body_words=len(body.split()),
        category=category,
    )

    return ArticleDraft(
        title=title,
        slug=slug,
        summary=summary,
        author=_text(raw.get("author")) or default_author,
        category=category,
        status="draft",
        publish_at=_publish_at(raw, seed, now),
        geo_mode=geo_mode,
        geo_areas=geo_areas,
        tags=tags,
        image_alt=image_alt,
        meta_title=meta_title,
        meta_description=meta_description,
        og_image_url=og_image_url,
        body=body,
        source_url=source_url or None,
        source_url_canonical=canonicalize_source_url(source_url) or None,
        source_name=source_name or None,
        image_public_id=_text(raw.get("imagePublicId")) or None,
        image_url=_text(raw.get("imageUrl")) or None,
    )
