from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence

from .config import LlmConfig
from .drafts import ALLOWED_CATEGORIES, coerce_articles
from .llm.router import chat_completion, get_api_key, safe_parse_json, validate_items
from .models import Seed
from .utils import log_event, to_utc_iso, utc_now

MAX_BATCH = 20


class GenerationError(RuntimeError):
    pass


@dataclass(frozen=True)
class GenerationResult:
    model: str
    items: list[Any]
    duration_ms: int


def _seed_block(seeds: Sequence[Seed]) -> str:
    blocks = []
    for index, seed in enumerate(seeds, start=1):
        blocks.append(
            "\n".join(
                [
                    f"[{index}]",
                    f"SOURCE: {seed.feed_title or seed.feed_url or 'RSS'}",
                    f"TITLE: {seed.title}",
                    f"SUMMARY: {seed.summary}",
                    f"LINK: {seed.link}",
                    f"PUBLISHED_AT: {to_utc_iso(seed.published_at)}",
                ]
            )
        )
    return "\n\n".join(blocks)


def build_messages(
    seeds: Sequence[Seed],
    count: int,
    categories: Sequence[str] | None,
    settings: LlmConfig,
    now: datetime,
) -> list[dict[str, str]]:
    allowed = ", ".join(categories or ALLOWED_CATEGORIES)
    if seeds:
        seed_note = (
            "You are given LIVE RSS stories.\n"
            "For each story you MUST produce a brand-new, ORIGINAL headline.\n"
            "Do not copy or paraphrase the seed title; an object whose title resembles "
            "its seed title is INVALID."
        )
    else:
        seed_note = (
            "No RSS seeds provided.\n"
            "Still produce original, fresh headlines, not generic or reused ones."
        )

    system = f"""You are an experienced news editor for "{settings.publication_name}".
Generate ORIGINAL news articles.

{seed_note}

Return STRICT JSON ONLY: an object {{"articles": [...]}} holding exactly {count} articles.
Each article must follow this schema:

{{
  "title": "string, a brand new headline",
  "slug": "kebab-case-url-slug",
  "summary": "60-90 words",
  "author": "{settings.author}",
  "category": "one of: {allowed}",
  "publishAt": "ISO 8601 datetime string",
  "seo": {{
    "imageAlt": "string",
    "metaTitle": "<=80 chars",
    "metaDescription": "<=200 chars",
    "ogImageUrl": ""
  }},
  "geo": {{"mode": "global", "areas": []}},
  "tags": ["tag1", "tag2"],
  "sourceUrl": "the LINK of the seed the article is based on",
  "body": "a cohesive news article body between {settings.min_words} and {settings.max_words} words"
}}

STRICT RULES:
- No markdown, no comments, no explanations.
- BODY length MUST be between {settings.min_words} and {settings.max_words} words.
- Keep the articles in the same order as the seeds.
- publishAt must be within the last 24 hours from {to_utc_iso(now)}."""

    if seeds:
        user = (
            f"=== LIVE RSS SEEDS ===\n{_seed_block(seeds)}\n\n"
            "Rewrite each story into a full article.\n"
            "Your headline must be original and not based on the seed title.\n"
            f"Ensure each BODY is between {settings.min_words} and {settings.max_words} words."
        )
    else:
        user = (
            f"Generate {count} realistic news articles with ORIGINAL HEADLINES.\n"
            f"Each BODY must be between {settings.min_words} and {settings.max_words} words."
        )
    return [{"role": "system", "content": system}, {"role": "user", "content": user}]


def generate_batch(
    seeds: Sequence[Seed],
    count: int,
    categories: Sequence[str] | None,
    settings: LlmConfig,
    logger: logging.Logger,
    now: datetime | None = None,
) -> GenerationResult:
    n = max(1, min(int(count), MAX_BATCH))
    seeds = list(seeds)[:n]
    messages = build_messages(seeds, n, categories, settings, now or utc_now())
    started = time.monotonic()
    try:
        text = chat_completion(
            settings.base_url,
            get_api_key(),
            settings.model,
            messages,
            {"temperature": settings.temperature, "max_tokens": settings.max_tokens},
            settings.timeout_seconds,
        )
    except ValueError as exc:
        raise GenerationError(f"generation_request_failed: {exc}") from exc
    duration_ms = int((time.monotonic() - started) * 1000)

    text = (text or "").strip()
    if not text:
        raise GenerationError("empty_model_result")
    try:
        payload = safe_parse_json(text)
    except ValueError as exc:
        raise GenerationError(f"unparseable_model_result: {text[:200]}") from exc

    items = coerce_articles(payload)
    if not items:
        raise GenerationError("no_articles_generated")
    invalid = validate_items(items, logger)
    log_event(
        logger,
        logging.INFO,
        "generation_completed",
        model=settings.model,
        requested=n,
        returned=len(items),
        schema_invalid=invalid,
        duration_ms=duration_ms,
    )
    return GenerationResult(model=settings.model, items=items, duration_ms=duration_ms)
