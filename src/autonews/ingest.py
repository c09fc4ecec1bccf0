from __future__ import annotations

import logging
import re
import time
from datetime import datetime
from typing import Any, Iterable
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

import feedparser
from bs4 import BeautifulSoup

from .config import Config
from .models import Seed
from .utils import get_zone, log_event, parse_published_at, utc_now

DEFAULT_CATEGORY = "World"

# First rule with a word-boundary hit wins; feed URL is checked before the title.
CATEGORY_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    (
        "Politics",
        ("parliament", "assembly", "election", "elections", "government", "cabinet",
         "policy", "minister", "bill"),
    ),
    (
        "Business",
        ("rbi", "market", "markets", "stock", "stocks", "bank", "gdp", "inflation",
         "economy", "money", "sensex", "nifty"),
    ),
    ("Tech", ("tech", "technology", "ai", "startup", "software", "app")),
    ("Science", ("climate", "environment", "weather", "pollution", "space", "isro")),
    ("Sports", ("match", "tournament", "cricket", "football", "world cup")),
)

_CATEGORY_PATTERNS = [
    (category, re.compile(r"\b(?:" + "|".join(re.escape(word) for word in words) + r")\b"))
    for category, words in CATEGORY_RULES
]
_YEAR_TOKEN = re.compile(r"\b((?:19|20)\d{2})\b")
_WHITESPACE = re.compile(r"\s+")


def _fetch_url(
    url: str,
    headers: dict[str, str],
    timeout: int,
    max_retries: int,
    backoff_seconds: int,
) -> tuple[int | None, bytes | None, str | None]:
    attempt = 0
    while attempt <= max_retries:
        try:
            request = Request(url, headers=headers)
            with urlopen(request, timeout=timeout) as response:
                status = response.getcode()
                content = response.read()
            return status, content, None
        except HTTPError as exc:
            return exc.code, None, str(exc)
        except URLError as exc:
            if attempt >= max_retries:
                return None, None, str(exc)
            time.sleep(backoff_seconds * (attempt + 1))
            attempt += 1
        except Exception as exc:  # noqa: BLE001
            return None, None, str(exc)
    return None, None, "Unknown fetch error"


def clean_text(value: Any) -> str:
    if not value:
        return ""
    text = str(value)
    if "<" in text:
        text = BeautifulSoup(text, "html.parser").get_text(" ")
    return _WHITESPACE.sub(" ", text).strip()


def guess_category(feed_url: str | None, title: str | None) -> str:
    for text in ((feed_url or "").lower().replace("-", " "), (title or "").lower()):
        if not text:
            continue
        for category, pattern in _CATEGORY_PATTERNS:
            if pattern.search(text):
                return category
    return DEFAULT_CATEGORY


def _entry_summary(entry: Any, max_chars: int) -> str:
    candidates = [entry.get("summary"), entry.get("description")]
    content = entry.get("content")
    if isinstance(content, list) and content:
        first = content[0]
        if isinstance(first, dict):
            candidates.append(first.get("value"))
    candidates.append(entry.get("subtitle"))
    for candidate in candidates:
        cleaned = clean_text(candidate)
        if cleaned:
            return cleaned[:max_chars].rstrip()
    return ""


def parse_feed(
    feed_url: str,
    content: bytes | str,
    logger: logging.Logger,
    summary_max_chars: int = 600,
) -> list[Seed]:
    parsed = feedparser.parse(content)
    entries = parsed.entries or []
    if parsed.bozo:
        log_event(
            logger,
            logging.WARNING,
            "feed_parse_warning",
            feed_url=feed_url,
            error=str(parsed.bozo_exception),
        )
    feed_title = clean_text(parsed.feed.get("title")) or None

    seeds: list[Seed] = []
    undated = 0
    for entry in entries:
        title = clean_text(entry.get("title"))
        link = (entry.get("link") or "").strip()
        if not title:
            continue
        published_at = parse_published_at(entry)
        if published_at is None:
            undated += 1
            continue
        seeds.append(
            Seed(
                title=title,
                summary=_entry_summary(entry, summary_max_chars),
                link=link,
                category=guess_category(feed_url, title),
                published_at=published_at,
                feed_url=feed_url,
                feed_title=feed_title,
            )
        )

    log_event(
        logger,
        logging.INFO,
        "feed_parsed",
        feed_url=feed_url,
        found_count=len(entries),
        kept_count=len(seeds),
        undated_count=undated,
    )
    return seeds


def dedupe_seeds(seeds: Iterable[Seed]) -> list[Seed]:
    seen: set[tuple[str, str]] = set()
    unique: list[Seed] = []
    for seed in seeds:
        key = (seed.link.strip().lower(), seed.title.strip().lower())
        if not key[0] and not key[1]:
            continue
        if key in seen:
            continue
        seen.add(key)
        unique.append(seed)
    return unique


def mentions_past_year(title: str, current_year: int) -> bool:
    return any(int(match) < current_year for match in _YEAR_TOKEN.findall(title))


def filter_fresh(seeds: Iterable[Seed], now: datetime, timezone_name: str) -> list[Seed]:
    zone = get_zone(timezone_name)
    today = now.astimezone(zone).date()
    fresh: list[Seed] = []
    for seed in seeds:
        if mentions_past_year(seed.title, today.year):
            continue
        if seed.published_at.astimezone(zone).date() != today:
            continue
        fresh.append(seed)
    return fresh


def fetch_seeds(
    config: Config,
    logger: logging.Logger,
    limit: int = 10,
    now: datetime | None = None,
) -> list[Seed]:
    now = now or utc_now()
    http_cfg = config.ingest.http
    headers = {"User-Agent": http_cfg.user_agent}

    collected: list[Seed] = []
    for feed_url in config.ingest.feeds:
        status, content, error = _fetch_url(
            feed_url,
            headers=headers,
            timeout=http_cfg.timeout_seconds,
            max_retries=http_cfg.max_retries,
            backoff_seconds=http_cfg.backoff_seconds,
        )
        if error or not content:
            log_event(
                logger,
                logging.WARNING,
                "feed_fetch_failed",
                feed_url=feed_url,
                http_status=status,
                error=error or "empty response",
            )
            continue
        try:
            collected.extend(
                parse_feed(feed_url, content, logger, config.ingest.summary_max_chars)
            )
        except Exception as exc:  # noqa: BLE001
            log_event(logger, logging.WARNING, "feed_fetch_failed", feed_url=feed_url, error=str(exc))

    if not collected:
        log_event(logger, logging.WARNING, "no_seeds_fetched", feed_count=len(config.ingest.feeds))
        return []

    unique = dedupe_seeds(collected)
    fresh = filter_fresh(unique, now, config.app.timezone)
    if not fresh:
        log_event(
            logger,
            logging.INFO,
            "no_fresh_seeds",
            fetched_count=len(collected),
            unique_count=len(unique),
        )
        return []

    fresh.sort(key=lambda seed: seed.published_at, reverse=True)
    seeds = fresh[: max(0, limit)]
    log_event(
        logger,
        logging.INFO,
        "seeds_ready",
        fetched_count=len(collected),
        unique_count=len(unique),
        fresh_count=len(fresh),
        returned_count=len(seeds),
    )
    return seeds
