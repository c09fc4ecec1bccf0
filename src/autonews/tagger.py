from __future__ import annotations

import re
from collections import Counter
from typing import Iterable

STOPWORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "of", "to", "in", "on", "for", "with",
        "as", "at", "by", "from", "is", "are", "was", "were", "be", "been", "being",
        "it", "its", "this", "that", "these", "those", "after", "before", "into",
        "over", "under", "against", "between", "during", "about", "amid", "will",
        "has", "have", "had", "not", "new", "can", "may", "more", "than", "who",
        "what", "when", "where", "why", "how", "his", "her", "their", "our", "you",
        "today", "latest", "news", "report", "reports", "says", "say", "said",
        "live", "updates", "update",
    }
)

# Variants collapsed to one preferred tag so "political" and "politics" match.
CANONICAL_TAG_ALIASES = {
    "political": "politics",
    "politician": "politics",
    "politicians": "politics",
    "economic": "economy",
    "economical": "economy",
    "laws": "law",
    "legal": "law",
    "legally": "law",
    "legislative": "parliament",
    "legislation": "parliament",
    "legislature": "parliament",
    "defense": "defence",
}

_TOKEN_SPLIT = re.compile(r"[^a-z0-9]+")
_URLS = re.compile(r"https?://\S+")
_DIGITS = re.compile(r"^\d+$")


def normalize_tag(tag: str) -> str:
    cleaned = tag.strip().lower().lstrip("#")
    cleaned = re.sub(r"\s+", "-", cleaned)
    cleaned = re.sub(r"[^a-z0-9\-]", "-", cleaned)
    cleaned = re.sub(r"-+", "-", cleaned).strip("-")
    return CANONICAL_TAG_ALIASES.get(cleaned, cleaned)


def normalize_tags(tags: Iterable[object], limit: int | None = None) -> list[str]:
    normalized: list[str] = []
    seen: set[str] = set()
    for tag in tags:
        if not isinstance(tag, str) or not tag.strip():
            continue
        value = normalize_tag(tag)
        if not value or value in seen:
            continue
        seen.add(value)
        normalized.append(value)
        if limit is not None and len(normalized) >= limit:
            break
    return normalized


def tokenize(text: str | None) -> list[str]:
    if not text:
        return []
    return [token for token in _TOKEN_SPLIT.split(text.lower()) if token]


def extract_keywords(
    title: str | None,
    summary: str | None,
    limit: int = 40,
    min_length: int = 3,
    max_length: int = 30,
) -> list[str]:
    text = _URLS.sub(" ", f"{title or ''} {summary or ''}")
    counts: Counter[str] = Counter()
    for token in tokenize(text):
        if not min_length <= len(token) <= max_length:
            continue
        if token in STOPWORDS or _DIGITS.match(token):
            continue
        counts[normalize_tag(token)] += 1
    # Counter keeps first-seen order, so ties stay in reading order.
    ranked = sorted(counts.items(), key=lambda item: -item[1])
    return [token for token, _ in ranked[:limit]]
