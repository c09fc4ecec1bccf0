"""Dictionaries that tune the image picker.

Edit these to change matching behavior without touching the scoring code in
``images.py``.
"""

from __future__ import annotations

from typing import Iterable

from .tagger import tokenize

# Too broad to count as a strong match on their own.
GENERIC_TAGS = frozenset(
    {
        "india", "world", "general", "news", "politic", "politics", "trending",
        "viral", "update", "breaking", "today", "latest", "report", "headline",
        "story", "international", "national", "state", "government", "govt",
        "election", "crime", "sport", "sports", "finance", "business", "economy",
        "health", "technology", "tech", "entertainment", "bollywood",
    }
)

# Image tags that signal a mismatch for an article in the given bucket.
NEGATIVE_TAGS_BY_CATEGORY: dict[str, tuple[str, ...]] = {
    "politics": (
        "sports", "cricket", "ipl", "football", "hockey", "match", "tournament",
        "gaganyaan", "isro", "space", "rocket", "aerospace", "astronaut",
        "boxoffice", "movie", "trailer", "song", "celebrity",
    ),
    "sports": (
        "parliament", "minister", "election", "policy", "budget", "rbi", "inflation",
        "gaganyaan", "space", "rocket", "isro",
        "movie", "trailer", "bollywood", "celebrity",
    ),
    "finance": (
        "cricket", "ipl", "football", "hockey", "match",
        "movie", "trailer", "bollywood", "celebrity",
        "gaganyaan", "space", "rocket", "isro",
    ),
    "entertainment": (
        "rbi", "inflation", "budget", "stocks", "sensex", "nifty", "banking",
        "parliament", "election", "policy",
        "cricket", "ipl", "football", "hockey",
        "gaganyaan", "space", "rocket", "isro",
    ),
    "health": (
        "cricket", "ipl", "football", "hockey",
        "movie", "trailer", "bollywood", "celebrity",
    ),
    "world": (),
    "india": (),
}

# Used when the article category is missing or too messy to map directly.
CATEGORY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "politics": (
        "parliament", "minister", "election", "policy", "bill", "party", "aap",
        "bjp", "congress", "government", "govt",
    ),
    "sports": (
        "cricket", "ipl", "football", "hockey", "match", "tournament", "league",
        "semifinal", "final", "score", "goal",
    ),
    "finance": (
        "rbi", "inflation", "sensex", "nifty", "stocks", "market", "bank", "budget",
        "gdp", "oil", "tariff", "tax",
    ),
    "entertainment": (
        "bollywood", "film", "movie", "trailer", "actor", "actress", "song",
        "boxoffice", "celebrity",
    ),
    "health": (
        "cancer", "diabetes", "hospital", "doctor", "symptoms", "treatment", "health",
        "disease",
    ),
    "space": (
        "isro", "gaganyaan", "rocket", "space", "satellite", "astronaut", "mission",
        "launch",
    ),
}


def is_generic_tag(tag: str, extra: Iterable[str] = ()) -> bool:
    value = tag.strip().lower()
    return value in GENERIC_TAGS or value in set(extra)


def infer_category_bucket(category: str | None, title: str | None, summary: str | None) -> str:
    cat = (category or "").strip().lower()
    if "politic" in cat:
        return "politics"
    if "sport" in cat:
        return "sports"
    if "finance" in cat or "business" in cat:
        return "finance"
    if "entertain" in cat or "bollywood" in cat:
        return "entertainment"
    if "health" in cat:
        return "health"
    if "world" in cat:
        return "world"
    if cat == "india":
        return "india"

    tokens = set(tokenize(f"{title or ''} {summary or ''}"))
    for bucket, words in CATEGORY_KEYWORDS.items():
        if tokens.intersection(words):
            return "world" if bucket == "space" else bucket
    return ""
