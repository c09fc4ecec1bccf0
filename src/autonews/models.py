from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class Seed:
    title: str
    summary: str
    link: str
    category: str
    published_at: datetime
    feed_url: str
    feed_title: str | None


@dataclass(frozen=True)
class TopicFingerprint:
    topic_key: str
    category: str | None
    first_seen_at: str
    last_seen_at: str
    window_started_at: str
    latest_title: str | None
    latest_link: str | None
    seed_count: int
    article_count: int
    article_ids: list[int]


@dataclass(frozen=True)
class GuardDecision:
    accepted: bool
    reasons: list[str]
    score: float = 0.0
    matched_slug: str | None = None
    topic_key: str | None = None


@dataclass(frozen=True)
class RecentArticle:
    id: int
    slug: str
    title: str
    category: str
    created_at: str


@dataclass(frozen=True)
class GenerationAuditEntry:
    run_at: str
    model: str | None
    count_requested: int
    count_generated: int
    count_saved: int
    status: str
    reason: str | None
    error_message: str | None
    duration_ms: int
    request_status: str | None
    categories: list[str]
    samples: list[dict[str, object]]
    triggered_by: str


@dataclass(frozen=True)
class ArticleDraft:
    title: str
    slug: str
    summary: str
    author: str
    category: str
    status: str
    publish_at: str
    geo_mode: str
    geo_areas: list[str]
    tags: list[str]
    image_alt: str
    meta_title: str
    meta_description: str
    og_image_url: str | None
    body: str
    source_url: str | None = None
    source_url_canonical: str | None = None
    source_name: str | None = None
    topic_key: str | None = None
    image_public_id: str | None = None
    image_url: str | None = None
    auto_image_picked: bool = False
    image_why: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class ImageLibraryEntry:
    id: int | None
    public_id: str
    url: str
    tags: list[str]
    category: str | None
    source: str
    priority: int
    created_at: str


@dataclass(frozen=True)
class ImageCandidate:
    entry: ImageLibraryEntry
    score: int
    strong_matches: int
    matched_tags: list[str]
    matched_keywords: list[str]
    penalized_tags: list[str]


@dataclass(frozen=True)
class ImageDecision:
    public_id: str | None
    url: str | None
    why: dict[str, object]
    auto_picked: bool
