from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta
from typing import Any

from .config import NoveltyConfig
from .models import ArticleDraft, GuardDecision, Seed, TopicFingerprint
from .storage import (
    find_slug_by_canonical_url,
    get_topic_fingerprint,
    list_recent_articles,
    mark_topic_used,
    purge_topic_fingerprints,
    record_topic_sighting,
)
from .tagger import STOPWORDS, tokenize
from .utils import canonicalize_source_url, log_event, stable_hash, to_utc_iso, utc_now

AI_SOURCE = "ai-batch"

CANONICAL_URL_DUPLICATE = "canonical_url_duplicate"
TITLE_DUPLICATE_RECENT = "title_duplicate_recent"
TOPIC_WINDOW = "topic_window"
TOPIC_RESERVED = "topic_reserved"

_URL_PREFIX = re.compile(r"https?://(www\.)?")


def title_tokens(title: str | None) -> set[str]:
    return {
        token
        for token in tokenize(title)
        if len(token) > 2 and token not in STOPWORDS
    }


def jaccard(left: set[str], right: set[str]) -> float:
    if not left or not right:
        return 0.0
    union = left | right
    return len(left & right) / len(union)


def _normalize_text(value: str | None) -> str:
    text = _URL_PREFIX.sub("", (value or "").lower())
    return " ".join(tokenize(text))


def compute_topic_key(
    title: str | None,
    category: str | None,
    link: str | None = None,
    max_tokens: int = 6,
) -> str | None:
    tokens = title_tokens(title)
    if tokens:
        longest = sorted(tokens, key=lambda token: (-len(token), token))[:max_tokens]
        return stable_hash(" ".join(sorted(longest)), (category or "").strip().lower())
    normalized_title = _normalize_text(title)
    normalized_link = _normalize_text(link)
    if not normalized_title and not normalized_link:
        return None
    return stable_hash(normalized_title, normalized_link)


class NoveltyGuard:
    """Accept/reject gate for seeds and drafted articles.

    Seeing a topic bumps its ``seed_count``; only ``mark_used`` after a
    successful insert consumes the per-window allowance. Within one guard
    instance a topic accepted once is reserved, so a second seed of the same
    story in the same pass is turned away.
    """

    def __init__(
        self,
        conn: Any,
        settings: NoveltyConfig,
        logger: logging.Logger,
        now: datetime | None = None,
    ) -> None:
        self.conn = conn
        self.settings = settings
        self.logger = logger
        self._fixed_now = now
        self._reserved: set[str] = set()

    def _now(self) -> datetime:
        return self._fixed_now or utc_now()

    def _window_cutoff_iso(self) -> str:
        return to_utc_iso(self._now() - timedelta(hours=self.settings.topic_window_hours))

    def purge_expired(self) -> int:
        cutoff = self._now() - timedelta(days=self.settings.topic_retention_days)
        removed = purge_topic_fingerprints(self.conn, to_utc_iso(cutoff))
        if removed:
            log_event(self.logger, logging.INFO, "topic_fingerprints_purged", removed=removed)
        return removed

    def check_canonical_url(self, url: str | None) -> str | None:
        canonical = canonicalize_source_url(url)
        if not canonical:
            return None
        return find_slug_by_canonical_url(self.conn, canonical)

    def best_title_match(self, title: str, category: str | None) -> tuple[float, str | None]:
        candidate = title_tokens(title)
        if not candidate:
            return 0.0, None
        since = self._now() - timedelta(hours=self.settings.duplicate_window_hours)
        recent = list_recent_articles(
            self.conn,
            to_utc_iso(since),
            source=AI_SOURCE,
            category=category if self.settings.same_category_only else None,
            limit=self.settings.recent_limit,
        )
        best_score = 0.0
        best_slug = None
        for article in recent:
            score = jaccard(candidate, title_tokens(article.title))
            if score > best_score:
                best_score = score
                best_slug = article.slug
        return best_score, best_slug

    def _window_full(self, fingerprint: TopicFingerprint | None) -> bool:
        if fingerprint is None:
            return False
        if fingerprint.window_started_at < self._window_cutoff_iso():
            return False
        return fingerprint.article_count >= self.settings.topic_max_articles

    def _content_checks(
        self, title: str, url: str | None, category: str | None
    ) -> tuple[list[str], float, str | None]:
        reasons: list[str] = []
        matched_slug = self.check_canonical_url(url)
        if matched_slug:
            reasons.append(CANONICAL_URL_DUPLICATE)
        score, title_slug = self.best_title_match(title, category)
        if title_slug and score >= self.settings.title_similarity_threshold:
            reasons.append(TITLE_DUPLICATE_RECENT)
            matched_slug = matched_slug or title_slug
        return reasons, score, matched_slug

    def check_seed(self, seed: Seed) -> GuardDecision:
        reasons, score, matched_slug = self._content_checks(seed.title, seed.link, seed.category)
        topic_key = compute_topic_key(
            seed.title, seed.category, seed.link, self.settings.topic_key_tokens
        )
        if topic_key:
            fingerprint = record_topic_sighting(
                self.conn,
                topic_key,
                seed.category,
                seed.title,
                seed.link,
                to_utc_iso(self._now()),
                self._window_cutoff_iso(),
            )
            if fingerprint.article_count >= self.settings.topic_max_articles:
                reasons.append(TOPIC_WINDOW)
            elif topic_key in self._reserved:
                reasons.append(TOPIC_RESERVED)

        decision = GuardDecision(
            accepted=not reasons,
            reasons=reasons,
            score=round(score, 4),
            matched_slug=matched_slug,
            topic_key=topic_key,
        )
        if decision.accepted and topic_key:
            self._reserved.add(topic_key)
        self._log_decision("seed", seed.title, decision)
        return decision

    def check_draft(self, draft: ArticleDraft) -> GuardDecision:
        url = draft.source_url_canonical or draft.source_url
        reasons, score, matched_slug = self._content_checks(draft.title, url, draft.category)
        if draft.topic_key and self._window_full(get_topic_fingerprint(self.conn, draft.topic_key)):
            reasons.append(TOPIC_WINDOW)
        decision = GuardDecision(
            accepted=not reasons,
            reasons=reasons,
            score=round(score, 4),
            matched_slug=matched_slug,
            topic_key=draft.topic_key,
        )
        self._log_decision("draft", draft.title, decision)
        return decision

    def mark_used(
        self, topic_key: str | None, article_id: int | None, category: str | None = None
    ) -> TopicFingerprint | None:
        if not topic_key:
            return None
        fingerprint = mark_topic_used(
            self.conn,
            topic_key,
            article_id,
            category,
            to_utc_iso(self._now()),
            self._window_cutoff_iso(),
        )
        log_event(
            self.logger,
            logging.DEBUG,
            "topic_marked_used",
            topic_key=topic_key,
            article_id=article_id,
            article_count=fingerprint.article_count,
        )
        return fingerprint

    def _log_decision(self, kind: str, title: str, decision: GuardDecision) -> None:
        if decision.accepted:
            log_event(
                self.logger,
                logging.DEBUG,
                f"{kind}_accepted",
                topic_key=decision.topic_key,
                title=title,
            )
            return
        log_event(
            self.logger,
            logging.INFO,
            f"{kind}_rejected",
            reasons=",".join(decision.reasons),
            score=decision.score,
            matched_slug=decision.matched_slug,
            topic_key=decision.topic_key,
            title=title,
        )
