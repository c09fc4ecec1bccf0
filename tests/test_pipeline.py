import dataclasses
import json
from datetime import datetime, timedelta, timezone

import pytest

from autonews import generation, ingest
from autonews.drafts import normalize
from autonews.generation import GenerationError
from autonews.models import Seed
from autonews.pipelines.autonews_pass import (
    ensure_unique_slug,
    pair_items_with_seeds,
    run_autonews_pass,
)
from autonews.storage import (
    count_articles,
    get_article,
    get_topic_fingerprint,
    insert_article,
    upsert_image,
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

FEED = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Gov Wire</title>
    <item>
      <title>Parliament passes new bill</title>
      <link>https://gov.example/x?utm=1</link>
      <description>Lawmakers approved the bill after a long debate.</description>
      <pubDate>Tue, 10 Mar 2026 09:30:00 GMT</pubDate>
    </item>
  </channel>
</rss>
"""

ARTICLE = {
    "title": "Lawmakers clear landmark reform bill in parliament",
    "slug": "parliament-clears-reform-bill",
    "summary": "The parliament vote ends a long debate over the reform.",
    "body": "Lawmakers approved the reform bill on Tuesday.",
    "category": "politics",
    "tags": ["parliament", "politics"],
    "sourceUrl": "https://gov.example/x?utm=1",
}


@pytest.fixture
def pipeline_config(config):
    return dataclasses.replace(
        config, ingest=dataclasses.replace(config.ingest, feeds=["https://gov.example/feed"])
    )


@pytest.fixture
def model_calls(monkeypatch):
    calls = []

    def _fake_completion(base_url, api_key, model, messages, params, timeout):
        calls.append(messages)
        return json.dumps({"articles": [ARTICLE]})

    monkeypatch.setattr(ingest, "_fetch_url", lambda url, **_kwargs: (200, FEED, None))
    monkeypatch.setattr(generation, "chat_completion", _fake_completion)
    return calls


def test_pass_saves_novel_article_with_image(conn, pipeline_config, logger, model_calls):
    upsert_image(
        conn,
        "news-images/politics/parliament-house",
        "https://img.example.org/parliament.jpg",
        ["parliament", "politics"],
        category="politics",
        priority=5,
    )
    manual = normalize({"title": "Parliament clears reform bill", "body": "Earlier copy."}, 0, now=NOW)
    insert_article(conn, manual, source="manual")

    result = run_autonews_pass(conn, pipeline_config, logger, 1, now=NOW)

    assert result.status == "success"
    assert (result.requested, result.generated, result.saved) == (1, 1, 1)
    assert result.model == pipeline_config.llm.model
    assert "TITLE: Parliament passes new bill" in model_calls[0][1]["content"]

    article = get_article(conn, result.samples[0]["article_id"])
    assert article["slug"] == "parliament-clears-reform-bill-2"
    assert article["category"] == "Politics"
    assert article["status"] == "draft"
    assert article["published_at"] is None
    assert article["source"] == "ai-batch"
    assert article["source_url_canonical"] == "https://gov.example/x"
    assert article["image_public_id"] == "news-images/politics/parliament-house"
    assert article["auto_image_picked"] is True

    fingerprint = get_topic_fingerprint(conn, article["topic_key"])
    assert fingerprint.article_count == 1
    assert fingerprint.seed_count == 1
    assert fingerprint.article_ids == [article["id"]]


def test_second_pass_skips_seed_already_covered(conn, pipeline_config, logger, model_calls):
    first = run_autonews_pass(conn, pipeline_config, logger, 1, now=NOW)
    second = run_autonews_pass(conn, pipeline_config, logger, 1, now=NOW + timedelta(minutes=5))

    assert first.saved == 1
    assert second.status == "skipped"
    assert second.reason == "no_novel_seeds"
    assert second.skipped_duplicates == 1
    assert len(model_calls) == 1
    assert count_articles(conn, source="ai-batch") == 1


def test_pass_skips_when_nothing_is_fresh(conn, pipeline_config, logger, model_calls):
    result = run_autonews_pass(conn, pipeline_config, logger, 1, now=NOW + timedelta(days=3))

    assert result.status == "skipped"
    assert result.reason == "no_fresh_seeds"
    assert model_calls == []


def test_pass_published_status_sets_published_at(conn, pipeline_config, logger, model_calls):
    config = dataclasses.replace(
        pipeline_config,
        scheduler=dataclasses.replace(pipeline_config.scheduler, status="published"),
    )
    result = run_autonews_pass(conn, config, logger, 1, now=NOW)

    article = get_article(conn, result.samples[0]["article_id"])
    assert article["status"] == "published"
    assert article["published_at"] == "2026-03-10T12:00:00+00:00"


def test_pass_propagates_generation_failure(monkeypatch, conn, pipeline_config, logger):
    monkeypatch.setattr(ingest, "_fetch_url", lambda url, **_kwargs: (200, FEED, None))
    monkeypatch.setattr(generation, "chat_completion", lambda *args: "")

    with pytest.raises(GenerationError, match="empty_model_result"):
        run_autonews_pass(conn, pipeline_config, logger, 1, now=NOW)
    assert count_articles(conn) == 0


def test_pass_drops_unusable_items(monkeypatch, conn, pipeline_config, logger):
    monkeypatch.setattr(ingest, "_fetch_url", lambda url, **_kwargs: (200, FEED, None))
    monkeypatch.setattr(
        generation, "chat_completion", lambda *args: json.dumps([{"title": "", "body": "x"}])
    )

    with pytest.raises(GenerationError, match="no_articles_generated"):
        run_autonews_pass(conn, pipeline_config, logger, 1, now=NOW)


def test_ensure_unique_slug(conn):
    draft = normalize({"title": "Same headline", "body": "x"}, 0, now=NOW)
    assert ensure_unique_slug(conn, "same-headline") == "same-headline"
    insert_article(conn, draft, source="manual")
    insert_article(conn, dataclasses.replace(draft, slug="same-headline-2"), source="manual")
    assert ensure_unique_slug(conn, "same-headline") == "same-headline-3"


TWO_STORY_FEED = FEED.replace(
    b"  </channel>",
    b"""    <item>
      <title>Monsoon rains flood coastal towns</title>
      <link>https://weather.example/rain</link>
      <description>Heavy rain cut roads along the coast.</description>
      <pubDate>Tue, 10 Mar 2026 08:00:00 GMT</pubDate>
    </item>
  </channel>""",
)

RAIN_ARTICLE = {
    "title": "Coastal districts count damage after heavy downpour",
    "summary": "Roads along the coast were cut overnight.",
    "body": "Relief teams reached the flooded districts by boat.",
    "category": "science",
    "tags": ["weather"],
    "sourceUrl": "https://weather.example/rain?ref=feed",
}


def _reply_with(monkeypatch, feed, articles):
    calls = []

    def _fake_completion(base_url, api_key, model, messages, params, timeout):
        calls.append(messages)
        return json.dumps({"articles": articles})

    monkeypatch.setattr(ingest, "_fetch_url", lambda url, **_kwargs: (200, feed, None))
    monkeypatch.setattr(generation, "chat_completion", _fake_completion)
    return calls


def test_pass_requests_one_article_per_seed_and_drops_extras(
    monkeypatch, conn, pipeline_config, logger
):
    extra_cited = dict(ARTICLE, title="Markets rally on rate hopes", sourceUrl="https://other.example/y")
    extra_bare = {"title": "Festival crowds gather downtown", "body": "Crowds filled the square."}
    calls = _reply_with(monkeypatch, FEED, [extra_cited, ARTICLE, extra_bare])

    result = run_autonews_pass(conn, pipeline_config, logger, 3, now=NOW)

    prompt = " ".join(message["content"] for message in calls[0])
    assert "holding exactly 1 articles" in prompt
    assert result.requested == 1
    assert result.saved == 1
    assert count_articles(conn, source="ai-batch") == 1
    assert get_article(conn, result.samples[0]["article_id"])["source_url_canonical"] == (
        "https://gov.example/x"
    )


def test_pass_pairs_reordered_reply_by_source_url(monkeypatch, conn, pipeline_config, logger):
    _reply_with(monkeypatch, TWO_STORY_FEED, [RAIN_ARTICLE, ARTICLE])

    result = run_autonews_pass(conn, pipeline_config, logger, 2, now=NOW)

    assert result.saved == 2
    links = {}
    for sample in result.samples:
        article = get_article(conn, sample["article_id"])
        fingerprint = get_topic_fingerprint(conn, article["topic_key"])
        links[article["source_url_canonical"]] = fingerprint.latest_link
    assert links == {
        "https://gov.example/x": "https://gov.example/x?utm=1",
        "https://weather.example/rain": "https://weather.example/rain",
    }


def test_pair_items_with_seeds_falls_back_to_order_then_drops():
    def _seed(title, link):
        return Seed(title, "", link, "World", NOW, "https://feed.example", None)

    first = (_seed("Parliament passes new bill", "https://gov.example/x"), "k1")
    second = (_seed("Monsoon rains flood towns", "https://weather.example/rain"), "k2")
    items = [
        {"title": "A", "body": "b", "sourceUrl": "https://weather.example/rain"},
        {"title": "B", "body": "b"},
        {"title": "C", "body": "b", "sourceUrl": "https://elsewhere.example/z"},
    ]

    paired, dropped = pair_items_with_seeds(items, [first, second], allow_unseeded=False)
    assert [(raw["title"], key) for raw, _, key in paired] == [("A", "k2"), ("B", "k1")]
    assert dropped == 1

    kept, dropped = pair_items_with_seeds(items, [first, second], allow_unseeded=True)
    assert [key for _, _, key in kept] == ["k2", "k1", None]
    assert dropped == 0
