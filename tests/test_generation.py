import json
from datetime import datetime, timezone

import pytest

from autonews import generation
from autonews.generation import GenerationError, build_messages, generate_batch
from autonews.models import Seed

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

SEED = Seed(
    title="Parliament passes new bill",
    summary="Lawmakers approved the bill.",
    link="https://gov.example/x?utm=1",
    category="Politics",
    published_at=NOW,
    feed_url="https://gov.example/feed",
    feed_title="Gov Wire",
)


def test_build_messages_includes_seeds_and_limits(config):
    messages = build_messages([SEED], 1, ["Politics"], config.llm, NOW)

    system, user = messages[0]["content"], messages[1]["content"]
    assert messages[0]["role"] == "system"
    assert "The Timely Voice" in system
    assert "one of: Politics" in system
    assert "holding exactly 1 articles" in system
    assert "TITLE: Parliament passes new bill" in user
    assert "LINK: https://gov.example/x?utm=1" in user
    assert "SOURCE: Gov Wire" in user


def test_build_messages_without_seeds(config):
    messages = build_messages([], 3, None, config.llm, NOW)
    assert "No RSS seeds provided" in messages[0]["content"]
    assert "Generate 3 realistic news articles" in messages[1]["content"]


def test_generate_batch_parses_wrapped_output(monkeypatch, config, logger):
    captured = {}

    def _fake_completion(base_url, api_key, model, messages, params, timeout):
        captured["model"] = model
        captured["params"] = params
        payload = {"articles": [{"title": "Lawmakers back reform", "body": "Text"}]}
        return "Here you go:\n" + json.dumps(payload)

    monkeypatch.setattr(generation, "chat_completion", _fake_completion)
    result = generate_batch([SEED], 1, None, config.llm, logger, now=NOW)

    assert result.model == config.llm.model
    assert result.items == [{"title": "Lawmakers back reform", "body": "Text"}]
    assert captured["params"]["max_tokens"] == config.llm.max_tokens


@pytest.mark.parametrize(
    "reply, message",
    [
        ("", "empty_model_result"),
        ("   ", "empty_model_result"),
        ("I cannot help with that", "unparseable_model_result"),
        ('{"articles": []}', "no_articles_generated"),
    ],
)
def test_generate_batch_rejects_unusable_output(monkeypatch, config, logger, reply, message):
    monkeypatch.setattr(generation, "chat_completion", lambda *args: reply)
    with pytest.raises(GenerationError, match=message):
        generate_batch([SEED], 1, None, config.llm, logger, now=NOW)


def test_generate_batch_wraps_request_errors(monkeypatch, config, logger):
    def _failing(*_args):
        raise ValueError("timeout after 60s")

    monkeypatch.setattr(generation, "chat_completion", _failing)
    with pytest.raises(GenerationError, match="generation_request_failed"):
        generate_batch([SEED], 1, None, config.llm, logger, now=NOW)
