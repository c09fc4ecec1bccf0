import pytest

from autonews.llm import router
from autonews.llm.router import chat_completion, extract_last_json, safe_parse_json, validate_items


def test_extract_last_json_prefers_values_holding_objects():
    text = 'noise {"a": 1} more text [1, 2] trailing'
    assert extract_last_json(text) == {"a": 1}
    assert extract_last_json('[{"a": 1}] then {"b": 2}') == {"b": 2}
    assert extract_last_json("values [1, 2] then [3]") == [3]
    assert extract_last_json("{broken [3]") == [3]
    assert extract_last_json("no json here") is None


def test_safe_parse_json_recovers_from_prose():
    assert safe_parse_json('[{"title": "x"}]') == [{"title": "x"}]
    assert safe_parse_json('Sure! Here you go: {"articles": []}') == {"articles": []}


def test_safe_parse_json_skips_trailing_citation():
    reply = 'Here you go: {"articles": [{"title": "t", "body": "b"}]} (sources: [1])'
    assert safe_parse_json(reply) == {"articles": [{"title": "t", "body": "b"}]}
    assert safe_parse_json({"already": "parsed"}) == {"already": "parsed"}
    with pytest.raises(ValueError, match="no_json_found"):
        safe_parse_json("I could not do that")


def test_validate_items_counts_schema_violations(logger):
    items = [{"title": "x", "body": "y"}, {"title": 5, "body": "y"}, {"body": "only"}]
    assert validate_items(items, logger) == 2


def test_chat_completion_builds_request(monkeypatch):
    captured = {}

    def _fake_request(method, url, headers, payload, timeout):
        captured.update(
            {"method": method, "url": url, "headers": headers, "payload": payload, "timeout": timeout}
        )
        return {"choices": [{"message": {"content": "[]"}}]}

    monkeypatch.setattr(router, "_http_request", _fake_request)
    text = chat_completion(
        "https://llm.example/v1/",
        "sk-test",
        "model-x",
        [{"role": "user", "content": "hi"}],
        {"temperature": 0.5, "unsupported": True},
        30,
    )

    assert text == "[]"
    assert captured["method"] == "POST"
    assert captured["url"] == "https://llm.example/v1/chat/completions"
    assert captured["headers"] == {"Authorization": "Bearer sk-test"}
    assert captured["payload"]["response_format"] == {"type": "json_object"}
    assert captured["payload"]["temperature"] == 0.5
    assert "unsupported" not in captured["payload"]


def test_chat_completion_without_choices_raises(monkeypatch):
    monkeypatch.setattr(router, "_http_request", lambda *args: {"error": "overloaded"})
    with pytest.raises(ValueError, match="openai_missing_choices"):
        chat_completion("https://llm.example/v1", None, "m", [], {}, 5)
