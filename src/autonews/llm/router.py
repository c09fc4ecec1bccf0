from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.request
from typing import Any

import jsonschema

from ..utils import log_event

API_KEY_ENV = "AN_LLM_API_KEY"

ARTICLE_ITEM_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["title", "body"],
    "properties": {
        "title": {"type": "string", "minLength": 1},
        "slug": {"type": "string"},
        "summary": {"type": "string"},
        "author": {"type": "string"},
        "category": {"type": "string"},
        "status": {"type": "string"},
        "publishAt": {"type": "string"},
        "imageUrl": {"type": "string"},
        "imagePublicId": {"type": "string"},
        "seo": {
            "type": "object",
            "properties": {
                "imageAlt": {"type": "string"},
                "metaTitle": {"type": "string"},
                "metaDescription": {"type": "string"},
                "ogImageUrl": {"type": "string"},
            },
        },
        "geo": {
            "type": "object",
            "properties": {
                "mode": {"type": "string"},
                "areas": {"type": "array", "items": {"type": "string"}},
            },
        },
        "tags": {"type": "array", "items": {"type": "string"}},
        "body": {"type": "string", "minLength": 1},
    },
}


def get_api_key() -> str | None:
    value = os.environ.get(API_KEY_ENV, "").strip()
    return value or None


def chat_completion(
    base_url: str,
    api_key: str | None,
    model: str,
    messages: list[dict[str, str]],
    params: dict[str, Any],
    timeout: int,
) -> str:
    path = _join_url(base_url, "/chat/completions")
    payload = {
        "model": model,
        "messages": messages,
        "response_format": {"type": "json_object"},
        **_filter_params(params),
    }
    response = _http_request("POST", path, _auth_headers(api_key), payload, timeout)
    return _read_openai(response)


def _http_request(
    method: str,
    url: str,
    headers: dict[str, str],
    payload: dict[str, Any] | None,
    timeout: int,
) -> dict[str, Any]:
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    request = urllib.request.Request(url, data=data, method=method)
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        raw = exc.read().decode("utf-8", errors="ignore")
        raise ValueError(f"http_error {exc.code}: {raw[:500]}") from exc
    except urllib.error.URLError as exc:
        raise ValueError(f"network_error: {exc}") from exc
    except TimeoutError as exc:
        raise ValueError(f"timeout after {timeout}s") from exc
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return {"raw": raw}


def _read_openai(response: dict[str, Any]) -> str:
    choices = response.get("choices") or []
    if not choices:
        raise ValueError("openai_missing_choices")
    message = choices[0].get("message") or {}
    return message.get("content") or ""


def _filter_params(params: dict[str, Any]) -> dict[str, Any]:
    allowed = {"temperature", "max_tokens", "top_p", "seed"}
    return {key: value for key, value in params.items() if key in allowed}


def _auth_headers(api_key: str | None) -> dict[str, str]:
    if not api_key:
        return {}
    return {"Authorization": f"Bearer {api_key}"}


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _maybe_parse_json(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _carries_object(value: Any) -> bool:
    if isinstance(value, dict):
        return True
    return isinstance(value, list) and any(isinstance(item, dict) for item in value)


def extract_last_json(text: str) -> Any:
    """Last top-level JSON value in ``text`` that holds an object.

    Trailing citations such as ``[1]`` are passed over. When no value holds an
    object the last value of any kind is returned.
    """
    decoder = json.JSONDecoder()
    values: list[Any] = []
    index = 0
    while index < len(text):
        if text[index] not in "{[":
            index += 1
            continue
        try:
            value, end = decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            index += 1
            continue
        values.append(value)
        index = end
    for value in reversed(values):
        if _carries_object(value):
            return value
    return values[-1] if values else None


def safe_parse_json(raw: Any) -> Any:
    if isinstance(raw, (dict, list)):
        return raw
    text = str(raw or "").strip()
    parsed = _maybe_parse_json(text)
    if not isinstance(parsed, str):
        return parsed
    recovered = extract_last_json(text)
    if recovered is None:
        raise ValueError("no_json_found")
    return recovered


def _validate_json(schema: dict[str, Any], payload: Any) -> dict[str, Any]:
    try:
        jsonschema.validate(payload, schema)
        return {"ok": True}
    except jsonschema.ValidationError as exc:
        return {"ok": False, "error": exc.message}


def validate_items(items: list[Any], logger: logging.Logger) -> int:
    invalid = 0
    for index, item in enumerate(items):
        result = _validate_json(ARTICLE_ITEM_SCHEMA, item)
        if result["ok"]:
            continue
        invalid += 1
        log_event(logger, logging.WARNING, "llm_item_schema_invalid", index=index, error=result["error"])
    return invalid
