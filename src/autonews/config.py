from __future__ import annotations

import copy
import json
import os
from dataclasses import dataclass
from typing import Any, Mapping

import yaml

from .storage import get_setting, set_setting


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str
    timezone: str


@dataclass(frozen=True)
class HttpConfig:
    timeout_seconds: int
    user_agent: str
    max_retries: int
    backoff_seconds: int


@dataclass(frozen=True)
class IngestConfig:
    http: HttpConfig
    feeds: list[str]
    summary_max_chars: int


@dataclass(frozen=True)
class SchedulerConfig:
    interval_seconds: int
    status: str
    categories: list[str]
    window_start_hour: int
    window_end_hour: int
    max_per_run: int
    max_per_hour: int
    max_per_day: int
    triggered_by: str
    seed_pool_min: int
    allow_unseeded: bool


@dataclass(frozen=True)
class NoveltyConfig:
    duplicate_window_hours: int
    title_similarity_threshold: float
    same_category_only: bool
    recent_limit: int
    topic_window_hours: int
    topic_max_articles: int
    topic_retention_days: int
    topic_key_tokens: int


@dataclass(frozen=True)
class ImagesConfig:
    candidate_limit: int
    required_strong_matches: int
    min_confidence: int
    default_public_id: str
    url_template: str
    generic_tags: list[str]
    placeholder_hosts: list[str]


@dataclass(frozen=True)
class LlmConfig:
    base_url: str
    model: str
    timeout_seconds: int
    temperature: float
    max_tokens: int
    min_words: int
    max_words: int
    publication_name: str
    author: str


@dataclass(frozen=True)
class Config:
    app: AppConfig
    ingest: IngestConfig
    scheduler: SchedulerConfig
    novelty: NoveltyConfig
    images: ImagesConfig
    llm: LlmConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "autonews",
        "timezone": "UTC",
    },
    "ingest": {
        "http": {
            "timeout_seconds": 10,
            "user_agent": "autonews/0.1 (+feed-reader)",
            "max_retries": 1,
            "backoff_seconds": 2,
        },
        "feeds": [
            "https://www.thehindu.com/news/feeder/default.rss",
            "https://www.hindustantimes.com/feeds/rss/india-news/rssfeed.xml",
            "https://indianexpress.com/feed/",
            "https://www.hindustantimes.com/feeds/rss/world-news/rssfeed.xml",
            "https://economictimes.indiatimes.com/rssfeedstopstories.cms",
            "https://www.livemint.com/rss/money",
        ],
        "summary_max_chars": 600,
    },
    "scheduler": {
        "interval_seconds": 300,
        "status": "draft",
        "categories": [],
        "window_start_hour": 0,
        "window_end_hour": 24,
        "max_per_run": 1,
        "max_per_hour": 12,
        "max_per_day": 250,
        "triggered_by": "cron-auto-newsroom",
        "seed_pool_min": 10,
        "allow_unseeded": False,
    },
    "novelty": {
        "duplicate_window_hours": 72,
        "title_similarity_threshold": 0.75,
        "same_category_only": False,
        "recent_limit": 500,
        "topic_window_hours": 24,
        "topic_max_articles": 1,
        "topic_retention_days": 7,
        "topic_key_tokens": 6,
    },
    "images": {
        "candidate_limit": 300,
        "required_strong_matches": 1,
        "min_confidence": 110,
        "default_public_id": "news-images/defaults/fallback-hero",
        "url_template": "https://res.cloudinary.com/demo/image/upload/{public_id}",
        "generic_tags": [],
        "placeholder_hosts": ["example.com", "cdn.example", "your-cdn.example"],
    },
    "llm": {
        "base_url": "https://openrouter.ai/api/v1",
        "model": "openai/gpt-4o-mini",
        "timeout_seconds": 60,
        "temperature": 0.7,
        "max_tokens": 4000,
        "min_words": 600,
        "max_words": 900,
        "publication_name": "The Timely Voice",
        "author": "Desk",
    },
}

CONFIG_KEY = "config.runtime"

ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "AN_TIMEZONE": ("app", "timezone"),
    "AN_INTERVAL_SECONDS": ("scheduler", "interval_seconds"),
    "AN_CATEGORIES": ("scheduler", "categories"),
    "AN_STATUS": ("scheduler", "status"),
    "AN_WINDOW_START_HOUR": ("scheduler", "window_start_hour"),
    "AN_WINDOW_END_HOUR": ("scheduler", "window_end_hour"),
    "AN_MAX_PER_RUN": ("scheduler", "max_per_run"),
    "AN_MAX_PER_HOUR": ("scheduler", "max_per_hour"),
    "AN_MAX_PER_DAY": ("scheduler", "max_per_day"),
    "AN_DUPLICATE_WINDOW_HOURS": ("novelty", "duplicate_window_hours"),
    "AN_DUPLICATE_TITLE_THRESHOLD": ("novelty", "title_similarity_threshold"),
    "AN_TOPIC_WINDOW_HOURS": ("novelty", "topic_window_hours"),
    "AN_TOPIC_MAX_ARTICLES": ("novelty", "topic_max_articles"),
    "AN_IMAGE_CANDIDATE_LIMIT": ("images", "candidate_limit"),
    "AN_IMAGE_REQUIRED_STRONG_MATCHES": ("images", "required_strong_matches"),
    "AN_IMAGE_MIN_CONFIDENCE": ("images", "min_confidence"),
    "AN_DEFAULT_IMAGE_PUBLIC_ID": ("images", "default_public_id"),
    "AN_LLM_MODEL": ("llm", "model"),
    "AN_LLM_BASE_URL": ("llm", "base_url"),
}

_TRUE_VALUES = {"1", "true", "yes", "on"}
_STATUSES = {"draft", "published"}


def load_config(path: str | None = None, environ: Mapping[str, str] | None = None) -> Config:
    cfg = _deep_copy(DEFAULT_CONFIG)
    if path:
        cfg = _deep_merge(cfg, _read_yaml(path))
    cfg = apply_env_overrides(cfg, os.environ if environ is None else environ)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    return _build_config(cfg)


def bootstrap_runtime_config(conn, seed: dict[str, Any] | None = None) -> dict[str, Any]:
    cfg = get_setting(conn, CONFIG_KEY, None)
    if cfg is None:
        set_setting(conn, CONFIG_KEY, _deep_copy(seed or DEFAULT_CONFIG))
        cfg = get_setting(conn, CONFIG_KEY, None)
    if not isinstance(cfg, dict):
        raise ConfigError("config.runtime must be a JSON object")
    return cfg


def get_runtime_config(conn, seed: dict[str, Any] | None = None) -> dict[str, Any]:
    cfg = bootstrap_runtime_config(conn, seed)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return cfg


def set_runtime_config(conn, cfg: dict[str, Any]) -> None:
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    set_setting(conn, CONFIG_KEY, _deep_copy(cfg))


def import_runtime_config(conn, path: str) -> dict[str, Any]:
    """Merge a YAML file onto the stored runtime config and save the result."""
    cfg = _deep_merge(_deep_copy(get_runtime_config(conn)), _read_yaml(path))
    set_runtime_config(conn, cfg)
    return cfg


def load_runtime_config(
    conn, environ: Mapping[str, str] | None = None, path: str | None = None
) -> Config:
    """Stored runtime config with env overrides on top.

    A YAML file at ``path`` only seeds the stored config the first time it is
    created; afterwards the settings table wins.
    """
    seed = None
    if path:
        seed = _deep_merge(_deep_copy(DEFAULT_CONFIG), _read_yaml(path))
        errors = validate_runtime_config(seed)
        if errors:
            raise ConfigError("Invalid config: " + "; ".join(errors))
    cfg = get_runtime_config(conn, seed)
    cfg = apply_env_overrides(cfg, os.environ if environ is None else environ)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return _build_config(cfg)


def apply_env_overrides(cfg: dict[str, Any], environ: Mapping[str, str]) -> dict[str, Any]:
    result = _deep_copy(cfg)
    for env_name, (section, key) in ENV_OVERRIDES.items():
        raw = environ.get(env_name)
        if raw is None or raw.strip() == "":
            continue
        default = DEFAULT_CONFIG[section][key]
        try:
            value = _coerce_env_value(raw.strip(), default)
        except ValueError as exc:
            raise ConfigError(f"{env_name} has invalid value {raw!r}") from exc
        result.setdefault(section, {})[key] = value
    return result


def _coerce_env_value(raw: str, default: Any) -> Any:
    if isinstance(default, bool):
        return raw.lower() in _TRUE_VALUES
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    if isinstance(default, list):
        return [item.strip() for item in raw.split(",") if item.strip()]
    return raw


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config", errors)
    if errors:
        return errors
    _validate_semantics(cfg, errors)
    return errors


def _validate_semantics(cfg: dict[str, Any], errors: list[str]) -> None:
    scheduler = cfg["scheduler"]
    for key in ("window_start_hour", "window_end_hour"):
        if not 0 <= scheduler[key] <= 24:
            errors.append(f"config.scheduler.{key} must be between 0 and 24")
    if scheduler["status"].lower() not in _STATUSES:
        errors.append("config.scheduler.status must be draft or published")
    if scheduler["interval_seconds"] < 30:
        errors.append("config.scheduler.interval_seconds must be at least 30")
    for key in ("max_per_run", "max_per_hour", "max_per_day"):
        if scheduler[key] < 0:
            errors.append(f"config.scheduler.{key} must not be negative")
    threshold = cfg["novelty"]["title_similarity_threshold"]
    if not 0 < threshold <= 1:
        errors.append("config.novelty.title_similarity_threshold must be in (0, 1]")
    if cfg["novelty"]["topic_max_articles"] < 1:
        errors.append("config.novelty.topic_max_articles must be at least 1")
    if "{public_id}" not in cfg["images"]["url_template"]:
        errors.append("config.images.url_template must contain {public_id}")


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
            return
        for item in value:
            if not isinstance(item, str):
                errors.append(f"{path} must be a list of strings")
                break
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg["app"]
    ingest_cfg = cfg["ingest"]
    scheduler_cfg = cfg["scheduler"]
    novelty_cfg = cfg["novelty"]
    images_cfg = cfg["images"]
    llm_cfg = cfg["llm"]

    app = AppConfig(
        name=str(app_cfg["name"]),
        timezone=str(app_cfg["timezone"]),
    )

    http_cfg = ingest_cfg["http"]
    http = HttpConfig(
        timeout_seconds=int(http_cfg["timeout_seconds"]),
        user_agent=str(http_cfg["user_agent"]),
        max_retries=int(http_cfg["max_retries"]),
        backoff_seconds=int(http_cfg["backoff_seconds"]),
    )
    ingest = IngestConfig(
        http=http,
        feeds=list(ingest_cfg["feeds"]),
        summary_max_chars=int(ingest_cfg["summary_max_chars"]),
    )

    scheduler = SchedulerConfig(
        interval_seconds=int(scheduler_cfg["interval_seconds"]),
        status=str(scheduler_cfg["status"]).lower(),
        categories=list(scheduler_cfg["categories"]),
        window_start_hour=int(scheduler_cfg["window_start_hour"]),
        window_end_hour=int(scheduler_cfg["window_end_hour"]),
        max_per_run=int(scheduler_cfg["max_per_run"]),
        max_per_hour=int(scheduler_cfg["max_per_hour"]),
        max_per_day=int(scheduler_cfg["max_per_day"]),
        triggered_by=str(scheduler_cfg["triggered_by"]),
        seed_pool_min=int(scheduler_cfg["seed_pool_min"]),
        allow_unseeded=bool(scheduler_cfg["allow_unseeded"]),
    )

    novelty = NoveltyConfig(
        duplicate_window_hours=max(1, int(novelty_cfg["duplicate_window_hours"])),
        title_similarity_threshold=float(novelty_cfg["title_similarity_threshold"]),
        same_category_only=bool(novelty_cfg["same_category_only"]),
        recent_limit=int(novelty_cfg["recent_limit"]),
        topic_window_hours=max(1, int(novelty_cfg["topic_window_hours"])),
        topic_max_articles=int(novelty_cfg["topic_max_articles"]),
        topic_retention_days=max(1, int(novelty_cfg["topic_retention_days"])),
        topic_key_tokens=max(1, int(novelty_cfg["topic_key_tokens"])),
    )

    images = ImagesConfig(
        candidate_limit=max(1, int(images_cfg["candidate_limit"])),
        required_strong_matches=max(0, int(images_cfg["required_strong_matches"])),
        min_confidence=int(images_cfg["min_confidence"]),
        default_public_id=str(images_cfg["default_public_id"]),
        url_template=str(images_cfg["url_template"]),
        generic_tags=[str(tag).strip().lower() for tag in images_cfg["generic_tags"]],
        placeholder_hosts=[str(host).strip().lower() for host in images_cfg["placeholder_hosts"]],
    )

    llm = LlmConfig(
        base_url=str(llm_cfg["base_url"]),
        model=str(llm_cfg["model"]),
        timeout_seconds=int(llm_cfg["timeout_seconds"]),
        temperature=float(llm_cfg["temperature"]),
        max_tokens=int(llm_cfg["max_tokens"]),
        min_words=int(llm_cfg["min_words"]),
        max_words=int(llm_cfg["max_words"]),
        publication_name=str(llm_cfg["publication_name"]),
        author=str(llm_cfg["author"]),
    )

    return Config(
        app=app,
        ingest=ingest,
        scheduler=scheduler,
        novelty=novelty,
        images=images,
        llm=llm,
    )


def _read_yaml(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Config file is not valid YAML: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError("Config file must contain a mapping")
    return data


def _deep_merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = _deep_merge(base[key], value)
        else:
            base[key] = copy.deepcopy(value)
    return base


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
