from .router import (
    ARTICLE_ITEM_SCHEMA,
    chat_completion,
    extract_last_json,
    get_api_key,
    safe_parse_json,
    validate_items,
)

__all__ = [
    "ARTICLE_ITEM_SCHEMA",
    "chat_completion",
    "extract_last_json",
    "get_api_key",
    "safe_parse_json",
    "validate_items",
]
