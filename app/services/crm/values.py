"""Small coercion helpers shared by the CRM automation modules."""

import re
from typing import Any, Optional

from app.models.client_order import _positive_int

TAG_RE = re.compile(r"<[^>]+>")
WHITESPACE_RE = re.compile(r"\s+")
CHAT_LINK_KEYS = (("chat_id",), ("source_chat_id",), ("chat", "id"), ("source", "chat_id"))


def positive_int(value: Any) -> Optional[int]:
    return _positive_int(value)


def clean_text(value: Any, limit: int) -> str:
    """Trimmed string capped at `limit` characters; None and non-scalars become ''."""
    if value is None or isinstance(value, (dict, list)):
        return ""
    return str(value).strip()[:limit]


def collapse_whitespace(value: Any) -> str:
    return WHITESPACE_RE.sub(" ", str(value or "")).strip()


def plain_text(value: Any, limit: int) -> str:
    return collapse_whitespace(TAG_RE.sub(" ", str(value or "")))[:limit]


def bool_from_payload(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return int(value) == 1
    if isinstance(value, str):
        text = value.strip().lower()
        if text in {"1", "true", "yes", "on"}:
            return True
        if text in {"0", "false", "no", "off"}:
            return False
    return default


def metadata_has_chat_link(metadata: Any, chat_ids: list[int]) -> bool:
    if not isinstance(metadata, dict) or not chat_ids:
        return False
    for path in CHAT_LINK_KEYS:
        node: Any = metadata
        for key in path:
            node = node.get(key) if isinstance(node, dict) else None
        if positive_int(node) in chat_ids:
            return True
    return False


def format_money(value: Any) -> str:
    try:
        return f"{float(value or 0):.2f}"
    except (TypeError, ValueError):
        return "0.00"
