"""
JSON logging configuration for Assistly API.

Records carry two kinds of context: the per-call `extra={"context": {...}}`
dict, and the turn context bound with `log_context()` while one inbound
message is processed. Tenant keys are lifted to the top level of the JSON
line so log search can filter by company or chat without parsing `context`.
"""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator

TENANT_FIELDS = ("company_id", "assistant_id", "chat_id", "channel")

_turn_context: ContextVar[dict[str, Any]] = ContextVar("assistly_log_context", default={})


@contextmanager
def log_context(**fields: Any) -> Iterator[dict[str, Any]]:
    """Bind fields to every record logged in this thread or task until the block exits."""
    bound = {**_turn_context.get(), **{key: value for key, value in fields.items() if value is not None}}
    token = _turn_context.set(bound)
    try:
        yield bound
    finally:
        _turn_context.reset(token)


def current_log_context() -> dict[str, Any]:
    return dict(_turn_context.get())


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = {**_turn_context.get(), **(getattr(record, "context", None) or {})}
        for key in TENANT_FIELDS:
            if key in context:
                log_data[key] = context.pop(key)
        if context:
            log_data["context"] = context

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO") -> None:
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)

    # Outbound HTTP to Telegram/Instagram/OpenAI logs every request at INFO.
    for noisy in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"assistly.{name}")
