"""Logging for guildvault.

Every record carries the request's correlation id and, inside a restore or
import, the operation fields set by `log_context()` (operation, server_id,
channel_id, actor_id). `setup_logging()` renders them either as JSON lines
or as a bracketed suffix on plain text lines.
"""

from __future__ import annotations

import json
import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Iterator

if TYPE_CHECKING:
    from guildvault.config import Config

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")
_fields: ContextVar[dict[str, str] | None] = ContextVar("log_fields", default=None)


def new_correlation_id(incoming: str | None = None) -> str:
    """Adopt the caller's correlation id, or mint one, for the current context."""
    cid = incoming or str(uuid.uuid4())
    correlation_id.set(cid)
    return cid


def current_fields() -> dict[str, str]:
    return dict(_fields.get() or {})


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Attach fields to every record logged in this block.

    Nested blocks add to the outer fields. None values are dropped. Tasks
    spawned inside the block inherit the fields.
    """
    merged = current_fields()
    merged.update({k: str(v) for k, v in fields.items() if v is not None})
    token = _fields.set(merged)
    try:
        yield
    finally:
        _fields.reset(token)


class _ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id.get("")  # type: ignore[attr-defined]
        record.log_fields = current_fields()  # type: ignore[attr-defined]
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON object per line; operation fields are top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "level": record.levelname,
            "message": record.getMessage(),
            "module": record.name,
        }
        cid = getattr(record, "correlation_id", "")
        if cid:
            payload["correlation_id"] = cid
        for key, value in getattr(record, "log_fields", {}).items():
            payload.setdefault(key, value)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class TextFormatter(logging.Formatter):
    """`name: message [operation=restore server_id=...]`."""

    def __init__(self) -> None:
        super().__init__("%(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = getattr(record, "log_fields", None)
        if not fields:
            return line
        suffix = " ".join(f"{k}={v}" for k, v in fields.items())
        head, sep, tail = line.partition("\n")  # keep tracebacks after the suffix
        return f"{head} [{suffix}]{sep}{tail}"


def setup_logging(config: "Config") -> None:
    """Install one stream handler on the root logger per config.logging."""
    log_cfg = config.logging
    level = getattr(logging, log_cfg.level.upper(), logging.WARNING)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.addFilter(_ContextFilter())
    if log_cfg.format.lower() == "json":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(TextFormatter())
    root.addHandler(handler)

    # asyncpg logs every pool reconnect at INFO
    logging.getLogger("asyncpg").setLevel(logging.ERROR)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
