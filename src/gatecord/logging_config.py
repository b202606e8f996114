"""
Structured logging configuration for gatecord.

Provides JSON-formatted structured logging with:
- Credential filtering (tokens and Authorization values never reach the output)
- Low-cardinality fields (URLs reduced to paths, payloads and bodies redacted)

Usage:
    from gatecord.logging_config import setup_logging, get_logger

    setup_logging()  # Call once at startup
    logger = get_logger(__name__)
    logger.info("message", extra={"key": "value"})
"""

from __future__ import annotations

import json
import logging
import re
import sys
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlsplit

_URL_PATTERN = re.compile(r"((?:https?|wss?)://[^\s\"'<>]+)")

_SENSITIVE_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    # Bot/user tokens: three base64url parts separated by dots
    (re.compile(r"\b[\w-]{23,28}\.[\w-]{6,7}\.[\w-]{27,}\b"), "[TOKEN]"),
    (re.compile(r"\b(bot|bearer|token)[=:\s]+['\"]?[\w\-\.]+['\"]?", re.I), "[TOKEN]"),
    (re.compile(r"(authorization)[=:\s]+['\"]?[\w\-\.\s]+['\"]?", re.I), "[AUTH]"),
    (re.compile(r"\b[\w\.-]+@[\w\.-]+\.\w+\b"), "[EMAIL]"),
]

# Dropped whenever the key contains one of these
BLOCKED_SUBSTRINGS: frozenset[str] = frozenset(
    {
        "token",
        "authorization",
        "password",
        "secret",
        "credential",
    }
)

# Dropped on exact key match only
BLOCKED_FIELDS: frozenset[str] = frozenset({"auth", "ip", "email", "user_agent"})

HIGH_CARDINALITY_FIELDS: dict[str, str] = {
    "url": "endpoint",
    "body": "[BODY]",
    "payload": "[PAYLOAD]",
    "data": "[DATA]",
    "headers": "[HEADERS]",
}

# Attributes every LogRecord carries; anything else arrived through extra=
_RECORD_ATTRS: frozenset[str] = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "message",
        "taskName",
    }
)


def _normalize_url(url: str) -> str:
    """Reduce a URL to its path (drops host, query and any credentials in it)."""
    return urlsplit(url).path or "/"


def _sanitize_url_in_text(match: re.Match[str]) -> str:
    path = _normalize_url(match.group(1))
    return path if path != "/" else "[URL]"


def sanitize_text(text: str) -> str:
    """
    Remove credentials and high-cardinality URL parts from free-form text.

    - URLs → path only
    - token-shaped strings, "Bot <token>", Authorization values → placeholders
    - email addresses → [EMAIL]
    """
    if not text:
        return text

    result = _URL_PATTERN.sub(_sanitize_url_in_text, text)
    for pattern, replacement in _SENSITIVE_PATTERNS:
        result = pattern.sub(replacement, result)
    return result


def _is_blocked(key: str) -> bool:
    key_lower = key.lower()
    if key_lower in BLOCKED_FIELDS:
        return True
    return any(blocked in key_lower for blocked in BLOCKED_SUBSTRINGS)


def filter_fields(fields: dict[str, Any], *, _depth: int = 0) -> dict[str, Any]:
    """Filter sensitive and high-cardinality fields. Nested dicts are filtered to depth 3."""
    if _depth > 3:
        return {"_truncated": "max depth exceeded"}

    filtered: dict[str, Any] = {}
    for key, value in fields.items():
        if _is_blocked(key):
            continue

        key_lower = key.lower()
        if key_lower in HIGH_CARDINALITY_FIELDS:
            if key_lower == "url" and isinstance(value, str):
                filtered["endpoint"] = _normalize_url(value)
            else:
                filtered[key] = HIGH_CARDINALITY_FIELDS[key_lower]
            continue

        if isinstance(value, (int, float, bool, type(None))):
            filtered[key] = value
        elif isinstance(value, str):
            filtered[key] = sanitize_text(value)
        elif isinstance(value, (list, tuple)):
            filtered[key] = list(value) if len(value) <= 10 else f"[list:{len(value)} items]"
        elif isinstance(value, dict):
            filtered[key] = filter_fields(value, _depth=_depth + 1)
        else:
            filtered[key] = sanitize_text(str(value))

    return filtered


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _RECORD_ATTRS}


class JsonFormatter(logging.Formatter):
    """
    One JSON object per line.

    {"ts":"2024-01-01T00:00:00.000+00:00","level":"INFO","logger":"...","msg":"...", ...}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_dict: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": sanitize_text(record.getMessage()),
        }

        if record.levelno >= logging.WARNING:
            log_dict["file"] = record.filename
            log_dict["line"] = record.lineno

        if record.exc_info:
            log_dict["exc"] = sanitize_text(self.formatException(record.exc_info))

        extra = _extra_fields(record)
        if extra:
            log_dict.update(filter_fields(extra))

        return json.dumps(log_dict, default=str, ensure_ascii=False)


class SimpleFormatter(logging.Formatter):
    """Human-readable output with filtered fields, for development."""

    def format(self, record: logging.LogRecord) -> str:
        base = f"{record.levelname:8s} {record.name}: {sanitize_text(record.getMessage())}"

        filtered = filter_fields(_extra_fields(record))
        if filtered:
            extra_str = " ".join(f"{k}={v}" for k, v in filtered.items())
            base = f"{base} | {extra_str}"

        if record.exc_info:
            base = f"{base}\n{sanitize_text(self.formatException(record.exc_info))}"

        return base


def setup_logging(
    *,
    level: int | str = logging.INFO,
    json_format: bool = True,
    stream: Any = None,
) -> None:
    """
    Configure structured logging. Call once at application startup.

    Args:
        level: Log level (default INFO).
        json_format: Use JSON formatter (default True).
        stream: Output stream (default stderr).
    """
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JsonFormatter() if json_format else SimpleFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
