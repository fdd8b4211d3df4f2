"""
logging_config.py — Log formatting, scoped context and recipient masking.

Every log line written during a poll cycle carries the cycle id, and every
line written while serving an HTTP request carries the request id. Alert
fan-out adds per-send fields (event, recipient, channel) through ``extra=``.

Subscriber phone numbers are personal data, so both formatters can mask
them: ``+254712345678`` is written as ``+254******678``.

Usage:
    from spacewx.core.logging_config import setup_logging, log_scope

    setup_logging()
    with log_scope(cycle_id="3f9a1c2e"):
        logger.info("SMS sent", extra={"recipient": phone, "channel": "sms"})
"""

from __future__ import annotations

import json
import logging
import re
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from spacewx.core.config import settings

_log_context: ContextVar[Dict[str, Any]] = ContextVar("spacewx_log_context", default={})

# Record attributes promoted to top-level JSON keys when present
CORRELATION_FIELDS = (
    "cycle_id", "event_id", "event_type", "alert_level", "recipient", "channel",
    "alert_id", "feed", "duration_ms", "status_code", "endpoint",
)

_PHONE_RE = re.compile(r"\+\d{7,15}")


def mask_phone(text: str) -> str:
    """Mask every E.164 number in *text*, keeping prefix and last three digits."""

    def _mask(match: re.Match) -> str:
        digits = match.group(0)[1:]
        return "+" + digits[:3] + "*" * (len(digits) - 6) + digits[-3:]

    return _PHONE_RE.sub(_mask, text)


def set_log_context(**kwargs: Any) -> None:
    """Replace the scoped context. Call with no arguments to clear it."""
    _log_context.set(kwargs)


def get_log_context() -> Dict[str, Any]:
    return _log_context.get()


@contextmanager
def log_scope(**fields: Any) -> Iterator[None]:
    """Add *fields* to the context for the block, then restore the previous one."""
    token = _log_context.set({**_log_context.get(), **fields})
    try:
        yield
    finally:
        _log_context.reset(token)


def _exception_summary(record: logging.LogRecord) -> Optional[Dict[str, str]]:
    if record.exc_info and record.exc_info[1]:
        exc = record.exc_info[1]
        return {"type": type(exc).__name__, "message": str(exc)}
    return None


class JSONFormatter(logging.Formatter):
    """One JSON object per line for log shipping."""

    def __init__(self, mask: bool = False):
        super().__init__()
        self.mask = mask

    def _clean(self, value: Any) -> Any:
        if self.mask and isinstance(value, str):
            return mask_phone(value)
        return value

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": self._clean(record.getMessage()),
        }

        context = get_log_context()
        if context:
            entry["context"] = {k: self._clean(v) for k, v in context.items()}

        entry.update(
            (field, self._clean(getattr(record, field)))
            for field in CORRELATION_FIELDS
            if hasattr(record, field)
        )

        exc = _exception_summary(record)
        if exc:
            entry["exception"] = exc
        return json.dumps(entry, default=str)


class PrettyFormatter(logging.Formatter):
    """Coloured single-line output for a terminal."""

    LEVEL_COLOURS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, mask: bool = False):
        super().__init__()
        self.mask = mask

    @staticmethod
    def _scope_tag(record: logging.LogRecord) -> str:
        context = get_log_context()
        if context.get("cycle_id"):
            tag = f"[cycle {context['cycle_id']}]"
        elif context.get("request_id"):
            tag = f"[req {context['request_id'][:8]}]"
        else:
            return ""
        # event_type/channel narrow a line down to one send
        detail = "/".join(
            str(getattr(record, f)) for f in ("event_type", "channel") if hasattr(record, f)
        )
        return f" {tag}{' ' + detail if detail else ''}"

    def format(self, record: logging.LogRecord) -> str:
        colour = self.LEVEL_COLOURS.get(record.levelname, self.RESET)
        message = record.getMessage()
        if self.mask:
            message = mask_phone(message)

        line = (
            f"{colour}{self.formatTime(record, '%H:%M:%S')} {record.levelname:<8}{self.RESET}"
            f"{self._scope_tag(record)} {record.name}: {message}"
        )
        exc = _exception_summary(record)
        if exc:
            line += f"\n  {exc['type']}: {exc['message']}"
        return line


def _pick_formatter() -> logging.Formatter:
    fmt = settings.LOG_FORMAT.lower()
    if fmt == "auto":
        fmt = "json" if settings.is_production else "pretty"
    if fmt == "json":
        return JSONFormatter(mask=settings.LOG_MASK_RECIPIENTS)
    return PrettyFormatter(mask=settings.LOG_MASK_RECIPIENTS)


def setup_logging() -> None:
    """Install a single stdout handler on the root logger."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_pick_formatter())
    root.addHandler(handler)

    for noisy in ("uvicorn.access", "httpx", "httpcore", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
