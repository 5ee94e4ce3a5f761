"""
Structured logging configuration.

Provides:
    • JSON-formatted logs for production (machine-parseable)
    • Pretty console logs for development (human-readable)
    • Request-scoped context (request_id, client_ip, endpoint, alert_id)
    • Phone number masking: `mask_phone()` for explicit use, plus a
      handler filter that scrubs any E.164 number left in a message

Usage:
    from backend.app.core.logging_config import setup_logging, get_logger

    setup_logging()
    logger = get_logger(__name__)
    logger.info("Alert escalated", extra={"alert_id": alert_id, "call_sid": sid})
"""

from __future__ import annotations

import json
import logging
import re
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from backend.app.core.config import settings

# ── Context variable for request-scoped data ──
_request_context: ContextVar[Dict[str, Any]] = ContextVar(
    "request_context", default={}
)

# Domain fields copied from `extra=` into log output
DOMAIN_FIELDS = (
    "alert_id", "call_sid", "message_sid", "coordinator_id", "status",
    "outcome", "channel", "duration_ms", "status_code", "endpoint",
)

# Short labels for the console formatter
_PRETTY_LABELS = {
    "alert_id": "alert",
    "call_sid": "call",
    "message_sid": "sms",
    "outcome": "outcome",
}

_NON_DIGITS = re.compile(r"\D")
_E164_IN_TEXT = re.compile(r"\+[1-9]\d{5,14}\b")


def set_request_context(**kwargs: Any) -> None:
    """Replace the request-scoped log context. No arguments clears it."""
    _request_context.set(kwargs)


def get_request_context() -> Dict[str, Any]:
    return _request_context.get()


def mask_phone(phone: Optional[str]) -> str:
    """
    Keep the last four digits of a phone number, star the rest.

        "+14155552671" → "+*******2671"
    """
    if not phone or not phone.strip():
        return "unknown"
    trimmed = phone.strip()
    digits = _NON_DIGITS.sub("", trimmed)
    if not digits:
        return "unknown"
    visible = digits[-4:]
    masked = "*" * max(len(digits) - len(visible), 0) + visible
    return f"+{masked}" if trimmed.startswith("+") else masked


class PhoneMaskingFilter(logging.Filter):
    """Scrub E.164 numbers that reach a handler unmasked."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        if "+" in message:
            scrubbed = _E164_IN_TEXT.sub(lambda m: mask_phone(m.group(0)), message)
            if scrubbed != message:
                record.msg, record.args = scrubbed, None
        return True


def _domain_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {key: getattr(record, key) for key in DOMAIN_FIELDS if hasattr(record, key)}


# ── JSON Formatter (Production) ──

class JSONFormatter(logging.Formatter):
    """One JSON object per line for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        ctx = get_request_context()
        if ctx:
            entry["context"] = ctx
        entry.update(_domain_fields(record))

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(entry, default=str)


# ── Pretty Formatter (Development) ──

class PrettyFormatter(logging.Formatter):
    """Coloured console output with the alert / call ids appended."""

    COLORS = {
        "DEBUG": "\033[36m",    # Cyan
        "INFO": "\033[32m",     # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",    # Red
        "CRITICAL": "\033[35m", # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        ts = self.formatTime(record, "%H:%M:%S")

        request_id = get_request_context().get("request_id")
        prefix = f" [{request_id[:8]}]" if request_id else ""

        fields = _domain_fields(record)
        suffix = "".join(
            f" {label}={fields[key]}"
            for key, label in _PRETTY_LABELS.items()
            if fields.get(key)
        )

        formatted = (
            f"{color}{ts} {record.levelname:8s}{self.RESET}"
            f"{prefix} {record.name}: {record.getMessage()}{suffix}"
        )
        if record.exc_info and record.exc_info[1]:
            formatted += f"\n  {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return formatted


# ── Setup ──

def setup_logging() -> None:
    """Configure the root logger once, based on environment."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if settings.is_production else PrettyFormatter())
    handler.addFilter(PhoneMaskingFilter())
    root.addHandler(handler)

    # Twilio's HTTP client logs full request bodies (numbers, message text) at INFO
    logging.getLogger("twilio.http_client").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
