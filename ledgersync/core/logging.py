from __future__ import annotations

import json
import logging
import re
from typing import Any

from ledgersync.core.config import get_settings


_STANDARD_ATTRS = frozenset(
    {
        "args",
        "asctime",
        "created",
        "exc_info",
        "exc_text",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "message",
        "module",
        "msecs",
        "msg",
        "name",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "stacklevel",
        "taskName",
        "thread",
        "threadName",
    }
)
_SENSITIVE_KEY_PATTERNS = ("token", "secret", "authorization", "password", "api_key", "code_verifier")
# Catch bearer headers and token=... pairs that leak into formatted messages.
_SENSITIVE_VALUE_RE = re.compile(
    r"(?i)(bearer\s+|(?:access|refresh)_token[=:]\s*)[A-Za-z0-9._~+/=-]+"
)
_REDACTED = "[REDACTED]"
_HANDLER_NAME = "ledgersync"


def is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def redact_mapping(value: Any) -> Any:
    """Return a copy of ``value`` with credential-named keys masked at any depth."""
    if isinstance(value, dict):
        return {
            str(key): _REDACTED if is_sensitive_key(str(key)) else redact_mapping(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact_mapping(item) for item in value]
    return value


def redact_text(value: str) -> str:
    return _SENSITIVE_VALUE_RE.sub(lambda match: f"{match.group(1)}{_REDACTED}", value)


class RedactingFilter(logging.Filter):
    """Scrub credential-looking values from messages and ``extra`` fields."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact_text(record.msg)
        if record.args:
            args = record.args if isinstance(record.args, tuple) else (record.args,)
            record.args = tuple(redact_text(arg) if isinstance(arg, str) else arg for arg in args)
        for key in list(record.__dict__):
            if key not in _STANDARD_ATTRS and is_sensitive_key(key):
                setattr(record, key, _REDACTED)
        return True


class JsonFormatter(logging.Formatter):
    """Emit one JSON object per line with ``extra`` fields merged in."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S%z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key in _STANDARD_ATTRS or key in payload:
                continue
            try:
                json.dumps(value)
                payload[key] = value
            except (TypeError, ValueError):
                payload[key] = str(value)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"))


def configure_logging() -> None:
    # Install one root handler; repeated calls from app factories and workers only adjust the level.
    settings = get_settings()
    root = logging.getLogger()
    root.setLevel(settings.log_level.upper())
    if any(handler.get_name() == _HANDLER_NAME for handler in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.set_name(_HANDLER_NAME)
    if settings.log_format.lower() == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
    handler.addFilter(RedactingFilter())
    root.addHandler(handler)
