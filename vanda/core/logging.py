"""
Structured logging for the quota backend.

Every log line goes through the "vanda" logger. Quota and metering code
calls log_event(level, "<area>.<event>", user_id=..., feature=...) so that
records carry the caller, the metered feature and the request id as
attributes, which the JSON formatter lifts into top-level keys.
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Optional

LOGGER_NAME = "vanda"

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Record attributes lifted into JSON output when set
_STRUCTURED_FIELDS = ("user_id", "feature", "event_type", "error_code", "status", "path", "method", "latency_bucket")

# (upper bound in ms, label)
_LATENCY_BUCKETS = ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms"))

_EXTRA_VALUE_LIMIT = 500


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return default if rid is None else rid


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "unknown"
    for upper, label in _LATENCY_BUCKETS:
        if latency_ms < upper:
            return label
    return ">=1000ms"


def _timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class RequestIdFilter(logging.Filter):
    """Stamp records with the request id bound to the current context."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": _timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        payload.update(
            (field, getattr(record, field))
            for field in _STRUCTURED_FIELDS
            if getattr(record, field, None) is not None
        )
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    """One human-readable line: time, level, [vanda], then rid/user/feature tags."""

    def format(self, record: logging.LogRecord) -> str:
        tags = "".join(
            f" [{label}={value}]"
            for label, value in (
                ("rid", getattr(record, "request_id", None)),
                ("user", getattr(record, "user_id", None)),
                ("feature", getattr(record, "feature", None)),
            )
            if value
        )
        line = f"{_timestamp(record)} {record.levelname} [{LOGGER_NAME}]{tags} {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(env: str = "development", level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    """
    Install a single stdout handler on the "vanda" logger.

    fmt is "json" or "pretty"; by default production gets JSON and every
    other environment gets pretty lines.
    """
    if fmt is None:
        fmt = "json" if env.lower() == "production" else "pretty"

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if fmt == "json" else PrettyFormatter())
    handler.addFilter(RequestIdFilter())

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel((level or "INFO").upper())
    logger.handlers = [handler]
    logger.propagate = True

    # uvicorn keeps its own handlers; don't echo them twice
    logging.getLogger("uvicorn").propagate = False
    logging.getLogger("uvicorn.error").propagate = False


def _clip(value) -> str:
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    if len(text) > _EXTRA_VALUE_LIMIT:
        return text[:_EXTRA_VALUE_LIMIT] + "...<truncated>"
    return text


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    feature: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
):
    """Log a named quota/metering event with caller and feature attached."""
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        configure_logging(os.getenv("ENV", "development"))

    attrs: Dict[str, object] = {
        "request_id": request_id or get_request_id(),
        "user_id": user_id,
        "feature": feature,
    }
    if event_type:
        attrs["event_type"] = event_type
    if error_code:
        attrs["error_code"] = error_code
    for key, value in (extra or {}).items():
        attrs[key] = _clip(value)

    getattr(logger, level, logger.info)(msg, extra=attrs)
