"""Centralised JSON logging configuration and helpers.

Every record is emitted as a single-line JSON object. Two kinds of context are
merged into each record: the correlation ID of the HTTP request that caused the
work, and the sync context (``table``, ``key``, ``op``) of the write or change
event being processed. Both live in context variables, so they follow work that
is handed to the engine loop and to pushed writes scheduled from it.
"""

from __future__ import annotations

import contextvars
import json
import logging
import os
import sys
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional

# ---------------------------------------------------------------------------
# Context management
# ---------------------------------------------------------------------------

_request_id_ctx: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "request_id", default=None
)
_log_context_ctx: contextvars.ContextVar[Optional[Dict[str, Any]]] = (
    contextvars.ContextVar("log_context", default=None)
)

_REDACTED = "[REDACTED]"
_SENSITIVE_FIELDS = {
    field.strip().lower()
    for field in os.environ.get(
        "SENSITIVE_FIELDS", "password,temporary_password,password_hash,key,token"
    ).split(",")
    if field.strip()
}

_JSON_LOG_FIELDS = (
    "ts",
    "level",
    "logger",
    "msg",
    "request_id",
    "method",
    "path",
    "status",
    "duration_ms",
    "table",
    "key",
    "op",
    "db_time_ms",
    "error_type",
    "error",
    "stack",
    "extra_context",
)


def get_request_id() -> Optional[str]:
    """Return the correlation ID for the current context, if any."""

    return _request_id_ctx.get()


def set_request_id(request_id: str) -> None:
    """Associate a correlation ID with the current context."""

    _request_id_ctx.set(request_id)
    merge_log_context(request_id=request_id)


def clear_request_id() -> None:
    _request_id_ctx.set(None)


def get_log_context() -> Dict[str, Any]:
    """Return the key/value pairs merged into every record of this context."""

    ctx = _log_context_ctx.get()
    if ctx is None:
        ctx = {}
        _log_context_ctx.set(ctx)
    return ctx


def merge_log_context(**kwargs: Any) -> None:
    """Merge key/value pairs into the current context, skipping ``None``."""

    ctx = dict(get_log_context())
    for key, value in kwargs.items():
        if value is not None:
            ctx[key] = value
    _log_context_ctx.set(ctx)


def clear_log_context() -> None:
    _log_context_ctx.set({})


@contextmanager
def sync_context(table: str, key: Any = None, op: Optional[str] = None) -> Iterator[None]:
    """Tag every record logged inside the block with the sync target."""

    token = _log_context_ctx.set(
        {**get_log_context(), "table": table, "key": _key_repr(key), "op": op}
    )
    try:
        yield
    finally:
        _log_context_ctx.reset(token)


def _key_repr(key: Any) -> Optional[str]:
    if key is None:
        return None
    if isinstance(key, tuple):
        return "/".join(str(part) for part in key)
    return str(key)


# ---------------------------------------------------------------------------
# Redaction helpers
# ---------------------------------------------------------------------------

def sensitive_fields() -> Iterable[str]:
    return _SENSITIVE_FIELDS


def redact_sensitive_data(data: Any, fields: Optional[Iterable[str]] = None) -> Any:
    """Redact sensitive values from mappings or sequences.

    Works recursively for nested dictionaries and lists; keys are compared
    case-insensitively and camelCase keys are matched in their snake_case form
    (``temporaryPassword`` is caught by ``temporary_password``).
    """

    fields_set = {field.lower() for field in (fields or sensitive_fields())}

    if isinstance(data, Mapping):
        redacted: Dict[Any, Any] = {}
        for key, value in data.items():
            if _snake(str(key)) in fields_set or str(key).lower() in fields_set:
                redacted[key] = _REDACTED
            else:
                redacted[key] = redact_sensitive_data(value, fields_set)
        return redacted
    if isinstance(data, (list, tuple, set, frozenset)):
        return [redact_sensitive_data(item, fields_set) for item in data]
    return data


def _snake(name: str) -> str:
    out = []
    for char in name:
        if char.isupper():
            out.append("_")
            out.append(char.lower())
        else:
            out.append(char)
    return "".join(out).lstrip("_")


# ---------------------------------------------------------------------------
# JSON logging infrastructure
# ---------------------------------------------------------------------------

# Attributes every LogRecord carries; anything else on a record came from
# ``extra=`` and is reported under ``extra_context``.
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "taskName"}

# Fields lifted from ``extra=`` to the top level of the JSON line.
_PROMOTED_FIELDS = (
    "method", "path", "status", "duration_ms", "table", "key", "op", "db_time_ms",
    "error_type", "error",
)


class JSONFormatter(logging.Formatter):
    """Render a record as one JSON line with a fixed set of top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = dict.fromkeys(_JSON_LOG_FIELDS)
        payload.update(
            ts=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(
                timespec="milliseconds"
            ),
            level=record.levelname,
            logger=record.name,
            msg=record.getMessage(),
            request_id=get_request_id(),
        )

        for key, value in get_log_context().items():
            if payload.get(key) is None:
                payload[key] = value

        for field in _PROMOTED_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        if record.exc_info:
            exc_type, exc, _ = record.exc_info
            payload.update(
                error_type=exc_type.__name__,
                error=str(exc),
                stack=self.formatException(record.exc_info),
            )
        elif record.stack_info:
            payload["stack"] = record.stack_info

        extra = {
            key: value
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and key not in payload and not key.startswith("_")
        }
        if extra:
            payload["extra_context"] = redact_sensitive_data(extra)

        return json.dumps(payload, default=_json_default, separators=(",", ":"))


def _json_default(obj: Any) -> Any:
    if isinstance(obj, datetime):
        return obj.isoformat()
    return str(obj)


_configured = False


def configure_logging() -> None:
    """Configure root logging with a JSON formatter."""

    global _configured
    if _configured:
        return

    level_name = os.environ.get("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JSONFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = [handler]
    logging.captureWarnings(True)

    # Silence noisy third-party loggers; the engine logs its own I/O.
    for noisy_logger in ("sqlalchemy.engine", "httpx", "httpcore", "werkzeug"):
        log = logging.getLogger(noisy_logger)
        log.handlers = []
        log.propagate = True
        log.setLevel(logging.WARNING)

    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Return a logger instance using the configured JSON formatter."""

    configure_logging()
    return logging.getLogger(name)


class GatewayTimer:
    """Track time spent in one gateway call and expose it in logs."""

    elapsed_ms = 0.0

    def __enter__(self) -> "GatewayTimer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.elapsed_ms = round((time.perf_counter() - self._start) * 1000, 2)
        merge_log_context(db_time_ms=self.elapsed_ms)


__all__ = [
    "GatewayTimer",
    "JSONFormatter",
    "clear_log_context",
    "clear_request_id",
    "configure_logging",
    "get_log_context",
    "get_logger",
    "get_request_id",
    "merge_log_context",
    "redact_sensitive_data",
    "sensitive_fields",
    "set_request_id",
    "sync_context",
]
