"""Request/response logging middleware for Flask.

One ``request_start`` and one ``request_end`` record per request, with request
and response bodies passed through the redaction helper, so login passwords
and temporary passwords handed out by staff never reach the logs.
"""

from __future__ import annotations

import json
import os
import random
import time
from typing import Any, Dict

from flask import Flask, Response, g, request

from app_logging import get_logger, merge_log_context, redact_sensitive_data
from correlation_id_middleware import HEADER_NAME

_DEFAULT_SAMPLE_RATE = 1.0
_DEFAULT_MAX_BYTES = 2048

_request_logger = get_logger("clubsync.request")


def _sample_rate() -> float:
    try:
        return max(0.0, min(1.0, float(os.environ.get("REQUEST_LOG_SAMPLE_RATE",
                                                      _DEFAULT_SAMPLE_RATE))))
    except ValueError:
        return _DEFAULT_SAMPLE_RATE


def _max_response_bytes() -> int:
    try:
        return max(0, int(os.environ.get("RESPONSE_BODY_MAX_BYTES", _DEFAULT_MAX_BYTES)))
    except ValueError:
        return _DEFAULT_MAX_BYTES


def _should_skip(path: str) -> bool:
    return path.startswith("/static") or path in {"/health"}


def _should_log_request(path: str) -> bool:
    if _should_skip(path):
        return False
    sample_rate = _sample_rate()
    if sample_rate >= 1.0:
        return True
    return random.random() <= sample_rate


def _extract_request_payload() -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    if request.args:
        payload["query"] = redact_sensitive_data(request.args.to_dict(flat=False))
    if request.method in {"POST", "PUT", "PATCH", "DELETE"}:
        json_body = request.get_json(silent=True)
        if json_body is not None:
            payload["json"] = redact_sensitive_data(json_body)
    return payload


def _truncate_response_body(resp: Response) -> str | None:
    if resp.direct_passthrough:
        return None
    body = resp.get_data(as_text=True)
    if body and resp.mimetype and "json" in resp.mimetype:
        try:
            body = json.dumps(redact_sensitive_data(json.loads(body)))
        except ValueError:
            pass
    limit = _max_response_bytes()
    if limit == 0 or not body:
        return None
    if len(body) > limit:
        return body[:limit] + f"... truncated {len(body) - limit} bytes"
    return body


def init_request_logging(app: Flask) -> None:
    """Register Flask hooks that emit structured request/response logs."""

    @app.before_request
    def _log_request_start() -> None:
        should_log = _should_log_request(request.path)
        g._log_request = should_log
        g._request_start = time.perf_counter()
        merge_log_context(method=request.method, path=request.path)
        if not should_log:
            return
        _request_logger.info(
            "request_start",
            extra={
                "event": "request_start",
                "route": request.url_rule.rule if request.url_rule else None,
                "request_payload": _extract_request_payload(),
            },
        )

    @app.after_request
    def _log_request_end(response: Response) -> Response:
        duration_ms = None
        if hasattr(g, "_request_start"):
            duration_ms = round((time.perf_counter() - g._request_start) * 1000, 2)
        if getattr(g, "_log_request", False):
            _request_logger.info(
                "request_end",
                extra={
                    "event": "request_end",
                    "status": response.status_code,
                    "duration_ms": duration_ms,
                    "response_body": _truncate_response_body(response),
                },
            )
        response.headers.setdefault(HEADER_NAME, getattr(g, "request_id", ""))
        return response


__all__ = ["init_request_logging"]
