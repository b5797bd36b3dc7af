"""Translate upstream provider failures into OpenAI-compatible error shapes.

Provider errors arrive as exceptions whose message is a JSON document. Two
shapes are observed in the wild:

* OAuth style: ``{"error": "invalid_grant", "error_description": "...", "error_uri": "..."}``
* API style: ``{"error": {"code": 404, "message": "...", "status": "NOT_FOUND"}}``

Anything else is treated as an opaque internal error that carries the raw
text. None of the helpers in this module raise.
"""

from __future__ import annotations

import json
import logging
import random
import time
from typing import Any

LOG = logging.getLogger(__name__)

AUTHENTICATION_ERROR = "authentication_error"
PERMISSION_ERROR = "permission_error"
NOT_FOUND_ERROR = "not_found_error"
RATE_LIMIT_ERROR = "rate_limit_error"
INVALID_REQUEST_ERROR = "invalid_request_error"
TIMEOUT_ERROR = "timeout_error"
API_ERROR = "api_error"

INTERNAL_ERROR_CODE = "internal_error"

# Exact status / code matches, checked before the keyword scan.
_STATUS_TYPES = {
    "UNAUTHENTICATED": AUTHENTICATION_ERROR,
    "PERMISSION_DENIED": PERMISSION_ERROR,
    "NOT_FOUND": NOT_FOUND_ERROR,
    "RESOURCE_EXHAUSTED": RATE_LIMIT_ERROR,
    "INVALID_ARGUMENT": INVALID_REQUEST_ERROR,
    "FAILED_PRECONDITION": INVALID_REQUEST_ERROR,
    "OUT_OF_RANGE": INVALID_REQUEST_ERROR,
    "DEADLINE_EXCEEDED": TIMEOUT_ERROR,
    "400": INVALID_REQUEST_ERROR,
    "401": AUTHENTICATION_ERROR,
    "403": PERMISSION_ERROR,
    "404": NOT_FOUND_ERROR,
    "408": TIMEOUT_ERROR,
    "429": RATE_LIMIT_ERROR,
    "504": TIMEOUT_ERROR,
}

_KEYWORD_TYPES = (
    (AUTHENTICATION_ERROR, ("invalid_grant", "unauthorized", "auth", "invalid_rapt")),
    (PERMISSION_ERROR, ("permission", "forbidden", "access_denied")),
    (RATE_LIMIT_ERROR, ("rate_limit", "quota", "too_many_requests")),
    (
        INVALID_REQUEST_ERROR,
        ("invalid_request", "bad_request", "invalid_parameter", "invalid_argument", "invalid json payload"),
    ),
    (NOT_FOUND_ERROR, ("not_found", "resource_not_found")),
    (TIMEOUT_ERROR, ("deadline_exceeded", "timeout", "timed out")),
)

_HTTP_STATUS = {
    INVALID_REQUEST_ERROR: 400,
    AUTHENTICATION_ERROR: 401,
    PERMISSION_ERROR: 403,
    NOT_FOUND_ERROR: 404,
    RATE_LIMIT_ERROR: 429,
    TIMEOUT_ERROR: 504,
    API_ERROR: 500,
}


class UpstreamError(Exception):
    """Raised when the provider call fails; the message is the provider's JSON error body."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _error_text(error: Any) -> str:
    if isinstance(error, BaseException):
        text = str(error)
        return text or error.__class__.__name__
    if isinstance(error, str):
        return error
    try:
        return json.dumps(error, ensure_ascii=False)
    except (TypeError, ValueError):
        return repr(error)


def _parse_payload(error: Any) -> dict[str, Any] | None:
    """Return the decoded provider payload, or None when it is not a JSON object with `error`."""
    if isinstance(error, dict):
        payload: Any = error
    else:
        try:
            payload = json.loads(_error_text(error))
        except (TypeError, ValueError):
            return None
    if isinstance(payload, list) and payload and isinstance(payload[0], dict):
        # streamGenerateContent without alt=sse wraps errors in a list.
        payload = payload[0]
    if not isinstance(payload, dict) or not payload.get("error"):
        return None
    if not isinstance(payload["error"], (str, dict)):
        return None
    return payload


def _message(payload: dict[str, Any]) -> str:
    err = payload["error"]
    message = ""
    if isinstance(err, str):
        message = err
    elif err.get("message"):
        message = str(err["message"])
    else:
        message = " - ".join(str(part) for part in (err.get("status"), err.get("code")) if part)

    description = payload.get("error_description")
    if description:
        message = f"{message}: {description}" if message else str(description)
    uri = payload.get("error_uri")
    if uri:
        message += f" (See: {uri})"
    return message


def _code(payload: dict[str, Any]) -> str | None:
    err = payload["error"]
    if isinstance(err, str):
        return err
    for key in ("status", "code"):
        value = err.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def _classify_payload(payload: dict[str, Any] | None) -> str:
    if payload is None:
        return API_ERROR
    err = payload["error"]
    if isinstance(err, str):
        candidates = [err]
        haystack = err
    else:
        candidates = [str(err[key]) for key in ("status", "code") if err.get(key) not in (None, "")]
        haystack = " ".join(str(err[key]) for key in ("message", "status", "code") if err.get(key) not in (None, ""))

    for candidate in candidates:
        found = _STATUS_TYPES.get(candidate.strip().upper())
        if found:
            return found

    lowered = haystack.lower()
    for error_type, keywords in _KEYWORD_TYPES:
        if any(keyword in lowered for keyword in keywords):
            return error_type
    return API_ERROR


def classify(error: Any) -> str:
    """Map an upstream failure to one of the closed OpenAI error types."""
    return _classify_payload(_parse_payload(error))


def to_error_envelope(error: Any) -> dict[str, Any]:
    """Build the synchronous ``{"error": {message, type, code, param}}`` body."""
    raw = _error_text(error)
    payload = _parse_payload(error)
    if payload is None:
        envelope = {
            "error": {
                "message": raw or "Unknown error occurred",
                "type": API_ERROR,
                "code": INTERNAL_ERROR_CODE,
                "param": None,
            }
        }
    else:
        envelope = {
            "error": {
                "message": _message(payload) or raw,
                "type": _classify_payload(payload),
                "code": _code(payload),
                "param": None,
            }
        }
    LOG.debug("Translated upstream error type=%s code=%s", envelope["error"]["type"], envelope["error"]["code"])
    return envelope


def to_stream_error_event(error: Any) -> dict[str, Any]:
    """Build the SSE error event, distinguishable from chunks by ``object == "error"``."""
    now = time.time()
    return {
        "id": f"error-{int(now * 1000)}-{random.randint(0, 9999)}",
        "object": "error",
        "created": int(now),
        "error": to_error_envelope(error)["error"],
    }


def extract_code(error: Any) -> str | None:
    """Return the provider code/status of a failure, if any."""
    return to_error_envelope(error)["error"]["code"]


def is_authentication_error(error: Any) -> bool:
    return classify(error) == AUTHENTICATION_ERROR


def http_status_for_type(error_type: str) -> int:
    """HTTP status used for a non-streaming error response of the given type."""
    return _HTTP_STATUS.get(error_type, 500)
