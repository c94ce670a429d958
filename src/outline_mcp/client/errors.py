"""Failure classification for WorkFlowy operations.

``classify`` turns whatever a transport, the REST API or the tree layer
raised into an ``ErrorClassification``. Rules are checked in order and the
first match wins:

1. already classified (``WorkFlowyError`` / ``ErrorClassification``)
2. local validation (``InvalidOperationError``): ``UnknownOperational``,
   never retried
3. transport failures (refused, reset, timed out, unresolved host)
4. HTTP 429/503 or overload / rate-limit wording
5. HTTP 401/403 or authentication wording (message is redacted)
6. HTTP 404 or "not found" wording
7. anything else is ``UnknownOperational`` and retryable
"""

from __future__ import annotations

import socket
from typing import Any

import httpx

from ..models import ErrorClassification, ErrorKind, InvalidOperationError, WorkFlowyError

NETWORK_CODES = frozenset({
    "ECONNREFUSED",
    "ECONNRESET",
    "ECONNABORTED",
    "ETIMEDOUT",
    "ENOTFOUND",
    "EAI_AGAIN",
    "EPIPE",
})

OVERLOAD_STATUSES = frozenset({429, 503})
AUTH_STATUSES = frozenset({401, 403})

OVERLOAD_MARKERS = ("rate limit", "rate-limit", "ratelimit", "too many requests", "overload")
AUTH_MARKERS = ("authentication", "unauthorized", "unauthorised", "forbidden", "invalid credentials")
NOT_FOUND_MARKERS = ("not found",)


def _status_of(error: Any) -> int | None:
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    if isinstance(response, httpx.Response):
        return response.status_code
    return None


def _code_of(error: Any) -> str | None:
    code = getattr(error, "code", None)
    if isinstance(code, str) and code:
        return code.upper()
    return None


def _message_of(error: Any) -> str:
    if isinstance(error, BaseException):
        return str(error)
    if isinstance(error, dict):
        return str(error.get("message") or error.get("error") or error)
    return str(error)


def _is_transport_failure(error: Any) -> bool:
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, (ConnectionError, TimeoutError, socket.gaierror)):
        return True
    return _code_of(error) in NETWORK_CODES


def classify(error: Any, operation: str | None = None) -> ErrorClassification:
    """Classify a raw failure. Pure: no logging, no mutation."""
    if isinstance(error, WorkFlowyError):
        return error.classification
    if isinstance(error, ErrorClassification):
        return error

    cause = error if isinstance(error, BaseException) else None
    status = _status_of(error)
    code = _code_of(error)
    raw = _message_of(error)
    lowered = raw.lower()
    where = f" during {operation}" if operation else ""

    if isinstance(error, InvalidOperationError):
        return ErrorClassification(
            kind=ErrorKind.UNKNOWN,
            retryable=False,
            message=f"Invalid operation{where}: {raw}",
            code="INVALID_OPERATION",
            cause=error,
        )

    if _is_transport_failure(error):
        return ErrorClassification.of(
            ErrorKind.NETWORK,
            f"Network error{where}: {raw or type(error).__name__}",
            code=code or "NETWORK_ERROR",
            status=status,
            cause=cause,
        )

    if status in OVERLOAD_STATUSES or any(m in lowered for m in OVERLOAD_MARKERS):
        return ErrorClassification.of(
            ErrorKind.OVERLOADED,
            f"Service overloaded{where}: {raw}",
            code="OVERLOADED",
            status=status,
            cause=cause,
        )

    if status in AUTH_STATUSES or any(m in lowered for m in AUTH_MARKERS):
        # Raw text may echo credentials back; never surface it.
        return ErrorClassification.of(
            ErrorKind.AUTHENTICATION,
            f"Authentication failed{where}",
            code="AUTH_FAILED",
            status=status,
            cause=cause,
        )

    if status == 404 or any(m in lowered for m in NOT_FOUND_MARKERS):
        return ErrorClassification.of(
            ErrorKind.NOT_FOUND,
            f"Resource not found{where}: {raw}",
            code="NOT_FOUND",
            status=status,
            resource_id=getattr(error, "resource_id", None),
            cause=cause,
        )

    return ErrorClassification.of(
        ErrorKind.UNKNOWN,
        f"Error{where}: {raw or type(error).__name__}",
        code=code or "UNKNOWN_ERROR",
        status=status,
        cause=cause,
    )


def not_found(resource_id: str, what: str = "Node") -> WorkFlowyError:
    """ResourceNotFound for a missing id."""
    return ErrorClassification.of(
        ErrorKind.NOT_FOUND,
        f"{what} with ID {resource_id} not found.",
        code="NOT_FOUND",
        status=404,
        resource_id=resource_id,
    ).to_error()


def invalid_operation(message: str) -> WorkFlowyError:
    """Non-retryable failure for a request rejected before any I/O."""
    return classify(InvalidOperationError(message)).to_error()


def authentication_failed(reason: str) -> WorkFlowyError:
    """AuthenticationFailed with a caller-chosen (already redacted) message."""
    return ErrorClassification.of(ErrorKind.AUTHENTICATION, reason, code="AUTH_FAILED").to_error()
