"""Line-delimited JSON logging for WorkFlowy operations.

Records go to stderr via plain ``print(..., flush=True)``: stdout belongs
to the stdio MCP transport and FastMCP swallows the ``logging`` module's
handlers. Log-collection scripts parse these lines, so the record shape
(``timestamp``, ``level``, ``message``, ``context``, optional ``error``)
must stay stable.
"""

from __future__ import annotations

import json
import sys
import traceback
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, TextIO

from ..models import ErrorClassification, WorkFlowyError


class LogLevel(IntEnum):
    ERROR = 0
    WARN = 1
    INFO = 2
    DEBUG = 3


class StructuredLogger:
    """Structured JSON-lines logger with level filtering and scoped context."""

    def __init__(
        self,
        level: LogLevel = LogLevel.INFO,
        environment: str = "production",
        stream: TextIO | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.level = level
        self.environment = environment
        self._stream = stream
        self._context = dict(context or {})

    @property
    def stream(self) -> TextIO:
        # Resolved lazily so pytest's capsys / redirected stderr are honored.
        return self._stream if self._stream is not None else sys.stderr

    def set_level(self, level: LogLevel) -> None:
        self.level = level

    def child(self, context: dict[str, Any]) -> "StructuredLogger":
        """Logger that stamps ``context`` on every record."""
        return StructuredLogger(
            self.level,
            self.environment,
            self._stream,
            {**self._context, **context},
        )

    def _error_payload(self, error: BaseException) -> dict[str, Any]:
        payload: dict[str, Any] = {"name": type(error).__name__, "message": str(error)}
        if isinstance(error, WorkFlowyError):
            payload["name"] = error.kind.value
            payload["code"] = error.classification.code
        else:
            code = getattr(error, "code", None)
            if code is not None:
                payload["code"] = str(code)
        if self.environment != "production":
            payload["stack"] = "".join(
                traceback.format_exception(type(error), error, error.__traceback__)
            )
        return payload

    def build_entry(
        self,
        level: LogLevel,
        message: str,
        context: dict[str, Any] | None = None,
        error: BaseException | None = None,
    ) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level.name,
            "message": message,
            "context": {"environment": self.environment, **self._context, **(context or {})},
        }
        if error is not None:
            entry["error"] = self._error_payload(error)
        return entry

    def log(
        self,
        level: LogLevel,
        message: str,
        context: dict[str, Any] | None = None,
        error: BaseException | None = None,
    ) -> None:
        if level > self.level:
            return
        entry = self.build_entry(level, message, context, error)
        print(json.dumps(entry, default=str), file=self.stream, flush=True)

    def error(self, message: str, error: BaseException | None = None, context: dict[str, Any] | None = None) -> None:
        self.log(LogLevel.ERROR, message, context, error)

    def warn(self, message: str, context: dict[str, Any] | None = None) -> None:
        self.log(LogLevel.WARN, message, context)

    warning = warn

    def info(self, message: str, context: dict[str, Any] | None = None) -> None:
        self.log(LogLevel.INFO, message, context)

    def debug(self, message: str, context: dict[str, Any] | None = None) -> None:
        self.log(LogLevel.DEBUG, message, context)

    def performance(self, operation: str, duration_ms: float, context: dict[str, Any] | None = None) -> None:
        self.info(
            f"Performance: {operation}",
            {**(context or {}), "duration": round(duration_ms, 2), "performanceMetric": True},
        )

    def record_api_call(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        context: dict[str, Any] | None = None,
    ) -> None:
        """One record per WorkFlowy operation attempt."""
        self.info(
            f"Workflowy API: {operation}",
            {
                **(context or {}),
                "endpoint": operation,
                "apiMethod": operation,
                "duration": round(duration_ms, 2),
                "success": success,
                "workflowyApi": True,
            },
        )

    def retry(
        self,
        operation: str,
        attempt: int,
        max_attempts: int,
        classification: ErrorClassification | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        extra: dict[str, Any] = {
            "retryOperation": operation,
            "attempt": attempt,
            "maxAttempts": max_attempts,
            "retryAttempt": True,
        }
        if classification is not None:
            extra["errorKind"] = classification.kind.value
            extra["errorMessage"] = classification.message
        self.warn(f"Retry {attempt}/{max_attempts}: {operation}", {**(context or {}), **extra})


def create_logger(environment: str = "production", stream: TextIO | None = None) -> StructuredLogger:
    """DEBUG outside production, INFO in production."""
    level = LogLevel.INFO if environment == "production" else LogLevel.DEBUG
    return StructuredLogger(level, environment, stream)
