"""Data models for the WorkFlowy outline MCP server.

Pydantic models describe everything that crosses the MCP boundary or is
loaded from configuration. The error taxonomy lives here too: a single
``WorkFlowyError`` exception wraps an immutable ``ErrorClassification``
and callers dispatch on ``classification.kind`` rather than on exception
subclasses.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_API_URL = "https://workflowy.com/api/v1"

BASIC_FIELDS: tuple[str, ...] = ("id", "name", "note", "isCompleted")

# Fields that need relational lookups (or node attributes outside the base
# serialization) before they can be emitted.
METADATA_FIELDS: frozenset[str] = frozenset({
    "parentId",
    "parentName",
    "priority",
    "lastModifiedAt",
    "completedAt",
    "isMirror",
    "originalId",
    "isSharedViaUrl",
    "sharedUrl",
    "hierarchy",
    "siblings",
    "siblingCount",
})

# Structural keys are produced by the projection itself, never copied.
STRUCTURAL_FIELDS: frozenset[str] = frozenset({"items", "children"})


class APIConfiguration(BaseModel):
    """Transport settings for the WorkFlowy REST API."""

    base_url: str = DEFAULT_API_URL
    timeout: float = Field(default=30.0, gt=0)
    # Pause between consecutive mutation requests (seconds). WorkFlowy rate
    # limits are undocumented; 0.25s has held up.
    rate_limit_delay: float = Field(default=0.25, ge=0)


class ProjectionSpec(BaseModel):
    """How much of a subtree to serialize for the caller.

    ``include_fields`` keeps the caller's ordering (duplicates dropped) so
    projected records have a stable key order.
    """

    model_config = ConfigDict(frozen=True)

    max_depth: int = Field(default=0, ge=0)
    include_fields: tuple[str, ...] = BASIC_FIELDS
    preview_length: int | None = Field(default=None, gt=0)

    @field_validator("include_fields", mode="before")
    @classmethod
    def _dedupe_fields(cls, value: Iterable[str] | None) -> tuple[str, ...]:
        if value is None:
            return BASIC_FIELDS
        if isinstance(value, str):
            value = [value]
        seen: list[str] = []
        for name in value:
            if name not in seen:
                seen.append(name)
        return tuple(seen)

    @property
    def metadata_fields(self) -> tuple[str, ...]:
        return tuple(f for f in self.include_fields if f in METADATA_FIELDS)

    @property
    def wants_metadata(self) -> bool:
        return any(f in METADATA_FIELDS for f in self.include_fields)


class BatchNodeItem(BaseModel):
    """One entry of a batch create request."""

    name: str
    note: str | None = None


# ---------------------------------------------------------------------------
# Error taxonomy
# ---------------------------------------------------------------------------


class ErrorKind(str, Enum):
    """Failure kinds, valued by their user-visible names."""

    NETWORK = "NetworkTransient"
    AUTHENTICATION = "AuthenticationFailed"
    NOT_FOUND = "ResourceNotFound"
    OVERLOADED = "ServiceOverloaded"
    UNKNOWN = "UnknownOperational"


# ServiceOverloaded is retried under every policy: 429/503 from WorkFlowy
# clear up after a short wait.
OVERLOADED_RETRYABLE = True

TERMINAL_KINDS: frozenset[ErrorKind] = frozenset({ErrorKind.AUTHENTICATION, ErrorKind.NOT_FOUND})

DEFAULT_RETRYABLE: dict[ErrorKind, bool] = {
    ErrorKind.NETWORK: True,
    ErrorKind.AUTHENTICATION: False,
    ErrorKind.NOT_FOUND: False,
    ErrorKind.OVERLOADED: OVERLOADED_RETRYABLE,
    ErrorKind.UNKNOWN: True,
}


@dataclass(frozen=True)
class ErrorClassification:
    """Classified failure. Immutable once built."""

    kind: ErrorKind
    retryable: bool
    message: str = ""
    code: str | None = None
    status: int | None = None
    resource_id: str | None = None
    cause: BaseException | None = None

    def __post_init__(self) -> None:
        if self.retryable and self.kind in TERMINAL_KINDS:
            raise ValueError(f"{self.kind.value} can never be retryable")

    @classmethod
    def of(cls, kind: ErrorKind, message: str = "", **kwargs: Any) -> "ErrorClassification":
        """Build a classification with the kind's default retryability."""
        return cls(kind=kind, retryable=DEFAULT_RETRYABLE[kind], message=message, **kwargs)

    def to_error(self, attempts: int | None = None) -> "WorkFlowyError":
        return WorkFlowyError(self, attempts=attempts)


class InvalidOperationError(ValueError):
    """A request that cannot succeed as asked, however often it is replayed."""


class WorkFlowyError(Exception):
    """The only exception the core raises for operational failures."""

    def __init__(self, classification: ErrorClassification, attempts: int | None = None):
        self.classification = classification
        self.attempts = attempts
        super().__init__(self._render())
        if classification.cause is not None and self.__cause__ is None:
            self.__cause__ = classification.cause

    def _render(self) -> str:
        c = self.classification
        text = c.message or c.kind.value
        if c.kind is ErrorKind.NETWORK and self.attempts and self.attempts > 1:
            text = f"{text} (after {self.attempts} attempts)"
        return text

    @property
    def kind(self) -> ErrorKind:
        return self.classification.kind

    @property
    def retryable(self) -> bool:
        return self.classification.retryable

    def with_attempts(self, attempts: int) -> "WorkFlowyError":
        """Same classification, stamped with the number of attempts made."""
        surfaced = WorkFlowyError(self.classification, attempts=attempts)
        surfaced.__cause__ = self.__cause__ or self.classification.cause
        return surfaced

    def to_dict(self) -> dict[str, Any]:
        c = self.classification
        payload: dict[str, Any] = {
            "kind": c.kind.value,
            "message": str(self),
            "retryable": c.retryable,
        }
        if c.code:
            payload["code"] = c.code
        if c.resource_id:
            payload["resourceId"] = c.resource_id
        if self.attempts is not None:
            payload["attempts"] = self.attempts
        return payload
