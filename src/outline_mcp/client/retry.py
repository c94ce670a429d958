"""Retry policies and the retry manager.

Every WorkFlowy operation runs through ``with_retry`` under the policy
of its risk class. Mutations get fewer attempts than reads: a write that
failed after the server applied it but before we saw the acknowledgment
would be duplicated by a replay.

Backoff for attempt ``n`` (n >= 2) is ``base_delay_ms * multiplier**(n-2)``.
Jitter moves it by at most +/-25% but never below the previous attempt's
nominal delay.
"""

from __future__ import annotations

import asyncio
import random
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from ..models import ErrorClassification, WorkFlowyError
from .errors import classify

T = TypeVar("T")

JITTER_FRACTION = 0.25


class OperationRiskClass(str, Enum):
    AUTH_PROBE = "auth_probe"
    READ = "read"
    WRITE = "write"
    BATCH = "batch"


class RetryPolicy(BaseModel):
    """Attempt/backoff parameters for one risk class."""

    model_config = ConfigDict(frozen=True)

    name: str
    max_attempts: int = Field(ge=1)
    base_delay_ms: int = Field(ge=0)
    backoff_multiplier: float = Field(ge=1.0)
    jitter: bool = True
    applies_to: OperationRiskClass

    def nominal_delay_ms(self, attempt: int) -> float:
        """Delay slept before ``attempt`` (1-based); the first attempt has none."""
        if attempt < 2:
            return 0.0
        return self.base_delay_ms * self.backoff_multiplier ** (attempt - 2)


QUICK = RetryPolicy(
    name="quick",
    max_attempts=2,
    base_delay_ms=250,
    backoff_multiplier=1.5,
    applies_to=OperationRiskClass.AUTH_PROBE,
)

STANDARD = RetryPolicy(
    name="standard",
    max_attempts=4,
    base_delay_ms=500,
    backoff_multiplier=1.5,
    applies_to=OperationRiskClass.READ,
)

WRITE = RetryPolicy(
    name="write",
    max_attempts=3,
    base_delay_ms=1000,
    backoff_multiplier=2.0,
    applies_to=OperationRiskClass.WRITE,
)

BATCH = RetryPolicy(
    name="batch",
    max_attempts=2,
    base_delay_ms=2000,
    backoff_multiplier=2.0,
    applies_to=OperationRiskClass.BATCH,
)

POLICIES: dict[OperationRiskClass, RetryPolicy] = {
    p.applies_to: p for p in (QUICK, STANDARD, WRITE, BATCH)
}


def policy_for(risk: OperationRiskClass) -> RetryPolicy:
    return POLICIES[risk]


def backoff_delay_ms(
    policy: RetryPolicy,
    attempt: int,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay in ms to sleep before ``attempt``, jittered when the policy says so."""
    nominal = policy.nominal_delay_ms(attempt)
    if not policy.jitter or nominal <= 0:
        return nominal
    jittered = nominal * (1 + JITTER_FRACTION * (2 * rng() - 1))
    return max(jittered, policy.nominal_delay_ms(attempt - 1))


def total_backoff_ms(policy: RetryPolicy) -> float:
    """Worst-case nominal time spent sleeping if every attempt fails."""
    return sum(policy.nominal_delay_ms(n) for n in range(2, policy.max_attempts + 1))


RetryHook = Callable[[int, float, ErrorClassification], None]


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    on_retry: RetryHook | None = None,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    rng: Callable[[], float] = random.random,
    operation_name: str | None = None,
) -> T:
    """Run ``operation`` until it succeeds or the policy gives up.

    Non-retryable classifications surface on the first failure. The
    surfaced ``WorkFlowyError`` carries the attempt count and chains the
    last raw failure as its ``__cause__``.

    ``on_retry(next_attempt, delay_seconds, classification)`` is called
    before each backoff sleep; this function logs nothing itself.
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as exc:  # noqa: BLE001 - every failure is classified
            classification = classify(exc, operation_name)
            if not classification.retryable or attempt >= policy.max_attempts:
                if isinstance(exc, WorkFlowyError):
                    raise exc.with_attempts(attempt) from (exc.__cause__ or exc)
                raise classification.to_error(attempts=attempt) from exc

            attempt += 1
            delay_s = backoff_delay_ms(policy, attempt, rng) / 1000.0
            if on_retry is not None:
                on_retry(attempt, delay_s, classification)
            await sleep(delay_s)
