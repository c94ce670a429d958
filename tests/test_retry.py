"""Retry policies and the retry manager."""

from __future__ import annotations

import pytest

from outline_mcp.client.errors import authentication_failed, not_found
from outline_mcp.client.retry import (
    BATCH,
    POLICIES,
    QUICK,
    STANDARD,
    WRITE,
    OperationRiskClass,
    backoff_delay_ms,
    policy_for,
    total_backoff_ms,
    with_retry,
)
from outline_mcp.models import ErrorKind, WorkFlowyError

ALL_POLICIES = [QUICK, STANDARD, WRITE, BATCH]


class FlakyOperation:
    """Raises the queued failures in order, then returns ``result``."""

    def __init__(self, failures, result="ok"):
        self.failures = list(failures)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result


class AlwaysFails:
    def __init__(self, make_error):
        self.make_error = make_error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        raise self.make_error()


def test_catalog_shape():
    assert set(POLICIES) == set(OperationRiskClass)
    assert policy_for(OperationRiskClass.READ) is STANDARD
    assert policy_for(OperationRiskClass.WRITE) is WRITE
    assert policy_for(OperationRiskClass.BATCH) is BATCH
    assert policy_for(OperationRiskClass.AUTH_PROBE) is QUICK
    # Mutations replay less than reads.
    assert WRITE.max_attempts < STANDARD.max_attempts
    assert BATCH.max_attempts < STANDARD.max_attempts
    assert WRITE.max_attempts >= 3


def test_nominal_delays_grow_geometrically():
    assert STANDARD.nominal_delay_ms(1) == 0
    assert STANDARD.nominal_delay_ms(2) == 500
    assert STANDARD.nominal_delay_ms(3) == 750
    assert STANDARD.nominal_delay_ms(4) == 1125
    assert WRITE.nominal_delay_ms(3) == 2000
    assert total_backoff_ms(WRITE) == 3000
    assert total_backoff_ms(QUICK) == 250


@pytest.mark.parametrize("policy", ALL_POLICIES, ids=lambda p: p.name)
@pytest.mark.parametrize("rng_value", [0.0, 0.5, 0.999])
def test_next_delay_never_below_previous_nominal(policy, rng_value):
    for n in range(1, policy.max_attempts + 3):
        delay = backoff_delay_ms(policy, n + 1, lambda: rng_value)
        assert delay >= policy.nominal_delay_ms(n)


@pytest.mark.parametrize("policy", ALL_POLICIES, ids=lambda p: p.name)
def test_jitter_stays_within_a_quarter_of_nominal(policy):
    for n in range(2, policy.max_attempts + 1):
        nominal = policy.nominal_delay_ms(n)
        low = backoff_delay_ms(policy, n, lambda: 0.0)
        high = backoff_delay_ms(policy, n, lambda: 1.0)
        assert nominal * 0.75 <= low <= nominal
        assert high == pytest.approx(nominal * 1.25)


def test_without_jitter_delay_is_nominal():
    policy = STANDARD.model_copy(update={"jitter": False})
    assert backoff_delay_ms(policy, 3, lambda: 0.0) == policy.nominal_delay_ms(3)


@pytest.mark.asyncio
@pytest.mark.parametrize("policy", ALL_POLICIES, ids=lambda p: p.name)
async def test_retryable_failures_use_exactly_max_attempts(policy, sleeper):
    operation = AlwaysFails(lambda: ConnectionResetError("reset by peer"))

    with pytest.raises(WorkFlowyError) as excinfo:
        await with_retry(operation, policy, sleep=sleeper, rng=lambda: 0.5)

    assert operation.calls == policy.max_attempts
    assert excinfo.value.attempts == policy.max_attempts
    assert excinfo.value.kind is ErrorKind.NETWORK
    assert len(sleeper.delays) == policy.max_attempts - 1
    assert isinstance(excinfo.value.__cause__, ConnectionResetError)


@pytest.mark.asyncio
@pytest.mark.parametrize("policy", ALL_POLICIES, ids=lambda p: p.name)
@pytest.mark.parametrize(
    "make_error",
    [
        lambda: authentication_failed("Authentication failed"),
        lambda: not_found("missing-id"),
        lambda: PermissionError("Forbidden"),
    ],
    ids=["auth", "not-found", "raw-forbidden"],
)
async def test_terminal_failures_surface_on_first_attempt(policy, make_error, sleeper):
    operation = AlwaysFails(make_error)

    with pytest.raises(WorkFlowyError) as excinfo:
        await with_retry(operation, policy, sleep=sleeper)

    assert operation.calls == 1
    assert excinfo.value.attempts == 1
    assert excinfo.value.kind in (ErrorKind.AUTHENTICATION, ErrorKind.NOT_FOUND)
    assert sleeper.delays == []


@pytest.mark.asyncio
async def test_write_succeeds_on_third_attempt(sleeper):
    operation = FlakyOperation(
        [ConnectionResetError("reset"), ConnectionResetError("reset")],
        result={"success": True},
    )
    retries = []

    result = await with_retry(
        operation,
        WRITE,
        on_retry=lambda attempt, delay, c: retries.append((attempt, delay, c.kind)),
        sleep=sleeper,
        rng=lambda: 0.5,
    )

    assert result == {"success": True}
    assert operation.calls == 3
    assert sleeper.delays == [1.0, 2.0]
    assert retries == [(2, 1.0, ErrorKind.NETWORK), (3, 2.0, ErrorKind.NETWORK)]


@pytest.mark.asyncio
async def test_overloaded_service_is_retried(sleeper):
    class Overloaded(Exception):
        status_code = 429

    operation = FlakyOperation([Overloaded("Too Many Requests")], result=42)
    assert await with_retry(operation, STANDARD, sleep=sleeper, rng=lambda: 0.5) == 42
    assert operation.calls == 2


@pytest.mark.asyncio
async def test_last_failure_wins(sleeper):
    operation = FlakyOperation(
        [ConnectionResetError("first"), ConnectionResetError("second"), KeyError("never reached")]
    )

    with pytest.raises(WorkFlowyError) as excinfo:
        await with_retry(operation, QUICK, sleep=sleeper)

    assert operation.calls == 2
    assert "second" in str(excinfo.value)
    assert "after 2 attempts" in str(excinfo.value)


@pytest.mark.asyncio
async def test_each_invocation_has_its_own_counter(sleeper):
    first = FlakyOperation([ConnectionResetError("x")])
    second = FlakyOperation([ConnectionResetError("y")])

    assert await with_retry(first, QUICK, sleep=sleeper) == "ok"
    assert await with_retry(second, QUICK, sleep=sleeper) == "ok"
    assert first.calls == second.calls == 2


@pytest.mark.asyncio
async def test_unknown_failures_are_retried_then_surface(sleeper):
    operation = AlwaysFails(lambda: RuntimeError("boom"))

    with pytest.raises(WorkFlowyError) as excinfo:
        await with_retry(operation, BATCH, sleep=sleeper, operation_name="batchCreateNodes")

    assert operation.calls == BATCH.max_attempts
    assert excinfo.value.kind is ErrorKind.UNKNOWN
    assert "batchCreateNodes" in str(excinfo.value)
