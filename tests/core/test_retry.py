from __future__ import annotations

import asyncio

import pytest

from lrs.core.errors import StoreError
from lrs.core.retry import RetryPolicy, is_retryable, retry_operation


class _Flaky:
    """Fails ``failures`` times with ``error`` and then returns "ok"."""

    def __init__(self, failures: int, error: Exception) -> None:
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


class _RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.mark.parametrize(
    ("status", "expected"),
    [(None, True), (429, True), (500, True), (503, True), (400, False), (404, False), (409, False)],
)
def test_is_retryable(status: int | None, expected: bool) -> None:
    assert is_retryable(StoreError("x", status_code=status)) is expected


def test_transient_failure_is_retried_until_success() -> None:
    op = _Flaky(2, StoreError("busy", status_code=503))
    sleep = _RecordingSleep()
    result = asyncio.run(
        retry_operation(op, max_attempts=3, base_delay_ms=100, jitter_ms=0, sleep=sleep)
    )
    assert result == "ok"
    assert op.calls == 3
    # Exponential: 100ms, then 200ms
    assert sleep.delays == [0.1, 0.2]


def test_backoff_includes_bounded_jitter() -> None:
    op = _Flaky(1, StoreError("busy", status_code=429))
    sleep = _RecordingSleep()
    asyncio.run(retry_operation(op, base_delay_ms=1000, jitter_ms=500, sleep=sleep))
    assert len(sleep.delays) == 1
    assert 1.0 <= sleep.delays[0] <= 1.5


def test_permanent_failure_is_not_retried() -> None:
    op = _Flaky(5, StoreError("conflict", status_code=409))
    sleep = _RecordingSleep()
    with pytest.raises(StoreError, match="conflict"):
        asyncio.run(retry_operation(op, max_attempts=3, sleep=sleep))
    assert op.calls == 1
    assert sleep.delays == []


def test_exhausted_retries_reraise_last_error() -> None:
    op = _Flaky(10, StoreError("down"))
    sleep = _RecordingSleep()
    with pytest.raises(StoreError, match="down"):
        asyncio.run(retry_operation(op, max_attempts=3, base_delay_ms=1, sleep=sleep))
    assert op.calls == 3
    assert len(sleep.delays) == 2


def test_policy_runs_with_its_settings() -> None:
    policy = RetryPolicy(max_attempts=2, base_delay_ms=10, jitter_ms=0)
    op = _Flaky(5, ConnectionError("reset"))
    sleep = _RecordingSleep()
    with pytest.raises(ConnectionError):
        asyncio.run(policy.run(op, sleep=sleep))
    assert op.calls == 2
    assert sleep.delays == [0.01]
