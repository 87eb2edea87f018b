from __future__ import annotations

import pytest

from ledgersync.core.errors import IntegrationUnavailableError, TransientUpstreamError
from ledgersync.services.resilience import CircuitBreaker, CircuitBreakerConfig, RetryPolicy, retry_async


@pytest.mark.asyncio
async def test_retry_async_retries_transient() -> None:
    calls = {"count": 0}

    async def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 2:
            raise TimeoutError("timeout")
        return "ok"

    result = await retry_async(
        flaky,
        policy=RetryPolicy(timeout_ms=100, max_attempts=2, backoff_ms=1),
    )
    assert result == "ok"
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_long_retry_after_is_left_to_the_caller() -> None:
    calls = {"count": 0}

    async def throttled() -> None:
        calls["count"] += 1
        raise TransientUpstreamError("429", retry_after=60)

    with pytest.raises(TransientUpstreamError):
        await retry_async(throttled, policy=RetryPolicy(timeout_ms=100, max_attempts=3, backoff_ms=1))
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_open_breaker_is_not_retried() -> None:
    calls = {"count": 0}

    async def rejected() -> None:
        calls["count"] += 1
        raise IntegrationUnavailableError("xero is temporarily unavailable")

    with pytest.raises(IntegrationUnavailableError):
        await retry_async(rejected, policy=RetryPolicy(timeout_ms=100, max_attempts=3, backoff_ms=1))
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_circuit_breaker_transitions() -> None:
    now = {"t": 0.0}

    def time_source() -> float:
        return now["t"]

    breaker = CircuitBreaker(
        "xero",
        redis=None,
        config=CircuitBreakerConfig(failure_threshold=2, open_seconds=10, half_open_trials=1),
        time_source=time_source,
    )
    await breaker.before_call()
    await breaker.record_failure()
    await breaker.record_failure()
    with pytest.raises(IntegrationUnavailableError):
        await breaker.before_call()

    now["t"] = 11.0
    await breaker.before_call()
    # Only one trial call is let through while half-open.
    with pytest.raises(IntegrationUnavailableError):
        await breaker.before_call()
    await breaker.record_success()
    await breaker.before_call()


@pytest.mark.asyncio
async def test_half_open_failure_reopens() -> None:
    now = {"t": 0.0}
    breaker = CircuitBreaker(
        "quickbooks",
        config=CircuitBreakerConfig(failure_threshold=1, open_seconds=5, half_open_trials=1),
        time_source=lambda: now["t"],
    )
    await breaker.record_failure()
    now["t"] = 6.0
    await breaker.before_call()
    await breaker.record_failure()
    with pytest.raises(IntegrationUnavailableError):
        await breaker.before_call()
