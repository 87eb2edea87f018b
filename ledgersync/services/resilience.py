from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable

import httpx
from redis.asyncio import Redis

from ledgersync.core.config import get_settings
from ledgersync.core.errors import IntegrationUnavailableError, TransientUpstreamError
from ledgersync.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"
_STATE_GAUGE = {CLOSED: 0.0, HALF_OPEN: 0.5, OPEN: 1.0}

# Longer upstream pauses are left to the event processor's persisted backoff.
_MAX_INLINE_RETRY_AFTER_S = 5.0

_breakers: dict[str, "CircuitBreaker"] = {}
# Redis clients are bound to the loop that created them; worker and tests may run several loops.
_redis_clients: dict[int, Redis] = {}


def _breaker_redis() -> Redis | None:
    settings = get_settings()
    if not settings.cb_redis_enabled:
        return None
    loop_id = id(asyncio.get_running_loop())
    client = _redis_clients.get(loop_id)
    if client is None:
        client = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        _redis_clients[loop_id] = client
    return client


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        settings = get_settings()
        return cls(
            timeout_ms=settings.ext_call_timeout_ms,
            max_attempts=settings.ext_retry_max_attempts,
            backoff_ms=settings.ext_retry_backoff_ms,
        )

    def delay_for(self, attempt: int, exc: Exception) -> float:
        # Jittered exponential delay, stretched to any short Retry-After the provider sent.
        delay = (self.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)
        retry_after = getattr(exc, "retry_after", None)
        if isinstance(retry_after, (int, float)):
            delay = max(delay, float(retry_after))
        return delay


def is_inline_retryable(exc: Exception) -> bool:
    if isinstance(exc, IntegrationUnavailableError):
        return False
    if isinstance(exc, TransientUpstreamError):
        return exc.retry_after is None or exc.retry_after <= _MAX_INLINE_RETRY_AFTER_S
    return isinstance(exc, (httpx.TransportError, TimeoutError))


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] = is_inline_retryable,
) -> Any:
    """Run ``func`` under a per-attempt timeout, retrying brief transient failures.

    Anything not ``retryable`` and the final attempt's error propagate unchanged.
    """
    policy = policy or RetryPolicy.from_settings()
    attempts = max(policy.max_attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - re-raised unless retryable
            if attempt == attempts or not retryable(exc):
                raise
            increment_counter("external_retries_total")
            await asyncio.sleep(policy.delay_for(attempt, exc))


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int

    @classmethod
    def from_settings(cls) -> "CircuitBreakerConfig":
        settings = get_settings()
        return cls(
            failure_threshold=settings.cb_failure_threshold,
            open_seconds=settings.cb_open_seconds,
            half_open_trials=settings.cb_half_open_trials,
        )


@dataclass(frozen=True)
class BreakerSnapshot:
    state: str = CLOSED
    failures: int = 0
    opened_at: float | None = None
    trials: int = 0

    def to_hash(self) -> dict[str, str]:
        return {
            "state": self.state,
            "failures": str(self.failures),
            "opened_at": "" if self.opened_at is None else repr(self.opened_at),
            "trials": str(self.trials),
        }

    @classmethod
    def from_hash(cls, raw: dict[str, str]) -> "BreakerSnapshot":
        opened_at = raw.get("opened_at")
        return cls(
            state=raw.get("state", CLOSED),
            failures=int(raw.get("failures", 0)),
            opened_at=float(opened_at) if opened_at else None,
            trials=int(raw.get("trials", 0)),
        )


class CircuitBreaker:
    """Closed/open/half-open breaker around one provider integration.

    With a Redis client the snapshot is a shared hash, so the API process and
    every sync worker trip together; without one it is process-local.
    """

    def __init__(
        self,
        name: str,
        *,
        redis: Redis | None = None,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self.name = name
        self._redis = redis
        self._config = config or CircuitBreakerConfig.from_settings()
        self._clock = time_source or time.monotonic
        self._snapshot = BreakerSnapshot()

    @property
    def _redis_key(self) -> str:
        return f"{get_settings().cb_redis_prefix}:{self.name}"

    async def _read(self) -> BreakerSnapshot:
        if self._redis is not None:
            raw = await self._redis.hgetall(self._redis_key)
            if raw:
                return BreakerSnapshot.from_hash(raw)
        return self._snapshot

    async def _write(self, snapshot: BreakerSnapshot) -> None:
        self._snapshot = snapshot
        if self._redis is not None:
            await self._redis.hset(self._redis_key, mapping=snapshot.to_hash())
            await self._redis.expire(self._redis_key, max(self._config.open_seconds * 4, 60))

    def _enter(self, current: BreakerSnapshot, state: str) -> BreakerSnapshot:
        if current.state != state:
            logger.warning("circuit_breaker_transition name=%s from=%s to=%s", self.name, current.state, state)
            increment_counter(f"circuit_breaker_transition_total.{self.name}.{state}")
            set_gauge(f"circuit_breaker_state.{self.name}", _STATE_GAUGE[state])
        return BreakerSnapshot(state=state, opened_at=self._clock() if state == OPEN else None)

    def _unavailable(self, retry_after: float | None = None) -> IntegrationUnavailableError:
        return IntegrationUnavailableError(f"{self.name} is temporarily unavailable", retry_after=retry_after)

    async def before_call(self) -> None:
        snapshot = await self._read()
        if snapshot.state == OPEN:
            if snapshot.opened_at is not None:
                remaining = self._config.open_seconds - (self._clock() - snapshot.opened_at)
                if remaining > 0:
                    raise self._unavailable(remaining)
            snapshot = self._enter(snapshot, HALF_OPEN)
        if snapshot.state == HALF_OPEN:
            if snapshot.trials >= self._config.half_open_trials:
                raise self._unavailable()
            snapshot = replace(snapshot, trials=snapshot.trials + 1)
        await self._write(snapshot)

    async def record_success(self) -> None:
        snapshot = await self._read()
        if snapshot.state == CLOSED:
            if snapshot.failures:
                await self._write(replace(snapshot, failures=0))
            return
        await self._write(self._enter(snapshot, CLOSED))

    async def record_failure(self) -> None:
        snapshot = await self._read()
        failures = snapshot.failures + 1
        if snapshot.state == HALF_OPEN or failures >= self._config.failure_threshold:
            await self._write(self._enter(snapshot, OPEN))
            return
        await self._write(replace(snapshot, failures=failures))


async def get_circuit_breaker(name: str) -> CircuitBreaker:
    breaker = _breakers.get(name)
    if breaker is None:
        breaker = _breakers[name] = CircuitBreaker(name, redis=_breaker_redis())
    return breaker


def reset_circuit_breakers() -> None:
    _breakers.clear()
    _redis_clients.clear()
