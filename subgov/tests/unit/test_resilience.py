from __future__ import annotations

import pytest

from subgov.core.errors import ProviderAuthFailure, ProviderCircuitOpen, ProviderTimeout, ProviderUnavailable
from subgov.services import resilience
from subgov.services.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    RetryPolicy,
    TtlCache,
    get_resilience_redis,
    retry_async,
)
from subgov.services.telemetry import counters_snapshot


def _breaker(now: dict[str, float], **overrides) -> CircuitBreaker:
    config = CircuitBreakerConfig(
        volume_threshold=overrides.get("volume_threshold", 5),
        error_threshold_pct=overrides.get("error_threshold_pct", 50),
        reset_timeout_s=overrides.get("reset_timeout_s", 30),
        window_s=overrides.get("window_s", 60),
    )
    return CircuitBreaker("test.integration", redis=None, config=config, time_source=lambda: now["t"])


async def test_retry_async_backs_off_exponentially_for_retryable_errors() -> None:
    calls = {"count": 0}
    delays: list[float] = []

    async def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 3:
            raise ProviderUnavailable("down")
        return "ok"

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)

    result = await retry_async(flaky, policy=RetryPolicy(timeout_s=1, max_attempts=3, backoff_s=1.0), sleep=fake_sleep)

    assert result == "ok"
    assert calls["count"] == 3
    assert delays == [1.0, 2.0]
    assert counters_snapshot()["external_retries_total"] == 2


async def test_retry_async_fails_fast_on_auth_errors() -> None:
    calls = {"count": 0}

    async def rejected() -> None:
        calls["count"] += 1
        raise ProviderAuthFailure("bad key", status_code=401)

    async def fake_sleep(_delay: float) -> None:
        raise AssertionError("non-retryable errors must not sleep")

    with pytest.raises(ProviderAuthFailure):
        await retry_async(rejected, policy=RetryPolicy(timeout_s=1, max_attempts=3, backoff_s=1.0), sleep=fake_sleep)
    assert calls["count"] == 1


async def test_retry_async_gives_up_after_max_attempts() -> None:
    calls = {"count": 0}

    async def always_times_out() -> None:
        calls["count"] += 1
        raise ProviderTimeout("slow")

    async def fake_sleep(_delay: float) -> None:
        return None

    with pytest.raises(ProviderTimeout):
        await retry_async(
            always_times_out,
            policy=RetryPolicy(timeout_s=1, max_attempts=3, backoff_s=1.0),
            sleep=fake_sleep,
        )
    assert calls["count"] == 3


async def test_circuit_breaker_needs_volume_before_opening() -> None:
    now = {"t": 0.0}
    breaker = _breaker(now)

    for _ in range(4):
        await breaker.before_call()
        await breaker.record_failure()
    assert await breaker.current_state() == "closed"

    await breaker.before_call()
    await breaker.record_failure()
    assert await breaker.current_state() == "open"
    with pytest.raises(ProviderCircuitOpen):
        await breaker.before_call()


async def test_circuit_breaker_uses_failure_rate_not_consecutive_failures() -> None:
    now = {"t": 0.0}
    breaker = _breaker(now)

    for _ in range(3):
        await breaker.record_success()
    await breaker.record_failure()
    await breaker.record_failure()
    # 2 of 5 failed: below 50%.
    assert await breaker.current_state() == "closed"

    await breaker.record_failure()
    # 3 of 6 failed: at 50%.
    assert await breaker.current_state() == "open"


async def test_circuit_breaker_forgets_outcomes_outside_window() -> None:
    now = {"t": 0.0}
    breaker = _breaker(now, window_s=60)

    for _ in range(4):
        await breaker.record_failure()
    now["t"] = 120.0
    await breaker.record_failure()

    assert await breaker.current_state() == "closed"


async def test_circuit_breaker_half_opens_after_reset_timeout_and_closes_on_success() -> None:
    now = {"t": 0.0}
    breaker = _breaker(now)
    for _ in range(5):
        await breaker.record_failure()
    assert await breaker.is_open()

    now["t"] = 29.0
    with pytest.raises(ProviderCircuitOpen):
        await breaker.before_call()

    now["t"] = 30.0
    assert await breaker.current_state() == "half_open"
    await breaker.before_call()
    # Only one probe is admitted while half-open.
    with pytest.raises(ProviderCircuitOpen):
        await breaker.before_call()

    await breaker.record_success()
    assert await breaker.current_state() == "closed"
    await breaker.before_call()


async def test_circuit_breaker_reopens_when_probe_fails() -> None:
    now = {"t": 0.0}
    transitions: list[str] = []

    async def on_transition(_name: str, state: str) -> None:
        transitions.append(state)

    breaker = CircuitBreaker(
        "test.integration",
        redis=None,
        config=CircuitBreakerConfig(volume_threshold=5, error_threshold_pct=50, reset_timeout_s=30, window_s=60),
        time_source=lambda: now["t"],
        on_transition=on_transition,
    )
    for _ in range(5):
        await breaker.record_failure()
    now["t"] = 31.0
    await breaker.before_call()
    await breaker.record_failure()

    assert await breaker.current_state() == "open"
    assert transitions == ["open", "half_open", "open"]


async def test_circuit_breaker_shares_state_through_redis() -> None:
    class StubRedis:
        def __init__(self) -> None:
            self.hashes: dict[str, dict[str, str]] = {}

        async def hgetall(self, key: str) -> dict[str, str]:
            return dict(self.hashes.get(key, {}))

        async def hset(self, key: str, mapping: dict[str, str]) -> None:
            self.hashes.setdefault(key, {}).update(mapping)

        async def expire(self, _key: str, _ttl: int) -> None:
            return None

    redis = StubRedis()
    now = {"t": 0.0}
    config = CircuitBreakerConfig(volume_threshold=5, error_threshold_pct=50, reset_timeout_s=30, window_s=60)
    first = CircuitBreaker("shared", redis=redis, config=config, time_source=lambda: now["t"])
    second = CircuitBreaker("shared", redis=redis, config=config, time_source=lambda: now["t"])

    for _ in range(5):
        await first.record_failure()

    with pytest.raises(ProviderCircuitOpen):
        await second.before_call()

    now["t"] = 30.0
    await second.before_call()
    assert await first.current_state() == "half_open"


async def test_resilience_redis_disabled_without_url(monkeypatch) -> None:
    monkeypatch.setenv("REDIS_URL", "")
    resilience.get_settings.cache_clear()
    assert await get_resilience_redis() is None


async def test_ttl_cache_get_or_compute_respects_freshness() -> None:
    now = {"t": 0.0}
    cache: TtlCache[str, int] = TtlCache(300, time_source=lambda: now["t"])
    computed = {"count": 0}

    async def compute() -> int:
        computed["count"] += 1
        return computed["count"]

    assert await cache.get_or_compute("user", compute) == 1
    now["t"] = 299.0
    assert await cache.get_or_compute("user", compute) == 1
    now["t"] = 300.0
    assert cache.get("user") is None
    assert await cache.get_or_compute("user", compute) == 2

    cache.invalidate("user")
    assert len(cache) == 0
