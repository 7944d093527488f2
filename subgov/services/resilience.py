from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Hashable, TypeVar

from redis.asyncio import Redis

from subgov.core.config import get_settings
from subgov.core.errors import ProviderCircuitOpen
from subgov.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, OSError)

T = TypeVar("T")
K = TypeVar("K", bound=Hashable)


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def get_resilience_redis() -> Redis | None:
    # Share one Redis connection for breaker state and task locks; None means process-local only.
    settings = get_settings()
    if not settings.redis_url:
        return None
    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    global _redis_pool, _redis_loop
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            try:
                _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
                _redis_loop = current_loop
            except Exception as exc:  # noqa: BLE001 - Redis might be unavailable in dev
                logger.warning("resilience_redis_unavailable", exc_info=exc)
                return None
    return _redis_pool


def _default_retryable(exc: Exception) -> bool:
    # Governance errors declare retryability; otherwise only transient network failures retry.
    flag = getattr(exc, "retryable", None)
    if isinstance(flag, bool):
        return flag
    if isinstance(exc, TransientException):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and status >= 500:
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    timeout_s: float
    max_attempts: int
    backoff_s: float

    def delay_for(self, attempt: int) -> float:
        # Delay before attempt n+1 is base * 2^(n-1).
        return self.backoff_s * (2 ** (attempt - 1))


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_s=min(settings.provider_call_timeout_s, 10.0),
        max_attempts=settings.provider_retry_max_attempts,
        backoff_s=settings.provider_retry_backoff_s,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    sleep: Callable[[float], Awaitable[Any]] | None = None,
    on_retry: Callable[[int, Exception], None] | None = None,
) -> Any:
    # Retry transient failures with exponential backoff; anything else propagates on first failure.
    policy = policy or default_retry_policy()
    retryable = retryable or _default_retryable
    sleep = sleep or asyncio.sleep
    attempt = 1
    while True:
        try:
            return await func()
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            increment_counter("external_retries_total")
            if on_retry is not None:
                on_retry(attempt, exc)
            await sleep(policy.delay_for(attempt))
            attempt += 1


@dataclass(frozen=True)
class CircuitBreakerConfig:
    # Minimum calls in the window before the failure rate is evaluated.
    volume_threshold: int
    error_threshold_pct: float
    reset_timeout_s: float
    window_s: float
    half_open_trials: int = 1


def default_breaker_config() -> CircuitBreakerConfig:
    settings = get_settings()
    return CircuitBreakerConfig(
        volume_threshold=settings.cb_volume_threshold,
        error_threshold_pct=settings.cb_error_threshold_pct,
        reset_timeout_s=settings.cb_reset_timeout_s,
        window_s=settings.cb_window_s,
    )


@dataclass
class CircuitBreakerState:
    state: str
    # (timestamp, succeeded) pairs inside the rolling window.
    outcomes: list[tuple[float, bool]] = field(default_factory=list)
    opened_at: float | None = None
    half_open_trials: int = 0


def _encode_outcomes(outcomes: list[tuple[float, bool]]) -> str:
    return ",".join(f"{ts:.3f}:{1 if ok else 0}" for ts, ok in outcomes)


def _decode_outcomes(raw: str | None) -> list[tuple[float, bool]]:
    if not raw:
        return []
    outcomes: list[tuple[float, bool]] = []
    for item in raw.split(","):
        ts, _, flag = item.partition(":")
        outcomes.append((float(ts), flag == "1"))
    return outcomes


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        *,
        redis: Redis | None = None,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
        on_transition: Callable[[str, str], Awaitable[None]] | None = None,
    ) -> None:
        self._name = name
        self._redis = redis
        self._config = config or default_breaker_config()
        self._time = time_source or time.monotonic
        self._on_transition = on_transition
        self._local_state = CircuitBreakerState("closed")

    @property
    def name(self) -> str:
        return self._name

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    def _key(self) -> str:
        return f"{get_settings().cb_redis_prefix}:{self._name}"

    async def _load(self) -> CircuitBreakerState:
        # Read breaker state from Redis when available; otherwise fall back to local.
        if self._redis is None:
            return self._local_state
        raw = await self._redis.hgetall(self._key())
        if not raw:
            return self._local_state
        return CircuitBreakerState(
            state=raw.get("state", "closed"),
            outcomes=_decode_outcomes(raw.get("outcomes")),
            opened_at=float(raw["opened_at"]) if raw.get("opened_at") else None,
            half_open_trials=int(raw.get("half_open_trials", 0)),
        )

    async def _save(self, state: CircuitBreakerState) -> None:
        if self._redis is None:
            self._local_state = state
            return
        payload = {
            "state": state.state,
            "outcomes": _encode_outcomes(state.outcomes),
            "opened_at": "" if state.opened_at is None else str(state.opened_at),
            "half_open_trials": str(state.half_open_trials),
        }
        await self._redis.hset(self._key(), mapping=payload)
        ttl = int(max(self._config.reset_timeout_s * 4, self._config.window_s * 2, 60))
        await self._redis.expire(self._key(), ttl)

    async def _transition(self, state: CircuitBreakerState, target: str) -> CircuitBreakerState:
        if state.state != target:
            logger.warning("circuit_breaker_transition name=%s from=%s to=%s", self._name, state.state, target)
            increment_counter(f"circuit_breaker_transition_total.{self._name}.{target}")
            if target == "open":
                increment_counter("circuit_breaker_open_total")
            state_value = {"closed": 0.0, "half_open": 0.5, "open": 1.0}.get(target, 0.0)
            set_gauge(f"circuit_breaker_state.{self._name}", state_value)
            if self._on_transition is not None:
                await self._on_transition(self._name, target)
        return CircuitBreakerState(target, [], self._time() if target == "open" else None, 0)

    def _prune(self, state: CircuitBreakerState, now: float) -> None:
        cutoff = now - self._config.window_s
        state.outcomes = [item for item in state.outcomes if item[0] >= cutoff]

    async def current_state(self) -> str:
        # Report the effective state without consuming a half-open probe.
        state = await self._load()
        if state.state == "open" and state.opened_at is not None:
            if (self._time() - state.opened_at) >= self._config.reset_timeout_s:
                return "half_open"
        return state.state

    async def is_open(self) -> bool:
        return (await self.current_state()) == "open"

    async def before_call(self) -> CircuitBreakerState:
        # Decide whether a call may proceed; half-open admits a bounded number of probes.
        state = await self._load()
        now = self._time()
        if state.state == "open":
            if state.opened_at is not None and (now - state.opened_at) >= self._config.reset_timeout_s:
                state = await self._transition(state, "half_open")
                await self._save(state)
            else:
                raise ProviderCircuitOpen(f"{self._name} circuit is open")
        if state.state == "half_open":
            if state.half_open_trials >= self._config.half_open_trials:
                raise ProviderCircuitOpen(f"{self._name} circuit is half-open and probing")
            state.half_open_trials += 1
            await self._save(state)
        return state

    async def record_success(self) -> None:
        state = await self._load()
        if state.state != "closed":
            state = await self._transition(state, "closed")
        else:
            now = self._time()
            self._prune(state, now)
            state.outcomes.append((now, True))
        await self._save(state)

    async def record_failure(self) -> None:
        state = await self._load()
        if state.state == "half_open":
            state = await self._transition(state, "open")
            await self._save(state)
            return
        if state.state == "open":
            return
        now = self._time()
        self._prune(state, now)
        state.outcomes.append((now, False))
        total = len(state.outcomes)
        failures = sum(1 for _, ok in state.outcomes if not ok)
        if total >= self._config.volume_threshold and (failures / total) * 100.0 >= self._config.error_threshold_pct:
            state = await self._transition(state, "open")
        await self._save(state)


@dataclass
class CacheEntry(Generic[T]):
    value: T
    inserted_at: float
    ttl_s: float

    def is_fresh(self, now: float) -> bool:
        return (now - self.inserted_at) < self.ttl_s


class TtlCache(Generic[K, T]):
    """Keyed cache with explicit freshness and a get-or-compute contract."""

    def __init__(self, ttl_s: float, *, time_source: Callable[[], float] | None = None) -> None:
        self._ttl_s = ttl_s
        self._time = time_source or time.monotonic
        self._entries: dict[K, CacheEntry[T]] = {}

    def get(self, key: K) -> T | None:
        entry = self._entries.get(key)
        if entry is None or not entry.is_fresh(self._time()):
            return None
        return entry.value

    def put(self, key: K, value: T) -> None:
        self._entries[key] = CacheEntry(value=value, inserted_at=self._time(), ttl_s=self._ttl_s)

    async def get_or_compute(self, key: K, compute: Callable[[], Awaitable[T]]) -> T:
        entry = self._entries.get(key)
        if entry is not None and entry.is_fresh(self._time()):
            return entry.value
        value = await compute()
        self.put(key, value)
        return value

    def invalidate(self, key: K) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
