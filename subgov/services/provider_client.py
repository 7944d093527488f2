from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subgov.core.config import get_settings
from subgov.core.errors import ProviderCircuitOpen, ProviderError, ProviderTimeout
from subgov.providers.account.base import AccountProvider, CreatedAccount, HealthStatus
from subgov.services.audit import record_event, record_metric
from subgov.services.resilience import (
    CircuitBreaker,
    RetryPolicy,
    default_retry_policy,
    get_resilience_redis,
    retry_async,
)
from subgov.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

METRIC_ACTION = "provider.call"


class ProviderClient:
    """Account provider behind a circuit breaker, bounded retries and per-attempt timeouts."""

    def __init__(
        self,
        provider: AccountProvider,
        *,
        breaker: CircuitBreaker | None = None,
        policy: RetryPolicy | None = None,
        health_timeout_s: float | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        record_metrics: bool = True,
    ) -> None:
        settings = get_settings()
        self._provider = provider
        self._breaker = breaker
        self._policy = policy or default_retry_policy()
        self._health_timeout_s = min(
            health_timeout_s if health_timeout_s is not None else settings.provider_health_timeout_s,
            5.0,
        )
        self._session_factory = session_factory
        self._sleep = sleep
        self._record_metrics = record_metrics

    @property
    def integration(self) -> str:
        return f"provider.{getattr(self._provider, 'name', 'unknown')}"

    async def _get_breaker(self) -> CircuitBreaker:
        if self._breaker is not None:
            return self._breaker
        redis = await get_resilience_redis()

        async def _on_transition(name: str, state: str) -> None:
            await record_event(
                session_factory=self._session_factory,
                actor="provider_client",
                action=f"provider.circuit_breaker.{state}",
                outcome="success",
                details={"integration": name},
            )

        self._breaker = CircuitBreaker(self.integration, redis=redis, on_transition=_on_transition)
        return self._breaker

    async def breaker_state(self) -> str:
        breaker = await self._get_breaker()
        return await breaker.current_state()

    async def _report(
        self,
        *,
        operation: str,
        started: float,
        attempts: int,
        error: Exception | None,
    ) -> None:
        latency_ms = (time.monotonic() - started) * 1000.0
        success = error is None
        record_external_call(
            integration=self.integration,
            operation=operation,
            latency_ms=latency_ms,
            success=success,
        )
        if not success:
            increment_counter(f"provider_call_failures_total.{operation}")
        error_code = getattr(error, "code", type(error).__name__) if error is not None else None
        logger.info(
            "provider_call operation=%s success=%s attempts=%s latency_ms=%.1f error=%s",
            operation,
            success,
            attempts,
            latency_ms,
            error_code,
        )
        if not self._record_metrics:
            return
        await record_metric(
            session_factory=self._session_factory,
            actor="provider_client",
            action=METRIC_ACTION,
            outcome="success" if success else "failure",
            details={
                "integration": self.integration,
                "operation": operation,
                "latency_ms": round(latency_ms, 1),
                "attempts": attempts,
                "error_code": error_code,
            },
        )

    async def call(self, operation: str, *args: Any) -> Any:
        breaker = await self._get_breaker()
        method = getattr(self._provider, operation)
        attempts = 0
        started = time.monotonic()

        async def _attempt() -> Any:
            nonlocal attempts
            await breaker.before_call()
            attempts += 1
            try:
                result = await asyncio.wait_for(method(*args), timeout=self._policy.timeout_s)
            except asyncio.TimeoutError as exc:
                await breaker.record_failure()
                raise ProviderTimeout(f"{operation} exceeded {self._policy.timeout_s}s") from exc
            except ProviderError as exc:
                # Only availability failures count against the breaker; a 4xx proves the provider is up.
                if exc.retryable:
                    await breaker.record_failure()
                else:
                    await breaker.record_success()
                raise
            await breaker.record_success()
            return result

        def _on_retry(attempt: int, exc: Exception) -> None:
            logger.warning(
                "provider_call_retry operation=%s attempt=%s delay_s=%.1f error=%s",
                operation,
                attempt,
                self._policy.delay_for(attempt),
                getattr(exc, "code", type(exc).__name__),
            )

        try:
            result = await retry_async(_attempt, policy=self._policy, sleep=self._sleep, on_retry=_on_retry)
        except Exception as exc:
            await self._report(operation=operation, started=started, attempts=attempts, error=exc)
            raise
        await self._report(operation=operation, started=started, attempts=attempts, error=None)
        return result

    async def create_account(self, username: str, secret: str) -> CreatedAccount:
        return await self.call("create_account", username, secret)

    async def enable_account(self, account_id: str) -> None:
        await self.call("enable_account", account_id)

    async def disable_account(self, account_id: str) -> None:
        await self.call("disable_account", account_id)

    async def health(self) -> HealthStatus:
        # Pre-flight probe: one short attempt, never retried; an open breaker reports unhealthy.
        breaker = await self._get_breaker()
        started = time.monotonic()
        if await breaker.is_open():
            status = HealthStatus(healthy=False, latency_ms=0.0, detail="circuit_open")
            await self._report(
                operation="health_check",
                started=started,
                attempts=0,
                error=ProviderCircuitOpen(f"{self.integration} circuit is open"),
            )
            return status
        error: Exception | None = None
        try:
            status = await asyncio.wait_for(self._provider.health_check(), timeout=self._health_timeout_s)
        except asyncio.TimeoutError:
            error = ProviderTimeout(f"health_check exceeded {self._health_timeout_s}s")
            status = HealthStatus(healthy=False, latency_ms=self._health_timeout_s * 1000.0, detail="timeout")
        except ProviderError as exc:
            error = exc
            status = HealthStatus(
                healthy=False,
                latency_ms=(time.monotonic() - started) * 1000.0,
                detail=exc.code,
            )
        except Exception as exc:  # noqa: BLE001 - any adapter fault means the provider is not usable right now.
            logger.exception("provider_health_unexpected_error integration=%s", self.integration)
            error = exc
            status = HealthStatus(
                healthy=False,
                latency_ms=(time.monotonic() - started) * 1000.0,
                detail=exc.__class__.__name__,
            )
        await self._report(operation="health_check", started=started, attempts=1, error=error)
        return status
