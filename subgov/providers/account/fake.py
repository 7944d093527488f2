from __future__ import annotations

from dataclasses import dataclass, field
from uuid import uuid4

from subgov.core.errors import ProviderBadRequest, ProviderError, ProviderUnavailable
from subgov.providers.account.base import CreatedAccount, HealthStatus


@dataclass
class FakeCall:
    operation: str
    account_id: str | None = None


@dataclass
class FakeAccountProvider:
    """In-memory provider for local runs and tests; failures are scripted per operation."""

    name: str = "fake"
    healthy: bool = True
    accounts: dict[str, bool] = field(default_factory=dict)
    calls: list[FakeCall] = field(default_factory=list)
    # Errors raised once each, in order, for the named operation.
    scripted_errors: dict[str, list[ProviderError]] = field(default_factory=dict)
    # Account ids whose every enable/disable call fails with the given error.
    failing_accounts: dict[str, ProviderError] = field(default_factory=dict)

    def fail_next(self, operation: str, *errors: ProviderError) -> None:
        self.scripted_errors.setdefault(operation, []).extend(errors)

    def _maybe_fail(self, operation: str, account_id: str | None = None) -> None:
        queue = self.scripted_errors.get(operation)
        if queue:
            raise queue.pop(0)
        if account_id is not None and account_id in self.failing_accounts:
            raise self.failing_accounts[account_id]

    def calls_for(self, operation: str) -> list[FakeCall]:
        return [call for call in self.calls if call.operation == operation]

    async def create_account(self, username: str, secret: str) -> CreatedAccount:
        _ = secret
        self.calls.append(FakeCall("create_account"))
        self._maybe_fail("create_account")
        account_id = f"{username}-{uuid4().hex[:8]}"
        self.accounts[account_id] = True
        return CreatedAccount(id=account_id)

    async def enable_account(self, account_id: str) -> None:
        self.calls.append(FakeCall("enable_account", account_id))
        self._maybe_fail("enable_account", account_id)
        if account_id not in self.accounts:
            raise ProviderBadRequest(f"unknown account {account_id}", status_code=404)
        self.accounts[account_id] = True

    async def disable_account(self, account_id: str) -> None:
        self.calls.append(FakeCall("disable_account", account_id))
        self._maybe_fail("disable_account", account_id)
        if account_id not in self.accounts:
            raise ProviderBadRequest(f"unknown account {account_id}", status_code=404)
        self.accounts[account_id] = False

    async def health_check(self) -> HealthStatus:
        self.calls.append(FakeCall("health_check"))
        self._maybe_fail("health_check")
        if not self.healthy:
            raise ProviderUnavailable("fake provider marked unhealthy", status_code=503)
        return HealthStatus(healthy=True, latency_ms=0.0, detail="fake")
