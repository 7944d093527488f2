from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class CreatedAccount:
    id: str


@dataclass(frozen=True)
class HealthStatus:
    healthy: bool
    latency_ms: float
    detail: str | None = None


class AccountProvider(Protocol):
    """External account service. Every call must be idempotent from the caller's side."""

    name: str

    async def create_account(self, username: str, secret: str) -> CreatedAccount:
        ...

    async def enable_account(self, account_id: str) -> None:
        ...

    async def disable_account(self, account_id: str) -> None:
        ...

    async def health_check(self) -> HealthStatus:
        ...
