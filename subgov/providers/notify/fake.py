from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from subgov.providers.notify.base import DeliveryOutcome


@dataclass(frozen=True)
class Delivered:
    channel: str
    recipient: str
    kind: str
    payload: dict[str, Any]


@dataclass
class FakeDispatcher:
    name: str = "fake"
    delivered: list[Delivered] = field(default_factory=list)
    # Channels that always fail.
    failing_channels: set[str] = field(default_factory=set)

    async def deliver(self, channel: str, recipient: str, kind: str, payload: dict[str, Any]) -> DeliveryOutcome:
        if channel in self.failing_channels:
            return DeliveryOutcome(success=False, error=f"{channel} unavailable")
        self.delivered.append(Delivered(channel, recipient, kind, dict(payload)))
        return DeliveryOutcome(success=True)

    def kinds(self) -> list[str]:
        return [item.kind for item in self.delivered]
