from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol


@dataclass(frozen=True)
class DeliveryOutcome:
    success: bool
    error: str | None = None


class NotificationDispatcher(Protocol):
    name: str

    async def deliver(self, channel: str, recipient: str, kind: str, payload: dict[str, Any]) -> DeliveryOutcome:
        ...
