from __future__ import annotations

import logging
from typing import Any

from subgov.providers.notify.base import DeliveryOutcome


logger = logging.getLogger(__name__)


class LogDispatcher:
    """Writes notifications to the log; the default when no outbound channel is configured."""

    name = "log"

    async def deliver(self, channel: str, recipient: str, kind: str, payload: dict[str, Any]) -> DeliveryOutcome:
        logger.info(
            "notification_logged channel=%s recipient=%s kind=%s keys=%s",
            channel,
            recipient,
            kind,
            sorted(payload),
        )
        return DeliveryOutcome(success=True)
