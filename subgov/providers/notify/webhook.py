from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from typing import Any

import httpx

from subgov.core.errors import ConfigurationMissing
from subgov.providers.notify.base import DeliveryOutcome
from subgov.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Notification-Signature"


def serialize_payload(body: dict[str, Any]) -> bytes:
    # Deterministic bytes so receivers can verify the signature.
    return json.dumps(body, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")


def compute_signature(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class WebhookDispatcher:
    """Posts every notification to one relay endpoint that owns channel fan-out."""

    name = "webhook"

    def __init__(
        self,
        *,
        url: str | None,
        secret: str | None = None,
        timeout_s: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not url:
            raise ConfigurationMissing("NOTIFY_WEBHOOK_URL is required for the webhook dispatcher")
        self._url = url
        self._secret = secret
        self._timeout_s = timeout_s
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout_s)
        return self._client

    async def deliver(self, channel: str, recipient: str, kind: str, payload: dict[str, Any]) -> DeliveryOutcome:
        body = serialize_payload({"channel": channel, "recipient": recipient, "kind": kind, "payload": payload})
        headers = {"Content-Type": "application/json"}
        if self._secret:
            headers[SIGNATURE_HEADER] = compute_signature(body, self._secret)
        start = time.monotonic()
        try:
            response = await self._get_client().post(self._url, content=body, headers=headers)
        except httpx.HTTPError as exc:
            record_external_call(
                integration="notify.webhook",
                operation=kind,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            logger.warning("notification_webhook_failed channel=%s kind=%s error=%s", channel, kind, exc.__class__.__name__)
            return DeliveryOutcome(success=False, error=f"transport:{exc.__class__.__name__}")
        success = response.status_code < 400
        record_external_call(
            integration="notify.webhook",
            operation=kind,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=success,
        )
        if not success:
            return DeliveryOutcome(success=False, error=f"http_{response.status_code}")
        return DeliveryOutcome(success=True)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
