from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from subgov.core.errors import (
    ConfigurationMissing,
    ProviderAuthFailure,
    ProviderBadRequest,
    ProviderError,
    ProviderTimeout,
    ProviderUnavailable,
)
from subgov.providers.account.base import CreatedAccount, HealthStatus


logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = {408, 429}


def map_transport_error(exc: httpx.HTTPError) -> ProviderError:
    # Timeouts and connection failures are availability problems, not request problems.
    if isinstance(exc, httpx.TimeoutException):
        return ProviderTimeout(f"jellyfin request timed out: {exc.__class__.__name__}")
    return ProviderUnavailable(f"jellyfin unreachable: {exc.__class__.__name__}")


def map_status_error(response: httpx.Response) -> ProviderError:
    status = response.status_code
    if status in {401, 403}:
        return ProviderAuthFailure("jellyfin rejected the api key", status_code=status)
    if status >= 500 or status in _RETRYABLE_STATUS:
        return ProviderUnavailable(f"jellyfin answered {status}", status_code=status)
    detail = response.text[:200] if response.text else ""
    return ProviderBadRequest(f"jellyfin rejected request ({status}) {detail}".strip(), status_code=status)


def decode_json(response: httpx.Response) -> Any:
    # A 200 with an html body usually means a proxy or login page sits in front of the server.
    try:
        return response.json()
    except ValueError as exc:
        raise ProviderUnavailable(
            "jellyfin answered with a non-json body", status_code=response.status_code
        ) from exc


class JellyfinAccountProvider:
    """Single-attempt Jellyfin user API adapter; retries and breaking happen in the client wrapper."""

    name = "jellyfin"

    def __init__(
        self,
        *,
        base_url: str | None,
        api_key: str | None,
        timeout_s: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not base_url or not api_key:
            raise ConfigurationMissing("PROVIDER_BASE_URL and PROVIDER_API_KEY are required for jellyfin")
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout_s = timeout_s
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout_s,
            headers={"X-Emby-Token": self._api_key, "Content-Type": "application/json"},
        )
        return self._client

    async def _request(self, method: str, path: str, *, json: Any | None = None) -> httpx.Response:
        client = self._get_client()
        try:
            response = await client.request(
                method,
                path,
                json=json,
                headers={"X-Emby-Token": self._api_key},
            )
        except httpx.HTTPError as exc:
            raise map_transport_error(exc) from exc
        if response.status_code >= 400:
            raise map_status_error(response)
        return response

    async def create_account(self, username: str, secret: str) -> CreatedAccount:
        response = await self._request("POST", "/Users/New", json={"Name": username, "Password": secret})
        payload = decode_json(response)
        account_id = payload.get("Id") if isinstance(payload, dict) else None
        if not account_id:
            raise ProviderBadRequest("jellyfin create response carried no user id")
        return CreatedAccount(id=str(account_id))

    async def _set_disabled(self, account_id: str, disabled: bool) -> None:
        # The policy endpoint replaces the whole policy, so read the current one first.
        current = await self._request("GET", f"/Users/{account_id}")
        body = decode_json(current) if current.content else {}
        policy = dict(body.get("Policy") or {}) if isinstance(body, dict) else {}
        if policy.get("IsDisabled") is disabled:
            return
        policy["IsDisabled"] = disabled
        await self._request("POST", f"/Users/{account_id}/Policy", json=policy)

    async def enable_account(self, account_id: str) -> None:
        await self._set_disabled(account_id, False)

    async def disable_account(self, account_id: str) -> None:
        await self._set_disabled(account_id, True)

    async def health_check(self) -> HealthStatus:
        start = time.monotonic()
        response = await self._request("GET", "/System/Info/Public")
        latency_ms = (time.monotonic() - start) * 1000.0
        version = None
        if response.content:
            payload = decode_json(response)
            if isinstance(payload, dict):
                version = payload.get("Version")
        return HealthStatus(healthy=True, latency_ms=latency_ms, detail=version)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
