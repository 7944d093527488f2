from __future__ import annotations

from subgov.core.config import get_settings
from subgov.core.errors import ConfigurationMissing
from subgov.providers.account.base import AccountProvider
from subgov.providers.account.fake import FakeAccountProvider
from subgov.providers.account.jellyfin import JellyfinAccountProvider


def get_account_provider() -> AccountProvider:
    settings = get_settings()
    kind = (settings.provider_kind or "jellyfin").lower()

    if kind == "fake":
        return FakeAccountProvider()
    if kind == "jellyfin":
        return JellyfinAccountProvider(
            base_url=settings.provider_base_url,
            api_key=settings.provider_api_key,
            timeout_s=min(settings.provider_call_timeout_s, 10.0),
        )

    raise ConfigurationMissing(f"Unsupported account provider: {kind}")
