from __future__ import annotations

from typing import Type

import httpx
import structlog

from app.core.config import Settings
from app.core.exceptions import ConfigurationError, UnknownProviderError
from app.services.providers.base import ProviderAdapter
from app.services.providers.google import GoogleAdapter
from app.services.providers.linkedin import LinkedInAdapter
from app.services.providers.meta import MetaAdapter
from app.services.providers.pinterest import PinterestAdapter
from app.services.providers.snapchat import SnapchatAdapter
from app.services.providers.tiktok import TikTokAdapter
from app.services.providers.x import XAdapter

logger = structlog.get_logger(__name__)

# Every adapter this service knows how to build, keyed by provider id.
ADAPTER_CLASSES: dict[str, Type[ProviderAdapter]] = {
    cls.descriptor.id: cls
    for cls in (
        MetaAdapter,
        TikTokAdapter,
        GoogleAdapter,
        XAdapter,
        LinkedInAdapter,
        PinterestAdapter,
        SnapchatAdapter,
    )
}


class ProviderRegistry:
    """Lookup table of configured adapters, built once at start-up."""

    def __init__(self, adapters: list[ProviderAdapter] | None = None):
        self._adapters: dict[str, ProviderAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: ProviderAdapter) -> None:
        if adapter.id in self._adapters:
            raise ConfigurationError(f"Provider {adapter.id!r} registered twice", provider=adapter.id)
        self._adapters[adapter.id] = adapter

    def is_registered(self, provider_id: str) -> bool:
        return provider_id in self._adapters

    def get(self, provider_id: str) -> ProviderAdapter:
        adapter = self._adapters.get(provider_id)
        if adapter is None:
            raise UnknownProviderError(provider_id, supported=self.ids())
        return adapter

    def list_all(self) -> list[ProviderAdapter]:
        return list(self._adapters.values())

    def ids(self) -> list[str]:
        return list(self._adapters)


def build_provider_registry(settings: Settings, http_client: httpx.AsyncClient) -> ProviderRegistry:
    """Instantiate every enabled provider; missing credentials stop the process."""
    registry = ProviderRegistry()
    for provider_id in settings.oauth_providers:
        adapter_cls = ADAPTER_CLASSES.get(provider_id)
        if adapter_cls is None:
            raise ConfigurationError(
                f"Enabled provider {provider_id!r} has no adapter",
                provider=provider_id,
                details={"knownProviders": sorted(ADAPTER_CLASSES)},
            )

        client_id, client_secret = settings.provider_credentials(provider_id)
        if not client_id or not client_secret:
            raise ConfigurationError(
                f"Client credentials for {provider_id!r} are not configured",
                provider=provider_id,
            )

        registry.register(
            adapter_cls(
                client_id=client_id,
                client_secret=client_secret,
                redirect_uri=settings.oauth_redirect_uri(provider_id),
                http_client=http_client,
                retries=settings.http_retries,
                backoff_seconds=settings.http_retry_backoff_seconds,
            )
        )

    logger.info("providers.registered", providers=registry.ids())
    return registry
