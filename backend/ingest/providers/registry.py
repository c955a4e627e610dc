"""
Provider registry: builds configured providers and orders them by merge priority.
"""
from __future__ import annotations

from typing import Iterator, Optional

from shared.config import Settings, get_settings
from shared.utils.circuit_breaker import CircuitBreaker
from shared.utils.http_client import ProviderHTTPClient
from shared.utils.logging import get_logger

from ingest.providers.base import BaseProvider
from ingest.providers.feed import JSONFeedProvider

logger = get_logger(__name__)


class ProviderRegistry:
    def __init__(self, providers: dict[str, BaseProvider], settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._providers = providers
        priority = self._settings.provider_priority
        self._order = sorted(
            providers,
            key=lambda name: (priority.index(name) if name in priority else len(priority), name),
        )

    @property
    def providers(self) -> dict[str, BaseProvider]:
        return self._providers

    def ordered(self, sport_id: Optional[int] = None) -> Iterator[BaseProvider]:
        """Providers in merge priority, optionally only those covering a sport."""
        for name in self._order:
            provider = self._providers[name]
            if sport_id is None or provider.supports(sport_id):
                yield provider

    async def start(self) -> None:
        for provider in self._providers.values():
            await provider.start()

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()


def build_registry(settings: Settings | None = None) -> ProviderRegistry:
    """Create a JSON feed provider for every provider with a configured feed URL."""
    settings = settings or get_settings()
    providers: dict[str, BaseProvider] = {}
    for name, url in settings.provider_feed_urls.items():
        if name not in settings.provider_allow_list:
            logger.warning("provider_feed_ignored", provider=name, reason="not in allow list")
            continue
        providers[name] = JSONFeedProvider(
            name=name,
            http_client=ProviderHTTPClient(name, url, api_key=settings.provider_api_keys.get(name, "")),
            breaker=CircuitBreaker(
                name,
                failure_threshold=settings.provider_breaker_threshold,
                recovery_timeout_s=settings.provider_breaker_recovery_s,
            ),
        )
    logger.info("provider_registry_built", providers=sorted(providers))
    return ProviderRegistry(providers, settings)
