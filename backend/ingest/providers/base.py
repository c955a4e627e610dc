"""
Abstract base class for upstream odds/fixture providers.
Defines the fetch contract every provider connector implements.
"""
from __future__ import annotations

import abc
import time
from datetime import datetime
from typing import Optional

from shared.errors import ProviderFetchFailure
from shared.models.domain import RawEvent
from shared.utils.circuit_breaker import CircuitBreaker
from shared.utils.http_client import ProviderHTTPClient
from shared.utils.logging import get_logger

logger = get_logger(__name__)


class ProviderResult:
    """Container for one provider fetch with metadata."""

    def __init__(
        self,
        provider: str,
        success: bool,
        latency_ms: float,
        events: Optional[list[RawEvent]] = None,
        error: Optional[str] = None,
        rejected: int = 0,
    ) -> None:
        self.provider = provider
        self.success = success
        self.latency_ms = latency_ms
        self.events = events or []
        self.error = error
        self.rejected = rejected

    def open_event_ids(self) -> Optional[set[str]]:
        """Event ids currently offering markets; None when the fetch failed."""
        if not self.success:
            return None
        return {
            ev.provider_event_id
            for ev in self.events
            if ev.offers_markets
        }


class BaseProvider(abc.ABC):
    """
    Base class for providers.

    fetch_events() wraps the provider-specific _fetch_events with timing, the
    provider's circuit breaker and error capture: it never raises for an
    upstream failure, it reports it in the ProviderResult.
    """

    def __init__(
        self,
        name: str,
        http_client: ProviderHTTPClient,
        breaker: CircuitBreaker,
        supported_sports: Optional[set[int]] = None,
    ) -> None:
        self._name = name
        self._http = http_client
        self._breaker = breaker
        self._supported_sports = supported_sports

    @property
    def name(self) -> str:
        return self._name

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    def supports(self, sport_id: int) -> bool:
        return self._supported_sports is None or sport_id in self._supported_sports

    async def start(self) -> None:
        await self._http.start()

    async def close(self) -> None:
        await self._http.close()

    async def fetch_events(self, sport_id: int, window_start: datetime, window_end: datetime) -> ProviderResult:
        start = time.perf_counter()
        try:
            result = await self._breaker.call(self._fetch_events, sport_id, window_start, window_end)
        except ProviderFetchFailure as exc:
            latency_ms = (time.perf_counter() - start) * 1000
            logger.warning(
                "provider_fetch_failed",
                provider=self._name,
                sport_id=sport_id,
                error=exc.reason,
                breaker=self._breaker.state.value,
            )
            return ProviderResult(self._name, success=False, latency_ms=latency_ms, error=exc.reason)
        result.latency_ms = (time.perf_counter() - start) * 1000
        logger.debug(
            "provider_fetch_ok",
            provider=self._name,
            sport_id=sport_id,
            events=len(result.events),
            rejected=result.rejected,
            latency_ms=round(result.latency_ms, 2),
        )
        return result

    # ── Abstract methods (each provider implements these) ───────────────
    @abc.abstractmethod
    async def _fetch_events(self, sport_id: int, window_start: datetime, window_end: datetime) -> ProviderResult:
        """
        Provider-specific fetch. Raise ProviderFetchFailure when the upstream
        cannot be read at all; drop individual malformed events.
        """
        ...
