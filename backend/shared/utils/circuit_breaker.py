"""
Per-provider circuit breaker.

States:
  CLOSED:    fetches pass through
  OPEN:      the provider failed too often; fetches are refused until the cooldown ends
  HALF_OPEN: cooldown elapsed; a single probe fetch decides whether to close again
"""
from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from shared.errors import ProviderFetchFailure
from shared.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpen(ProviderFetchFailure):
    """Raised instead of calling a provider whose breaker is open."""

    def __init__(self, provider: str, retry_after: float) -> None:
        self.retry_after = retry_after
        super().__init__(provider, f"circuit open, retry after {retry_after:.0f}s", retryable=False)


class CircuitBreaker:
    """
    Async circuit breaker guarding one upstream provider.

    Args:
        provider: Provider name, used in errors and logs.
        failure_threshold: Consecutive failures before opening.
        recovery_timeout_s: Seconds spent OPEN before a probe is allowed.
    """

    def __init__(
        self,
        provider: str,
        failure_threshold: int = 5,
        recovery_timeout_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.provider = provider
        self.failure_threshold = failure_threshold
        self.recovery_timeout_s = recovery_timeout_s
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0
        self._probe_in_flight = False
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._cooldown_left() <= 0:
            return CircuitState.HALF_OPEN
        return self._state

    def _cooldown_left(self) -> float:
        return self.recovery_timeout_s - (self._clock() - self._opened_at)

    def snapshot(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "state": self.state.value,
            "consecutive_failures": self._consecutive_failures,
        }

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        state = self.state
        if state == CircuitState.OPEN:
            raise CircuitBreakerOpen(self.provider, max(self._cooldown_left(), 1.0))
        if state == CircuitState.HALF_OPEN:
            async with self._lock:
                if self._probe_in_flight:
                    raise CircuitBreakerOpen(self.provider, 1.0)
                self._probe_in_flight = True

        try:
            result = await func(*args, **kwargs)
        except Exception as exc:
            await self._record_failure(exc)
            raise
        await self._record_success()
        return result

    async def _record_success(self) -> None:
        async with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info("circuit_closed", provider=self.provider)
            self._state = CircuitState.CLOSED
            self._consecutive_failures = 0
            self._probe_in_flight = False

    async def _record_failure(self, exc: Exception) -> None:
        async with self._lock:
            self._consecutive_failures += 1
            probing = self._probe_in_flight
            self._probe_in_flight = False
            if probing or self._consecutive_failures >= self.failure_threshold:
                if self._state != CircuitState.OPEN or probing:
                    logger.warning(
                        "circuit_opened",
                        provider=self.provider,
                        failures=self._consecutive_failures,
                        error=str(exc),
                    )
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()
