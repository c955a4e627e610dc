"""
Async HTTP client wrapper for provider feeds.
Retries transient failures with exponential backoff and records metrics per attempt.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Optional

import httpx

from shared.config import get_settings
from shared.errors import ProviderFetchFailure
from shared.utils.logging import get_logger
from shared.utils.metrics import PROVIDER_FETCHES, PROVIDER_LATENCY

logger = get_logger(__name__)


class ProviderHTTPClient:
    """
    httpx client for one provider.

    5xx, 429 and timeouts are retried up to ``max_attempts`` times with
    ``backoff_base_s * 2 ** (attempt - 1)`` between attempts. Other 4xx
    responses fail immediately. Every terminal failure surfaces as
    ProviderFetchFailure.
    """

    def __init__(
        self,
        provider_name: str,
        base_url: str,
        api_key: str = "",
        headers: dict[str, str] | None = None,
        timeout_s: float | None = None,
        max_attempts: int | None = None,
        backoff_base_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._provider = provider_name
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_s or settings.provider_request_timeout_s
        self._max_attempts = max_attempts or settings.provider_fetch_attempts
        self._backoff_base_s = (
            backoff_base_s if backoff_base_s is not None else settings.provider_backoff_base_s
        )
        self._headers = dict(headers or {})
        if api_key:
            self._headers.setdefault("Authorization", f"Bearer {api_key}")
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def start(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers,
            timeout=httpx.Timeout(self._timeout, connect=5.0),
            follow_redirects=True,
            transport=self._transport,
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """GET ``path`` and decode the JSON body, retrying transient failures."""
        if not self._client:
            raise RuntimeError("ProviderHTTPClient not started. Call start() first.")

        reason = "no attempts made"
        for attempt in range(1, self._max_attempts + 1):
            start_time = time.perf_counter()
            status = "error"
            try:
                resp = await self._client.get(path, params=params)
                status = str(resp.status_code)
                if resp.status_code == 429 or resp.status_code >= 500:
                    reason = f"HTTP {resp.status_code}"
                    logger.warning(
                        "provider_transient_error",
                        provider=self._provider,
                        path=path,
                        status=resp.status_code,
                        attempt=attempt,
                    )
                elif resp.status_code >= 400:
                    raise ProviderFetchFailure(
                        self._provider, f"HTTP {resp.status_code}", retryable=False
                    )
                else:
                    return resp.json()
            except httpx.TimeoutException:
                status = "timeout"
                reason = "timeout"
                logger.warning("provider_timeout", provider=self._provider, path=path, attempt=attempt)
            except httpx.TransportError as exc:
                reason = str(exc) or type(exc).__name__
                logger.warning(
                    "provider_transport_error",
                    provider=self._provider,
                    path=path,
                    error=reason,
                    attempt=attempt,
                )
            except ValueError as exc:
                raise ProviderFetchFailure(self._provider, f"invalid JSON: {exc}", retryable=False) from exc
            finally:
                PROVIDER_FETCHES.labels(provider=self._provider, status=status).inc()
                PROVIDER_LATENCY.labels(provider=self._provider).observe(time.perf_counter() - start_time)

            if attempt < self._max_attempts:
                await asyncio.sleep(self._backoff_base_s * 2 ** (attempt - 1))

        raise ProviderFetchFailure(self._provider, f"{reason} after {self._max_attempts} attempts")
