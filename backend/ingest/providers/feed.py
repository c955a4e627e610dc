"""
Generic JSON feed provider.

Reads ``GET {base_url}/events?sport_id=..&from=..&to=..`` returning either a
list of events or ``{"events": [...]}``; each item carries the RawEvent fields
(the provider name is filled in here).
"""
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from shared.errors import ProviderFetchFailure
from shared.models.domain import RawEvent
from shared.utils.logging import get_logger

from ingest.providers.base import BaseProvider, ProviderResult

logger = get_logger(__name__)


class JSONFeedProvider(BaseProvider):
    events_path = "/events"

    async def _fetch_events(self, sport_id: int, window_start: datetime, window_end: datetime) -> ProviderResult:
        payload = await self._http.get_json(
            self.events_path,
            params={"sport_id": sport_id, "from": window_start.isoformat(), "to": window_end.isoformat()},
        )
        items = payload.get("events") if isinstance(payload, dict) else payload
        if not isinstance(items, list):
            raise ProviderFetchFailure(self.name, "unexpected payload shape", retryable=False)

        events: list[RawEvent] = []
        rejected = 0
        for item in items:
            event = self._parse(item, sport_id)
            if event is None:
                rejected += 1
            else:
                events.append(event)
        return ProviderResult(self.name, success=True, latency_ms=0.0, events=events, rejected=rejected)

    def _parse(self, item: Any, sport_id: int) -> RawEvent | None:
        if not isinstance(item, dict):
            return None
        try:
            return RawEvent.model_validate({"sport_id": sport_id, **item, "provider": self.name})
        except PydanticValidationError as exc:
            logger.warning(
                "provider_event_rejected",
                provider=self.name,
                provider_event_id=item.get("provider_event_id"),
                errors=exc.error_count(),
            )
            return None
