"""
Sync Orchestrator.

Entry point for every scheduled job. A sync cycle for one sport:

  1. fetch all providers concurrently (each failure degrades to an empty list)
  2. aggregate in memory; if the cycle deadline passes first, nothing is written
  3. reconcile with stored matches so a fixture keeps its event id
  4. write each match with its stored version, retrying on conflict

Lifecycle jobs gather provider evidence and hand it to the lifecycle manager.
Every job is guarded by a Redis marker: a second concurrent run is skipped.
"""
from __future__ import annotations

import asyncio
import uuid
from collections import Counter
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from shared.config import Settings, get_settings
from shared.errors import PersistenceConflict, ValidationError
from shared.models.domain import CanonicalMatch, LayerReport, RawEvent, SyncReport, utcnow
from shared.models.enums import EventStatus, LifecycleLayer, LifecycleStatus
from shared.utils.logging import get_logger
from shared.utils.metrics import (
    JOB_DURATION,
    JOBS_SKIPPED,
    MATCHES_BY_STATUS,
    PERSISTENCE_CONFLICTS,
    atrack_latency,
)
from shared.utils.redis_manager import RedisManager
from storage.base import MatchFilter, MatchRepository, UpsertOutcome
from aggregation.engine import MatchAggregationEngine, pair_key, side_key
from aggregation.status import normalize_status
from lifecycle.manager import LayerEvidence, MatchLifecycleManager
from lifecycle.rules import StatusReport

from ingest.providers.base import ProviderResult
from ingest.providers.registry import ProviderRegistry

logger = get_logger(__name__)

SYNC_JOB = "sync"

JobResult = Union[SyncReport, LayerReport, list[SyncReport]]


class SyncOrchestrator:
    def __init__(
        self,
        registry: ProviderRegistry,
        engine: MatchAggregationEngine,
        lifecycle: MatchLifecycleManager,
        matches: MatchRepository,
        redis: RedisManager,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._settings = settings or get_settings()
        self._registry = registry
        self._engine = engine
        self._lifecycle = lifecycle
        self._matches = matches
        self._redis = redis
        self._clock = clock

    # ── Job dispatch ────────────────────────────────────────────────────
    async def run_job(self, name: str) -> JobResult:
        """
        Run a job by name: "sync", "sync:<sport_id>" or a lifecycle layer
        ("provider_status", "primary_markets", "time_cleanup",
        "staleness_purge", "comprehensive").
        """
        async with atrack_latency(JOB_DURATION, job=name.split(":")[0]):
            if name == SYNC_JOB:
                return [await self.sync_sport(sport_id) for sport_id in self._settings.scheduler_sport_ids]
            if name.startswith(f"{SYNC_JOB}:"):
                sport = name.split(":", 1)[1]
                if not sport.isdigit():
                    raise ValidationError("job", f"bad sport id in {name!r}")
                return await self.sync_sport(int(sport))
            try:
                layer = LifecycleLayer(name)
            except ValueError:
                raise ValidationError("job", f"unknown job {name!r}") from None
            return await self.run_lifecycle(layer)

    # ── Sync ────────────────────────────────────────────────────────────
    async def sync_sport(self, sport_id: int) -> SyncReport:
        job = f"{SYNC_JOB}:{sport_id}"
        token = uuid.uuid4().hex
        if not await self._redis.try_acquire_job(job, token, self._settings.job_lock_ttl_s):
            JOBS_SKIPPED.labels(job=job).inc()
            logger.info("sync_skipped", sport_id=sport_id, reason="already_running")
            return SyncReport(sport_id=sport_id, skipped=True)
        try:
            return await self._sync(sport_id)
        finally:
            await self._redis.release_job(job, token)

    async def _sync(self, sport_id: int) -> SyncReport:
        report = SyncReport(sport_id=sport_id)
        try:
            results, aggregated = await asyncio.wait_for(
                self._fetch_and_aggregate(sport_id), timeout=self._settings.sync_deadline_s
            )
        except asyncio.TimeoutError:
            logger.warning("sync_deadline_exceeded", sport_id=sport_id, deadline_s=self._settings.sync_deadline_s)
            report.skipped = True
            return report

        for result in results:
            (report.providers_ok if result.success else report.providers_failed).append(result.provider)

        stored = await self._load_reconciliation_set(sport_id, aggregated)
        by_provider_event, by_pair = _index_stored(stored)
        statuses: Counter[str] = Counter()

        for incoming in aggregated:
            existing = _find_existing(incoming, by_provider_event, by_pair, self._window())
            try:
                written, restored = await self._persist(incoming, existing)
            except PersistenceConflict as exc:
                report.conflicts += 1
                logger.warning("sync_write_gave_up", event_id=exc.event_id, sport_id=sport_id)
                continue
            except Exception:
                logger.exception("sync_write_failed", sport_id=sport_id, join_key=incoming.join_key)
                continue
            if written is not None:
                report.written += 1
                statuses[written.status.value] += 1
            report.restored += int(restored)

        report.matches = len(aggregated)
        for status in LifecycleStatus:
            MATCHES_BY_STATUS.labels(sport=str(sport_id), status=status.value).set(statuses[status.value])
        logger.info(
            "sync_complete",
            sport_id=sport_id,
            providers_ok=report.providers_ok,
            providers_failed=report.providers_failed,
            matches=report.matches,
            written=report.written,
            restored=report.restored,
            conflicts=report.conflicts,
        )
        return report

    async def _fetch_and_aggregate(self, sport_id: int) -> tuple[list[ProviderResult], list[CanonicalMatch]]:
        results = await self.fetch_all(sport_id)
        aggregated = await self._engine.aggregate([r.events for r in results if r.success])
        return results, aggregated

    async def fetch_all(self, sport_id: int, providers: Optional[list[str]] = None) -> list[ProviderResult]:
        """Fetch every (or the named) provider concurrently; failures come back as unsuccessful results."""
        now = self._clock()
        span = timedelta(hours=self._settings.provider_window_hours)
        selected = [
            p for p in self._registry.ordered(sport_id) if providers is None or p.name in providers
        ]
        outcomes = await asyncio.gather(
            *(p.fetch_events(sport_id, now - span, now + span) for p in selected),
            return_exceptions=True,
        )
        results: list[ProviderResult] = []
        for provider, outcome in zip(selected, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.error(
                    "provider_fetch_crashed",
                    provider=provider.name,
                    sport_id=sport_id,
                    error=f"{type(outcome).__name__}: {outcome}",
                )
                results.append(ProviderResult(provider.name, success=False, latency_ms=0.0, error=str(outcome)))
            else:
                results.append(outcome)
        return results

    def _window(self) -> timedelta:
        return timedelta(minutes=self._settings.aggregation_window_minutes)

    async def _load_reconciliation_set(
        self, sport_id: int, aggregated: list[CanonicalMatch]
    ) -> list[CanonicalMatch]:
        if not aggregated:
            return []
        starts = [m.scheduled_start for m in aggregated]
        return await self._matches.load_matches(
            MatchFilter(
                sport_id=sport_id,
                start_from=min(starts) - self._window(),
                start_to=max(starts) + self._window(),
            )
        )

    async def _persist(
        self, incoming: CanonicalMatch, existing: Optional[CanonicalMatch]
    ) -> tuple[Optional[CanonicalMatch], bool]:
        """Write one aggregated match; returns (stored row or None when skipped, restored?)."""
        current = existing
        for _ in range(self._settings.lifecycle_conflict_retries):
            if current is None:
                outcome, written = await self._matches.upsert_match(incoming, expected_version=None)
                if outcome != UpsertOutcome.CONFLICT:
                    return written, False
                current = await self._matches.get_match(incoming.event_id)
                continue

            if current.status == LifecycleStatus.FINISHED:
                return None, False

            status, decision = self._lifecycle.status_for_sync(current, incoming)
            candidate = incoming.model_copy(
                update={
                    "event_id": current.event_id,
                    "status": status,
                    "status_reason": decision.reason if decision else current.status_reason,
                    "last_updated": self._clock(),
                }
            )
            outcome, written = await self._matches.upsert_match(candidate, expected_version=current.version)
            if outcome != UpsertOutcome.CONFLICT and written is not None:
                if decision is not None:
                    await self._lifecycle.record_sync_transition(current, written, decision)
                restored = decision is not None and current.status == LifecycleStatus.SOFT_FINISHED
                return written, restored

            PERSISTENCE_CONFLICTS.labels(operation="sync_upsert").inc()
            current = await self._matches.get_match(current.event_id)
        raise PersistenceConflict(incoming.event_id, current.version if current else None)

    # ── Lifecycle ───────────────────────────────────────────────────────
    async def run_lifecycle(self, layer: LifecycleLayer) -> LayerReport:
        evidence = await self.collect_evidence(layer)
        return await self._lifecycle.run_layer(layer, evidence)

    async def collect_evidence(self, layer: LifecycleLayer) -> LayerEvidence:
        evidence = LayerEvidence()
        wants_status = layer in (LifecycleLayer.PROVIDER_STATUS, LifecycleLayer.COMPREHENSIVE)
        wants_markets = layer in (LifecycleLayer.PRIMARY_MARKETS, LifecycleLayer.COMPREHENSIVE)
        if not (wants_status or wants_markets):
            return evidence

        primary = self._settings.primary_provider
        open_ids: Optional[set[str]] = set() if wants_markets else None
        for sport_id in self._settings.scheduler_sport_ids:
            results = await self.fetch_all(sport_id)
            if wants_status:
                secondary = [ev for r in results if r.success and r.provider != primary for ev in r.events]
                evidence.status_reports.extend(await self._status_reports(secondary))
            if open_ids is not None:
                primary_result = next((r for r in results if r.provider == primary), None)
                sport_open = primary_result.open_event_ids() if primary_result else None
                if sport_open is None:
                    logger.warning("primary_markets_unavailable", provider=primary, sport_id=sport_id)
                    open_ids = None
                else:
                    open_ids |= sport_open
        evidence.open_event_ids = open_ids
        return evidence

    async def _status_reports(self, events: list[RawEvent]) -> list[StatusReport]:
        reports: list[StatusReport] = []
        for resolved in await self._engine.resolve_events(events):
            status = normalize_status(resolved.event.status_code)
            if status == EventStatus.UNKNOWN:
                continue
            reports.append(
                StatusReport(
                    provider=resolved.event.provider,
                    provider_event_id=resolved.event.provider_event_id,
                    sport_id=resolved.event.sport_id,
                    pair=resolved.pair,
                    scheduled_start=resolved.event.scheduled_start,
                    status=status,
                )
            )
        return reports


def _index_stored(
    stored: list[CanonicalMatch],
) -> tuple[dict[tuple[str, str], CanonicalMatch], dict[str, list[CanonicalMatch]]]:
    by_provider_event: dict[tuple[str, str], CanonicalMatch] = {}
    by_pair: dict[str, list[CanonicalMatch]] = {}
    for match in stored:
        for provider, provider_event_id in match.provider_event_ids.items():
            by_provider_event[(provider, provider_event_id)] = match
        by_pair.setdefault(_match_pair(match), []).append(match)
    return by_provider_event, by_pair


def _match_pair(match: CanonicalMatch) -> str:
    return pair_key(
        match.sport_id,
        side_key(match.home_team_id, match.home_team),
        side_key(match.away_team_id, match.away_team),
    )


def _find_existing(
    incoming: CanonicalMatch,
    by_provider_event: dict[tuple[str, str], CanonicalMatch],
    by_pair: dict[str, list[CanonicalMatch]],
    window: timedelta,
) -> Optional[CanonicalMatch]:
    """Stored match for the same fixture: shared provider event id first, then teams within the window."""
    for provider, provider_event_id in incoming.provider_event_ids.items():
        hit = by_provider_event.get((provider, provider_event_id))
        if hit is not None:
            return hit
    candidates = [
        m
        for m in by_pair.get(_match_pair(incoming), [])
        if abs(m.scheduled_start - incoming.scheduled_start) <= window
    ]
    if not candidates:
        return None
    return min(candidates, key=lambda m: abs(m.scheduled_start - incoming.scheduled_start))
