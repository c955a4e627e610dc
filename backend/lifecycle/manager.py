"""
Match Lifecycle Manager.

Runs the layered transition rules over stored matches. Each layer run:
  - holds a per-layer job marker; a busy marker means the run is skipped
  - evaluates matches one at a time; a failing match is logged, counted and
    left unchanged while the rest of the run continues
  - writes with the match's version; on conflict it re-reads and decides again

Admin overrides bypass the rules but are always audited.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from shared.config import Settings, get_settings
from shared.errors import LayerEvaluationFailure, MatchNotFound, PersistenceConflict
from shared.models.domain import (
    CanonicalMatch,
    LayerReport,
    RiskAssessment,
    TransitionDecision,
    TransitionRecord,
    utcnow,
)
from shared.models.enums import (
    LeagueCoverage,
    LifecycleLayer,
    LifecycleStatus,
    RiskLevel,
    TransitionSource,
)
from shared.utils.logging import get_logger
from shared.utils.metrics import (
    JOBS_SKIPPED,
    LAYER_FAILURES,
    LIFECYCLE_TRANSITIONS,
    PERSISTENCE_CONFLICTS,
)
from shared.utils.redis_manager import RedisManager
from storage.base import MatchFilter, MatchRepository, TeamRepository
from aggregation.engine import pair_key, side_key

from lifecycle.coverage import coverage_for_league_name
from lifecycle.risk import assess_risk
from lifecycle.rules import (
    StatusReport,
    primary_markets_decision,
    provider_status_decision,
    restore_decision,
    staleness_decision,
    strictest,
    tightens,
    time_cleanup_decision,
)

logger = get_logger(__name__)

_UNFINISHED = [LifecycleStatus.PREMATCH, LifecycleStatus.LIVE, LifecycleStatus.SOFT_FINISHED]

Decide = Callable[[CanonicalMatch], Optional[TransitionDecision]]


@dataclass
class LayerEvidence:
    """Inputs gathered from providers before a layer run."""
    status_reports: list[StatusReport] = field(default_factory=list)
    open_event_ids: Optional[set[str]] = None


class MatchLifecycleManager:
    def __init__(
        self,
        matches: MatchRepository,
        teams: TeamRepository,
        redis: RedisManager,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._settings = settings or get_settings()
        self._matches = matches
        self._teams = teams
        self._redis = redis
        self._clock = clock

    # ── Layer runs ──────────────────────────────────────────────────────
    async def run_layer(self, layer: LifecycleLayer, evidence: LayerEvidence | None = None) -> LayerReport:
        job = f"lifecycle:{layer.value}"
        token = uuid.uuid4().hex
        if not await self._redis.try_acquire_job(job, token, self._settings.job_lock_ttl_s):
            JOBS_SKIPPED.labels(job=job).inc()
            logger.info("lifecycle_layer_skipped", layer=layer.value, reason="already_running")
            return LayerReport(layer=layer.value, skipped=True)
        try:
            return await self._evaluate_all(layer, evidence or LayerEvidence())
        finally:
            await self._redis.release_job(job, token)

    async def _evaluate_all(self, layer: LifecycleLayer, evidence: LayerEvidence) -> LayerReport:
        report = LayerReport(layer=layer.value)
        now = self._clock()
        matches = await self._matches.load_matches(MatchFilter(statuses=list(_UNFINISHED)))
        coverage = await self._coverage_map(matches)
        reports_by_id, reports_by_pair = _index_reports(evidence.status_reports)

        for match in matches:
            report.evaluated += 1

            def decide(current: CanonicalMatch) -> Optional[TransitionDecision]:
                return self._decide(layer, current, now, evidence, coverage, reports_by_id, reports_by_pair)

            try:
                record = await self._apply(match, decide, layer.value)
            except Exception as exc:
                report.failed += 1
                await self._record_failure(match, layer, exc)
                continue

            await self._redis.reset_failures(match.event_id)
            if record is not None:
                report.transitioned += 1
                report.transitions.append(record)

        logger.info(
            "lifecycle_layer_complete",
            layer=layer.value,
            evaluated=report.evaluated,
            transitioned=report.transitioned,
            failed=report.failed,
        )
        return report

    def _decide(
        self,
        layer: LifecycleLayer,
        match: CanonicalMatch,
        now: datetime,
        evidence: LayerEvidence,
        coverage: dict[Optional[int], LeagueCoverage],
        reports_by_id: dict[tuple[str, str], StatusReport],
        reports_by_pair: dict[str, list[StatusReport]],
    ) -> Optional[TransitionDecision]:
        s = self._settings

        def by_provider_status() -> Optional[TransitionDecision]:
            reports = self._reports_for(match, reports_by_id, reports_by_pair)
            return provider_status_decision(match, reports, coverage.get(match.league_id, LeagueCoverage.REGIONAL))

        def by_primary_markets() -> Optional[TransitionDecision]:
            return primary_markets_decision(match, evidence.open_event_ids, s.primary_provider)

        def by_time() -> Optional[TransitionDecision]:
            return time_cleanup_decision(
                match, now, s.duration_for_sport(match.sport_id), s.lifecycle_quiet_period_minutes
            )

        def by_staleness() -> Optional[TransitionDecision]:
            return staleness_decision(match, now, s.lifecycle_stale_hours)

        if layer == LifecycleLayer.PROVIDER_STATUS:
            return by_provider_status()
        if layer == LifecycleLayer.PRIMARY_MARKETS:
            return by_primary_markets()
        if layer == LifecycleLayer.TIME_CLEANUP:
            return by_time()
        if layer == LifecycleLayer.STALENESS_PURGE:
            return by_staleness()
        return strictest([by_provider_status(), by_primary_markets(), by_time(), by_staleness()])

    def _reports_for(
        self,
        match: CanonicalMatch,
        reports_by_id: dict[tuple[str, str], StatusReport],
        reports_by_pair: dict[str, list[StatusReport]],
    ) -> list[StatusReport]:
        """Secondary-provider reports for this fixture, by event id first, then by teams and time."""
        primary = self._settings.primary_provider
        found: dict[str, StatusReport] = {}
        for provider, provider_event_id in match.provider_event_ids.items():
            hit = reports_by_id.get((provider, provider_event_id))
            if hit is not None and provider != primary:
                found[provider] = hit

        window = timedelta(minutes=self._settings.aggregation_window_minutes)
        pair = pair_key(
            match.sport_id,
            side_key(match.home_team_id, match.home_team),
            side_key(match.away_team_id, match.away_team),
        )
        for candidate in reports_by_pair.get(pair, []):
            if candidate.provider == primary or candidate.provider in found:
                continue
            if abs(candidate.scheduled_start - match.scheduled_start) <= window:
                found[candidate.provider] = candidate
        return list(found.values())

    async def _coverage_map(self, matches: list[CanonicalMatch]) -> dict[Optional[int], LeagueCoverage]:
        coverage: dict[Optional[int], LeagueCoverage] = {}
        for match in matches:
            if match.league_id in coverage:
                continue
            league = await self._teams.get_league(match.league_id) if match.league_id is not None else None
            if league is not None:
                coverage[match.league_id] = league.coverage
            else:
                coverage[match.league_id] = coverage_for_league_name(match.league_name)
        return coverage

    # ── Conditional writes ──────────────────────────────────────────────
    async def _apply(
        self,
        match: CanonicalMatch,
        decide: Decide,
        source: str,
        actor: Optional[str] = None,
        allow_loosen: bool = False,
    ) -> Optional[TransitionRecord]:
        current = match
        for _ in range(self._settings.lifecycle_conflict_retries):
            decision = decide(current)
            if decision is None or decision.to_status == current.status:
                return None
            if not allow_loosen and not tightens(current.status, decision.to_status):
                return None

            updated = await self._matches.update_status(
                current.event_id, current.version, decision.to_status, decision.reason, self._clock()
            )
            if updated is not None:
                return await self._after_transition(current, updated, decision, source, actor)

            PERSISTENCE_CONFLICTS.labels(operation="update_status").inc()
            logger.info("lifecycle_write_conflict", event_id=current.event_id, version=current.version)
            reread = await self._matches.get_match(current.event_id)
            if reread is None:
                return None
            current = reread
        raise PersistenceConflict(current.event_id, current.version)

    async def _after_transition(
        self,
        before: CanonicalMatch,
        after: CanonicalMatch,
        decision: TransitionDecision,
        source: str,
        actor: Optional[str],
    ) -> TransitionRecord:
        record = TransitionRecord(
            event_id=before.event_id,
            from_status=before.status,
            to_status=decision.to_status,
            source=source,
            reason=decision.reason,
            evidence=decision.evidence,
            actor=actor,
            at=after.last_updated,
        )
        await self._matches.record_transition(record)
        await self._redis.invalidate_match(before.event_id, before.sport_id)
        LIFECYCLE_TRANSITIONS.labels(source=source, to_status=decision.to_status.value).inc()
        logger.info(
            "match_transitioned",
            event_id=before.event_id,
            from_status=before.status.value,
            to_status=decision.to_status.value,
            source=source,
            reason=decision.reason,
        )
        return record

    async def _record_failure(self, match: CanonicalMatch, layer: LifecycleLayer, exc: Exception) -> None:
        failure = exc if isinstance(exc, LayerEvaluationFailure) else LayerEvaluationFailure(
            match.event_id, layer.value, f"{type(exc).__name__}: {exc}",
            evidence={"status": match.status.value, "version": match.version},
        )
        LAYER_FAILURES.labels(layer=layer.value).inc()
        logger.error(
            "lifecycle_evaluation_failed",
            event_id=match.event_id,
            layer=layer.value,
            reason=failure.reason,
            exc_info=exc,
        )
        count = await self._redis.record_failure(
            {
                "event_id": failure.event_id,
                "layer": failure.layer,
                "reason": failure.reason,
                "evidence": failure.evidence,
                "at": self._clock().isoformat(),
            }
        )
        if count >= self._settings.lifecycle_failure_alert_threshold:
            logger.warning(
                "match_evaluation_failing_repeatedly",
                event_id=match.event_id,
                layer=layer.value,
                consecutive_failures=count,
            )

    # ── Sync hooks ──────────────────────────────────────────────────────
    def status_for_sync(
        self, stored: CanonicalMatch, incoming: CanonicalMatch
    ) -> tuple[LifecycleStatus, Optional[TransitionDecision]]:
        """
        Status to persist when a fresh aggregation lands on a stored match.
        Returns the status and, when it changes, the decision to audit.
        """
        if stored.status == LifecycleStatus.FINISHED:
            return stored.status, None
        if stored.status == LifecycleStatus.SOFT_FINISHED:
            decision = restore_decision(stored, incoming, self._settings.primary_provider)
            if decision is None:
                return stored.status, None
            return decision.to_status, decision
        if stored.status == LifecycleStatus.PREMATCH and incoming.status == LifecycleStatus.LIVE:
            return LifecycleStatus.LIVE, TransitionDecision(
                to_status=LifecycleStatus.LIVE,
                reason="provider reports live play",
                evidence={"providers": incoming.providers},
            )
        return stored.status, None

    async def record_sync_transition(
        self, before: CanonicalMatch, after: CanonicalMatch, decision: TransitionDecision
    ) -> TransitionRecord:
        return await self._after_transition(before, after, decision, TransitionSource.AGGREGATION.value, None)

    # ── Risk & review ───────────────────────────────────────────────────
    async def review_candidates(self, sport_id: Optional[int] = None, limit: int = 100) -> list[RiskAssessment]:
        """Unfinished matches at medium risk or worse, most severe and oldest first."""
        now = self._clock()
        matches = await self._matches.load_matches(MatchFilter(sport_id=sport_id, statuses=list(_UNFINISHED)))
        last_updated = {m.event_id: m.last_updated for m in matches}
        flagged = [
            assessment
            for assessment in (assess_risk(m, now) for m in matches)
            if assessment.risk.severity >= RiskLevel.MEDIUM.severity
        ]
        flagged.sort(key=lambda a: (-a.risk.severity, last_updated[a.event_id]))
        return flagged[:limit]

    # ── Admin ───────────────────────────────────────────────────────────
    async def force_status(
        self, event_id: str, status: LifecycleStatus, reason: str, actor: str
    ) -> Optional[TransitionRecord]:
        """Set any status regardless of the state machine; audited."""
        match = await self._matches.get_match(event_id)
        if match is None:
            raise MatchNotFound(event_id)
        logger.warning(
            "match_status_forced",
            event_id=event_id,
            from_status=match.status.value,
            to_status=status.value,
            actor=actor,
            reason=reason,
        )
        decision = TransitionDecision(to_status=status, reason=reason, evidence={"override": True})
        return await self._apply(
            match, lambda _current: decision, TransitionSource.ADMIN.value, actor=actor, allow_loosen=True
        )

    async def remove_match(self, event_id: str, reason: str, actor: str) -> None:
        match = await self._matches.get_match(event_id)
        if match is None:
            raise MatchNotFound(event_id)
        await self._matches.record_transition(
            TransitionRecord(
                event_id=event_id,
                from_status=match.status,
                to_status=match.status,
                source=TransitionSource.ADMIN.value,
                reason=f"removed: {reason}",
                evidence={"removed": True},
                actor=actor,
                at=self._clock(),
            )
        )
        await self._matches.delete_match(event_id)
        await self._redis.invalidate_match(event_id, match.sport_id)
        logger.warning("match_removed", event_id=event_id, actor=actor, reason=reason)


def _index_reports(
    reports: list[StatusReport],
) -> tuple[dict[tuple[str, str], StatusReport], dict[str, list[StatusReport]]]:
    by_id: dict[tuple[str, str], StatusReport] = {}
    by_pair: dict[str, list[StatusReport]] = {}
    for report in reports:
        by_id[(report.provider, report.provider_event_id)] = report
        by_pair.setdefault(report.pair, []).append(report)
    return by_id, by_pair
