"""
Per-layer transition rules.

Every rule looks at one match plus the evidence its layer gathered and
returns a TransitionDecision or None. Rules only ever tighten a status:
prematch/live → soft_finished → finished.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from shared.models.domain import CanonicalMatch, TransitionDecision
from shared.models.enums import EventStatus, LeagueCoverage, LifecycleStatus

_RANK = {
    LifecycleStatus.PREMATCH: 0,
    LifecycleStatus.LIVE: 0,
    LifecycleStatus.SOFT_FINISHED: 1,
    LifecycleStatus.FINISHED: 2,
}


def tightens(current: LifecycleStatus, target: LifecycleStatus) -> bool:
    return _RANK[target] > _RANK[current]


@dataclass(frozen=True)
class StatusReport:
    """A provider's current status for one of its events."""
    provider: str
    provider_event_id: str
    sport_id: int
    pair: str
    scheduled_start: datetime
    status: EventStatus


def provider_status_decision(
    match: CanonicalMatch,
    reports: list[StatusReport],
    coverage: LeagueCoverage,
) -> Optional[TransitionDecision]:
    terminal = [r for r in reports if r.status.is_terminal]
    if not terminal or match.status == LifecycleStatus.FINISHED:
        return None

    evidence = {
        "coverage": coverage.value,
        "reports": [
            {"provider": r.provider, "provider_event_id": r.provider_event_id, "status": r.status.value}
            for r in terminal
        ],
    }
    providers = ", ".join(sorted({r.provider for r in terminal}))
    if coverage == LeagueCoverage.MAJOR:
        return TransitionDecision(
            to_status=LifecycleStatus.FINISHED,
            reason=f"terminal status from {providers} on major league",
            evidence=evidence,
        )
    if match.status.is_open:
        return TransitionDecision(
            to_status=LifecycleStatus.SOFT_FINISHED,
            reason=f"terminal status from {providers} on regional league",
            evidence=evidence,
        )
    return None


def primary_markets_decision(
    match: CanonicalMatch,
    open_event_ids: Optional[set[str]],
    primary_provider: str,
) -> Optional[TransitionDecision]:
    if open_event_ids is None or not match.status.is_open:
        return None
    primary_event_id = match.provider_event_ids.get(primary_provider)
    if primary_event_id is None or primary_event_id in open_event_ids:
        return None
    return TransitionDecision(
        to_status=LifecycleStatus.SOFT_FINISHED,
        reason=f"{primary_provider} no longer lists open markets",
        evidence={"primary_event_id": primary_event_id, "open_events": len(open_event_ids)},
    )


def time_cleanup_decision(
    match: CanonicalMatch,
    now: datetime,
    duration_minutes: int,
    quiet_minutes: int,
) -> Optional[TransitionDecision]:
    if not match.status.is_open:
        return None
    expected_end = match.scheduled_start + timedelta(minutes=duration_minutes)
    quiet_since = now - match.last_updated
    if now < expected_end or quiet_since < timedelta(minutes=quiet_minutes):
        return None
    return TransitionDecision(
        to_status=LifecycleStatus.SOFT_FINISHED,
        reason=f"past expected end ({duration_minutes}m) with no update for {int(quiet_since.total_seconds() // 60)}m",
        evidence={"expected_end": expected_end.isoformat(), "last_updated": match.last_updated.isoformat()},
    )


def staleness_decision(
    match: CanonicalMatch,
    now: datetime,
    stale_hours: int,
) -> Optional[TransitionDecision]:
    if match.status == LifecycleStatus.FINISHED:
        return None
    idle = now - match.last_updated
    if idle < timedelta(hours=stale_hours):
        return None
    return TransitionDecision(
        to_status=LifecycleStatus.FINISHED,
        reason=f"no update for {idle.total_seconds() / 3600:.1f}h",
        evidence={"last_updated": match.last_updated.isoformat()},
    )


def strictest(decisions: list[Optional[TransitionDecision]]) -> Optional[TransitionDecision]:
    """Pick the most final decision; earlier entries win ties."""
    best: Optional[TransitionDecision] = None
    for decision in decisions:
        if decision is not None and (best is None or tightens(best.to_status, decision.to_status)):
            best = decision
    return best


def restore_decision(
    stored: CanonicalMatch,
    incoming: CanonicalMatch,
    primary_provider: str,
) -> Optional[TransitionDecision]:
    """Re-open a soft-finished match when a fresh sync shows it is still running."""
    if stored.status != LifecycleStatus.SOFT_FINISHED or incoming.event_status.is_terminal:
        return None
    live = incoming.event_status == EventStatus.LIVE
    primary_open = primary_provider in incoming.open_market_providers
    if not (live or primary_open):
        return None
    target = LifecycleStatus.LIVE if live else LifecycleStatus.PREMATCH
    return TransitionDecision(
        to_status=target,
        reason="provider reports live play" if live else f"{primary_provider} lists open markets again",
        evidence={"providers": incoming.providers, "event_status": incoming.event_status.value},
    )
