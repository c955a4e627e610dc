"""
Risk scoring for matches that may be stuck in a non-final state.

Purely observational: a risk level never changes a match's status.
"""
from __future__ import annotations

from datetime import datetime

from shared.models.domain import CanonicalMatch, RiskAssessment
from shared.models.enums import BettingAvailability, LifecycleStatus, RiskLevel

CRITICAL_HOURS_SINCE_UPDATE = 48
HIGH_HOURS_SINCE_UPDATE = 24
MEDIUM_HOURS_PAST_START = 4
MEDIUM_BETTABLE_HOURS_SINCE_UPDATE = 6
MEDIUM_LIVE_HOURS_SINCE_UPDATE = 12


def assess_risk(match: CanonicalMatch, now: datetime) -> RiskAssessment:
    since_update = (now - match.last_updated).total_seconds() / 3600
    past_start = (now - match.scheduled_start).total_seconds() / 3600

    reasons: list[str] = []
    if since_update > CRITICAL_HOURS_SINCE_UPDATE:
        risk = RiskLevel.CRITICAL
        reasons.append(f"no update for {since_update:.1f}h")
    elif since_update > HIGH_HOURS_SINCE_UPDATE:
        risk = RiskLevel.HIGH
        reasons.append(f"no update for {since_update:.1f}h")
    else:
        if past_start > MEDIUM_HOURS_PAST_START:
            reasons.append(f"{past_start:.1f}h past scheduled start")
        if (
            match.betting_availability == BettingAvailability.AVAILABLE_FOR_BETTING
            and since_update > MEDIUM_BETTABLE_HOURS_SINCE_UPDATE
        ):
            reasons.append(f"open for betting without update for {since_update:.1f}h")
        if match.status == LifecycleStatus.LIVE and since_update > MEDIUM_LIVE_HOURS_SINCE_UPDATE:
            reasons.append(f"live without update for {since_update:.1f}h")
        risk = RiskLevel.MEDIUM if reasons else RiskLevel.LOW

    return RiskAssessment(
        event_id=match.event_id,
        risk=risk,
        status=match.status,
        hours_since_update=round(since_update, 2),
        hours_past_start=round(past_start, 2),
        reasons=reasons,
    )
