"""
Tests for lifecycle layers, risk scoring, restores and admin overrides.

Run: pytest backend/tests/test_lifecycle.py -v
"""
from __future__ import annotations

from datetime import timedelta

import pytest

from shared.config import Settings
from shared.errors import MatchNotFound
from shared.models.domain import TransitionDecision
from shared.models.enums import (
    BettingAvailability,
    EventStatus,
    LifecycleLayer,
    LifecycleStatus,
    RiskLevel,
)
from shared.utils.redis_manager import FAILURE_COUNT_KEY
from aggregation.engine import pair_key, side_key
from aggregation.status import normalize_status
from lifecycle.manager import LayerEvidence, MatchLifecycleManager
from lifecycle.risk import assess_risk
from lifecycle.rules import StatusReport, strictest, tightens

from tests.conftest import (
    NOW,
    FakeClock,
    FakeMatchRepository,
    FakeRedis,
    FakeTeamRepository,
    make_match,
)


@pytest.fixture
def manager(
    match_repo: FakeMatchRepository,
    team_repo: FakeTeamRepository,
    fake_redis: FakeRedis,
    settings: Settings,
    clock: FakeClock,
) -> MatchLifecycleManager:
    return MatchLifecycleManager(match_repo, team_repo, fake_redis, settings, clock)


def _report(provider: str, event_id: str, status: EventStatus, **fields: object) -> StatusReport:
    defaults: dict[str, object] = {
        "sport_id": 1,
        "pair": pair_key(1, side_key(1, "Arsenal"), side_key(2, "Chelsea")),
        "scheduled_start": NOW - timedelta(hours=1),
    }
    defaults.update(fields)
    return StatusReport(provider=provider, provider_event_id=event_id, status=status, **defaults)  # type: ignore[arg-type]


# ── Rule helpers ────────────────────────────────────────────────────────

def test_rules_only_tighten() -> None:
    assert tightens(LifecycleStatus.LIVE, LifecycleStatus.SOFT_FINISHED)
    assert tightens(LifecycleStatus.SOFT_FINISHED, LifecycleStatus.FINISHED)
    assert not tightens(LifecycleStatus.SOFT_FINISHED, LifecycleStatus.LIVE)
    assert not tightens(LifecycleStatus.PREMATCH, LifecycleStatus.LIVE)


def test_strictest_prefers_finished() -> None:
    soft = TransitionDecision(to_status=LifecycleStatus.SOFT_FINISHED, reason="soft")
    hard = TransitionDecision(to_status=LifecycleStatus.FINISHED, reason="hard")
    assert strictest([None, soft, hard]) is hard
    assert strictest([soft, None]) is soft
    assert strictest([None, None]) is None


# ── Risk ────────────────────────────────────────────────────────────────

class TestRisk:
    def test_fifty_hours_without_update_is_critical(self) -> None:
        match = make_match(last_updated=NOW - timedelta(hours=50), scheduled_start=NOW - timedelta(hours=52))
        assert assess_risk(match, NOW).risk == RiskLevel.CRITICAL

    def test_thirty_hours_is_high(self) -> None:
        match = make_match(last_updated=NOW - timedelta(hours=30))
        assert assess_risk(match, NOW).risk == RiskLevel.HIGH

    def test_long_past_start_is_medium(self) -> None:
        match = make_match(scheduled_start=NOW - timedelta(hours=5), last_updated=NOW - timedelta(hours=1))
        assessment = assess_risk(match, NOW)
        assert assessment.risk == RiskLevel.MEDIUM
        assert assessment.reasons

    def test_bettable_without_updates_is_medium(self) -> None:
        match = make_match(
            scheduled_start=NOW + timedelta(hours=3),
            last_updated=NOW - timedelta(hours=7),
            betting_availability=BettingAvailability.AVAILABLE_FOR_BETTING,
        )
        assert assess_risk(match, NOW).risk == RiskLevel.MEDIUM

    def test_fresh_match_is_low(self) -> None:
        assert assess_risk(make_match(), NOW).risk == RiskLevel.LOW


# ── Staleness purge ─────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_stale_match_is_finished(
    manager: MatchLifecycleManager, match_repo: FakeMatchRepository, fake_redis: FakeRedis
) -> None:
    match_repo.add(
        make_match(
            "stale",
            status=LifecycleStatus.LIVE,
            last_updated=NOW - timedelta(hours=50),
            scheduled_start=NOW - timedelta(hours=52),
        )
    )
    match_repo.add(make_match("fresh"))

    report = await manager.run_layer(LifecycleLayer.STALENESS_PURGE)

    assert report.evaluated == 2
    assert report.transitioned == 1
    stored = match_repo.rows["stale"]
    assert stored.status == LifecycleStatus.FINISHED
    assert stored.version == 2
    assert stored.betting_availability == BettingAvailability.UNAVAILABLE
    assert match_repo.rows["fresh"].status == LifecycleStatus.PREMATCH
    (record,) = match_repo.transitions
    assert record.source == "staleness_purge"
    assert record.from_status == LifecycleStatus.LIVE
    assert fake_redis.invalidated == ["stale"]


# ── Provider status ─────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_major_league_terminal_report_finishes(
    manager: MatchLifecycleManager, match_repo: FakeMatchRepository
) -> None:
    match_repo.add(
        make_match(
            league_id=10,
            status=LifecycleStatus.LIVE,
            providers=["pinnacle", "odds_feed"],
            provider_event_ids={"pinnacle": "pin-1", "odds_feed": "of-1"},
        )
    )
    evidence = LayerEvidence(status_reports=[_report("odds_feed", "of-1", EventStatus.FINISHED)])

    report = await manager.run_layer(LifecycleLayer.PROVIDER_STATUS, evidence)

    assert report.transitioned == 1
    assert match_repo.rows["m-1"].status == LifecycleStatus.FINISHED


@pytest.mark.asyncio
@pytest.mark.parametrize("code", ["SUSP", "INT", "HT", "ET"])
async def test_in_play_interruption_keeps_major_league_match_live(
    manager: MatchLifecycleManager, match_repo: FakeMatchRepository, code: str
) -> None:
    match_repo.add(
        make_match(
            league_id=10,
            status=LifecycleStatus.LIVE,
            providers=["pinnacle", "odds_feed"],
            provider_event_ids={"pinnacle": "pin-1", "odds_feed": "of-1"},
        )
    )
    evidence = LayerEvidence(status_reports=[_report("odds_feed", "of-1", normalize_status(code))])

    report = await manager.run_layer(LifecycleLayer.PROVIDER_STATUS, evidence)

    assert report.transitioned == 0
    assert match_repo.rows["m-1"].status == LifecycleStatus.LIVE


@pytest.mark.asyncio
async def test_regional_league_terminal_report_soft_finishes(
    manager: MatchLifecycleManager, match_repo: FakeMatchRepository
) -> None:
    match_repo.add(
        make_match(
            league_id=20,
            status=LifecycleStatus.LIVE,
            providers=["pinnacle", "odds_feed"],
            provider_event_ids={"pinnacle": "pin-1", "odds_feed": "of-1"},
        )
    )
    evidence = LayerEvidence(status_reports=[_report("odds_feed", "of-1", EventStatus.FINISHED)])

    await manager.run_layer(LifecycleLayer.PROVIDER_STATUS, evidence)

    assert match_repo.rows["m-1"].status == LifecycleStatus.SOFT_FINISHED


@pytest.mark.asyncio
async def test_league_without_record_uses_name_for_coverage(
    manager: MatchLifecycleManager, match_repo: FakeMatchRepository
) -> None:
    match_repo.add(make_match(league_id=None, league_name="English Premier League"))
    evidence = LayerEvidence(status_reports=[_report("odds_api", "oa-77", EventStatus.CANCELLED)])

    await manager.run_layer(LifecycleLayer.PROVIDER_STATUS, evidence)

    # matched on teams and start time, not on a shared event id
    assert match_repo.rows["m-1"].status == LifecycleStatus.FINISHED


@pytest.mark.asyncio
async def test_primary_provider_reports_are_ignored(
    manager: MatchLifecycleManager, match_repo: FakeMatchRepository
) -> None:
    match_repo.add(make_match(league_id=10, provider_event_ids={"pinnacle": "pin-1"}))
    evidence = LayerEvidence(status_reports=[_report("pinnacle", "pin-1", EventStatus.FINISHED)])

    report = await manager.run_layer(LifecycleLayer.PROVIDER_STATUS, evidence)

    assert report.transitioned == 0


@pytest.mark.asyncio
async def test_report_for_other_kickoff_is_ignored(
    manager: MatchLifecycleManager, match_repo: FakeMatchRepository
) -> None:
    match_repo.add(make_match(league_id=10))
    evidence = LayerEvidence(
        status_reports=[
            _report("odds_feed", "of-5", EventStatus.FINISHED, scheduled_start=NOW - timedelta(days=7))
        ]
    )

    report = await manager.run_layer(LifecycleLayer.PROVIDER_STATUS, evidence)

    assert report.transitioned == 0


# ── Primary markets ─────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_closed_primary_markets_soft_finish(
    manager: MatchLifecycleManager, match_repo: FakeMatchRepository
) -> None:
    match_repo.add(make_match("open", provider_event_ids={"pinnacle": "pin-open"}))
    match_repo.add(make_match("closed", provider_event_ids={"pinnacle": "pin-closed"}))
    match_repo.add(make_match("secondary", providers=["odds_feed"], provider_event_ids={"odds_feed": "of-1"}))

    report = await manager.run_layer(
        LifecycleLayer.PRIMARY_MARKETS, LayerEvidence(open_event_ids={"pin-open"})
    )

    assert report.transitioned == 1
    assert match_repo.rows["closed"].status == LifecycleStatus.SOFT_FINISHED
    assert match_repo.rows["open"].status == LifecycleStatus.PREMATCH
    assert match_repo.rows["secondary"].status == LifecycleStatus.PREMATCH


@pytest.mark.asyncio
async def test_missing_primary_evidence_changes_nothing(
    manager: MatchLifecycleManager, match_repo: FakeMatchRepository
) -> None:
    match_repo.add(make_match())
    report = await manager.run_layer(LifecycleLayer.PRIMARY_MARKETS, LayerEvidence(open_event_ids=None))
    assert report.transitioned == 0


# ── Time cleanup ────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_quiet_match_past_expected_end_soft_finishes(
    manager: MatchLifecycleManager, match_repo: FakeMatchRepository
) -> None:
    # soccer runs 120 minutes; quiet period is 60 minutes
    match_repo.add(
        make_match("quiet", scheduled_start=NOW - timedelta(hours=3), last_updated=NOW - timedelta(minutes=90))
    )
    match_repo.add(
        make_match("chatty", scheduled_start=NOW - timedelta(hours=3), last_updated=NOW - timedelta(minutes=10))
    )
    match_repo.add(make_match("early", scheduled_start=NOW - timedelta(minutes=100), last_updated=NOW - timedelta(hours=2)))

    await manager.run_layer(LifecycleLayer.TIME_CLEANUP)

    assert match_repo.rows["quiet"].status == LifecycleStatus.SOFT_FINISHED
    assert match_repo.rows["chatty"].status == LifecycleStatus.PREMATCH
    assert match_repo.rows["early"].status == LifecycleStatus.PREMATCH


# ── Comprehensive ───────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_comprehensive_applies_strictest_decision(
    manager: MatchLifecycleManager, match_repo: FakeMatchRepository
) -> None:
    match_repo.add(
        make_match(
            league_id=20,
            scheduled_start=NOW - timedelta(hours=60),
            last_updated=NOW - timedelta(hours=49),
            provider_event_ids={"pinnacle": "pin-1", "odds_feed": "of-1"},
            providers=["pinnacle", "odds_feed"],
        )
    )
    evidence = LayerEvidence(
        status_reports=[
            _report("odds_feed", "of-1", EventStatus.FINISHED, scheduled_start=NOW - timedelta(hours=60))
        ],
        open_event_ids=set(),
    )

    report = await manager.run_layer(LifecycleLayer.COMPREHENSIVE, evidence)

    assert match_repo.rows["m-1"].status == LifecycleStatus.FINISHED
    assert report.transitions[0].source == "comprehensive"


@pytest.mark.asyncio
async def test_soft_finished_only_moves_forward(
    manager: MatchLifecycleManager, match_repo: FakeMatchRepository
) -> None:
    match_repo.add(make_match(status=LifecycleStatus.SOFT_FINISHED, last_updated=NOW - timedelta(hours=49)))

    await manager.run_layer(LifecycleLayer.STALENESS_PURGE)
    assert match_repo.rows["m-1"].status == LifecycleStatus.FINISHED

    report = await manager.run_layer(LifecycleLayer.COMPREHENSIVE, LayerEvidence(open_event_ids={"pin-m-1"}))
    assert report.evaluated == 0


# ── Concurrency and failures ────────────────────────────────────────────

@pytest.mark.asyncio
async def test_conflicting_write_is_retried(
    manager: MatchLifecycleManager, match_repo: FakeMatchRepository
) -> None:
    match_repo.add(make_match(last_updated=NOW - timedelta(hours=50)))
    match_repo.inject_conflicts = 1

    report = await manager.run_layer(LifecycleLayer.STALENESS_PURGE)

    assert report.transitioned == 1
    assert match_repo.rows["m-1"].status == LifecycleStatus.FINISHED
    assert match_repo.rows["m-1"].version == 3


@pytest.mark.asyncio
async def test_persistent_conflict_is_reported_as_failure(
    manager: MatchLifecycleManager, match_repo: FakeMatchRepository, fake_redis: FakeRedis
) -> None:
    match_repo.add(make_match(last_updated=NOW - timedelta(hours=50)))
    match_repo.inject_conflicts = 10

    report = await manager.run_layer(LifecycleLayer.STALENESS_PURGE)

    assert report.failed == 1
    assert match_repo.rows["m-1"].status == LifecycleStatus.PREMATCH
    assert fake_redis.failures[0]["event_id"] == "m-1"


@pytest.mark.asyncio
async def test_failing_match_does_not_abort_the_sweep(
    manager: MatchLifecycleManager, match_repo: FakeMatchRepository, fake_redis: FakeRedis
) -> None:
    match_repo.add(make_match("broken", last_updated=NOW - timedelta(hours=50)))
    match_repo.add(make_match("healthy", last_updated=NOW - timedelta(hours=50)))
    match_repo.broken_ids.add("broken")

    report = await manager.run_layer(LifecycleLayer.STALENESS_PURGE)

    assert report.failed == 1
    assert report.transitioned == 1
    assert match_repo.rows["healthy"].status == LifecycleStatus.FINISHED
    failure = fake_redis.failures[0]
    assert failure["event_id"] == "broken"
    assert failure["layer"] == "staleness_purge"
    assert failure["evidence"]["status"] == "prematch"


@pytest.mark.asyncio
async def test_repeated_failures_are_counted_until_recovery(
    manager: MatchLifecycleManager, match_repo: FakeMatchRepository, fake_redis: FakeRedis
) -> None:
    match_repo.add(make_match("broken", last_updated=NOW - timedelta(hours=50)))
    match_repo.broken_ids.add("broken")
    count_key = FAILURE_COUNT_KEY.format(event_id="broken")

    for _ in range(3):
        await manager.run_layer(LifecycleLayer.STALENESS_PURGE)
    assert fake_redis.failure_counts[count_key] == 3

    match_repo.broken_ids.clear()
    await manager.run_layer(LifecycleLayer.STALENESS_PURGE)
    assert count_key not in fake_redis.failure_counts


@pytest.mark.asyncio
async def test_failure_count_from_earlier_process_is_cleared_on_success(
    match_repo: FakeMatchRepository,
    team_repo: FakeTeamRepository,
    fake_redis: FakeRedis,
    settings: Settings,
    clock: FakeClock,
) -> None:
    match_repo.add(make_match("recovered"))
    count_key = FAILURE_COUNT_KEY.format(event_id="recovered")
    fake_redis.failure_counts[count_key] = 4
    restarted = MatchLifecycleManager(match_repo, team_repo, fake_redis, settings, clock)

    report = await restarted.run_layer(LifecycleLayer.TIME_CLEANUP)

    assert report.failed == 0
    assert count_key not in fake_redis.failure_counts


@pytest.mark.asyncio
async def test_layer_already_running_is_skipped(
    manager: MatchLifecycleManager, match_repo: FakeMatchRepository, fake_redis: FakeRedis
) -> None:
    match_repo.add(make_match(last_updated=NOW - timedelta(hours=50)))
    fake_redis.jobs["lifecycle:staleness_purge"] = "another-instance"

    report = await manager.run_layer(LifecycleLayer.STALENESS_PURGE)

    assert report.skipped is True
    assert match_repo.rows["m-1"].status == LifecycleStatus.PREMATCH
    assert fake_redis.jobs["lifecycle:staleness_purge"] == "another-instance"


@pytest.mark.asyncio
async def test_job_marker_is_released_after_run(
    manager: MatchLifecycleManager, fake_redis: FakeRedis
) -> None:
    await manager.run_layer(LifecycleLayer.TIME_CLEANUP)
    assert fake_redis.jobs == {}


# ── Sync restores ───────────────────────────────────────────────────────

class TestStatusForSync:
    def test_soft_finished_restored_by_live_play(self, manager: MatchLifecycleManager) -> None:
        stored = make_match(status=LifecycleStatus.SOFT_FINISHED)
        incoming = make_match(event_status=EventStatus.LIVE, status=LifecycleStatus.LIVE)

        status, decision = manager.status_for_sync(stored, incoming)

        assert status == LifecycleStatus.LIVE
        assert decision is not None

    def test_soft_finished_restored_by_primary_markets(self, manager: MatchLifecycleManager) -> None:
        stored = make_match(status=LifecycleStatus.SOFT_FINISHED)
        incoming = make_match(has_open_markets=True, open_market_providers=["pinnacle"])

        status, _ = manager.status_for_sync(stored, incoming)

        assert status == LifecycleStatus.PREMATCH

    def test_secondary_markets_alone_do_not_restore(self, manager: MatchLifecycleManager) -> None:
        stored = make_match(status=LifecycleStatus.SOFT_FINISHED)
        incoming = make_match(
            has_open_markets=True,
            providers=["odds_feed"],
            provider_event_ids={"odds_feed": "x"},
            open_market_providers=["odds_feed"],
        )

        status, decision = manager.status_for_sync(stored, incoming)

        assert status == LifecycleStatus.SOFT_FINISHED
        assert decision is None

    def test_closed_primary_beside_open_secondary_does_not_restore(self, manager: MatchLifecycleManager) -> None:
        stored = make_match(status=LifecycleStatus.SOFT_FINISHED)
        incoming = make_match(
            has_open_markets=True,
            providers=["pinnacle", "odds_feed"],
            provider_event_ids={"pinnacle": "pin-1", "odds_feed": "of-1"},
            open_market_providers=["odds_feed"],
        )

        status, decision = manager.status_for_sync(stored, incoming)

        assert status == LifecycleStatus.SOFT_FINISHED
        assert decision is None

    def test_finished_is_never_restored(self, manager: MatchLifecycleManager) -> None:
        stored = make_match(status=LifecycleStatus.FINISHED)
        incoming = make_match(event_status=EventStatus.LIVE, status=LifecycleStatus.LIVE, has_open_markets=True)

        status, decision = manager.status_for_sync(stored, incoming)

        assert status == LifecycleStatus.FINISHED
        assert decision is None

    def test_prematch_goes_live(self, manager: MatchLifecycleManager) -> None:
        status, decision = manager.status_for_sync(
            make_match(), make_match(event_status=EventStatus.LIVE, status=LifecycleStatus.LIVE)
        )
        assert status == LifecycleStatus.LIVE
        assert decision is not None

    def test_live_is_not_demoted_by_sync(self, manager: MatchLifecycleManager) -> None:
        status, decision = manager.status_for_sync(make_match(status=LifecycleStatus.LIVE), make_match())
        assert status == LifecycleStatus.LIVE
        assert decision is None


# ── Review and admin ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_review_candidates_are_ordered_by_severity(
    manager: MatchLifecycleManager, match_repo: FakeMatchRepository
) -> None:
    match_repo.add(make_match("low"))
    match_repo.add(make_match("high", last_updated=NOW - timedelta(hours=30)))
    match_repo.add(make_match("critical", last_updated=NOW - timedelta(hours=50)))
    match_repo.add(make_match("medium", scheduled_start=NOW - timedelta(hours=6)))

    candidates = await manager.review_candidates()

    assert [c.event_id for c in candidates] == ["critical", "high", "medium"]
    assert candidates[0].risk == RiskLevel.CRITICAL


@pytest.mark.asyncio
async def test_force_status_can_reopen_a_finished_match(
    manager: MatchLifecycleManager, match_repo: FakeMatchRepository, fake_redis: FakeRedis
) -> None:
    match_repo.add(make_match(status=LifecycleStatus.FINISHED))

    record = await manager.force_status("m-1", LifecycleStatus.LIVE, "finished by mistake", "ops@example.com")

    assert record is not None
    assert record.source == "admin"
    assert record.actor == "ops@example.com"
    assert match_repo.rows["m-1"].status == LifecycleStatus.LIVE
    assert match_repo.transitions[-1].reason == "finished by mistake"
    assert fake_redis.invalidated == ["m-1"]


@pytest.mark.asyncio
async def test_force_status_to_same_status_is_a_no_op(
    manager: MatchLifecycleManager, match_repo: FakeMatchRepository
) -> None:
    match_repo.add(make_match())
    assert await manager.force_status("m-1", LifecycleStatus.PREMATCH, "noop", "ops") is None
    assert match_repo.transitions == []


@pytest.mark.asyncio
async def test_force_status_unknown_match(manager: MatchLifecycleManager) -> None:
    with pytest.raises(MatchNotFound):
        await manager.force_status("missing", LifecycleStatus.FINISHED, "x", "ops")


@pytest.mark.asyncio
async def test_remove_match_is_audited(
    manager: MatchLifecycleManager, match_repo: FakeMatchRepository
) -> None:
    match_repo.add(make_match())

    await manager.remove_match("m-1", "duplicate fixture", "ops")

    assert "m-1" not in match_repo.rows
    (record,) = match_repo.transitions
    assert record.evidence == {"removed": True}
    assert record.actor == "ops"
