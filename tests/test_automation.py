"""Tests for trigger evaluation and the automation plan."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from flywheel.engine.automation import build_automation_plan, build_triggers, clamp_horizon
from flywheel.engine.metrics import build_operating_plan
from flywheel.schemas.automation import QueueStatus, TriggerId, TriggerStatus
from flywheel.schemas.enums import OutcomeDecision, Priority, RunStatus
from flywheel.schemas.metrics import MetricsSnapshot
from flywheel.schemas.runs import Run
from flywheel.schemas.upstream import (
    DistributionChannel,
    IpReport,
    MerchCandidate,
    MerchReport,
    RoleAgentId,
    RoleBoard,
    RoleCard,
    SprintObjective,
    StoryContext,
)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


# ── Factories ──────────────────────────────────────────────────────


def _make_context(
    ip: float = 82,
    retention: float = 76,
    merch: float = 70,
    unowned: tuple[RoleAgentId, ...] = (),
) -> StoryContext:
    roster = [
        RoleCard(id=role, owner_user_id=None if role in unowned else f"user-{i}")
        for i, role in enumerate(RoleAgentId)
    ]
    return StoryContext(
        story_id="story-1",
        slug="moonlit",
        owner_user_id="user-0",
        ip_report=IpReport(overall_score=ip, retention_potential_score=retention),
        merch_report=MerchReport(
            overall_score=merch,
            candidates=[MerchCandidate(
                id="cand-1",
                title="Harbor Lantern Pin",
                channel_fit=[
                    DistributionChannel.INSTAGRAM_CAROUSEL,
                    DistributionChannel.X_THREAD,
                    DistributionChannel.NEWSLETTER_BLURB,
                    DistributionChannel.LINKEDIN_POST,
                ],
            )],
        ),
        role_board=RoleBoard(roster=roster),
    )


def _make_run(hours_ago: float, *, completed: bool = False, combined: float | None = None) -> Run:
    created = NOW - timedelta(hours=hours_ago)
    extra = {}
    if completed:
        extra = {
            "status": RunStatus.COMPLETED,
            "completed_at": created,
            "outcome_decision": OutcomeDecision.ITERATE,
            "outcome_metrics": MetricsSnapshot(combined_score=combined),
        }
    return Run(
        id=f"run-{hours_ago}",
        story_id="story-1",
        created_by_user_id="user-0",
        sprint_objective=SprintObjective.SHIP_NEXT_DROP,
        horizon_days=7,
        created_at=created,
        updated_at=created,
        **extra,
    )


def _plan(context: StoryContext, history=()):
    operating = build_operating_plan(context, now=NOW)
    return build_automation_plan(context, operating, list(history), now=NOW)


def _fired(triggers) -> set[TriggerId]:
    return {t.id for t in triggers if t.fired}


# ══════════════════════════════════════════════════════════════════
# Triggers
# ══════════════════════════════════════════════════════════════════


class TestTriggers:
    """Threshold triggers."""

    def test_thresholds_are_strict(self):
        metrics = MetricsSnapshot(
            combined_score=58, retention_potential=62, merch_signal=60, role_coverage=82,
        )
        triggers = build_triggers(metrics, None, now=NOW)
        assert _fired(triggers) == {TriggerId.STALE_EXECUTION_LOOP}

    def test_below_thresholds_fire(self):
        metrics = MetricsSnapshot(
            combined_score=57, retention_potential=61, merch_signal=59, role_coverage=81,
        )
        fired = _fired(build_triggers(metrics, _make_run(1), now=NOW))
        assert fired == {
            TriggerId.FOUNDATION_GAP,
            TriggerId.RETENTION_DRIFT,
            TriggerId.MERCH_SIGNAL_GAP,
            TriggerId.ROLE_COVERAGE_GAP,
        }

    def test_no_history_reports_seed_reason(self):
        stale = next(
            t for t in build_triggers(MetricsSnapshot(), None, now=NOW)
            if t.id == TriggerId.STALE_EXECUTION_LOOP
        )
        assert stale.status == TriggerStatus.FIRED
        assert stale.reason.startswith("No creator-economy run exists yet")
        assert stale.current == 0

    def test_open_run_goes_stale_after_a_day(self):
        metrics = MetricsSnapshot()
        assert TriggerId.STALE_EXECUTION_LOOP in _fired(
            build_triggers(metrics, _make_run(25), now=NOW)
        )
        assert TriggerId.STALE_EXECUTION_LOOP not in _fired(
            build_triggers(metrics, _make_run(23), now=NOW)
        )

    def test_completed_run_goes_stale_after_three_days(self):
        metrics = MetricsSnapshot()
        assert TriggerId.STALE_EXECUTION_LOOP not in _fired(
            build_triggers(metrics, _make_run(70, completed=True), now=NOW)
        )
        assert TriggerId.STALE_EXECUTION_LOOP in _fired(
            build_triggers(metrics, _make_run(73, completed=True), now=NOW)
        )

    def test_scale_window_needs_every_signal(self):
        metrics = MetricsSnapshot(
            combined_score=80, retention_potential=70, merch_signal=66, role_coverage=86,
        )
        assert TriggerId.SCALE_WINDOW in _fired(build_triggers(metrics, _make_run(1), now=NOW))
        weaker = metrics.model_copy(update={"merch_signal": 65})
        assert TriggerId.SCALE_WINDOW not in _fired(build_triggers(weaker, _make_run(1), now=NOW))

    def test_watching_severity(self):
        metrics = MetricsSnapshot(combined_score=90, retention_potential=90)
        triggers = {t.id: t for t in build_triggers(metrics, _make_run(1), now=NOW)}
        assert triggers[TriggerId.RETENTION_DRIFT].severity == Priority.MEDIUM
        assert triggers[TriggerId.FOUNDATION_GAP].severity == Priority.LOW


# ══════════════════════════════════════════════════════════════════
# Recommendations and queue
# ══════════════════════════════════════════════════════════════════


class TestAutomationPlan:
    """Recommendations, queue and notes."""

    def test_healthy_story_without_runs(self):
        plan = _plan(_make_context())
        assert [r.id for r in plan.recommendations] == [
            "close-feedback-loop", "scale-distribution-window",
        ]
        scale = plan.recommendation("scale-distribution-window")
        assert scale.execution.default_outcome_decision == OutcomeDecision.SCALE
        assert scale.execution.horizon_days == 9
        assert scale.execution.merch_channels == (
            DistributionChannel.INSTAGRAM_CAROUSEL,
            DistributionChannel.X_THREAD,
            DistributionChannel.NEWSLETTER_BLURB,
        )
        assert plan.trigger_summary.active == 2
        assert plan.trigger_summary.opportunity_active == 1

    def test_weak_story_fixed_order(self):
        plan = _plan(_make_context(ip=50, retention=55, merch=40, unowned=(
            RoleAgentId.VISUAL_ART_DIRECTOR,
        )))
        assert [r.id for r in plan.recommendations] == [
            "stabilize-core-loop",
            "run-merch-probe",
            "rebalance-role-ownership",
            "close-feedback-loop",
        ]
        stabilize = plan.recommendations[0]
        assert stabilize.trigger_ids == (TriggerId.FOUNDATION_GAP, TriggerId.RETENTION_DRIFT)
        assert stabilize.execution.sprint_objective == SprintObjective.STABILIZE_WORLD
        assert stabilize.execution.horizon_days == 6
        merch_pilot = plan.recommendations[1]
        assert merch_pilot.execution.require_merch_plan is True
        assert merch_pilot.execution.merch_candidate_id == "cand-1"
        assert merch_pilot.checklist[0] == "Select candidate: Harbor Lantern Pin."
        assert plan.recommendations[2].execution.horizon_days == 5

    def test_maintain_when_nothing_fires(self):
        context = _make_context(ip=70, retention=70, merch=65)
        plan = _plan(context, [_make_run(10, completed=True, combined=74)])
        assert [r.id for r in plan.recommendations] == ["maintain-balanced-loop"]
        execution = plan.recommendations[0].execution
        assert execution.default_outcome_decision == OutcomeDecision.HOLD
        assert execution.sprint_objective == context.role_board.sprint_objective
        assert plan.notes == [
            "Automation is healthy. Refresh triggers after each saved run or "
            "major story update."
        ]

    def test_unowned_role_blocks_queue_item(self):
        plan = _plan(_make_context(unowned=(RoleAgentId.DISTRIBUTION_OPERATOR,)))
        assert all(item.status == QueueStatus.BLOCKED for item in plan.queue)
        assert plan.queue[0].reason.startswith("No owner assigned for this role")
        assert any("blocked by missing role ownership" in note for note in plan.notes)

    def test_owned_role_queue_ready(self):
        plan = _plan(_make_context())
        assert {item.status for item in plan.queue} == {QueueStatus.READY}
        assert plan.queue[0].owner_user_id == "user-4"

    def test_latest_outcome_overrides_baseline(self):
        # Healthy baseline, but the latest run recorded a weak combined score
        plan = _plan(_make_context(), [_make_run(10, completed=True, combined=50)])
        assert plan.recommendations[0].id == "stabilize-core-loop"


class TestClampHorizon:
    def test_bounds(self):
        assert clamp_horizon(1) == 3
        assert clamp_horizon(45) == 30
        assert clamp_horizon(6.5) == 7
