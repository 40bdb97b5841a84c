"""Tests for the governance gate and its policy caps."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from flywheel.engine.governance import (
    apply_governance,
    build_governance_report,
    is_risky_outcome,
)
from flywheel.engine.learning import build_learning_report
from flywheel.schemas.enums import AutonomyMode, OutcomeDecision, RunStatus
from flywheel.schemas.governance import GovernanceStatus
from flywheel.schemas.metrics import MetricsSnapshot
from flywheel.schemas.policy import Backlog, BacklogSummary, DecisionPolicy
from flywheel.schemas.runs import AutorunRunPlan, ManualRunPlan, Run
from flywheel.schemas.upstream import SprintObjective

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)

_counter = iter(range(10_000))


# ── Factories ──────────────────────────────────────────────────────


def _make_open(hours_ago: float) -> Run:
    created = NOW - timedelta(hours=hours_ago)
    return Run(
        id=f"run-{next(_counter)}",
        story_id="story-1",
        created_by_user_id="user-0",
        sprint_objective=SprintObjective.SHIP_NEXT_DROP,
        horizon_days=7,
        plan=AutorunRunPlan(executed_recommendation_id="close-feedback-loop"),
        created_at=created,
        updated_at=created,
    )


def _make_completed(
    decision: OutcomeDecision = OutcomeDecision.ITERATE,
    outcome: float | None = 64,
    plan=None,
) -> Run:
    created = NOW - timedelta(hours=40)
    return Run(
        id=f"run-{next(_counter)}",
        story_id="story-1",
        created_by_user_id="user-0",
        sprint_objective=SprintObjective.SHIP_NEXT_DROP,
        horizon_days=7,
        status=RunStatus.COMPLETED,
        plan=plan or AutorunRunPlan(executed_recommendation_id="close-feedback-loop"),
        baseline_metrics=MetricsSnapshot(combined_score=60),
        outcome_metrics=MetricsSnapshot(combined_score=outcome),
        outcome_decision=decision,
        completed_at=created + timedelta(hours=10),
        created_at=created,
        updated_at=created,
    )


def _make_policy(**overrides) -> DecisionPolicy:
    defaults = {
        "mode": AutonomyMode.AUTO,
        "recommended_outcome": OutcomeDecision.SCALE,
        "confidence": 80,
        "max_actions_per_cycle": 3,
        "cooldown_hours": 8,
    }
    defaults.update(overrides)
    return DecisionPolicy(**defaults)


def _make_backlog(ready: int) -> Backlog:
    return Backlog(
        generated_at=NOW,
        mode=AutonomyMode.AUTO,
        policy=_make_policy(),
        summary=BacklogSummary(total=ready, ready=ready),
    )


def _govern(history, policy=None, backlog=None):
    learning = build_learning_report(history, now=NOW)
    return build_governance_report(
        history, learning, policy or _make_policy(), backlog, now=NOW,
    )


# ══════════════════════════════════════════════════════════════════
# Status
# ══════════════════════════════════════════════════════════════════


class TestGovernanceStatus:
    """Health classification and constraints."""

    def test_healthy_loop(self):
        report = _govern([_make_completed() for _ in range(5)], backlog=_make_backlog(3))
        assert report.status == GovernanceStatus.HEALTHY
        assert report.constraints.allow_autorun is True
        assert report.constraints.max_actions_cap == 3
        assert report.constraints.cooldown_floor_hours == 6
        # 82 + 0.5*45 = 104.5 clamps to 100
        assert report.governance_score == 100
        assert "Healthy loop detected; controlled scale tests are safe." in report.recommendations

    def test_cap_bounded_by_ready_backlog(self):
        report = _govern([_make_completed() for _ in range(5)], backlog=_make_backlog(1))
        assert report.constraints.max_actions_cap == 1

    def test_missing_backlog_caps_at_one(self):
        report = _govern([_make_completed() for _ in range(5)])
        assert report.constraints.max_actions_cap == 1

    def test_four_stale_runs_pause(self):
        report = _govern([_make_open(30) for _ in range(4)], backlog=_make_backlog(3))
        assert report.status == GovernanceStatus.PAUSED
        assert report.constraints.allow_autorun is False
        assert report.constraints.max_actions_cap == 1
        assert report.constraints.cooldown_floor_hours == 18
        assert report.reasons[0].startswith("4 stale open run(s) detected")

    def test_long_open_run_pauses(self):
        report = _govern([_make_open(120)])
        assert report.status == GovernanceStatus.PAUSED
        assert report.signals.longest_open_run_hours == 120.0
        assert any("Longest open run age is 120h" in r for r in report.reasons)

    def test_poor_automation_outcomes_pause(self):
        history = [_make_completed(OutcomeDecision.ARCHIVE) for _ in range(4)]
        report = _govern(history)
        assert report.status == GovernanceStatus.PAUSED
        assert report.signals.risky_outcome_rate == 1.0

    def test_manual_runs_do_not_count_as_automation(self):
        history = [_make_completed(OutcomeDecision.ARCHIVE, plan=ManualRunPlan()) for _ in range(4)]
        report = _govern(history, backlog=_make_backlog(2))
        assert report.status == GovernanceStatus.HEALTHY
        assert report.signals.risky_outcome_rate == 0.0

    def test_two_stale_runs_watch(self):
        history = [_make_completed() for _ in range(3)] + [_make_open(20), _make_open(22)]
        report = _govern(history, backlog=_make_backlog(3))
        assert report.status == GovernanceStatus.WATCH
        assert report.constraints.max_actions_cap == 2
        assert report.constraints.cooldown_floor_hours == 12

    def test_risky_share_watch(self):
        history = [_make_completed(), _make_completed(OutcomeDecision.HOLD, outcome=60)]
        report = _govern(history, backlog=_make_backlog(2))
        assert report.status == GovernanceStatus.WATCH
        assert report.signals.risky_outcome_rate == 0.5

    def test_empty_history_is_healthy(self):
        report = _govern([], backlog=_make_backlog(2))
        assert report.status == GovernanceStatus.HEALTHY
        # 82 - 0.5*45 = 59.5
        assert report.governance_score == 60
        assert report.reasons == [
            "Autonomy signals are stable and within governance thresholds."
        ]


class TestRiskyOutcome:
    def test_classification(self):
        assert is_risky_outcome(_make_completed(OutcomeDecision.HOLD, outcome=80))
        assert is_risky_outcome(_make_completed(OutcomeDecision.ARCHIVE, outcome=80))
        assert is_risky_outcome(_make_completed(outcome=58.5))
        assert not is_risky_outcome(_make_completed(outcome=59))
        assert not is_risky_outcome(_make_completed(outcome=None))


# ══════════════════════════════════════════════════════════════════
# Applying governance
# ══════════════════════════════════════════════════════════════════


class TestApplyGovernance:
    """Governance caps on the policy."""

    def test_paused_caps_policy(self):
        report = _govern([_make_open(30) for _ in range(4)])
        policy = apply_governance(_make_policy(), report)
        assert policy.max_actions_per_cycle == 1
        assert policy.cooldown_hours == 18
        assert policy.confidence == 66
        assert policy.guardrails[-1].startswith("Autorun paused by governance")

    def test_healthy_keeps_budget(self):
        report = _govern([_make_completed() for _ in range(5)], backlog=_make_backlog(3))
        policy = apply_governance(_make_policy(cooldown_hours=4), report)
        assert policy.max_actions_per_cycle == 3
        assert policy.cooldown_hours == 6
        assert policy.confidence == 80
        assert policy.rationale[-1] == "Governance healthy: score 100."
