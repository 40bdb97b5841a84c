"""Tests for policy learning over run history."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from flywheel.engine.learning import apply_learning, build_learning_report, is_positive_outcome
from flywheel.schemas.enums import AutonomyMode, OutcomeDecision, RunStatus
from flywheel.schemas.metrics import MetricsSnapshot
from flywheel.schemas.policy import DecisionPolicy
from flywheel.schemas.runs import AutorunRunPlan, ManualRunPlan, Run
from flywheel.schemas.upstream import SprintObjective

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)

_counter = iter(range(10_000))


# ── Factories ──────────────────────────────────────────────────────


def _make_completed(
    decision: OutcomeDecision = OutcomeDecision.ITERATE,
    baseline: float | None = 60,
    outcome: float | None = 64,
    *,
    recommendation_id: str = "close-feedback-loop",
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
        plan=plan or AutorunRunPlan(executed_recommendation_id=recommendation_id),
        baseline_metrics=MetricsSnapshot(combined_score=baseline),
        outcome_metrics=MetricsSnapshot(combined_score=outcome),
        outcome_decision=decision,
        completed_at=created + timedelta(hours=20),
        created_at=created,
        updated_at=created,
    )


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


def _make_policy(**overrides) -> DecisionPolicy:
    defaults = {
        "mode": AutonomyMode.ASSIST,
        "recommended_outcome": OutcomeDecision.ITERATE,
        "confidence": 70,
        "max_actions_per_cycle": 2,
        "cooldown_hours": 8,
    }
    defaults.update(overrides)
    return DecisionPolicy(**defaults)


# ══════════════════════════════════════════════════════════════════
# Positive outcomes
# ══════════════════════════════════════════════════════════════════


class TestPositiveOutcome:
    """Classification of completed runs."""

    def test_scale_tolerates_small_drop(self):
        assert is_positive_outcome(_make_completed(OutcomeDecision.SCALE, 60, 58))
        assert not is_positive_outcome(_make_completed(OutcomeDecision.SCALE, 60, 57.5))

    def test_hold_tolerates_one_point(self):
        assert is_positive_outcome(_make_completed(OutcomeDecision.HOLD, 60, 59))
        assert not is_positive_outcome(_make_completed(OutcomeDecision.HOLD, 60, 58.5))

    def test_iterate_needs_non_negative_delta(self):
        assert is_positive_outcome(_make_completed(OutcomeDecision.ITERATE, 60, 60))
        assert not is_positive_outcome(_make_completed(OutcomeDecision.ITERATE, 60, 59.9))

    def test_archive_never_positive(self):
        assert not is_positive_outcome(_make_completed(OutcomeDecision.ARCHIVE, 60, 90))

    def test_without_metrics_decision_decides(self):
        assert is_positive_outcome(_make_completed(OutcomeDecision.ITERATE, None, None))
        assert is_positive_outcome(_make_completed(OutcomeDecision.SCALE, 60, None))
        assert not is_positive_outcome(_make_completed(OutcomeDecision.HOLD, None, None))


# ══════════════════════════════════════════════════════════════════
# Learning report
# ══════════════════════════════════════════════════════════════════


class TestLearningReport:
    """Aggregated learning signals."""

    def test_empty_history(self):
        report = build_learning_report([], now=NOW)
        assert report.totals.total_runs == 0
        assert report.recommendations.recommended_mode == AutonomyMode.ASSIST
        assert report.recommendations.suggested_max_actions_per_cycle == 1
        assert report.recommendations.suggested_cooldown_hours == 16
        assert report.recommendations.recommended_outcome_bias == OutcomeDecision.ITERATE
        assert report.notes[0].startswith("Learning confidence is low")

    def test_strong_history_recommends_auto(self):
        history = [_make_completed() for _ in range(4)]
        history.append(_make_completed(OutcomeDecision.ARCHIVE))
        report = build_learning_report(history, now=NOW)
        assert report.totals.completed_runs == 5
        assert report.totals.positive_completed_runs == 4
        assert report.positive_rate == 0.8
        assert report.recommendations.recommended_mode == AutonomyMode.AUTO
        assert report.recommendations.suggested_max_actions_per_cycle == 3
        assert report.recommendations.suggested_cooldown_hours == 9

    def test_weak_history_recommends_manual(self):
        history = [_make_completed() for _ in range(3)]
        history += [_make_completed(OutcomeDecision.ARCHIVE) for _ in range(7)]
        report = build_learning_report(history, now=NOW)
        assert report.positive_rate == 0.3
        assert report.recommendations.recommended_mode == AutonomyMode.MANUAL
        assert report.recommendations.suggested_max_actions_per_cycle == 1
        assert report.recommendations.suggested_cooldown_hours == 16
        assert any("weak" in note for note in report.notes)

    def test_stale_runs_block_auto(self):
        history = [_make_completed() for _ in range(5)]
        history += [_make_open(30), _make_open(40)]
        report = build_learning_report(history, now=NOW)
        assert report.stale_open_runs == 2
        assert report.recommendations.recommended_mode == AutonomyMode.ASSIST
        # 12 - 3 (strong rate) + 3 (two stale runs)
        assert report.recommendations.suggested_cooldown_hours == 12

    def test_staleness_is_strict(self):
        report = build_learning_report([_make_open(18), _make_open(18.5)], now=NOW)
        assert report.stale_open_runs == 1

    @pytest.mark.parametrize(
        "history",
        [
            [],
            [_make_open(30) for _ in range(8)],
            [_make_completed() for _ in range(12)],
            [_make_completed(OutcomeDecision.ARCHIVE) for _ in range(6)] + [_make_open(50)],
        ],
    )
    def test_suggested_knobs_bounded(self, history):
        recs = build_learning_report(history, now=NOW).recommendations
        assert 6 <= recs.suggested_cooldown_hours <= 24
        assert recs.suggested_max_actions_per_cycle in {1, 2, 3}

    def test_outcome_bias_prefers_best_rate(self):
        history = [_make_completed(OutcomeDecision.SCALE, 60, 70) for _ in range(2)]
        history += [_make_completed(OutcomeDecision.ITERATE, 60, 64)]
        history += [_make_completed(OutcomeDecision.ITERATE, 60, 50) for _ in range(2)]
        report = build_learning_report(history, now=NOW)
        assert report.recommendations.recommended_outcome_bias == OutcomeDecision.SCALE

    def test_mode_performance_covers_every_mode(self):
        history = [
            _make_completed(),
            _make_completed(plan=ManualRunPlan()),
            _make_completed(plan=AutorunRunPlan(autonomy_mode=AutonomyMode.ASSIST)),
        ]
        report = build_learning_report(history, now=NOW)
        by_mode = {p.mode: p for p in report.mode_performance}
        assert set(by_mode) == set(AutonomyMode)
        assert by_mode[AutonomyMode.AUTO].runs == 1
        assert by_mode[AutonomyMode.MANUAL].runs == 1
        assert by_mode[AutonomyMode.ASSIST].runs == 1

    def test_recommendation_performance_sorted_by_runs(self):
        history = [_make_completed(recommendation_id="run-merch-probe")]
        history += [_make_completed(recommendation_id="close-feedback-loop") for _ in range(3)]
        report = build_learning_report(history, now=NOW)
        performance = report.recommendation_performance
        assert [p.recommendation_id for p in performance] == [
            "close-feedback-loop", "run-merch-probe",
        ]
        assert performance[0].avg_combined_delta == 4.0


class TestApplyLearning:
    """Blending learning into a policy."""

    def test_learned_knobs_applied(self):
        history = [_make_completed() for _ in range(4)] + [_make_completed(OutcomeDecision.ARCHIVE)]
        learning = build_learning_report(history, now=NOW)
        policy = apply_learning(_make_policy(), learning)
        assert policy.mode == AutonomyMode.AUTO
        assert policy.max_actions_per_cycle == 3
        assert policy.cooldown_hours == 9
        # 70*0.7 + 80*0.3 + 3
        assert policy.confidence == 76
        assert policy.rationale[-2:] == (
            "Learning loop: overall positive rate 80%.",
            "Learning loop: stale open runs 0.",
        )

    def test_lock_mode_wins(self):
        history = [_make_completed() for _ in range(5)]
        learning = build_learning_report(history, now=NOW)
        policy = apply_learning(_make_policy(), learning, lock_mode=AutonomyMode.ASSIST)
        assert policy.mode == AutonomyMode.ASSIST

    def test_stale_runs_lower_confidence(self):
        learning = build_learning_report([_make_open(30)], now=NOW)
        policy = apply_learning(_make_policy(confidence=40), learning)
        # 40*0.7 + 0 - 5 = 23, clamped to 30
        assert policy.confidence == 30

    def test_input_policy_not_mutated(self):
        original = _make_policy()
        apply_learning(original, build_learning_report([], now=NOW))
        assert original.rationale == ()
        assert original.cooldown_hours == 8
