"""Tests for the outcome-closing agent."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from flywheel.engine.learning import build_learning_report
from flywheel.engine.outcome_agent import (
    DECISION_NOTES,
    build_outcome_agent_plan,
    closing_note,
    select_outcome_candidates,
    suggest_decision,
)
from flywheel.schemas.enums import OutcomeDecision, RunStatus
from flywheel.schemas.metrics import MetricsSnapshot
from flywheel.schemas.runs import AutorunRunPlan, Run
from flywheel.schemas.upstream import SprintObjective

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)

_counter = iter(range(10_000))


# ── Factories ──────────────────────────────────────────────────────


def _make_open(hours_ago: float, baseline: float | None = 70) -> Run:
    created = NOW - timedelta(hours=hours_ago)
    return Run(
        id=f"run-{next(_counter)}",
        story_id="story-1",
        created_by_user_id="user-0",
        sprint_objective=SprintObjective.STABILIZE_WORLD,
        horizon_days=7,
        status=RunStatus.IN_PROGRESS,
        plan=AutorunRunPlan(executed_recommendation_id="close-feedback-loop"),
        baseline_metrics=MetricsSnapshot(combined_score=baseline),
        created_at=created,
        updated_at=created,
    )


def _make_completed(hours_ago: float) -> Run:
    created = NOW - timedelta(hours=hours_ago)
    return Run(
        id=f"run-{next(_counter)}",
        story_id="story-1",
        created_by_user_id="user-0",
        sprint_objective=SprintObjective.SHIP_NEXT_DROP,
        horizon_days=7,
        status=RunStatus.COMPLETED,
        outcome_decision=OutcomeDecision.ITERATE,
        completed_at=created,
        created_at=created,
        updated_at=created,
    )


def _plan(history, current: float | None = 81):
    learning = build_learning_report(history, now=NOW)
    return build_outcome_agent_plan(
        history, MetricsSnapshot(combined_score=current), learning, now=NOW,
    )


# ══════════════════════════════════════════════════════════════════
# Decision rules
# ══════════════════════════════════════════════════════════════════


class TestSuggestDecision:
    """Closing decision from age and combined delta."""

    @pytest.mark.parametrize(
        ("age", "delta", "expected"),
        [
            (20, None, OutcomeDecision.ITERATE),
            (96, None, OutcomeDecision.ARCHIVE),
            (20, 5, OutcomeDecision.SCALE),
            (200, 5, OutcomeDecision.SCALE),
            (20, 4.99, OutcomeDecision.ITERATE),
            (71.9, -3, OutcomeDecision.ITERATE),
            (72, -0.01, OutcomeDecision.ARCHIVE),
            (100, 0, OutcomeDecision.ITERATE),
        ],
    )
    def test_boundaries(self, age, delta, expected):
        assert suggest_decision(age, delta) == expected

    def test_hold_is_never_suggested(self):
        decisions = {
            suggest_decision(age, delta)
            for age in (0, 50, 72, 96, 200)
            for delta in (None, -10, 0, 4, 10)
        }
        assert OutcomeDecision.HOLD not in decisions


# ══════════════════════════════════════════════════════════════════
# Plan
# ══════════════════════════════════════════════════════════════════


class TestOutcomeAgentPlan:
    """Stale run detection and candidate ordering."""

    def test_candidates_oldest_first(self):
        history = [_make_open(20), _make_open(100, baseline=85), _make_open(50)]
        plan = _plan(history)
        assert [c.age_hours for c in plan.candidates] == [100.0, 50.0, 20.0]
        oldest = plan.candidates[0]
        assert oldest.combined_delta == -4.0
        assert oldest.suggested_outcome_decision == OutcomeDecision.ARCHIVE
        assert plan.candidates[1].suggested_outcome_decision == OutcomeDecision.SCALE
        assert plan.candidates[1].suggested_outcome_notes == DECISION_NOTES[OutcomeDecision.SCALE]
        assert plan.candidates[1].suggested_outcome_metrics.combined_score == 81

    def test_staleness_is_strict(self):
        plan = _plan([_make_open(18), _make_open(18.1)])
        assert plan.summary.total_open_runs == 2
        assert plan.summary.stale_open_runs == 1
        assert plan.summary.close_candidates == 1

    def test_completed_runs_ignored(self):
        plan = _plan([_make_completed(40), _make_open(2)])
        assert plan.candidates == []
        assert plan.summary.total_open_runs == 1
        assert plan.notes == ["No stale open runs detected; outcome-closing agent is idle."]

    def test_missing_metrics_give_no_delta(self):
        plan = _plan([_make_open(30, baseline=None)])
        candidate = plan.candidates[0]
        assert candidate.combined_delta is None
        assert candidate.suggested_outcome_decision == OutcomeDecision.ITERATE

    def test_notes_flag_learning_stale_runs(self):
        plan = _plan([_make_open(30), _make_open(40)])
        assert plan.notes[0].startswith("2 stale run(s) can be auto-closed")
        assert plan.notes[1].startswith("Learning flagged 2 stale run(s)")

    def test_custom_stale_threshold(self):
        history = [_make_open(10), _make_open(30)]
        learning = build_learning_report(history, now=NOW)
        plan = build_outcome_agent_plan(
            history, MetricsSnapshot(combined_score=81), learning,
            now=NOW, stale_after_hours=6,
        )
        assert len(plan.candidates) == 2


class TestSelection:
    @pytest.mark.parametrize(("requested", "expected"), [(0, 1), (2, 2), (50, 10)])
    def test_bounds(self, requested, expected):
        plan = _plan([_make_open(20 + i) for i in range(12)])
        assert len(select_outcome_candidates(plan, requested)) == expected

    def test_keeps_plan_order(self):
        plan = _plan([_make_open(20), _make_open(60)])
        selected = select_outcome_candidates(plan, 1)
        assert selected[0].age_hours == 60.0


class TestClosingNote:
    def test_prefix_joined(self):
        candidate = _plan([_make_open(30)]).candidates[0]
        assert closing_note(candidate, "  [agent]  ") == (
            f"[agent] {candidate.suggested_outcome_notes}"
        )

    def test_no_prefix(self):
        candidate = _plan([_make_open(30)]).candidates[0]
        assert closing_note(candidate) == candidate.suggested_outcome_notes
