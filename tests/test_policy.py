"""Tests for the decision policy, backlog and execution selection."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from flywheel.engine.automation import build_automation_plan
from flywheel.engine.metrics import build_operating_plan
from flywheel.engine.policy import (
    build_backlog,
    build_decision_policy,
    last_execution,
    select_execution_items,
)
from flywheel.schemas.automation import AutomationExecution
from flywheel.schemas.enums import AutonomyMode, OutcomeDecision, Priority, RunStatus
from flywheel.schemas.policy import (
    Backlog,
    BacklogItem,
    BacklogItemStatus,
    BacklogSummary,
    DecisionPolicy,
)
from flywheel.schemas.runs import AutorunRunPlan, ManualRunPlan, Run, WindowLoopRunPlan
from flywheel.schemas.upstream import (
    IpReport,
    MerchReport,
    RoleAgentId,
    RoleBoard,
    RoleCard,
    SprintObjective,
    StoryContext,
)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


# ── Factories ──────────────────────────────────────────────────────


def _make_context(unowned: tuple[RoleAgentId, ...] = ()) -> StoryContext:
    roster = [
        RoleCard(id=role, owner_user_id=None if role in unowned else f"user-{i}")
        for i, role in enumerate(RoleAgentId)
    ]
    return StoryContext(
        story_id="story-1",
        slug="moonlit",
        owner_user_id="user-0",
        ip_report=IpReport(overall_score=82, retention_potential_score=76),
        merch_report=MerchReport(overall_score=70),
        role_board=RoleBoard(roster=roster),
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


def _make_run(hours_ago: float, recommendation_id: str, plan=None, run_id: str = "run-1") -> Run:
    created = NOW - timedelta(hours=hours_ago)
    return Run(
        id=run_id,
        story_id="story-1",
        created_by_user_id="user-0",
        sprint_objective=SprintObjective.SCALE_DISTRIBUTION,
        horizon_days=9,
        plan=plan or AutorunRunPlan(executed_recommendation_id=recommendation_id),
        created_at=created,
        updated_at=created,
    )


def _make_item(name: str, status: BacklogItemStatus, score: int) -> BacklogItem:
    return BacklogItem(
        id=f"backlog-{name}",
        recommendation_id=name,
        title=name.upper(),
        priority=Priority.MEDIUM,
        owner_role_agent_id=RoleAgentId.STORY_ARCHITECT,
        status=status,
        score=score,
        reason="",
        execution=AutomationExecution(
            sprint_objective=SprintObjective.SHIP_NEXT_DROP, horizon_days=7,
        ),
    )


def _make_backlog(items, max_actions: int = 2) -> Backlog:
    return Backlog(
        generated_at=NOW,
        mode=AutonomyMode.ASSIST,
        policy=_make_policy(max_actions_per_cycle=max_actions),
        summary=BacklogSummary(total=len(items)),
        items=items,
    )


def _automation(context: StoryContext, history=()):
    operating = build_operating_plan(context, now=NOW)
    return operating, build_automation_plan(context, operating, list(history), now=NOW)


# ══════════════════════════════════════════════════════════════════
# Decision policy
# ══════════════════════════════════════════════════════════════════


class TestDecisionPolicy:
    """Baseline policy from triggers and recency."""

    def test_manual_mode_defaults(self):
        operating, automation = _automation(_make_context())
        policy = build_decision_policy(AutonomyMode.MANUAL, automation, operating, [], now=NOW)
        assert policy.max_actions_per_cycle == 1
        assert policy.cooldown_hours == 18

    def test_assist_with_risk_trigger(self):
        operating, automation = _automation(_make_context())
        policy = build_decision_policy(AutonomyMode.ASSIST, automation, operating, [], now=NOW)
        # Stale loop (risk) plus scale window (opportunity), no runs yet
        assert policy.recommended_outcome == OutcomeDecision.ITERATE
        assert policy.cooldown_hours == 12
        assert policy.max_actions_per_cycle == 2
        assert policy.confidence == 88
        assert len(policy.guardrails) == 3

    def test_opportunity_only_recommends_scale(self):
        history = [_make_run(2, "other")]
        operating, automation = _automation(_make_context(), history)
        policy = build_decision_policy(AutonomyMode.AUTO, automation, operating, history, now=NOW)
        assert policy.recommended_outcome == OutcomeDecision.SCALE
        assert policy.cooldown_hours == 8
        assert policy.max_actions_per_cycle == 3


# ══════════════════════════════════════════════════════════════════
# Backlog
# ══════════════════════════════════════════════════════════════════


class TestBacklog:
    """Scored backlog with readiness."""

    def test_items_sorted_by_score(self):
        _, automation = _automation(_make_context())
        backlog = build_backlog(AutonomyMode.ASSIST, automation, _make_policy(), [], now=NOW)
        assert [i.recommendation_id for i in backlog.items] == [
            "scale-distribution-window", "close-feedback-loop",
        ]
        # high (100) + one trigger (8) + ready (12)
        assert backlog.items[0].score == 120
        assert backlog.summary.ready == 2

    def test_recent_execution_cools_down(self):
        history = [_make_run(2, "scale-distribution-window")]
        _, automation = _automation(_make_context(), history)
        backlog = build_backlog(AutonomyMode.ASSIST, automation, _make_policy(), history, now=NOW)
        item = backlog.items[0]
        assert item.status == BacklogItemStatus.COOLDOWN
        assert item.reason == "Cooling down for 6h."
        assert item.cooldown_until == history[0].created_at + timedelta(hours=8)
        assert item.score == 100 + 8 - 6
        assert backlog.summary.cooldown == 1

    def test_expired_cooldown_is_ready(self):
        history = [_make_run(9, "scale-distribution-window")]
        _, automation = _automation(_make_context(), history)
        backlog = build_backlog(AutonomyMode.ASSIST, automation, _make_policy(), history, now=NOW)
        scale = next(i for i in backlog.items if i.recommendation_id == "scale-distribution-window")
        assert scale.status == BacklogItemStatus.READY
        assert scale.last_executed_at == history[0].created_at
        assert scale.cooldown_until is None

    def test_manual_runs_do_not_cool_down(self):
        history = [_make_run(
            2, "scale-distribution-window",
            plan=ManualRunPlan(executed_recommendation_id="scale-distribution-window"),
        )]
        _, automation = _automation(_make_context(), history)
        backlog = build_backlog(AutonomyMode.ASSIST, automation, _make_policy(), history, now=NOW)
        assert backlog.items[0].status == BacklogItemStatus.READY

    def test_blocked_owner(self):
        context = _make_context(unowned=(RoleAgentId.DISTRIBUTION_OPERATOR,))
        _, automation = _automation(context)
        backlog = build_backlog(AutonomyMode.ASSIST, automation, _make_policy(), [], now=NOW)
        assert {i.status for i in backlog.items} == {BacklogItemStatus.BLOCKED}
        assert backlog.items[0].score == 100 + 8 - 30
        assert backlog.summary.blocked == 2

    def test_identical_inputs_identical_backlog(self):
        history = [_make_run(2, "scale-distribution-window")]
        _, automation = _automation(_make_context(), history)
        first = build_backlog(AutonomyMode.ASSIST, automation, _make_policy(), history, now=NOW)
        second = build_backlog(AutonomyMode.ASSIST, automation, _make_policy(), history, now=NOW)
        assert first.items == second.items
        assert first.summary == second.summary


class TestLastExecution:
    def test_latest_by_creation_time(self):
        older = _make_run(30, "a", run_id="older")
        newer = _make_run(5, "a", plan=WindowLoopRunPlan(executed_recommendation_id="a"),
                          run_id="newer")
        assert last_execution("a", [older, newer]).id == "newer"

    def test_completed_run_anchors_on_completion(self):
        run = _make_run(30, "a")
        completed = run.with_outcome(now=NOW - timedelta(hours=1))
        assert completed.status == RunStatus.COMPLETED
        assert last_execution("a", [completed]).anchor_at == NOW - timedelta(hours=1)

    def test_no_match(self):
        assert last_execution("missing", [_make_run(3, "a")]) is None


# ══════════════════════════════════════════════════════════════════
# Selection
# ══════════════════════════════════════════════════════════════════


class TestSelectExecutionItems:
    """Top ready items in score order."""

    def test_skips_non_ready_keeping_order(self):
        backlog = _make_backlog([
            _make_item("a", BacklogItemStatus.READY, 90),
            _make_item("b", BacklogItemStatus.COOLDOWN, 80),
            _make_item("c", BacklogItemStatus.READY, 70),
        ])
        selected = select_execution_items(backlog, 2)
        assert [i.recommendation_id for i in selected] == ["a", "c"]

    def test_defaults_to_policy_budget(self):
        backlog = _make_backlog(
            [_make_item(n, BacklogItemStatus.READY, 50) for n in "abcd"], max_actions=3,
        )
        assert len(select_execution_items(backlog)) == 3

    @pytest.mark.parametrize(("requested", "expected"), [(0, 1), (-2, 1), (9, 5), (2.4, 2)])
    def test_budget_bounded(self, requested, expected):
        backlog = _make_backlog(
            [_make_item(f"r{i}", BacklogItemStatus.READY, 50) for i in range(7)],
        )
        assert len(select_execution_items(backlog, requested)) == expected

    def test_nothing_ready(self):
        backlog = _make_backlog([_make_item("a", BacklogItemStatus.BLOCKED, 90)])
        assert select_execution_items(backlog, 3) == []
