"""Decision policy, autonomous backlog and execution selection."""

from __future__ import annotations

import math
from collections.abc import Sequence
from datetime import datetime, timedelta

from flywheel.engine.numeric import clamp, hours_between, round_int
from flywheel.schemas.automation import (
    AutomationPlan,
    OperatingPlan,
    QueueStatus,
    ScoreBand,
    TriggerKind,
)
from flywheel.schemas.enums import AutonomyMode, OutcomeDecision, Priority
from flywheel.schemas.policy import (
    Backlog,
    BacklogItem,
    BacklogItemStatus,
    BacklogSummary,
    DecisionPolicy,
)
from flywheel.schemas.runs import Run

STANDARD_GUARDRAILS: tuple[str, ...] = (
    "Always keep continuity + publishing quality gates active during autonomous runs.",
    "Require explicit owner assignment for every queued recommendation before execution.",
    "Never execute more than max actions per cycle; reassess triggers after each cycle.",
)

_MODE_MAX_ACTIONS = {
    AutonomyMode.MANUAL: 1,
    AutonomyMode.ASSIST: 2,
    AutonomyMode.AUTO: 3,
}

_PRIORITY_WEIGHT = {
    Priority.HIGH: 100,
    Priority.MEDIUM: 72,
    Priority.LOW: 45,
}

_STATUS_BOOST = {
    BacklogItemStatus.READY: 12,
    BacklogItemStatus.COOLDOWN: -6,
    BacklogItemStatus.BLOCKED: -30,
}


def idle_hours(history: Sequence[Run], now: datetime) -> float:
    """Hours since the latest run's last lifecycle event (newest-first history)."""
    if not history:
        return math.inf
    return max(0.0, hours_between(history[0].anchor_at, now))


def build_decision_policy(
    mode: AutonomyMode,
    automation: AutomationPlan,
    plan: OperatingPlan,
    history: Sequence[Run],
    *,
    now: datetime,
) -> DecisionPolicy:
    """Baseline policy from current triggers and run recency."""
    risks = automation.fired(TriggerKind.RISK)
    opportunities = automation.fired(TriggerKind.OPPORTUNITY)
    high_risk = sum(1 for t in risks if t.severity == Priority.HIGH)
    idle = idle_hours(history, now)

    if high_risk >= 2 or plan.score_band == ScoreBand.STABILIZE:
        outcome = OutcomeDecision.ITERATE
    elif not risks and opportunities:
        outcome = OutcomeDecision.SCALE
    elif not risks and not opportunities:
        outcome = OutcomeDecision.HOLD
    else:
        outcome = OutcomeDecision.ITERATE

    if mode == AutonomyMode.MANUAL:
        cooldown = 18
    else:
        cooldown = 12 if risks else 8

    confidence = int(clamp(
        round_int(
            48
            + (18 if opportunities else 0)
            + (12 if high_risk == 0 else 0)
            + (10 if idle >= 24 else 0)
        ),
        35,
        95,
    ))

    rationale = []
    if high_risk:
        rationale.append(
            f"{high_risk} high-risk trigger(s) active; bias policy toward "
            "controlled iteration before scale decisions."
        )
    if opportunities:
        rationale.append(
            "Opportunity trigger detected; distribution scale can be tested under quality gates."
        )
    if idle >= 24:
        rationale.append(
            "Execution loop is stale; enqueue at least one recommendation to "
            "restore learning cadence."
        )
    if not rationale:
        rationale.append(
            "Signals are stable; continue measured execution with periodic trigger refresh."
        )

    return DecisionPolicy(
        mode=mode,
        recommended_outcome=outcome,
        confidence=confidence,
        rationale=tuple(rationale),
        guardrails=STANDARD_GUARDRAILS,
        max_actions_per_cycle=_MODE_MAX_ACTIONS[mode],
        cooldown_hours=cooldown,
    )


def last_execution(recommendation_id: str, history: Sequence[Run]) -> Run | None:
    """Most recent run that executed *recommendation_id* from the loop."""
    matches = [
        run for run in history
        if run.plan.counts_as_execution
        and run.plan.executed_recommendation_id == recommendation_id
    ]
    if not matches:
        return None
    return max(matches, key=lambda run: run.created_at)


def build_backlog(
    mode: AutonomyMode,
    automation: AutomationPlan,
    policy: DecisionPolicy,
    history: Sequence[Run],
    *,
    now: datetime,
) -> Backlog:
    """Merge recommendations, policy and history into a scored queue.

    Status and cooldown are derived only from the arguments, so two calls
    with identical inputs produce identical items.
    """
    queue = {item.recommendation_id: item for item in automation.queue}
    cooldown = policy.cooldown_hours
    items: list[BacklogItem] = []

    for recommendation in automation.recommendations:
        queue_item = queue.get(recommendation.id)
        last = last_execution(recommendation.id, history)
        executed_at = last.anchor_at if last else None
        elapsed = max(0.0, hours_between(executed_at, now)) if executed_at else math.inf
        cooling = elapsed < cooldown

        if queue_item and queue_item.status == QueueStatus.BLOCKED:
            status, reason = BacklogItemStatus.BLOCKED, queue_item.reason
        elif cooling:
            status = BacklogItemStatus.COOLDOWN
            reason = f"Cooling down for {math.ceil(cooldown - elapsed)}h."
        else:
            status, reason = BacklogItemStatus.READY, "Ready for execution."

        items.append(BacklogItem(
            id=f"backlog-{recommendation.id}",
            recommendation_id=recommendation.id,
            title=recommendation.title,
            priority=recommendation.priority,
            owner_role_agent_id=recommendation.owner_role_agent_id,
            owner_user_id=queue_item.owner_user_id if queue_item else None,
            status=status,
            score=(
                _PRIORITY_WEIGHT[recommendation.priority]
                + 8 * len(recommendation.trigger_ids)
                + _STATUS_BOOST[status]
            ),
            reason=reason,
            execution=recommendation.execution,
            trigger_ids=recommendation.trigger_ids,
            last_executed_at=executed_at,
            cooldown_until=(
                executed_at + timedelta(hours=cooldown) if cooling and executed_at else None
            ),
        ))

    items.sort(key=lambda item: item.score, reverse=True)

    return Backlog(
        generated_at=now,
        mode=mode,
        policy=policy,
        summary=BacklogSummary(
            total=len(items),
            ready=sum(1 for i in items if i.status == BacklogItemStatus.READY),
            blocked=sum(1 for i in items if i.status == BacklogItemStatus.BLOCKED),
            cooldown=sum(1 for i in items if i.status == BacklogItemStatus.COOLDOWN),
        ),
        items=items,
    )


def select_execution_items(
    backlog: Backlog, max_actions: float | None = None,
) -> list[BacklogItem]:
    """Top ready items in existing score order, bounded to [1, 5]."""
    requested = backlog.policy.max_actions_per_cycle if max_actions is None else max_actions
    bounded = int(clamp(round_int(requested), 1, 5))
    ready = [item for item in backlog.items if item.status == BacklogItemStatus.READY]
    return ready[:bounded]
