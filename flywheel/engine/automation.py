"""Trigger evaluation and automation-plan building.

Checks six threshold triggers against the latest known metrics and
emits one execution-bearing recommendation per fired trigger group,
plus an owner-assignment queue.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from datetime import datetime

from flywheel.engine.metrics import previous_run_metrics
from flywheel.engine.numeric import hours_between, round_int
from flywheel.schemas.automation import (
    AutomationExecution,
    AutomationPlan,
    AutomationQueueItem,
    AutomationRecommendation,
    AutomationTrigger,
    OperatingPlan,
    QueueStatus,
    TriggerId,
    TriggerKind,
    TriggerStatus,
    TriggerSummary,
)
from flywheel.schemas.enums import OutcomeDecision, Priority
from flywheel.schemas.metrics import MetricKey, MetricsSnapshot
from flywheel.schemas.runs import Run
from flywheel.schemas.upstream import RoleAgentId, RoleBoard, SprintObjective, StoryContext

_BELOW = "below"
_ABOVE = "above"


def clamp_horizon(days: float) -> int:
    return max(3, min(30, round_int(days)))


def _trigger(
    trigger_id: TriggerId,
    label: str,
    *,
    fired: bool,
    severity: tuple[Priority, Priority],
    reason: tuple[str, str],
    metric_key: MetricKey,
    current: float,
    threshold: float,
    kind: TriggerKind = TriggerKind.RISK,
    direction: str = _BELOW,
) -> AutomationTrigger:
    return AutomationTrigger(
        id=trigger_id,
        label=label,
        kind=kind,
        status=TriggerStatus.FIRED if fired else TriggerStatus.WATCHING,
        severity=severity[0] if fired else severity[1],
        reason=reason[0] if fired else reason[1],
        metric_key=metric_key,
        current=current,
        threshold=threshold,
        direction=direction,
    )


def trigger_metrics(plan: OperatingPlan, history: Sequence[Run]) -> MetricsSnapshot:
    """Baseline metrics overlaid with whatever the latest run recorded."""
    return plan.baseline_metrics.merged_with(previous_run_metrics(history))


def build_triggers(
    metrics: MetricsSnapshot, latest_run: Run | None, *, now: datetime,
) -> list[AutomationTrigger]:
    combined = metrics.combined_score or 0.0
    retention = metrics.retention_potential or 0.0
    merch = metrics.merch_signal or 0.0
    coverage = metrics.role_coverage or 0.0

    if latest_run is None:
        hours_since = math.inf
        stale_fired = True
    else:
        hours_since = hours_between(latest_run.anchor_at, now)
        stale_fired = hours_since > (72 if latest_run.is_completed else 24)
    freshness = 0 if math.isinf(hours_since) else max(0, 100 - min(100, round_int(hours_since)))

    scale_fired = combined >= 78 and retention >= 70 and merch >= 66 and coverage >= 86

    return [
        _trigger(
            TriggerId.FOUNDATION_GAP, "Foundation Stability",
            fired=combined < 58,
            severity=(Priority.HIGH, Priority.LOW),
            reason=(
                "Combined score is below stabilization threshold; prioritize canon "
                "and narrative reliability before scaling.",
                "Combined score remains within a stable band.",
            ),
            metric_key=MetricKey.COMBINED_SCORE, current=combined, threshold=58,
        ),
        _trigger(
            TriggerId.RETENTION_DRIFT, "Retention Drift",
            fired=retention < 62,
            severity=(Priority.HIGH, Priority.MEDIUM),
            reason=(
                "Retention potential dipped under target; reinforce hook cadence "
                "and continuation prompts.",
                "Retention potential is within operating range.",
            ),
            metric_key=MetricKey.RETENTION_POTENTIAL, current=retention, threshold=62,
        ),
        _trigger(
            TriggerId.MERCH_SIGNAL_GAP, "Merch Signal Gap",
            fired=merch < 60,
            severity=(Priority.MEDIUM, Priority.LOW),
            reason=(
                "Merch signal is still early; run low-cost concept probes before "
                "larger experiments.",
                "Merch signals are healthy enough for staged testing.",
            ),
            metric_key=MetricKey.MERCH_SIGNAL, current=merch, threshold=60,
        ),
        _trigger(
            TriggerId.ROLE_COVERAGE_GAP, "Role Coverage Gap",
            fired=coverage < 82,
            severity=(Priority.MEDIUM, Priority.LOW),
            reason=(
                "Role ownership is incomplete; resolve assignment gaps before "
                "high-throughput runs.",
                "Role ownership coverage is healthy.",
            ),
            metric_key=MetricKey.ROLE_COVERAGE, current=coverage, threshold=82,
        ),
        _trigger(
            TriggerId.STALE_EXECUTION_LOOP, "Stale Execution Loop",
            fired=stale_fired,
            severity=(Priority.MEDIUM, Priority.LOW),
            reason=(
                (
                    "No creator-economy run exists yet; seed one run to start "
                    "measurable iteration."
                    if latest_run is None
                    else "Latest run has not closed the feedback loop in time; "
                    "create and execute the next run."
                ),
                "Execution loop cadence is current.",
            ),
            metric_key=MetricKey.COMBINED_SCORE, current=freshness, threshold=28,
        ),
        _trigger(
            TriggerId.SCALE_WINDOW, "Scale Window",
            fired=scale_fired,
            severity=(Priority.HIGH, Priority.LOW),
            reason=(
                "Metrics indicate a scale-ready window; increase distribution "
                "throughput with controlled experiments.",
                "Scale window not open yet; continue strengthening the baseline.",
            ),
            metric_key=MetricKey.COMBINED_SCORE, current=combined, threshold=78,
            kind=TriggerKind.OPPORTUNITY, direction=_ABOVE,
        ),
    ]


def build_recommendations(
    triggers: Sequence[AutomationTrigger],
    context: StoryContext,
    board: RoleBoard,
    plan: OperatingPlan,
) -> list[AutomationRecommendation]:
    """Map fired triggers to recommendations, in a fixed order."""
    fired = {t.id for t in triggers if t.fired}
    horizon = plan.horizon_days
    candidates = context.merch_report.candidates
    top = candidates[0] if candidates else None
    top_channels = tuple(top.channel_fit[:3]) if top else ()

    recommendations: list[AutomationRecommendation] = []

    core = [t for t in (TriggerId.FOUNDATION_GAP, TriggerId.RETENTION_DRIFT) if t in fired]
    if core:
        recommendations.append(AutomationRecommendation(
            id="stabilize-core-loop",
            title="Stabilize Core Story Loop",
            priority=Priority.HIGH,
            owner_role_agent_id=RoleAgentId.CONTINUITY_DIRECTOR,
            trigger_ids=tuple(core),
            summary=(
                "Run a stabilization sprint focused on canon reliability and "
                "stronger continuation hooks."
            ),
            rationale=(
                "Combined and retention signals are below target. Stabilizing this "
                "layer first improves downstream merch and distribution quality."
            ),
            checklist=(
                "Lock one continuity rule update and ship one narrative cliffhanger "
                "within the sprint.",
                "Review all high-severity continuity warnings before each generation batch.",
                "Record outcome metrics and decide iterate/hold at sprint close.",
            ),
            execution=AutomationExecution(
                sprint_objective=SprintObjective.STABILIZE_WORLD,
                horizon_days=clamp_horizon(max(5, round_int(horizon * 0.85))),
            ),
        ))

    if TriggerId.MERCH_SIGNAL_GAP in fired:
        title = top.title if top and top.title else "define first candidate"
        recommendations.append(AutomationRecommendation(
            id="run-merch-probe",
            title="Run Triggered Merch Probe",
            priority=Priority.MEDIUM,
            owner_role_agent_id=RoleAgentId.MERCH_OPERATOR,
            trigger_ids=(TriggerId.MERCH_SIGNAL_GAP,),
            summary=(
                "Launch a low-risk merch probe with a measurable hypothesis and "
                "fast feedback window."
            ),
            rationale=(
                "Merch signal is below readiness. A narrow pilot increases signal "
                "quality without heavy execution overhead."
            ),
            checklist=(
                f"Select candidate: {title}.",
                "Run prep -> launch -> learn loop and capture objections with demand metrics.",
                "Feed outcomes back into the next operating plan before scaling spend.",
            ),
            execution=AutomationExecution(
                sprint_objective=SprintObjective.LAUNCH_MERCH_PILOT,
                horizon_days=clamp_horizon(max(5, horizon)),
                require_merch_plan=True,
                merch_candidate_id=top.id if top else None,
                merch_channels=top_channels,
            ),
        ))

    if TriggerId.ROLE_COVERAGE_GAP in fired:
        recommendations.append(AutomationRecommendation(
            id="rebalance-role-ownership",
            title="Rebalance Role Ownership",
            priority=Priority.MEDIUM,
            owner_role_agent_id=RoleAgentId.STORY_ARCHITECT,
            trigger_ids=(TriggerId.ROLE_COVERAGE_GAP,),
            summary=(
                "Resolve owner gaps and enforce explicit role handoffs before "
                "high-volume operations."
            ),
            rationale=(
                "Role coverage below target increases execution collisions and "
                "reduces accountability across creator-economy loops."
            ),
            checklist=(
                "Assign an explicit owner for each role card and confirm sprint "
                "objective alignment.",
                "Run one sync cycle dedicated to lock handoff and conflict-center triage.",
                "Save a fresh operating run once ownership is complete.",
            ),
            execution=AutomationExecution(
                sprint_objective=SprintObjective.SHIP_NEXT_DROP,
                horizon_days=clamp_horizon(max(3, round_int(horizon * 0.7))),
            ),
        ))

    if TriggerId.STALE_EXECUTION_LOOP in fired:
        recommendations.append(AutomationRecommendation(
            id="close-feedback-loop",
            title="Close Feedback Loop",
            priority=Priority.MEDIUM,
            owner_role_agent_id=RoleAgentId.DISTRIBUTION_OPERATOR,
            trigger_ids=(TriggerId.STALE_EXECUTION_LOOP,),
            summary=(
                "Create a fresh run and close it with outcome metrics to restore "
                "execution cadence."
            ),
            rationale=(
                "An idle loop breaks learning momentum. A short-cycle run restores "
                "measurable iteration behavior."
            ),
            checklist=(
                "Generate and persist a new operating run for the current sprint objective.",
                "Ship at least one action from each high-priority track.",
                "Record run outcomes within 24 hours of execution completion.",
            ),
            execution=AutomationExecution(
                sprint_objective=SprintObjective.SHIP_NEXT_DROP,
                horizon_days=5,
            ),
        ))

    if TriggerId.SCALE_WINDOW in fired:
        recommendations.append(AutomationRecommendation(
            id="scale-distribution-window",
            title="Exploit Scale Window",
            priority=Priority.HIGH,
            owner_role_agent_id=RoleAgentId.DISTRIBUTION_OPERATOR,
            trigger_ids=(TriggerId.SCALE_WINDOW,),
            summary=(
                "Metrics are scale-ready. Increase distribution velocity while "
                "preserving quality-gate controls."
            ),
            rationale=(
                "All major readiness metrics crossed scale thresholds. This is a "
                "high-leverage moment to compound retention and reach."
            ),
            checklist=(
                "Run autopipeline for all primary channels with quality gates green.",
                "Schedule two follow-up releases within the same horizon window.",
                "Log distribution deltas and decide scale/iterate at sprint close.",
            ),
            execution=AutomationExecution(
                sprint_objective=SprintObjective.SCALE_DISTRIBUTION,
                horizon_days=clamp_horizon(max(7, horizon + 2)),
                merch_candidate_id=top.id if top else None,
                merch_channels=top_channels,
                default_outcome_decision=OutcomeDecision.SCALE,
            ),
        ))

    if not recommendations:
        recommendations.append(AutomationRecommendation(
            id="maintain-balanced-loop",
            title="Maintain Balanced Operating Loop",
            priority=Priority.LOW,
            owner_role_agent_id=RoleAgentId.STORY_ARCHITECT,
            summary=(
                "No urgent automation triggers fired. Continue measured execution "
                "and monitor for drift."
            ),
            rationale=(
                "Metrics are stable enough to maintain current cadence without "
                "emergency intervention."
            ),
            checklist=(
                "Keep sprint execution cadence and close feedback loop on schedule.",
                "Run weekly trigger refresh and monitor any movement toward risk thresholds.",
            ),
            execution=AutomationExecution(
                sprint_objective=board.sprint_objective,
                horizon_days=board.horizon_days,
                default_outcome_decision=OutcomeDecision.HOLD,
            ),
        ))

    return recommendations


def build_queue(
    recommendations: Sequence[AutomationRecommendation], board: RoleBoard,
) -> list[AutomationQueueItem]:
    queue = []
    for recommendation in recommendations:
        card = board.card(recommendation.owner_role_agent_id)
        owner = card.owner_user_id if card else None
        queue.append(AutomationQueueItem(
            id=f"queue-{recommendation.id}",
            recommendation_id=recommendation.id,
            owner_role_agent_id=recommendation.owner_role_agent_id,
            owner_user_id=owner,
            status=QueueStatus.READY if owner else QueueStatus.BLOCKED,
            reason=(
                "Ready to execute."
                if owner
                else "No owner assigned for this role; set owner override before execution."
            ),
        ))
    return queue


def _notes(
    triggers: Sequence[AutomationTrigger], queue: Sequence[AutomationQueueItem],
) -> list[str]:
    notes = []
    high_risk = sum(
        1 for t in triggers
        if t.fired and t.kind == TriggerKind.RISK and t.severity == Priority.HIGH
    )
    if high_risk:
        notes.append(
            f"{high_risk} high-severity risk trigger(s) active. "
            "Prioritize stabilization recommendations first."
        )
    if any(t.id == TriggerId.SCALE_WINDOW and t.fired for t in triggers):
        notes.append(
            "Scale window detected. Keep quality gates and continuity checks "
            "enabled while scaling."
        )
    blocked = sum(1 for item in queue if item.status == QueueStatus.BLOCKED)
    if blocked:
        notes.append(
            f"{blocked} recommendation(s) blocked by missing role ownership. "
            "Use owner overrides before execution."
        )
    if not notes:
        notes.append(
            "Automation is healthy. Refresh triggers after each saved run or "
            "major story update."
        )
    return notes


def build_automation_plan(
    context: StoryContext,
    plan: OperatingPlan,
    history: Sequence[Run],
    *,
    now: datetime,
    board: RoleBoard | None = None,
) -> AutomationPlan:
    """Evaluate triggers and build recommendations for a story.

    Args:
        context: Story context with upstream reports.
        plan: Operating plan built for the same board.
        history: Run history, newest first.
        now: Evaluation instant.
        board: Role board (defaults to the context's).

    Returns:
        AutomationPlan with triggers, recommendations, queue and notes.
    """
    board = board or context.role_board
    triggers = build_triggers(
        trigger_metrics(plan, history), history[0] if history else None, now=now,
    )
    recommendations = build_recommendations(triggers, context, board, plan)
    queue = build_queue(recommendations, board)

    fired = [t for t in triggers if t.fired]
    summary = TriggerSummary(
        active=len(fired),
        total=len(triggers),
        risk_active=sum(1 for t in fired if t.kind == TriggerKind.RISK),
        opportunity_active=sum(1 for t in fired if t.kind == TriggerKind.OPPORTUNITY),
    )

    return AutomationPlan(
        generated_at=now,
        story_slug=context.slug,
        story_title=context.title,
        trigger_summary=summary,
        triggers=triggers,
        recommendations=recommendations,
        queue=queue,
        notes=_notes(triggers, queue),
    )
