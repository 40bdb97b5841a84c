"""Self-healing monitor.

Runs after the optimizer. When loop health degrades it forces a
conservative policy patch that overrides whatever the optimizer chose.
"""

from __future__ import annotations

from datetime import datetime

from flywheel.engine.numeric import clamp, round_int
from flywheel.schemas.enums import AutonomyMode, OptimizationObjective, Priority
from flywheel.schemas.governance import GovernanceReport, GovernanceStatus
from flywheel.schemas.healing import (
    HealingSeverity,
    PolicyPatch,
    RecoveryItem,
    SelfHealingReport,
)
from flywheel.schemas.learning import LearningReport
from flywheel.schemas.policy import Backlog, DecisionPolicy
from flywheel.schemas.strategy import ExecutionWindowReport, StrategyLoopReport, WindowGateStatus

RECOVERY_PLAN_SIZE = 4

_ROI_LIFT = {Priority.HIGH: 8, Priority.MEDIUM: 5, Priority.LOW: 3}

_CONFIDENCE_SHIFT = {
    HealingSeverity.CRITICAL: -12,
    HealingSeverity.WATCH: -6,
    HealingSeverity.NONE: 2,
}


def healing_severity(
    governance: GovernanceReport, learning: LearningReport, window: ExecutionWindowReport,
) -> HealingSeverity:
    gate = window.gate.status
    if (
        governance.is_paused
        or gate == WindowGateStatus.BLOCKED
        or learning.stale_open_runs >= 3
        or governance.governance_score < 35
    ):
        return HealingSeverity.CRITICAL
    if (
        governance.status == GovernanceStatus.WATCH
        or gate == WindowGateStatus.HOLD
        or learning.positive_rate < 0.58
        or governance.governance_score < 60
    ):
        return HealingSeverity.WATCH
    return HealingSeverity.NONE


def _patch(
    severity: HealingSeverity,
    policy: DecisionPolicy,
    governance: GovernanceReport,
    loop: StrategyLoopReport,
    window: ExecutionWindowReport,
) -> PolicyPatch:
    cap = governance.constraints.max_actions_cap
    floor = governance.constraints.cooldown_floor_hours
    next_cadence = window.adaptation.next_cadence_hours

    if severity == HealingSeverity.CRITICAL:
        manual = governance.is_paused or policy.mode == AutonomyMode.MANUAL
        return PolicyPatch(
            objective=OptimizationObjective.STABILIZE,
            cadence_hours=max(next_cadence, loop.cadence_hours),
            mode=AutonomyMode.MANUAL if manual else AutonomyMode.ASSIST,
            max_actions_per_cycle=1,
            cooldown_hours=max(next_cadence, floor, policy.cooldown_hours),
        )
    if severity == HealingSeverity.WATCH:
        return PolicyPatch(
            objective=OptimizationObjective.BALANCED,
            cadence_hours=max(next_cadence, loop.cadence_hours),
            mode=AutonomyMode.ASSIST if policy.mode == AutonomyMode.AUTO else policy.mode,
            max_actions_per_cycle=int(clamp(min(policy.max_actions_per_cycle, cap), 1, 3)),
            cooldown_hours=min(24, max(floor, policy.cooldown_hours + 2)),
        )
    return PolicyPatch(
        objective=window.adaptation.recommended_objective,
        cadence_hours=next_cadence,
        mode=policy.mode,
        max_actions_per_cycle=int(clamp(min(policy.max_actions_per_cycle, cap), 1, 5)),
        cooldown_hours=max(policy.cooldown_hours, floor),
    )


def _triggers(
    governance: GovernanceReport, learning: LearningReport, window: ExecutionWindowReport,
) -> list[str]:
    triggers = []
    if not governance.is_healthy:
        triggers.append(f"Governance status is {governance.status}.")
    if window.gate.status != WindowGateStatus.READY:
        triggers.append(f"Execution gate is {window.gate.status}.")
    if learning.stale_open_runs > 0:
        triggers.append(
            f"{learning.stale_open_runs} stale open run(s) need closure to recover ROI loop speed."
        )
    if learning.positive_rate < 0.6:
        triggers.append(f"Positive outcome rate is {round_int(learning.positive_rate * 100)}%.")
    if not triggers:
        triggers.append("Loop is healthy; self-healing remains in observation mode.")
    return triggers


def build_self_healing_report(
    policy: DecisionPolicy,
    governance: GovernanceReport,
    learning: LearningReport,
    loop: StrategyLoopReport,
    window: ExecutionWindowReport,
    backlog: Backlog,
    *,
    now: datetime,
) -> SelfHealingReport:
    """Score loop health and propose a policy patch with a recovery plan.

    A critical severity always patches toward stabilize with a single
    action per cycle and never lowers the cooldown.
    """
    severity = healing_severity(governance, learning, window)
    roi_gap = int(clamp(
        round_int(
            100
            - learning.positive_rate * 60
            - (1 - governance.signals.risky_outcome_rate) * 20
            - max(0, 10 - backlog.summary.ready * 3)
        ),
        0,
        100,
    ))
    patch = _patch(severity, policy, governance, loop, window)

    ranked = sorted(backlog.items, key=lambda item: item.score, reverse=True)
    recovery = [
        RecoveryItem(
            recommendation_id=item.recommendation_id,
            title=item.title,
            priority=item.priority,
            status=item.status,
            reason=item.reason,
            target_objective=patch.objective,
            expected_roi_lift=_ROI_LIFT[item.priority],
        )
        for item in ranked[:RECOVERY_PLAN_SIZE]
    ]

    return SelfHealingReport(
        generated_at=now,
        severity=severity,
        roi_gap_score=roi_gap,
        triggers=_triggers(governance, learning, window),
        policy_patch=patch,
        recovery_plan=recovery,
        notes=[
            f"Self-healing severity is {severity}; ROI gap score is {roi_gap}.",
            f"Patch proposes {patch.mode} mode with {patch.max_actions_per_cycle} "
            f"max action(s) and {patch.cooldown_hours}h cooldown.",
            f"Cadence adapts toward {patch.cadence_hours}h with objective {patch.objective}.",
        ],
    )


def apply_self_healing_patch(policy: DecisionPolicy, report: SelfHealingReport) -> DecisionPolicy:
    patch = report.policy_patch
    return policy.revised(
        mode=patch.mode,
        max_actions_per_cycle=patch.max_actions_per_cycle,
        cooldown_hours=patch.cooldown_hours,
        confidence=int(clamp(policy.confidence + _CONFIDENCE_SHIFT[report.severity], 10, 99)),
        rationale=[f"Self-healing patch applied ({report.severity}) toward {patch.objective}."],
        guardrails=["Self-healing patch active: close recovery plan items before next escalation."],
    )
