"""Optimizer: three named policy profiles and a recommended objective."""

from __future__ import annotations

from datetime import datetime

from flywheel.engine.numeric import clamp, round_int
from flywheel.schemas.enums import AutonomyMode, OptimizationObjective
from flywheel.schemas.governance import GovernanceReport, GovernanceStatus
from flywheel.schemas.learning import LearningReport
from flywheel.schemas.policy import Backlog, DecisionPolicy
from flywheel.schemas.strategy import (
    ExpectedImpact,
    OptimizerProfile,
    OptimizerReport,
    PolicyOverride,
)

_CONFIDENCE_SHIFT = {
    OptimizationObjective.STABILIZE: 8,
    OptimizationObjective.BALANCED: 2,
    OptimizationObjective.GROWTH: -6,
}


def _profiles(policy: DecisionPolicy, governance: GovernanceReport) -> list[OptimizerProfile]:
    cap = governance.constraints.max_actions_cap
    floor = governance.constraints.cooldown_floor_hours
    healthy = governance.is_healthy

    if policy.mode == AutonomyMode.AUTO and not healthy:
        balanced_mode = AutonomyMode.ASSIST
    else:
        balanced_mode = policy.mode

    return [
        OptimizerProfile(
            objective=OptimizationObjective.STABILIZE,
            label="Stabilize Loop",
            rationale=(
                "Prioritize safety and canon reliability while reducing throughput volatility."
            ),
            policy_override=PolicyOverride(
                mode=AutonomyMode.MANUAL if governance.is_paused else AutonomyMode.ASSIST,
                max_actions_per_cycle=1,
                cooldown_hours=int(clamp(
                    max(policy.cooldown_hours + 2, floor + 2), 6, 24,
                )),
            ),
            expected_impact=ExpectedImpact(velocity_delta=-18, risk_delta=-28, confidence_delta=6),
        ),
        OptimizerProfile(
            objective=OptimizationObjective.BALANCED,
            label="Balanced Throughput",
            rationale=(
                "Maintain measured delivery speed while preserving governance-safe constraints."
            ),
            policy_override=PolicyOverride(
                mode=balanced_mode,
                max_actions_per_cycle=int(clamp(min(policy.max_actions_per_cycle, cap), 1, 5)),
                cooldown_hours=int(clamp(max(policy.cooldown_hours, floor), 4, 24)),
            ),
            expected_impact=ExpectedImpact(velocity_delta=4, risk_delta=-6, confidence_delta=4),
        ),
        OptimizerProfile(
            objective=OptimizationObjective.GROWTH,
            label="Scale Window",
            rationale=(
                "Maximize cycle output when loop health is strong and stale debt is under control."
            ),
            policy_override=PolicyOverride(
                mode=AutonomyMode.AUTO if healthy else AutonomyMode.ASSIST,
                max_actions_per_cycle=int(clamp(
                    min(cap, max(policy.max_actions_per_cycle, 2)), 1, 5,
                )),
                cooldown_hours=int(clamp(max(floor, policy.cooldown_hours - 2), 4, 24)),
            ),
            expected_impact=ExpectedImpact(velocity_delta=20, risk_delta=14, confidence_delta=-4),
        ),
    ]


def recommended_objective(
    governance: GovernanceReport, learning: LearningReport, backlog: Backlog,
) -> OptimizationObjective:
    rate = learning.positive_rate
    if governance.is_paused or learning.stale_open_runs >= 3 or rate < 0.45:
        return OptimizationObjective.STABILIZE
    if (
        governance.status == GovernanceStatus.HEALTHY
        and rate >= 0.68
        and backlog.summary.ready >= 2
    ):
        return OptimizationObjective.GROWTH
    return OptimizationObjective.BALANCED


def build_optimizer_report(
    policy: DecisionPolicy,
    learning: LearningReport,
    governance: GovernanceReport,
    backlog: Backlog,
    *,
    now: datetime,
) -> OptimizerReport:
    objective = recommended_objective(governance, learning, backlog)

    notes = []
    if objective == OptimizationObjective.STABILIZE:
        notes.append("Optimizer recommends stabilization due to loop-health risk signals.")
    elif objective == OptimizationObjective.GROWTH:
        notes.append("Optimizer detected a healthy scale window with sufficient ready backlog.")
    notes.append(
        f"Governance status is {governance.status}; "
        f"max action cap is {governance.constraints.max_actions_cap}."
    )
    notes.append(
        f"Learning signals: {round_int(learning.positive_rate * 100)}% positive outcomes, "
        f"{learning.stale_open_runs} stale open run(s)."
    )

    return OptimizerReport(
        generated_at=now,
        recommended_objective=objective,
        profiles=_profiles(policy, governance),
        notes=notes,
    )


def apply_optimizer_profile(
    policy: DecisionPolicy,
    report: OptimizerReport,
    objective: OptimizationObjective,
) -> DecisionPolicy:
    """Apply the profile for *objective* (balanced when it is missing)."""
    profile = report.profile(objective)
    override = profile.policy_override
    return policy.revised(
        mode=override.mode,
        max_actions_per_cycle=override.max_actions_per_cycle,
        cooldown_hours=override.cooldown_hours,
        confidence=int(clamp(policy.confidence + _CONFIDENCE_SHIFT[profile.objective], 10, 99)),
        rationale=[f"Optimizer objective applied: {profile.label}."],
        guardrails=[f"Optimizer objective {profile.objective} active; reassess after one cycle."],
    )
