"""Governance gate.

Scores loop health from learning signals and run history, and turns the
resulting status into hard caps on the decision policy.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from flywheel.engine.numeric import clamp, hours_between, round_half_up, round_int
from flywheel.schemas.enums import OutcomeDecision
from flywheel.schemas.governance import (
    GovernanceConstraints,
    GovernanceReport,
    GovernanceSignals,
    GovernanceStatus,
)
from flywheel.schemas.learning import LearningReport
from flywheel.schemas.policy import Backlog, DecisionPolicy
from flywheel.schemas.runs import Run

_COOLDOWN_FLOOR = {
    GovernanceStatus.HEALTHY: 6,
    GovernanceStatus.WATCH: 12,
    GovernanceStatus.PAUSED: 18,
}

_CONFIDENCE_PENALTY = {
    GovernanceStatus.HEALTHY: 0,
    GovernanceStatus.WATCH: 6,
    GovernanceStatus.PAUSED: 14,
}


def is_risky_outcome(run: Run) -> bool:
    if run.outcome_decision in (OutcomeDecision.ARCHIVE, OutcomeDecision.HOLD):
        return True
    delta = run.combined_delta
    return delta is not None and delta < -1


def _status(
    stale: int, longest: float, risky: float, automation_completed: int, rate: float,
) -> GovernanceStatus:
    if stale >= 4 or longest >= 120 or (automation_completed >= 4 and rate <= 0.28):
        return GovernanceStatus.PAUSED
    if stale >= 2 or risky >= 0.5 or (automation_completed >= 3 and rate < 0.5):
        return GovernanceStatus.WATCH
    return GovernanceStatus.HEALTHY


def build_governance_report(
    history: Sequence[Run],
    learning: LearningReport,
    policy: DecisionPolicy,
    backlog: Backlog | None = None,
    *,
    now: datetime,
) -> GovernanceReport:
    """Compute governance status, score and constraints.

    Args:
        history: Runs for one story.
        learning: Learning report over the same history.
        policy: Policy whose action budget a healthy loop keeps.
        backlog: Backlog whose ready count bounds the action cap.
        now: Evaluation instant.

    Returns:
        GovernanceReport. A paused status always disallows autorun.
    """
    completed = [run for run in history if run.is_completed]
    automation_completed = [run for run in completed if run.plan.counts_as_automation]
    open_runs = [run for run in history if not run.is_completed]

    risky = (
        sum(1 for run in automation_completed if is_risky_outcome(run)) / len(automation_completed)
        if automation_completed
        else 0.0
    )
    longest = max(
        (max(0.0, hours_between(run.created_at, now)) for run in open_runs), default=0.0,
    )
    stale = learning.stale_open_runs
    rate = learning.positive_rate

    status = _status(stale, longest, risky, len(automation_completed), rate)

    reasons: list[str] = []
    recommendations: list[str] = []
    if stale > 0:
        reasons.append(
            f"{stale} stale open run(s) detected; close stale cycles before scaling throughput."
        )
        recommendations.append("Run the outcome-closing agent before the next autonomous cycle.")
    if longest >= 72:
        reasons.append(
            f"Longest open run age is {round_int(longest)}h, signaling delayed feedback closure."
        )
    if risky >= 0.4:
        reasons.append(
            f"Risk-heavy outcomes are elevated ({round_int(risky * 100)}% archive/hold/negative)."
        )
        recommendations.append("Reduce cycle width and prioritize stabilization recommendations.")
    if rate >= 0.68 and stale == 0:
        recommendations.append("Healthy loop detected; controlled scale tests are safe.")
    if not reasons:
        reasons.append("Autonomy signals are stable and within governance thresholds.")
    if not recommendations:
        recommendations.append(
            "Continue monitored autonomous execution with periodic policy refresh."
        )

    if status == GovernanceStatus.HEALTHY:
        default_cap = policy.max_actions_per_cycle
    elif status == GovernanceStatus.WATCH:
        default_cap = 2
    else:
        default_cap = 1
    ready = backlog.summary.ready if backlog else 0
    cap = int(clamp(min(default_cap, max(1, ready or 1)), 1, 5))

    score = int(clamp(
        round_int(
            82
            + (rate - 0.5) * 45
            - stale * 6
            - risky * 22
            - (8 if longest >= 72 else 0)
        ),
        0,
        100,
    ))

    return GovernanceReport(
        generated_at=now,
        status=status,
        governance_score=score,
        constraints=GovernanceConstraints(
            allow_autorun=status != GovernanceStatus.PAUSED,
            max_actions_cap=cap,
            cooldown_floor_hours=int(clamp(_COOLDOWN_FLOOR[status], 4, 24)),
        ),
        signals=GovernanceSignals(
            completed_runs=len(completed),
            positive_rate=round_half_up(rate, 2),
            stale_open_runs=stale,
            risky_outcome_rate=round_half_up(risky, 2),
            longest_open_run_hours=round_half_up(longest, 1),
        ),
        reasons=reasons,
        recommendations=recommendations,
    )


def apply_governance(policy: DecisionPolicy, governance: GovernanceReport) -> DecisionPolicy:
    """Cap the policy's action budget and raise its cooldown to the floor."""
    constraints = governance.constraints
    guardrails = ["Honor governance action caps and cooldown floor before each autonomous run."]
    if governance.is_paused:
        guardrails.append(
            "Autorun paused by governance; force-run should be used only for "
            "emergency interventions."
        )
    return policy.revised(
        confidence=int(clamp(
            policy.confidence - _CONFIDENCE_PENALTY[governance.status], 15, 99,
        )),
        max_actions_per_cycle=min(policy.max_actions_per_cycle, constraints.max_actions_cap),
        cooldown_hours=max(policy.cooldown_hours, constraints.cooldown_floor_hours),
        rationale=[f"Governance {governance.status}: score {governance.governance_score}."],
        guardrails=guardrails,
    )
