"""Strategy loop: a three-cycle forward schedule.

Each cycle picks an optimizer objective, applies that profile to a
rolling policy and caps the result by governance constraints.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from flywheel.engine.numeric import clamp, round_int
from flywheel.engine.optimizer import apply_optimizer_profile
from flywheel.schemas.enums import OptimizationObjective
from flywheel.schemas.governance import GovernanceReport, GovernanceStatus
from flywheel.schemas.learning import LearningReport
from flywheel.schemas.policy import Backlog, DecisionPolicy
from flywheel.schemas.strategy import (
    CADENCE_OPTIONS,
    OptimizerReport,
    StrategyCycle,
    StrategyLoopReport,
)

CYCLE_COUNT = 3

STRATEGY_GUARDRAILS = [
    "Never exceed governance max action cap for any strategy cycle.",
    "Always honor governance cooldown floor before scheduling the next cycle.",
    "If governance enters paused state, force objective to stabilize until health recovers.",
]


def closest_cadence(hours: float) -> int:
    """Snap *hours* to the nearest cadence option; the faster one wins ties."""
    bounded = clamp(hours, CADENCE_OPTIONS[0], CADENCE_OPTIONS[-1])
    return min(CADENCE_OPTIONS, key=lambda option: abs(option - bounded))


def recommended_cadence(
    governance: GovernanceReport, learning: LearningReport, backlog: Backlog,
) -> int:
    if governance.status == GovernanceStatus.PAUSED:
        return 24
    if governance.status == GovernanceStatus.WATCH:
        return 12
    rate = learning.positive_rate
    if rate >= 0.75 and backlog.summary.ready >= 2 and learning.stale_open_runs == 0:
        return 6
    if rate >= 0.62:
        return 8
    return 12


def is_safe_window(governance: GovernanceReport, learning: LearningReport) -> bool:
    return (
        governance.is_healthy
        and learning.stale_open_runs == 0
        and governance.signals.risky_outcome_rate < 0.4
    )


def _cycle_objective(
    cycle: int,
    previous: OptimizationObjective,
    selected: OptimizationObjective,
    *,
    safe_window: bool,
    auto_optimize: bool,
    governance: GovernanceReport,
    learning: LearningReport,
    backlog: Backlog,
) -> tuple[OptimizationObjective, str]:
    if governance.is_paused:
        return (
            OptimizationObjective.STABILIZE,
            "Governance is paused; enforcing stabilize objective until loop health recovers.",
        )
    if cycle == 1:
        return selected, f"Operator-selected entry objective: {selected}."
    if not auto_optimize:
        return (
            selected,
            "Auto-optimization is disabled; cadence will reuse the selected objective.",
        )
    rate = learning.positive_rate
    if rate < 0.5 or learning.stale_open_runs >= 2:
        return (
            OptimizationObjective.STABILIZE,
            "Risk/staleness signals are elevated; shifting to stabilize objective.",
        )
    if safe_window and rate >= 0.7 and backlog.summary.ready >= 2:
        return (
            OptimizationObjective.GROWTH,
            "Healthy loop with ready backlog; upgrading cycle objective to growth.",
        )
    if previous == OptimizationObjective.GROWTH and not governance.is_healthy:
        return (
            OptimizationObjective.BALANCED,
            "Governance is no longer healthy; de-escalating from growth to balanced.",
        )
    return (
        OptimizationObjective.BALANCED,
        "Maintaining balanced objective for controlled throughput.",
    )


def build_strategy_loop(
    policy: DecisionPolicy,
    optimizer: OptimizerReport,
    governance: GovernanceReport,
    learning: LearningReport,
    backlog: Backlog,
    selected_objective: OptimizationObjective,
    *,
    now: datetime,
    cadence_hours: float | None = None,
    auto_optimize: bool | None = None,
) -> StrategyLoopReport:
    """Project the next three execution cycles.

    Args:
        policy: Policy the first cycle starts from.
        optimizer: Optimizer report supplying the profiles.
        governance: Governance report whose caps bound every cycle.
        learning: Learning report for escalation signals.
        backlog: Backlog whose ready count gates escalation.
        selected_objective: Operator-selected entry objective.
        now: Start of the first cycle window.
        cadence_hours: Optional cadence override, snapped to an option.
        auto_optimize: Override for objective progression; defaults to
            on when the window is safe, autorun is allowed and work is ready.

    Returns:
        StrategyLoopReport with exactly three cycles.
    """
    recommended = recommended_cadence(governance, learning, backlog)
    cadence = recommended if cadence_hours is None else closest_cadence(cadence_hours)
    safe_window = is_safe_window(governance, learning)
    if auto_optimize is None:
        auto_optimize = (
            safe_window
            and governance.constraints.allow_autorun
            and backlog.summary.ready > 0
        )

    notes = [
        f"Cadence selected at {cadence}h (recommended {recommended}h).",
        f"Loop health: {round_int(learning.positive_rate * 100)}% positive outcomes "
        f"with {learning.stale_open_runs} stale run(s).",
        (
            "Auto-optimization is enabled and will rebalance future cycles when "
            "loop signals drift."
            if auto_optimize
            else "Auto-optimization is currently off; objective progression stays "
            "operator-controlled."
        ),
    ]

    cap = governance.constraints.max_actions_cap
    floor = governance.constraints.cooldown_floor_hours
    step = timedelta(hours=cadence)
    cycles: list[StrategyCycle] = []
    rolling_policy = policy
    rolling_objective = selected_objective

    for cycle in range(1, CYCLE_COUNT + 1):
        objective, rationale = _cycle_objective(
            cycle,
            rolling_objective,
            selected_objective,
            safe_window=safe_window,
            auto_optimize=auto_optimize,
            governance=governance,
            learning=learning,
            backlog=backlog,
        )
        optimized = apply_optimizer_profile(rolling_policy, optimizer, objective)
        max_actions = min(optimized.max_actions_per_cycle, cap)
        cooldown = max(optimized.cooldown_hours, floor)
        start = now + step * (cycle - 1)

        cycles.append(StrategyCycle(
            cycle=cycle,
            objective=objective,
            mode=optimized.mode,
            max_actions_per_cycle=max_actions,
            cooldown_hours=cooldown,
            scheduled_window_start=start,
            scheduled_window_end=start + step,
            rationale=rationale,
        ))

        rolling_objective = objective
        rolling_policy = optimized.revised(
            max_actions_per_cycle=max_actions, cooldown_hours=cooldown,
        )

    return StrategyLoopReport(
        generated_at=now,
        selected_objective=selected_objective,
        recommended_cadence_hours=recommended,
        cadence_hours=cadence,
        auto_optimize_enabled=auto_optimize,
        safe_window=safe_window,
        next_refresh_at=now + step,
        cycles=cycles,
        guardrails=list(STRATEGY_GUARDRAILS),
        notes=notes,
    )
