"""Execution window gate.

Evaluates the active strategy cycle against run outcomes recorded in its
window and adapts the next cadence one step at a time.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from flywheel.engine.learning import is_positive_outcome
from flywheel.engine.numeric import clamp, round_half_up, round_int
from flywheel.schemas.enums import OptimizationObjective
from flywheel.schemas.governance import GovernanceReport
from flywheel.schemas.learning import LearningReport
from flywheel.schemas.policy import Backlog
from flywheel.schemas.runs import Run
from flywheel.schemas.strategy import (
    CADENCE_OPTIONS,
    ExecutionWindowReport,
    StrategyCycle,
    StrategyLoopReport,
    WindowAdaptation,
    WindowGate,
    WindowGateStatus,
    WindowPreview,
)

_DEFAULT_CADENCE_INDEX = CADENCE_OPTIONS.index(12)


def active_cycle(loop: StrategyLoopReport, now: datetime) -> StrategyCycle | None:
    """Cycle containing *now*, else the first upcoming one, else the last."""
    if not loop.cycles:
        return None
    for cycle in loop.cycles:
        if cycle.contains(now):
            return cycle
    for cycle in loop.cycles:
        if cycle.scheduled_window_start > now:
            return cycle
    return loop.cycles[-1]


def runs_in_window(history: Sequence[Run], cycle: StrategyCycle) -> list[Run]:
    return [run for run in history if cycle.contains(run.created_at)]


def _next_objective(
    status: WindowGateStatus, rate: float, governance: GovernanceReport,
) -> OptimizationObjective:
    if status in (WindowGateStatus.BLOCKED, WindowGateStatus.HOLD):
        return OptimizationObjective.STABILIZE
    if governance.is_healthy and rate >= 0.75:
        return OptimizationObjective.GROWTH
    return OptimizationObjective.BALANCED


def build_window_report(
    loop: StrategyLoopReport,
    history: Sequence[Run],
    learning: LearningReport,
    governance: GovernanceReport,
    backlog: Backlog,
    *,
    now: datetime,
) -> ExecutionWindowReport:
    cycle = active_cycle(loop, now)
    stale = learning.stale_open_runs
    cap = governance.constraints.max_actions_cap

    reasons: list[str] = []
    status = WindowGateStatus.READY
    completed_count = 0
    rate = 0.0

    if cycle is None:
        status = WindowGateStatus.HOLD
        reasons.append("No active strategy cycle window is available.")
    else:
        completed = [run for run in runs_in_window(history, cycle) if run.is_completed]
        completed_count = len(completed)
        if completed:
            rate = sum(1 for run in completed if is_positive_outcome(run)) / len(completed)

        if governance.is_paused:
            status = WindowGateStatus.BLOCKED
            reasons.append("Governance is paused; execution window is blocked.")
        elif stale >= 2:
            status = WindowGateStatus.HOLD
            reasons.append(
                f"{stale} stale open runs detected; close outcome debt before progressing cadence."
            )
        elif completed_count == 0:
            status = WindowGateStatus.HOLD
            reasons.append("No completed outcomes in the active window yet.")
        elif rate < 0.55:
            status = WindowGateStatus.HOLD
            reasons.append(
                f"Window positive rate is {round_int(rate * 100)}%; need >= 55% to "
                "unlock cadence progression."
            )

    if not reasons:
        reasons.append("Execution window is healthy and outcome-gated progression is available.")

    index = (
        CADENCE_OPTIONS.index(loop.cadence_hours)
        if loop.cadence_hours in CADENCE_OPTIONS
        else _DEFAULT_CADENCE_INDEX
    )
    next_index = index
    reason = "Cadence remains stable based on current window outcomes."
    if status == WindowGateStatus.READY and rate >= 0.8 and stale == 0:
        next_index = max(0, index - 1)
        reason = "Strong window outcomes detected; cadence can accelerate one step."
    elif status == WindowGateStatus.BLOCKED:
        next_index = min(len(CADENCE_OPTIONS) - 1, index + 1)
        reason = "Governance blocked window; cadence is slowed for safety."
    elif status == WindowGateStatus.HOLD:
        next_index = min(len(CADENCE_OPTIONS) - 1, index + 1)
        reason = "Outcome gate is on hold; cadence is slowed until positive closure improves."

    if cycle is not None:
        max_actions = int(clamp(min(cycle.max_actions_per_cycle, cap), 1, 5))
    else:
        max_actions = max(1, cap)

    return ExecutionWindowReport(
        generated_at=now,
        active_cycle=cycle,
        gate=WindowGate(
            status=status,
            reasons=reasons,
            window_completed_runs=completed_count,
            window_positive_rate=round_half_up(rate, 2),
            stale_open_runs=stale,
        ),
        adaptation=WindowAdaptation(
            next_cadence_hours=CADENCE_OPTIONS[next_index],
            recommended_objective=_next_objective(status, rate, governance),
            reason=reason,
        ),
        preview=WindowPreview(
            ready_backlog_items=backlog.summary.ready,
            max_actions=max_actions,
        ),
    )
