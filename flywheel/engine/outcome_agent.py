"""Outcome-closing agent.

Finds open runs that have gone stale and proposes a closing decision
for each, using the story's current metrics as the outcome snapshot.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from flywheel.engine.numeric import clamp, hours_between, round_half_up, round_int
from flywheel.schemas.enums import OutcomeDecision
from flywheel.schemas.learning import LearningReport
from flywheel.schemas.metrics import MetricsSnapshot
from flywheel.schemas.outcome import OutcomeAgentPlan, OutcomeAgentSummary, OutcomeCandidate
from flywheel.schemas.runs import Run

DEFAULT_STALE_AFTER_HOURS = 18
DEFAULT_MAX_RUNS = 3

DECISION_NOTES: dict[OutcomeDecision, str] = {
    OutcomeDecision.SCALE: (
        "Auto-close as scale: combined signal improved materially since baseline."
    ),
    OutcomeDecision.ITERATE: (
        "Auto-close as iterate: partial progress detected; continue next cycle with refinements."
    ),
    OutcomeDecision.HOLD: (
        "Auto-close as hold: weak progression signal; pause and rebalance before next run."
    ),
    OutcomeDecision.ARCHIVE: (
        "Auto-close as archive: prolonged stagnation with negative signal drift."
    ),
}


def suggest_decision(age_hours: float, combined_delta: float | None) -> OutcomeDecision:
    if combined_delta is None:
        return OutcomeDecision.ARCHIVE if age_hours >= 96 else OutcomeDecision.ITERATE
    if combined_delta >= 5:
        return OutcomeDecision.SCALE
    if combined_delta < 0 and age_hours >= 72:
        return OutcomeDecision.ARCHIVE
    return OutcomeDecision.ITERATE


def build_outcome_agent_plan(
    history: Sequence[Run],
    current_metrics: MetricsSnapshot,
    learning: LearningReport,
    *,
    now: datetime,
    stale_after_hours: float = DEFAULT_STALE_AFTER_HOURS,
) -> OutcomeAgentPlan:
    """Propose closing decisions for stale open runs, oldest first."""
    open_runs = [run for run in history if not run.is_completed]
    stale = [run for run in open_runs if hours_between(run.created_at, now) > stale_after_hours]
    current = current_metrics.combined_score

    candidates = []
    for run in stale:
        baseline = run.baseline_metrics.combined_score
        delta = (
            round_half_up(current - baseline, 2)
            if baseline is not None and current is not None
            else None
        )
        age = round_half_up(hours_between(run.created_at, now), 1)
        decision = suggest_decision(age, delta)
        candidates.append(OutcomeCandidate(
            run_id=run.id,
            sprint_objective=run.sprint_objective,
            age_hours=age,
            baseline_combined=baseline,
            current_combined=current,
            combined_delta=delta,
            suggested_outcome_decision=decision,
            suggested_outcome_notes=DECISION_NOTES[decision],
            suggested_outcome_metrics=current_metrics,
        ))
    candidates.sort(key=lambda candidate: candidate.age_hours, reverse=True)

    notes = []
    if candidates:
        notes.append(
            f"{len(candidates)} stale run(s) can be auto-closed to keep learning "
            "and policy loops current."
        )
    else:
        notes.append("No stale open runs detected; outcome-closing agent is idle.")
    if learning.stale_open_runs > 0:
        notes.append(
            f"Learning flagged {learning.stale_open_runs} stale run(s); close these "
            "before the next autorun cycle."
        )

    return OutcomeAgentPlan(
        generated_at=now,
        candidates=candidates,
        summary=OutcomeAgentSummary(
            total_open_runs=len(open_runs),
            stale_open_runs=len(stale),
            close_candidates=len(candidates),
        ),
        notes=notes,
    )


def select_outcome_candidates(
    plan: OutcomeAgentPlan, max_runs: float = DEFAULT_MAX_RUNS,
) -> list[OutcomeCandidate]:
    """First candidates in plan order, bounded to [1, 10]."""
    bounded = int(clamp(round_int(max_runs), 1, 10))
    return plan.candidates[:bounded]


def closing_note(candidate: OutcomeCandidate, prefix: str | None = None) -> str:
    return f"{(prefix or '').strip()} {candidate.suggested_outcome_notes}".strip()
