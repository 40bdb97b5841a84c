"""Policy learning over run history.

Classifies completed runs as positive or not, aggregates per-mode and
per-recommendation performance and derives suggested policy knobs.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from flywheel.engine.numeric import clamp, hours_between, round_half_up, round_int
from flywheel.schemas.enums import AutonomyMode, OutcomeDecision
from flywheel.schemas.learning import (
    LearningRecommendations,
    LearningReport,
    LearningTotals,
    ModePerformance,
    RecommendationPerformance,
)
from flywheel.schemas.policy import DecisionPolicy
from flywheel.schemas.runs import Run

# Open runs older than this count as stale
STALE_OPEN_HOURS = 18


def is_positive_outcome(run: Run) -> bool:
    """Whether a completed run's outcome counts as a win."""
    decision = run.outcome_decision
    if decision == OutcomeDecision.ARCHIVE:
        return False
    delta = run.combined_delta
    if delta is not None:
        if decision == OutcomeDecision.SCALE:
            return delta >= -2
        if decision == OutcomeDecision.HOLD:
            return delta >= -1
        return delta >= 0
    return decision in (OutcomeDecision.SCALE, OutcomeDecision.ITERATE)


def is_stale_open(run: Run, now: datetime) -> bool:
    return not run.is_completed and hours_between(run.created_at, now) > STALE_OPEN_HOURS


@dataclass
class _Tally:
    runs: int = 0
    completed: int = 0
    positive: int = 0
    deltas: list[float] = field(default_factory=list)

    def add(self, run: Run) -> None:
        self.runs += 1
        if not run.is_completed:
            return
        self.completed += 1
        if is_positive_outcome(run):
            self.positive += 1
        if run.combined_delta is not None:
            self.deltas.append(run.combined_delta)

    @property
    def positive_rate(self) -> float:
        return round_half_up(self.positive / self.completed, 2) if self.completed else 0.0

    @property
    def avg_delta(self) -> float:
        return round_half_up(sum(self.deltas) / len(self.deltas), 2) if self.deltas else 0.0


def _outcome_bias(completed: Iterable[Run]) -> OutcomeDecision:
    tallies: dict[OutcomeDecision, _Tally] = {}
    for run in completed:
        if run.outcome_decision is None:
            continue
        tallies.setdefault(run.outcome_decision, _Tally()).add(run)
    if not tallies:
        return OutcomeDecision.ITERATE
    # sorted() is stable, so first-seen decisions win full ties
    ranked = sorted(
        tallies.items(),
        key=lambda item: (item[1].positive / item[1].runs, item[1].runs),
        reverse=True,
    )
    return ranked[0][0]


def _recommended_mode(completed: int, rate: float, stale: int) -> AutonomyMode:
    if completed >= 4 and rate >= 0.68 and stale <= 1:
        return AutonomyMode.AUTO
    if completed >= 4 and rate < 0.4:
        return AutonomyMode.MANUAL
    return AutonomyMode.ASSIST


def _suggested_max_actions(mode: AutonomyMode, rate: float) -> int:
    if mode == AutonomyMode.MANUAL:
        return 1
    if mode == AutonomyMode.ASSIST:
        return 2 if rate >= 0.6 else 1
    return 3 if rate >= 0.75 else 2


def _notes(completed: int, stale: int, rate: float) -> list[str]:
    notes = []
    if completed < 3:
        notes.append("Learning confidence is low; fewer than 3 completed runs are available.")
    if stale > 0:
        notes.append(
            f"{stale} open run(s) are stale and should be auto-closed to keep the loop healthy."
        )
    if rate >= 0.7:
        notes.append("Positive outcome rate is strong; policy can safely increase throughput.")
    elif 0 < rate < 0.45:
        notes.append(
            "Positive outcome rate is weak; reduce autonomy aggressiveness until metrics recover."
        )
    if not notes:
        notes.append(
            "Policy behavior is stable; continue periodic learning refresh after each cycle."
        )
    return notes


def build_learning_report(history: Sequence[Run], *, now: datetime) -> LearningReport:
    """Aggregate run history into learning signals.

    Args:
        history: Runs for one story, any order.
        now: Evaluation instant used for staleness.

    Returns:
        LearningReport with totals, suggested knobs, per-mode and
        per-recommendation performance, and notes.
    """
    completed = [run for run in history if run.is_completed]
    stale = sum(1 for run in history if is_stale_open(run, now))

    overall = _Tally()
    for run in completed:
        overall.add(run)
    rate = overall.positive / len(completed) if completed else 0.0

    by_mode: dict[AutonomyMode, _Tally] = {mode: _Tally() for mode in AutonomyMode}
    by_recommendation: dict[str, _Tally] = {}
    for run in history:
        by_mode[run.plan.mode].add(run)
        recommendation_id = run.plan.executed_recommendation_id
        if recommendation_id:
            by_recommendation.setdefault(recommendation_id, _Tally()).add(run)

    mode_performance = [
        ModePerformance(
            mode=mode,
            runs=tally.runs,
            completed_runs=tally.completed,
            positive_rate=tally.positive_rate,
            avg_combined_delta=tally.avg_delta,
        )
        for mode, tally in by_mode.items()
    ]
    recommendation_performance = [
        RecommendationPerformance(
            recommendation_id=recommendation_id,
            runs=tally.runs,
            completed_runs=tally.completed,
            positive_rate=tally.positive_rate,
            avg_combined_delta=tally.avg_delta,
        )
        for recommendation_id, tally in sorted(
            by_recommendation.items(), key=lambda item: item[1].runs, reverse=True,
        )
    ][:12]

    mode = _recommended_mode(len(completed), rate, stale)
    cooldown = int(clamp(
        round_int(
            12
            + (-3 if rate >= 0.65 else 0)
            + (4 if rate < 0.45 else 0)
            + (3 if stale >= 2 else 0)
        ),
        6,
        24,
    ))

    return LearningReport(
        generated_at=now,
        totals=LearningTotals(
            total_runs=len(history),
            completed_runs=len(completed),
            stale_open_runs=stale,
            positive_completed_runs=overall.positive,
            overall_positive_rate=round_half_up(rate, 2),
            avg_combined_delta=overall.avg_delta,
        ),
        recommendations=LearningRecommendations(
            recommended_mode=mode,
            suggested_cooldown_hours=cooldown,
            suggested_max_actions_per_cycle=_suggested_max_actions(mode, rate),
            recommended_outcome_bias=_outcome_bias(completed),
        ),
        mode_performance=mode_performance,
        recommendation_performance=recommendation_performance,
        notes=_notes(len(completed), stale, rate),
    )


def apply_learning(
    policy: DecisionPolicy,
    learning: LearningReport,
    lock_mode: AutonomyMode | None = None,
) -> DecisionPolicy:
    """Blend learning signals into a decision policy.

    A caller-supplied *lock_mode* wins over the learned mode.
    """
    rate = learning.positive_rate
    stale = learning.stale_open_runs
    confidence = int(clamp(
        round_int(policy.confidence * 0.7 + rate * 100 * 0.3 + (-5 if stale > 0 else 3)),
        30,
        97,
    ))
    return policy.revised(
        mode=lock_mode or learning.recommendations.recommended_mode,
        confidence=confidence,
        max_actions_per_cycle=learning.recommendations.suggested_max_actions_per_cycle,
        cooldown_hours=learning.recommendations.suggested_cooldown_hours,
        rationale=[
            f"Learning loop: overall positive rate {round_int(rate * 100)}%.",
            f"Learning loop: stale open runs {stale}.",
        ],
        guardrails=[
            "If stale open runs exceed 2, run outcome-closing agent before next "
            "autonomous cycle.",
        ],
    )
