"""Metrics normalization and the operating-plan builder.

Turns upstream reports into the eight-field baseline snapshot, classifies
it into a score band, diffs it against the previous run and lays out the
three standing priority tracks.
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from datetime import datetime

from flywheel.engine.numeric import clamp, round_half_up, round_int
from flywheel.schemas.automation import OperatingPlan, PriorityTrack, ScoreBand
from flywheel.schemas.enums import Priority
from flywheel.schemas.metrics import (
    METRIC_LABELS,
    SCORE_KEYS,
    MetricDelta,
    MetricKey,
    MetricsSnapshot,
    RunDeltaReport,
)
from flywheel.schemas.runs import Run
from flywheel.schemas.upstream import RoleAgentId, RoleBoard, StoryContext

# Accepted spellings for each metric key in persisted blobs
_KEY_ALIASES: dict[MetricKey, tuple[str, ...]] = {
    key: (key.value, "".join(
        part if i == 0 else part.capitalize()
        for i, part in enumerate(key.value.split("_"))
    ))
    for key in MetricKey
}


def _to_number(value: object) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def normalize_metrics(value: object) -> MetricsSnapshot:
    """Coerce an arbitrary persisted blob into a MetricsSnapshot.

    Args:
        value: A mapping with camelCase or snake_case metric keys, or an
            existing snapshot. Anything else yields an empty snapshot.

    Returns:
        Snapshot with scores clamped to [0, 100] and counts floored at 0.
        Keys that are missing or not numeric stay ``None``.
    """
    if isinstance(value, MetricsSnapshot):
        return value.model_copy()
    if not isinstance(value, Mapping):
        return MetricsSnapshot()

    fields: dict[str, float] = {}
    for key, aliases in _KEY_ALIASES.items():
        number = None
        for alias in aliases:
            number = _to_number(value.get(alias))
            if number is not None:
                break
        if number is None:
            continue
        fields[key.value] = clamp(number, 0, 100) if key in SCORE_KEYS else max(0.0, number)
    return MetricsSnapshot(**fields)


def build_metrics(context: StoryContext, board: RoleBoard | None = None) -> MetricsSnapshot:
    """Compute the baseline snapshot from upstream reports."""
    board = board or context.role_board
    ip, merch = context.ip_report, context.merch_report

    owned = sum(1 for card in board.roster if card.owner_user_id)
    role_coverage = round_int(clamp(owned / max(len(board.roster), 1) * 100, 0, 100))
    combined = round_int(clamp(
        ip.overall_score * 0.38
        + ip.retention_potential_score * 0.2
        + merch.overall_score * 0.24
        + role_coverage * 0.18,
        0,
        100,
    ))

    return MetricsSnapshot(
        combined_score=combined,
        ip_overall=ip.overall_score,
        retention_potential=ip.retention_potential_score,
        merch_signal=merch.overall_score,
        role_coverage=role_coverage,
        collaborator_count=len(board.participants),
        remix_count=ip.signals.remix_count,
        page_count=ip.signals.page_count,
    )


def score_band(combined_score: float) -> ScoreBand:
    if combined_score >= 78:
        return ScoreBand.AGGRESSIVE
    if combined_score >= 58:
        return ScoreBand.BALANCED
    return ScoreBand.STABILIZE


def _delta(current: float, previous: float) -> float:
    return round_half_up((current - previous) * 10) / 10


def build_metric_deltas(
    current: MetricsSnapshot, previous: MetricsSnapshot,
) -> list[MetricDelta]:
    deltas = []
    for key in MetricKey:
        value = current.get(key) or 0.0
        before = previous.get(key)
        deltas.append(MetricDelta(
            key=key,
            label=METRIC_LABELS[key],
            current=value,
            previous=before,
            delta=None if before is None else _delta(value, before),
        ))
    return deltas


def previous_run_metrics(history: Sequence[Run]) -> MetricsSnapshot:
    """Metrics recorded by the latest run (newest-first history).

    Uses the outcome snapshot when it carries a combined score, else the
    baseline the run was planned against.
    """
    if not history:
        return MetricsSnapshot()
    latest = history[0]
    if latest.outcome_metrics.combined_score is not None:
        return latest.outcome_metrics
    return latest.baseline_metrics


def _first_check(board: RoleBoard, role_id: RoleAgentId, fallback: str) -> str:
    card = board.card(role_id)
    if card and card.checklist:
        return card.checklist[0]
    return fallback


def build_priority_tracks(context: StoryContext, board: RoleBoard) -> list[PriorityTrack]:
    ip_low = context.ip_report.overall_score < 60
    merch_low = context.merch_report.overall_score < 58
    candidates = context.merch_report.candidates
    top_title = candidates[0].title if candidates and candidates[0].title else None

    return [
        PriorityTrack(
            id="canon-and-story",
            label="Canon + Narrative Reliability",
            owner_role_agent_id=RoleAgentId.CONTINUITY_DIRECTOR,
            priority=Priority.HIGH if ip_low else Priority.MEDIUM,
            rationale=(
                "Story readiness is below expansion threshold; continuity must stabilize first."
                if ip_low
                else "Continuity is stable enough for measured scale."
            ),
            next_actions=[
                _first_check(
                    board, RoleAgentId.CONTINUITY_DIRECTOR,
                    "Review continuity risks before each generation run.",
                ),
                _first_check(
                    board, RoleAgentId.STORY_ARCHITECT,
                    "Ship one high-clarity narrative beat this sprint.",
                ),
            ],
        ),
        PriorityTrack(
            id="merch-validation",
            label="Merch Validation Loop",
            owner_role_agent_id=RoleAgentId.MERCH_OPERATOR,
            priority=Priority.HIGH if merch_low else Priority.MEDIUM,
            rationale=(
                "Merch signal is early; run low-risk tests and collect structured demand feedback."
                if merch_low
                else "Signals are healthy enough for staged pilot execution."
            ),
            next_actions=[
                _first_check(
                    board, RoleAgentId.MERCH_OPERATOR,
                    "Select one candidate and define success metric.",
                ),
                f"Use top candidate: {top_title or 'Define first candidate.'}",
            ],
        ),
        PriorityTrack(
            id="distribution-and-feedback",
            label="Distribution + Feedback Cycle",
            owner_role_agent_id=RoleAgentId.DISTRIBUTION_OPERATOR,
            priority=Priority.MEDIUM,
            rationale=(
                "Distribution execution should feed measurable insights back "
                "into story and merch iterations."
            ),
            next_actions=[
                _first_check(
                    board, RoleAgentId.DISTRIBUTION_OPERATOR,
                    "Schedule channel launch windows and CTA checks.",
                ),
                "Run post-launch review and update next sprint objective with measured deltas.",
            ],
        ),
    ]


def build_rollout_note(band: ScoreBand, deltas: Sequence[MetricDelta]) -> str:
    if band == ScoreBand.AGGRESSIVE:
        return (
            "Run aggressive but controlled scaling: keep quality gates strict "
            "while increasing launch cadence."
        )
    if band == ScoreBand.STABILIZE:
        return (
            "Stabilize core story and merch signals before expanding scope; "
            "prioritize reliability over volume."
        )
    positive = sum(1 for d in deltas if d.delta is not None and d.delta > 0)
    if positive >= 3:
        return (
            "Balanced scale path is healthy; keep current cadence and compound "
            "wins with one new experiment."
        )
    return (
        "Balanced mode with caution: maintain cadence, tighten weak signals, "
        "and re-evaluate after one sprint."
    )


def build_operating_plan(
    context: StoryContext,
    *,
    now: datetime,
    board: RoleBoard | None = None,
    previous_metrics: MetricsSnapshot | None = None,
) -> OperatingPlan:
    """Build the operating plan for a story.

    Args:
        context: Story context with upstream reports.
        now: Evaluation instant.
        board: Role board to plan against (defaults to the context's).
        previous_metrics: Snapshot to diff against, usually
            :func:`previous_run_metrics` of the run history.

    Returns:
        OperatingPlan with baseline metrics, deltas and priority tracks.
    """
    board = board or context.role_board
    baseline = build_metrics(context, board)
    deltas = build_metric_deltas(baseline, previous_metrics or MetricsSnapshot())
    band = score_band(baseline.combined_score or 0)

    return OperatingPlan(
        generated_at=now,
        story_slug=context.slug,
        story_title=context.title,
        sprint_objective=board.sprint_objective,
        horizon_days=board.horizon_days,
        score_band=band,
        baseline_metrics=baseline,
        metric_deltas=deltas,
        priority_tracks=build_priority_tracks(context, board),
        execution_loop=list(board.sync_cadence),
        blocker_watchlist=list(board.coordination_risks),
        rollout_note=build_rollout_note(band, deltas),
    )


def build_run_delta_report(run: Run) -> RunDeltaReport:
    """Compare a run's outcome against its baseline, metric by metric."""
    baseline = MetricsSnapshot(**{
        key.value: run.baseline_metrics.get(key) or 0.0 for key in MetricKey
    })
    outcome = run.outcome_metrics

    deltas = []
    for key in MetricKey:
        before = baseline.get(key) or 0.0
        after = outcome.get(key)
        deltas.append(MetricDelta(
            key=key,
            label=METRIC_LABELS[key],
            current=before if after is None else after,
            previous=before,
            delta=None if after is None else _delta(after, before),
        ))

    positive = sum(1 for d in deltas if d.delta is not None and d.delta > 0)
    negative = sum(1 for d in deltas if d.delta is not None and d.delta < 0)
    if positive > negative:
        summary = "Run improved more metrics than it regressed."
    elif negative > positive:
        summary = "Run regressed on key metrics; tighten plan before scaling."
    else:
        summary = "Run produced mixed/neutral outcomes; iterate with focused scope."

    return RunDeltaReport(
        run_id=run.id,
        status=run.status.value,
        baseline_metrics=baseline,
        outcome_metrics=outcome,
        deltas=deltas,
        summary=summary,
    )
