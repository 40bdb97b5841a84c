"""Outcome-agent schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from flywheel.schemas.enums import OutcomeDecision
from flywheel.schemas.metrics import MetricsSnapshot
from flywheel.schemas.upstream import SprintObjective


class OutcomeCandidate(BaseModel):
    """A stale open run with a proposed closing decision."""

    run_id: str
    sprint_objective: SprintObjective
    age_hours: float
    baseline_combined: float | None = None
    current_combined: float | None = None
    combined_delta: float | None = None
    suggested_outcome_decision: OutcomeDecision
    suggested_outcome_notes: str
    suggested_outcome_metrics: MetricsSnapshot


class OutcomeAgentSummary(BaseModel):
    total_open_runs: int = 0
    stale_open_runs: int = 0
    close_candidates: int = 0


class OutcomeAgentPlan(BaseModel):
    generated_at: datetime
    candidates: list[OutcomeCandidate] = Field(default_factory=list)
    summary: OutcomeAgentSummary = Field(default_factory=OutcomeAgentSummary)
    notes: list[str] = Field(default_factory=list)
