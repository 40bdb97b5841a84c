"""Policy-learning report schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from flywheel.schemas.enums import AutonomyMode, OutcomeDecision


class PerformanceStats(BaseModel):
    """Run and outcome statistics for one slice of history."""

    runs: int = 0
    completed_runs: int = 0
    positive_rate: float = Field(default=0.0, description="Positive / completed, 2 decimals")
    avg_combined_delta: float = Field(default=0.0, description="Mean combined delta, 2 decimals")


class ModePerformance(PerformanceStats):
    mode: AutonomyMode


class RecommendationPerformance(PerformanceStats):
    recommendation_id: str


class LearningTotals(BaseModel):
    total_runs: int = 0
    completed_runs: int = 0
    stale_open_runs: int = 0
    positive_completed_runs: int = 0
    overall_positive_rate: float = 0.0
    avg_combined_delta: float = 0.0


class LearningRecommendations(BaseModel):
    """Policy knobs suggested by run history."""

    recommended_mode: AutonomyMode = AutonomyMode.ASSIST
    suggested_cooldown_hours: int = Field(default=12, ge=6, le=24)
    suggested_max_actions_per_cycle: int = Field(default=1, ge=1, le=3)
    recommended_outcome_bias: OutcomeDecision = OutcomeDecision.ITERATE


class LearningReport(BaseModel):
    """Aggregated learning signals over a story's run history."""

    generated_at: datetime
    totals: LearningTotals
    recommendations: LearningRecommendations
    mode_performance: list[ModePerformance] = Field(default_factory=list)
    recommendation_performance: list[RecommendationPerformance] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)

    @property
    def positive_rate(self) -> float:
        return self.totals.overall_positive_rate

    @property
    def stale_open_runs(self) -> int:
        return self.totals.stale_open_runs
