"""Metric snapshot schemas.

Defines the eight-field MetricsSnapshot shared by operating plans,
run baselines and run outcomes, plus the per-metric delta records
used in operating plans and run delta reports.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field


class MetricKey(StrEnum):
    """The eight tracked creator-economy metrics, in display order."""

    COMBINED_SCORE = "combined_score"
    IP_OVERALL = "ip_overall"
    RETENTION_POTENTIAL = "retention_potential"
    MERCH_SIGNAL = "merch_signal"
    ROLE_COVERAGE = "role_coverage"
    COLLABORATOR_COUNT = "collaborator_count"
    REMIX_COUNT = "remix_count"
    PAGE_COUNT = "page_count"


# Metrics expressed as 0-100 scores (the rest are raw counts)
SCORE_KEYS: frozenset[MetricKey] = frozenset({
    MetricKey.COMBINED_SCORE,
    MetricKey.IP_OVERALL,
    MetricKey.RETENTION_POTENTIAL,
    MetricKey.MERCH_SIGNAL,
    MetricKey.ROLE_COVERAGE,
})

METRIC_LABELS: dict[MetricKey, str] = {
    MetricKey.COMBINED_SCORE: "Combined Score",
    MetricKey.IP_OVERALL: "IP Readiness",
    MetricKey.RETENTION_POTENTIAL: "Retention Potential",
    MetricKey.MERCH_SIGNAL: "Merch Signal",
    MetricKey.ROLE_COVERAGE: "Role Coverage",
    MetricKey.COLLABORATOR_COUNT: "Collaborator Count",
    MetricKey.REMIX_COUNT: "Remix Count",
    MetricKey.PAGE_COUNT: "Page Count",
}


class MetricsSnapshot(BaseModel):
    """Fixed eight-field metric snapshot.

    Every field is optional so that partial snapshots decoded from
    persisted runs stay distinguishable from zero values.
    """

    combined_score: float | None = Field(
        default=None, ge=0, le=100, description="Weighted blend of IP, retention, merch and coverage",
    )
    ip_overall: float | None = Field(
        default=None, ge=0, le=100, description="IP-readiness overall score",
    )
    retention_potential: float | None = Field(
        default=None, ge=0, le=100, description="IP-readiness retention potential score",
    )
    merch_signal: float | None = Field(
        default=None, ge=0, le=100, description="Merchability overall score",
    )
    role_coverage: float | None = Field(
        default=None, ge=0, le=100, description="Percent of roster roles with an owner",
    )
    collaborator_count: float | None = Field(
        default=None, ge=0, description="Number of role-board participants",
    )
    remix_count: float | None = Field(default=None, ge=0, description="Remix lineage size")
    page_count: float | None = Field(default=None, ge=0, description="Published page count")

    def get(self, key: MetricKey) -> float | None:
        return getattr(self, key.value)

    def is_empty(self) -> bool:
        return all(self.get(key) is None for key in MetricKey)

    def merged_with(self, other: MetricsSnapshot) -> MetricsSnapshot:
        """Return a copy with every non-missing field of *other* laid on top."""
        return self.model_copy(update=other.model_dump(exclude_none=True))


class MetricDelta(BaseModel):
    """Change of one metric between a previous and a current snapshot."""

    key: MetricKey = Field(description="Metric identifier")
    label: str = Field(description="Human-friendly metric label")
    current: float = Field(description="Current value")
    previous: float | None = Field(default=None, description="Previous value if known")
    delta: float | None = Field(
        default=None, description="current - previous rounded to 0.1, None if unknown",
    )


class RunDeltaReport(BaseModel):
    """Baseline-versus-outcome comparison for a single run."""

    run_id: str
    status: str
    baseline_metrics: MetricsSnapshot
    outcome_metrics: MetricsSnapshot
    deltas: list[MetricDelta] = Field(default_factory=list)
    summary: str = ""
