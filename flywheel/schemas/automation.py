"""Operating plan and automation plan schemas.

The operating plan condenses upstream reports into baseline metrics,
a score band and priority tracks. The automation plan turns it into
fired triggers, execution-bearing recommendations and an owner queue.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from flywheel.schemas.enums import OutcomeDecision, Priority
from flywheel.schemas.metrics import MetricDelta, MetricKey, MetricsSnapshot
from flywheel.schemas.upstream import DistributionChannel, RoleAgentId, SprintObjective


class ScoreBand(StrEnum):
    """Scale-band classification of the combined score."""

    AGGRESSIVE = "aggressive"
    BALANCED = "balanced"
    STABILIZE = "stabilize"


class PriorityTrack(BaseModel):
    """A standing workstream with an owning role and next actions."""

    id: str
    label: str
    owner_role_agent_id: RoleAgentId
    priority: Priority
    rationale: str
    next_actions: list[str] = Field(default_factory=list)


class OperatingPlan(BaseModel):
    """Baseline view of a story's creator-economy health."""

    generated_at: datetime
    story_slug: str
    story_title: str = ""
    sprint_objective: SprintObjective
    horizon_days: int
    score_band: ScoreBand
    baseline_metrics: MetricsSnapshot
    metric_deltas: list[MetricDelta] = Field(default_factory=list)
    priority_tracks: list[PriorityTrack] = Field(default_factory=list)
    execution_loop: list[str] = Field(default_factory=list)
    blocker_watchlist: list[str] = Field(default_factory=list)
    rollout_note: str = ""


class TriggerId(StrEnum):
    FOUNDATION_GAP = "foundation_gap"
    RETENTION_DRIFT = "retention_drift"
    MERCH_SIGNAL_GAP = "merch_signal_gap"
    ROLE_COVERAGE_GAP = "role_coverage_gap"
    STALE_EXECUTION_LOOP = "stale_execution_loop"
    SCALE_WINDOW = "scale_window"


class TriggerKind(StrEnum):
    RISK = "risk"
    OPPORTUNITY = "opportunity"


class TriggerStatus(StrEnum):
    FIRED = "fired"
    WATCHING = "watching"


class AutomationTrigger(BaseModel):
    """A threshold check over one metric."""

    id: TriggerId
    label: str
    kind: TriggerKind
    status: TriggerStatus
    severity: Priority
    reason: str
    metric_key: MetricKey
    current: float
    threshold: float
    direction: str = Field(description="'below' or 'above'")

    @property
    def fired(self) -> bool:
        return self.status == TriggerStatus.FIRED


class AutomationExecution(BaseModel):
    """How a recommendation should be executed if selected."""

    model_config = ConfigDict(frozen=True)

    sprint_objective: SprintObjective
    horizon_days: int = Field(ge=3, le=30)
    require_merch_plan: bool = False
    merch_candidate_id: str | None = None
    merch_channels: tuple[DistributionChannel, ...] = ()
    default_outcome_decision: OutcomeDecision = OutcomeDecision.ITERATE


class AutomationRecommendation(BaseModel):
    """An action the loop may execute. Immutable once produced."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    priority: Priority
    owner_role_agent_id: RoleAgentId
    trigger_ids: tuple[TriggerId, ...] = ()
    summary: str = ""
    rationale: str = ""
    checklist: tuple[str, ...] = ()
    execution: AutomationExecution


class QueueStatus(StrEnum):
    READY = "ready"
    BLOCKED = "blocked"


class AutomationQueueItem(BaseModel):
    """Owner assignment state for one recommendation."""

    id: str
    recommendation_id: str
    owner_role_agent_id: RoleAgentId
    owner_user_id: str | None = None
    status: QueueStatus
    reason: str


class TriggerSummary(BaseModel):
    active: int = 0
    total: int = 0
    risk_active: int = 0
    opportunity_active: int = 0


class AutomationPlan(BaseModel):
    """Triggers, recommendations and owner queue for one invocation."""

    generated_at: datetime
    story_slug: str
    story_title: str = ""
    trigger_summary: TriggerSummary
    triggers: list[AutomationTrigger] = Field(default_factory=list)
    recommendations: list[AutomationRecommendation] = Field(default_factory=list)
    queue: list[AutomationQueueItem] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)

    def fired(self, kind: TriggerKind | None = None) -> list[AutomationTrigger]:
        return [
            trigger for trigger in self.triggers
            if trigger.fired and (kind is None or trigger.kind == kind)
        ]

    def recommendation(self, recommendation_id: str) -> AutomationRecommendation | None:
        for recommendation in self.recommendations:
            if recommendation.id == recommendation_id:
                return recommendation
        return None
