"""Request and response models for the loop service.

The same models back the HTTP routes and the CLI commands; both hand
a request to EconomyLoopService and render the response it returns.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, field_validator

from flywheel.schemas.automation import AutomationPlan, AutomationRecommendation, OperatingPlan
from flywheel.schemas.enums import AutonomyMode, OptimizationObjective, OutcomeDecision, RunStatus
from flywheel.schemas.governance import GovernanceReport
from flywheel.schemas.healing import SelfHealingReport
from flywheel.schemas.learning import LearningReport
from flywheel.schemas.metrics import MetricsSnapshot, RunDeltaReport
from flywheel.schemas.outcome import OutcomeAgentPlan, OutcomeCandidate
from flywheel.schemas.policy import Backlog, DecisionPolicy
from flywheel.schemas.runs import RunSummary
from flywheel.schemas.strategy import ExecutionWindowReport, OptimizerReport, StrategyLoopReport
from flywheel.schemas.upstream import DistributionChannel, RoleAgentId, RoleBoard, SprintObjective

# ── Requests ─────────────────────────────────────────────────────


class OwnerOverride(BaseModel):
    role_id: RoleAgentId
    owner_user_id: str = Field(min_length=1)

    @field_validator("owner_user_id")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("owner_user_id must not be blank")
        return value


class SprintSeed(BaseModel):
    """Sprint the role board is seeded with before planning."""

    sprint_objective: SprintObjective | None = None
    horizon_days: int | None = Field(default=None, ge=3, le=30)


class LearningRequest(SprintSeed):
    mode: AutonomyMode = AutonomyMode.ASSIST
    limit: int | None = Field(default=None, ge=1, le=40)


class AutorunRequest(SprintSeed):
    mode: AutonomyMode = AutonomyMode.ASSIST
    max_actions: int | None = Field(default=None, ge=1, le=5)
    owner_overrides: list[OwnerOverride] = Field(default_factory=list, max_length=5)
    persist: bool = True
    dry_run: bool = False
    force: bool = Field(default=False, description="Run even when governance pauses autorun")


class StrategyLoopRequest(SprintSeed):
    """Strategy-loop preview or execution.

    With no action flag set the request only previews the loop.
    """

    objective: OptimizationObjective | None = None
    mode: AutonomyMode = AutonomyMode.ASSIST
    cadence_hours: int | None = Field(default=None, ge=6, le=24)
    auto_optimize: bool | None = None
    limit: int | None = Field(default=None, ge=1, le=30)
    max_actions: int | None = Field(default=None, ge=1, le=5)
    execute_window: bool = False
    self_heal: bool = False
    execute_recovery: bool = False
    dry_run: bool = False
    persist: bool = True
    force: bool = Field(default=False, description="Execute even when the window gate is closed")


class OutcomeAgentRequest(SprintSeed):
    mode: AutonomyMode = AutonomyMode.ASSIST
    limit: int | None = Field(default=None, ge=1, le=40)
    stale_after_hours: float | None = Field(default=None, ge=6, le=240)
    max_runs: int | None = Field(default=None, ge=1, le=10)
    dry_run: bool = False
    persist: bool = True
    outcome_note_prefix: str | None = Field(default=None, max_length=240)


class OutcomeCloseRequest(BaseModel):
    """Manual outcome close for a single run."""

    status: RunStatus = RunStatus.COMPLETED
    outcome_decision: OutcomeDecision | None = None
    outcome_notes: str | None = Field(default=None, max_length=2000)
    metrics: MetricsSnapshot | None = None

    @field_validator("status")
    @classmethod
    def _closable(cls, value: RunStatus) -> RunStatus:
        if value == RunStatus.PLANNED:
            raise ValueError("status must be completed or in_progress")
        return value


class OrchestratorRequest(SprintSeed):
    limit: int | None = Field(default=None, ge=1, le=20)


class _MerchSelection(BaseModel):
    merch_candidate_id: str | None = Field(default=None, min_length=1)
    merch_channels: list[DistributionChannel] | None = Field(
        default=None, min_length=1, max_length=4,
    )

    @field_validator("merch_candidate_id")
    @classmethod
    def _strip_candidate(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        if not value:
            raise ValueError("merch_candidate_id must not be blank")
        return value


class OrchestratorRunRequest(SprintSeed, _MerchSelection):
    """Manual sprint planned against the current operating plan.

    A merch candidate is attached when one is named or the sprint is a
    merch pilot.
    """

    owner_overrides: list[OwnerOverride] = Field(default_factory=list, max_length=5)
    persist: bool = True


class AutomationRequest(SprintSeed):
    limit: int | None = Field(default=None, ge=1, le=20)


class AutomationExecuteRequest(SprintSeed, _MerchSelection):
    """Execute one recommendation from the automation plan.

    The sprint seed picks the plan the recommendation is looked up in;
    the run itself follows the recommendation's execution.
    """

    recommendation_id: str = Field(min_length=1)
    owner_overrides: list[OwnerOverride] = Field(default_factory=list, max_length=5)
    persist: bool = True

    @field_validator("recommendation_id")
    @classmethod
    def _strip_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("recommendation_id must not be blank")
        return value


class OptimizerRequest(SprintSeed):
    objective: OptimizationObjective | None = None
    mode: AutonomyMode = AutonomyMode.ASSIST
    max_actions: int | None = Field(default=None, ge=1, le=5)
    limit: int | None = Field(default=None, ge=1, le=30)


# ── Responses ────────────────────────────────────────────────────


class ExecutedAction(BaseModel):
    recommendation_id: str
    title: str
    run_id: str | None = None
    sprint_objective: SprintObjective
    horizon_days: int
    status: Literal["planned", "dry_run"]


class SkippedAction(BaseModel):
    recommendation_id: str
    title: str
    reason: str


class PreviewAction(BaseModel):
    recommendation_id: str
    title: str
    priority: str
    status: str
    reason: str
    sprint_objective: SprintObjective
    horizon_days: int


class ClosedRun(BaseModel):
    run_id: str
    decision: OutcomeDecision
    status: Literal["completed", "dry_run"]
    note: str


class LearningResponse(BaseModel):
    mode: AutonomyMode
    learning: LearningReport
    decision_policy: DecisionPolicy
    governance: GovernanceReport
    backlog: Backlog
    history: list[RunSummary] = Field(default_factory=list)


class AutorunResponse(BaseModel):
    mode: AutonomyMode
    dry_run: bool
    blocked_by_governance: bool
    decision_policy: DecisionPolicy
    policy_learning: LearningReport
    governance: GovernanceReport
    backlog: Backlog
    outcome_agent_plan: OutcomeAgentPlan | None = None
    executed: list[ExecutedAction] = Field(default_factory=list)
    skipped: list[SkippedAction] = Field(default_factory=list)
    history: list[RunSummary] = Field(default_factory=list)


class StrategyLoopResponse(BaseModel):
    mode: AutonomyMode
    objective: OptimizationObjective
    cadence_hours: int
    auto_optimize_enabled: bool
    learning: LearningReport
    governance: GovernanceReport
    optimizer_report: OptimizerReport
    strategy_loop: StrategyLoopReport
    window_report: ExecutionWindowReport
    self_healing_report: SelfHealingReport | None = None
    self_healing_patch_applied: bool = False
    strategy_policy: DecisionPolicy
    strategy_backlog: Backlog
    preview_execution: list[PreviewAction] = Field(default_factory=list)
    executed: list[ExecutedAction] = Field(default_factory=list)
    recovery_executed: list[ExecutedAction] = Field(default_factory=list)
    skipped: list[SkippedAction] = Field(default_factory=list)
    blocked_by_window_gate: bool = False
    summary: str = ""
    history: list[RunSummary] = Field(default_factory=list)


class OutcomeAgentResponse(BaseModel):
    mode: AutonomyMode
    dry_run: bool = True
    stale_after_hours: float
    max_runs: int
    learning: LearningReport
    decision_policy: DecisionPolicy
    plan: OutcomeAgentPlan
    selected_candidates: list[OutcomeCandidate] = Field(default_factory=list)
    closed_runs: list[ClosedRun] = Field(default_factory=list)
    history: list[RunSummary] = Field(default_factory=list)


class OutcomeCloseResponse(BaseModel):
    run: RunSummary
    delta_report: RunDeltaReport
    operating_plan: OperatingPlan


class MerchAttachment(BaseModel):
    """Merch candidate and channels attached to a sprint."""

    candidate_id: str | None = None
    channels: list[DistributionChannel] = Field(default_factory=list)


class OrchestratorResponse(BaseModel):
    operating_plan: OperatingPlan
    role_board: RoleBoard
    merch: MerchAttachment | None = None
    run: RunSummary | None = None
    history: list[RunSummary] = Field(default_factory=list)


class AutomationResponse(BaseModel):
    automation_plan: AutomationPlan
    operating_plan: OperatingPlan
    role_board: RoleBoard
    executed_recommendation: AutomationRecommendation | None = None
    merch: MerchAttachment | None = None
    run: RunSummary | None = None
    history: list[RunSummary] = Field(default_factory=list)


class OptimizerResponse(BaseModel):
    mode: AutonomyMode
    objective: OptimizationObjective
    learning: LearningReport
    governance: GovernanceReport
    optimizer_report: OptimizerReport
    optimized_policy: DecisionPolicy
    optimized_backlog: Backlog
    preview_execution: list[PreviewAction] = Field(default_factory=list)
    summary: str = ""
    history: list[RunSummary] = Field(default_factory=list)
