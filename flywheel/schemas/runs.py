"""Run schemas and the tagged run-plan union.

A run's plan blob carries a ``source`` discriminant naming the flow
that created it. It is decoded into one record shape per origin
exactly once, when the run is read from the store, so the engine
never re-inspects raw JSON.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Annotated, Any, ClassVar, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, model_validator

from flywheel.schemas.automation import OperatingPlan, TriggerSummary
from flywheel.schemas.enums import (
    AutonomyMode,
    OptimizationObjective,
    OutcomeDecision,
    RunStatus,
)
from flywheel.schemas.metrics import MetricsSnapshot
from flywheel.schemas.policy import DecisionPolicy
from flywheel.schemas.upstream import DistributionChannel, SprintObjective

logger = logging.getLogger(__name__)


# ── Plan variants ────────────────────────────────────────────────


class _RunPlanBase(BaseModel):
    executed_recommendation_id: str | None = Field(
        default=None, description="Backlog recommendation this run executed",
    )
    autonomy_mode: AutonomyMode | None = Field(
        default=None, description="Mode the run was created under, if recorded",
    )
    raw: dict[str, Any] | None = Field(
        default=None, description="Original blob when only the base fields decoded",
    )

    # Mode attributed to the run when autonomy_mode was not recorded
    default_mode: ClassVar[AutonomyMode] = AutonomyMode.MANUAL
    # Whether the run counts as a prior execution for backlog cooldowns
    counts_as_execution: ClassVar[bool] = True
    # Whether governance treats the run as automation-driven
    counts_as_automation: ClassVar[bool] = False

    @property
    def mode(self) -> AutonomyMode:
        return self.autonomy_mode or self.default_mode


class ManualRunPlan(_RunPlanBase):
    """Run created by a person outside the autonomous loop.

    Orchestrator runs record the operating plan they were planned
    against and the merch candidate attached to the sprint.
    """

    source: Literal["manual"] = "manual"
    notes: str = ""
    operating_plan: OperatingPlan | None = None
    merch_candidate_id: str | None = None
    merch_channels: list[DistributionChannel] = Field(default_factory=list)

    counts_as_execution: ClassVar[bool] = False


class AutomationRunPlan(_RunPlanBase):
    """Run created by executing one automation recommendation directly."""

    source: Literal["economy_automation"] = "economy_automation"
    trigger_summary: TriggerSummary | None = None
    operating_plan: OperatingPlan | None = None
    merch_candidate_id: str | None = None
    merch_channels: list[DistributionChannel] = Field(default_factory=list)

    default_mode: ClassVar[AutonomyMode] = AutonomyMode.ASSIST
    counts_as_automation: ClassVar[bool] = True


class BacklogRunPlan(_RunPlanBase):
    """Run created from the autonomous backlog by an operator."""

    source: Literal["economy_backlog"] = "economy_backlog"

    default_mode: ClassVar[AutonomyMode] = AutonomyMode.ASSIST
    counts_as_automation: ClassVar[bool] = True


class AutorunRunPlan(_RunPlanBase):
    """Run created by an autorun cycle."""

    source: Literal["economy_autorun"] = "economy_autorun"
    decision_policy: DecisionPolicy | None = None
    operating_plan: OperatingPlan | None = None
    merch_candidate_id: str | None = None
    merch_channels: list[DistributionChannel] = Field(default_factory=list)

    default_mode: ClassVar[AutonomyMode] = AutonomyMode.AUTO
    counts_as_automation: ClassVar[bool] = True


class WindowLoopRunPlan(_RunPlanBase):
    """Run created by executing the active strategy-loop window."""

    source: Literal["economy_window_loop"] = "economy_window_loop"
    strategy_cycle: int = 1
    strategy_objective: OptimizationObjective = OptimizationObjective.BALANCED
    cadence_hours: int = 12
    gate_status: str = ""
    gate_reasons: list[str] = Field(default_factory=list)
    strategy_policy: DecisionPolicy | None = None


class SelfHealingRunPlan(_RunPlanBase):
    """Run created by executing a self-healing recovery item."""

    source: Literal["economy_self_healing"] = "economy_self_healing"
    severity: str = ""
    roi_gap_score: int = 0
    target_objective: OptimizationObjective = OptimizationObjective.STABILIZE
    cadence_hours: int = 12
    triggers: list[str] = Field(default_factory=list)
    strategy_policy: DecisionPolicy | None = None


class UnrecognizedRunPlan(_RunPlanBase):
    """Legacy or malformed plan blob, kept verbatim."""

    source: Literal["unrecognized"] = "unrecognized"
    raw: dict[str, Any] = Field(default_factory=dict)

    counts_as_execution: ClassVar[bool] = False


RunPlan = Annotated[
    Union[
        ManualRunPlan,
        AutomationRunPlan,
        BacklogRunPlan,
        AutorunRunPlan,
        WindowLoopRunPlan,
        SelfHealingRunPlan,
        UnrecognizedRunPlan,
    ],
    Field(discriminator="source"),
]

_PLAN_ADAPTER: TypeAdapter[RunPlan] = TypeAdapter(RunPlan)

# Variants by source, for blobs whose extra fields fail to validate
_VARIANTS: dict[str, type[_RunPlanBase]] = {
    plan.model_fields["source"].default: plan
    for plan in (
        ManualRunPlan,
        AutomationRunPlan,
        BacklogRunPlan,
        AutorunRunPlan,
        WindowLoopRunPlan,
        SelfHealingRunPlan,
    )
}

_MODES = frozenset(mode.value for mode in AutonomyMode)

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def _snake(key: str) -> str:
    return _CAMEL_RE.sub("_", key).lower()


def _snake_keys(value: Any) -> Any:
    if isinstance(value, dict):
        return {_snake(str(key)): _snake_keys(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_snake_keys(item) for item in value]
    return value


def _recommendation_id(raw: dict[str, Any]) -> str | None:
    direct = raw.get("executed_recommendation_id")
    if isinstance(direct, str) and direct.strip():
        return direct
    recommendation = raw.get("recommendation")
    if isinstance(recommendation, dict):
        candidate = recommendation.get("id")
        if isinstance(candidate, str) and candidate.strip():
            return candidate
    return None


def decode_run_plan(value: object) -> RunPlan:
    """Decode a persisted plan blob into its tagged variant.

    Accepts camelCase or snake_case keys and the legacy nested
    ``recommendation.id`` form. Anything that does not validate as a
    known variant keeps its variant when the source is known, and
    otherwise becomes an UnrecognizedRunPlan. Either way it carries the
    recommendation id, the autonomy mode when readable and the raw blob.
    """
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    if not isinstance(value, dict):
        return UnrecognizedRunPlan()

    raw = _snake_keys(value)
    raw["executed_recommendation_id"] = _recommendation_id(raw)

    try:
        return _PLAN_ADAPTER.validate_python(raw)
    except ValidationError:
        logger.debug("Plan blob with source %r failed full validation", raw.get("source"))

    source, mode = raw.get("source"), raw.get("autonomy_mode")
    variant = UnrecognizedRunPlan
    if isinstance(source, str):
        variant = _VARIANTS.get(source, UnrecognizedRunPlan)
    return variant(
        executed_recommendation_id=raw["executed_recommendation_id"],
        autonomy_mode=mode if isinstance(mode, str) and mode in _MODES else None,
        raw=dict(value),
    )


# ── Runs ─────────────────────────────────────────────────────────


class Run(BaseModel):
    """A persisted execution of one recommendation (or a manual sprint).

    Outcome metrics and decision are only present once the run is
    completed. Runs are never deleted.
    """

    id: str = Field(description="Run identifier (UUID)")
    story_id: str = Field(description="Story the run belongs to")
    created_by_user_id: str = Field(description="User that triggered the run")
    sprint_objective: SprintObjective
    horizon_days: int = Field(ge=1)
    status: RunStatus = RunStatus.PLANNED
    plan: RunPlan = Field(default_factory=ManualRunPlan)
    baseline_metrics: MetricsSnapshot = Field(default_factory=MetricsSnapshot)
    outcome_metrics: MetricsSnapshot = Field(default_factory=MetricsSnapshot)
    outcome_decision: OutcomeDecision | None = None
    outcome_notes: str | None = None
    completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @model_validator(mode="after")
    def _outcome_only_when_completed(self) -> Run:
        if self.status != RunStatus.COMPLETED and (
            self.outcome_decision is not None or not self.outcome_metrics.is_empty()
        ):
            raise ValueError("Outcome fields can only be set on completed runs")
        return self

    @property
    def is_completed(self) -> bool:
        return self.status == RunStatus.COMPLETED

    @property
    def anchor_at(self) -> datetime:
        """Most recent lifecycle timestamp (completion, else creation)."""
        return self.completed_at or self.created_at

    @property
    def combined_delta(self) -> float | None:
        baseline = self.baseline_metrics.combined_score
        outcome = self.outcome_metrics.combined_score
        if baseline is None or outcome is None:
            return None
        return outcome - baseline

    def with_outcome(
        self,
        *,
        now: datetime,
        status: RunStatus = RunStatus.COMPLETED,
        outcome_metrics: MetricsSnapshot | None = None,
        outcome_decision: OutcomeDecision | None = None,
        outcome_notes: str | None = None,
    ) -> Run:
        """Return a copy moved to *status*.

        Completing a run records the outcome and stamps ``completed_at``;
        moving it back to in-progress clears every outcome field.
        """
        if status == RunStatus.COMPLETED:
            update: dict[str, Any] = {
                "status": status,
                "outcome_metrics": outcome_metrics or MetricsSnapshot(),
                "outcome_decision": outcome_decision,
                "outcome_notes": outcome_notes,
                "completed_at": now,
            }
        else:
            update = {
                "status": status,
                "outcome_metrics": MetricsSnapshot(),
                "outcome_decision": None,
                "outcome_notes": None,
                "completed_at": None,
            }
        update["updated_at"] = now
        return Run.model_validate({**dict(self), **update})

    def summary(self) -> RunSummary:
        return RunSummary(
            id=self.id,
            source=self.plan.source,
            status=self.status,
            sprint_objective=self.sprint_objective,
            horizon_days=self.horizon_days,
            executed_recommendation_id=self.plan.executed_recommendation_id,
            created_at=self.created_at,
            completed_at=self.completed_at,
            baseline_metrics=self.baseline_metrics,
            outcome_metrics=self.outcome_metrics,
            outcome_decision=self.outcome_decision,
            outcome_notes=self.outcome_notes,
        )


class RunSummary(BaseModel):
    """Lightweight run view for history listings."""

    id: str
    source: str
    status: RunStatus
    sprint_objective: SprintObjective
    horizon_days: int
    executed_recommendation_id: str | None = None
    created_at: datetime
    completed_at: datetime | None = None
    baseline_metrics: MetricsSnapshot = Field(default_factory=MetricsSnapshot)
    outcome_metrics: MetricsSnapshot = Field(default_factory=MetricsSnapshot)
    outcome_decision: OutcomeDecision | None = None
    outcome_notes: str | None = None
