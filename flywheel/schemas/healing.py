"""Self-healing monitor schemas."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from flywheel.schemas.enums import AutonomyMode, OptimizationObjective, Priority
from flywheel.schemas.policy import BacklogItemStatus


class HealingSeverity(StrEnum):
    NONE = "none"
    WATCH = "watch"
    CRITICAL = "critical"


class PolicyPatch(BaseModel):
    """Override forced onto the policy after the optimizer runs."""

    objective: OptimizationObjective
    cadence_hours: int
    mode: AutonomyMode
    max_actions_per_cycle: int = Field(ge=1, le=5)
    cooldown_hours: int = Field(ge=4, le=24)


class RecoveryItem(BaseModel):
    recommendation_id: str
    title: str
    priority: Priority
    status: BacklogItemStatus
    reason: str
    target_objective: OptimizationObjective
    expected_roi_lift: int


class SelfHealingReport(BaseModel):
    generated_at: datetime
    severity: HealingSeverity
    roi_gap_score: int = Field(ge=0, le=100)
    triggers: list[str] = Field(default_factory=list)
    policy_patch: PolicyPatch
    recovery_plan: list[RecoveryItem] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)
