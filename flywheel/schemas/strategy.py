"""Optimizer, strategy-loop and execution-window schemas."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from flywheel.schemas.enums import AutonomyMode, OptimizationObjective

# Allowed strategy cadences in hours, fastest first
CADENCE_OPTIONS: tuple[int, ...] = (6, 8, 12, 18, 24)


# ── Optimizer ────────────────────────────────────────────────────


class PolicyOverride(BaseModel):
    mode: AutonomyMode
    max_actions_per_cycle: int = Field(ge=1, le=5)
    cooldown_hours: int = Field(ge=4, le=24)


class ExpectedImpact(BaseModel):
    velocity_delta: int
    risk_delta: int
    confidence_delta: int


class OptimizerProfile(BaseModel):
    """A named policy override with its expected impact."""

    objective: OptimizationObjective
    label: str
    rationale: str
    policy_override: PolicyOverride
    expected_impact: ExpectedImpact


class OptimizerReport(BaseModel):
    generated_at: datetime
    recommended_objective: OptimizationObjective
    profiles: list[OptimizerProfile] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)

    def profile(self, objective: OptimizationObjective) -> OptimizerProfile:
        """Profile for *objective*, falling back to the balanced one."""
        fallback = None
        for profile in self.profiles:
            if profile.objective == objective:
                return profile
            if profile.objective == OptimizationObjective.BALANCED:
                fallback = profile
        if fallback is None:
            raise LookupError(f"No optimizer profile for {objective}")
        return fallback


# ── Strategy loop ────────────────────────────────────────────────


class StrategyCycle(BaseModel):
    """One projected execution window."""

    cycle: int = Field(ge=1)
    objective: OptimizationObjective
    mode: AutonomyMode
    max_actions_per_cycle: int
    cooldown_hours: int
    scheduled_window_start: datetime
    scheduled_window_end: datetime
    rationale: str = ""

    def contains(self, moment: datetime) -> bool:
        return self.scheduled_window_start <= moment < self.scheduled_window_end


class StrategyLoopReport(BaseModel):
    """Three-cycle forward schedule."""

    generated_at: datetime
    selected_objective: OptimizationObjective
    recommended_cadence_hours: int
    cadence_hours: int
    auto_optimize_enabled: bool
    safe_window: bool
    next_refresh_at: datetime
    cycles: list[StrategyCycle] = Field(default_factory=list)
    guardrails: list[str] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)


# ── Execution window ─────────────────────────────────────────────


class WindowGateStatus(StrEnum):
    READY = "ready"
    HOLD = "hold"
    BLOCKED = "blocked"


class WindowGate(BaseModel):
    status: WindowGateStatus
    reasons: list[str] = Field(default_factory=list)
    window_completed_runs: int = 0
    window_positive_rate: float = 0.0
    stale_open_runs: int = 0


class WindowAdaptation(BaseModel):
    next_cadence_hours: int
    recommended_objective: OptimizationObjective
    reason: str


class WindowPreview(BaseModel):
    ready_backlog_items: int = 0
    max_actions: int = 1


class ExecutionWindowReport(BaseModel):
    """Gate decision for the active strategy cycle."""

    generated_at: datetime
    active_cycle: StrategyCycle | None = None
    gate: WindowGate
    adaptation: WindowAdaptation
    preview: WindowPreview
