"""Governance gate schemas."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field


class GovernanceStatus(StrEnum):
    """Coarse health classification of the autonomous loop."""

    HEALTHY = "healthy"
    WATCH = "watch"
    PAUSED = "paused"


class GovernanceConstraints(BaseModel):
    allow_autorun: bool = True
    max_actions_cap: int = Field(ge=1, le=5)
    cooldown_floor_hours: int = Field(ge=4, le=24)


class GovernanceSignals(BaseModel):
    completed_runs: int = 0
    positive_rate: float = 0.0
    stale_open_runs: int = 0
    risky_outcome_rate: float = 0.0
    longest_open_run_hours: float = 0.0


class GovernanceReport(BaseModel):
    """Health score and hard safety constraints for one invocation."""

    generated_at: datetime
    status: GovernanceStatus
    governance_score: int = Field(ge=0, le=100)
    constraints: GovernanceConstraints
    signals: GovernanceSignals
    reasons: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)

    @property
    def is_paused(self) -> bool:
        return self.status == GovernanceStatus.PAUSED

    @property
    def is_healthy(self) -> bool:
        return self.status == GovernanceStatus.HEALTHY
