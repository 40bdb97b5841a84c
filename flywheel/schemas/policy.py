"""Decision policy and autonomous backlog schemas."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from flywheel.schemas.automation import AutomationExecution, TriggerId
from flywheel.schemas.enums import AutonomyMode, OutcomeDecision, Priority
from flywheel.schemas.upstream import RoleAgentId


class DecisionPolicy(BaseModel):
    """Knobs that bound one autonomous cycle.

    Policies are never mutated: every stage (learning, governance,
    optimizer, self-healing) derives a new value and appends to
    ``rationale`` and ``guardrails``.
    """

    model_config = ConfigDict(frozen=True)

    mode: AutonomyMode = Field(description="Autonomy mode for the cycle")
    recommended_outcome: OutcomeDecision = Field(
        description="Outcome decision the loop is biased toward",
    )
    confidence: int = Field(ge=10, le=99, description="Confidence in the policy (10-99)")
    rationale: tuple[str, ...] = Field(default=(), description="Accumulated reasoning")
    guardrails: tuple[str, ...] = Field(default=(), description="Accumulated constraints")
    max_actions_per_cycle: int = Field(ge=1, le=5, description="Action budget per cycle")
    cooldown_hours: int = Field(ge=4, le=24, description="Minimum hours between repeats")

    def revised(
        self,
        *,
        rationale: list[str] | tuple[str, ...] = (),
        guardrails: list[str] | tuple[str, ...] = (),
        **changes: object,
    ) -> DecisionPolicy:
        """Return a new policy with *changes* applied and notes appended."""
        update: dict[str, object] = dict(changes)
        update["rationale"] = (*self.rationale, *rationale)
        update["guardrails"] = (*self.guardrails, *guardrails)
        return self.model_validate({**self.model_dump(), **update})


class BacklogItemStatus(StrEnum):
    READY = "ready"
    BLOCKED = "blocked"
    COOLDOWN = "cooldown"


class BacklogItem(BaseModel):
    """A recommendation with its computed readiness.

    Status and cooldown are recomputed from run history on every build
    and are never persisted.
    """

    id: str
    recommendation_id: str
    title: str
    priority: Priority
    owner_role_agent_id: RoleAgentId
    owner_user_id: str | None = None
    status: BacklogItemStatus
    score: int
    reason: str
    execution: AutomationExecution
    trigger_ids: tuple[TriggerId, ...] = ()
    last_executed_at: datetime | None = None
    cooldown_until: datetime | None = None


class BacklogSummary(BaseModel):
    total: int = 0
    ready: int = 0
    blocked: int = 0
    cooldown: int = 0


class Backlog(BaseModel):
    """Score-ordered action queue for one invocation."""

    generated_at: datetime
    mode: AutonomyMode
    policy: DecisionPolicy
    summary: BacklogSummary
    items: list[BacklogItem] = Field(default_factory=list)
