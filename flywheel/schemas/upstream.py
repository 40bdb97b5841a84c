"""Upstream report contracts.

The IP-readiness report, merchability report and role-roster board are
produced elsewhere. Flywheel only consumes the numeric and enumerable
fields defined here, never the producers' internals.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field


class RoleAgentId(StrEnum):
    """Collaborative role cards on a story's role board."""

    STORY_ARCHITECT = "story_architect"
    CONTINUITY_DIRECTOR = "continuity_director"
    VISUAL_ART_DIRECTOR = "visual_art_director"
    MERCH_OPERATOR = "merch_operator"
    DISTRIBUTION_OPERATOR = "distribution_operator"


class SprintObjective(StrEnum):
    """Business goal for an execution sprint."""

    SHIP_NEXT_DROP = "ship_next_drop"
    STABILIZE_WORLD = "stabilize_world"
    SCALE_DISTRIBUTION = "scale_distribution"
    LAUNCH_MERCH_PILOT = "launch_merch_pilot"


class DistributionChannel(StrEnum):
    """Channels a merch candidate can be distributed through."""

    X_THREAD = "x_thread"
    INSTAGRAM_CAROUSEL = "instagram_carousel"
    LINKEDIN_POST = "linkedin_post"
    NEWSLETTER_BLURB = "newsletter_blurb"


class IpSignals(BaseModel):
    """Raw counts reported alongside the IP-readiness scores."""

    remix_count: int = Field(default=0, ge=0)
    page_count: int = Field(default=0, ge=0)


class IpReport(BaseModel):
    """IP-readiness report output."""

    overall_score: float = Field(ge=0, le=100, description="Overall IP readiness (0-100)")
    retention_potential_score: float = Field(
        ge=0, le=100, description="Audience retention potential (0-100)",
    )
    signals: IpSignals = Field(default_factory=IpSignals)


class MerchCandidate(BaseModel):
    """A merch concept ranked by the merchability report."""

    id: str = Field(description="Stable candidate identifier")
    title: str = Field(default="", description="Display title")
    channel_fit: list[DistributionChannel] = Field(
        default_factory=list, description="Channels ordered by fit",
    )


class MerchReport(BaseModel):
    """Merchability report output. Candidates are ordered best first."""

    overall_score: float = Field(ge=0, le=100, description="Overall merch signal (0-100)")
    candidates: list[MerchCandidate] = Field(default_factory=list)


class RoleCard(BaseModel):
    """One role on the roster, optionally owned by a user."""

    id: RoleAgentId
    label: str = ""
    owner_user_id: str | None = None
    checklist: list[str] = Field(default_factory=list)


class RoleBoard(BaseModel):
    """Role-roster board output for a story."""

    sprint_objective: SprintObjective = SprintObjective.SHIP_NEXT_DROP
    horizon_days: int = Field(default=7, ge=3, le=30)
    roster: list[RoleCard] = Field(default_factory=list)
    participants: list[str] = Field(
        default_factory=list, description="User ids participating on the board",
    )
    sync_cadence: list[str] = Field(default_factory=list)
    coordination_risks: list[str] = Field(default_factory=list)

    def card(self, role_id: RoleAgentId) -> RoleCard | None:
        for card in self.roster:
            if card.id == role_id:
                return card
        return None

    def seeded(
        self,
        sprint_objective: SprintObjective,
        horizon_days: int,
        owner_overrides: dict[RoleAgentId, str] | None = None,
    ) -> RoleBoard:
        """Return a copy targeting a sprint, with role owners overridden."""
        overrides = owner_overrides or {}
        roster = [
            card.model_copy(update={"owner_user_id": overrides[card.id]})
            if card.id in overrides
            else card
            for card in self.roster
        ]
        return self.model_copy(update={
            "sprint_objective": sprint_objective,
            "horizon_days": horizon_days,
            "roster": roster,
        })


class StoryContext(BaseModel):
    """Everything the loop needs to know about a story besides its runs."""

    story_id: str
    slug: str
    title: str = ""
    owner_user_id: str
    collaborator_ids: list[str] = Field(default_factory=list)
    ip_report: IpReport
    merch_report: MerchReport
    role_board: RoleBoard = Field(default_factory=RoleBoard)

    @property
    def allowed_user_ids(self) -> set[str]:
        return {self.owner_user_id, *self.collaborator_ids}
