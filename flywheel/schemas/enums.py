"""Enumerations shared across the decision-loop schemas."""

from __future__ import annotations

from enum import StrEnum


class Priority(StrEnum):
    """Urgency of a recommendation, track or trigger."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class OutcomeDecision(StrEnum):
    """Decision recorded when a run is closed."""

    SCALE = "scale"
    ITERATE = "iterate"
    HOLD = "hold"
    ARCHIVE = "archive"


class AutonomyMode(StrEnum):
    """How much the loop may act without a human in the loop.

    Ordered from least to most aggressive.
    """

    MANUAL = "manual"
    ASSIST = "assist"
    AUTO = "auto"


class RunStatus(StrEnum):
    """Lifecycle state of a persisted run."""

    PLANNED = "planned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class OptimizationObjective(StrEnum):
    """Named optimizer profiles, from most to least conservative."""

    STABILIZE = "stabilize"
    BALANCED = "balanced"
    GROWTH = "growth"
