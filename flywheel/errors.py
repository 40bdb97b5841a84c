"""Error taxonomy for the decision loop service.

Each error carries the HTTP status the API maps it to. Policy refusals
(a governance pause, a blocked window gate) are not errors; they come
back as normal responses with the refusal recorded in the payload.
"""

from __future__ import annotations


class FlywheelError(Exception):
    """Base class for errors raised by the loop service."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidRequestError(FlywheelError):
    """The request is well-formed but cannot be honored as asked."""

    status_code = 400


class StoryNotFoundError(FlywheelError):
    status_code = 404

    def __init__(self, slug: str) -> None:
        super().__init__(f"Story not found: {slug}")
        self.slug = slug


class RunNotFoundError(FlywheelError):
    status_code = 404

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Creator economy run not found: {run_id}")
        self.run_id = run_id


class FeatureDisabledError(FlywheelError):
    """A loop flow is switched off in the ``[features]`` config."""

    status_code = 404

    def __init__(self, feature: str) -> None:
        super().__init__(f"Creator economy {feature.replace('_', ' ')} is disabled")
        self.feature = feature


class DecisionCycleConflictError(FlywheelError):
    """Another decision cycle committed for the story after this one read history."""

    status_code = 409

    def __init__(self, story_id: str, expected_cycle: int) -> None:
        super().__init__(
            f"Decision cycle for story {story_id} moved past {expected_cycle}; "
            "re-read history and retry"
        )
        self.story_id = story_id
        self.expected_cycle = expected_cycle


class RecommendationNotFoundError(FlywheelError):
    """The recommendation is not in the story's current automation plan."""

    status_code = 404

    def __init__(self, recommendation_id: str) -> None:
        super().__init__(f"Automation recommendation not found: {recommendation_id}")
        self.recommendation_id = recommendation_id
