"""HTTP API for the decision loop."""

from flywheel.api.server import create_app

__all__ = ["create_app"]
