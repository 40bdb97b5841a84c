"""Flywheel persistence layer.

Provides SQLite-backed storage for story contexts, run history and
the per-story decision-cycle marker.
"""

from flywheel.persistence.database import close_db, init_db
from flywheel.persistence.runs import RunStore
from flywheel.persistence.stories import StoryStore

__all__ = [
    "RunStore",
    "StoryStore",
    "close_db",
    "init_db",
]
