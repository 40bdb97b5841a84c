"""SQLite database layer for the run store.

Manages the SQLite connection and schema creation. Uses aiosqlite for
async access with WAL mode for concurrent read performance.
"""

from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite

logger = logging.getLogger(__name__)

# SQL schema for the flywheel database
_SCHEMA = """
CREATE TABLE IF NOT EXISTS stories (
    story_id     TEXT PRIMARY KEY,
    slug         TEXT NOT NULL UNIQUE,
    context_json TEXT NOT NULL,
    updated_at   TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS runs (
    id                    TEXT PRIMARY KEY,
    story_id              TEXT NOT NULL REFERENCES stories(story_id) ON DELETE CASCADE,
    created_by_user_id    TEXT NOT NULL,
    sprint_objective      TEXT NOT NULL,
    horizon_days          INTEGER NOT NULL,
    status                TEXT NOT NULL DEFAULT 'planned',
    plan_json             TEXT NOT NULL DEFAULT '{}',
    baseline_metrics_json TEXT NOT NULL DEFAULT '{}',
    outcome_metrics_json  TEXT NOT NULL DEFAULT '{}',
    outcome_decision      TEXT,
    outcome_notes         TEXT,
    completed_at          TEXT,
    created_at            TEXT NOT NULL,
    updated_at            TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS decision_cycles (
    story_id   TEXT PRIMARY KEY REFERENCES stories(story_id) ON DELETE CASCADE,
    cycle      INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL DEFAULT ''
);

CREATE INDEX IF NOT EXISTS idx_runs_story_created ON runs(story_id, created_at);
"""


async def init_db(db_path: str) -> aiosqlite.Connection:
    """Initialize the database connection and create tables if needed.

    Creates parent directories if they don't exist, enables WAL mode
    and foreign keys, then runs the schema DDL.

    Args:
        db_path: Path to the SQLite database file. Supports ~ expansion
            and ``:memory:``.

    Returns:
        An open aiosqlite connection ready for use.
    """
    if db_path == ":memory:":
        target = db_path
    else:
        resolved = Path(db_path).expanduser()
        resolved.parent.mkdir(parents=True, exist_ok=True)
        target = str(resolved)

    db = await aiosqlite.connect(target)
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA foreign_keys=ON")
    await db.executescript(_SCHEMA)
    await db.commit()

    logger.info("Flywheel database initialized at %s", target)
    return db


async def close_db(db: aiosqlite.Connection) -> None:
    """Close the database connection."""
    await db.close()
