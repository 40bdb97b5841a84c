"""Run store: create, list and close runs, and commit decision cycles.

Wraps the low-level runs and decision_cycles tables with pydantic
serialization. Plan blobs are decoded into their tagged variant here,
once, so nothing above the store inspects raw JSON.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from datetime import UTC, datetime

import aiosqlite

from flywheel.engine.metrics import normalize_metrics
from flywheel.errors import DecisionCycleConflictError
from flywheel.schemas.runs import Run, decode_run_plan

logger = logging.getLogger(__name__)

_INSERT_RUN = """
INSERT INTO runs
    (id, story_id, created_by_user_id, sprint_objective, horizon_days,
     status, plan_json, baseline_metrics_json, outcome_metrics_json,
     outcome_decision, outcome_notes, completed_at, created_at, updated_at)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

_UPDATE_OUTCOME = """
UPDATE runs SET
    status = ?,
    outcome_metrics_json = ?,
    outcome_decision = ?,
    outcome_notes = ?,
    completed_at = ?,
    updated_at = ?
WHERE id = ? AND story_id = ?
"""


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class RunStore:
    """Persistent run history backed by SQLite.

    All methods are async and operate on an aiosqlite connection
    initialized by database.init_db().
    """

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def create_run(self, run: Run) -> Run:
        """Insert a single run outside of a decision cycle."""
        await self._insert(run)
        await self._db.commit()
        logger.info("Saved run %s for story %s", run.id, run.story_id)
        return run

    async def get_run(self, run_id: str, story_id: str | None = None) -> Run | None:
        """Fetch a run by ID, optionally scoped to a story."""
        self._db.row_factory = aiosqlite.Row
        sql = "SELECT * FROM runs WHERE id = ?"
        params: list[object] = [run_id]
        if story_id is not None:
            sql += " AND story_id = ?"
            params.append(story_id)
        async with self._db.execute(sql, params) as cursor:
            row = await cursor.fetchone()
        if not row:
            return None
        return self._row_to_run(row)

    async def list_runs(self, story_id: str, limit: int = 20) -> list[Run]:
        """List a story's runs, newest first."""
        self._db.row_factory = aiosqlite.Row
        runs: list[Run] = []
        async with self._db.execute(
            "SELECT * FROM runs WHERE story_id = ?"
            " ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (story_id, max(1, limit)),
        ) as cursor:
            async for row in cursor:
                runs.append(self._row_to_run(row))
        return runs

    async def update_run_outcome(self, run: Run) -> Run | None:
        """Write the status and outcome fields of *run* back to its row.

        Returns None when the run does not exist for its story.
        """
        cursor = await self._db.execute(_UPDATE_OUTCOME, self._outcome_params(run))
        await self._db.commit()
        if cursor.rowcount == 0:
            return None
        logger.info("Updated run %s outcome (%s)", run.id, run.status)
        return await self.get_run(run.id, run.story_id)

    async def read_cycle_marker(self, story_id: str, *, now: datetime | None = None) -> int:
        """Return the story's current decision-cycle marker, creating it at 0."""
        await self._db.execute(
            "INSERT OR IGNORE INTO decision_cycles (story_id, cycle, updated_at)"
            " VALUES (?, 0, ?)",
            (story_id, (now or datetime.now(UTC)).isoformat()),
        )
        await self._db.commit()
        self._db.row_factory = aiosqlite.Row
        async with self._db.execute(
            "SELECT cycle FROM decision_cycles WHERE story_id = ?", (story_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return int(row["cycle"]) if row else 0

    async def commit_cycle(
        self,
        story_id: str,
        expected_cycle: int,
        *,
        created: Sequence[Run] = (),
        updated: Sequence[Run] = (),
        now: datetime | None = None,
    ) -> int:
        """Persist one decision cycle's writes if no other cycle got there first.

        Increments the story's marker from *expected_cycle* and writes the
        new and updated runs in the same transaction.

        Returns:
            The new cycle marker.

        Raises:
            DecisionCycleConflictError: If the marker moved since it was read.
        """
        stamp = (now or datetime.now(UTC)).isoformat()
        cursor = await self._db.execute(
            "UPDATE decision_cycles SET cycle = cycle + 1, updated_at = ?"
            " WHERE story_id = ? AND cycle = ?",
            (stamp, story_id, expected_cycle),
        )
        if cursor.rowcount == 0:
            await self._db.rollback()
            logger.warning(
                "Decision cycle conflict for story %s at cycle %d", story_id, expected_cycle,
            )
            raise DecisionCycleConflictError(story_id, expected_cycle)

        try:
            for run in created:
                await self._insert(run)
            for run in updated:
                await self._db.execute(_UPDATE_OUTCOME, self._outcome_params(run))
        except Exception:
            await self._db.rollback()
            raise
        await self._db.commit()

        logger.info(
            "Committed decision cycle %d for story %s (%d created, %d updated)",
            expected_cycle + 1, story_id, len(created), len(updated),
        )
        return expected_cycle + 1

    async def _insert(self, run: Run) -> None:
        await self._db.execute(
            _INSERT_RUN,
            (
                run.id,
                run.story_id,
                run.created_by_user_id,
                run.sprint_objective.value,
                run.horizon_days,
                run.status.value,
                run.plan.model_dump_json(exclude_none=True),
                run.baseline_metrics.model_dump_json(exclude_none=True),
                run.outcome_metrics.model_dump_json(exclude_none=True),
                run.outcome_decision.value if run.outcome_decision else None,
                run.outcome_notes,
                _iso(run.completed_at),
                _iso(run.created_at),
                _iso(run.updated_at),
            ),
        )

    @staticmethod
    def _outcome_params(run: Run) -> tuple[object, ...]:
        return (
            run.status.value,
            run.outcome_metrics.model_dump_json(exclude_none=True),
            run.outcome_decision.value if run.outcome_decision else None,
            run.outcome_notes,
            _iso(run.completed_at),
            _iso(run.updated_at),
            run.id,
            run.story_id,
        )

    @staticmethod
    def _row_to_run(row: aiosqlite.Row) -> Run:
        """Convert a runs row into a Run with its plan decoded."""
        return Run(
            id=row["id"],
            story_id=row["story_id"],
            created_by_user_id=row["created_by_user_id"],
            sprint_objective=row["sprint_objective"],
            horizon_days=row["horizon_days"],
            status=row["status"],
            plan=decode_run_plan(json.loads(row["plan_json"] or "{}")),
            baseline_metrics=normalize_metrics(json.loads(row["baseline_metrics_json"] or "{}")),
            outcome_metrics=normalize_metrics(json.loads(row["outcome_metrics_json"] or "{}")),
            outcome_decision=row["outcome_decision"],
            outcome_notes=row["outcome_notes"],
            completed_at=_parse(row["completed_at"]),
            created_at=_parse(row["created_at"]),
            updated_at=_parse(row["updated_at"]),
        )
