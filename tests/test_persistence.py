"""Tests for the SQLite run and story stores.

Covers database initialization, story context upserts, run CRUD,
outcome updates, decision-cycle commits and legacy plan decoding.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta

import pytest

from flywheel.errors import DecisionCycleConflictError
from flywheel.persistence.database import close_db, init_db
from flywheel.persistence.runs import RunStore
from flywheel.persistence.stories import StoryStore
from flywheel.schemas.enums import OutcomeDecision, RunStatus
from flywheel.schemas.metrics import MetricsSnapshot
from flywheel.schemas.runs import AutorunRunPlan, BacklogRunPlan, Run
from flywheel.schemas.upstream import IpReport, MerchReport, SprintObjective, StoryContext

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


# ── Factories ──────────────────────────────────────────────────────


def _make_context(**overrides) -> StoryContext:
    defaults = {
        "story_id": "story-1",
        "slug": "moonlit",
        "owner_user_id": "user-0",
        "ip_report": IpReport(overall_score=82, retention_potential_score=76),
        "merch_report": MerchReport(overall_score=70),
    }
    defaults.update(overrides)
    return StoryContext(**defaults)


def _make_run(run_id: str = "run-1", hours_ago: float = 5, **overrides) -> Run:
    created = NOW - timedelta(hours=hours_ago)
    defaults = {
        "id": run_id,
        "story_id": "story-1",
        "created_by_user_id": "user-0",
        "sprint_objective": SprintObjective.SCALE_DISTRIBUTION,
        "horizon_days": 9,
        "plan": AutorunRunPlan(executed_recommendation_id="scale-distribution-window"),
        "baseline_metrics": MetricsSnapshot(combined_score=81, page_count=12),
        "created_at": created,
        "updated_at": created,
    }
    defaults.update(overrides)
    return Run(**defaults)


async def _open_stores(tmp_path):
    db = await init_db(str(tmp_path / "flywheel.db"))
    stories = StoryStore(db)
    await stories.upsert_context(_make_context(), now=NOW)
    return db, stories, RunStore(db)


# ── Database Initialization Tests ─────────────────────────────────


@pytest.mark.asyncio
async def test_init_db_creates_tables(tmp_path):
    """init_db creates the stories, runs and decision_cycles tables."""
    db = await init_db(str(tmp_path / "flywheel.db"))

    async with db.execute(
        "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
    ) as cursor:
        tables = [row[0] for row in await cursor.fetchall()]

    assert "stories" in tables
    assert "runs" in tables
    assert "decision_cycles" in tables

    await close_db(db)


@pytest.mark.asyncio
async def test_init_db_creates_parent_dirs(tmp_path):
    """init_db creates parent directories if they don't exist."""
    db = await init_db(str(tmp_path / "nested" / "deep" / "flywheel.db"))
    assert db is not None
    await close_db(db)


@pytest.mark.asyncio
async def test_init_db_memory():
    """init_db accepts an in-memory database."""
    db = await init_db(":memory:")
    async with db.execute("PRAGMA foreign_keys") as cursor:
        assert (await cursor.fetchone())[0] == 1
    await close_db(db)


# ── StoryStore Tests ──────────────────────────────────────────────


@pytest.mark.asyncio
async def test_story_upsert_and_get(tmp_path):
    """Stored contexts round-trip by slug and upserts replace them."""
    db, stories, _ = await _open_stores(tmp_path)

    fetched = await stories.get_context("moonlit")
    assert fetched is not None
    assert fetched.ip_report.overall_score == 82

    await stories.upsert_context(
        _make_context(ip_report=IpReport(overall_score=60, retention_potential_score=50)),
    )
    fetched = await stories.get_context("moonlit")
    assert fetched.ip_report.overall_score == 60
    assert await stories.get_context("missing") is None

    await close_db(db)


# ── RunStore Tests ────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_create_and_get_run(tmp_path):
    """create_run persists a run with its plan and metrics."""
    db, _, runs = await _open_stores(tmp_path)
    await runs.create_run(_make_run())

    fetched = await runs.get_run("run-1")
    assert fetched is not None
    assert isinstance(fetched.plan, AutorunRunPlan)
    assert fetched.plan.executed_recommendation_id == "scale-distribution-window"
    assert fetched.baseline_metrics.combined_score == 81
    assert fetched.baseline_metrics.page_count == 12
    assert fetched.created_at == NOW - timedelta(hours=5)
    assert fetched.status == RunStatus.PLANNED

    await close_db(db)


@pytest.mark.asyncio
async def test_get_run_scoped_to_story(tmp_path):
    """A run is not found under another story."""
    db, _, runs = await _open_stores(tmp_path)
    await runs.create_run(_make_run())

    assert await runs.get_run("run-1", "story-1") is not None
    assert await runs.get_run("run-1", "story-2") is None
    assert await runs.get_run("missing") is None

    await close_db(db)


@pytest.mark.asyncio
async def test_list_runs_newest_first(tmp_path):
    """list_runs orders by creation time descending and honors the limit."""
    db, _, runs = await _open_stores(tmp_path)
    await runs.create_run(_make_run("old", hours_ago=30))
    await runs.create_run(_make_run("new", hours_ago=1))
    await runs.create_run(_make_run("mid", hours_ago=10))

    listed = await runs.list_runs("story-1")
    assert [r.id for r in listed] == ["new", "mid", "old"]
    assert [r.id for r in await runs.list_runs("story-1", limit=2)] == ["new", "mid"]

    await close_db(db)


@pytest.mark.asyncio
async def test_update_run_outcome(tmp_path):
    """update_run_outcome writes status, metrics and decision."""
    db, _, runs = await _open_stores(tmp_path)
    run = await runs.create_run(_make_run())

    closed = run.with_outcome(
        now=NOW,
        outcome_metrics=MetricsSnapshot(combined_score=86),
        outcome_decision=OutcomeDecision.SCALE,
        outcome_notes="Window converted",
    )
    updated = await runs.update_run_outcome(closed)
    assert updated is not None
    assert updated.status == RunStatus.COMPLETED
    assert updated.outcome_metrics.combined_score == 86
    assert updated.outcome_decision == OutcomeDecision.SCALE
    assert updated.completed_at == NOW
    assert updated.combined_delta == 5

    await close_db(db)


@pytest.mark.asyncio
async def test_update_missing_run_returns_none(tmp_path):
    """Updating a run that was never stored returns None."""
    db, _, runs = await _open_stores(tmp_path)
    ghost = _make_run("ghost").with_outcome(now=NOW, outcome_decision=OutcomeDecision.HOLD)
    assert await runs.update_run_outcome(ghost) is None
    await close_db(db)


# ── Decision Cycle Tests ──────────────────────────────────────────


@pytest.mark.asyncio
async def test_commit_cycle_increments_marker(tmp_path):
    """commit_cycle advances the marker and writes created and updated runs."""
    db, _, runs = await _open_stores(tmp_path)
    existing = await runs.create_run(_make_run("existing", hours_ago=40))

    marker = await runs.read_cycle_marker("story-1")
    assert marker == 0

    closed = existing.with_outcome(now=NOW, outcome_decision=OutcomeDecision.ITERATE)
    new_marker = await runs.commit_cycle(
        "story-1", marker, created=[_make_run("fresh")], updated=[closed], now=NOW,
    )
    assert new_marker == 1
    assert await runs.read_cycle_marker("story-1") == 1

    listed = await runs.list_runs("story-1")
    assert {r.id for r in listed} == {"existing", "fresh"}
    assert (await runs.get_run("existing")).status == RunStatus.COMPLETED

    await close_db(db)


@pytest.mark.asyncio
async def test_commit_cycle_conflict_writes_nothing(tmp_path):
    """A stale marker raises DecisionCycleConflictError and leaves history untouched."""
    db, _, runs = await _open_stores(tmp_path)
    marker = await runs.read_cycle_marker("story-1")
    await runs.commit_cycle("story-1", marker, created=[_make_run("first")], now=NOW)

    with pytest.raises(DecisionCycleConflictError) as exc_info:
        await runs.commit_cycle("story-1", marker, created=[_make_run("second")], now=NOW)

    assert exc_info.value.status_code == 409
    assert [r.id for r in await runs.list_runs("story-1")] == ["first"]
    assert await runs.read_cycle_marker("story-1") == 1

    await close_db(db)


@pytest.mark.asyncio
async def test_read_cycle_marker_stamps_supplied_time(tmp_path):
    """The marker row is stamped with the caller's clock."""
    db, _, runs = await _open_stores(tmp_path)
    assert await runs.read_cycle_marker("story-1", now=NOW) == 0

    async with db.execute(
        "SELECT updated_at FROM decision_cycles WHERE story_id = ?", ("story-1",),
    ) as cursor:
        row = await cursor.fetchone()
    assert row[0] == NOW.isoformat()

    await close_db(db)


# ── Legacy Data Tests ─────────────────────────────────────────────


@pytest.mark.asyncio
async def test_legacy_plan_blob_decoded(tmp_path):
    """Plan blobs written with camelCase keys decode into their variant."""
    db, _, runs = await _open_stores(tmp_path)
    stamp = (NOW - timedelta(hours=3)).isoformat()
    await db.execute(
        "INSERT INTO runs (id, story_id, created_by_user_id, sprint_objective,"
        " horizon_days, plan_json, baseline_metrics_json, created_at, updated_at)"
        " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            "legacy",
            "story-1",
            "user-0",
            "ship_next_drop",
            7,
            json.dumps({"source": "economy_backlog", "recommendation": {"id": "close-feedback-loop"}}),
            json.dumps({"combinedScore": "72", "pageCount": None}),
            stamp,
            stamp,
        ),
    )
    await db.commit()

    run = await runs.get_run("legacy")
    assert isinstance(run.plan, BacklogRunPlan)
    assert run.plan.executed_recommendation_id == "close-feedback-loop"
    assert run.baseline_metrics.combined_score == 72
    assert run.baseline_metrics.page_count is None

    await close_db(db)


@pytest.mark.asyncio
async def test_legacy_autorun_blob_with_nested_policy(tmp_path):
    """A camelCase autorun blob with a nested policy still reads as an autorun execution."""
    db, _, runs = await _open_stores(tmp_path)
    stamp = (NOW - timedelta(hours=2)).isoformat()
    plan = {
        "source": "economy_autorun",
        "executedRecommendationId": "scale-distribution-window",
        "autonomyMode": "auto",
        "decisionPolicy": {"maxActionsPerCycle": 2, "cooldownHours": 8, "confidence": 5},
    }
    await db.execute(
        "INSERT INTO runs (id, story_id, created_by_user_id, sprint_objective,"
        " horizon_days, plan_json, baseline_metrics_json, created_at, updated_at)"
        " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
        ("legacy-auto", "story-1", "user-0", "scale_distribution", 9,
         json.dumps(plan), json.dumps({}), stamp, stamp),
    )
    await db.commit()

    run = await runs.get_run("legacy-auto")
    assert isinstance(run.plan, AutorunRunPlan)
    assert run.plan.executed_recommendation_id == "scale-distribution-window"
    assert run.plan.counts_as_execution
    assert run.plan.mode == "auto"

    await close_db(db)
