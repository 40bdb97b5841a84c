"""Story context store.

Holds the latest upstream reports per story, keyed by slug. The
reports themselves are produced elsewhere and pushed in whole.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

import aiosqlite

from flywheel.schemas.upstream import StoryContext

logger = logging.getLogger(__name__)


class StoryStore:
    """Story context lookups backed by SQLite."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def upsert_context(
        self, context: StoryContext, now: datetime | None = None,
    ) -> StoryContext:
        """Insert or replace the stored context for ``context.story_id``."""
        stamp = (now or datetime.now(UTC)).isoformat()
        await self._db.execute(
            """
            INSERT INTO stories (story_id, slug, context_json, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(story_id) DO UPDATE SET
                slug = excluded.slug,
                context_json = excluded.context_json,
                updated_at = excluded.updated_at
            """,
            (context.story_id, context.slug, context.model_dump_json(), stamp),
        )
        await self._db.commit()
        logger.info("Saved story context %s (%s)", context.slug, context.story_id)
        return context

    async def get_context(self, slug: str) -> StoryContext | None:
        self._db.row_factory = aiosqlite.Row
        async with self._db.execute(
            "SELECT context_json FROM stories WHERE slug = ?", (slug,),
        ) as cursor:
            row = await cursor.fetchone()
        if not row:
            return None
        return StoryContext.model_validate_json(row["context_json"])
