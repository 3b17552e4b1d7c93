from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional

import aiosqlite

from ...models import utc_now_iso
from .utils import _sqlite_memory_connection


class MemorySummariesMixin:
    async def get_rolling_summary(self, user_id: str, character_id: str) -> Optional[Dict[str, object]]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT user_id, character_id, summary, message_count, updated_at
                FROM rolling_summaries
                WHERE user_id = ? AND character_id = ?
                """,
                (user_id, character_id),
            ) as cursor:
                row = await cursor.fetchone()

        if row is None:
            return None
        return {
            "user_id": str(row["user_id"]),
            "character_id": str(row["character_id"]),
            "summary": str(row["summary"]),
            "message_count": int(row["message_count"]),
            "updated_at": str(row["updated_at"]),
        }

    async def upsert_rolling_summary(
        self,
        user_id: str,
        character_id: str,
        summary: str,
        message_count: int,
        *,
        now: datetime | None = None,
    ) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO rolling_summaries (user_id, character_id, summary, message_count, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id, character_id) DO UPDATE SET
                    summary = excluded.summary,
                    message_count = excluded.message_count,
                    updated_at = excluded.updated_at
                """,
                (user_id, character_id, summary, max(0, int(message_count)), utc_now_iso(now)),
            )
            await db.commit()
