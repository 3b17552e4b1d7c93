from __future__ import annotations

from datetime import datetime
from typing import Dict, List

import aiosqlite

from ...models import utc_now_iso
from .utils import _sqlite_memory_connection


class MemoryMessagesMixin:
    async def save_message(
        self,
        user_id: str,
        character_id: str,
        role: str,
        content: str,
        emotion: str | None = None,
        *,
        now: datetime | None = None,
    ) -> int:
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO messages (user_id, character_id, role, content, emotion, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (user_id, character_id, role, content, emotion, utc_now_iso(now)),
            )
            await db.commit()
            return int(cursor.lastrowid)

    async def count_messages(self, user_id: str, character_id: str) -> int:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                """
                SELECT COUNT(*)
                FROM messages
                WHERE user_id = ? AND character_id = ?
                """,
                (user_id, character_id),
            ) as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def get_recent_messages(self, user_id: str, character_id: str, limit: int) -> List[Dict[str, object]]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT message_id, user_id, character_id, role, content, emotion, created_at
                FROM messages
                WHERE user_id = ? AND character_id = ?
                ORDER BY message_id DESC
                LIMIT ?
                """,
                (user_id, character_id, max(1, int(limit))),
            ) as cursor:
                rows = await cursor.fetchall()

        ordered = list(reversed(rows))
        return [
            {
                "message_id": int(row["message_id"]),
                "user_id": str(row["user_id"]),
                "character_id": str(row["character_id"]),
                "role": str(row["role"]),
                "content": str(row["content"]),
                "emotion": row["emotion"],
                "created_at": str(row["created_at"]),
            }
            for row in ordered
        ]
