from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Sequence, Tuple

import aiosqlite

from ...models import utc_now_iso
from .utils import _sqlite_memory_connection, cutoff_iso, encode_embedding


class MemoryEpisodesMixin:
    async def insert_episodic_memories(
        self,
        user_id: str,
        character_id: str,
        items: Sequence[Tuple[str, Sequence[float]]],
        *,
        now: datetime | None = None,
    ) -> int:
        if not items:
            return 0
        stamp = utc_now_iso(now)
        rows = [(user_id, character_id, str(text), encode_embedding(vector), stamp) for text, vector in items]
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.executemany(
                """
                INSERT INTO episodic_memories (user_id, character_id, text, embedding_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                rows,
            )
            await db.commit()
        return len(rows)

    async def match_episodic_memories(
        self,
        user_id: str,
        character_id: str,
        query_embedding: Sequence[float],
        *,
        match_count: int = 6,
        threshold: float = 0.7,
    ) -> List[Dict[str, object]]:
        # No vector index locally; rows are kept for when the remote store is back.
        return []

    async def list_episodic_memories(self, user_id: str, character_id: str, limit: int = 20) -> List[Dict[str, object]]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT episode_id, user_id, character_id, text, created_at
                FROM episodic_memories
                WHERE user_id = ? AND character_id = ?
                ORDER BY created_at DESC, episode_id DESC
                LIMIT ?
                """,
                (user_id, character_id, max(1, int(limit))),
            ) as cursor:
                rows = await cursor.fetchall()
        return [
            {
                "episode_id": int(row["episode_id"]),
                "user_id": str(row["user_id"]),
                "character_id": str(row["character_id"]),
                "text": str(row["text"]),
                "created_at": str(row["created_at"]),
            }
            for row in rows
        ]

    async def prune_episodic_memories(self, *, now: datetime | None = None, retention_days: int = 365) -> int:
        cutoff = cutoff_iso(now, retention_days)
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM episodic_memories WHERE created_at < ?",
                (cutoff,),
            )
            await db.commit()
            return max(0, int(cursor.rowcount or 0))
