from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import aiosqlite

from ...models import utc_now_iso
from .utils import _sqlite_memory_connection


logger = logging.getLogger("companion_memory")


class MemoryRecordsMixin:
    async def get_memory_record(self, user_id: str, character_id: str) -> Optional[Dict[str, Any]]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT payload_json
                FROM user_memories
                WHERE user_id = ? AND character_id = ?
                """,
                (user_id, character_id),
            ) as cursor:
                row = await cursor.fetchone()

        if row is None:
            return None
        try:
            payload = json.loads(str(row["payload_json"]))
        except ValueError:
            logger.warning("[memory.sqlite] unreadable memory record user=%s character=%s", user_id, character_id)
            return None
        return payload if isinstance(payload, dict) else None

    async def upsert_memory_record(self, user_id: str, character_id: str, payload: Dict[str, Any]) -> None:
        now = utc_now_iso()
        encoded = json.dumps(payload, ensure_ascii=False)
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO user_memories (user_id, character_id, payload_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id, character_id) DO UPDATE SET
                    payload_json = excluded.payload_json,
                    updated_at = excluded.updated_at
                """,
                (user_id, character_id, encoded, now, now),
            )
            await db.commit()
