from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List

import aiosqlite

from ...models import FACT_CATEGORIES, utc_now_iso
from .utils import _clamp, _sqlite_memory_connection, cutoff_iso, merge_confidence, normalize_fact_key, normalize_fact_value


logger = logging.getLogger("companion_memory")


def _fact_row(row: aiosqlite.Row) -> Dict[str, object]:
    return {
        "fact_id": int(row["fact_id"]),
        "user_id": str(row["user_id"]),
        "character_id": str(row["character_id"]),
        "category": str(row["category"]),
        "key": str(row["fact_key"]),
        "value": str(row["value"]),
        "confidence": float(row["confidence"]),
        "created_at": str(row["created_at"]),
        "last_seen_at": str(row["last_seen_at"]),
    }


class MemoryFactsMixin:
    async def upsert_long_term_fact(
        self,
        user_id: str,
        character_id: str,
        category: str,
        key: str | None,
        value: str,
        confidence: float,
        *,
        merge_weight: float = 0.7,
        now: datetime | None = None,
    ) -> int:
        category_clean = str(category or "").strip().lower()
        if category_clean not in FACT_CATEGORIES:
            raise ValueError(f"Unsupported fact category: {category!r}")
        value_clean = normalize_fact_value(value)
        if not value_clean:
            return 0
        fact_key = normalize_fact_key(key, value_clean)
        incoming = _clamp(float(confidence), 0.0, 1.0)
        stamp = utc_now_iso(now)

        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT fact_id, confidence, deleted_at
                FROM long_term_memories
                WHERE user_id = ? AND character_id = ? AND category = ? AND fact_key = ?
                """,
                (user_id, character_id, category_clean, fact_key),
            ) as cursor:
                existing = await cursor.fetchone()

            if existing is None:
                cursor = await db.execute(
                    """
                    INSERT INTO long_term_memories (
                        user_id, character_id, category, fact_key, value, confidence, created_at, last_seen_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (user_id, character_id, category_clean, fact_key, value_clean, incoming, stamp, stamp),
                )
                await db.commit()
                return int(cursor.lastrowid)

            fact_id = int(existing["fact_id"])
            if existing["deleted_at"] is not None:
                next_confidence = incoming
            else:
                next_confidence = merge_confidence(
                    float(existing["confidence"]),
                    incoming,
                    prior_weight=merge_weight,
                )
            await db.execute(
                """
                UPDATE long_term_memories
                SET value = ?,
                    confidence = ?,
                    last_seen_at = ?,
                    deleted_at = NULL
                WHERE fact_id = ?
                """,
                (value_clean, next_confidence, stamp, fact_id),
            )
            await db.commit()
            return fact_id

    async def list_long_term_facts(self, user_id: str, character_id: str, limit: int = 15) -> List[Dict[str, object]]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT fact_id, user_id, character_id, category, fact_key, value, confidence, created_at, last_seen_at
                FROM long_term_memories
                WHERE user_id = ? AND character_id = ? AND deleted_at IS NULL
                ORDER BY last_seen_at DESC, fact_id DESC
                LIMIT ?
                """,
                (user_id, character_id, max(1, int(limit))),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_fact_row(row) for row in rows]

    async def decay_long_term_facts(
        self,
        *,
        now: datetime | None = None,
        stale_after_days: int = 90,
        factor: float = 0.9,
        floor: float = 0.1,
    ) -> Dict[str, int]:
        cutoff = cutoff_iso(now, stale_after_days)
        deleted_stamp = utc_now_iso(now)
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE long_term_memories
                SET confidence = confidence * ?
                WHERE deleted_at IS NULL AND last_seen_at < ?
                """,
                (float(factor), cutoff),
            )
            decayed = max(0, int(cursor.rowcount or 0))
            cursor = await db.execute(
                """
                UPDATE long_term_memories
                SET deleted_at = ?
                WHERE deleted_at IS NULL AND confidence < ?
                """,
                (deleted_stamp, float(floor)),
            )
            deleted = max(0, int(cursor.rowcount or 0))
            await db.commit()

        if decayed or deleted:
            logger.info("[memory.sqlite] fact decay decayed=%s soft_deleted=%s", decayed, deleted)
        return {"decayed": decayed, "deleted": deleted}
