from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

try:
    import asyncpg
except Exception:  # pragma: no cover - optional dependency at runtime
    asyncpg = None  # type: ignore[assignment]

from ..models import FACT_CATEGORIES, utc_now
from .storage.utils import _clamp, normalize_fact_key, normalize_fact_value


logger = logging.getLogger("companion_memory")


def _vector_literal(vector: Sequence[float]) -> str:
    return "[" + ",".join(repr(float(x)) for x in vector) + "]"


def _iso(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat(timespec="seconds")
    return str(value or "")


class PostgresMemoryStore:
    """Postgres + pgvector memory store implementing the same API as LocalMemoryStore."""

    SCHEMA_VERSION = 1
    backend_name = "postgres"

    def __init__(self, dsn: str, *, embedding_dimension: int = 1536) -> None:
        self.dsn = dsn.strip()
        if not self.dsn:
            raise ValueError("MEMORY_POSTGRES_DSN cannot be empty")
        self.embedding_dimension = int(embedding_dimension)
        if self.embedding_dimension < 1:
            raise ValueError("embedding_dimension must be >= 1")
        self._pool: "asyncpg.Pool | None" = None
        self._init_lock = asyncio.Lock()
        self._initialized = False

    async def _ensure_pool(self) -> "asyncpg.Pool":
        if asyncpg is None:
            raise RuntimeError(
                "Postgres memory backend requires asyncpg. Install with: pip install asyncpg"
            )
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                dsn=self.dsn,
                min_size=1,
                max_size=6,
                command_timeout=30.0,
            )
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
        self._initialized = False

    async def init(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return
            pool = await self._ensure_pool()
            async with pool.acquire() as conn:
                async with conn.transaction():
                    version = await self._get_schema_version(conn)
                    if version > self.SCHEMA_VERSION:
                        raise RuntimeError(
                            f"Postgres memory schema version {version} is newer than supported {self.SCHEMA_VERSION}. "
                            "Upgrade before starting."
                        )
                    await self._create_schema(conn)
                    if version != self.SCHEMA_VERSION:
                        await self._set_schema_version(conn, self.SCHEMA_VERSION)
            self._initialized = True

    async def _get_schema_version(self, conn: "asyncpg.Connection") -> int:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS memory_meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """
        )
        row = await conn.fetchrow("SELECT value FROM memory_meta WHERE key = 'schema_version'")
        if row is None:
            return 0
        try:
            return int(str(row["value"]))
        except ValueError:
            return 0

    async def _set_schema_version(self, conn: "asyncpg.Connection", version: int) -> None:
        await conn.execute(
            """
            INSERT INTO memory_meta (key, value, updated_at)
            VALUES ('schema_version', $1, NOW())
            ON CONFLICT(key) DO UPDATE SET
                value = EXCLUDED.value,
                updated_at = NOW()
            """,
            str(int(version)),
        )

    async def _create_schema(self, conn: "asyncpg.Connection") -> None:
        await conn.execute("CREATE EXTENSION IF NOT EXISTS vector")
        await conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS user_memories (
                user_id TEXT NOT NULL,
                character_id TEXT NOT NULL,
                payload JSONB NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                PRIMARY KEY (user_id, character_id)
            );

            CREATE TABLE IF NOT EXISTS messages (
                message_id BIGSERIAL PRIMARY KEY,
                user_id TEXT NOT NULL,
                character_id TEXT NOT NULL,
                role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
                content TEXT NOT NULL,
                emotion TEXT,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );

            CREATE INDEX IF NOT EXISTS idx_messages_key
            ON messages(user_id, character_id, message_id DESC);

            CREATE TABLE IF NOT EXISTS long_term_memories (
                fact_id BIGSERIAL PRIMARY KEY,
                user_id TEXT NOT NULL,
                character_id TEXT NOT NULL,
                category TEXT NOT NULL
                    CHECK (category IN ('preference', 'fact', 'relationship', 'goal', 'trigger')),
                fact_key TEXT NOT NULL DEFAULT '',
                value TEXT NOT NULL,
                confidence DOUBLE PRECISION NOT NULL DEFAULT 0.8,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                last_seen_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                deleted_at TIMESTAMPTZ,
                UNIQUE (user_id, character_id, category, fact_key)
            );

            CREATE INDEX IF NOT EXISTS idx_long_term_key_seen
            ON long_term_memories(user_id, character_id, last_seen_at DESC);

            CREATE TABLE IF NOT EXISTS episodic_memories (
                episode_id BIGSERIAL PRIMARY KEY,
                user_id TEXT NOT NULL,
                character_id TEXT NOT NULL,
                text TEXT NOT NULL,
                embedding vector({self.embedding_dimension}) NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );

            CREATE INDEX IF NOT EXISTS idx_episodic_key_created
            ON episodic_memories(user_id, character_id, created_at DESC);

            CREATE TABLE IF NOT EXISTS rolling_summaries (
                user_id TEXT NOT NULL,
                character_id TEXT NOT NULL,
                summary TEXT NOT NULL,
                message_count INTEGER NOT NULL DEFAULT 0,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                PRIMARY KEY (user_id, character_id)
            );
            """
        )

    # memory records

    async def get_memory_record(self, user_id: str, character_id: str) -> Optional[Dict[str, Any]]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            raw = await conn.fetchval(
                """
                SELECT payload::text
                FROM user_memories
                WHERE user_id = $1 AND character_id = $2
                """,
                user_id,
                character_id,
            )
        if raw is None:
            return None
        payload = json.loads(str(raw))
        return payload if isinstance(payload, dict) else None

    async def upsert_memory_record(self, user_id: str, character_id: str, payload: Dict[str, Any]) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO user_memories (user_id, character_id, payload, created_at, updated_at)
                VALUES ($1, $2, $3::jsonb, NOW(), NOW())
                ON CONFLICT(user_id, character_id) DO UPDATE SET
                    payload = EXCLUDED.payload,
                    updated_at = NOW()
                """,
                user_id,
                character_id,
                json.dumps(payload, ensure_ascii=False),
            )

    # turn log

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
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            message_id = await conn.fetchval(
                """
                INSERT INTO messages (user_id, character_id, role, content, emotion, created_at)
                VALUES ($1, $2, $3, $4, $5, $6)
                RETURNING message_id
                """,
                user_id,
                character_id,
                role,
                content,
                emotion,
                now or utc_now(),
            )
            return int(message_id)

    async def count_messages(self, user_id: str, character_id: str) -> int:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            value = await conn.fetchval(
                "SELECT COUNT(*) FROM messages WHERE user_id = $1 AND character_id = $2",
                user_id,
                character_id,
            )
        return int(value or 0)

    async def get_recent_messages(self, user_id: str, character_id: str, limit: int) -> List[Dict[str, object]]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT message_id, user_id, character_id, role, content, emotion, created_at
                FROM messages
                WHERE user_id = $1 AND character_id = $2
                ORDER BY message_id DESC
                LIMIT $3
                """,
                user_id,
                character_id,
                max(1, int(limit)),
            )
        ordered = list(reversed(rows))
        return [
            {
                "message_id": int(row["message_id"]),
                "user_id": str(row["user_id"]),
                "character_id": str(row["character_id"]),
                "role": str(row["role"]),
                "content": str(row["content"]),
                "emotion": row["emotion"],
                "created_at": _iso(row["created_at"]),
            }
            for row in ordered
        ]

    # long-term facts

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
        weight = _clamp(float(merge_weight), 0.0, 1.0)
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            fact_id = await conn.fetchval(
                """
                INSERT INTO long_term_memories (
                    user_id, character_id, category, fact_key, value, confidence, created_at, last_seen_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $7)
                ON CONFLICT(user_id, character_id, category, fact_key) DO UPDATE SET
                    value = EXCLUDED.value,
                    confidence = CASE
                        WHEN long_term_memories.deleted_at IS NOT NULL THEN EXCLUDED.confidence
                        ELSE LEAST(
                            GREATEST(long_term_memories.confidence, EXCLUDED.confidence),
                            GREATEST(
                                LEAST(long_term_memories.confidence, EXCLUDED.confidence),
                                long_term_memories.confidence * $8 + EXCLUDED.confidence * (1.0 - $8)
                            )
                        )
                    END,
                    last_seen_at = EXCLUDED.last_seen_at,
                    deleted_at = NULL
                RETURNING fact_id
                """,
                user_id,
                character_id,
                category_clean,
                normalize_fact_key(key, value_clean),
                value_clean,
                _clamp(float(confidence), 0.0, 1.0),
                now or utc_now(),
                weight,
            )
        return int(fact_id or 0)

    async def list_long_term_facts(self, user_id: str, character_id: str, limit: int = 15) -> List[Dict[str, object]]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT fact_id, user_id, character_id, category, fact_key, value, confidence, created_at, last_seen_at
                FROM long_term_memories
                WHERE user_id = $1 AND character_id = $2 AND deleted_at IS NULL
                ORDER BY last_seen_at DESC, fact_id DESC
                LIMIT $3
                """,
                user_id,
                character_id,
                max(1, int(limit)),
            )
        return [
            {
                "fact_id": int(row["fact_id"]),
                "user_id": str(row["user_id"]),
                "character_id": str(row["character_id"]),
                "category": str(row["category"]),
                "key": str(row["fact_key"]),
                "value": str(row["value"]),
                "confidence": float(row["confidence"]),
                "created_at": _iso(row["created_at"]),
                "last_seen_at": _iso(row["last_seen_at"]),
            }
            for row in rows
        ]

    async def decay_long_term_facts(
        self,
        *,
        now: datetime | None = None,
        stale_after_days: int = 90,
        factor: float = 0.9,
        floor: float = 0.1,
    ) -> Dict[str, int]:
        current = now or utc_now()
        cutoff = current - timedelta(days=max(0, int(stale_after_days)))
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                decayed_status = await conn.execute(
                    """
                    UPDATE long_term_memories
                    SET confidence = confidence * $1
                    WHERE deleted_at IS NULL AND last_seen_at < $2
                    """,
                    float(factor),
                    cutoff,
                )
                deleted_status = await conn.execute(
                    """
                    UPDATE long_term_memories
                    SET deleted_at = $1
                    WHERE deleted_at IS NULL AND confidence < $2
                    """,
                    current,
                    float(floor),
                )
        decayed = _affected_rows(decayed_status)
        deleted = _affected_rows(deleted_status)
        if decayed or deleted:
            logger.info("[memory.postgres] fact decay decayed=%s soft_deleted=%s", decayed, deleted)
        return {"decayed": decayed, "deleted": deleted}

    # episodic memories

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
        stamp = now or utc_now()
        rows = [(user_id, character_id, str(text), _vector_literal(vector), stamp) for text, vector in items]
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.executemany(
                    """
                    INSERT INTO episodic_memories (user_id, character_id, text, embedding, created_at)
                    VALUES ($1, $2, $3, ($4::text)::vector, $5)
                    """,
                    rows,
                )
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
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT user_id, character_id, text, created_at, similarity
                FROM (
                    SELECT user_id, character_id, text, created_at,
                           1 - (embedding <=> ($3::text)::vector) AS similarity
                    FROM episodic_memories
                    WHERE user_id = $1 AND character_id = $2
                ) AS scored
                WHERE similarity >= $4
                ORDER BY similarity DESC
                LIMIT $5
                """,
                user_id,
                character_id,
                _vector_literal(query_embedding),
                float(threshold),
                max(1, int(match_count)),
            )
        return [
            {
                "user_id": str(row["user_id"]),
                "character_id": str(row["character_id"]),
                "text": str(row["text"]),
                "similarity": float(row["similarity"]),
                "created_at": _iso(row["created_at"]),
            }
            for row in rows
        ]

    async def prune_episodic_memories(self, *, now: datetime | None = None, retention_days: int = 365) -> int:
        cutoff = (now or utc_now()) - timedelta(days=max(0, int(retention_days)))
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            status = await conn.execute("DELETE FROM episodic_memories WHERE created_at < $1", cutoff)
        return _affected_rows(status)

    # rolling summaries

    async def get_rolling_summary(self, user_id: str, character_id: str) -> Optional[Dict[str, object]]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT user_id, character_id, summary, message_count, updated_at
                FROM rolling_summaries
                WHERE user_id = $1 AND character_id = $2
                """,
                user_id,
                character_id,
            )
        if row is None:
            return None
        return {
            "user_id": str(row["user_id"]),
            "character_id": str(row["character_id"]),
            "summary": str(row["summary"]),
            "message_count": int(row["message_count"]),
            "updated_at": _iso(row["updated_at"]),
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
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO rolling_summaries (user_id, character_id, summary, message_count, updated_at)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT(user_id, character_id) DO UPDATE SET
                    summary = EXCLUDED.summary,
                    message_count = EXCLUDED.message_count,
                    updated_at = EXCLUDED.updated_at
                """,
                user_id,
                character_id,
                summary,
                max(0, int(message_count)),
                now or utc_now(),
            )


def _affected_rows(status: object) -> int:
    # asyncpg returns command tags such as "UPDATE 3" / "DELETE 0".
    try:
        return max(0, int(str(status).rsplit(" ", 1)[-1]))
    except ValueError:
        return 0
