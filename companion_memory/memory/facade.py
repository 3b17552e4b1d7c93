from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, TypeVar

from ..characters import CharacterRegistry, MemoryAccessDenied, MemoryIntegrityError, normalize_character_id
from ..models import (
    TURN_ROLES,
    CompanionMemory,
    ConversationTurn,
    LongTermFact,
    RollingSummary,
    new_memory,
    reconcile_memory,
    utc_now_iso,
)


logger = logging.getLogger("companion_memory")

T = TypeVar("T")
BackendOp = Callable[[Any], Awaitable[T]]


class PersistenceFacade:
    """Routes memory reads and writes to the remote store with a local fallback.

    Every public method validates the ``(user_id, character_id)`` key against
    the character registry before a backend is touched. ``with_primary`` runs an
    operation against the remote backend under a timeout and retries it on the
    local store when the remote raises or times out.
    """

    def __init__(
        self,
        local: Any,
        remote: Any | None = None,
        *,
        registry: CharacterRegistry | None = None,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.local = local
        self.remote = remote
        self.registry = registry or CharacterRegistry()
        self.timeout_seconds = max(0.1, float(timeout_seconds))

    @property
    def backends(self) -> List[Any]:
        return [b for b in (self.remote, self.local) if b is not None]

    async def init(self) -> None:
        await self.local.init()
        if self.remote is None:
            return
        try:
            await asyncio.wait_for(self.remote.init(), timeout=self.timeout_seconds * 4)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("[memory.facade] remote init failed backend=%s err=%s", _backend_name(self.remote), exc)

    async def close(self) -> None:
        for backend in self.backends:
            try:
                await backend.close()
            except Exception as exc:
                logger.warning("[memory.facade] close failed backend=%s err=%s", _backend_name(backend), exc)

    def key(self, user_id: object, character_id: object) -> Tuple[str, str]:
        return self.registry.require_key(user_id, character_id)

    async def with_primary(self, op: BackendOp[T], *, stage: str = "op") -> T:
        if self.remote is not None:
            try:
                return await asyncio.wait_for(op(self.remote), timeout=self.timeout_seconds)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning(
                    "[memory.facade] remote %s failed, falling back to %s: %s",
                    stage,
                    _backend_name(self.local),
                    exc.__class__.__name__ if isinstance(exc, asyncio.TimeoutError) else exc,
                )
        return await op(self.local)

    async def _remote_read(self, op: BackendOp[T], *, stage: str) -> Tuple[bool, T | None]:
        """Return ``(answered, value)``; ``answered`` is False when there is no remote or it failed."""
        if self.remote is None:
            return False, None
        try:
            return True, await asyncio.wait_for(op(self.remote), timeout=self.timeout_seconds)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("[memory.facade] remote %s failed: %s", stage, exc)
            return False, None

    # memory records

    async def load_memory(self, user_id: object, character_id: object) -> CompanionMemory:
        user, character = self.key(user_id, character_id)

        async def _get(backend: Any) -> Optional[Dict[str, Any]]:
            return await backend.get_memory_record(user, character)

        remote_answered, payload = await self._remote_read(_get, stage="memory.read")
        if payload is None:
            payload = await _get(self.local)

        if payload is None:
            memory = new_memory(user, character)
            await self._store_fresh_memory(user, character, memory, remote_answered)
            return memory
        try:
            return reconcile_memory(user, character, payload)
        except MemoryIntegrityError as exc:
            logger.error("[memory.facade] integrity error user=%s character=%s: %s", user, character, exc)
            memory = new_memory(user, character)
            await self._store_fresh_memory(user, character, memory, remote_answered)
            return memory

    async def _store_fresh_memory(
        self,
        user: str,
        character: str,
        memory: CompanionMemory,
        remote_answered: bool,
    ) -> None:
        # an unreachable remote may still hold the real record; never overwrite it with a default
        if self.remote is not None and not remote_answered:
            logger.warning(
                "[memory.facade] remote record unknown, keeping fresh record local user=%s character=%s",
                user,
                character,
            )
            await self.local.upsert_memory_record(user, character, memory.to_dict())
            return
        await self._store_memory(user, character, memory.to_dict())

    async def save_memory(
        self,
        user_id: object,
        character_id: object,
        memory: CompanionMemory | Mapping[str, Any],
    ) -> None:
        user, character = self.key(user_id, character_id)
        payload = memory.to_dict() if isinstance(memory, CompanionMemory) else dict(memory)

        embedded_character = payload.get("character_id")
        if embedded_character is not None and normalize_character_id(embedded_character) != character:
            logger.error(
                "[memory.facade] refusing save: character mismatch %r vs %r",
                embedded_character,
                character,
            )
            raise MemoryAccessDenied(
                f"Character ID mismatch in save: {embedded_character!r} vs {character!r}"
            )
        embedded_user = payload.get("user_id")
        if embedded_user is not None and str(embedded_user).strip() != user:
            raise MemoryAccessDenied(f"User ID mismatch in save: {embedded_user!r} vs {user!r}")

        payload["user_id"] = user
        payload["character_id"] = character
        payload["last_updated"] = utc_now_iso()
        await self._store_memory(user, character, payload)

    async def _store_memory(self, user: str, character: str, payload: Dict[str, Any]) -> None:
        async def _put(backend: Any) -> None:
            await backend.upsert_memory_record(user, character, payload)

        await self.with_primary(_put, stage="memory.write")

    # turn log

    async def save_turn(
        self,
        user_id: object,
        character_id: object,
        role: str,
        content: str,
        emotion: str | None = None,
    ) -> int:
        user, character = self.key(user_id, character_id)
        if role not in TURN_ROLES:
            raise ValueError(f"Unsupported turn role: {role!r}")

        async def _save(backend: Any) -> int:
            return await backend.save_message(user, character, role, content, emotion)

        return await self.with_primary(_save, stage="messages.write")

    async def count_turns(self, user_id: object, character_id: object) -> int:
        user, character = self.key(user_id, character_id)

        async def _count(backend: Any) -> int:
            return await backend.count_messages(user, character)

        return await self.with_primary(_count, stage="messages.count")

    async def recent_turns(self, user_id: object, character_id: object, limit: int) -> List[ConversationTurn]:
        user, character = self.key(user_id, character_id)

        async def _recent(backend: Any) -> List[Dict[str, object]]:
            return await backend.get_recent_messages(user, character, limit)

        rows = await self.with_primary(_recent, stage="messages.read")
        return [
            ConversationTurn(
                user_id=str(row["user_id"]),
                character_id=str(row["character_id"]),
                role=str(row["role"]),
                content=str(row["content"]),
                emotion=row.get("emotion") or None,  # type: ignore[arg-type]
                created_at=str(row.get("created_at") or ""),
                message_id=int(row.get("message_id") or 0),  # type: ignore[arg-type]
            )
            for row in rows
            if _owned(row, user, character)
        ]

    # long-term facts

    async def upsert_fact(
        self,
        user_id: object,
        character_id: object,
        category: str,
        key: str | None,
        value: str,
        confidence: float,
        *,
        merge_weight: float = 0.7,
    ) -> int:
        user, character = self.key(user_id, character_id)

        async def _upsert(backend: Any) -> int:
            return await backend.upsert_long_term_fact(
                user,
                character,
                category,
                key,
                value,
                confidence,
                merge_weight=merge_weight,
            )

        return await self.with_primary(_upsert, stage="facts.write")

    async def list_facts(self, user_id: object, character_id: object, limit: int) -> List[LongTermFact]:
        user, character = self.key(user_id, character_id)

        async def _list(backend: Any) -> List[Dict[str, object]]:
            return await backend.list_long_term_facts(user, character, limit)

        rows = await self.with_primary(_list, stage="facts.read")
        return [
            LongTermFact(
                user_id=str(row["user_id"]),
                character_id=str(row["character_id"]),
                category=str(row["category"]),
                key=str(row.get("key") or ""),
                value=str(row["value"]),
                confidence=float(row["confidence"]),  # type: ignore[arg-type]
                last_seen_at=str(row.get("last_seen_at") or ""),
                created_at=str(row.get("created_at") or ""),
                fact_id=int(row.get("fact_id") or 0),  # type: ignore[arg-type]
            )
            for row in rows
            if _owned(row, user, character)
        ]

    # episodic memories

    async def insert_episodes(
        self,
        user_id: object,
        character_id: object,
        items: Sequence[Tuple[str, Sequence[float]]],
    ) -> int:
        user, character = self.key(user_id, character_id)

        async def _insert(backend: Any) -> int:
            return await backend.insert_episodic_memories(user, character, items)

        return await self.with_primary(_insert, stage="episodes.write")

    async def match_episodes(
        self,
        user_id: object,
        character_id: object,
        query_embedding: Sequence[float],
        *,
        match_count: int,
        threshold: float,
    ) -> List[Dict[str, object]]:
        user, character = self.key(user_id, character_id)

        async def _match(backend: Any) -> List[Dict[str, object]]:
            return await backend.match_episodic_memories(
                user,
                character,
                query_embedding,
                match_count=match_count,
                threshold=threshold,
            )

        rows = await self.with_primary(_match, stage="episodes.match")
        kept = [row for row in rows if _owned(row, user, character)]
        if len(kept) != len(rows):
            logger.warning(
                "[memory.facade] dropped %s episodic rows outside user=%s character=%s",
                len(rows) - len(kept),
                user,
                character,
            )
        return kept

    # rolling summary

    async def get_summary(self, user_id: object, character_id: object) -> RollingSummary | None:
        user, character = self.key(user_id, character_id)

        async def _get(backend: Any) -> Optional[Dict[str, object]]:
            return await backend.get_rolling_summary(user, character)

        _, row = await self._remote_read(_get, stage="summary.read")
        if row is None:
            row = await _get(self.local)
        if row is None or not _owned(row, user, character):
            return None
        return RollingSummary(
            user_id=user,
            character_id=character,
            summary=str(row["summary"]),
            message_count=int(row.get("message_count") or 0),  # type: ignore[arg-type]
            updated_at=str(row.get("updated_at") or ""),
        )

    async def save_summary(self, user_id: object, character_id: object, summary: str, message_count: int) -> None:
        user, character = self.key(user_id, character_id)

        async def _put(backend: Any) -> None:
            await backend.upsert_rolling_summary(user, character, summary, message_count)

        await self.with_primary(_put, stage="summary.write")

    # maintenance

    async def decay_facts(
        self,
        *,
        now: datetime | None = None,
        stale_after_days: int = 90,
        factor: float = 0.9,
        floor: float = 0.1,
    ) -> Dict[str, Dict[str, int]]:
        report: Dict[str, Dict[str, int]] = {}
        for backend in self.backends:
            name = _backend_name(backend)
            try:
                report[name] = await backend.decay_long_term_facts(
                    now=now,
                    stale_after_days=stale_after_days,
                    factor=factor,
                    floor=floor,
                )
            except Exception as exc:
                logger.warning("[memory.maintenance] fact decay failed backend=%s err=%s", name, exc)
        return report

    async def prune_episodes(self, *, now: datetime | None = None, retention_days: int = 365) -> Dict[str, int]:
        report: Dict[str, int] = {}
        for backend in self.backends:
            name = _backend_name(backend)
            try:
                report[name] = await backend.prune_episodic_memories(now=now, retention_days=retention_days)
            except Exception as exc:
                logger.warning("[memory.maintenance] episodic prune failed backend=%s err=%s", name, exc)
        return report

    async def maintenance(
        self,
        *,
        now: datetime | None = None,
        stale_after_days: int = 90,
        factor: float = 0.9,
        floor: float = 0.1,
        retention_days: int = 365,
    ) -> Dict[str, Any]:
        decay = await self.decay_facts(now=now, stale_after_days=stale_after_days, factor=factor, floor=floor)
        pruned = await self.prune_episodes(now=now, retention_days=retention_days)
        return {"facts": decay, "episodes": pruned}


def _backend_name(backend: Any) -> str:
    return str(getattr(backend, "backend_name", backend.__class__.__name__))


def _owned(row: Mapping[str, object], user: str, character: str) -> bool:
    row_user = row.get("user_id")
    row_character = row.get("character_id")
    if row_user is not None and str(row_user) != user:
        return False
    if row_character is not None and normalize_character_id(row_character) != character:
        return False
    return True

