from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Sequence

from ..models import EpisodicMatch
from ..services.protocols import EmbeddingBackend
from .facade import PersistenceFacade


logger = logging.getLogger("companion_memory")


class EmbeddingError(RuntimeError):
    """Embedding backend returned the wrong number of vectors or vectors of the wrong size."""


def _clean_texts(texts: Iterable[str], *, max_chars: int) -> List[str]:
    cleaned: List[str] = []
    seen: set[str] = set()
    for raw in texts:
        text = " ".join(str(raw or "").strip().split())[:max_chars]
        if not text:
            continue
        marker = text.casefold()
        if marker in seen:
            continue
        seen.add(marker)
        cleaned.append(text)
    return cleaned


class EpisodicMemoryStore:
    def __init__(
        self,
        facade: PersistenceFacade,
        embedder: EmbeddingBackend | None,
        *,
        dimension: int = 1536,
        retention_days: int = 365,
        timeout_seconds: float = 20.0,
        max_text_chars: int = 500,
    ) -> None:
        self.facade = facade
        self.embedder = embedder
        self.dimension = int(dimension)
        self.retention_days = max(1, int(retention_days))
        self.timeout_seconds = max(0.1, float(timeout_seconds))
        self.max_text_chars = max(20, int(max_text_chars))

    async def _embed(self, texts: List[str]) -> List[List[float]]:
        if self.embedder is None:
            raise EmbeddingError("No embedding backend configured")
        vectors = await asyncio.wait_for(self.embedder.embed(texts), timeout=self.timeout_seconds)
        if not isinstance(vectors, list) or len(vectors) != len(texts):
            raise EmbeddingError(
                f"Embedding count mismatch: expected {len(texts)}, got {len(vectors) if isinstance(vectors, list) else 'n/a'}"
            )
        checked: List[List[float]] = []
        for vector in vectors:
            if not isinstance(vector, list) or len(vector) != self.dimension:
                size = len(vector) if isinstance(vector, list) else "n/a"
                raise EmbeddingError(f"Embedding dimension mismatch: expected {self.dimension}, got {size}")
            checked.append([float(x) for x in vector])
        return checked

    async def insert_many(self, user_id: str, character_id: str, texts: Sequence[str]) -> int:
        user, character = self.facade.key(user_id, character_id)
        cleaned = _clean_texts(texts, max_chars=self.max_text_chars)
        if not cleaned:
            return 0
        vectors = await self._embed(cleaned)
        return await self.facade.insert_episodes(user, character, list(zip(cleaned, vectors)))

    async def search(
        self,
        user_id: str,
        character_id: str,
        query: str,
        k: int = 6,
        threshold: float = 0.7,
    ) -> List[EpisodicMatch]:
        user, character = self.facade.key(user_id, character_id)
        query_clean = " ".join(str(query or "").strip().split())
        if not query_clean or k < 1:
            return []
        [query_vector] = await self._embed([query_clean])
        rows = await self.facade.match_episodes(
            user,
            character,
            query_vector,
            match_count=k,
            threshold=threshold,
        )
        matches = [
            EpisodicMatch(
                text=str(row["text"]),
                similarity=float(row["similarity"]),  # type: ignore[arg-type]
                created_at=str(row.get("created_at") or ""),
            )
            for row in rows
            if float(row.get("similarity") or 0.0) >= threshold  # type: ignore[arg-type]
        ]
        matches.sort(key=lambda m: m.similarity, reverse=True)
        return matches[:k]

    async def prune(self, now: datetime | None = None) -> int:
        report: Dict[str, int] = await self.facade.prune_episodes(now=now, retention_days=self.retention_days)
        return sum(report.values())
