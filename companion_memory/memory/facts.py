from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Mapping

from ..models import FACT_CATEGORIES, LongTermFact
from .facade import PersistenceFacade


logger = logging.getLogger("companion_memory")


# Onboarding profile answers: field -> (category, key, confidence).
PROFILE_SEED_FIELDS: Mapping[str, tuple[str, str, float]] = {
    "favorite_food": ("preference", "favorite_food", 0.9),
    "favorite_color": ("preference", "favorite_color", 0.9),
    "hobbies": ("preference", "hobbies", 0.9),
    "anniversaries": ("fact", "anniversaries", 0.9),
    "location": ("fact", "location", 0.9),
    "language": ("preference", "language", 0.9),
    "birthday": ("fact", "birthday", 1.0),
}


@dataclass(slots=True)
class DecayReport:
    decayed: int = 0
    deleted: int = 0
    backends: Dict[str, Dict[str, int]] = field(default_factory=dict)


class LongTermFactStore:
    def __init__(
        self,
        facade: PersistenceFacade,
        *,
        list_limit: int = 15,
        merge_weight: float = 0.7,
        stale_after_days: int = 90,
        decay_factor: float = 0.9,
        delete_floor: float = 0.1,
    ) -> None:
        self.facade = facade
        self.list_limit = max(1, int(list_limit))
        self.merge_weight = float(merge_weight)
        self.stale_after_days = max(1, int(stale_after_days))
        self.decay_factor = float(decay_factor)
        self.delete_floor = float(delete_floor)

    async def upsert(
        self,
        user_id: str,
        character_id: str,
        category: str,
        key: str | None,
        value: str,
        confidence: float = 0.8,
    ) -> int:
        if category not in FACT_CATEGORIES:
            raise ValueError(f"Unsupported fact category: {category!r}")
        return await self.facade.upsert_fact(
            user_id,
            character_id,
            category,
            key,
            value,
            confidence,
            merge_weight=self.merge_weight,
        )

    async def list(self, user_id: str, character_id: str, limit: int | None = None) -> List[LongTermFact]:
        return await self.facade.list_facts(user_id, character_id, limit or self.list_limit)

    async def decay(self, now: datetime | None = None) -> DecayReport:
        backends = await self.facade.decay_facts(
            now=now,
            stale_after_days=self.stale_after_days,
            factor=self.decay_factor,
            floor=self.delete_floor,
        )
        return DecayReport(
            decayed=sum(int(r.get("decayed", 0)) for r in backends.values()),
            deleted=sum(int(r.get("deleted", 0)) for r in backends.values()),
            backends=backends,
        )

    async def seed_profile(self, user_id: str, character_id: str, profile: Mapping[str, object]) -> int:
        """Write onboarding answers as facts for one character; returns the number written."""
        self.facade.key(user_id, character_id)
        written = 0
        for name, (category, key, confidence) in PROFILE_SEED_FIELDS.items():
            raw = profile.get(name)
            if raw is None:
                continue
            if isinstance(raw, (list, tuple)):
                value = ", ".join(str(x).strip() for x in raw if str(x).strip())
            else:
                value = str(raw).strip()
            if not value:
                continue
            await self.upsert(user_id, character_id, category, key, value, confidence)
            written += 1
        logger.info("[memory.facts] seeded profile user=%s character=%s facts=%s", user_id, character_id, written)
        return written
