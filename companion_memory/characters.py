from __future__ import annotations

from typing import Iterable


DEFAULT_CHARACTER_IDS: tuple[str, ...] = (
    "alice",
    "ash",
    "bobo",
    "elinyaa",
    "fliza",
    "imeris",
    "kyoko",
    "lena",
    "lilium",
    "maple",
    "miru",
    "miumiu",
    "neco",
    "nekona",
    "notia",
    "ququ",
    "rainy",
    "rindo",
    "sikirei",
    "vivi",
    "wolf",
    "wolferia",
    "yawl",
    "yuu-yii",
    "zwei",
)


class MemoryAccessDenied(PermissionError):
    """Raised when a memory operation targets an unknown character or a mismatched record."""


class MemoryIntegrityError(RuntimeError):
    """A loaded memory record belongs to a different user or character."""


def normalize_character_id(character_id: object) -> str:
    return str(character_id or "").strip().casefold()


class CharacterRegistry:
    """Fixed enumeration of character ids; the isolation boundary for every memory operation."""

    def __init__(self, character_ids: Iterable[str] = DEFAULT_CHARACTER_IDS) -> None:
        ids = {normalize_character_id(x) for x in character_ids}
        ids.discard("")
        if not ids:
            raise ValueError("Character registry cannot be empty")
        self._ids = frozenset(ids)

    def __contains__(self, character_id: object) -> bool:
        return self.is_valid(character_id)

    def __len__(self) -> int:
        return len(self._ids)

    @property
    def character_ids(self) -> tuple[str, ...]:
        return tuple(sorted(self._ids))

    def is_valid(self, character_id: object) -> bool:
        if not isinstance(character_id, str):
            return False
        return normalize_character_id(character_id) in self._ids

    def require(self, character_id: object) -> str:
        if not self.is_valid(character_id):
            raise MemoryAccessDenied(f"Invalid character ID: {character_id!r}")
        return normalize_character_id(character_id)

    def require_key(self, user_id: object, character_id: object) -> tuple[str, str]:
        user = str(user_id or "").strip()
        if not user:
            raise MemoryAccessDenied("user_id is required for memory access")
        return user, self.require(character_id)
