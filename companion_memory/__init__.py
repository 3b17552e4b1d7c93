"""Per-user, per-character conversational memory for AI companion chat."""

from .characters import CharacterRegistry, MemoryAccessDenied, MemoryIntegrityError
from .config import Settings

__all__ = ["CharacterRegistry", "MemoryAccessDenied", "MemoryIntegrityError", "Settings"]
