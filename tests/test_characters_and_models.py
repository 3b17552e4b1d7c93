from __future__ import annotations

import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from companion_memory.characters import (  # noqa: E402
    DEFAULT_CHARACTER_IDS,
    CharacterRegistry,
    MemoryAccessDenied,
    MemoryIntegrityError,
)
from companion_memory.models import MEMORY_VERSION, new_memory, reconcile_memory  # noqa: E402


def test_registry_ships_twenty_five_characters_and_canonicalises_case() -> None:
    registry = CharacterRegistry()

    assert len(registry) == 25
    assert len(DEFAULT_CHARACTER_IDS) == 25
    assert registry.require("  ALICE ") == "alice"
    assert "Yuu-Yii" in registry
    assert registry.require_key(" u1 ", "Kyoko") == ("u1", "kyoko")


def test_registry_rejects_unknown_character_and_empty_user() -> None:
    registry = CharacterRegistry()

    with pytest.raises(MemoryAccessDenied):
        registry.require("not-a-character")
    with pytest.raises(MemoryAccessDenied):
        registry.require(None)
    with pytest.raises(MemoryAccessDenied):
        registry.require_key("", "alice")


def test_registry_can_be_overridden() -> None:
    registry = CharacterRegistry(["Hero", "sidekick", ""])

    assert registry.character_ids == ("hero", "sidekick")
    assert not registry.is_valid("alice")
    with pytest.raises(ValueError):
        CharacterRegistry([" ", ""])


def test_reconcile_overlays_only_present_type_correct_values() -> None:
    stored = {
        "user_id": "u1",
        "character_id": "ALICE",
        "created_at": "2025-01-01T00:00:00+00:00",
        "memory_version": "1.0",
        "user_profile": {"name": "Ming", "age": None, "goals": "not-a-list", "current_mood": 3},
        "relationship": {
            "level": 4,
            "trust": "high",
            "intimacy": 33,
            "communication_style": "flirty",
            "milestones": {"first_meeting": "2025-01-01T00:00:00+00:00", "first_secret": None},
            "special_moments": [{"content": "first trip", "importance": 6, "timestamp": "t"}, {"content": ""}],
        },
        "statistics": {"total_messages": 12, "emotional_tone": {"positive": 2}},
        "unknown_section": {"x": 1},
    }

    memory = reconcile_memory("u1", "alice", stored)

    assert memory.character_id == "alice"
    assert memory.memory_version == MEMORY_VERSION
    assert memory.created_at == "2025-01-01T00:00:00+00:00"
    assert memory.user_profile.name == "Ming"
    assert memory.user_profile.age is None
    assert memory.user_profile.goals == []
    assert memory.user_profile.current_mood == "neutral"
    assert memory.relationship.level == 4
    assert memory.relationship.trust == 10.0
    assert memory.relationship.intimacy == 33.0
    assert memory.relationship.communication_style == "formal"
    assert memory.relationship.milestones["first_meeting"] == "2025-01-01T00:00:00+00:00"
    assert memory.relationship.milestones["first_secret"] is None
    assert [m.content for m in memory.relationship.special_moments] == ["first trip"]
    assert memory.statistics.total_messages == 12
    assert memory.statistics.emotional_tone == {"positive": 2}
    assert not hasattr(memory, "unknown_section")


def test_reconcile_raises_on_foreign_record() -> None:
    with pytest.raises(MemoryIntegrityError):
        reconcile_memory("u1", "alice", {"character_id": "bobo"})
    with pytest.raises(MemoryIntegrityError):
        reconcile_memory("u1", "alice", {"user_id": "u2", "character_id": "alice"})


def test_new_memory_defaults() -> None:
    memory = new_memory("u1", "alice")
    rel = memory.relationship

    assert (rel.level, rel.trust, rel.intimacy, rel.affection) == (1, 10.0, 5.0, 10.0)
    assert rel.communication_style == "formal"
    assert rel.milestones["first_meeting"]
    assert all(rel.milestones[name] is None for name in rel.milestones if name != "first_meeting")
    assert memory.to_dict()["topic_memories"]["hobbies"] == []
