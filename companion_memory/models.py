from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from .characters import MemoryIntegrityError


logger = logging.getLogger("companion_memory")

MEMORY_VERSION = "2.0"

FACT_CATEGORIES: tuple[str, ...] = ("preference", "fact", "relationship", "goal", "trigger")
COMMUNICATION_STYLES: tuple[str, ...] = ("formal", "casual", "intimate")
TURN_ROLES: tuple[str, ...] = ("user", "assistant")
TOPIC_BUCKETS: tuple[str, ...] = (
    "work",
    "family",
    "hobbies",
    "relationships",
    "dreams",
    "problems",
    "preferences",
    "dislikes",
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso(now: datetime | None = None) -> str:
    return (now or utc_now()).isoformat(timespec="seconds")


@dataclass(slots=True)
class LongTermFact:
    user_id: str
    character_id: str
    category: str
    key: str
    value: str
    confidence: float
    last_seen_at: str
    created_at: str
    fact_id: int = 0


@dataclass(slots=True)
class EpisodicMatch:
    text: str
    similarity: float
    created_at: str


@dataclass(slots=True)
class RollingSummary:
    user_id: str
    character_id: str
    summary: str
    message_count: int
    updated_at: str


@dataclass(slots=True)
class ConversationTurn:
    user_id: str
    character_id: str
    role: str
    content: str
    emotion: Optional[str] = None
    created_at: str = ""
    message_id: int = 0


@dataclass(slots=True)
class SpecialMoment:
    content: str
    timestamp: str
    importance: float
    kind: str = "important_sharing"


def _default_milestones() -> Dict[str, Optional[str]]:
    return {
        "first_meeting": utc_now_iso(),
        "first_secret": None,
        "deep_conversation": None,
        "first_compliment": None,
        "first_argument": None,
        "future_planning": None,
        "appreciation": None,
    }


@dataclass(slots=True)
class RelationshipState:
    level: int = 1
    trust: float = 10.0
    intimacy: float = 5.0
    affection: float = 10.0
    communication_style: str = "formal"
    milestones: Dict[str, Optional[str]] = field(default_factory=_default_milestones)
    special_moments: List[SpecialMoment] = field(default_factory=list)
    nicknames: List[str] = field(default_factory=list)


@dataclass(slots=True)
class UserProfile:
    name: Optional[str] = None
    nickname: Optional[str] = None
    age: Optional[str] = None
    occupation: Optional[str] = None
    location: Optional[str] = None
    personality: Optional[str] = None
    background: Optional[str] = None
    current_mood: str = "neutral"
    secrets: List[str] = field(default_factory=list)
    goals: List[str] = field(default_factory=list)
    fears: List[str] = field(default_factory=list)
    last_profile_update: Optional[str] = None


@dataclass(slots=True)
class TopicMemories:
    work: List[str] = field(default_factory=list)
    family: List[str] = field(default_factory=list)
    hobbies: List[str] = field(default_factory=list)
    relationships: List[str] = field(default_factory=list)
    dreams: List[str] = field(default_factory=list)
    problems: List[str] = field(default_factory=list)
    preferences: List[str] = field(default_factory=list)
    dislikes: List[str] = field(default_factory=list)

    def bucket(self, name: str) -> List[str]:
        if name not in TOPIC_BUCKETS:
            raise KeyError(name)
        return getattr(self, name)


@dataclass(slots=True)
class TemporalContext:
    last_chat_time: Optional[str] = None
    chat_frequency: int = 0
    preferred_chat_times: List[str] = field(default_factory=list)
    daily_interactions: Dict[str, int] = field(default_factory=dict)
    time_zone: str = "Asia/Shanghai"


def _default_tone() -> Dict[str, int]:
    return {"positive": 0, "negative": 0, "neutral": 0}


@dataclass(slots=True)
class Statistics:
    total_messages: int = 0
    total_characters: int = 0
    average_message_length: float = 0.0
    emotional_tone: Dict[str, int] = field(default_factory=_default_tone)
    topics_discussed: Dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class CharacterSpecific:
    shared_experiences: List[Dict[str, str]] = field(default_factory=list)
    future_plans: List[Dict[str, str]] = field(default_factory=list)


@dataclass(slots=True)
class CompanionMemory:
    """Per (user, character) document: profile, relationship, topics, temporal context and statistics."""

    user_id: str
    character_id: str
    created_at: str = field(default_factory=utc_now_iso)
    last_updated: str = field(default_factory=utc_now_iso)
    memory_version: str = MEMORY_VERSION
    user_profile: UserProfile = field(default_factory=UserProfile)
    relationship: RelationshipState = field(default_factory=RelationshipState)
    topic_memories: TopicMemories = field(default_factory=TopicMemories)
    temporal_context: TemporalContext = field(default_factory=TemporalContext)
    statistics: Statistics = field(default_factory=Statistics)
    character_specific: CharacterSpecific = field(default_factory=CharacterSpecific)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class MemorySnapshot:
    summary: str = ""
    facts: List[LongTermFact] = field(default_factory=list)
    episodes: List[EpisodicMatch] = field(default_factory=list)
    relationship: Optional[RelationshipState] = None
    memory: Optional[CompanionMemory] = None
    query: str = ""


# Record reconciliation --------------------------------------------------------
#
# A stored record is overlaid onto a freshly created default one section at a
# time. Only the fields declared on the section dataclasses are read, and a
# stored value replaces the default only when it is present, not None and of
# the same shape as the default.


def _accepts(default: Any, value: Any) -> bool:
    if value is None:
        return False
    if isinstance(default, bool):
        return isinstance(value, bool)
    if isinstance(default, (int, float)):
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if isinstance(default, list):
        return isinstance(value, list)
    if isinstance(default, dict):
        return isinstance(value, dict)
    # str and Optional[str] defaults
    return isinstance(value, str)


def _coerce(default: Any, value: Any) -> Any:
    if isinstance(default, int) and not isinstance(default, bool):
        return int(value)
    if isinstance(default, float):
        return float(value)
    if isinstance(default, list):
        return list(value)
    if isinstance(default, dict):
        return dict(value)
    return value


def _overlay_section(target: Any, payload: object, *, skip: tuple[str, ...] = ()) -> None:
    if not isinstance(payload, Mapping):
        return
    for f in fields(target):
        if f.name in skip or f.name not in payload:
            continue
        value = payload[f.name]
        default = getattr(target, f.name)
        if default is None:
            # Optional[str] fields
            if isinstance(value, (str, int, float)) and not isinstance(value, bool):
                setattr(target, f.name, str(value))
            continue
        if _accepts(default, value):
            setattr(target, f.name, _coerce(default, value))


def _load_special_moments(raw: object) -> List[SpecialMoment]:
    if not isinstance(raw, list):
        return []
    moments: List[SpecialMoment] = []
    for item in raw:
        if not isinstance(item, Mapping):
            continue
        content = str(item.get("content") or "").strip()
        if not content:
            continue
        try:
            importance = float(item.get("importance") or 0.0)
        except (TypeError, ValueError):
            importance = 0.0
        moments.append(
            SpecialMoment(
                content=content,
                timestamp=str(item.get("timestamp") or ""),
                importance=importance,
                kind=str(item.get("kind") or "important_sharing"),
            )
        )
    return moments


def _overlay_relationship(target: RelationshipState, payload: object) -> None:
    if not isinstance(payload, Mapping):
        return
    _overlay_section(target, payload, skip=("milestones", "special_moments"))
    milestones = payload.get("milestones")
    if isinstance(milestones, Mapping):
        for name, stamp in milestones.items():
            if stamp is None and name in target.milestones:
                continue
            target.milestones[str(name)] = str(stamp) if stamp is not None else None
    if "special_moments" in payload:
        target.special_moments = _load_special_moments(payload.get("special_moments"))
    if target.communication_style not in COMMUNICATION_STYLES:
        target.communication_style = "formal"


def new_memory(user_id: str, character_id: str) -> CompanionMemory:
    return CompanionMemory(user_id=user_id, character_id=character_id)


def reconcile_memory(user_id: str, character_id: str, loaded: Mapping[str, Any] | None) -> CompanionMemory:
    """Build a typed record for ``(user_id, character_id)`` from a stored payload.

    Raises ``MemoryIntegrityError`` when the payload carries ids of another
    memory key; callers treat that as a corrupt record.
    """
    memory = new_memory(user_id, character_id)
    if not loaded:
        return memory

    stored_character = loaded.get("character_id")
    if stored_character is not None and str(stored_character).strip().casefold() != character_id:
        raise MemoryIntegrityError(
            f"Character ID mismatch in memory: {stored_character!r} vs {character_id!r}"
        )
    stored_user = loaded.get("user_id")
    if stored_user is not None and str(stored_user).strip() != user_id:
        raise MemoryIntegrityError(f"User ID mismatch in memory: {stored_user!r} vs {user_id!r}")

    for name in ("created_at", "last_updated"):
        value = loaded.get(name)
        if isinstance(value, str) and value:
            setattr(memory, name, value)

    _overlay_section(memory.user_profile, loaded.get("user_profile"))
    _overlay_relationship(memory.relationship, loaded.get("relationship"))
    _overlay_section(memory.topic_memories, loaded.get("topic_memories"))
    _overlay_section(memory.temporal_context, loaded.get("temporal_context"))
    _overlay_section(memory.statistics, loaded.get("statistics"))
    _overlay_section(memory.character_specific, loaded.get("character_specific"))

    memory.user_id = user_id
    memory.character_id = character_id
    memory.memory_version = MEMORY_VERSION
    return memory
