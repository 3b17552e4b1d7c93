from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Mapping

from ..models import (
    FACT_CATEGORIES,
    TOPIC_BUCKETS,
    CompanionMemory,
    LongTermFact,
    MemorySnapshot,
    RelationshipState,
    TemporalContext,
    utc_now,
)
from ..prompts.memory import CONTEXT_SECTION_LABELS, FACT_CATEGORY_LABELS, FACT_KEY_FALLBACK_LABEL
from .relationship import RelationshipScorer
from .rules import DEFAULT_TOPIC_KEYWORDS


PROFILE_FIELDS: tuple[str, ...] = ("name", "nickname", "age", "occupation", "location", "personality")
MOMENT_PREVIEW_CHARS = 30


def _fact_line(fact: LongTermFact) -> str:
    key = str(fact.key or "").strip()
    # list-valued facts are keyed "<field>:<value>"; the value already carries the content
    if ":" in key:
        key = key.split(":", 1)[0]
    if not key or key.casefold() == fact.value.casefold():
        key = FACT_KEY_FALLBACK_LABEL
    return f"- {key}: {fact.value}"


def _facts_section(facts: List[LongTermFact]) -> str:
    grouped: Dict[str, List[LongTermFact]] = {}
    for fact in facts:
        grouped.setdefault(fact.category, []).append(fact)
    blocks: List[str] = []
    for category in FACT_CATEGORIES:
        items = grouped.get(category)
        if not items:
            continue
        label = FACT_CATEGORY_LABELS.get(category, category)
        blocks.append(f"{label}:\n" + "\n".join(_fact_line(f) for f in items))
    return "\n".join(blocks)


def _relationship_section(state: RelationshipState) -> str:
    lines = [RelationshipScorer.describe(state)]
    if state.nicknames:
        lines.append(f"- nicknames: {', '.join(state.nicknames)}")
    if state.special_moments:
        content = state.special_moments[-1].content
        preview = content[:MOMENT_PREVIEW_CHARS] + ("..." if len(content) > MOMENT_PREVIEW_CHARS else "")
        lines.append(f"- latest special moment: {preview}")
    reached = [name for name, stamp in state.milestones.items() if stamp is not None]
    if reached:
        lines.append(f"- milestones: {', '.join(reached)}")
    return "\n".join(lines)


def _profile_section(memory: CompanionMemory) -> str:
    profile = memory.user_profile
    lines: List[str] = []
    for name in PROFILE_FIELDS:
        value = getattr(profile, name)
        if value:
            lines.append(f"- {name}: {value}")
    if memory.topic_memories.preferences:
        lines.append(f"- likes: {', '.join(memory.topic_memories.preferences[-3:])}")
    if profile.goals:
        lines.append(f"- goals: {', '.join(profile.goals[-2:])}")
    if profile.current_mood and profile.current_mood != "neutral":
        lines.append(f"- current mood: {profile.current_mood}")
    return "\n".join(lines)


def _topics_section(
    memory: CompanionMemory,
    query: str,
    topic_keywords: Mapping[str, tuple[str, ...]],
) -> str:
    lowered = str(query or "").casefold()
    if not lowered:
        return ""
    lines: List[str] = []
    for bucket, keywords in topic_keywords.items():
        if bucket not in TOPIC_BUCKETS:
            continue
        entries = memory.topic_memories.bucket(bucket)
        if entries and any(keyword.casefold() in lowered for keyword in keywords):
            lines.append(f"- {bucket}: {'; '.join(entries[-2:])}")
    return "\n".join(lines)


def _parse_stamp(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _background_section(temporal: TemporalContext, now: datetime) -> str:
    if temporal.chat_frequency <= 0 and not temporal.last_chat_time:
        return ""
    lines: List[str] = []
    last = _parse_stamp(temporal.last_chat_time) if temporal.last_chat_time else None
    if last is not None:
        hours = int((now - last).total_seconds() // 3600)
        if hours < 1:
            lines.append("- you were chatting just now")
        elif hours < 24:
            lines.append(f"- you last chatted {hours} hours ago")
        else:
            lines.append("- it has been a long time since you last chatted")
    lines.append(f"- chats so far: {temporal.chat_frequency}")
    return "\n".join(lines)


def build_context(
    snapshot: MemorySnapshot,
    persona: str,
    *,
    include_relationship: bool = False,
    include_user_record: bool = False,
    similarity_floor: float = 0.7,
    episode_limit: int = 4,
    topic_keywords: Mapping[str, tuple[str, ...]] = DEFAULT_TOPIC_KEYWORDS,
    now: datetime | None = None,
) -> str:
    """Assemble the prompt context; optional sections follow the fixed ones and empty ones are dropped."""
    sections: List[str] = []

    persona_text = str(persona or "").strip()
    if persona_text:
        sections.append(f"{CONTEXT_SECTION_LABELS['persona']}\n{persona_text}")

    summary = str(snapshot.summary or "").strip()
    if summary:
        sections.append(f"{CONTEXT_SECTION_LABELS['summary']}\n{summary}")

    facts_block = _facts_section(list(snapshot.facts))
    if facts_block:
        sections.append(f"{CONTEXT_SECTION_LABELS['facts']}\n{facts_block}")

    episodes = sorted(
        (e for e in snapshot.episodes if e.similarity > similarity_floor and e.text.strip()),
        key=lambda e: e.similarity,
        reverse=True,
    )[: max(0, int(episode_limit))]
    if episodes:
        lines = "\n".join(f"- {e.text.strip()}" for e in episodes)
        sections.append(f"{CONTEXT_SECTION_LABELS['episodes']}\n{lines}")

    if include_relationship and snapshot.relationship is not None:
        sections.append(f"{CONTEXT_SECTION_LABELS['relationship']}\n{_relationship_section(snapshot.relationship)}")

    memory = snapshot.memory
    if include_user_record and memory is not None:
        optional = (
            ("profile", _profile_section(memory)),
            ("topics", _topics_section(memory, snapshot.query, topic_keywords)),
            ("background", _background_section(memory.temporal_context, now or utc_now())),
        )
        for label, block in optional:
            if block:
                sections.append(f"{CONTEXT_SECTION_LABELS[label]}\n{block}")

    return "\n\n".join(sections)
