from __future__ import annotations

import json
from typing import Iterable, Mapping


MEMORY_EXTRACTION_SCHEMA_HINT_OBJECT = {
    "longTerm": [
        {
            "category": "preference|fact|relationship|goal|trigger",
            "key": "optional short key",
            "value": "string",
            "confidence": 0.6,
        }
    ],
    "episodic": ["short event description, 1-2 sentences"],
}

MEMORY_EXTRACTION_SCHEMA_HINT = json.dumps(
    MEMORY_EXTRACTION_SCHEMA_HINT_OBJECT,
    ensure_ascii=False,
    separators=(",", ":"),
)

MEMORY_EXTRACTION_SYSTEM_PROMPT = (
    "You are a memory extractor for a companion chat. From the user message and the assistant reply, "
    "extract only information worth remembering long term:\n"
    "- explicit personal preferences (likes/dislikes for food, colours, activities, ...)\n"
    "- important facts (birthday, job, family situation, pets, ...)\n"
    "- relationship changes (preferred nicknames, growing closeness, ...)\n"
    "- explicit goals, plans or promises\n"
    "- emotional triggers, fears or notable personality traits\n"
    "Write values in the user's language. Confidence must be between 0.6 and 0.95. "
    "Episodic entries are concise descriptions of what happened in this exchange. "
    "If nothing is worth remembering return empty lists."
)

MEMORY_EXTRACTION_USER_PROMPT_TEMPLATE = (
    "Return a JSON object shaped like: {schema_hint}\n\n"
    "User message: {user_message}\n"
    "Assistant reply: {agent_reply}"
)

SUMMARY_PROMPT_TEMPLATE = (
    "Summarize the following conversation as concise bullet points, keeping important information "
    "and the emotional tone:\n"
    "{transcript}\n\n"
    "Requirements:\n"
    "- 3-5 bullet points, one line each\n"
    "- keep important factual information\n"
    "- record emotional changes and how the relationship develops\n"
    "- describe both speakers in the third person\n"
    "- at most {max_chars} characters in total"
)

FALLBACK_REPLY = "Sorry, I'm a little tired right now. Can we talk again in a moment?"

CONTEXT_SECTION_LABELS: Mapping[str, str] = {
    "persona": "[Persona]",
    "summary": "[Conversation summary]",
    "facts": "[What you remember about the user]",
    "episodes": "[Related memories]",
    "relationship": "[Relationship]",
    "profile": "[About the user]",
    "topics": "[Related topics]",
    "background": "[Chat background]",
}

FACT_CATEGORY_LABELS: Mapping[str, str] = {
    "preference": "Preferences",
    "fact": "Facts",
    "relationship": "Relationship",
    "goal": "Goals",
    "trigger": "Triggers",
}

FACT_KEY_FALLBACK_LABEL = "info"

RELATIONSHIP_STAGES: tuple[tuple[float, str], ...] = (
    (20.0, "new acquaintances"),
    (40.0, "casual friends"),
    (60.0, "good friends"),
    (80.0, "close friends"),
)
RELATIONSHIP_TOP_STAGE = "very close friends"


def build_memory_extraction_prompt(user_message: str, agent_reply: str = "") -> str:
    user_part = MEMORY_EXTRACTION_USER_PROMPT_TEMPLATE.format(
        schema_hint=MEMORY_EXTRACTION_SCHEMA_HINT,
        user_message=user_message,
        agent_reply=agent_reply or "(none)",
    )
    return f"{MEMORY_EXTRACTION_SYSTEM_PROMPT}\n\n{user_part}"


def format_transcript(lines: Iterable[tuple[str, str]]) -> str:
    return "\n".join(f"{role}: {content}" for role, content in lines if str(content).strip())


def build_summary_prompt(transcript: str, *, max_chars: int) -> str:
    return SUMMARY_PROMPT_TEMPLATE.format(transcript=transcript, max_chars=max(200, int(max_chars)))
