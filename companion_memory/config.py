from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple

from dotenv import load_dotenv

from .characters import DEFAULT_CHARACTER_IDS, normalize_character_id


load_dotenv()


def _env_lookup(name: str, aliases: tuple[str, ...] = ()) -> str | None:
    for key in (name, *aliases):
        # Be tolerant to UTF-8 BOM accidentally saved in .env key names.
        for candidate in (key, f"\ufeff{key}"):
            raw = os.getenv(candidate)
            if raw is not None:
                return raw
    return None


def _env_bool(name: str, default: bool, aliases: tuple[str, ...] = ()) -> bool:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int, aliases: tuple[str, ...] = ()) -> int:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float, aliases: tuple[str, ...] = ()) -> float:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str, aliases: tuple[str, ...] = ()) -> str:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    value = raw.strip()
    return value if value else default


def _env_id_tuple(name: str, default: tuple[str, ...], aliases: tuple[str, ...] = ()) -> Tuple[str, ...]:
    raw = (_env_lookup(name, aliases) or "").strip()
    if not raw:
        return default
    result: list[str] = []
    for chunk in raw.split(","):
        value = normalize_character_id(chunk)
        if value and value not in result:
            result.append(value)
    return tuple(result) or default


@dataclass(slots=True)
class Settings:
    openai_api_key: str
    openai_base_url: str
    openai_chat_model: str
    openai_embedding_model: str
    openai_timeout_seconds: float
    embedding_dimension: int

    sqlite_path: Path
    postgres_dsn: str
    remote_timeout_seconds: float

    character_ids: Tuple[str, ...]

    extraction_llm_enabled: bool
    extraction_timeout_seconds: float
    extraction_default_confidence: float
    extraction_candidate_limit: int
    importance_threshold: float

    fact_list_limit: int
    fact_merge_weight: float
    fact_decay_after_days: int
    fact_decay_factor: float
    fact_delete_floor: float

    episodic_top_k: int
    episodic_match_threshold: float
    episodic_retention_days: int

    summary_enabled: bool
    summary_every_n_turns: int
    summary_max_chars: int
    summary_timeout_seconds: float

    relationship_trust_per_turn: float
    relationship_trust_long_message_bonus: float
    relationship_long_message_chars: int
    relationship_intimacy_disclosure: float
    relationship_affection_positive: float
    relationship_event_intimacy: float
    relationship_event_trust: float
    relationship_casual_threshold: float
    relationship_intimate_threshold: float
    relationship_messages_per_level: int
    relationship_special_moment_cap: int

    context_similarity_floor: float
    context_episode_limit: int
    context_include_relationship: bool
    context_include_user_record: bool

    log_level: str

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            openai_api_key=_env_str("OPENAI_API_KEY", ""),
            openai_base_url=_env_str("OPENAI_BASE_URL", "https://api.openai.com/v1"),
            openai_chat_model=_env_str("OPENAI_CHAT_MODEL", "gpt-4o-mini", aliases=("MEMORY_EXTRACTION_MODEL",)),
            openai_embedding_model=_env_str("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small"),
            openai_timeout_seconds=_env_float("OPENAI_TIMEOUT_SECONDS", 20.0),
            embedding_dimension=_env_int("EMBEDDING_DIMENSION", 1536),
            sqlite_path=Path(_env_str("SQLITE_PATH", "./data/companion_memory.db")).expanduser(),
            postgres_dsn=_env_str("MEMORY_POSTGRES_DSN", "", aliases=("DATABASE_URL",)),
            remote_timeout_seconds=_env_float("MEMORY_REMOTE_TIMEOUT_SECONDS", 5.0),
            character_ids=_env_id_tuple("CHARACTER_IDS", DEFAULT_CHARACTER_IDS),
            extraction_llm_enabled=_env_bool("MEMORY_LLM_EXTRACTION_ENABLED", True),
            extraction_timeout_seconds=_env_float("MEMORY_EXTRACTION_TIMEOUT_SECONDS", 15.0),
            extraction_default_confidence=_env_float("MEMORY_DEFAULT_CONFIDENCE", 0.8),
            extraction_candidate_limit=_env_int("MEMORY_CANDIDATE_FACT_LIMIT", 12),
            importance_threshold=_env_float("MEMORY_IMPORTANCE_THRESHOLD", 4.0),
            fact_list_limit=_env_int("MEMORY_FACT_LIST_LIMIT", 15),
            fact_merge_weight=_env_float("MEMORY_FACT_MERGE_WEIGHT", 0.7),
            fact_decay_after_days=_env_int("MEMORY_FACT_DECAY_AFTER_DAYS", 90),
            fact_decay_factor=_env_float("MEMORY_FACT_DECAY_FACTOR", 0.9),
            fact_delete_floor=_env_float("MEMORY_FACT_DELETE_FLOOR", 0.1),
            episodic_top_k=_env_int("MEMORY_EPISODIC_TOP_K", 6),
            episodic_match_threshold=_env_float("MEMORY_EPISODIC_MATCH_THRESHOLD", 0.7),
            episodic_retention_days=_env_int("MEMORY_EPISODIC_RETENTION_DAYS", 365),
            summary_enabled=_env_bool("SUMMARY_ENABLED", True),
            summary_every_n_turns=_env_int("SUMMARY_EVERY_N_TURNS", 10),
            summary_max_chars=_env_int("SUMMARY_MAX_CHARS", 1100),
            summary_timeout_seconds=_env_float("SUMMARY_TIMEOUT_SECONDS", 20.0),
            relationship_trust_per_turn=_env_float("RELATIONSHIP_TRUST_PER_TURN", 0.1),
            relationship_trust_long_message_bonus=_env_float("RELATIONSHIP_TRUST_LONG_MESSAGE_BONUS", 0.5),
            relationship_long_message_chars=_env_int("RELATIONSHIP_LONG_MESSAGE_CHARS", 50),
            relationship_intimacy_disclosure=_env_float("RELATIONSHIP_INTIMACY_DISCLOSURE", 1.0),
            relationship_affection_positive=_env_float("RELATIONSHIP_AFFECTION_POSITIVE", 0.3),
            relationship_event_intimacy=_env_float("RELATIONSHIP_EVENT_INTIMACY", 2.0),
            relationship_event_trust=_env_float("RELATIONSHIP_EVENT_TRUST", 1.0),
            relationship_casual_threshold=_env_float("RELATIONSHIP_CASUAL_THRESHOLD", 30.0),
            relationship_intimate_threshold=_env_float("RELATIONSHIP_INTIMATE_THRESHOLD", 70.0),
            relationship_messages_per_level=_env_int("RELATIONSHIP_MESSAGES_PER_LEVEL", 5),
            relationship_special_moment_cap=_env_int("RELATIONSHIP_SPECIAL_MOMENT_CAP", 50),
            context_similarity_floor=_env_float("CONTEXT_SIMILARITY_FLOOR", 0.7),
            context_episode_limit=_env_int("CONTEXT_EPISODE_LIMIT", 4),
            context_include_relationship=_env_bool("CONTEXT_INCLUDE_RELATIONSHIP", False),
            context_include_user_record=_env_bool("CONTEXT_INCLUDE_USER_RECORD", False),
            log_level=_env_str("LOG_LEVEL", "INFO").upper(),
        )

    @property
    def remote_enabled(self) -> bool:
        return bool(self.postgres_dsn)

    @property
    def llm_enabled(self) -> bool:
        return bool(self.openai_api_key) and self.openai_api_key != "put_your_openai_api_key_here"

    def validate(self) -> None:
        if self.openai_timeout_seconds < 1:
            raise ValueError("OPENAI_TIMEOUT_SECONDS must be >= 1")
        if not self.openai_chat_model:
            raise ValueError("OPENAI_CHAT_MODEL cannot be empty")
        if not self.openai_embedding_model:
            raise ValueError("OPENAI_EMBEDDING_MODEL cannot be empty")
        if self.embedding_dimension < 1:
            raise ValueError("EMBEDDING_DIMENSION must be >= 1")
        if self.remote_timeout_seconds <= 0:
            raise ValueError("MEMORY_REMOTE_TIMEOUT_SECONDS must be > 0")
        if not self.character_ids:
            raise ValueError("CHARACTER_IDS cannot be empty")

        if self.extraction_timeout_seconds <= 0:
            raise ValueError("MEMORY_EXTRACTION_TIMEOUT_SECONDS must be > 0")
        if not 0.0 <= self.extraction_default_confidence <= 1.0:
            raise ValueError("MEMORY_DEFAULT_CONFIDENCE must be in [0, 1]")
        if self.extraction_candidate_limit < 1:
            raise ValueError("MEMORY_CANDIDATE_FACT_LIMIT must be >= 1")
        if not 1.0 <= self.importance_threshold <= 10.0:
            raise ValueError("MEMORY_IMPORTANCE_THRESHOLD must be in [1, 10]")

        if self.fact_list_limit < 1:
            raise ValueError("MEMORY_FACT_LIST_LIMIT must be >= 1")
        if not 0.0 <= self.fact_merge_weight <= 1.0:
            raise ValueError("MEMORY_FACT_MERGE_WEIGHT must be in [0, 1]")
        if self.fact_decay_after_days < 1:
            raise ValueError("MEMORY_FACT_DECAY_AFTER_DAYS must be >= 1")
        if not 0.0 < self.fact_decay_factor <= 1.0:
            raise ValueError("MEMORY_FACT_DECAY_FACTOR must be in (0, 1]")
        if not 0.0 <= self.fact_delete_floor < 1.0:
            raise ValueError("MEMORY_FACT_DELETE_FLOOR must be in [0, 1)")

        if self.episodic_top_k < 1:
            raise ValueError("MEMORY_EPISODIC_TOP_K must be >= 1")
        if not 0.0 <= self.episodic_match_threshold <= 1.0:
            raise ValueError("MEMORY_EPISODIC_MATCH_THRESHOLD must be in [0, 1]")
        if self.episodic_retention_days < 1:
            raise ValueError("MEMORY_EPISODIC_RETENTION_DAYS must be >= 1")

        if self.summary_every_n_turns < 2:
            raise ValueError("SUMMARY_EVERY_N_TURNS must be >= 2")
        if self.summary_max_chars < 200:
            raise ValueError("SUMMARY_MAX_CHARS must be >= 200")
        if self.summary_timeout_seconds <= 0:
            raise ValueError("SUMMARY_TIMEOUT_SECONDS must be > 0")

        if self.relationship_messages_per_level < 1:
            raise ValueError("RELATIONSHIP_MESSAGES_PER_LEVEL must be >= 1")
        if self.relationship_casual_threshold >= self.relationship_intimate_threshold:
            raise ValueError("RELATIONSHIP_CASUAL_THRESHOLD must be below RELATIONSHIP_INTIMATE_THRESHOLD")
        if self.relationship_special_moment_cap < 1:
            raise ValueError("RELATIONSHIP_SPECIAL_MOMENT_CAP must be >= 1")

        if not 0.0 <= self.context_similarity_floor <= 1.0:
            raise ValueError("CONTEXT_SIMILARITY_FLOOR must be in [0, 1]")
        if self.context_episode_limit < 1:
            raise ValueError("CONTEXT_EPISODE_LIMIT must be >= 1")
        if self.log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError("LOG_LEVEL must be one of DEBUG, INFO, WARNING, ERROR, CRITICAL")
