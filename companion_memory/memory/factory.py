from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..characters import CharacterRegistry
from ..config import Settings
from ..services.openai_client import OpenAIChatClient, OpenAIEmbeddingClient
from .episodes import EpisodicMemoryStore
from .extractor import FactExtractor
from .facade import PersistenceFacade
from .facts import LongTermFactStore
from .pipeline import MemoryPipeline
from .relationship import RelationshipScorer, RelationshipTuning
from .store import LocalMemoryStore
from .summary import RollingSummarizer


def build_memory_facade(settings: Settings) -> PersistenceFacade:
    local = LocalMemoryStore(settings.sqlite_path)
    remote: Any | None = None
    if settings.remote_enabled:
        from .postgres_store import PostgresMemoryStore

        remote = PostgresMemoryStore(settings.postgres_dsn, embedding_dimension=settings.embedding_dimension)
    return PersistenceFacade(
        local,
        remote,
        registry=CharacterRegistry(settings.character_ids),
        timeout_seconds=settings.remote_timeout_seconds,
    )


def build_relationship_tuning(settings: Settings) -> RelationshipTuning:
    return RelationshipTuning(
        trust_per_turn=settings.relationship_trust_per_turn,
        trust_long_message_bonus=settings.relationship_trust_long_message_bonus,
        long_message_chars=settings.relationship_long_message_chars,
        intimacy_disclosure=settings.relationship_intimacy_disclosure,
        affection_positive=settings.relationship_affection_positive,
        event_intimacy=settings.relationship_event_intimacy,
        event_trust=settings.relationship_event_trust,
        casual_threshold=settings.relationship_casual_threshold,
        intimate_threshold=settings.relationship_intimate_threshold,
        messages_per_level=settings.relationship_messages_per_level,
        special_moment_cap=settings.relationship_special_moment_cap,
    )


@dataclass(slots=True)
class MemoryRuntime:
    facade: PersistenceFacade
    pipeline: MemoryPipeline
    chat: OpenAIChatClient | None = None
    embedder: OpenAIEmbeddingClient | None = None

    async def start(self) -> None:
        for client in (self.chat, self.embedder):
            if client is not None:
                await client.start()
        await self.facade.init()

    async def close(self) -> None:
        for client in (self.chat, self.embedder):
            if client is not None:
                await client.close()
        await self.facade.close()


def build_memory_runtime(settings: Settings) -> MemoryRuntime:
    facade = build_memory_facade(settings)
    chat: OpenAIChatClient | None = None
    embedder: OpenAIEmbeddingClient | None = None
    if settings.llm_enabled:
        chat = OpenAIChatClient(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            model=settings.openai_chat_model,
            timeout_seconds=settings.openai_timeout_seconds,
        )
        embedder = OpenAIEmbeddingClient(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            model=settings.openai_embedding_model,
            dimension=settings.embedding_dimension,
            timeout_seconds=settings.openai_timeout_seconds,
        )

    extractor = FactExtractor(
        chat,
        llm_enabled=settings.extraction_llm_enabled,
        default_confidence=settings.extraction_default_confidence,
        candidate_limit=settings.extraction_candidate_limit,
        importance_threshold=settings.importance_threshold,
        timeout_seconds=settings.extraction_timeout_seconds,
    )
    facts = LongTermFactStore(
        facade,
        list_limit=settings.fact_list_limit,
        merge_weight=settings.fact_merge_weight,
        stale_after_days=settings.fact_decay_after_days,
        decay_factor=settings.fact_decay_factor,
        delete_floor=settings.fact_delete_floor,
    )
    episodes = EpisodicMemoryStore(
        facade,
        embedder,
        dimension=settings.embedding_dimension,
        retention_days=settings.episodic_retention_days,
        timeout_seconds=settings.openai_timeout_seconds,
    )
    summarizer = RollingSummarizer(
        facade,
        chat,
        every_n_turns=settings.summary_every_n_turns,
        max_chars=settings.summary_max_chars,
        timeout_seconds=settings.summary_timeout_seconds,
        enabled=settings.summary_enabled,
    )
    pipeline = MemoryPipeline(
        facade,
        extractor,
        facts,
        episodes,
        summarizer,
        RelationshipScorer(build_relationship_tuning(settings)),
        episodic_top_k=settings.episodic_top_k,
        episodic_threshold=settings.episodic_match_threshold,
        similarity_floor=settings.context_similarity_floor,
        episode_limit=settings.context_episode_limit,
        include_relationship=settings.context_include_relationship,
        include_user_record=settings.context_include_user_record,
    )
    return MemoryRuntime(facade=facade, pipeline=pipeline, chat=chat, embedder=embedder)
