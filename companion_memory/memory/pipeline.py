from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..characters import MemoryAccessDenied
from ..models import (
    CompanionMemory,
    ConversationTurn,
    EpisodicMatch,
    LongTermFact,
    MemorySnapshot,
    RelationshipState,
    Statistics,
    utc_now,
    utc_now_iso,
)
from ..prompts.memory import FALLBACK_REPLY
from .context import build_context
from .episodes import EpisodicMemoryStore
from .extractor import ExtractionResult, FactExtractor
from .facade import PersistenceFacade
from .facts import LongTermFactStore
from .relationship import RelationshipScorer
from .summary import RollingSummarizer


logger = logging.getLogger("companion_memory")

TOPIC_BUCKET_CAP = 20


def _time_of_day(hour: int) -> str:
    if 5 <= hour < 12:
        return "morning"
    if 12 <= hour < 18:
        return "afternoon"
    if 18 <= hour < 23:
        return "evening"
    return "night"


def _extend_unique(target: List[str], values: List[str], *, cap: int | None = None) -> None:
    seen = {v.casefold() for v in target}
    for value in values:
        if value.casefold() in seen:
            continue
        seen.add(value.casefold())
        target.append(value)
    if cap is not None and len(target) > cap:
        del target[: len(target) - cap]


def _count_message(stats: Statistics, content: str) -> None:
    stats.total_messages += 1
    stats.total_characters += len(content)
    stats.average_message_length = round(stats.total_characters / stats.total_messages, 2)


@dataclass(slots=True)
class ExchangeReport:
    user_id: str
    character_id: str
    turns_saved: int = 0
    facts_written: int = 0
    episodes_written: int = 0
    summary_refreshed: bool = False
    importance: float = 1.0
    relationship: Optional[RelationshipState] = None
    errors: List[str] = field(default_factory=list)


class MemoryPipeline:
    """Per-turn memory update and context retrieval over the component stores."""

    def __init__(
        self,
        facade: PersistenceFacade,
        extractor: FactExtractor,
        facts: LongTermFactStore,
        episodes: EpisodicMemoryStore,
        summarizer: RollingSummarizer,
        scorer: RelationshipScorer,
        *,
        episodic_top_k: int = 6,
        episodic_threshold: float = 0.7,
        similarity_floor: float = 0.7,
        episode_limit: int = 4,
        include_relationship: bool = False,
        include_user_record: bool = False,
    ) -> None:
        self.facade = facade
        self.extractor = extractor
        self.facts = facts
        self.episodes = episodes
        self.summarizer = summarizer
        self.scorer = scorer
        self.episodic_top_k = max(1, int(episodic_top_k))
        self.episodic_threshold = float(episodic_threshold)
        self.similarity_floor = float(similarity_floor)
        self.episode_limit = max(1, int(episode_limit))
        self.include_relationship = bool(include_relationship)
        self.include_user_record = bool(include_user_record)
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}

    def _lock(self, user: str, character: str) -> asyncio.Lock:
        lock = self._locks.get((user, character))
        if lock is None:
            lock = asyncio.Lock()
            self._locks[(user, character)] = lock
        return lock

    async def get_memory(self, user_id: str, character_id: str) -> CompanionMemory:
        return await self.facade.load_memory(user_id, character_id)

    async def _save_exchange_turns(
        self,
        user: str,
        character: str,
        user_message: str,
        agent_reply: str,
        emotion: str | None,
        reply_emotion: str | None,
    ) -> int:
        saved = 0
        await self.facade.save_turn(user, character, "user", user_message, emotion)
        saved += 1
        if agent_reply:
            await self.facade.save_turn(user, character, "assistant", agent_reply, reply_emotion)
            saved += 1
        return saved

    async def process_exchange(
        self,
        user_id: str,
        character_id: str,
        user_message: str,
        agent_reply: str = "",
        *,
        emotion: str | None = None,
        reply_emotion: str | None = None,
        now: datetime | None = None,
    ) -> ExchangeReport:
        user, character = self.facade.key(user_id, character_id)
        message = str(user_message or "").strip()
        reply = str(agent_reply or "").strip()
        report = ExchangeReport(user_id=user, character_id=character)
        if not message:
            return report

        async with self._lock(user, character):
            total_before = await self._count_turns(user, character, report)

            saved, extraction = await asyncio.gather(
                self._save_exchange_turns(user, character, message, reply, emotion, reply_emotion),
                self.extractor.extract(message, reply),
                return_exceptions=True,
            )
            for outcome in (saved, extraction):
                if isinstance(outcome, (MemoryAccessDenied, asyncio.CancelledError)):
                    raise outcome
            if isinstance(saved, BaseException):
                self._fail(report, "turns", saved)
            else:
                report.turns_saved = int(saved)
            if isinstance(extraction, BaseException):
                self._fail(report, "extract", extraction)
                extraction = ExtractionResult()
            report.importance = extraction.importance

            total_after = total_before + report.turns_saved

            for candidate in extraction.facts:
                try:
                    await self.facts.upsert(
                        user,
                        character,
                        candidate.category,
                        candidate.key,
                        candidate.value,
                        candidate.confidence,
                    )
                    report.facts_written += 1
                except MemoryAccessDenied:
                    raise
                except Exception as exc:
                    self._fail(report, "facts", exc)

            if extraction.episodes:
                try:
                    report.episodes_written = await self.episodes.insert_many(user, character, extraction.episodes)
                except MemoryAccessDenied:
                    raise
                except Exception as exc:
                    self._fail(report, "episodes", exc)

            try:
                memory = await self.facade.load_memory(user, character)
                self._apply_extraction(memory, extraction, emotion, reply_emotion, now)
                # level derives from the message count stored in the record
                stats = memory.statistics
                _count_message(stats, message)
                state = self.scorer.update(
                    memory.relationship,
                    ConversationTurn(user, character, "user", message, emotion),
                    total_messages=stats.total_messages,
                    special_moment=extraction.special_moment,
                    now=now,
                )
                if reply:
                    _count_message(stats, reply)
                    state = self.scorer.update(
                        state,
                        ConversationTurn(user, character, "assistant", reply, reply_emotion),
                        total_messages=stats.total_messages,
                        now=now,
                    )
                memory.relationship = state
                await self.facade.save_memory(user, character, memory)
                report.relationship = state
            except MemoryAccessDenied:
                raise
            except Exception as exc:
                self._fail(report, "record", exc)

            try:
                report.summary_refreshed = await self.summarizer.maybe_refresh(
                    user,
                    character,
                    total_before,
                    total_after,
                )
            except MemoryAccessDenied:
                raise
            except Exception as exc:
                self._fail(report, "summary", exc)

        logger.info(
            "[memory.pipeline] exchange user=%s character=%s turns=%s facts=%s episodes=%s summary=%s",
            user,
            character,
            report.turns_saved,
            report.facts_written,
            report.episodes_written,
            report.summary_refreshed,
        )
        return report

    async def _count_turns(self, user: str, character: str, report: ExchangeReport) -> int:
        try:
            return await self.facade.count_turns(user, character)
        except MemoryAccessDenied:
            raise
        except Exception as exc:
            self._fail(report, "count", exc)
            return 0

    @staticmethod
    def _fail(report: ExchangeReport, stage: str, exc: BaseException) -> None:
        report.errors.append(f"{stage}: {exc}")
        logger.warning(
            "[memory.%s] failed user=%s character=%s: %s",
            stage,
            report.user_id,
            report.character_id,
            exc,
        )

    def _apply_extraction(
        self,
        memory: CompanionMemory,
        extraction: ExtractionResult,
        emotion: str | None,
        reply_emotion: str | None,
        now: datetime | None,
    ) -> None:
        current = now or utc_now()
        stamp = utc_now_iso(current)

        profile_updates = extraction.profile.get("user_profile", {})
        for name, value in profile_updates.items():
            if isinstance(value, list):
                _extend_unique(getattr(memory.user_profile, name), value)
            else:
                setattr(memory.user_profile, name, value)
        topic_updates = extraction.profile.get("topic_memories", {})
        for name, value in topic_updates.items():
            _extend_unique(memory.topic_memories.bucket(name), list(value), cap=TOPIC_BUCKET_CAP)
        if profile_updates or topic_updates:
            memory.user_profile.last_profile_update = stamp
        if emotion:
            memory.user_profile.current_mood = emotion

        stats = memory.statistics
        for bucket, sentences in extraction.topics.items():
            _extend_unique(memory.topic_memories.bucket(bucket), sentences, cap=TOPIC_BUCKET_CAP)
            stats.topics_discussed[bucket] = int(stats.topics_discussed.get(bucket, 0)) + 1

        rules = self.scorer.rules
        tone_source = str(reply_emotion or emotion or "").strip().lower()
        if tone_source in rules.positive_emotions:
            tone = "positive"
        elif tone_source in rules.negative_emotions:
            tone = "negative"
        else:
            tone = "neutral"
        stats.emotional_tone[tone] = int(stats.emotional_tone.get(tone, 0)) + 1

        temporal = memory.temporal_context
        temporal.last_chat_time = stamp
        temporal.chat_frequency += 1
        day = current.date().isoformat()
        temporal.daily_interactions[day] = int(temporal.daily_interactions.get(day, 0)) + 1
        _extend_unique(temporal.preferred_chat_times, [_time_of_day(current.hour)])

        if extraction.special_moment is not None:
            memory.character_specific.shared_experiences.append(
                {"content": extraction.special_moment.content, "timestamp": extraction.special_moment.timestamp}
            )
            if len(memory.character_specific.shared_experiences) > TOPIC_BUCKET_CAP:
                del memory.character_specific.shared_experiences[:-TOPIC_BUCKET_CAP]

    # retrieval

    async def retrieve_snapshot(self, user_id: str, character_id: str, query: str) -> MemorySnapshot:
        user, character = self.facade.key(user_id, character_id)
        facts, episodes, summary, memory = await asyncio.gather(
            self.facts.list(user, character),
            self.episodes.search(user, character, query, self.episodic_top_k, self.episodic_threshold),
            self.facade.get_summary(user, character),
            self.facade.load_memory(user, character),
            return_exceptions=True,
        )
        for stage, result in (("facts", facts), ("episodes", episodes), ("summary", summary), ("record", memory)):
            if isinstance(result, BaseException):
                logger.warning("[memory.context] %s fetch failed user=%s character=%s: %s", stage, user, character, result)

        fact_list: List[LongTermFact] = [] if isinstance(facts, BaseException) else list(facts)
        episode_list: List[EpisodicMatch] = [] if isinstance(episodes, BaseException) else list(episodes)
        summary_text = "" if isinstance(summary, BaseException) or summary is None else summary.summary
        record = None if isinstance(memory, BaseException) else memory
        return MemorySnapshot(
            summary=summary_text,
            facts=fact_list,
            episodes=episode_list,
            relationship=None if record is None else record.relationship,
            memory=record,
            query=str(query or ""),
        )

    async def build_prompt_context(self, user_id: str, character_id: str, persona: str, query: str) -> str:
        snapshot = await self.retrieve_snapshot(user_id, character_id, query)
        return build_context(
            snapshot,
            persona,
            include_relationship=self.include_relationship,
            include_user_record=self.include_user_record,
            similarity_floor=self.similarity_floor,
            episode_limit=self.episode_limit,
            topic_keywords=self.extractor.rules.topic_keywords,
        )

    async def respond(
        self,
        user_id: str,
        character_id: str,
        user_message: str,
        persona: str,
        generate: Callable[[str, str], Awaitable[str]],
        *,
        emotion: str | None = None,
    ) -> str:
        """Build context, ask ``generate(context, message)`` for a reply and record the exchange.

        Any failure other than an access violation yields the fallback reply.
        """
        self.facade.key(user_id, character_id)
        try:
            context = await self.build_prompt_context(user_id, character_id, persona, user_message)
            reply = str(await generate(context, user_message) or "").strip()
        except MemoryAccessDenied:
            raise
        except Exception as exc:
            logger.error("[memory.pipeline] reply generation failed: %s", exc)
            return FALLBACK_REPLY
        if not reply:
            return FALLBACK_REPLY
        try:
            await self.process_exchange(user_id, character_id, user_message, reply, emotion=emotion)
        except MemoryAccessDenied:
            raise
        except Exception as exc:
            logger.error("[memory.pipeline] exchange recording failed: %s", exc)
        return reply

    async def run_maintenance(self, now: datetime | None = None) -> Dict[str, Any]:
        decay = await self.facts.decay(now)
        pruned = await self.episodes.prune(now)
        logger.info(
            "[memory.maintenance] facts decayed=%s soft_deleted=%s episodes_pruned=%s",
            decay.decayed,
            decay.deleted,
            pruned,
        )
        return {"facts_decayed": decay.decayed, "facts_deleted": decay.deleted, "episodes_pruned": pruned}
