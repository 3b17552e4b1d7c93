from __future__ import annotations

import asyncio
import logging
from typing import Sequence

from ..models import ConversationTurn
from ..prompts.memory import build_summary_prompt, format_transcript
from ..services.protocols import CompletionBackend
from .facade import PersistenceFacade


logger = logging.getLogger("companion_memory")

_ROLE_LABELS = {"user": "User", "assistant": "Character"}


class RollingSummarizer:
    """Keeps one compressed summary per memory key, replaced every ``every_n_turns`` turns."""

    def __init__(
        self,
        facade: PersistenceFacade,
        completion: CompletionBackend | None,
        *,
        every_n_turns: int = 10,
        max_chars: int = 1100,
        timeout_seconds: float = 20.0,
        temperature: float = 0.3,
        max_tokens: int = 300,
        enabled: bool = True,
    ) -> None:
        self.facade = facade
        self.completion = completion
        self.every_n_turns = max(2, int(every_n_turns))
        self.max_chars = max(200, int(max_chars))
        self.timeout_seconds = max(0.1, float(timeout_seconds))
        self.temperature = float(temperature)
        self.max_tokens = max(32, int(max_tokens))
        self.enabled = bool(enabled)

    async def refresh(self, user_id: str, character_id: str, recent_turns: Sequence[ConversationTurn]) -> bool:
        user, character = self.facade.key(user_id, character_id)
        if not self.enabled or self.completion is None:
            return False
        turns = [t for t in recent_turns if t.user_id == user and t.character_id == character]
        transcript = format_transcript((_ROLE_LABELS.get(t.role, t.role), t.content) for t in turns)
        if not transcript:
            return False

        prompt = build_summary_prompt(transcript, max_chars=self.max_chars)
        try:
            raw = await asyncio.wait_for(
                self.completion.complete(prompt, temperature=self.temperature, max_tokens=self.max_tokens),
                timeout=self.timeout_seconds,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("[memory.summary] completion failed user=%s character=%s: %s", user, character, exc)
            return False

        summary = str(raw or "").strip()[: self.max_chars].strip()
        if not summary:
            logger.warning("[memory.summary] empty summary user=%s character=%s", user, character)
            return False

        try:
            await self.facade.save_summary(user, character, summary, len(turns))
        except Exception as exc:
            logger.warning("[memory.summary] save failed user=%s character=%s: %s", user, character, exc)
            return False
        logger.info("[memory.summary] refreshed user=%s character=%s turns=%s", user, character, len(turns))
        return True

    def crossed_boundary(self, total_before: int, total_after: int) -> bool:
        n = self.every_n_turns
        return max(0, int(total_after)) // n > max(0, int(total_before)) // n

    async def maybe_refresh(self, user_id: str, character_id: str, total_before: int, total_after: int) -> bool:
        if not self.enabled or not self.crossed_boundary(total_before, total_after):
            return False
        turns = await self.facade.recent_turns(user_id, character_id, self.every_n_turns)
        return await self.refresh(user_id, character_id, turns)
