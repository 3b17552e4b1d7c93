from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ..models import ConversationTurn, RelationshipState, SpecialMoment, utc_now_iso
from ..prompts.memory import RELATIONSHIP_STAGES, RELATIONSHIP_TOP_STAGE
from .rules import DEFAULT_RELATIONSHIP_RULES, RelationshipRules


logger = logging.getLogger("companion_memory")


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


@dataclass(frozen=True, slots=True)
class RelationshipTuning:
    trust_per_turn: float = 0.1
    trust_long_message_bonus: float = 0.5
    long_message_chars: int = 50
    intimacy_disclosure: float = 1.0
    affection_positive: float = 0.3
    event_intimacy: float = 2.0
    event_trust: float = 1.0
    casual_threshold: float = 30.0
    intimate_threshold: float = 70.0
    messages_per_level: int = 5
    max_level: int = 100
    special_moment_cap: int = 50


class RelationshipScorer:
    def __init__(
        self,
        tuning: RelationshipTuning | None = None,
        rules: RelationshipRules = DEFAULT_RELATIONSHIP_RULES,
    ) -> None:
        self.tuning = tuning or RelationshipTuning()
        self.rules = rules

    def update(
        self,
        state: RelationshipState,
        turn: ConversationTurn,
        *,
        total_messages: int,
        special_moment: Optional[SpecialMoment] = None,
        now: datetime | None = None,
    ) -> RelationshipState:
        """Return the state after one turn; the input state is never modified."""
        try:
            return self._apply(state, turn, total_messages, special_moment, now)
        except Exception:
            logger.exception("[memory.relationship] update failed; keeping previous state")
            return state

    def _apply(
        self,
        state: RelationshipState,
        turn: ConversationTurn,
        total_messages: int,
        special_moment: Optional[SpecialMoment],
        now: datetime | None,
    ) -> RelationshipState:
        t = self.tuning
        nxt = copy.deepcopy(state)
        content = str(turn.content or "")
        lowered = content.casefold()
        stamp = utc_now_iso(now)

        nxt.level = min(t.max_level, max(0, int(total_messages)) // max(1, t.messages_per_level) + 1)

        trust_gain = t.trust_per_turn
        if len(content) > t.long_message_chars:
            trust_gain += t.trust_long_message_bonus
        nxt.trust = _clamp(nxt.trust + trust_gain, 0.0, 100.0)

        emotion = str(turn.emotion or "").strip().lower()
        if emotion in self.rules.positive_emotions:
            nxt.affection = _clamp(nxt.affection + t.affection_positive, 0.0, 100.0)

        if turn.role == "user":
            if any(keyword in lowered for keyword in self.rules.disclosure_keywords):
                nxt.intimacy = _clamp(nxt.intimacy + t.intimacy_disclosure, 0.0, 100.0)

            for event in self.rules.special_events:
                if not event.pattern.search(content):
                    continue
                nxt.intimacy = _clamp(nxt.intimacy + t.event_intimacy, 0.0, 100.0)
                nxt.trust = _clamp(nxt.trust + t.event_trust, 0.0, 100.0)
                if nxt.milestones.get(event.milestone) is None:
                    nxt.milestones[event.milestone] = stamp
                    logger.info("[memory.relationship] milestone reached: %s", event.milestone)

        if nxt.communication_style == "formal" and nxt.intimacy > t.casual_threshold:
            nxt.communication_style = "casual"
        if nxt.communication_style == "casual" and nxt.intimacy > t.intimate_threshold:
            nxt.communication_style = "intimate"

        if special_moment is not None:
            nxt.special_moments.append(copy.copy(special_moment))
            if len(nxt.special_moments) > t.special_moment_cap:
                nxt.special_moments = nxt.special_moments[-t.special_moment_cap :]

        return nxt

    @staticmethod
    def describe(state: RelationshipState) -> str:
        stage = RELATIONSHIP_TOP_STAGE
        for upper, label in RELATIONSHIP_STAGES:
            if state.intimacy < upper:
                stage = label
                break
        return (
            f"{stage} (level {state.level}, trust {state.trust:.0f}, intimacy {state.intimacy:.0f}, "
            f"affection {state.affection:.0f}, style {state.communication_style})"
        )
