from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from companion_memory.memory.relationship import RelationshipScorer, RelationshipTuning  # noqa: E402
from companion_memory.models import ConversationTurn, RelationshipState, SpecialMoment  # noqa: E402


def _turn(content: str, role: str = "user", emotion: str | None = None) -> ConversationTurn:
    return ConversationTurn(user_id="u1", character_id="alice", role=role, content=content, emotion=emotion)


def test_level_follows_total_message_count() -> None:
    scorer = RelationshipScorer()

    updated = scorer.update(RelationshipState(), _turn("hello"), total_messages=47)

    assert updated.level == 10
    assert scorer.update(RelationshipState(), _turn("hello"), total_messages=0).level == 1
    assert scorer.update(RelationshipState(), _turn("hello"), total_messages=10_000).level == 100


def test_trust_affection_and_disclosure_increments() -> None:
    scorer = RelationshipScorer()
    state = RelationshipState()

    short = scorer.update(state, _turn("hi there"), total_messages=1)
    long_text = "I spent the whole afternoon walking along the river thinking about things."
    long = scorer.update(state, _turn(long_text, emotion="happy"), total_messages=1)
    disclosed = scorer.update(state, _turn("我叫小明"), total_messages=1)

    assert short.trust == pytest.approx(10.1)
    assert long.trust == pytest.approx(10.6)
    assert long.affection == pytest.approx(10.3)
    assert short.intimacy == pytest.approx(5.0)
    assert disclosed.intimacy == pytest.approx(6.0)
    # input state is left untouched
    assert state.trust == 10.0
    assert state.intimacy == 5.0


def test_assistant_turn_does_not_count_as_disclosure_or_event() -> None:
    scorer = RelationshipScorer()

    updated = scorer.update(RelationshipState(), _turn("我叫Alice，谢谢你陪伴我聊天", role="assistant"), total_messages=2)

    assert updated.intimacy == pytest.approx(5.0)
    assert updated.trust == pytest.approx(10.1)
    assert updated.milestones["appreciation"] is None


def test_special_event_sets_milestone_once() -> None:
    scorer = RelationshipScorer()
    first_at = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    first = scorer.update(RelationshipState(), _turn("谢谢你一直陪伴我聊天"), total_messages=3, now=first_at)
    second = scorer.update(first, _turn("谢谢你一直陪伴我聊天"), total_messages=4, now=first_at + timedelta(days=2))

    assert first.intimacy == pytest.approx(7.0)
    assert first.trust == pytest.approx(11.1)
    assert first.milestones["appreciation"] == "2026-03-01T12:00:00+00:00"
    assert second.milestones["appreciation"] == "2026-03-01T12:00:00+00:00"
    assert second.intimacy == pytest.approx(9.0)


def test_communication_style_ratchets_forward_only() -> None:
    scorer = RelationshipScorer()

    to_casual = scorer.update(RelationshipState(intimacy=29.5), _turn("我叫小明"), total_messages=1)
    to_intimate = scorer.update(
        RelationshipState(intimacy=69.5, communication_style="casual"), _turn("我叫小明"), total_messages=1
    )
    stays = scorer.update(RelationshipState(intimacy=10.0, communication_style="intimate"), _turn("ok"), total_messages=1)

    assert to_casual.communication_style == "casual"
    assert to_intimate.communication_style == "intimate"
    assert stays.communication_style == "intimate"


def test_special_moments_are_capped_to_most_recent() -> None:
    scorer = RelationshipScorer(RelationshipTuning(special_moment_cap=3))
    state = RelationshipState(
        special_moments=[SpecialMoment(content=f"moment {i}", timestamp="t", importance=5.0) for i in range(3)]
    )
    moment = SpecialMoment(content="newest", timestamp="t", importance=8.0)

    updated = scorer.update(state, _turn("ok"), total_messages=1, special_moment=moment)

    assert [m.content for m in updated.special_moments] == ["moment 1", "moment 2", "newest"]
    assert len(state.special_moments) == 3


def test_update_failure_keeps_previous_state() -> None:
    scorer = RelationshipScorer()
    broken = RelationshipState(trust=None)  # type: ignore[arg-type]

    assert scorer.update(broken, _turn("hello"), total_messages=1) is broken


def test_describe_reports_stage_and_scores() -> None:
    fresh = RelationshipScorer.describe(RelationshipState())
    close = RelationshipScorer.describe(
        RelationshipState(level=30, trust=90.0, intimacy=85.0, affection=88.0, communication_style="intimate")
    )

    assert fresh.startswith("new acquaintances (level 1")
    assert close.startswith("very close friends (level 30")
    assert "style intimate" in close


def test_stage_follows_intimacy_alone() -> None:
    warm_but_distant = RelationshipScorer.describe(RelationshipState(trust=95.0, intimacy=15.0, affection=95.0))
    at_threshold = RelationshipScorer.describe(RelationshipState(trust=0.0, intimacy=20.0, affection=0.0))
    middle = RelationshipScorer.describe(RelationshipState(trust=5.0, intimacy=45.0, affection=5.0))
    close = RelationshipScorer.describe(RelationshipState(intimacy=79.9))

    assert warm_but_distant.startswith("new acquaintances")
    assert at_threshold.startswith("casual friends")
    assert middle.startswith("good friends")
    assert close.startswith("close friends")
