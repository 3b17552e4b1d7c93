from __future__ import annotations

import asyncio
import sys
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from companion_memory.memory.facade import PersistenceFacade  # noqa: E402
from companion_memory.memory.store import LocalMemoryStore  # noqa: E402
from companion_memory.memory.summary import RollingSummarizer  # noqa: E402
from companion_memory.models import ConversationTurn  # noqa: E402


class _FakeCompletion:
    def __init__(self, replies: list[object]) -> None:
        self.replies = list(replies)
        self.prompts: list[str] = []

    async def complete(self, prompt, *, temperature=0.3, max_tokens=500, json_mode=False):  # type: ignore[no-untyped-def]
        self.prompts.append(prompt)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def _turns(user: str = "u1", character: str = "alice") -> list[ConversationTurn]:
    return [
        ConversationTurn(user, character, "user", "I failed my driving test today."),
        ConversationTurn(user, character, "assistant", "That sounds rough, want to talk about it?"),
        ConversationTurn(user, "bobo", "user", "this belongs to someone else"),
    ]


async def _facade(tmp_path: Path) -> PersistenceFacade:
    local = LocalMemoryStore(tmp_path / "memory.db")
    await local.init()
    return PersistenceFacade(local)


def test_refresh_replaces_summary_and_records_turn_count(tmp_path: Path) -> None:
    completion = _FakeCompletion(["- first summary", "- second summary"])

    async def scenario():  # type: ignore[no-untyped-def]
        facade = await _facade(tmp_path)
        summarizer = RollingSummarizer(facade, completion)
        first = await summarizer.refresh("u1", "alice", _turns())
        second = await summarizer.refresh("u1", "alice", _turns()[:1])
        return first, second, await facade.get_summary("u1", "alice")

    first, second, stored = asyncio.run(scenario())

    assert first is True and second is True
    assert stored is not None
    assert stored.summary == "- second summary"
    assert stored.message_count == 1
    prompt = completion.prompts[0]
    assert "User: I failed my driving test today." in prompt
    assert "Character: That sounds rough" in prompt
    assert "someone else" not in prompt


def test_failed_refresh_keeps_previous_summary(tmp_path: Path) -> None:
    completion = _FakeCompletion(["- kept", RuntimeError("model offline"), "   "])

    async def scenario():  # type: ignore[no-untyped-def]
        facade = await _facade(tmp_path)
        summarizer = RollingSummarizer(facade, completion)
        await summarizer.refresh("u1", "alice", _turns())
        failed = await summarizer.refresh("u1", "alice", _turns())
        empty = await summarizer.refresh("u1", "alice", _turns())
        return failed, empty, await facade.get_summary("u1", "alice")

    failed, empty, stored = asyncio.run(scenario())

    assert failed is False
    assert empty is False
    assert stored is not None
    assert stored.summary == "- kept"
    assert stored.message_count == 2


def test_summary_is_truncated_to_max_chars(tmp_path: Path) -> None:
    completion = _FakeCompletion(["x" * 500])

    async def scenario():  # type: ignore[no-untyped-def]
        facade = await _facade(tmp_path)
        await RollingSummarizer(facade, completion, max_chars=200).refresh("u1", "alice", _turns())
        return await facade.get_summary("u1", "alice")

    stored = asyncio.run(scenario())

    assert stored is not None
    assert len(stored.summary) == 200


def test_boundary_detection() -> None:
    summarizer = RollingSummarizer(None, None, every_n_turns=10)  # type: ignore[arg-type]

    assert summarizer.crossed_boundary(8, 10)
    assert summarizer.crossed_boundary(9, 11)
    assert not summarizer.crossed_boundary(10, 12)
    assert not summarizer.crossed_boundary(0, 9)


def test_maybe_refresh_uses_last_n_turns(tmp_path: Path) -> None:
    completion = _FakeCompletion(["- four turns"])

    async def scenario():  # type: ignore[no-untyped-def]
        facade = await _facade(tmp_path)
        for i in range(6):
            await facade.save_turn("u1", "alice", "user" if i % 2 == 0 else "assistant", f"turn {i}")
        summarizer = RollingSummarizer(facade, completion, every_n_turns=4)
        skipped = await summarizer.maybe_refresh("u1", "alice", 4, 6)
        refreshed = await summarizer.maybe_refresh("u1", "alice", 2, 6)
        return skipped, refreshed, await facade.get_summary("u1", "alice")

    skipped, refreshed, stored = asyncio.run(scenario())

    assert skipped is False
    assert refreshed is True
    assert stored is not None and stored.message_count == 4
    assert "turn 0" not in completion.prompts[0]
    assert "turn 2" in completion.prompts[0] and "turn 5" in completion.prompts[0]


def test_disabled_summarizer_does_nothing(tmp_path: Path) -> None:
    completion = _FakeCompletion([])

    async def scenario():  # type: ignore[no-untyped-def]
        facade = await _facade(tmp_path)
        summarizer = RollingSummarizer(facade, completion, enabled=False)
        return await summarizer.refresh("u1", "alice", _turns())

    assert asyncio.run(scenario()) is False
    assert completion.prompts == []
