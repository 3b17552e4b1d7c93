from __future__ import annotations

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from companion_memory.characters import MemoryAccessDenied  # noqa: E402
from companion_memory.memory.facade import PersistenceFacade  # noqa: E402
from companion_memory.memory.facts import LongTermFactStore  # noqa: E402
from companion_memory.memory.store import LocalMemoryStore  # noqa: E402


NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


async def _local(tmp_path: Path) -> LocalMemoryStore:
    store = LocalMemoryStore(tmp_path / "memory.db")
    await store.init()
    return store


def test_upsert_merges_confidence_into_one_row(tmp_path: Path) -> None:
    async def scenario():  # type: ignore[no-untyped-def]
        facade = PersistenceFacade(await _local(tmp_path))
        store = LongTermFactStore(facade)
        first = await store.upsert("u1", "alice", "fact", "name", "小明", 0.5)
        second = await store.upsert("u1", "ALICE", "fact", "Name", "小明", 1.0)
        return first, second, await store.list("u1", "alice")

    first, second, facts = asyncio.run(scenario())

    assert first == second
    assert len(facts) == 1
    assert facts[0].key == "name"
    assert facts[0].confidence == pytest.approx(0.65)


def test_repeated_confirmation_raises_confidence_monotonically(tmp_path: Path) -> None:
    async def scenario() -> list[float]:
        facade = PersistenceFacade(await _local(tmp_path))
        store = LongTermFactStore(facade)
        seen: list[float] = []
        await store.upsert("u1", "alice", "preference", "food", "ramen", 0.4)
        for _ in range(5):
            await store.upsert("u1", "alice", "preference", "food", "ramen", 1.0)
            seen.append((await store.list("u1", "alice"))[0].confidence)
        return seen

    seen = asyncio.run(scenario())

    assert seen == sorted(seen)
    assert len(set(seen)) == len(seen)
    assert all(value <= 1.0 for value in seen)


def test_same_confidence_confirmed_three_times_stays_within_bounds(tmp_path: Path) -> None:
    async def scenario() -> list[float]:
        facade = PersistenceFacade(await _local(tmp_path))
        store = LongTermFactStore(facade)
        seen: list[float] = []
        for _ in range(3):
            await store.upsert("u1", "alice", "fact", "city", "Hangzhou", 0.9)
            seen.append((await store.list("u1", "alice"))[0].confidence)
        return seen

    seen = asyncio.run(scenario())

    assert len(seen) == 3
    assert all(0.9 <= value <= 1.0 for value in seen)


def test_keyless_facts_stay_distinct(tmp_path: Path) -> None:
    async def scenario():  # type: ignore[no-untyped-def]
        facade = PersistenceFacade(await _local(tmp_path))
        store = LongTermFactStore(facade)
        await store.upsert("u1", "alice", "goal", None, "learn to swim", 0.7)
        await store.upsert("u1", "alice", "goal", "", "visit Kyoto", 0.7)
        await store.upsert("u1", "alice", "goal", None, "Learn  to swim", 0.7)
        return await store.list("u1", "alice")

    facts = asyncio.run(scenario())

    assert sorted(f.key for f in facts) == ["learn to swim", "visit kyoto"]


def test_list_orders_by_last_seen_and_respects_limit(tmp_path: Path) -> None:
    async def scenario():  # type: ignore[no-untyped-def]
        local = await _local(tmp_path)
        await local.upsert_long_term_fact("u1", "alice", "fact", "a", "alpha", 0.8, now=NOW - timedelta(days=3))
        await local.upsert_long_term_fact("u1", "alice", "fact", "b", "beta", 0.8, now=NOW - timedelta(days=2))
        await local.upsert_long_term_fact("u1", "alice", "fact", "c", "gamma", 0.8, now=NOW - timedelta(days=1))
        await local.upsert_long_term_fact("u1", "alice", "fact", "a", "alpha", 0.8, now=NOW)
        store = LongTermFactStore(PersistenceFacade(local), list_limit=2)
        return await store.list("u1", "alice")

    facts = asyncio.run(scenario())

    assert [f.key for f in facts] == ["a", "c"]


def test_decay_soft_deletes_below_floor_and_revival_takes_incoming_confidence(tmp_path: Path) -> None:
    async def scenario():  # type: ignore[no-untyped-def]
        local = await _local(tmp_path)
        old = NOW - timedelta(days=120)
        await local.upsert_long_term_fact("u1", "alice", "fact", "job", "engineer", 0.8, now=old)
        await local.upsert_long_term_fact("u1", "alice", "preference", "food", "ramen", 0.105, now=old)
        await local.upsert_long_term_fact("u1", "alice", "goal", "trip", "visit Kyoto", 0.9, now=NOW - timedelta(days=10))
        store = LongTermFactStore(PersistenceFacade(local))
        report = await store.decay(NOW)
        after_decay = await store.list("u1", "alice")
        await local.upsert_long_term_fact("u1", "alice", "preference", "food", "ramen", 0.6, now=NOW)
        after_revive = await store.list("u1", "alice")
        return report, after_decay, after_revive

    report, after_decay, after_revive = asyncio.run(scenario())

    assert (report.decayed, report.deleted) == (2, 1)
    assert report.backends == {"sqlite": {"decayed": 2, "deleted": 1}}
    by_key = {f.key: f.confidence for f in after_decay}
    assert by_key == {"job": pytest.approx(0.72), "trip": pytest.approx(0.9)}
    revived = {f.key: f.confidence for f in after_revive}
    assert revived["food"] == pytest.approx(0.6)


def test_facts_are_isolated_per_character(tmp_path: Path) -> None:
    async def scenario():  # type: ignore[no-untyped-def]
        facade = PersistenceFacade(await _local(tmp_path))
        store = LongTermFactStore(facade)
        await store.upsert("u1", "alice", "fact", "name", "小明", 0.9)
        return await store.list("u1", "bobo"), await store.list("u2", "alice")

    other_character, other_user = asyncio.run(scenario())

    assert other_character == []
    assert other_user == []


def test_unknown_character_and_category_are_rejected(tmp_path: Path) -> None:
    async def scenario() -> None:
        local = await _local(tmp_path)
        store = LongTermFactStore(PersistenceFacade(local))
        with pytest.raises(MemoryAccessDenied):
            await store.upsert("u1", "mallory", "fact", "name", "x", 0.9)
        with pytest.raises(ValueError):
            await store.upsert("u1", "alice", "hobby", "name", "x", 0.9)
        assert await local.list_long_term_facts("u1", "mallory") == []

    asyncio.run(scenario())


def test_seed_profile_writes_onboarding_answers(tmp_path: Path) -> None:
    async def scenario():  # type: ignore[no-untyped-def]
        facade = PersistenceFacade(await _local(tmp_path))
        store = LongTermFactStore(facade)
        written = await store.seed_profile(
            "u1",
            "kyoko",
            {
                "favorite_food": "hotpot",
                "hobbies": ["guitar", " ", "chess"],
                "birthday": "03-14",
                "location": "",
                "unrelated": "ignored",
            },
        )
        return written, await store.list("u1", "kyoko")

    written, facts = asyncio.run(scenario())

    assert written == 3
    by_key = {f.key: f for f in facts}
    assert by_key["hobbies"].value == "guitar, chess"
    assert by_key["hobbies"].category == "preference"
    assert by_key["birthday"].confidence == pytest.approx(1.0)
    assert by_key["favorite_food"].confidence == pytest.approx(0.9)
    assert "location" not in by_key
