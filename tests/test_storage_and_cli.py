from __future__ import annotations

import asyncio
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite
import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from companion_memory.app import build_parser  # noqa: E402
from companion_memory.memory.postgres_store import PostgresMemoryStore, _affected_rows, _vector_literal  # noqa: E402
from companion_memory.memory.store import LocalMemoryStore  # noqa: E402


def test_sqlite_init_sets_schema_version_and_is_repeatable(tmp_path: Path) -> None:
    db_path = tmp_path / "nested" / "memory.db"

    async def scenario() -> int:
        store = LocalMemoryStore(db_path)
        await store.init()
        await store.init()
        async with aiosqlite.connect(db_path) as db:
            async with db.execute("PRAGMA user_version") as cursor:
                row = await cursor.fetchone()
        return int(row[0])

    assert asyncio.run(scenario()) == LocalMemoryStore.SCHEMA_VERSION


def test_sqlite_refuses_newer_schema_without_reset_flag(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    db_path = tmp_path / "memory.db"
    monkeypatch.delenv("MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH", raising=False)

    async def bump_version() -> None:
        store = LocalMemoryStore(db_path)
        await store.init()
        await store.save_message("u1", "alice", "user", "hello")
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA user_version = 99")
            await db.commit()

    async def reopen() -> None:
        await LocalMemoryStore(db_path).init()

    asyncio.run(bump_version())
    with pytest.raises(RuntimeError, match="MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH"):
        asyncio.run(reopen())

    monkeypatch.setenv("MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH", "1")
    asyncio.run(reopen())

    async def count() -> int:
        return await LocalMemoryStore(db_path).count_messages("u1", "alice")

    assert asyncio.run(count()) == 0


def test_sqlite_rejects_unknown_turn_role_at_schema_level(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = LocalMemoryStore(tmp_path / "memory.db")
        await store.init()
        with pytest.raises(aiosqlite.IntegrityError):
            await store.save_message("u1", "alice", "system", "hello")

    asyncio.run(scenario())


def test_recent_messages_are_chronological_and_scoped(tmp_path: Path) -> None:
    async def scenario():  # type: ignore[no-untyped-def]
        store = LocalMemoryStore(tmp_path / "memory.db")
        await store.init()
        for i in range(4):
            await store.save_message("u1", "alice", "user", f"alice {i}")
        await store.save_message("u1", "bobo", "user", "bobo 0")
        return await store.get_recent_messages("u1", "alice", 3)

    rows = asyncio.run(scenario())

    assert [r["content"] for r in rows] == ["alice 1", "alice 2", "alice 3"]


class _FakeConnection:
    def __init__(self, rows: list[dict[str, Any]]) -> None:
        self.rows = rows
        self.fetch_calls: list[tuple[str, tuple[Any, ...]]] = []

    async def fetch(self, query: str, *args: Any) -> list[dict[str, Any]]:
        self.fetch_calls.append((query, args))
        return self.rows


class _FakePool:
    def __init__(self, conn: _FakeConnection) -> None:
        self.conn = conn

    @asynccontextmanager
    async def acquire(self):  # type: ignore[no-untyped-def]
        yield self.conn


def test_postgres_match_passes_vector_literal_threshold_and_limit() -> None:
    created = datetime(2026, 5, 1, 8, 30, tzinfo=timezone.utc)
    conn = _FakeConnection(
        [{"user_id": "u1", "character_id": "alice", "text": "rainy walk", "created_at": created, "similarity": 0.91}]
    )
    store = PostgresMemoryStore("postgresql://memory@localhost/memory", embedding_dimension=3)
    store._pool = _FakePool(conn)  # type: ignore[assignment]

    rows = asyncio.run(store.match_episodic_memories("u1", "alice", [0.1, 0.2, 0.3], match_count=4, threshold=0.75))

    assert rows == [
        {
            "user_id": "u1",
            "character_id": "alice",
            "text": "rainy walk",
            "similarity": 0.91,
            "created_at": "2026-05-01T08:30:00+00:00",
        }
    ]
    query, args = conn.fetch_calls[0]
    assert "<=>" in query
    assert args == ("u1", "alice", "[0.1,0.2,0.3]", 0.75, 4)


def test_postgres_helpers() -> None:
    assert _vector_literal([1, 0.5]) == "[1.0,0.5]"
    assert _affected_rows("UPDATE 3") == 3
    assert _affected_rows("DELETE 0") == 0
    assert _affected_rows(None) == 0
    with pytest.raises(ValueError):
        PostgresMemoryStore("  ")


def test_cli_parser_subcommands() -> None:
    parser = build_parser()

    ingest = parser.parse_args(
        ["ingest", "--user", "u1", "--character", "alice", "--message", "我叫小明", "--reply-emotion", "happy"]
    )
    context = parser.parse_args(["context", "--user", "u1", "--character", "alice", "--query", "name?"])
    maintenance = parser.parse_args(["maintenance"])

    assert (ingest.command, ingest.message, ingest.reply, ingest.reply_emotion) == ("ingest", "我叫小明", "", "happy")
    assert (context.command, context.query, context.persona) == ("context", "name?", "")
    assert maintenance.command == "maintenance"
    with pytest.raises(SystemExit):
        parser.parse_args(["show", "--user", "u1"])
