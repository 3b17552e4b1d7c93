from __future__ import annotations

import json
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import AsyncIterator, Sequence

try:
    import aiosqlite
except Exception:  # pragma: no cover - optional in Postgres-only deployments
    aiosqlite = None  # type: ignore[assignment]

from ...models import utc_now, utc_now_iso


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _sqlite_busy_timeout_ms() -> int:
    raw = os.getenv("MEMORY_SQLITE_BUSY_TIMEOUT_MS", "5000").strip()
    try:
        timeout = int(raw)
    except ValueError:
        timeout = 5000
    return max(0, min(timeout, 60000))


@asynccontextmanager
async def _sqlite_memory_connection(db_path: str | Path) -> AsyncIterator["aiosqlite.Connection"]:
    if aiosqlite is None:
        raise RuntimeError("SQLite memory backend requires aiosqlite")
    async with aiosqlite.connect(db_path) as db:  # type: ignore[union-attr]
        await db.execute("PRAGMA foreign_keys=ON")
        timeout_ms = _sqlite_busy_timeout_ms()
        if timeout_ms > 0:
            await db.execute(f"PRAGMA busy_timeout={timeout_ms}")
        yield db


def normalize_fact_value(value: str) -> str:
    return " ".join((value or "").strip().split())


def normalize_fact_key(key: str | None, value: str) -> str:
    """Facts without a key are keyed by their normalised value so they never collapse into one row."""
    cleaned = " ".join(str(key or "").strip().split()).casefold()
    if cleaned:
        return cleaned[:140]
    return normalize_fact_value(value).casefold()[:140]


def merge_confidence(prior: float, incoming: float, *, prior_weight: float = 0.7) -> float:
    weight = _clamp(float(prior_weight), 0.0, 1.0)
    prior = _clamp(float(prior), 0.0, 1.0)
    incoming = _clamp(float(incoming), 0.0, 1.0)
    # the weighted mean stays between its inputs even under float rounding
    return _clamp(prior * weight + incoming * (1.0 - weight), min(prior, incoming), max(prior, incoming))


def cutoff_iso(now: datetime | None, days: int) -> str:
    return utc_now_iso((now or utc_now()) - timedelta(days=max(0, int(days))))


def encode_embedding(vector: Sequence[float]) -> str:
    return json.dumps([float(x) for x in vector], separators=(",", ":"))


def decode_embedding(raw: object) -> list[float]:
    if not raw:
        return []
    try:
        parsed = json.loads(str(raw))
    except (TypeError, ValueError):
        return []
    if not isinstance(parsed, list):
        return []
    return [float(x) for x in parsed]
