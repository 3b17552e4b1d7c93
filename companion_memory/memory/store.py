from __future__ import annotations

from .storage.episodes import MemoryEpisodesMixin
from .storage.facts import MemoryFactsMixin
from .storage.messages import MemoryMessagesMixin
from .storage.records import MemoryRecordsMixin
from .storage.schema import MemorySchemaMixin
from .storage.summaries import MemorySummariesMixin


class LocalMemoryStore(
    MemorySchemaMixin,
    MemoryRecordsMixin,
    MemoryMessagesMixin,
    MemorySummariesMixin,
    MemoryFactsMixin,
    MemoryEpisodesMixin,
):
    """SQLite fallback store: memory records, turn log, long-term facts, episodes and rolling summaries."""

    backend_name = "sqlite"
