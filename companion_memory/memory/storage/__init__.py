from .episodes import MemoryEpisodesMixin
from .facts import MemoryFactsMixin
from .messages import MemoryMessagesMixin
from .records import MemoryRecordsMixin
from .schema import MemorySchemaMixin
from .summaries import MemorySummariesMixin

__all__ = [
    "MemorySchemaMixin",
    "MemoryRecordsMixin",
    "MemoryMessagesMixin",
    "MemoryFactsMixin",
    "MemoryEpisodesMixin",
    "MemorySummariesMixin",
]
