from .context import build_context
from .episodes import EmbeddingError, EpisodicMemoryStore
from .extractor import CandidateFact, ExtractionResult, FactExtractor
from .facade import PersistenceFacade
from .facts import DecayReport, LongTermFactStore
from .pipeline import ExchangeReport, MemoryPipeline
from .postgres_store import PostgresMemoryStore
from .relationship import RelationshipScorer, RelationshipTuning
from .store import LocalMemoryStore
from .summary import RollingSummarizer

__all__ = [
    "CandidateFact",
    "DecayReport",
    "EmbeddingError",
    "EpisodicMemoryStore",
    "ExchangeReport",
    "ExtractionResult",
    "FactExtractor",
    "LocalMemoryStore",
    "LongTermFactStore",
    "MemoryPipeline",
    "PersistenceFacade",
    "PostgresMemoryStore",
    "RelationshipScorer",
    "RelationshipTuning",
    "RollingSummarizer",
    "build_context",
]
