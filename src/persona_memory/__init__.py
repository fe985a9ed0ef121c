"""
persona-memory - per-persona long-term memory engine

Ingests conversation turns, extracts durable memories, indexes them for
lexical and semantic recall, and returns ranked, budgeted context bundles.
"""

from .models import (
    CategoryCount,
    ChatTurn,
    ContextBundle,
    EmotionType,
    IngestOutcome,
    IngestStatus,
    Memory,
    MemoryHit,
    MemoryKind,
    QuantizedVector,
    RetrievalStatus,
    RetrieveOutcome,
)
from .config import MemoryConfig
from .exceptions import EmbeddingFailure, InvalidInput, MemoryEngineError, StorageFailure
from .embedding import Embedder, EmbeddingService, HashingEmbedder, create_embedder
from .heuristics import Classification, classify
from .ingestor import Ingestor
from .retrieval import HybridRetriever
from .context_builder import ContextBuilder
from .memory_engine import MemoryEngine
from .storage import SQLiteStore
from .token_counter import TokenCounter

__all__ = [
    "CategoryCount",
    "ChatTurn",
    "ContextBundle",
    "EmotionType",
    "IngestOutcome",
    "IngestStatus",
    "Memory",
    "MemoryHit",
    "MemoryKind",
    "QuantizedVector",
    "RetrievalStatus",
    "RetrieveOutcome",
    "MemoryConfig",
    "EmbeddingFailure",
    "InvalidInput",
    "MemoryEngineError",
    "StorageFailure",
    "Embedder",
    "EmbeddingService",
    "HashingEmbedder",
    "create_embedder",
    "Classification",
    "classify",
    "Ingestor",
    "HybridRetriever",
    "ContextBuilder",
    "MemoryEngine",
    "SQLiteStore",
    "TokenCounter",
]
