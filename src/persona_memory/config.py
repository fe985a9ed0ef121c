"""Memory engine configuration models."""

from __future__ import annotations

import os

from pydantic import BaseModel, Field, model_validator


class StorageConfig(BaseModel):
    """Storage paths configuration."""

    sqlite_db_path: str = "./memory/persona_memory.db"

    @model_validator(mode="after")
    def _validate_paths(self) -> "StorageConfig":
        normalized = os.path.normpath(self.sqlite_db_path)
        parts = normalized.replace("\\", "/").split("/")
        if ".." in parts:
            raise ValueError(
                f"sqlite_db_path must not contain '..' components: "
                f"{self.sqlite_db_path!r}"
            )
        self.sqlite_db_path = normalized
        return self


class EmbeddingConfig(BaseModel):
    """Embedding model configuration."""

    provider: str = "local"  # "local" or "hashing"
    model: str = "nomic-ai/nomic-embed-text-v2-moe"
    dimension: int = Field(default=768, gt=0)
    trust_remote_code: bool = False


class IngestionConfig(BaseModel):
    """Candidate extraction, normalization and deduplication settings."""

    max_text_length: int = Field(default=2000, gt=0)
    min_words: int = 3
    dedup_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    dedup_window: int = 50  # most recent persona memories compared against
    merge_importance_boost: float = 0.05
    assistant_requires_cue: bool = True


class RetrievalConfig(BaseModel):
    """Hybrid retrieval configuration."""

    top_k: int = Field(default=12, gt=0)
    candidate_multiplier: int = Field(default=4, ge=1)
    bm25_weight: float = 0.4
    cosine_weight: float = 0.3
    recency_weight: float = 0.2
    importance_weight: float = 0.1
    recency_half_life_days: float = Field(default=30.0, gt=0.0)
    touch_on_retrieve: bool = True

    @model_validator(mode="after")
    def _validate_weights(self) -> "RetrievalConfig":
        weights = (
            self.bm25_weight,
            self.cosine_weight,
            self.recency_weight,
            self.importance_weight,
        )
        if any(w < 0 for w in weights):
            raise ValueError(f"ranking weights must be non-negative: {weights}")
        if sum(weights) == 0:
            raise ValueError("at least one ranking weight must be positive")
        return self


class ContextConfig(BaseModel):
    """Context bundle budget configuration."""

    recent_turn_window: int = Field(default=10, ge=0)
    max_hits: int = Field(default=12, ge=0)
    max_tokens: int = Field(default=2000, gt=0)
    token_model: str = "gpt-4"


class PruningConfig(BaseModel):
    """Low-importance memory pruning."""

    importance_floor: float = 0.2
    prune_after_days: int = 365


class MemoryConfig(BaseModel):
    """Top-level memory engine configuration."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    ingestion: IngestionConfig = Field(default_factory=IngestionConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    pruning: PruningConfig = Field(default_factory=PruningConfig)
