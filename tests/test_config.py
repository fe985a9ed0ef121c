"""Tests for memory engine configuration models."""

from __future__ import annotations

import os

import pytest
from pydantic import ValidationError

from persona_memory.config import (
    ContextConfig,
    EmbeddingConfig,
    IngestionConfig,
    MemoryConfig,
    RetrievalConfig,
    StorageConfig,
)


class TestDefaults:
    def test_retrieval_weights(self):
        config = RetrievalConfig()
        assert (
            config.bm25_weight,
            config.cosine_weight,
            config.recency_weight,
            config.importance_weight,
        ) == (0.4, 0.3, 0.2, 0.1)
        assert config.recency_half_life_days == 30.0

    def test_ingestion(self):
        config = IngestionConfig()
        assert config.max_text_length == 2000
        assert config.dedup_threshold == 0.85

    def test_nested_groups(self):
        config = MemoryConfig()
        assert isinstance(config.storage, StorageConfig)
        assert isinstance(config.context, ContextConfig)
        assert config.embedding.provider == "local"


class TestValidation:
    def test_negative_weight_rejected(self):
        with pytest.raises(ValidationError):
            RetrievalConfig(cosine_weight=-0.1)

    def test_all_zero_weights_rejected(self):
        with pytest.raises(ValidationError):
            RetrievalConfig(
                bm25_weight=0, cosine_weight=0, recency_weight=0, importance_weight=0
            )

    def test_non_positive_half_life_rejected(self):
        with pytest.raises(ValidationError):
            RetrievalConfig(recency_half_life_days=0)

    def test_dedup_threshold_range(self):
        with pytest.raises(ValidationError):
            IngestionConfig(dedup_threshold=1.5)

    def test_dimension_positive(self):
        with pytest.raises(ValidationError):
            EmbeddingConfig(dimension=0)

    def test_parent_traversal_rejected(self):
        with pytest.raises(ValidationError):
            StorageConfig(sqlite_db_path="../outside/memory.db")

    def test_path_normalized(self):
        config = StorageConfig(sqlite_db_path="./memory/./persona_memory.db")
        assert config.sqlite_db_path == os.path.normpath("memory/persona_memory.db")


class TestFromDict:
    def test_partial_override(self):
        config = MemoryConfig(
            retrieval={"top_k": 5, "bm25_weight": 0.5},
            embedding={"provider": "hashing", "dimension": 128},
        )
        assert config.retrieval.top_k == 5
        assert config.retrieval.bm25_weight == 0.5
        assert config.retrieval.cosine_weight == 0.3
        assert config.embedding.dimension == 128

    def test_round_trip_through_dump(self):
        config = MemoryConfig(context={"max_tokens": 500})
        assert MemoryConfig(**config.model_dump()) == config
