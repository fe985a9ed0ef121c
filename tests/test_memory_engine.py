"""Tests for the MemoryEngine facade.

Tests cover:
- Enable/disable gate read from settings storage before every operation
- Incognito ingestion
- Scenario behavior (hiking preference, duplicate ingestion)
- Persona isolation under interleaved ingestion
- Embedding and storage failure outcomes
- Input validation and management operations
"""

from __future__ import annotations

import asyncio
import gc
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from conftest import DIM, FailingEmbedder, WordTokenCounter
from persona_memory.config import MemoryConfig
from persona_memory.exceptions import InvalidInput, StorageFailure
from persona_memory.memory_engine import MemoryEngine
from persona_memory.models import (
    ChatTurn,
    IngestStatus,
    MemoryKind,
    RetrievalStatus,
)

HIKING = "I love hiking in the mountains"


async def vector_count(engine: MemoryEngine) -> int:
    async with engine._store._reader.execute("SELECT COUNT(*) FROM memory_vectors") as cursor:
        row = await cursor.fetchone()
    return row[0]


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


class TestScenarios:
    async def test_hiking_preference(self, engine, make_turn):
        outcome = await engine.ingest(
            make_turn(HIKING, "That's great exercise!"), "p1"
        )

        assert outcome.status is IngestStatus.STORED
        assert len(outcome.stored_ids) == 1
        assert await engine.count("p1") == 1
        assert await engine.count("p1", MemoryKind.PREFERENCE) == 1

        result = await engine.retrieve("p1", "What do I enjoy doing outdoors?", k=5)
        assert result.status is RetrievalStatus.OK
        assert result.hits[0].memory.id == outcome.stored_ids[0]
        assert result.hits[0].memory.kind is MemoryKind.PREFERENCE
        assert result.hits[0].memory.importance > 0

    async def test_duplicate_ingest_merges(self, engine, make_turn):
        first = await engine.ingest(make_turn(HIKING), "p1")
        second = await engine.ingest(make_turn(HIKING + "!"), "p1")

        assert second.status is IngestStatus.STORED
        assert second.stored_ids == []
        assert second.merged_ids == first.stored_ids
        assert await engine.count("p1") == 1

        memory = (await engine.feed("p1"))[0]
        assert memory.mention_count == 1
        assert memory.importance == pytest.approx(0.65)

    async def test_memories_differing_in_korean_words_both_kept(self, engine, make_turn):
        first = await engine.ingest(make_turn("My name is 김철수 and hello"), "p1")
        second = await engine.ingest(make_turn("My name is 이영희 and hello"), "p1")

        assert len(first.stored_ids) == 1
        assert len(second.stored_ids) == 1
        assert second.merged_ids == []
        assert await engine.count("p1") == 2

    async def test_duplicates_within_one_turn(self, engine, make_turn):
        outcome = await engine.ingest(make_turn(f"{HIKING}. {HIKING}!"), "p1")
        assert len(outcome.stored_ids) == 1
        assert outcome.dropped == 1
        assert await engine.count("p1") == 1

    async def test_trivial_turn_stores_nothing(self, engine, make_turn):
        outcome = await engine.ingest(make_turn("hi", "Hello! How are you?"), "p1")
        assert outcome.status is IngestStatus.NOTHING_TO_STORE
        assert await engine.count("p1") == 0

    async def test_assistant_sentence_with_cue_is_stored(self, engine, make_turn):
        outcome = await engine.ingest(
            make_turn("ok then", "I learned that you moved to Lisbon last year."), "p1"
        )
        assert len(outcome.stored_ids) == 1
        memory = (await engine.feed("p1"))[0]
        assert memory.role == "assistant"

    async def test_memory_keeps_turn_provenance(self, engine, make_turn):
        t = make_turn(HIKING, chat_id="chat-9", message_id="msg-42")
        await engine.ingest(t, "p1")
        memory = (await engine.feed("p1"))[0]
        assert memory.source_chat_id == "chat-9"
        assert memory.source_message_id == "msg-42"
        assert memory.user_id == "user-1"

    async def test_empty_persona_retrieve(self, engine):
        result = await engine.retrieve("p-empty", "anything", k=5)
        assert result.status is RetrievalStatus.OK
        assert result.hits == []


# ---------------------------------------------------------------------------
# Incognito & enable gate
# ---------------------------------------------------------------------------


class TestIncognito:
    async def test_incognito_writes_nothing(self, engine, make_turn):
        await engine.ingest(make_turn("My name is Alice and I live in Berlin"), "p1")
        before = await engine.count("p1")

        outcome = await engine.ingest(make_turn(HIKING), "p1", incognito=True)

        assert outcome.status is IngestStatus.SKIPPED_INCOGNITO
        assert await engine.count("p1") == before
        assert await vector_count(engine) == before

    async def test_incognito_turn_not_kept_as_recent(self, engine, make_turn):
        await engine.ingest(make_turn(HIKING), "p1", incognito=True)
        assert engine.recent_turns.get("p1", "chat-1") == []


class TestEnableGate:
    async def test_enabled_by_default(self, engine):
        assert await engine.is_enabled("p1")

    async def test_disabled_persona_is_a_no_op(self, engine, make_turn):
        await engine.ingest(make_turn(HIKING), "p1")
        await engine.set_enabled("p1", False)

        outcome = await engine.ingest(make_turn("My name is Alice and I live in Berlin"), "p1")
        assert outcome.status is IngestStatus.SKIPPED_DISABLED
        assert await engine.count("p1") == 1

        result = await engine.retrieve("p1", "hiking", k=5)
        assert result.status is RetrievalStatus.DISABLED
        assert result.hits == []

        memory = (await engine.feed("p1"))[0]
        bundle = await engine.build_context("p1", "chat-1", "hiking", recent_turn_window=0)
        assert bundle.retrieval_status is RetrievalStatus.DISABLED
        assert bundle.long_term == []
        # Disabled retrieval must not touch memories either
        assert (await engine.feed("p1"))[0].last_accessed_at == memory.last_accessed_at

    async def test_re_enable(self, engine, make_turn):
        await engine.set_enabled("p1", False)
        await engine.set_enabled("p1", True)
        outcome = await engine.ingest(make_turn(HIKING), "p1")
        assert outcome.status is IngestStatus.STORED

    async def test_gate_is_per_persona(self, engine, make_turn):
        await engine.set_enabled("p1", False)
        outcome = await engine.ingest(make_turn(HIKING), "p2")
        assert outcome.status is IngestStatus.STORED

    async def test_flag_read_from_storage_every_time(self, engine, config, embedder, make_turn):
        async with MemoryEngine(config=config, embedder=embedder, token_counter=WordTokenCounter()) as other:
            await other.set_enabled("p1", False)
            outcome = await engine.ingest(make_turn(HIKING), "p1")
            assert outcome.status is IngestStatus.SKIPPED_DISABLED

    async def test_clear_enabled_flags(self, engine):
        await engine.set_enabled("p1", False)
        await engine.set_enabled("p2", False)
        assert await engine.clear_enabled_flags() == 2
        assert await engine.is_enabled("p1")


# ---------------------------------------------------------------------------
# Isolation & concurrency
# ---------------------------------------------------------------------------


class TestIsolation:
    async def test_interleaved_ingestion_never_leaks(self, engine, make_turn):
        texts = [
            "I love hiking in the mountains",
            "My favorite food is spicy ramen",
            "I work as a nurse in Boston",
            "I am planning to build a treehouse",
        ]
        tasks = []
        for text in texts:
            tasks.append(engine.ingest(make_turn(text), "p1"))
            tasks.append(engine.ingest(make_turn(text), "p2"))
        await asyncio.gather(*tasks)

        assert await engine.count("p1") == 4
        assert await engine.count("p2") == 4
        for query in ["hiking", "ramen food", "nurse", "treehouse project"]:
            result = await engine.retrieve("p1", query, k=10)
            assert result.hits
            assert all(hit.memory.persona_id == "p1" for hit in result.hits)

    async def test_concurrent_ingest_and_retrieve(self, engine, make_turn):
        async def reader():
            for _ in range(5):
                result = await engine.retrieve("p1", "hiking", k=10)
                for hit in result.hits:
                    assert hit.memory.persona_id == "p1"

        writes = [engine.ingest(make_turn(f"I love hiking route number {i}"), "p1") for i in range(5)]
        await asyncio.gather(reader(), *writes)
        assert await engine.count("p1") == await vector_count(engine)

    async def test_persona_locks_released_after_ingest(self, engine, make_turn):
        await asyncio.gather(
            *(engine.ingest(make_turn(HIKING), f"persona-{i}") for i in range(20))
        )
        gc.collect()
        assert len(engine._persona_locks) == 0


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    async def test_embedding_failure_drops_only_that_candidate(self, config, make_turn):
        async with MemoryEngine(
            config=config,
            embedder=FailingEmbedder(marker="poison", dimension=DIM),
            token_counter=WordTokenCounter(),
        ) as engine:
            outcome = await engine.ingest(
                make_turn(f"{HIKING}. The poison sentence has words."), "p1"
            )

            assert outcome.status is IngestStatus.STORED
            assert len(outcome.stored_ids) == 1
            assert outcome.dropped == 1
            assert await engine.count("p1") == 1
            assert await vector_count(engine) == 1

    async def test_all_embeddings_failing_reports_failure(self, config, make_turn):
        async with MemoryEngine(
            config=config,
            embedder=FailingEmbedder(dimension=DIM),
            token_counter=WordTokenCounter(),
        ) as engine:
            outcome = await engine.ingest(make_turn(HIKING), "p1")
            assert outcome.status is IngestStatus.FAILED
            assert outcome.error
            assert await engine.count("p1") == 0

    async def test_wrong_dimension_is_embedding_failure(self, config, make_turn):
        class ShortEmbedder:
            dimension = DIM

            def embed(self, text):
                return [0.1] * (DIM - 1)

        async with MemoryEngine(
            config=config, embedder=ShortEmbedder(), token_counter=WordTokenCounter()
        ) as engine:
            outcome = await engine.ingest(make_turn(HIKING), "p1")
            assert outcome.status is IngestStatus.FAILED
            assert await engine.count("p1") == 0

    async def test_storage_failure_is_failed_outcome(self, engine, make_turn):
        engine._store.recent_memories = AsyncMock(side_effect=StorageFailure("disk full"))
        outcome = await engine.ingest(make_turn(HIKING), "p1")
        assert outcome.status is IngestStatus.FAILED
        assert "disk full" in outcome.error

    async def test_retrieve_storage_failure(self, engine):
        engine._store.lexical_search = AsyncMock(side_effect=StorageFailure("locked"))
        result = await engine.retrieve("p1", "hiking")
        assert result.status is RetrievalStatus.FAILED
        assert result.hits == []

    async def test_build_context_survives_storage_failure(self, engine, make_turn):
        await engine.ingest(make_turn(HIKING), "p1")
        engine._store.lexical_search = AsyncMock(side_effect=StorageFailure("locked"))
        bundle = await engine.build_context("p1", "chat-1", "hiking")
        assert bundle.retrieval_status is RetrievalStatus.FAILED
        assert bundle.long_term == []
        assert len(bundle.short_term) == 1


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------


class TestInvalidInput:
    @pytest.mark.parametrize("persona_id", ["", "has space", "bad/slash", "x" * 129])
    async def test_bad_persona_id(self, engine, make_turn, persona_id):
        with pytest.raises(InvalidInput):
            await engine.ingest(make_turn(HIKING), persona_id)
        with pytest.raises(InvalidInput):
            await engine.retrieve(persona_id, "hiking")

    async def test_empty_turn(self, engine):
        with pytest.raises(InvalidInput) as exc_info:
            await engine.ingest(ChatTurn(chat_id="c1", user_message="  "), "p1")
        assert exc_info.value.field == "turn"
        assert await engine.count("p1") == 0
        assert engine.recent_turns.chat_count == 0

    async def test_accepted_persona_ids(self, engine):
        for persona_id in ["p1", "persona_01", "team:alpha-2", "a.b"]:
            assert await engine.is_enabled(persona_id)


# ---------------------------------------------------------------------------
# Context building
# ---------------------------------------------------------------------------


class TestBuildContext:
    async def test_uses_ingested_turns_as_short_term(self, engine, make_turn):
        await engine.ingest(make_turn(HIKING, "That's great exercise!"), "p1")
        bundle = await engine.build_context("p1", "chat-1", "hiking")

        assert [t.user_message for t in bundle.short_term] == [HIKING]
        # The only memory came from a short-term turn
        assert bundle.long_term == []
        assert bundle.retrieval_status is RetrievalStatus.OK

    async def test_memory_returns_once_turn_leaves_window(self, engine, make_turn):
        outcome = await engine.ingest(make_turn(HIKING), "p1")
        bundle = await engine.build_context("p1", "chat-1", "hiking", recent_turn_window=0)
        assert [hit.memory.id for hit in bundle.long_term] == outcome.stored_ids

    async def test_caller_supplied_turns(self, engine, make_turn):
        await engine.ingest(make_turn(HIKING, chat_id="chat-1"), "p1")
        supplied = [make_turn("Something else entirely here", chat_id="chat-1")]
        bundle = await engine.build_context("p1", "chat-1", "hiking", recent_turns=supplied)
        assert bundle.short_term == supplied
        assert len(bundle.long_term) == 1


# ---------------------------------------------------------------------------
# Management
# ---------------------------------------------------------------------------


class TestManagement:
    async def test_delete_memory(self, engine, make_turn):
        outcome = await engine.ingest(make_turn(HIKING), "p1")
        assert await engine.delete_memory("p1", outcome.stored_ids[0])
        assert await engine.count("p1") == 0
        assert await vector_count(engine) == 0
        assert (await engine.retrieve("p1", "hiking")).hits == []

    async def test_delete_all_clears_recent_turns(self, engine, make_turn):
        await engine.ingest(make_turn(HIKING), "p1")
        await engine.ingest(make_turn("My name is Alice and I live in Berlin"), "p1")
        await engine.ingest(make_turn(HIKING), "p2")

        assert await engine.delete_all("p1") == 2
        assert await engine.count("p2") == 1
        assert engine.recent_turns.get("p1", "chat-1") == []

    async def test_count_by_kind_and_feed(self, engine, make_turn):
        await engine.ingest(make_turn(HIKING), "p1")
        await engine.ingest(make_turn("My name is Alice and I live in Berlin"), "p1")

        counts = {c.kind: c.count for c in await engine.count_by_kind("p1")}
        assert counts == {MemoryKind.PREFERENCE: 1, MemoryKind.FACT: 1}
        facts = await engine.feed("p1", kind=MemoryKind.FACT)
        assert [m.text for m in facts] == ["My name is Alice and I live in Berlin"]
        assert [m.text for m in await engine.feed("p1", text_filter="hiking")] == [HIKING]

    async def test_prune(self, db_path, embedder, make_turn):
        config = MemoryConfig(
            storage={"sqlite_db_path": db_path},
            pruning={"importance_floor": 0.5, "prune_after_days": 30},
        )
        now = datetime(2026, 10, 14, tzinfo=timezone.utc)
        async with MemoryEngine(config=config, embedder=embedder, token_counter=WordTokenCounter()) as engine:
            old = now - timedelta(days=90)
            await engine.ingest(make_turn("The weather was mild that day", timestamp=old), "p1")
            await engine.ingest(make_turn(HIKING, timestamp=old), "p1")
            await engine.ingest(make_turn("The weather is mild again", timestamp=now), "p1")

            assert await engine.prune("p1", now=now) == 1
            assert await engine.count("p1") == 2

    async def test_close_and_reopen(self, config, embedder, make_turn):
        async with MemoryEngine(config=config, embedder=embedder, token_counter=WordTokenCounter()) as engine:
            await engine.ingest(make_turn(HIKING), "p1")
        async with MemoryEngine(config=config, embedder=embedder, token_counter=WordTokenCounter()) as engine:
            assert await engine.count("p1") == 1
