"""
Tests for the protocol store tiers: in-memory, flat-file and SQL.
"""

import json
from datetime import date

import pytest

from conftest import make_protocol
from protocol_guard.core.error_handling import CorpusLoadError, InvalidInputError
from protocol_guard.rag.knowledge_base.corpus_loader import chunk_text, load_corpus
from protocol_guard.rag.models import Population
from protocol_guard.rag.store.base import SearchFilters
from protocol_guard.rag.store.file_store import FileProtocolStore
from protocol_guard.rag.store.memory_store import InMemoryProtocolStore
from protocol_guard.rag.store.sql_store import SqlProtocolStore


# ============================================================================
# Corpus loading
# ============================================================================

class TestCorpus:
    def test_bundled_corpus_loads(self, corpus):
        codes = {p.code for p in corpus}
        assert {"1210", "1211", "1242", "1242-P"} <= codes
        assert all(p.chunks for p in corpus)

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(CorpusLoadError):
            load_corpus(tmp_path / "missing.json")

    def test_full_text_is_chunked(self, tmp_path):
        path = tmp_path / "corpus.json"
        path.write_text(json.dumps({"protocols": [{
            "code": "1300", "name": "Test",
            "full_text": "First paragraph about assessment.\n\nSecond paragraph about treatment.",
        }]}))
        [protocol] = load_corpus(path)
        assert len(protocol.chunks) == 1
        assert "Second paragraph" in protocol.chunks[0].text

    def test_chunk_text_respects_max_chars(self):
        text = "\n\n".join(["word " * 30] * 5)
        pieces = chunk_text(text, max_chars=200)
        assert len(pieces) > 1
        assert all(len(p) <= 200 for p in pieces)


# ============================================================================
# In-memory store
# ============================================================================

class TestMemoryStore:
    async def test_get_by_code_case_insensitive(self, memory_store):
        protocol = await memory_store.get_by_code("1242-p")
        assert protocol.code == "1242-P"

    async def test_get_by_code_rejects_empty(self, memory_store):
        with pytest.raises(InvalidInputError):
            await memory_store.get_by_code("  ")

    async def test_new_version_supersedes(self):
        store = InMemoryProtocolStore([make_protocol("1300", texts=["Old guidance about the stridor airway approach."])])
        store.add_protocol(make_protocol("1300", texts=["New guidance about the stridor airway approach."]))

        current = await store.get_by_code("1300")
        assert current.version == 2
        assert "New guidance" in current.chunks[0].text
        assert len(store.versions("1300")) == 2

        hits = await store.search("stridor")
        assert len(hits) == 1
        assert "New guidance" in hits[0].chunk.text

    async def test_soft_deleted_protocol_invisible(self, memory_store):
        assert memory_store.soft_delete("1211")
        assert await memory_store.get_by_code("1211") is None
        hits = await memory_store.search("cardiac chest pain")
        assert "1211" not in {h.chunk.protocol_code for h in hits}
        assert "1211" not in await memory_store.known_codes()

    async def test_population_filters(self, memory_store):
        adult = await memory_store.search("crush injury", SearchFilters(population=Population.ADULT))
        peds = await memory_store.search("crush injury", SearchFilters(population=Population.PEDIATRIC))
        assert {h.chunk.protocol_code for h in adult} & {"1242"}
        assert not any(h.chunk.protocol_code.endswith("-P") for h in adult)
        assert "1242" not in {h.chunk.protocol_code for h in peds}
        assert "1242-P" in {h.chunk.protocol_code for h in peds}

    async def test_vector_search_only_valid_embeddings(self):
        protocol = make_protocol("1300", texts=[
            "Chunk one text about airway management with enough length.",
            "Chunk two text about airway management with enough length.",
        ])
        store = InMemoryProtocolStore([protocol])
        [first, second] = protocol.chunks
        assert await store.upsert_embedding(first.chunk_id, [1.0, 0.0], first.content_hash)
        # stale hash is rejected
        assert not await store.upsert_embedding(second.chunk_id, [0.0, 1.0], "stale")

        hits = await store.vector_search([1.0, 0.0])
        assert [h.chunk.chunk_id for h in hits] == [first.chunk_id]
        assert hits[0].score == pytest.approx(1.0)

        stats = await store.stats()
        assert stats.chunks == 2
        assert stats.embedded_chunks == 1
        assert [c.chunk_id for c in await store.get_chunks_needing_embedding()] == [second.chunk_id]

    async def test_edited_text_invalidates_embedding(self):
        protocol = make_protocol("1300", texts=["Original text describing the airway procedure in detail."])
        chunk = protocol.chunks[0]
        chunk.embedding = [1.0, 0.0]
        chunk.embedding_hash = chunk.content_hash
        assert chunk.has_valid_embedding

        edited = chunk.with_text("Edited text describing the airway procedure in detail.")
        assert not edited.has_valid_embedding
        tampered = chunk.__class__(**{**chunk.__dict__, "text": "Edited text."})
        assert not tampered.has_valid_embedding


# ============================================================================
# Flat-file store
# ============================================================================

class TestFileStore:
    async def test_reads_bundled_corpus(self, file_store):
        assert await file_store.ping()
        protocol = await file_store.get_by_code("1211")
        assert protocol.name == "Cardiac Chest Pain"
        hits = await file_store.search("chest pain aspirin")
        assert hits[0].chunk.protocol_code == "1211"

    async def test_missing_corpus_not_reachable(self, tmp_path):
        store = FileProtocolStore(tmp_path / "missing.json")
        assert not await store.ping()
        with pytest.raises(CorpusLoadError):
            await store.get_by_code("1211")

    async def test_read_only(self, file_store):
        assert await file_store.get_chunks_needing_embedding() == []
        assert not await file_store.upsert_embedding("1211:0", [1.0], "x")


# ============================================================================
# SQL store
# ============================================================================

@pytest.fixture
def sql_store(corpus):
    store = SqlProtocolStore("sqlite://")
    store.create_schema()
    store.seed(corpus)
    return store


class TestSqlStore:
    async def test_seed_only_when_empty(self, sql_store, corpus):
        assert sql_store.seed(corpus) == 0
        stats = await sql_store.stats()
        assert stats.current_protocols == len(corpus)

    async def test_round_trip_metadata(self, sql_store):
        protocol = await sql_store.get_by_code("1242")
        assert protocol.name == "Crush Injury / Syndrome"
        assert protocol.base_contact_required
        assert protocol.pediatric_code == "1242-P"
        assert protocol.effective_date == date(2024, 7, 1)
        assert [c.sequence for c in protocol.chunks] == [0, 1]

    async def test_versioning_and_soft_delete(self, sql_store):
        sql_store.add_protocol(make_protocol("1211", name="Cardiac Chest Pain",
                                             texts=["Revised chest pain guidance text with aspirin dosing."]))
        current = await sql_store.get_by_code("1211")
        assert current.version == 2
        assert "Revised" in current.chunks[0].text

        assert sql_store.soft_delete("1211")
        assert await sql_store.get_by_code("1211") is None
        assert "1211" not in await sql_store.known_codes()

    async def test_search_matches_memory_store(self, sql_store, memory_store):
        filters = SearchFilters(population=Population.ADULT)
        sql_hits = await sql_store.search("seizure midazolam", filters, 5)
        mem_hits = await memory_store.search("seizure midazolam", filters, 5)
        assert [h.chunk.chunk_id for h in sql_hits] == [h.chunk.chunk_id for h in mem_hits]

    async def test_embedding_upsert_checks_hash(self, sql_store):
        [chunk, *_] = await sql_store.get_chunks_needing_embedding(limit=1)
        assert not await sql_store.upsert_embedding(chunk.chunk_id, [0.5, 0.5], "stale-hash")
        assert await sql_store.upsert_embedding(chunk.chunk_id, [0.5, 0.5], chunk.content_hash)

        protocol = await sql_store.get_by_code(chunk.protocol_code)
        stored = next(c for c in protocol.chunks if c.chunk_id == chunk.chunk_id)
        assert stored.has_valid_embedding
        assert chunk.chunk_id not in {c.chunk_id for c in await sql_store.get_chunks_needing_embedding()}

    async def test_malformed_chunk_id(self, sql_store):
        with pytest.raises(InvalidInputError):
            await sql_store.upsert_embedding("no-sequence", [1.0], "x")

    async def test_ping(self, sql_store):
        assert await sql_store.ping()
