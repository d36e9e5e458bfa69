"""
Tests for hybrid lexical + vector retrieval.
"""

from typing import List

import pytest

from conftest import FlakyStore, MissingFileStore, make_protocol
from protocol_guard.core.config import RecoveryConfig, RetrievalConfig
from protocol_guard.core.error_handling import InvalidInputError
from protocol_guard.core.recovery import STRATEGY_FILE, STRATEGY_PRIMARY, STRATEGY_SAFE_DEFAULT, RecoveryManager
from protocol_guard.core.telemetry import InMemoryTelemetrySink, TelemetryRecorder
from protocol_guard.rag.models import NormalizedQuery
from protocol_guard.rag.nlp.query_normalizer import QueryNormalizer
from protocol_guard.rag.retrieval.embedder import Embedder
from protocol_guard.rag.retrieval.hybrid_retriever import HybridRetriever
from protocol_guard.rag.store.memory_store import InMemoryProtocolStore


FAST = RecoveryConfig(max_attempts=2, base_delay_seconds=0.0, call_timeout_seconds=0.5)


class FixedEmbedder(Embedder):
    dimension = 2

    def __init__(self, vector: List[float]):
        self.vector = vector

    async def embed(self, text: str) -> List[float]:
        return list(self.vector)


class BrokenEmbedder(Embedder):
    async def embed(self, text: str) -> List[float]:
        raise RuntimeError("model not loaded")


@pytest.fixture
def normalizer():
    return QueryNormalizer()


@pytest.fixture
def retriever(memory_store, file_store):
    return HybridRetriever(RecoveryManager(memory_store, file_store, config=FAST))


def _codes(outcome):
    return [r.protocol_code for r in outcome.chunks]


class TestLexicalOnly:
    async def test_chest_pain_ranks_cardiac_protocol_first(self, retriever, normalizer):
        outcome = await retriever.search(normalizer.normalize("chest pain"), limit=5)
        assert _codes(outcome)[0] == "1211"
        assert outcome.strategy_used == STRATEGY_PRIMARY
        assert not outcome.failed

    async def test_scores_are_lexical_without_embedder(self, retriever, normalizer):
        outcome = await retriever.search(normalizer.normalize("seizure"), limit=5)
        for ranked in outcome.chunks:
            assert ranked.vector_score is None
            assert ranked.score == ranked.lexical_score
        assert outcome.chunks[0].score == pytest.approx(1.0)

    async def test_deterministic(self, retriever, normalizer):
        query = normalizer.normalize("difficulty breathing wheezing")
        first = await retriever.search(query, limit=6)
        second = await retriever.search(query, limit=6)
        assert [r.chunk.chunk_id for r in first.chunks] == [r.chunk.chunk_id for r in second.chunks]

    async def test_ordering_is_total(self, retriever, normalizer):
        outcome = await retriever.search(normalizer.normalize("cardiac arrest"), limit=10)
        keys = [retriever._sort_key(r) for r in outcome.chunks]
        assert keys == sorted(keys)

    async def test_respects_limit(self, retriever, normalizer):
        outcome = await retriever.search(normalizer.normalize("pain"), limit=2)
        assert len(outcome.chunks) <= 2

    async def test_empty_query_returns_nothing(self, retriever):
        outcome = await retriever.search(NormalizedQuery(original="", text=""), limit=3)
        assert outcome.is_empty
        assert not outcome.failed

    @pytest.mark.parametrize("limit", [0, -1, 2.5, True])
    async def test_invalid_limit(self, retriever, normalizer, limit):
        with pytest.raises(InvalidInputError):
            await retriever.search(normalizer.normalize("chest pain"), limit=limit)


class TestPopulation:
    async def test_adult_never_sees_pediatric_protocols(self, retriever, normalizer):
        outcome = await retriever.search(normalizer.normalize("crush injury", patient_age=28), limit=10)
        codes = _codes(outcome)
        assert codes[0] == "1242"
        assert not any(c.endswith("-P") for c in codes)

    async def test_pediatric_query_gets_pediatric_variant(self, retriever, normalizer):
        outcome = await retriever.search(normalizer.normalize("crush injury", patient_age=6), limit=10)
        codes = _codes(outcome)
        assert "1242-P" in codes
        assert "1242" not in codes


class TestHybridScoring:
    @pytest.fixture
    async def embedded_store(self):
        airway = make_protocol("1300", name="Airway", texts=["Stridor with upper airway obstruction guidance."])
        breathing = make_protocol("1301", name="Breathing", texts=["Respiratory distress guidance for providers."])
        store = InMemoryProtocolStore([airway, breathing])
        await store.upsert_embedding("1300:0", [0.0, 1.0], airway.chunks[0].content_hash)
        await store.upsert_embedding("1301:0", [1.0, 0.0], breathing.chunks[0].content_hash)
        return store

    async def test_weighted_combination(self, embedded_store):
        retriever = HybridRetriever(
            RecoveryManager(embedded_store, config=FAST),
            embedder=FixedEmbedder([1.0, 0.0]),
        )
        outcome = await retriever.search(NormalizedQuery(original="stridor", text="stridor"), limit=5)

        by_code = {r.protocol_code: r for r in outcome.chunks}
        # lexical-only match with orthogonal embedding: 0.4 * 1.0 + 0.6 * 0.0
        assert by_code["1300"].score == pytest.approx(0.4)
        # vector-only match: 0.4 * 0.0 + 0.6 * 1.0
        assert by_code["1301"].score == pytest.approx(0.6)
        assert _codes(outcome) == ["1301", "1300"]

    async def test_custom_weights(self, embedded_store):
        retriever = HybridRetriever(
            RecoveryManager(embedded_store, config=FAST),
            config=RetrievalConfig(lexical_weight=0.9, vector_weight=0.1),
            embedder=FixedEmbedder([1.0, 0.0]),
        )
        outcome = await retriever.search(NormalizedQuery(original="stridor", text="stridor"), limit=5)
        assert _codes(outcome) == ["1300", "1301"]
        assert outcome.chunks[0].score == pytest.approx(0.9)

    async def test_embedder_failure_degrades_to_lexical(self, embedded_store):
        retriever = HybridRetriever(RecoveryManager(embedded_store, config=FAST), embedder=BrokenEmbedder())
        outcome = await retriever.search(NormalizedQuery(original="stridor", text="stridor"), limit=5)
        assert _codes(outcome) == ["1300"]
        assert outcome.chunks[0].score == pytest.approx(1.0)


class TestDegradation:
    async def test_file_tier_serves_when_store_down(self, memory_store, file_store, normalizer):
        retriever = HybridRetriever(RecoveryManager(FlakyStore(memory_store, failures=-1), file_store, config=FAST))
        outcome = await retriever.search(normalizer.normalize("chest pain"), limit=3)
        assert outcome.strategy_used == STRATEGY_FILE
        assert _codes(outcome)[0] == "1211"
        assert not outcome.failed

    async def test_failed_when_every_tier_down(self, memory_store, normalizer):
        sink = InMemoryTelemetrySink()
        telemetry = TelemetryRecorder(sink)
        retriever = HybridRetriever(
            RecoveryManager(FlakyStore(memory_store, failures=-1), MissingFileStore(), config=FAST),
            telemetry=telemetry,
        )
        outcome = await retriever.search(normalizer.normalize("chest pain"), limit=3)
        await telemetry.flush()

        assert outcome.failed
        assert outcome.is_empty
        assert outcome.strategy_used == STRATEGY_SAFE_DEFAULT
        [event] = sink.named("search.completed")
        assert event.attributes["failed"] is True
