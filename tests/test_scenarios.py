"""
End-to-end scenarios through the retrieval service: retrieve, build the
context, validate an answer.
"""

import pytest

from conftest import FlakyStore, MissingFileStore, make_protocol
from protocol_guard.core.error_handling import InvalidInputError
from protocol_guard.core.recovery import STRATEGY_CACHE, STRATEGY_FILE, STRATEGY_SAFE_DEFAULT
from protocol_guard.rag.models import SAFE_BLOCKED_MESSAGE, SAFE_DEGRADED_MESSAGE, Severity
from protocol_guard.rag.protocol_service import build_service


class MetadataOutageStore(FlakyStore):
    """Search works; protocol metadata reads fail."""

    async def search(self, text, filters=None, limit=20):
        return await self.inner.search(text, filters, limit)

    async def vector_search(self, embedding, filters=None, limit=20):
        return await self.inner.vector_search(embedding, filters, limit)

    async def known_codes(self):
        return await self.inner.known_codes()


class TestChestPain:
    async def test_retrieve_and_validate_clean_answer(self, service):
        response = await service.retrieve("chest pain")

        assert response.retrieved_codes[0] == "1211"
        assert not response.blocked
        assert not response.degraded
        assert all(not v.critical for v in response.validation)

        context = service.build_context(response.chunks)
        assert context.startswith("TP 1211")
        stage3 = await service.validate_context(context, response)
        assert not stage3.has("unretrieved-citation")
        assert not stage3.has("context-medication-error")

        answer = "Per TP 1211, give aspirin 324 mg PO and nitroglycerin 0.4 mg SL."
        stage4 = await service.validate_answer(answer, response)
        assert stage4.valid
        assert stage4.errors == []


class TestCrushInjury:
    async def test_adult_gets_adult_protocol(self, service):
        response = await service.retrieve("28yo male crush injury", patient_age=28)

        assert response.retrieved_codes[0] == "1242"
        assert not any(code.endswith("-P") for code in response.retrieved_codes)
        assert not response.query.is_pediatric

    async def test_weight_based_dose_for_adult_is_blocked(self, service):
        response = await service.retrieve("28yo male crush injury", patient_age=28)
        answer = "Per TP 1242, give sodium bicarbonate 1 mEq/kg IV and contact Base Hospital."

        result = await service.validate_answer(answer, response)

        [finding] = result.by_code("dose-out-of-range")
        assert finding.severity == Severity.CRITICAL
        assert finding.context["population"] == "adult"
        assert not result.valid

    async def test_pediatric_gets_pediatric_protocol(self, service):
        response = await service.retrieve("crush injury", patient_age=7)
        assert "1242-P" in response.retrieved_codes
        assert "1242" not in response.retrieved_codes


class TestUnsafeAnswers:
    async def test_unauthorized_medication(self, service):
        response = await service.retrieve("active seizure")
        result = await service.validate_answer("Give Ativan 2 mg IV for the seizure.", response)
        assert result.has("response-medication-error", Severity.CRITICAL)

    async def test_hallucinated_citation(self, service):
        response = await service.retrieve("chest pain")
        result = await service.validate_answer("Per TP 9999, give oxygen.", response)
        assert result.has("hallucinated-citation", Severity.CRITICAL)

    async def test_unknown_code_blocked_before_retrieval(self, service):
        response = await service.retrieve("TP 9999")

        assert response.blocked
        assert response.chunks == []
        assert response.safety_message == SAFE_BLOCKED_MESSAGE
        assert response.validation[0].has("invalid-protocol-code", Severity.CRITICAL)

    async def test_validate_answer_with_plain_codes(self, service):
        result = await service.validate_answer("Per TP 1211, give aspirin 324 mg PO.", ["1211"])
        assert result.valid

    async def test_unreachable_metadata_still_resolves_citations(self, fast_config, memory_store):
        service = build_service(fast_config, store=FlakyStore(memory_store, failures=-1),
                                file_store=MissingFileStore())
        result = await service.validate_answer("Per TP 1211, give aspirin.", ["1211"])
        assert not result.has("hallucinated-citation")


class TestDegradedOperation:
    async def test_file_corpus_serves_when_store_down(self, fast_config, memory_store):
        service = build_service(fast_config, store=FlakyStore(memory_store, failures=-1))
        response = await service.retrieve("chest pain")

        assert response.degraded
        assert response.strategy_used == STRATEGY_FILE
        assert response.retrieved_codes[0] == "1211"
        assert response.safety_message is None

    async def test_every_tier_down_returns_safe_default(self, fast_config, memory_store, telemetry_sink):
        service = build_service(
            fast_config,
            store=FlakyStore(memory_store, failures=-1),
            file_store=MissingFileStore(),
            telemetry_sink=telemetry_sink,
        )
        response = await service.retrieve("chest pain")
        await service.telemetry.flush()

        assert response.degraded
        assert response.chunks == []
        assert response.strategy_used == STRATEGY_SAFE_DEFAULT
        assert response.safety_message == SAFE_DEGRADED_MESSAGE
        assert telemetry_sink.named("recovery.completed")

    async def test_metadata_outage_is_degraded_not_blocked(self, fast_config, memory_store):
        store = MetadataOutageStore(memory_store, failures=-1, exc=ConnectionError("metadata down"))
        service = build_service(fast_config, store=store, file_store=MissingFileStore())

        response = await service.retrieve("chest pain")

        assert response.degraded
        assert not response.blocked
        assert response.chunks == []
        assert response.strategy_used == STRATEGY_SAFE_DEFAULT
        assert response.safety_message == SAFE_DEGRADED_MESSAGE
        stage2 = response.validation[1]
        assert stage2.has("protocol-metadata-unavailable", Severity.ERROR)
        assert not stage2.has("deprecated-protocol")
        assert stage2.metadata["unavailable_codes"]

    async def test_breaker_opens_and_stops_calling_store(self, fast_config, memory_store):
        store = FlakyStore(memory_store, failures=-1)
        service = build_service(fast_config, store=store)

        await service.retrieve("chest pain")
        calls = store.calls
        await service.retrieve("difficulty breathing")

        assert service.recovery.breakers.any_open()
        assert store.calls == calls


class TestReferenceData:
    async def test_refresh_adds_store_codes(self, service):
        assert not service.pipeline.reference.is_known("1212")

        assert await service.refresh_reference()
        assert service.pipeline.reference.is_known("1212")

    async def test_refresh_fails_when_every_tier_is_down(self, fast_config, memory_store):
        service = build_service(fast_config, store=FlakyStore(memory_store, failures=-1),
                                file_store=MissingFileStore())
        assert not await service.refresh_reference()

    async def test_protocols_for_codes_and_chunks(self, service, corpus):
        chunk = next(p for p in corpus if p.code == "1242").chunks[0]
        protocols = await service.protocols_for(["1211", chunk, "1211"])

        assert [p.code for p in protocols] == ["1211", "1242"]
        assert protocols[1].name == "Crush Injury / Syndrome"

    async def test_protocols_for_rejects_plain_string(self, service):
        with pytest.raises(InvalidInputError):
            await service.protocols_for("1211")



REVISED_1211 = (
    "Revised cardiac chest pain guidance. Give aspirin 324 mg PO, obtain a twelve-lead ECG "
    "and transport to a STEMI receiving center."
)


class TestProtocolUpdates:
    @pytest.fixture
    def cached_service(self, fast_config, memory_store):
        store = FlakyStore(memory_store)
        return store, build_service(fast_config, store=store, file_store=MissingFileStore())

    async def test_publish_serves_new_version(self, service):
        await service.publish_protocol(make_protocol("1211", name="Cardiac Chest Pain", category="Cardiac",
                                                     texts=[REVISED_1211]))

        [protocol] = await service.protocols_for(["1211"])
        assert protocol.version == 2
        response = await service.retrieve("chest pain")
        assert [r.text for r in response.chunks if r.protocol_code == "1211"] == [REVISED_1211]

    async def test_publish_drops_cached_old_version(self, cached_service):
        store, service = cached_service
        await service.protocols_for(["1211"])

        await service.publish_protocol(make_protocol("1211", name="Cardiac Chest Pain", category="Cardiac",
                                                     texts=[REVISED_1211]))
        store.failures = -1

        result = await service.recovery.get_by_code("1211")
        assert result.strategy_used == STRATEGY_SAFE_DEFAULT
        assert not result.success

    async def test_cache_serves_without_an_update(self, cached_service):
        store, service = cached_service
        await service.protocols_for(["1211"])
        store.failures = -1

        result = await service.recovery.get_by_code("1211")
        assert result.strategy_used == STRATEGY_CACHE
        assert result.data.version == 1

    async def test_publish_adds_code_to_reference(self, service):
        await service.publish_protocol(make_protocol("1399", name="Field Sample", category="Medical"))
        assert service.pipeline.reference.is_known("1399")

    async def test_publish_rejects_protocol_without_code(self, service):
        with pytest.raises(InvalidInputError):
            await service.publish_protocol(make_protocol("", name="Blank"))

    async def test_retire_removes_protocol(self, service):
        response = await service.retrieve("chest pain")
        assert response.retrieved_codes[0] == "1211"

        assert await service.retire_protocol("1211")
        assert not await service.retire_protocol("1211")

        response = await service.retrieve("chest pain")
        assert "1211" not in response.retrieved_codes
        assert not response.validation[1].has("deprecated-protocol")

    async def test_read_only_primary_rejects_updates(self, fast_config, file_store):
        service = build_service(fast_config, store=file_store)
        with pytest.raises(InvalidInputError):
            await service.retire_protocol("1211")


@pytest.mark.parametrize("query", ["chest pain", "cant breathe", "seizure", "overdose"])
async def test_retrieval_is_deterministic(service, query):
    first = await service.retrieve(query)
    second = await service.retrieve(query)
    assert [r.chunk.chunk_id for r in first.chunks] == [r.chunk.chunk_id for r in second.chunks]
