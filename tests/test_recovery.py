"""
Tests for the recovery chain: primary -> cache -> file corpus -> safe default.
"""

import asyncio

import pytest

from conftest import FlakyStore, MissingFileStore
from protocol_guard.core.circuit_breaker import CircuitBreakerRegistry, CircuitState
from protocol_guard.core.config import CircuitBreakerConfig, RecoveryConfig
from protocol_guard.core.error_handling import InvalidInputError
from protocol_guard.core.recovery import (
    STRATEGY_CACHE,
    STRATEGY_FILE,
    STRATEGY_PRIMARY,
    STRATEGY_SAFE_DEFAULT,
    STRUCTURED_STORE,
    RecoveryManager,
)
from protocol_guard.core.telemetry import InMemoryTelemetrySink, TelemetryRecorder
from protocol_guard.rag.models import SAFE_DEGRADED_MESSAGE, RetrievalResponse
from protocol_guard.rag.protocol_service import build_service


def _manager(primary, file_store=None, config=None, threshold=3, telemetry=None):
    return RecoveryManager(
        primary=primary,
        file_store=file_store,
        config=config or RecoveryConfig(max_attempts=3, base_delay_seconds=0.0, call_timeout_seconds=0.5),
        breakers=CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=threshold)),
        telemetry=telemetry,
    )


class TestPrimary:
    async def test_success_uses_primary_and_warms_cache(self, flaky_store_factory):
        manager = _manager(flaky_store_factory(0))
        result = await manager.get_by_code("1211")

        assert result.success
        assert result.strategy_used == STRATEGY_PRIMARY
        assert result.fallbacks_used == []
        assert result.data.code == "1211"
        assert await manager.cache.contains("protocol:1211")

    async def test_transient_failures_retried(self, flaky_store_factory):
        store = flaky_store_factory(2)
        manager = _manager(store)
        result = await manager.get_by_code("1211")

        assert result.strategy_used == STRATEGY_PRIMARY
        assert result.attempts == 3
        assert store.calls == 3

    async def test_non_transient_error_not_retried(self, flaky_store_factory, file_store):
        store = flaky_store_factory(-1, exc=ValueError("bad row"))
        manager = _manager(store, file_store)
        result = await manager.get_by_code("1211")

        assert store.calls == 1
        assert result.strategy_used == STRATEGY_FILE

    async def test_missing_protocol_is_success(self, flaky_store_factory):
        result = await _manager(flaky_store_factory(0)).get_by_code("1399")
        assert result.success
        assert result.data is None

    async def test_contract_errors_propagate(self, flaky_store_factory):
        manager = _manager(flaky_store_factory(0))
        with pytest.raises(InvalidInputError):
            await manager.get_by_code("")
        with pytest.raises(InvalidInputError):
            await manager.search("chest pain", limit=0)


class TestFallbackChain:
    async def test_cache_serves_when_primary_down(self, memory_store):
        store = FlakyStore(memory_store)
        manager = _manager(store, MissingFileStore(), threshold=10)
        assert (await manager.get_by_code("1210")).strategy_used == STRATEGY_PRIMARY

        store.failures = -1
        result = await manager.get_by_code("1210")

        assert result.success
        assert result.strategy_used == STRATEGY_CACHE
        assert result.fallbacks_used == [STRATEGY_CACHE]
        assert result.data.code == "1210"

    async def test_file_corpus_serves_when_cache_cold(self, flaky_store_factory, file_store):
        manager = _manager(flaky_store_factory(-1), file_store)
        result = await manager.search("chest pain aspirin")

        assert result.success
        assert result.strategy_used == STRATEGY_FILE
        assert result.fallbacks_used == [STRATEGY_CACHE, STRATEGY_FILE]
        assert result.data[0].chunk.protocol_code == "1211"

    async def test_safe_default_when_everything_down(self, flaky_store_factory):
        manager = _manager(flaky_store_factory(-1), MissingFileStore())
        result = await manager.search("chest pain")

        assert not result.success
        assert result.data == []
        assert result.strategy_used == STRATEGY_SAFE_DEFAULT
        assert result.fallbacks_used == [STRATEGY_CACHE, STRATEGY_FILE, STRATEGY_SAFE_DEFAULT]
        assert result.error

    async def test_vector_search_has_no_file_tier(self, flaky_store_factory, file_store):
        manager = _manager(flaky_store_factory(-1), file_store)
        result = await manager.vector_search([0.1, 0.2])
        assert result.strategy_used == STRATEGY_SAFE_DEFAULT
        assert STRATEGY_FILE not in result.fallbacks_used

    async def test_known_codes_falls_back_to_file(self, flaky_store_factory, file_store):
        result = await _manager(flaky_store_factory(-1), file_store).known_codes()
        assert result.strategy_used == STRATEGY_FILE
        assert "1211" in result.data


class TestBackoff:
    async def test_delays_double_between_attempts(self, flaky_store_factory):
        delays = []

        async def record_sleep(seconds):
            delays.append(seconds)

        manager = RecoveryManager(
            primary=flaky_store_factory(-1),
            config=RecoveryConfig(),
            breakers=CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=10)),
            sleep=record_sleep,
        )
        result = await manager.get_by_code("1211")

        assert result.attempts == 3
        assert delays == [0.5, 1.0]

    async def test_delay_capped_at_max(self, flaky_store_factory):
        delays = []

        async def record_sleep(seconds):
            delays.append(seconds)

        manager = RecoveryManager(
            primary=flaky_store_factory(-1),
            config=RecoveryConfig(max_attempts=5, base_delay_seconds=1.0, max_delay_seconds=3.0),
            breakers=CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=10)),
            sleep=record_sleep,
        )
        await manager.get_by_code("1211")

        assert delays == [1.0, 2.0, 3.0, 3.0]

    async def test_no_sleep_after_success(self, flaky_store_factory):
        delays = []

        async def record_sleep(seconds):
            delays.append(seconds)

        manager = RecoveryManager(primary=flaky_store_factory(1), config=RecoveryConfig(), sleep=record_sleep)
        result = await manager.get_by_code("1211")

        assert result.strategy_used == STRATEGY_PRIMARY
        assert delays == [0.5]

class TestBreakerIntegration:
    async def test_open_breaker_skips_primary(self, flaky_store_factory, file_store):
        store = flaky_store_factory(-1)
        manager = _manager(store, file_store, threshold=3)

        await manager.get_by_code("1211")
        assert store.calls == 3
        assert manager.breakers.get(STRUCTURED_STORE).state == CircuitState.OPEN

        result = await manager.get_by_code("1211")
        assert store.calls == 3
        assert result.strategy_used == STRATEGY_FILE
        assert manager.breaker_status()[STRUCTURED_STORE]["state"] == "open"

        await manager.reset_breakers()
        assert not manager.breakers.any_open()


class TestTimeouts:
    async def test_timeout_falls_back_and_abandoned_call_warms_cache(self, memory_store, file_store):
        store = FlakyStore(memory_store, delay=0.2)
        config = RecoveryConfig(max_attempts=1, base_delay_seconds=0.0, call_timeout_seconds=0.05)
        manager = _manager(store, file_store, config=config)

        result = await manager.get_by_code("1211")
        assert result.strategy_used == STRATEGY_FILE
        assert "exceeded" in result.error
        assert manager.breakers.get(STRUCTURED_STORE).failure_count == 1

        await manager.drain()
        await manager.drain()
        assert await manager.cache.contains("protocol:1211")

    async def test_caller_cancellation_does_not_cancel_store_call(self, memory_store):
        store = FlakyStore(memory_store, delay=0.1)
        manager = _manager(store)

        task = asyncio.ensure_future(manager.get_by_code("1237"))
        await asyncio.sleep(0.02)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await manager.drain()
        await manager.drain()
        assert await manager.cache.contains("protocol:1237")


class TestBookkeeping:
    async def test_recovery_log_and_telemetry(self, flaky_store_factory):
        sink = InMemoryTelemetrySink()
        telemetry = TelemetryRecorder(sink)
        manager = _manager(flaky_store_factory(-1), MissingFileStore(), telemetry=telemetry)

        await manager.get_by_code("1211")
        await telemetry.flush()

        stats = manager.recovery_log.statistics()
        assert stats["total"] == 1
        assert stats["failed"] == 1
        events = sink.named("recovery.completed")
        assert len(events) == 1
        assert events[0].attributes["strategy_used"] == STRATEGY_SAFE_DEFAULT

    async def test_invalidate_protocol(self, flaky_store_factory):
        manager = _manager(flaky_store_factory(0))
        await manager.get_by_code("1211")
        await manager.search("chest pain")
        await manager.known_codes()

        removed = await manager.invalidate_protocol("1211")
        assert removed == 3
        assert manager.cache_stats()["size"] == 0


QUERIES = ["chest pain", "seizure", "crush injury", "difficulty breathing", "overdose"]


class TestConcurrentRetrieval:
    async def test_many_callers_during_outage(self, fast_config, memory_store):
        service = build_service(fast_config, store=FlakyStore(memory_store, failures=-1),
                                file_store=MissingFileStore())

        responses = await asyncio.gather(
            *(service.retrieve(QUERIES[i % len(QUERIES)], patient_age=30 + i) for i in range(20)),
            return_exceptions=True,
        )

        assert len(responses) == 20
        for response in responses:
            assert isinstance(response, RetrievalResponse)
            assert response.degraded
            assert response.chunks == []
            assert response.strategy_used == STRATEGY_SAFE_DEFAULT
            assert response.safety_message == SAFE_DEGRADED_MESSAGE
        assert service.recovery.breakers.any_open()

    async def test_many_callers_served_from_file_corpus(self, fast_config, memory_store):
        service = build_service(fast_config, store=FlakyStore(memory_store, failures=-1))

        responses = await asyncio.gather(
            *(service.retrieve(QUERIES[i % len(QUERIES)]) for i in range(20)),
            return_exceptions=True,
        )

        for response in responses:
            assert isinstance(response, RetrievalResponse)
            assert response.degraded
            assert response.chunks
            assert response.safety_message is None
            assert STRATEGY_FILE in response.fallbacks_used
