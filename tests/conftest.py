"""
Pytest configuration and shared fixtures for protocol_guard tests.
"""

import asyncio
from datetime import date
from typing import List, Optional

import pytest

from protocol_guard.core.config import AppConfig, CircuitBreakerConfig, RecoveryConfig
from protocol_guard.core.error_handling import StoreUnavailableError
from protocol_guard.core.telemetry import InMemoryTelemetrySink
from protocol_guard.rag.knowledge_base.corpus_loader import load_corpus
from protocol_guard.rag.models import Protocol, ProtocolChunk
from protocol_guard.rag.protocol_service import build_service
from protocol_guard.rag.store.base import ProtocolStore, StoreStats
from protocol_guard.rag.store.file_store import FileProtocolStore
from protocol_guard.rag.store.memory_store import InMemoryProtocolStore


@pytest.fixture(scope="session")
def event_loop_policy():
    """Configure event loop policy for Windows."""
    import sys

    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

    return asyncio.get_event_loop_policy()


# ============================================================================
# Corpus
# ============================================================================

@pytest.fixture
def corpus() -> List[Protocol]:
    return load_corpus()


@pytest.fixture
def memory_store(corpus) -> InMemoryProtocolStore:
    return InMemoryProtocolStore(corpus)


@pytest.fixture
def file_store() -> FileProtocolStore:
    return FileProtocolStore()


def make_protocol(
    code: str,
    name: str = "Test Protocol",
    texts: Optional[List[str]] = None,
    **kwargs,
) -> Protocol:
    texts = texts or ["Test protocol text describing assessment and treatment in enough detail."]
    protocol = Protocol(code=code, name=name, effective_date=kwargs.pop("effective_date", date(2024, 7, 1)), **kwargs)
    protocol.chunks = [
        ProtocolChunk(protocol_code=protocol.code, sequence=i, text=t, title=name)
        for i, t in enumerate(texts)
    ]
    return protocol


# ============================================================================
# Fault injection
# ============================================================================

class FlakyStore(ProtocolStore):
    """Wraps a store and fails a configurable number of calls."""

    name = "flaky-store"

    def __init__(self, inner: ProtocolStore, failures: int = 0, exc: Optional[Exception] = None, delay: float = 0.0):
        self.inner = inner
        self.failures = failures
        self.exc = exc or StoreUnavailableError("injected failure")
        self.delay = delay
        self.calls = 0

    async def _maybe_fail(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures < 0 or self.calls <= self.failures:
            raise self.exc

    async def get_by_code(self, code):
        await self._maybe_fail()
        return await self.inner.get_by_code(code)

    async def search(self, text, filters=None, limit=20):
        await self._maybe_fail()
        return await self.inner.search(text, filters, limit)

    async def vector_search(self, embedding, filters=None, limit=20):
        await self._maybe_fail()
        return await self.inner.vector_search(embedding, filters, limit)

    async def get_chunks_needing_embedding(self, limit=100):
        return await self.inner.get_chunks_needing_embedding(limit)

    async def upsert_embedding(self, chunk_id, vector, content_hash):
        return await self.inner.upsert_embedding(chunk_id, vector, content_hash)

    async def stats(self) -> StoreStats:
        await self._maybe_fail()
        return await self.inner.stats()

    async def known_codes(self):
        await self._maybe_fail()
        return await self.inner.known_codes()

    def add_protocol(self, protocol):
        return self.inner.add_protocol(protocol)

    def soft_delete(self, code):
        return self.inner.soft_delete(code)


@pytest.fixture
def flaky_store_factory(memory_store):
    def _make(failures: int = 0, **kwargs) -> FlakyStore:
        return FlakyStore(memory_store, failures=failures, **kwargs)
    return _make


class MissingFileStore(FileProtocolStore):
    """File corpus tier pointing at a path that does not exist."""

    def __init__(self):
        super().__init__("/nonexistent/protocols.json")


# ============================================================================
# Configuration / service
# ============================================================================

@pytest.fixture
def fast_config() -> AppConfig:
    """No backoff delay, short timeouts."""
    return AppConfig(
        breaker=CircuitBreakerConfig(failure_threshold=3, reset_timeout_seconds=30.0),
        recovery=RecoveryConfig(max_attempts=3, base_delay_seconds=0.0, call_timeout_seconds=0.5),
    )


@pytest.fixture
def telemetry_sink() -> InMemoryTelemetrySink:
    return InMemoryTelemetrySink()


@pytest.fixture
def service(fast_config, memory_store, telemetry_sink):
    return build_service(fast_config, store=memory_store, telemetry_sink=telemetry_sink)
