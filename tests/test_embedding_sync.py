"""
Tests for embedding maintenance.
"""

from typing import List

from conftest import make_protocol
from protocol_guard.rag.retrieval.embedder import Embedder
from protocol_guard.rag.store.embedding_sync import EmbeddingSynchronizer
from protocol_guard.rag.store.memory_store import InMemoryProtocolStore


class LengthEmbedder(Embedder):
    """Deterministic two-dimensional embedding for tests."""

    dimension = 2

    def __init__(self):
        self.calls = 0

    async def embed(self, text: str) -> List[float]:
        self.calls += 1
        return [float(len(text)), 1.0]


async def test_sync_embeds_every_stale_chunk():
    store = InMemoryProtocolStore([
        make_protocol("1300", texts=["First chunk of airway guidance text.", "Second chunk of airway guidance."]),
        make_protocol("1301", texts=["Only chunk of the other protocol text."]),
    ])
    embedder = LengthEmbedder()

    report = await EmbeddingSynchronizer(store, embedder).sync(batch_size=2)

    assert report.updated == 3
    assert report.rejected == 0
    assert report.batches == 2
    assert await store.get_chunks_needing_embedding() == []
    assert (await store.stats()).embedding_coverage == 1.0


async def test_sync_is_idempotent():
    store = InMemoryProtocolStore([make_protocol("1300")])
    embedder = LengthEmbedder()
    synchronizer = EmbeddingSynchronizer(store, embedder)

    await synchronizer.sync()
    second = await synchronizer.sync()

    assert second.updated == 0
    assert second.batches == 0
    assert embedder.calls == 1


async def test_new_version_needs_fresh_embeddings():
    store = InMemoryProtocolStore([make_protocol("1300")])
    await EmbeddingSynchronizer(store, LengthEmbedder()).sync()

    store.add_protocol(make_protocol("1300", texts=["Rewritten guidance text for the airway protocol."]))
    stale = await store.get_chunks_needing_embedding()

    assert [c.chunk_id for c in stale] == ["1300:0"]
