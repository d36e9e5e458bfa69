"""
Embedding maintenance.

Finds chunks whose embedding is missing or was computed from older text
(content hash mismatch) and upserts fresh vectors tagged with the chunk's
current hash.
"""

import logging
from dataclasses import dataclass, field
from typing import List

from ..retrieval.embedder import Embedder
from .base import ProtocolStore

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingSyncReport:
    examined: int = 0
    updated: int = 0
    rejected: int = 0
    batches: int = 0
    rejected_ids: List[str] = field(default_factory=list)


class EmbeddingSynchronizer:
    """Refreshes chunk embeddings in a store, batch by batch."""

    def __init__(self, store: ProtocolStore, embedder: Embedder):
        self.store = store
        self.embedder = embedder

    async def sync(self, batch_size: int = 32, max_batches: int = 100) -> EmbeddingSyncReport:
        report = EmbeddingSyncReport()
        seen = set()

        while report.batches < max_batches:
            chunks = [
                c for c in await self.store.get_chunks_needing_embedding(limit=batch_size)
                if c.chunk_id not in seen
            ]
            if not chunks:
                break

            report.batches += 1
            vectors = await self.embedder.embed_batch([c.text for c in chunks])
            for chunk, vector in zip(chunks, vectors):
                seen.add(chunk.chunk_id)
                report.examined += 1
                if await self.store.upsert_embedding(chunk.chunk_id, vector, chunk.content_hash):
                    report.updated += 1
                else:
                    report.rejected += 1
                    report.rejected_ids.append(chunk.chunk_id)

        logger.info(
            f"Embedding sync: {report.updated} updated, {report.rejected} rejected "
            f"in {report.batches} batch(es)"
        )
        return report
