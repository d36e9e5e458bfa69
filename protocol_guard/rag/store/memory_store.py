"""
In-memory Protocol Store.

Holds every version of every protocol; only the current, non-deleted
version of each code is searchable. Adding a protocol supersedes the
previous current version instead of replacing it.
"""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np

from ...core.error_handling import InvalidInputError
from ..models import Protocol, ProtocolChunk
from ..retrieval.lexical_index import LexicalIndex
from .base import ProtocolStore, SearchFilters, StoreHit, StoreStats

logger = logging.getLogger(__name__)


def cosine_similarities(query: Sequence[float], matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of one query vector against each row of matrix."""
    q = np.asarray(query, dtype=np.float32)
    q_norm = np.linalg.norm(q)
    row_norms = np.linalg.norm(matrix, axis=1)
    denom = row_norms * q_norm
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(denom > 0, matrix @ q / denom, 0.0)
    return sims


def rank_by_vector(
    embedding: Sequence[float],
    chunks: List[ProtocolChunk],
    limit: int,
) -> List[tuple]:
    """(chunk, similarity) pairs for chunks with valid embeddings, best first."""
    embedded = [c for c in chunks if c.has_valid_embedding]
    if not embedded:
        return []
    matrix = np.asarray([c.embedding for c in embedded], dtype=np.float32)
    sims = cosine_similarities(embedding, matrix)
    order = sorted(range(len(embedded)), key=lambda i: (-float(sims[i]), embedded[i].chunk_id))
    return [(embedded[i], float(sims[i])) for i in order[:limit]]


class InMemoryProtocolStore(ProtocolStore):
    """Versioned protocol store kept in process memory."""

    name = "memory-store"
    supports_vectors = True

    def __init__(self, protocols: Optional[Iterable[Protocol]] = None, k1: float = 1.5, b: float = 0.75):
        self._versions: Dict[str, List[Protocol]] = {}
        self._index = LexicalIndex(k1=k1, b=b)
        self._index_dirty = True
        self._lock = asyncio.Lock()
        for protocol in protocols or ():
            self.add_protocol(protocol)

    # ------------------------------------------------------------------
    # Writes (ingestion side)
    # ------------------------------------------------------------------

    def add_protocol(self, protocol: Protocol) -> Protocol:
        """
        Register a protocol version. An existing current version of the same
        code is marked superseded; older versions are kept.
        """
        versions = self._versions.setdefault(protocol.code, [])
        for previous in versions:
            if previous.is_current:
                previous.is_current = False
                if protocol.version <= previous.version:
                    protocol.version = previous.version + 1
        versions.append(protocol)
        self._index_dirty = True
        logger.debug(f"Protocol {protocol.code} v{protocol.version} registered")
        return protocol

    def soft_delete(self, code: str) -> bool:
        current = self._current(code.upper())
        if current is None:
            return False
        current.deleted_at = datetime.now()
        self._index_dirty = True
        return True

    def versions(self, code: str) -> List[Protocol]:
        return list(self._versions.get(code.upper(), []))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _current(self, code: str) -> Optional[Protocol]:
        for protocol in reversed(self._versions.get(code, [])):
            if protocol.is_current:
                return protocol
        return None

    def _active_protocols(self) -> List[Protocol]:
        active = []
        for code in sorted(self._versions):
            protocol = self._current(code)
            if protocol is not None and protocol.deleted_at is None:
                active.append(protocol)
        return active

    def _active_chunks(self) -> List[ProtocolChunk]:
        return [c for p in self._active_protocols() for c in p.chunks]

    def _ensure_index(self) -> None:
        if self._index_dirty:
            self._index.build(self._active_chunks())
            self._index_dirty = False

    def _hit(self, chunk: ProtocolChunk, score: float) -> StoreHit:
        protocol = self._current(chunk.protocol_code)
        return StoreHit(
            chunk=chunk,
            score=score,
            popularity=protocol.popularity if protocol else 0,
            effective_date=protocol.effective_date if protocol else None,
        )

    async def get_by_code(self, code: str) -> Optional[Protocol]:
        if not isinstance(code, str) or not code.strip():
            raise InvalidInputError("protocol code must be a non-empty string", {"code": code})
        protocol = self._current(code.strip().upper())
        if protocol is None or protocol.deleted_at is not None:
            return None
        return protocol

    async def search(
        self,
        text: str,
        filters: Optional[SearchFilters] = None,
        limit: int = 20,
    ) -> List[StoreHit]:
        async with self._lock:
            self._ensure_index()
            admit = None
            if filters is not None:
                admit = lambda chunk: filters.admits(self._current(chunk.protocol_code))
            results = self._index.search(text, limit=limit, admit=admit)
        return [self._hit(chunk, score) for chunk, score in results]

    async def vector_search(
        self,
        embedding: Sequence[float],
        filters: Optional[SearchFilters] = None,
        limit: int = 20,
    ) -> List[StoreHit]:
        chunks = [
            c for c in self._active_chunks()
            if filters is None or filters.admits(self._current(c.protocol_code))
        ]
        return [self._hit(chunk, sim) for chunk, sim in rank_by_vector(embedding, chunks, limit)]

    async def get_chunks_needing_embedding(self, limit: int = 100) -> List[ProtocolChunk]:
        stale = [c for c in self._active_chunks() if not c.has_valid_embedding]
        return stale[:limit]

    async def upsert_embedding(
        self,
        chunk_id: str,
        vector: Sequence[float],
        content_hash: str,
    ) -> bool:
        code, _, sequence = chunk_id.rpartition(":")
        protocol = self._current(code)
        if protocol is None:
            return False
        for i, chunk in enumerate(protocol.chunks):
            if str(chunk.sequence) == sequence:
                if chunk.content_hash != content_hash:
                    logger.warning(f"Embedding for {chunk_id} rejected: content hash changed")
                    return False
                protocol.chunks[i] = replace(
                    chunk, embedding=[float(v) for v in vector], embedding_hash=content_hash
                )
                self._index_dirty = True
                return True
        return False

    async def stats(self) -> StoreStats:
        chunks = self._active_chunks()
        return StoreStats(
            protocols=sum(len(v) for v in self._versions.values()),
            current_protocols=len(self._active_protocols()),
            chunks=len(chunks),
            embedded_chunks=sum(1 for c in chunks if c.has_valid_embedding),
        )

    async def known_codes(self) -> List[str]:
        return [p.code for p in self._active_protocols()]
