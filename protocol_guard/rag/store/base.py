"""
Protocol Store Adapter interface.

Every backing tier (structured SQL store, in-memory store, flat-file corpus)
implements the same async interface, so the recovery manager can walk the
fallback chain without knowing which tier it is talking to.
"""

import hashlib
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..models import Population, Protocol, ProtocolChunk


@dataclass(frozen=True)
class SearchFilters:
    """
    Restrictions applied to a search.

    population:
        ADULT excludes pediatric-variant protocols ("1242-P").
        PEDIATRIC excludes adult protocols that have a pediatric variant.
        None admits both.
    """

    population: Optional[Population] = None
    categories: Tuple[str, ...] = ()
    exclude_codes: Tuple[str, ...] = ()

    def admits(self, protocol: Optional[Protocol]) -> bool:
        if protocol is None:
            return False
        if protocol.code in self.exclude_codes:
            return False
        if self.categories and protocol.category not in self.categories:
            return False
        if self.population == Population.ADULT and protocol.is_pediatric:
            return False
        if (
            self.population == Population.PEDIATRIC
            and not protocol.is_pediatric
            and protocol.pediatric_code
        ):
            return False
        return True

    def signature(self) -> str:
        return json.dumps(
            {
                "population": self.population.value if self.population else None,
                "categories": list(self.categories),
                "exclude_codes": list(self.exclude_codes),
            },
            sort_keys=True,
        )


@dataclass
class StoreHit:
    """A chunk returned by a store search with its mode-specific score."""

    chunk: ProtocolChunk
    score: float
    popularity: int = 0
    effective_date: Any = None


@dataclass
class StoreStats:
    protocols: int = 0
    current_protocols: int = 0
    chunks: int = 0
    embedded_chunks: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def embedding_coverage(self) -> float:
        if self.chunks == 0:
            return 0.0
        return self.embedded_chunks / self.chunks

    def to_dict(self) -> Dict[str, Any]:
        return {
            "protocols": self.protocols,
            "current_protocols": self.current_protocols,
            "chunks": self.chunks,
            "embedded_chunks": self.embedded_chunks,
            "embedding_coverage": round(self.embedding_coverage, 4),
            **self.extra,
        }


def search_signature(kind: str, text: str, filters: Optional[SearchFilters], limit: int) -> str:
    """Cache key for a search request."""
    payload = f"{text}|{filters.signature() if filters else ''}|{limit}"
    return f"{kind}:{hashlib.sha1(payload.encode('utf-8')).hexdigest()}"


class ProtocolStore(ABC):
    """Uniform async read interface over a protocol backing store."""

    name: str = "store"
    supports_vectors: bool = False

    @abstractmethod
    async def get_by_code(self, code: str) -> Optional[Protocol]:
        """Current, non-deleted version of a protocol, or None."""
        ...

    @abstractmethod
    async def search(
        self,
        text: str,
        filters: Optional[SearchFilters] = None,
        limit: int = 20,
    ) -> List[StoreHit]:
        """Lexical search over current chunks; scores normalized to [0, 1]."""
        ...

    async def vector_search(
        self,
        embedding: Sequence[float],
        filters: Optional[SearchFilters] = None,
        limit: int = 20,
    ) -> List[StoreHit]:
        """Cosine-similarity search over chunks with valid embeddings."""
        return []

    @abstractmethod
    async def get_chunks_needing_embedding(self, limit: int = 100) -> List[ProtocolChunk]:
        """Current chunks whose embedding is missing or stale."""
        ...

    @abstractmethod
    async def upsert_embedding(
        self,
        chunk_id: str,
        vector: Sequence[float],
        content_hash: str,
    ) -> bool:
        """Store an embedding; returns False if the hash no longer matches the chunk."""
        ...

    @abstractmethod
    async def stats(self) -> StoreStats:
        ...

    async def ping(self) -> bool:
        await self.stats()
        return True

    async def known_codes(self) -> List[str]:
        return []
