"""
Flat-file Protocol Store.

Last data-bearing tier of the fallback chain: the JSON corpus is read
lazily into an in-memory lexical index. Lexical-only and read-only.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import List, Optional, Sequence, Union

from ..knowledge_base.corpus_loader import DEFAULT_CORPUS_PATH, load_corpus
from ..models import Protocol, ProtocolChunk
from .base import ProtocolStore, SearchFilters, StoreHit, StoreStats
from .memory_store import InMemoryProtocolStore

logger = logging.getLogger(__name__)


class FileProtocolStore(ProtocolStore):
    """Protocol store backed by the flat-file JSON corpus."""

    name = "file-corpus"
    supports_vectors = False

    def __init__(self, path: Optional[Union[str, Path]] = None, k1: float = 1.5, b: float = 0.75):
        self.path = Path(path) if path else DEFAULT_CORPUS_PATH
        self._k1 = k1
        self._b = b
        self._store: Optional[InMemoryProtocolStore] = None
        self._load_lock = asyncio.Lock()

    def is_accessible(self) -> bool:
        return self.path.is_file() and os.access(self.path, os.R_OK)

    async def _loaded(self) -> InMemoryProtocolStore:
        if self._store is None:
            async with self._load_lock:
                if self._store is None:
                    protocols = await asyncio.to_thread(load_corpus, self.path)
                    self._store = InMemoryProtocolStore(protocols, k1=self._k1, b=self._b)
        return self._store

    async def reload(self) -> None:
        async with self._load_lock:
            self._store = None
        await self._loaded()

    async def get_by_code(self, code: str) -> Optional[Protocol]:
        return await (await self._loaded()).get_by_code(code)

    async def search(
        self,
        text: str,
        filters: Optional[SearchFilters] = None,
        limit: int = 20,
    ) -> List[StoreHit]:
        return await (await self._loaded()).search(text, filters, limit)

    async def get_chunks_needing_embedding(self, limit: int = 100) -> List[ProtocolChunk]:
        return []

    async def upsert_embedding(self, chunk_id: str, vector: Sequence[float], content_hash: str) -> bool:
        return False

    async def stats(self) -> StoreStats:
        stats = await (await self._loaded()).stats()
        stats.extra["path"] = str(self.path)
        return stats

    async def ping(self) -> bool:
        if not self.is_accessible():
            return False
        await self._loaded()
        return True

    async def known_codes(self) -> List[str]:
        return await (await self._loaded()).known_codes()

