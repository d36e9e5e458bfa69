"""
Query / chunk embedding.

The retriever depends only on the Embedder interface; the
SentenceTransformers implementation is optional (``pip install
protocol-guard[embeddings]``) and the model is loaded on first use.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class Embedder(ABC):
    """Turns text into a dense vector."""

    dimension: int = 0

    @abstractmethod
    async def embed(self, text: str) -> List[float]:
        ...

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        return [await self.embed(t) for t in texts]


class SentenceTransformerEmbedder(Embedder):
    """
    Embedding service using SentenceTransformers.

    Args:
        model_name: SentenceTransformer model name
        device: 'cpu', 'cuda' or None for auto
        cache_size: Query embeddings kept in memory
    """

    def __init__(
        self,
        model_name: str = "all-MiniLM-L6-v2",
        device: Optional[str] = None,
        cache_size: int = 512,
    ):
        self.model_name = model_name
        self.device = device
        self.cache_size = cache_size
        self._model = None
        self._cache: Dict[str, List[float]] = {}
        self._load_lock = asyncio.Lock()

    def _load_model(self):
        from sentence_transformers import SentenceTransformer

        logger.info(f"Loading embedding model {self.model_name}")
        model = SentenceTransformer(self.model_name, device=self.device)
        self.dimension = model.get_sentence_embedding_dimension()
        return model

    async def _ensure_model(self):
        if self._model is None:
            async with self._load_lock:
                if self._model is None:
                    self._model = await asyncio.to_thread(self._load_model)
        return self._model

    def _encode_sync(self, texts: List[str]) -> List[List[float]]:
        vectors = self._model.encode(texts, normalize_embeddings=True, show_progress_bar=False)
        return [v.tolist() for v in vectors]

    async def embed(self, text: str) -> List[float]:
        cached = self._cache.get(text)
        if cached is not None:
            return cached
        await self._ensure_model()
        vector = (await asyncio.to_thread(self._encode_sync, [text]))[0]
        if len(self._cache) >= self.cache_size:
            self._cache.pop(next(iter(self._cache)))
        self._cache[text] = vector
        return vector

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        await self._ensure_model()
        return await asyncio.to_thread(self._encode_sync, texts)
