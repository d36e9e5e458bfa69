"""
Hybrid Retriever - weighted lexical + vector ranking

Combines:
1. Lexical rank (BM25, normalized to [0, 1]) - drug names, codes, acronyms
2. Vector similarity (1 - cosine distance) - colloquial phrasing

    score = w_lex * lexical + w_vec * (1 - cosine_distance)

Chunks without a valid embedding (or any chunk when no query embedding is
available) are scored lexical-only: score = lexical. They are never
excluded.

Ordering is total and deterministic:
    score desc, protocol popularity desc, effective date desc,
    protocol code asc, chunk sequence asc

All store access goes through the RecoveryManager.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional

import numpy as np

from ...core.config import RetrievalConfig
from ...core.error_handling import InvalidInputError
from ...core.recovery import STRATEGY_PRIMARY, STRATEGY_SAFE_DEFAULT, RecoveryManager
from ...core.telemetry import TelemetryRecorder
from ..models import NormalizedQuery, Population, RankedChunk
from ..store.base import SearchFilters, StoreHit
from .embedder import Embedder

logger = logging.getLogger(__name__)


@dataclass
class RetrievalOutcome:
    """Ranked chunks plus provenance; failed=True means no tier could serve."""

    chunks: List[RankedChunk] = field(default_factory=list)
    strategy_used: str = STRATEGY_PRIMARY
    fallbacks_used: List[str] = field(default_factory=list)
    failed: bool = False
    recovery_time_ms: float = 0.0

    @property
    def is_empty(self) -> bool:
        return not self.chunks


@dataclass
class _Candidate:
    hit: StoreHit
    lexical: float = 0.0
    vector: Optional[float] = None


def _cosine(a: np.ndarray, b: List[float]) -> float:
    v = np.asarray(b, dtype=np.float32)
    denom = float(np.linalg.norm(a) * np.linalg.norm(v))
    if denom == 0.0:
        return 0.0
    return float(np.dot(a, v) / denom)


class HybridRetriever:
    """
    Weighted hybrid search over protocol chunks.

    Args:
        recovery: Resilient access to the protocol stores
        config: Weights and candidate sizing
        embedder: Optional query embedder; lexical-only when None
        telemetry: Optional fire-and-forget recorder
    """

    def __init__(
        self,
        recovery: RecoveryManager,
        config: Optional[RetrievalConfig] = None,
        embedder: Optional[Embedder] = None,
        telemetry: Optional[TelemetryRecorder] = None,
    ):
        self.recovery = recovery
        self.config = config or RetrievalConfig()
        self.embedder = embedder
        self.telemetry = telemetry

    @staticmethod
    def filters_for(query: NormalizedQuery) -> SearchFilters:
        population = Population.PEDIATRIC if query.is_pediatric else Population.ADULT
        return SearchFilters(population=population)

    async def _query_embedding(self, text: str) -> Optional[np.ndarray]:
        if self.embedder is None or self.config.vector_weight == 0:
            return None
        try:
            return np.asarray(await self.embedder.embed(text), dtype=np.float32)
        except Exception as e:
            logger.warning(f"Query embedding failed, using lexical-only scoring: {e}")
            return None

    def _score(self, candidate: _Candidate) -> float:
        if candidate.vector is None:
            return candidate.lexical
        similarity = max(0.0, min(1.0, candidate.vector))
        return (
            self.config.lexical_weight * candidate.lexical
            + self.config.vector_weight * similarity
        )

    @staticmethod
    def _sort_key(ranked: RankedChunk):
        recency = ranked.effective_date.toordinal() if isinstance(ranked.effective_date, date) else 0
        return (
            -round(ranked.score, 9),
            -ranked.popularity,
            -recency,
            ranked.chunk.protocol_code,
            ranked.chunk.sequence,
        )

    async def search(self, query: NormalizedQuery, limit: Optional[int] = None) -> RetrievalOutcome:
        """
        Rank chunks for a normalized query.

        Returns:
            RetrievalOutcome with at most `limit` chunks. An empty list with
            failed=False is a valid "nothing matched"; failed=True means
            every tier was unavailable (strategy_used="safe-default").
        """
        limit = self.config.default_limit if limit is None else limit
        if not isinstance(limit, int) or isinstance(limit, bool) or limit <= 0:
            raise InvalidInputError("limit must be a positive integer", {"limit": limit})

        start = time.perf_counter()
        text = query.search_text
        if not text:
            return RetrievalOutcome()

        filters = self.filters_for(query)
        candidate_limit = limit * self.config.candidate_multiplier

        lexical = await self.recovery.search(text, filters, candidate_limit)
        fallbacks = list(lexical.fallbacks_used)

        candidates: Dict[str, _Candidate] = {}
        for hit in lexical.data or []:
            candidates[hit.chunk.chunk_id] = _Candidate(hit=hit, lexical=hit.score)

        query_vector = await self._query_embedding(text)
        vector_ok = False
        vector_strategy = STRATEGY_SAFE_DEFAULT
        if query_vector is not None:
            vector = await self.recovery.vector_search(query_vector.tolist(), filters, candidate_limit)
            vector_ok = vector.success
            vector_strategy = vector.strategy_used
            for f in vector.fallbacks_used:
                if f not in fallbacks:
                    fallbacks.append(f)
            for hit in vector.data or []:
                if hit.chunk.chunk_id in candidates:
                    continue
                if hit.score < self.config.min_vector_similarity:
                    continue
                candidates[hit.chunk.chunk_id] = _Candidate(hit=hit, lexical=0.0)

        for candidate in candidates.values():
            chunk = candidate.hit.chunk
            if query_vector is not None and chunk.has_valid_embedding:
                candidate.vector = _cosine(query_vector, chunk.embedding)

        ranked = [
            RankedChunk(
                chunk=c.hit.chunk,
                score=self._score(c),
                lexical_score=c.lexical,
                vector_score=c.vector,
                popularity=c.hit.popularity,
                effective_date=c.hit.effective_date,
            )
            for c in candidates.values()
        ]
        ranked.sort(key=self._sort_key)
        ranked = ranked[:limit]

        failed = not lexical.success and not vector_ok
        if failed:
            strategy = STRATEGY_SAFE_DEFAULT
        elif lexical.success:
            strategy = lexical.strategy_used
        else:
            strategy = vector_strategy
        outcome = RetrievalOutcome(
            chunks=ranked,
            strategy_used=strategy,
            fallbacks_used=fallbacks,
            failed=failed,
            recovery_time_ms=(time.perf_counter() - start) * 1000,
        )

        if self.telemetry is not None:
            self.telemetry.record(
                "search.completed",
                query=query.text,
                pediatric=query.is_pediatric,
                results=len(ranked),
                top_codes=[r.protocol_code for r in ranked[:3]],
                strategy_used=outcome.strategy_used,
                failed=failed,
                latency_ms=round(outcome.recovery_time_ms, 2),
            )

        logger.debug(
            f"Hybrid search '{text[:60]}' -> {len(ranked)} chunks via {outcome.strategy_used}"
        )
        return outcome
