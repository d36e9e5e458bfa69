"""
Protocol Retrieval Service

Entry points of the subsystem:

    retrieve(raw_query, patient_age)       normalize -> Stage 1 -> hybrid search
                                           -> protocol metadata -> Stage 2
    validate_context(context, response)    Stage 3
    validate_answer(answer, retrieved)     Stage 4 (hallucination gate)
    publish_protocol(protocol)             new version + cache invalidation
    retire_protocol(code)                  soft delete + cache invalidation

retrieve() never raises for infrastructure failures: when no tier can serve,
the response is marked degraded with a "contact base hospital" safety
message. Only contract violations (InvalidInputError) propagate.

Usage:
    service = build_service(AppConfig.from_env())
    response = await service.retrieve("28yo male crush injury", patient_age=28)
    context = service.build_context(response.chunks)
    stage3 = await service.validate_context(context, response)
    stage4 = await service.validate_answer(answer_text, response)
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Union

from ..core.circuit_breaker import CircuitBreakerRegistry
from ..core.config import AppConfig
from ..core.error_handling import InvalidInputError
from ..core.recovery import STRATEGY_PRIMARY, STRATEGY_SAFE_DEFAULT, RecoveryManager, RecoveryResult
from ..core.recovery_log import RecoveryLog
from ..core.telemetry import FanOutTelemetrySink, LoggingTelemetrySink, TelemetryRecorder, TelemetrySink
from .knowledge_base.corpus_loader import load_corpus
from .models import (
    SAFE_BLOCKED_MESSAGE,
    SAFE_DEGRADED_MESSAGE,
    NormalizedQuery,
    Protocol,
    ProtocolChunk,
    RankedChunk,
    RetrievalResponse,
    ValidationResult,
)
from .nlp.query_normalizer import QueryNormalizer
from .retrieval.embedder import Embedder, SentenceTransformerEmbedder
from .retrieval.hybrid_retriever import HybridRetriever
from .store.base import ProtocolStore
from .store.file_store import FileProtocolStore
from .store.memory_store import InMemoryProtocolStore
from .store.sql_store import SqlProtocolStore
from .trust.content_validator import ContentValidator
from .trust.validation_monitor import ValidationMonitor
from .trust.validation_pipeline import ReferenceData, ValidationPipeline

logger = logging.getLogger(__name__)

RetrievedSet = Union[RetrievalResponse, Sequence[Union[RankedChunk, ProtocolChunk, str]]]


class ProtocolRetrievalService:
    """
    Orchestrates normalization, retrieval and validation.

    Args:
        config: Application configuration
        normalizer: Query normalizer
        retriever: Hybrid retriever (reads through the recovery manager)
        recovery: Recovery manager for protocol metadata reads
        pipeline: Four-stage validation pipeline
        telemetry: Optional fire-and-forget recorder
        clock: Source of "now" for effective/expiration checks
        monitor: Optional validation monitor fed by the telemetry recorder
    """

    def __init__(
        self,
        config: AppConfig,
        normalizer: QueryNormalizer,
        retriever: HybridRetriever,
        recovery: RecoveryManager,
        pipeline: ValidationPipeline,
        telemetry: Optional[TelemetryRecorder] = None,
        clock: Callable[[], datetime] = datetime.now,
        monitor: Optional[ValidationMonitor] = None,
    ):
        self.config = config
        self.normalizer = normalizer
        self.retriever = retriever
        self.recovery = recovery
        self.pipeline = pipeline
        self.telemetry = telemetry
        self.monitor = monitor
        self._clock = clock
        self._reference_loaded = False
        self._reference_lock = asyncio.Lock()

    # ========================================================================
    # REFERENCE DATA
    # ========================================================================

    async def refresh_reference(self) -> bool:
        """Add every active protocol code in the stores to the known-code set."""
        result = await self.recovery.known_codes()
        if not result.success:
            logger.warning(f"Known protocol codes unavailable: {result.error}")
            return False
        self.pipeline.reference.add_codes(result.data or [])
        logger.info(f"Known protocol codes loaded via {result.strategy_used}: {len(self.pipeline.reference.known_codes)}")
        return True

    async def _ensure_reference(self) -> None:
        if self._reference_loaded:
            return
        async with self._reference_lock:
            if not self._reference_loaded:
                self._reference_loaded = await self.refresh_reference()

    # ========================================================================
    # PROTOCOL UPDATES
    # ========================================================================

    def _writer(self, method: str) -> Callable:
        writer = getattr(self.recovery.primary, method, None)
        if writer is None:
            raise InvalidInputError(
                f"protocol store {getattr(self.recovery.primary, 'name', 'store')} is read-only",
                {"operation": method},
            )
        return writer

    async def publish_protocol(self, protocol: Protocol) -> Protocol:
        """
        Store a new version of a protocol and drop cached reads that could
        still serve the previous one.

        Raises:
            InvalidInputError: If the primary store is read-only or the
                protocol has a critical content finding
        """
        if not isinstance(protocol, Protocol):
            raise InvalidInputError("publish_protocol expects a Protocol", {"type": type(protocol).__name__})
        writer = self._writer("add_protocol")
        report = ContentValidator(self.config.validation.min_chunk_length).validate([protocol])
        if not report.valid:
            raise InvalidInputError(
                f"protocol {protocol.code or '?'} failed content validation",
                {"findings": [f.to_dict() for f in report.critical]},
            )

        await asyncio.to_thread(writer, protocol)
        await self.recovery.invalidate_protocol(protocol.code)
        self.pipeline.reference.add_codes([protocol.code])
        logger.info(
            f"Protocol {protocol.code} published",
            extra={"protocol_code": protocol.code, "findings": len(report.findings)},
        )
        return protocol

    async def retire_protocol(self, code: str) -> bool:
        """Soft-delete the current version of a protocol; False if none was current."""
        if not isinstance(code, str) or not code.strip():
            raise InvalidInputError("protocol code must be a non-empty string", {"code": code})
        code = code.strip().upper()
        removed = await asyncio.to_thread(self._writer("soft_delete"), code)
        if removed:
            await self.recovery.invalidate_protocol(code)
            logger.info(f"Protocol {code} retired", extra={"protocol_code": code})
        return bool(removed)

    # ========================================================================
    # RETRIEVAL
    # ========================================================================

    async def _fetch_protocols(self, codes: List[str]) -> Dict[str, RecoveryResult]:
        results = await asyncio.gather(*(self.recovery.get_by_code(c) for c in codes))
        return dict(zip(codes, results))

    async def retrieve(
        self,
        raw_query: str,
        patient_age: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> RetrievalResponse:
        """
        Retrieve validated protocol chunks for a free-text query.

        Returns:
            RetrievalResponse. blocked=True when a critical finding stops
            delivery; degraded=True when a fallback tier served or nothing
            could.
        """
        query = self.normalizer.normalize(raw_query, patient_age)
        await self._ensure_reference()

        stage1 = self.pipeline.validate_query(query)
        if stage1.has_blocking:
            logger.warning(f"Query blocked before retrieval: {[f.code for f in stage1.critical]}")
            return RetrievalResponse(
                query=query,
                validation=[stage1],
                blocked=True,
                safety_message=SAFE_BLOCKED_MESSAGE,
            )

        outcome = await self.retriever.search(query, limit)

        codes = []
        for ranked in outcome.chunks:
            if ranked.protocol_code not in codes:
                codes.append(ranked.protocol_code)
        fetched = await self._fetch_protocols(codes) if codes else {}
        protocols = [r.data for r in fetched.values() if r.success and r.data is not None]
        unavailable = [code for code, r in fetched.items() if not r.success]

        stage2 = self.pipeline.validate_retrieved(
            protocols, outcome.chunks, now=self._clock(), query=query, unavailable=unavailable,
        )
        chunks: List[RankedChunk] = stage2.metadata.get("chunks", [])
        kept_codes = {r.protocol_code for r in chunks}
        protocols = [p for p in protocols if p.code in kept_codes]

        strategy_used = STRATEGY_SAFE_DEFAULT if outcome.failed else outcome.strategy_used
        fallbacks = list(outcome.fallbacks_used)
        for r in fetched.values():
            for f in r.fallbacks_used:
                if f not in fallbacks:
                    fallbacks.append(f)

        # an outage that withholds everything is degraded, not blocked
        starved = bool(outcome.chunks) and not chunks and bool(unavailable)
        if starved:
            strategy_used = STRATEGY_SAFE_DEFAULT
        blocked = bool(outcome.chunks) and not chunks and not starved
        degraded = (
            outcome.failed
            or strategy_used != STRATEGY_PRIMARY
            or any(r.degraded for r in fetched.values())
        )
        if outcome.failed or starved:
            safety_message = SAFE_DEGRADED_MESSAGE
        elif blocked:
            safety_message = SAFE_BLOCKED_MESSAGE
        else:
            safety_message = None

        response = RetrievalResponse(
            query=query,
            chunks=chunks,
            protocols=protocols,
            validation=[stage1, stage2],
            strategy_used=strategy_used,
            fallbacks_used=fallbacks,
            degraded=degraded,
            blocked=blocked,
            safety_message=safety_message,
            recovery_time_ms=outcome.recovery_time_ms,
        )

        if degraded:
            logger.warning(
                f"Retrieval degraded: strategy={response.strategy_used} fallbacks={response.fallbacks_used}",
                extra={"strategy_used": response.strategy_used},
            )
        return response

    # ========================================================================
    # CONTEXT / ANSWER VALIDATION
    # ========================================================================

    @staticmethod
    def build_context(chunks: Sequence[Union[RankedChunk, ProtocolChunk]]) -> str:
        """Context block handed to the answer generator."""
        parts = []
        for item in chunks:
            chunk = item.chunk if isinstance(item, RankedChunk) else item
            heading = f"TP {chunk.protocol_code}" + (f" - {chunk.title}" if chunk.title else "")
            parts.append(f"{heading}\n{chunk.text}")
        return "\n\n".join(parts)

    async def validate_context(self, context_text: str, response: RetrievalResponse) -> ValidationResult:
        return self.pipeline.validate_context(context_text, response.protocols, response.query)

    async def protocols_for(self, retrieved: RetrievedSet) -> List[Protocol]:
        """Protocol metadata for a retrieved set (response, chunks or codes)."""
        if isinstance(retrieved, RetrievalResponse):
            return list(retrieved.protocols)
        if isinstance(retrieved, (str, bytes)) or not isinstance(retrieved, Sequence):
            raise InvalidInputError("retrieved chunks must be a sequence of chunks or protocol codes")

        titles: Dict[str, str] = {}
        for item in retrieved:
            if isinstance(item, str):
                titles.setdefault(item.strip().upper(), "")
                continue
            if not isinstance(item, (RankedChunk, ProtocolChunk)):
                raise InvalidInputError("retrieved chunks must be a sequence of chunks or protocol codes",
                                        {"type": type(item).__name__})
            chunk = item.chunk if isinstance(item, RankedChunk) else item
            titles.setdefault(chunk.protocol_code, chunk.title)

        fetched = await self._fetch_protocols(list(titles)) if titles else {}
        protocols = []
        for code, title in titles.items():
            result = fetched.get(code)
            protocol = result.data if result is not None and result.success else None
            if protocol is None:
                # metadata unreachable; keep the code so citations still resolve
                logger.warning(f"Metadata for retrieved protocol {code} unavailable; validating with code only")
                protocol = Protocol(code=code, name=title)
            protocols.append(protocol)
        return protocols

    async def validate_answer(
        self,
        answer_text: str,
        retrieved_chunks: RetrievedSet,
        query: Optional[NormalizedQuery] = None,
    ) -> ValidationResult:
        """Stage 4 against the same retrieved set that Stages 2 and 3 saw."""
        if query is None and isinstance(retrieved_chunks, RetrievalResponse):
            query = retrieved_chunks.query
        protocols = await self.protocols_for(retrieved_chunks)
        return self.pipeline.validate_answer(answer_text, protocols, query)


# ============================================================================
# FACTORY
# ============================================================================


def build_service(
    config: Optional[AppConfig] = None,
    store: Optional[ProtocolStore] = None,
    embedder: Optional[Embedder] = None,
    telemetry_sink: Optional[TelemetrySink] = None,
    file_store: Optional[ProtocolStore] = None,
) -> ProtocolRetrievalService:
    """
    Wire a service from configuration.

    Without an explicit store, PG_DATABASE_URL selects a SQL store (seeded
    from the corpus when empty); otherwise the corpus is loaded into an
    in-memory store. The flat-file corpus is always the file fallback.
    Without an explicit embedder, retrieval.embedding_model selects a
    SentenceTransformer model; with neither, retrieval is lexical only.
    """
    config = config or AppConfig()
    k1, b = config.retrieval.bm25_k1, config.retrieval.bm25_b

    if file_store is None:
        file_store = FileProtocolStore(config.paths.corpus_path, k1=k1, b=b)

    if store is None:
        corpus = load_corpus(config.paths.corpus_path)
        if config.paths.database_url:
            sql_store = SqlProtocolStore(config.paths.database_url, k1=k1, b=b)
            sql_store.create_schema()
            sql_store.seed(corpus)
            store = sql_store
        else:
            store = InMemoryProtocolStore(corpus, k1=k1, b=b)

    if embedder is None and config.retrieval.embedding_model:
        embedder = SentenceTransformerEmbedder(
            model_name=config.retrieval.embedding_model,
            device=config.retrieval.embedding_device,
        )

    monitor = ValidationMonitor()
    telemetry = TelemetryRecorder(FanOutTelemetrySink([telemetry_sink or LoggingTelemetrySink(), monitor]))
    recovery = RecoveryManager(
        primary=store,
        file_store=file_store,
        config=config.recovery,
        breakers=CircuitBreakerRegistry(config.breaker),
        recovery_log=RecoveryLog(),
        telemetry=telemetry,
    )
    reference = ReferenceData.default()
    normalizer = QueryNormalizer(reference.impressions, reference.formulary, config.validation)
    retriever = HybridRetriever(recovery, config.retrieval, embedder, telemetry)
    pipeline = ValidationPipeline(reference, config.validation, telemetry)

    logger.info(f"✅ Protocol retrieval service ready (store={getattr(store, 'name', type(store).__name__)})")
    return ProtocolRetrievalService(config, normalizer, retriever, recovery, pipeline, telemetry, monitor=monitor)
