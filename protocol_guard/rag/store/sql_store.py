"""
Structured Protocol Store (SQLAlchemy).

Primary tier of the fallback chain. Protocol versions, chunks and chunk
embeddings live in three tables:

    protocols            one row per protocol version (is_current, deleted_at)
    protocol_chunks      chunks owned by a protocol version
    protocol_embeddings  one vector per chunk id, tagged with the content hash

The ORM is synchronous; every call runs in a worker thread via
asyncio.to_thread so the event loop never blocks on the database.
SQLAlchemy errors are surfaced as StoreUnavailableError (transient) for the
recovery manager to retry.

Usage:
    store = SqlProtocolStore("sqlite:///protocols.db")
    store.create_schema()
    store.add_protocol(protocol)
    protocol = await store.get_by_code("1210")
"""

import asyncio
import logging
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Generator, List, Optional, Sequence

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    func,
    select,
    text,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from ...core.error_handling import InvalidInputError, StoreUnavailableError
from ..models import Protocol, ProtocolChunk
from ..trust.content_validator import ContentValidator
from .base import ProtocolStore, SearchFilters, StoreHit, StoreStats
from .memory_store import InMemoryProtocolStore

logger = logging.getLogger(__name__)

Base = declarative_base()


class ProtocolRow(Base):
    __tablename__ = "protocols"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(16), nullable=False, index=True)
    name = Column(String(255), nullable=False, default="")
    category = Column(String(100), default="")
    pediatric_code = Column(String(16), nullable=True)
    keywords = Column(JSON, default=list)
    version = Column(Integer, nullable=False, default=1)
    effective_date = Column(Date, nullable=True)
    expiration_date = Column(Date, nullable=True)
    is_current = Column(Boolean, nullable=False, default=True, index=True)
    deleted_at = Column(DateTime, nullable=True)
    base_contact_required = Column(Boolean, default=False)
    base_contact_criteria = Column(Text, nullable=True)
    warnings = Column(JSON, default=list)
    contraindications = Column(JSON, default=list)
    popularity = Column(Integer, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)

    chunks = relationship(
        "ProtocolChunkRow",
        back_populates="protocol",
        order_by="ProtocolChunkRow.sequence",
    )


class ProtocolChunkRow(Base):
    __tablename__ = "protocol_chunks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    protocol_id = Column(Integer, ForeignKey("protocols.id"), nullable=False, index=True)
    protocol_code = Column(String(16), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    title = Column(String(255), default="")
    category = Column(String(100), default="")
    text = Column(Text, nullable=False)
    content_hash = Column(String(64), nullable=False)
    keywords = Column(JSON, default=list)

    protocol = relationship("ProtocolRow", back_populates="chunks")

    @property
    def chunk_id(self) -> str:
        return f"{self.protocol_code}:{self.sequence}"


class ProtocolEmbeddingRow(Base):
    __tablename__ = "protocol_embeddings"

    chunk_id = Column(String(32), primary_key=True)
    protocol_code = Column(String(16), nullable=False, index=True)
    embedding = Column(JSON, nullable=False)
    content_hash = Column(String(64), nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class SqlProtocolStore(ProtocolStore):
    """Protocol store backed by a relational database."""

    name = "structured-store"
    supports_vectors = True

    def __init__(
        self,
        database_url: str = "sqlite://",
        index_refresh_seconds: float = 60.0,
        k1: float = 1.5,
        b: float = 0.75,
    ):
        engine_kwargs: Dict[str, Any] = {"future": True}
        if database_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                engine_kwargs["poolclass"] = StaticPool
        else:
            engine_kwargs["pool_pre_ping"] = True

        self.engine = create_engine(database_url, **engine_kwargs)
        self.SessionFactory = sessionmaker(bind=self.engine, expire_on_commit=False)
        self.index_refresh_seconds = index_refresh_seconds
        self._k1 = k1
        self._b = b
        self._generation = 0
        self._snapshot: Optional[InMemoryProtocolStore] = None
        self._snapshot_generation = -1
        self._snapshot_loaded_at = 0.0
        self._snapshot_lock = asyncio.Lock()

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Commit on success, roll back on error, always close."""
        session = self.SessionFactory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Protocol store transaction failed: {e}")
            raise
        finally:
            session.close()

    async def _run(self, func: Callable, *args) -> Any:
        try:
            return await asyncio.to_thread(func, *args)
        except SQLAlchemyError as e:
            raise StoreUnavailableError(
                f"Protocol store query failed: {e}",
                details={"store": self.name, "operation": getattr(func, "__name__", "query")},
            ) from e

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _to_protocol(row: ProtocolRow, embeddings: Dict[str, ProtocolEmbeddingRow]) -> Protocol:
        chunks = []
        for chunk_row in row.chunks:
            emb = embeddings.get(chunk_row.chunk_id)
            chunks.append(
                ProtocolChunk(
                    protocol_code=chunk_row.protocol_code,
                    sequence=chunk_row.sequence,
                    text=chunk_row.text,
                    title=chunk_row.title or "",
                    category=chunk_row.category or "",
                    keywords=list(chunk_row.keywords or []),
                    embedding=list(emb.embedding) if emb is not None else None,
                    embedding_hash=emb.content_hash if emb is not None else None,
                )
            )
        return Protocol(
            code=row.code,
            name=row.name,
            category=row.category or "",
            pediatric_code=row.pediatric_code,
            chunks=chunks,
            keywords=list(row.keywords or []),
            version=row.version,
            effective_date=row.effective_date,
            expiration_date=row.expiration_date,
            is_current=row.is_current,
            deleted_at=row.deleted_at,
            base_contact_required=bool(row.base_contact_required),
            base_contact_criteria=row.base_contact_criteria,
            warnings=list(row.warnings or []),
            contraindications=list(row.contraindications or []),
            popularity=row.popularity or 0,
        )

    def _embeddings_for(self, session: Session, codes: List[str]) -> Dict[str, ProtocolEmbeddingRow]:
        if not codes:
            return {}
        rows = session.scalars(
            select(ProtocolEmbeddingRow).where(ProtocolEmbeddingRow.protocol_code.in_(codes))
        ).all()
        return {r.chunk_id: r for r in rows}

    # ------------------------------------------------------------------
    # Writes (ingestion side)
    # ------------------------------------------------------------------

    def add_protocol(self, protocol: Protocol) -> int:
        """
        Insert a new protocol version. The previous current version is
        marked superseded and kept along with its chunks.

        Returns:
            The new version number
        """
        with self.session_scope() as session:
            previous = session.scalars(
                select(ProtocolRow).where(
                    ProtocolRow.code == protocol.code, ProtocolRow.is_current.is_(True)
                )
            ).all()
            version = protocol.version
            for row in previous:
                row.is_current = False
                version = max(version, row.version + 1)

            row = ProtocolRow(
                code=protocol.code,
                name=protocol.name,
                category=protocol.category,
                pediatric_code=protocol.pediatric_code,
                keywords=list(protocol.keywords),
                version=version,
                effective_date=protocol.effective_date,
                expiration_date=protocol.expiration_date,
                is_current=protocol.is_current,
                deleted_at=protocol.deleted_at,
                base_contact_required=protocol.base_contact_required,
                base_contact_criteria=protocol.base_contact_criteria,
                warnings=list(protocol.warnings),
                contraindications=list(protocol.contraindications),
                popularity=protocol.popularity,
            )
            for chunk in protocol.chunks:
                row.chunks.append(
                    ProtocolChunkRow(
                        protocol_code=protocol.code,
                        sequence=chunk.sequence,
                        title=chunk.title,
                        category=chunk.category,
                        text=chunk.text,
                        content_hash=chunk.content_hash,
                        keywords=list(chunk.keywords),
                    )
                )
            session.add(row)

        self._generation += 1
        logger.info(f"Protocol {protocol.code} stored as version {version}")
        return version

    def soft_delete(self, code: str) -> bool:
        with self.session_scope() as session:
            row = session.scalars(
                select(ProtocolRow).where(
                    ProtocolRow.code == code.upper(), ProtocolRow.is_current.is_(True)
                )
            ).first()
            if row is None:
                return False
            row.deleted_at = datetime.utcnow()
        self._generation += 1
        return True

    def seed(self, protocols: Sequence[Protocol]) -> int:
        """
        Load protocols into an empty store; a populated store is left alone.

        Raises:
            InvalidInputError: If the protocols fail content validation
        """
        report = ContentValidator().validate(protocols)
        if not report.valid:
            raise InvalidInputError(
                "protocols failed content validation",
                {"findings": [f.to_dict() for f in report.critical]},
            )
        with self.session_scope() as session:
            existing = session.scalar(select(func.count(ProtocolRow.id)))
        if existing:
            logger.info(f"Protocol store already holds {existing} rows; seed skipped")
            return 0
        for protocol in protocols:
            self.add_protocol(protocol)
        return len(protocols)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _get_by_code_sync(self, code: str) -> Optional[Protocol]:
        with self.session_scope() as session:
            row = session.scalars(
                select(ProtocolRow).where(
                    ProtocolRow.code == code,
                    ProtocolRow.is_current.is_(True),
                    ProtocolRow.deleted_at.is_(None),
                )
            ).first()
            if row is None:
                return None
            return self._to_protocol(row, self._embeddings_for(session, [row.code]))

    async def get_by_code(self, code: str) -> Optional[Protocol]:
        if not isinstance(code, str) or not code.strip():
            raise InvalidInputError("protocol code must be a non-empty string", {"code": code})
        return await self._run(self._get_by_code_sync, code.strip().upper())

    def _load_current_sync(self) -> List[Protocol]:
        with self.session_scope() as session:
            rows = session.scalars(
                select(ProtocolRow)
                .where(ProtocolRow.is_current.is_(True), ProtocolRow.deleted_at.is_(None))
                .order_by(ProtocolRow.code)
            ).all()
            embeddings = self._embeddings_for(session, [r.code for r in rows])
            return [self._to_protocol(r, embeddings) for r in rows]

    async def _current_snapshot(self) -> InMemoryProtocolStore:
        """In-memory view of current protocols, rebuilt after writes or when stale."""
        async with self._snapshot_lock:
            stale = (
                self._snapshot is None
                or self._snapshot_generation != self._generation
                or time.monotonic() - self._snapshot_loaded_at > self.index_refresh_seconds
            )
            if stale:
                generation = self._generation
                protocols = await self._run(self._load_current_sync)
                self._snapshot = InMemoryProtocolStore(protocols, k1=self._k1, b=self._b)
                self._snapshot_generation = generation
                self._snapshot_loaded_at = time.monotonic()
            return self._snapshot

    async def search(
        self,
        text: str,
        filters: Optional[SearchFilters] = None,
        limit: int = 20,
    ) -> List[StoreHit]:
        snapshot = await self._current_snapshot()
        return await snapshot.search(text, filters, limit)

    async def vector_search(
        self,
        embedding: Sequence[float],
        filters: Optional[SearchFilters] = None,
        limit: int = 20,
    ) -> List[StoreHit]:
        snapshot = await self._current_snapshot()
        return await snapshot.vector_search(embedding, filters, limit)

    def _chunks_needing_embedding_sync(self, limit: int) -> List[ProtocolChunk]:
        with self.session_scope() as session:
            rows = session.scalars(
                select(ProtocolChunkRow)
                .join(ProtocolRow, ProtocolRow.id == ProtocolChunkRow.protocol_id)
                .where(ProtocolRow.is_current.is_(True), ProtocolRow.deleted_at.is_(None))
                .order_by(ProtocolChunkRow.protocol_code, ProtocolChunkRow.sequence)
            ).all()
            embeddings = self._embeddings_for(session, sorted({r.protocol_code for r in rows}))

            needing = []
            for chunk_row in rows:
                embedded = embeddings.get(chunk_row.chunk_id)
                if embedded is not None and embedded.content_hash == chunk_row.content_hash:
                    continue
                needing.append(
                    ProtocolChunk(
                        protocol_code=chunk_row.protocol_code,
                        sequence=chunk_row.sequence,
                        text=chunk_row.text,
                        title=chunk_row.title or "",
                        category=chunk_row.category or "",
                        keywords=list(chunk_row.keywords or []),
                    )
                )
                if len(needing) >= limit:
                    break
            return needing

    async def get_chunks_needing_embedding(self, limit: int = 100) -> List[ProtocolChunk]:
        return await self._run(self._chunks_needing_embedding_sync, limit)

    def _upsert_embedding_sync(self, chunk_id: str, vector: List[float], content_hash: str) -> bool:
        code, _, sequence = chunk_id.rpartition(":")
        with self.session_scope() as session:
            chunk_row = session.scalars(
                select(ProtocolChunkRow)
                .join(ProtocolRow, ProtocolRow.id == ProtocolChunkRow.protocol_id)
                .where(
                    ProtocolChunkRow.protocol_code == code,
                    ProtocolChunkRow.sequence == int(sequence),
                    ProtocolRow.is_current.is_(True),
                )
            ).first()
            if chunk_row is None or chunk_row.content_hash != content_hash:
                return False

            existing = session.get(ProtocolEmbeddingRow, chunk_id)
            if existing is None:
                session.add(
                    ProtocolEmbeddingRow(
                        chunk_id=chunk_id,
                        protocol_code=code,
                        embedding=vector,
                        content_hash=content_hash,
                    )
                )
            else:
                existing.embedding = vector
                existing.content_hash = content_hash
            return True

    async def upsert_embedding(self, chunk_id: str, vector: Sequence[float], content_hash: str) -> bool:
        if ":" not in chunk_id or not chunk_id.rpartition(":")[2].isdigit():
            raise InvalidInputError(f"malformed chunk id '{chunk_id}'", {"chunk_id": chunk_id})
        stored = await self._run(
            self._upsert_embedding_sync, chunk_id, [float(v) for v in vector], content_hash
        )
        if stored:
            self._generation += 1
        else:
            logger.warning(f"Embedding for {chunk_id} rejected: chunk missing or content changed")
        return stored

    def _stats_sync(self) -> StoreStats:
        with self.session_scope() as session:
            protocols = session.scalar(select(func.count(ProtocolRow.id)))
            current = session.scalar(
                select(func.count(ProtocolRow.id)).where(
                    ProtocolRow.is_current.is_(True), ProtocolRow.deleted_at.is_(None)
                )
            )
        return StoreStats(protocols=protocols or 0, current_protocols=current or 0)

    async def stats(self) -> StoreStats:
        stats = await self._run(self._stats_sync)
        snapshot = await self._current_snapshot()
        snap_stats = await snapshot.stats()
        stats.chunks = snap_stats.chunks
        stats.embedded_chunks = snap_stats.embedded_chunks
        return stats

    def _ping_sync(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    async def ping(self) -> bool:
        return await self._run(self._ping_sync)

    async def known_codes(self) -> List[str]:
        snapshot = await self._current_snapshot()
        return await snapshot.known_codes()
