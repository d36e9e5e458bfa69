"""
Protocol Guard Configuration

Pydantic-based configuration for the retrieval subsystem:
- Circuit breaker thresholds and reset timeouts
- Recovery (retry/backoff, per-call timeout, TTL cache)
- Hybrid retrieval weights and BM25 parameters
- Validation thresholds
- Corpus / database locations

Environment Variables (override defaults):
    PG_BREAKER_THRESHOLD: '3'
    PG_BREAKER_RESET_SECONDS: '30'
    PG_RETRY_ATTEMPTS: '3'
    PG_RETRY_BASE_DELAY: '0.5'
    PG_CALL_TIMEOUT: '2.0'
    PG_CACHE_TTL: '3600'
    PG_LEXICAL_WEIGHT: '0.4'
    PG_VECTOR_WEIGHT: '0.6'
    PG_EMBEDDING_MODEL: 'all-MiniLM-L6-v2' (unset: lexical-only retrieval)
    PG_DOSE_TOLERANCE: '0'
    PG_CORPUS_PATH: path to the flat-file JSON corpus
    PG_DATABASE_URL: 'sqlite:///protocols.db'

Usage:
    from protocol_guard.core.config import AppConfig

    config = AppConfig.from_env()
    service = build_service(config)

The config object is constructed once at startup and passed by reference;
there is no module-level instance.
"""

import os
import logging
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, model_validator

logger = logging.getLogger(__name__)


class CircuitBreakerConfig(BaseModel):
    """Per-dependency circuit breaker settings."""

    model_config = ConfigDict(extra="forbid")

    failure_threshold: int = Field(
        default=3,
        ge=1,
        le=100,
        description="Consecutive failures before the breaker opens"
    )
    reset_timeout_seconds: float = Field(
        default=30.0,
        ge=0.0,
        le=3600.0,
        description="Time spent OPEN before trial calls are allowed"
    )
    half_open_max_calls: int = Field(
        default=3,
        ge=1,
        le=100,
        description="Trial calls allowed while HALF_OPEN"
    )


class RecoveryConfig(BaseModel):
    """Retry, timeout and cache settings for the recovery manager."""

    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per store call, including the first"
    )
    base_delay_seconds: float = Field(
        default=0.5,
        ge=0.0,
        le=10.0,
        description="First backoff delay; doubles on each retry"
    )
    max_delay_seconds: float = Field(
        default=8.0,
        ge=0.0,
        le=60.0,
        description="Upper bound for a single backoff delay"
    )
    call_timeout_seconds: float = Field(
        default=2.0,
        ge=0.01,
        le=30.0,
        description="Timeout for a single dependency call"
    )
    cache_ttl_seconds: float = Field(
        default=3600.0,
        ge=1.0,
        le=86400.0,
        description="TTL for cached store responses"
    )
    cache_max_entries: int = Field(
        default=1000,
        ge=1,
        le=1_000_000,
        description="Entries kept before LRU eviction"
    )


class RetrievalConfig(BaseModel):
    """Hybrid retrieval scoring settings."""

    model_config = ConfigDict(extra="forbid")

    lexical_weight: float = Field(
        default=0.4,
        ge=0.0,
        le=1.0,
        description="Weight of the normalized lexical rank"
    )
    vector_weight: float = Field(
        default=0.6,
        ge=0.0,
        le=1.0,
        description="Weight of (1 - cosine distance)"
    )
    default_limit: int = Field(default=6, ge=1, le=100)
    candidate_multiplier: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Candidates fetched per mode = limit * multiplier"
    )
    min_vector_similarity: float = Field(
        default=0.25,
        ge=0.0,
        le=1.0,
        description="Vector-only candidates below this similarity are dropped"
    )
    bm25_k1: float = Field(default=1.5, ge=0.0, le=5.0)
    bm25_b: float = Field(default=0.75, ge=0.0, le=1.0)
    embedding_model: Optional[str] = Field(
        default=None,
        description="SentenceTransformer model for query embeddings; lexical-only when unset"
    )
    embedding_device: Optional[str] = Field(default=None, description="'cpu', 'cuda' or None for auto")

    @model_validator(mode="after")
    def check_weights(self):
        if self.lexical_weight + self.vector_weight <= 0:
            raise ValueError("lexical_weight + vector_weight must be positive")
        return self


class ValidationConfig(BaseModel):
    """Validation pipeline thresholds."""

    model_config = ConfigDict(extra="forbid")

    min_chunk_length: int = Field(
        default=50,
        ge=0,
        le=10_000,
        description="Chunks shorter than this are flagged incomplete"
    )
    vague_max_tokens: int = Field(
        default=3,
        ge=0,
        le=20,
        description="Queries with no clinical signal and at most this many words are vague"
    )
    pediatric_age_cutoff: int = Field(default=18, ge=1, le=25)
    dose_tolerance: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description="Fraction a dose may fall outside its reference range before it is flagged"
    )


class PathsConfig(BaseModel):
    """Storage locations."""

    model_config = ConfigDict(extra="forbid")

    corpus_path: Optional[str] = Field(
        default=None,
        description="Flat-file JSON corpus; bundled sample corpus when unset"
    )
    database_url: Optional[str] = Field(
        default=None,
        description="SQLAlchemy URL of the structured store"
    )


class AppConfig(BaseModel):
    """Complete configuration for the protocol retrieval subsystem."""

    model_config = ConfigDict(extra="forbid")

    breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "AppConfig":
        """
        Build a config from environment variables (and a .env file if present).

        Returns:
            AppConfig with environment overrides applied
        """
        load_dotenv(dotenv_path)

        env_dict = {
            "breaker": {
                "failure_threshold": int(os.environ.get("PG_BREAKER_THRESHOLD", "3")),
                "reset_timeout_seconds": float(os.environ.get("PG_BREAKER_RESET_SECONDS", "30")),
                "half_open_max_calls": int(os.environ.get("PG_BREAKER_HALF_OPEN_CALLS", "3")),
            },
            "recovery": {
                "max_attempts": int(os.environ.get("PG_RETRY_ATTEMPTS", "3")),
                "base_delay_seconds": float(os.environ.get("PG_RETRY_BASE_DELAY", "0.5")),
                "max_delay_seconds": float(os.environ.get("PG_RETRY_MAX_DELAY", "8")),
                "call_timeout_seconds": float(os.environ.get("PG_CALL_TIMEOUT", "2.0")),
                "cache_ttl_seconds": float(os.environ.get("PG_CACHE_TTL", "3600")),
                "cache_max_entries": int(os.environ.get("PG_CACHE_MAX_ENTRIES", "1000")),
            },
            "retrieval": {
                "lexical_weight": float(os.environ.get("PG_LEXICAL_WEIGHT", "0.4")),
                "vector_weight": float(os.environ.get("PG_VECTOR_WEIGHT", "0.6")),
                "default_limit": int(os.environ.get("PG_DEFAULT_LIMIT", "6")),
                "embedding_model": os.environ.get("PG_EMBEDDING_MODEL") or None,
                "embedding_device": os.environ.get("PG_EMBEDDING_DEVICE") or None,
            },
            "validation": {
                "min_chunk_length": int(os.environ.get("PG_MIN_CHUNK_LENGTH", "50")),
                "dose_tolerance": float(os.environ.get("PG_DOSE_TOLERANCE", "0")),
            },
            "paths": {
                "corpus_path": os.environ.get("PG_CORPUS_PATH"),
                "database_url": os.environ.get("PG_DATABASE_URL"),
            },
        }

        try:
            config = cls(**env_dict)
        except Exception as e:
            logger.error(f"❌ Failed to load AppConfig: {e}")
            raise

        logger.info(
            f"✅ AppConfig loaded: breaker={config.breaker.failure_threshold}/"
            f"{config.breaker.reset_timeout_seconds:.0f}s, "
            f"retries={config.recovery.max_attempts}, "
            f"weights=(lex:{config.retrieval.lexical_weight:.2f}, "
            f"vec:{config.retrieval.vector_weight:.2f})"
        )
        return config
