"""
Recovery Manager - Resilient access to protocol stores

Every read against a protocol store goes through a degrading chain:

    1. primary      structured store, retried with exponential backoff
                    (transient errors only), gated by a circuit breaker,
                    each call bounded by a timeout
    2. cache        TTL cache keyed by request signature
    3. file-fallback  flat-file corpus (lexical only)
    4. safe-default   conservative empty result, success=False

Read paths never raise; every call returns a RecoveryResult so callers can
tell "found nothing" (success=True, empty data) from "degraded" or
"failed". Contract errors (InvalidInputError) are the only exception.

Usage:
    manager = RecoveryManager(primary=sql_store, file_store=file_store, config=config.recovery)
    result = await manager.get_by_code("1210")
    if result.success and result.data:
        ...
"""

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    List,
    Optional,
    Sequence,
    Set,
    TypeVar,
)

import numpy as np
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from .cache import TTLCache
from .circuit_breaker import CircuitBreakerRegistry
from .config import CircuitBreakerConfig, RecoveryConfig
from .error_handling import (
    CircuitOpenError,
    DependencyTimeoutError,
    InvalidInputError,
    is_transient_error,
)
from .recovery_log import RecoveryLog
from .telemetry import TelemetryRecorder

if TYPE_CHECKING:
    from ..rag.models import Protocol
    from ..rag.store.base import ProtocolStore, SearchFilters, StoreHit

logger = logging.getLogger(__name__)

T = TypeVar("T")

STRATEGY_PRIMARY = "primary"
STRATEGY_CACHE = "cache"
STRATEGY_FILE = "file-fallback"
STRATEGY_SAFE_DEFAULT = "safe-default"

STRUCTURED_STORE = "structured-store"
VECTOR_INDEX = "vector-index"


@dataclass
class RecoveryResult(Generic[T]):
    """Outcome of a recovered store call."""

    success: bool
    data: Optional[T]
    strategy_used: str
    fallbacks_used: List[str] = field(default_factory=list)
    attempts: int = 0
    recovery_time_ms: float = 0.0
    error: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.strategy_used != STRATEGY_PRIMARY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "strategy_used": self.strategy_used,
            "fallbacks_used": list(self.fallbacks_used),
            "attempts": self.attempts,
            "recovery_time_ms": round(self.recovery_time_ms, 2),
            "error": self.error,
        }


def _retryable(exc: BaseException) -> bool:
    return is_transient_error(exc) and not isinstance(exc, CircuitOpenError)


class RecoveryManager:
    """
    Wraps protocol store reads in retry, circuit breaking, caching and
    fallback.

    Args:
        primary: Structured protocol store
        file_store: Flat-file corpus store (optional last data tier)
        config: Retry/timeout/cache settings
        breakers: Shared breaker registry (one per dependency name)
        cache: Shared TTL cache
        recovery_log: Bounded log of outcomes
        telemetry: Fire-and-forget recorder for degraded outcomes
    """

    def __init__(
        self,
        primary: "ProtocolStore",
        file_store: Optional["ProtocolStore"] = None,
        config: Optional[RecoveryConfig] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        cache: Optional[TTLCache] = None,
        recovery_log: Optional[RecoveryLog] = None,
        telemetry: Optional[TelemetryRecorder] = None,
        breaker_config: Optional[CircuitBreakerConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.primary = primary
        self.file_store = file_store
        self.config = config or RecoveryConfig()
        self.breakers = breakers or CircuitBreakerRegistry(breaker_config)
        self.cache = cache or TTLCache(
            ttl_seconds=self.config.cache_ttl_seconds,
            max_entries=self.config.cache_max_entries,
        )
        self.recovery_log = recovery_log or RecoveryLog()
        self.telemetry = telemetry
        self._sleep = sleep
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Public read operations
    # ------------------------------------------------------------------

    async def get_by_code(self, code: str) -> RecoveryResult[Optional["Protocol"]]:
        if not isinstance(code, str) or not code.strip():
            raise InvalidInputError("protocol code must be a non-empty string", {"code": code})
        code = code.strip().upper()

        file_call = None
        if self.file_store is not None:
            file_call = lambda: self.file_store.get_by_code(code)

        return await self._execute(
            operation="get_by_code",
            dependency=STRUCTURED_STORE,
            cache_key=f"protocol:{code}",
            primary_call=lambda: self.primary.get_by_code(code),
            file_call=file_call,
            default=None,
        )

    async def search(
        self,
        text: str,
        filters: Optional["SearchFilters"] = None,
        limit: int = 20,
    ) -> RecoveryResult[List["StoreHit"]]:
        from ..rag.store.base import search_signature

        if not isinstance(text, str):
            raise InvalidInputError("search text must be a string", {"type": type(text).__name__})
        if limit <= 0:
            raise InvalidInputError("limit must be positive", {"limit": limit})

        file_call = None
        if self.file_store is not None:
            file_call = lambda: self.file_store.search(text, filters, limit)

        return await self._execute(
            operation="search",
            dependency=STRUCTURED_STORE,
            cache_key=search_signature("search", text, filters, limit),
            primary_call=lambda: self.primary.search(text, filters, limit),
            file_call=file_call,
            default=[],
        )

    async def vector_search(
        self,
        embedding: Sequence[float],
        filters: Optional["SearchFilters"] = None,
        limit: int = 20,
    ) -> RecoveryResult[List["StoreHit"]]:
        from ..rag.store.base import search_signature

        vector = np.asarray(embedding, dtype=np.float32)
        digest = hashlib.sha1(vector.tobytes()).hexdigest()

        return await self._execute(
            operation="vector_search",
            dependency=VECTOR_INDEX,
            cache_key=search_signature("vector", digest, filters, limit),
            primary_call=lambda: self.primary.vector_search(embedding, filters, limit),
            file_call=None,
            default=[],
        )

    async def known_codes(self) -> RecoveryResult[List[str]]:
        """Codes of every active protocol, for protocol-code validation."""
        file_call = None
        if self.file_store is not None:
            file_call = lambda: self.file_store.known_codes()

        return await self._execute(
            operation="known_codes",
            dependency=STRUCTURED_STORE,
            cache_key="catalog:codes",
            primary_call=lambda: self.primary.known_codes(),
            file_call=file_call,
            default=[],
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def invalidate_protocol(self, code: str) -> int:
        """
        Drop cached entries that may contain a protocol whose version
        changed. Search results are keyed by hash, so all are dropped.
        """
        code = code.strip().upper()
        removed = int(await self.cache.delete(f"protocol:{code}"))
        removed += await self.cache.invalidate_prefix("search:")
        removed += await self.cache.invalidate_prefix("vector:")
        removed += await self.cache.invalidate_prefix("catalog:")
        logger.info(f"Invalidated {removed} cache entries after change to protocol {code}")
        return removed

    def breaker_status(self) -> Dict[str, Dict[str, Any]]:
        return self.breakers.snapshot()

    def cache_stats(self) -> Dict[str, Any]:
        return self.cache.to_dict()

    async def reset_breakers(self) -> None:
        await self.breakers.reset_all()

    async def drain(self) -> None:
        """Wait for abandoned store calls that are still warming the cache."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Chain execution
    # ------------------------------------------------------------------

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _guarded_call(
        self,
        dependency: str,
        call: Callable[[], Awaitable[T]],
        cache_key: Optional[str],
    ) -> T:
        """
        One breaker-gated, timeout-bounded call. The store call runs as its
        own task behind asyncio.shield: if the caller times out or is
        cancelled, the call finishes anyway and its result goes to the cache.
        """
        await self.breakers.acquire(dependency)

        task = asyncio.ensure_future(call())
        state = {"abandoned": False}

        def _warm_cache(done: asyncio.Task) -> None:
            if not state["abandoned"] or done.cancelled() or done.exception() is not None:
                return
            if cache_key is not None:
                self._spawn(self.cache.set(cache_key, (done.result(),)))
                logger.debug(f"Abandoned call for {cache_key} completed; cache warmed")

        task.add_done_callback(_warm_cache)

        try:
            result = await asyncio.wait_for(
                asyncio.shield(task), timeout=self.config.call_timeout_seconds
            )
        except asyncio.TimeoutError:
            state["abandoned"] = True
            self._background.add(task)
            task.add_done_callback(self._background.discard)
            error = DependencyTimeoutError(
                f"{dependency} call exceeded {self.config.call_timeout_seconds}s",
                details={"dependency": dependency},
            )
            await self.breakers.record_failure(dependency, error)
            raise error
        except asyncio.CancelledError:
            state["abandoned"] = True
            self._background.add(task)
            task.add_done_callback(self._background.discard)
            raise
        except InvalidInputError:
            raise
        except Exception as e:
            await self.breakers.record_failure(dependency, e)
            raise

        await self.breakers.record_success(dependency)
        return result

    async def _execute(
        self,
        operation: str,
        dependency: str,
        cache_key: str,
        primary_call: Callable[[], Awaitable[T]],
        file_call: Optional[Callable[[], Awaitable[T]]],
        default: T,
    ) -> RecoveryResult[T]:
        start = time.perf_counter()
        attempts = 0
        fallbacks: List[str] = []
        last_error: Optional[BaseException] = None

        def _finish(result: RecoveryResult[T]) -> RecoveryResult[T]:
            result.recovery_time_ms = (time.perf_counter() - start) * 1000
            self.recovery_log.record(operation, result, dependency=dependency)
            if self.telemetry is not None and result.degraded:
                self.telemetry.record(
                    "recovery.completed",
                    operation=operation,
                    dependency=dependency,
                    **result.to_dict(),
                )
            return result

        # 1. Primary with retry/backoff
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.config.max_attempts),
                wait=wait_exponential(
                    multiplier=self.config.base_delay_seconds,
                    min=0,
                    max=self.config.max_delay_seconds,
                ),
                retry=retry_if_exception(_retryable),
                sleep=self._sleep,
                reraise=True,
            ):
                with attempt:
                    attempts += 1
                    if attempts > 1:
                        logger.warning(f"Retrying {operation} on {dependency} (attempt {attempts})")
                    data = await self._guarded_call(dependency, primary_call, cache_key)
            await self.cache.set(cache_key, (data,))
            return _finish(RecoveryResult(True, data, STRATEGY_PRIMARY, fallbacks, attempts))
        except InvalidInputError:
            raise
        except Exception as e:
            last_error = e
            logger.warning(
                f"{operation} on {dependency} failed after {attempts} attempt(s): {e}",
                extra={"dependency": dependency, "operation": operation},
            )

        # 2. TTL cache
        fallbacks.append(STRATEGY_CACHE)
        cached = await self.cache.get(cache_key)
        if cached is not None:
            logger.info(f"{operation} served from cache ({cache_key})")
            return _finish(
                RecoveryResult(True, cached[0], STRATEGY_CACHE, fallbacks, attempts, error=str(last_error))
            )

        # 3. Flat-file corpus
        if file_call is not None:
            fallbacks.append(STRATEGY_FILE)
            try:
                data = await asyncio.wait_for(file_call(), timeout=self.config.call_timeout_seconds)
                logger.info(f"{operation} served from file corpus")
                return _finish(
                    RecoveryResult(True, data, STRATEGY_FILE, fallbacks, attempts, error=str(last_error))
                )
            except InvalidInputError:
                raise
            except Exception as e:
                last_error = e
                logger.error(f"File corpus fallback failed for {operation}: {e}")

        # 4. Conservative default
        fallbacks.append(STRATEGY_SAFE_DEFAULT)
        return _finish(
            RecoveryResult(
                False,
                default,
                STRATEGY_SAFE_DEFAULT,
                fallbacks,
                attempts,
                error=str(last_error) if last_error else "all recovery strategies exhausted",
            )
        )
