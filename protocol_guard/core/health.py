"""
Health Checks

Aggregates the state of the retrieval dependencies into one report:

- store             structured store reachability (ping with timeout)
- file_corpus       flat-file fallback corpus reachability
- circuit_breakers  any open breaker
- cache             TTL cache statistics (informational)
- embeddings        chunk embedding coverage, when an embedder is configured

Status rules:
    store down, file corpus down     -> unhealthy (503)
    store down, file corpus serving  -> degraded
    any breaker open                 -> at least degraded
    embedding coverage below 50%     -> degraded
    otherwise                        -> healthy

Usage:
    checker = HealthChecker(store, recovery, file_store)
    report = await checker.check()
    return JSONResponse(report.to_dict(), status_code=report.http_status)
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional

from .recovery import RecoveryManager

if TYPE_CHECKING:
    from ..rag.store.base import ProtocolStore

logger = logging.getLogger(__name__)

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"

MIN_EMBEDDING_COVERAGE = 0.5


@dataclass
class ComponentCheck:
    """Health status for a single component."""

    status: str
    latency_ms: Optional[float] = None
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"status": self.status}
        if self.latency_ms is not None:
            data["latency_ms"] = round(self.latency_ms, 2)
        if self.error:
            data["error"] = self.error
        if self.details:
            data["details"] = self.details
        return data


@dataclass
class HealthReport:
    status: str
    checks: Dict[str, ComponentCheck]
    response_time_ms: float
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def http_status(self) -> int:
        return 503 if self.status == UNHEALTHY else 200

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "checks": {name: c.to_dict() for name, c in self.checks.items()},
            "response_time_ms": round(self.response_time_ms, 2),
            "timestamp": self.timestamp,
        }


async def _timed_ping(store: "ProtocolStore", timeout: float) -> ComponentCheck:
    start = time.perf_counter()
    try:
        ok = await asyncio.wait_for(store.ping(), timeout=timeout)
    except asyncio.TimeoutError:
        return ComponentCheck(UNHEALTHY, (time.perf_counter() - start) * 1000, f"ping timed out after {timeout}s")
    except Exception as e:
        return ComponentCheck(UNHEALTHY, (time.perf_counter() - start) * 1000, f"{type(e).__name__}: {e}")
    latency = (time.perf_counter() - start) * 1000
    return ComponentCheck(HEALTHY if ok else UNHEALTHY, latency, None if ok else "store not reachable")


class HealthChecker:
    """
    Builds health reports for the protocol stores and resilience layer.

    Args:
        store: Structured store (defaults to the recovery manager's primary)
        recovery: Recovery manager holding the breakers and cache
        file_store: Flat-file corpus (defaults to the recovery manager's)
        embeddings_expected: Check embedding coverage (an embedder is configured)
        timeout_seconds: Bound on each dependency check
    """

    def __init__(
        self,
        store: Optional["ProtocolStore"],
        recovery: RecoveryManager,
        file_store: Optional["ProtocolStore"] = None,
        embeddings_expected: bool = False,
        timeout_seconds: float = 2.0,
    ):
        self.store = store or recovery.primary
        self.recovery = recovery
        self.file_store = file_store or recovery.file_store
        self.embeddings_expected = embeddings_expected
        self.timeout_seconds = timeout_seconds

    async def quick_check(self) -> HealthReport:
        """Store ping only."""
        start = time.perf_counter()
        store_check = await _timed_ping(self.store, self.timeout_seconds)
        return HealthReport(
            status=store_check.status,
            checks={"store": store_check},
            response_time_ms=(time.perf_counter() - start) * 1000,
        )

    async def _embedding_check(self) -> ComponentCheck:
        try:
            stats = await asyncio.wait_for(self.store.stats(), timeout=self.timeout_seconds)
        except Exception as e:
            return ComponentCheck(DEGRADED, error=f"stats unavailable: {type(e).__name__}")
        coverage = stats.embedding_coverage
        status = HEALTHY if coverage >= MIN_EMBEDDING_COVERAGE else DEGRADED
        return ComponentCheck(status, details={
            "chunks": stats.chunks,
            "embedded_chunks": stats.embedded_chunks,
            "coverage": round(coverage, 4),
        })

    async def check(self) -> HealthReport:
        start = time.perf_counter()
        checks: Dict[str, ComponentCheck] = {}

        if self.file_store is not None:
            store_check, file_check = await asyncio.gather(
                _timed_ping(self.store, self.timeout_seconds),
                _timed_ping(self.file_store, self.timeout_seconds),
            )
        else:
            store_check = await _timed_ping(self.store, self.timeout_seconds)
            file_check = ComponentCheck(UNHEALTHY, error="no file corpus configured")
        checks["store"] = store_check
        checks["file_corpus"] = file_check

        breakers = self.recovery.breaker_status()
        open_breakers = [name for name, snap in breakers.items() if snap["state"] == "open"]
        checks["circuit_breakers"] = ComponentCheck(
            DEGRADED if open_breakers else HEALTHY,
            error=f"open: {', '.join(open_breakers)}" if open_breakers else None,
            details=breakers,
        )
        checks["cache"] = ComponentCheck(HEALTHY, details=self.recovery.cache_stats())

        if self.embeddings_expected and store_check.status == HEALTHY:
            checks["embeddings"] = await self._embedding_check()

        if store_check.status != HEALTHY and file_check.status != HEALTHY:
            status = UNHEALTHY
        elif any(c.status != HEALTHY for c in checks.values()):
            status = DEGRADED
        else:
            status = HEALTHY

        report = HealthReport(
            status=status,
            checks=checks,
            response_time_ms=(time.perf_counter() - start) * 1000,
        )
        if status != HEALTHY:
            logger.warning(
                f"Health check {status}: "
                f"{[n for n, c in checks.items() if c.status != HEALTHY]}",
                extra={"health_status": status},
            )
        return report
