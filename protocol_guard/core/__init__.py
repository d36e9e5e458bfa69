"""
Core infrastructure: configuration, errors, circuit breaking, caching,
recovery chain, telemetry and health checks.
"""

from .cache import TTLCache
from .circuit_breaker import CircuitBreaker, CircuitBreakerRegistry, CircuitState
from .error_handling import (
    CircuitOpenError,
    CorpusLoadError,
    DependencyTimeoutError,
    InvalidInputError,
    ProtocolGuardError,
    StoreUnavailableError,
)
from .recovery import RecoveryManager, RecoveryResult
from .telemetry import TelemetryEvent, TelemetryRecorder, TelemetrySink

__all__ = [
    "TTLCache",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "CircuitOpenError",
    "CorpusLoadError",
    "DependencyTimeoutError",
    "InvalidInputError",
    "ProtocolGuardError",
    "StoreUnavailableError",
    "RecoveryManager",
    "RecoveryResult",
    "TelemetryEvent",
    "TelemetryRecorder",
    "TelemetrySink",
]
