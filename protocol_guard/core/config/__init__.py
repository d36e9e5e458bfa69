"""Configuration models for the protocol retrieval subsystem."""

from .app_config import (
    AppConfig,
    CircuitBreakerConfig,
    PathsConfig,
    RecoveryConfig,
    RetrievalConfig,
    ValidationConfig,
)

__all__ = [
    "AppConfig",
    "CircuitBreakerConfig",
    "PathsConfig",
    "RecoveryConfig",
    "RetrievalConfig",
    "ValidationConfig",
]
