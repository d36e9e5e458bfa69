"""
Error handling for Protocol Guard

Exception hierarchy with HTTP status mapping and transient/permanent
classification. Only contract errors (InvalidInputError) ever leave the
public read paths; transient infrastructure errors are retried and absorbed
by the recovery manager. Validation findings are values, never exceptions.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import status

logger = logging.getLogger(__name__)


class ProtocolGuardError(Exception):
    """
    Base exception for all protocol subsystem errors.

    Attributes:
        http_status: HTTP status code for response
        error_code: Machine-readable error code
        user_message: User-friendly error message
        is_transient: True if the failure may succeed on retry
    """
    http_status: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code: str = "INTERNAL_ERROR"
    user_message: str = "An error occurred"
    is_transient: bool = False

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.user_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "error_message": self.message,
            "error_details": self.details or None,
        }


class InvalidInputError(ProtocolGuardError):
    """Raised when a caller violates the input contract (wrong types, bad ranges)"""
    http_status = status.HTTP_400_BAD_REQUEST
    error_code = "INVALID_INPUT"
    user_message = "Invalid input provided"


class StoreUnavailableError(ProtocolGuardError):
    """Raised by store adapters when the backing store cannot be reached"""
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE
    error_code = "STORE_UNAVAILABLE"
    user_message = "Protocol store unavailable"
    is_transient = True


class DependencyTimeoutError(ProtocolGuardError):
    """Raised when a dependency call exceeds its timeout"""
    http_status = status.HTTP_504_GATEWAY_TIMEOUT
    error_code = "DEPENDENCY_TIMEOUT"
    user_message = "Dependency timeout"
    is_transient = True


class CircuitOpenError(ProtocolGuardError):
    """Raised when a circuit breaker rejects a call"""
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE
    error_code = "CIRCUIT_OPEN"
    user_message = "Dependency temporarily disabled"
    is_transient = True


class CorpusLoadError(ProtocolGuardError):
    """Raised when the flat-file corpus cannot be read or parsed"""
    error_code = "CORPUS_LOAD_FAILED"
    user_message = "Protocol corpus unavailable"
    is_transient = True


def is_transient_error(exc: BaseException) -> bool:
    """Return True if the exception is worth retrying."""
    if isinstance(exc, ProtocolGuardError):
        return exc.is_transient
    return isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError, OSError))
