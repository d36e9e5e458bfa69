"""Bounded log of recovery outcomes with aggregate statistics."""

import logging
import threading
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Deque, Dict, List, Optional

if TYPE_CHECKING:
    from .recovery import RecoveryResult

logger = logging.getLogger(__name__)


@dataclass
class RecoveryLogEntry:
    timestamp: datetime
    operation: str
    success: bool
    strategy_used: str
    attempts: int
    fallbacks_used: List[str]
    recovery_time_ms: float
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "operation": self.operation,
            "success": self.success,
            "strategy_used": self.strategy_used,
            "attempts": self.attempts,
            "fallbacks_used": list(self.fallbacks_used),
            "recovery_time_ms": round(self.recovery_time_ms, 2),
            "error": self.error,
            "metadata": self.metadata,
        }


class RecoveryLog:
    """Keeps the last max_entries recovery outcomes."""

    def __init__(self, max_entries: int = 1000):
        self._entries: Deque[RecoveryLogEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def record(self, operation: str, result: "RecoveryResult", **metadata: Any) -> RecoveryLogEntry:
        entry = RecoveryLogEntry(
            timestamp=datetime.now(),
            operation=operation,
            success=result.success,
            strategy_used=result.strategy_used,
            attempts=result.attempts,
            fallbacks_used=list(result.fallbacks_used),
            recovery_time_ms=result.recovery_time_ms,
            error=result.error,
            metadata=metadata,
        )
        with self._lock:
            self._entries.append(entry)

        payload = {"recovery": entry.to_dict()}
        if not entry.success:
            logger.error(f"Recovery failed: {operation} (strategy={entry.strategy_used})", extra=payload)
        elif entry.fallbacks_used:
            logger.warning(
                f"Recovery used fallbacks: {operation} via {entry.strategy_used}", extra=payload
            )
        else:
            logger.debug(f"Recovery successful: {operation}", extra=payload)
        return entry

    def recent(self, count: int = 50) -> List[RecoveryLogEntry]:
        with self._lock:
            return list(self._entries)[-count:]

    def failed(self) -> List[RecoveryLogEntry]:
        with self._lock:
            return [e for e in self._entries if not e.success]

    def statistics(self) -> Dict[str, Any]:
        with self._lock:
            entries = list(self._entries)
        total = len(entries)
        successful = sum(1 for e in entries if e.success)
        return {
            "total": total,
            "successful": successful,
            "failed": total - successful,
            "with_fallbacks": sum(1 for e in entries if e.fallbacks_used),
            "average_recovery_time_ms": (
                round(sum(e.recovery_time_ms for e in entries) / total, 2) if total else 0.0
            ),
            "strategy_breakdown": dict(Counter(e.strategy_used for e in entries)),
        }

    def clear(self) -> None:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.info(f"Recovery log cleared ({count} entries)")
