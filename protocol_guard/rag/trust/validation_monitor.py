"""
Validation Monitor

Telemetry sink that aggregates "validation.completed" events into
per-stage metrics, recent failures and recurring finding patterns.

Usage:
    monitor = ValidationMonitor()
    telemetry = TelemetryRecorder(FanOutTelemetrySink([LoggingTelemetrySink(), monitor]))
    ...
    monitor.metrics()["success_rate"]
    monitor.patterns(min_frequency=3)
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

from ...core.telemetry import TelemetryEvent, TelemetrySink

logger = logging.getLogger(__name__)

VALIDATION_EVENT = "validation.completed"


@dataclass
class ValidationPattern:
    code: str
    frequency: int = 0
    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None
    examples: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "frequency": self.frequency,
            "first_seen": self.first_seen.isoformat() if self.first_seen else None,
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
            "examples": list(self.examples),
        }


@dataclass
class _Record:
    stage: str
    valid: bool
    critical: int
    errors: int
    warnings: int
    duration_ms: float
    timestamp: datetime
    codes: List[str]
    query: Optional[str] = None


class ValidationMonitor(TelemetrySink):
    """Aggregates validation outcomes; ignores every other event."""

    def __init__(self, max_records: int = 10000, max_failures: int = 1000, max_examples: int = 3):
        self._records: Deque[_Record] = deque(maxlen=max_records)
        self._failures: Deque[_Record] = deque(maxlen=max_failures)
        self._patterns: Dict[str, ValidationPattern] = {}
        self._max_examples = max_examples
        self._lock = threading.Lock()

    async def record(self, event: TelemetryEvent) -> None:
        if event.name != VALIDATION_EVENT:
            return
        attrs = event.attributes
        record = _Record(
            stage=attrs.get("stage", "unknown"),
            valid=bool(attrs.get("valid", True)),
            critical=int(attrs.get("critical", 0)),
            errors=int(attrs.get("errors", 0)),
            warnings=int(attrs.get("warnings", 0)),
            duration_ms=float(attrs.get("duration_ms", 0.0)),
            timestamp=datetime.fromtimestamp(event.timestamp, tz=timezone.utc),
            codes=list(attrs.get("codes", [])),
            query=attrs.get("query"),
        )
        messages = attrs.get("messages", {})

        with self._lock:
            self._records.append(record)
            if not record.valid or record.errors:
                self._failures.append(record)
            for code in record.codes:
                pattern = self._patterns.get(code)
                if pattern is None:
                    pattern = self._patterns[code] = ValidationPattern(code, first_seen=record.timestamp)
                pattern.frequency += 1
                pattern.last_seen = record.timestamp
                example = messages.get(code)
                if example and example not in pattern.examples and len(pattern.examples) < self._max_examples:
                    pattern.examples.append(example)

    def metrics(self, stage: Optional[str] = None) -> Dict[str, Any]:
        with self._lock:
            records = [r for r in self._records if stage is None or r.stage == stage]
        total = len(records)
        successful = sum(1 for r in records if r.valid)
        return {
            "total_validations": total,
            "successful_validations": successful,
            "failed_validations": total - successful,
            "success_rate": (successful / total * 100) if total else 100.0,
            "critical_errors": sum(r.critical for r in records),
            "errors": sum(r.errors for r in records),
            "warnings": sum(r.warnings for r in records),
            "average_validation_time_ms": (sum(r.duration_ms for r in records) / total) if total else 0.0,
        }

    def failure_rate_by_stage(self) -> Dict[str, float]:
        with self._lock:
            stages = {r.stage for r in self._records}
        return {s: 100.0 - self.metrics(s)["success_rate"] for s in sorted(stages)}

    def patterns(self, min_frequency: int = 2) -> List[ValidationPattern]:
        with self._lock:
            found = [p for p in self._patterns.values() if p.frequency >= min_frequency]
        return sorted(found, key=lambda p: (-p.frequency, p.code))

    def recent_failures(self, limit: int = 10) -> List[Dict[str, Any]]:
        with self._lock:
            failures = list(self._failures)[-limit:]
        return [
            {
                "stage": f.stage,
                "query": f.query,
                "codes": list(f.codes),
                "timestamp": f.timestamp.isoformat(),
            }
            for f in reversed(failures)
        ]

    def meets_success_target(self, target_rate: float = 99.0) -> bool:
        return self.metrics()["success_rate"] >= target_rate

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
            self._failures.clear()
            self._patterns.clear()
