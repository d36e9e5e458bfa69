"""
Usage / Search Telemetry

Write-only, fire-and-forget event recording. The recorder schedules each
sink write as its own task; a failing or slow sink is logged and never
affects the retrieval path.

Usage:
    sink = InMemoryTelemetrySink()
    telemetry = TelemetryRecorder(sink)
    telemetry.record("search.completed", query="chest pain", results=4)
    await telemetry.flush()   # tests / shutdown only
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Sequence, Set

logger = logging.getLogger(__name__)


@dataclass
class TelemetryEvent:
    name: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "timestamp": self.timestamp, **self.attributes}


class TelemetrySink(ABC):
    """Destination for telemetry events."""

    @abstractmethod
    async def record(self, event: TelemetryEvent) -> None:
        ...


class LoggingTelemetrySink(TelemetrySink):
    """Writes events to the 'protocol_guard.telemetry' logger."""

    def __init__(self, level: int = logging.INFO):
        self.level = level
        self._logger = logging.getLogger("protocol_guard.telemetry")

    async def record(self, event: TelemetryEvent) -> None:
        self._logger.log(self.level, f"📊 {event.name}", extra={"telemetry": event.to_dict()})


class InMemoryTelemetrySink(TelemetrySink):
    """Bounded in-memory event buffer."""

    def __init__(self, max_events: int = 10000):
        self.events: Deque[TelemetryEvent] = deque(maxlen=max_events)

    async def record(self, event: TelemetryEvent) -> None:
        self.events.append(event)

    def named(self, name: str) -> List[TelemetryEvent]:
        return [e for e in self.events if e.name == name]


class FanOutTelemetrySink(TelemetrySink):
    """Forwards each event to several sinks; one failing sink does not stop the others."""

    def __init__(self, sinks: Sequence[TelemetrySink]):
        self.sinks = list(sinks)

    async def record(self, event: TelemetryEvent) -> None:
        results = await asyncio.gather(
            *(sink.record(event) for sink in self.sinks), return_exceptions=True
        )
        for sink, result in zip(self.sinks, results):
            if isinstance(result, Exception):
                logger.warning(f"Telemetry sink {type(sink).__name__} failed: {result}")


class TelemetryRecorder:
    """Schedules sink writes without awaiting them."""

    def __init__(self, sink: Optional[TelemetrySink] = None):
        self.sink = sink or LoggingTelemetrySink(level=logging.DEBUG)
        self._pending: Set[asyncio.Task] = set()
        self.dropped = 0

    def record(self, name: str, **attributes: Any) -> None:
        event = TelemetryEvent(name=name, attributes=attributes)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.dropped += 1
            logger.debug(f"Telemetry event {name} dropped: no running event loop")
            return

        task = loop.create_task(self._write(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(self, event: TelemetryEvent) -> None:
        try:
            await self.sink.record(event)
        except Exception as e:
            self.dropped += 1
            logger.warning(f"Telemetry sink failed for {event.name}: {e}")

    async def flush(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
