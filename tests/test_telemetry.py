"""
Tests for fire-and-forget telemetry and the validation monitor.
"""

import asyncio

import pytest

from protocol_guard.core.telemetry import (
    FanOutTelemetrySink,
    InMemoryTelemetrySink,
    TelemetryEvent,
    TelemetryRecorder,
    TelemetrySink,
)
from protocol_guard.rag.trust.validation_monitor import ValidationMonitor


class FailingSink(TelemetrySink):
    async def record(self, event):
        raise RuntimeError("sink offline")


class SlowSink(TelemetrySink):
    def __init__(self):
        self.events = []

    async def record(self, event):
        await asyncio.sleep(0.05)
        self.events.append(event)


class TestRecorder:
    async def test_record_does_not_wait_for_sink(self):
        sink = SlowSink()
        telemetry = TelemetryRecorder(sink)

        telemetry.record("search.completed", results=3)
        assert sink.events == []

        await telemetry.flush()
        [event] = sink.events
        assert event.attributes == {"results": 3}

    async def test_failing_sink_is_counted_not_raised(self):
        telemetry = TelemetryRecorder(FailingSink())
        telemetry.record("search.completed")
        await telemetry.flush()
        assert telemetry.dropped == 1

    def test_no_running_loop_drops_event(self):
        telemetry = TelemetryRecorder(InMemoryTelemetrySink())
        telemetry.record("search.completed")
        assert telemetry.dropped == 1

    async def test_fan_out_isolates_failures(self):
        memory = InMemoryTelemetrySink()
        telemetry = TelemetryRecorder(FanOutTelemetrySink([FailingSink(), memory]))
        telemetry.record("recovery.completed", strategy_used="cache")
        await telemetry.flush()
        assert len(memory.named("recovery.completed")) == 1
        assert telemetry.dropped == 0

    def test_event_to_dict(self):
        event = TelemetryEvent("search.completed", {"results": 2}, timestamp=10.0)
        assert event.to_dict() == {"name": "search.completed", "timestamp": 10.0, "results": 2}


def _validation_event(stage="pre-retrieval", valid=True, codes=(), errors=0, query="chest pain"):
    return TelemetryEvent("validation.completed", {
        "stage": stage,
        "valid": valid,
        "critical": 0 if valid else 1,
        "errors": errors,
        "warnings": 0,
        "codes": list(codes),
        "messages": {c: f"{c} message" for c in codes},
        "duration_ms": 2.0,
        "query": query,
    })


class TestValidationMonitor:
    @pytest.fixture
    async def monitor(self):
        monitor = ValidationMonitor()
        await monitor.record(_validation_event())
        await monitor.record(_validation_event(valid=False, codes=["invalid-protocol-code"], query="tp 9999"))
        await monitor.record(_validation_event(stage="post-response", valid=False, codes=["hallucinated-citation"]))
        await monitor.record(_validation_event(stage="post-response", valid=False, codes=["hallucinated-citation"]))
        await monitor.record(TelemetryEvent("search.completed", {"results": 1}))
        return monitor

    async def test_metrics(self, monitor):
        metrics = monitor.metrics()
        assert metrics["total_validations"] == 4
        assert metrics["failed_validations"] == 3
        assert metrics["success_rate"] == 25.0
        assert metrics["critical_errors"] == 3
        assert metrics["average_validation_time_ms"] == 2.0

    async def test_failure_rate_by_stage(self, monitor):
        assert monitor.failure_rate_by_stage() == {"post-response": 100.0, "pre-retrieval": 50.0}

    async def test_patterns(self, monitor):
        [pattern] = monitor.patterns(min_frequency=2)
        assert pattern.code == "hallucinated-citation"
        assert pattern.frequency == 2
        assert pattern.examples == ["hallucinated-citation message"]

    async def test_recent_failures_newest_first(self, monitor):
        failures = monitor.recent_failures(limit=2)
        assert [f["stage"] for f in failures] == ["post-response", "post-response"]
        assert monitor.recent_failures()[-1]["query"] == "tp 9999"

    async def test_success_target_and_clear(self, monitor):
        assert not monitor.meets_success_target()
        monitor.clear()
        assert monitor.metrics()["total_validations"] == 0
        assert monitor.meets_success_target()
