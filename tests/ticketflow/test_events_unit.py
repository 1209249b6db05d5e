"""Unit tests for workflow events, emitters, metrics and the progress log."""

import asyncio
import logging
from unittest.mock import AsyncMock

from prometheus_client import CollectorRegistry

from ticketflow.events.emitter import (
    CompositeEventEmitter,
    EventSinkType,
    LoggingEventEmitter,
    NullEventEmitter,
    create_event_emitter,
)
from ticketflow.events.metrics import MetricsEventEmitter, WorkflowMetrics
from ticketflow.events.models import EventType, WorkflowEvent
from ticketflow.events.progress import ProgressLog
from ticketflow.state.models import WorkflowPhase, WorkflowState
from ticketflow.state.store import InMemoryWorkflowStore


def run_async(coro):
    return asyncio.run(coro)


def _event(event_type=EventType.PROGRESS, **details):
    return WorkflowEvent(event_type=event_type, ticket_id="PROJ-1", details=details)


class TestWorkflowEvent:
    def test_log_dict_prefixes_reserved_keys(self):
        log_dict = _event(message="hello", percentage=10).to_log_dict()
        assert log_dict["detail_message"] == "hello"
        assert log_dict["percentage"] == 10
        assert "message" not in log_dict
        assert log_dict["event_type"] == "progress"


class TestEmitters:
    def test_logging_emitter_logs_errors_at_error_level(self, caplog):
        emitter = LoggingEventEmitter(logger_name="ticketflow.test_events")
        with caplog.at_level(logging.INFO, logger="ticketflow.test_events"):
            run_async(emitter.emit(_event(EventType.ERROR, phase="building")))
        assert caplog.records[-1].levelno == logging.ERROR
        assert caplog.records[-1].phase == "building"

    def test_composite_isolates_failures(self):
        failing = AsyncMock()
        failing.emit.side_effect = RuntimeError("sink down")
        healthy = AsyncMock()
        composite = CompositeEventEmitter([failing, healthy])

        run_async(composite.emit(_event()))

        healthy.emit.assert_awaited_once()

    def test_composite_closes_children(self):
        child = AsyncMock()
        run_async(CompositeEventEmitter([child]).close())
        child.close.assert_awaited_once()

    def test_null_emitter_accepts_events(self):
        run_async(NullEventEmitter().emit(_event()))

    def test_factory_defaults_to_logging(self):
        assert isinstance(create_event_emitter(), LoggingEventEmitter)

    def test_factory_builds_composite(self):
        emitter = create_event_emitter([EventSinkType.LOGGING, EventSinkType.METRICS])
        assert isinstance(emitter, CompositeEventEmitter)
        assert len(emitter.emitters) == 2


class TestMetricsEventEmitter:
    def _emitter(self):
        registry = CollectorRegistry()
        return MetricsEventEmitter(WorkflowMetrics(registry=registry)), registry

    def test_transition_moves_phase_gauge(self):
        emitter, registry = self._emitter()
        run_async(
            emitter.emit(
                _event(
                    EventType.STATE_TRANSITION,
                    from_phase="not_started",
                    to_phase="fetching_ticket",
                )
            )
        )
        assert registry.get_sample_value(
            "ticketflow_tickets_by_phase", {"phase": "fetching_ticket"}
        ) == 1.0
        assert registry.get_sample_value(
            "ticketflow_tickets_by_phase", {"phase": "not_started"}
        ) == 0.0

    def test_error_counts_failure_by_phase(self):
        emitter, registry = self._emitter()
        run_async(emitter.emit(_event(EventType.ERROR, phase="building")))
        assert registry.get_sample_value(
            "ticketflow_workflows_failed_total", {"phase": "building"}
        ) == 1.0

    def test_analysis_counts_by_source(self):
        emitter, registry = self._emitter()
        run_async(emitter.emit(_event(EventType.ANALYSIS_COMPLETED, from_cache=True)))
        run_async(emitter.emit(_event(EventType.ANALYSIS_COMPLETED, from_cache=False)))
        assert registry.get_sample_value(
            "ticketflow_analysis_requests_total", {"source": "cache"}
        ) == 1.0
        assert registry.get_sample_value(
            "ticketflow_analysis_requests_total", {"source": "ai"}
        ) == 1.0

    def test_implementation_records_completion_and_duration(self):
        emitter, registry = self._emitter()
        run_async(
            emitter.emit(
                _event(
                    EventType.IMPLEMENTATION_COMPLETED,
                    status="completed",
                    duration_seconds=42.0,
                )
            )
        )
        assert registry.get_sample_value(
            "ticketflow_workflows_completed_total", {"status": "completed"}
        ) == 1.0
        assert registry.get_sample_value(
            "ticketflow_implementation_duration_seconds_sum"
        ) == 42.0


class TestProgressLog:
    def test_publish_updates_memory_store_and_subscribers(self):
        store = InMemoryWorkflowStore()
        subscriber = AsyncMock()
        log = ProgressLog(store, subscriber)

        async def scenario():
            await log.publish(
                "PROJ-1",
                WorkflowPhase.ANALYZING_CODE,
                30,
                "Analyzing code semantically...",
                WorkflowState.RUNNING,
            )
            return await store.latest_progress("PROJ-1")

        durable = run_async(scenario())

        assert log.current("PROJ-1").percentage == 30
        assert durable.message == "Analyzing code semantically..."
        event = subscriber.emit.await_args.args[0]
        assert event.event_type == EventType.PROGRESS
        assert event.details["percentage"] == 30
        assert event.details["state"] == "running"

    def test_store_failure_does_not_abort_publish(self):
        store = InMemoryWorkflowStore()
        store.append_progress = AsyncMock(side_effect=RuntimeError("db down"))
        subscriber = AsyncMock()
        log = ProgressLog(store, subscriber)

        entry = run_async(log.publish("PROJ-1", WorkflowPhase.FETCHING_TICKET, 5, "Fetching"))

        assert entry.percentage == 5
        subscriber.emit.assert_awaited_once()

    def test_subscriber_failure_does_not_abort_publish(self):
        subscriber = AsyncMock()
        subscriber.emit.side_effect = RuntimeError("socket closed")
        log = ProgressLog(InMemoryWorkflowStore(), subscriber)

        run_async(log.publish("PROJ-1", WorkflowPhase.FETCHING_TICKET, 5, "Fetching"))

        assert log.current("PROJ-1").percentage == 5

    def test_latest_falls_back_to_store(self):
        store = InMemoryWorkflowStore()

        async def scenario():
            await ProgressLog(store).publish(
                "PROJ-1", WorkflowPhase.WAITING_APPROVAL, 100, "Done"
            )
            return await ProgressLog(store).latest("PROJ-1")

        assert run_async(scenario()).percentage == 100

    def test_least_recent_tickets_are_evicted_from_memory(self):
        store = InMemoryWorkflowStore()
        log = ProgressLog(store, max_tracked=2)

        async def scenario():
            for ticket_id in ("PROJ-1", "PROJ-2", "PROJ-3"):
                await log.publish(ticket_id, WorkflowPhase.FETCHING_TICKET, 5, "Fetching")
            return await log.latest("PROJ-1")

        evicted = run_async(scenario())

        assert log.current("PROJ-1") is None
        assert log.current("PROJ-3").percentage == 5
        assert evicted.ticket_id == "PROJ-1"
