"""Workflow events, progress log and metrics.

Events are emitted for progress steps, phase transitions, completed
analyses and implementations, and errors. They are fanned out to logs,
Prometheus metrics and any live-notification subscribers.
"""

from ticketflow.events.emitter import (
    CompositeEventEmitter,
    EventEmitter,
    EventSinkType,
    LoggingEventEmitter,
    NullEventEmitter,
    create_event_emitter,
)
from ticketflow.events.models import EventType, WorkflowEvent
from ticketflow.events.progress import ProgressLog

__all__ = [
    "CompositeEventEmitter",
    "EventEmitter",
    "EventSinkType",
    "EventType",
    "LoggingEventEmitter",
    "NullEventEmitter",
    "ProgressLog",
    "WorkflowEvent",
    "create_event_emitter",
]
