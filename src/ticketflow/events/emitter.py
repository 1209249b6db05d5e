"""Event emitter implementations for workflow notification.

This module defines the EventEmitter interface and its implementations:

- LoggingEventEmitter: Emits events as structured log entries
- CompositeEventEmitter: Fans out to several emitters, isolating failures
- NullEventEmitter: Discards events

Subscribers to workflow progress are EventEmitters. A failing subscriber
never aborts the workflow step that produced the event.

Source:
- src/ticketflow/events/models.py (WorkflowEvent, EventType)
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import List, Optional

from ticketflow.events.models import EventType, WorkflowEvent


logger = logging.getLogger(__name__)


class EventSinkType(str, Enum):
    """Event sinks that can be enabled by configuration.

    Attributes:
        LOGGING: Emit events as structured log entries.
        METRICS: Update Prometheus metrics from events.
    """

    LOGGING = "logging"
    METRICS = "metrics"


class EventEmitter(ABC):
    """Abstract base class for workflow event emitters.

    Implementations are called from async workflow code and should not
    block. The orchestrator guards every emit() call, so an emitter may
    raise, but well-behaved emitters log their own failures instead.
    """

    @abstractmethod
    async def emit(self, event: WorkflowEvent) -> None:
        """Emit a workflow event.

        Args:
            event: The workflow event to emit.
        """
        pass

    async def close(self) -> None:
        """Release resources held by the emitter. Default does nothing."""
        pass


class LoggingEventEmitter(EventEmitter):
    """Event emitter that writes events as structured log entries.

    Log levels by event type:
    - PROGRESS, STATE_TRANSITION: INFO
    - ANALYSIS_COMPLETED, IMPLEMENTATION_COMPLETED: INFO
    - ERROR: ERROR

    Attributes:
        logger: The logger instance used for event emission.
    """

    def __init__(self, logger_name: Optional[str] = None):
        """Initialize the logging event emitter.

        Args:
            logger_name: Optional logger name. Defaults to the module logger.
        """
        self._logger = logging.getLogger(logger_name) if logger_name else logger
        self._log_level_map = {
            EventType.PROGRESS: logging.INFO,
            EventType.STATE_TRANSITION: logging.INFO,
            EventType.ANALYSIS_COMPLETED: logging.INFO,
            EventType.IMPLEMENTATION_COMPLETED: logging.INFO,
            EventType.ERROR: logging.ERROR,
        }

    async def emit(self, event: WorkflowEvent) -> None:
        log_level = self._log_level_map.get(event.event_type, logging.INFO)
        self._logger.log(
            log_level,
            "Workflow event: %s for %s",
            event.event_type.value,
            event.ticket_id,
            extra=event.to_log_dict(),
        )


class CompositeEventEmitter(EventEmitter):
    """Event emitter that delegates to multiple child emitters.

    Each child is called independently. A failure in one child is logged
    and does not prevent delivery to the others.

    Attributes:
        emitters: Child emitters to delegate to.

    Example:
        >>> composite = CompositeEventEmitter([
        ...     LoggingEventEmitter(),
        ...     MetricsEventEmitter(),
        ... ])
        >>> await composite.emit(event)  # Emits to both sinks
    """

    def __init__(self, emitters: Optional[List[EventEmitter]] = None):
        self._emitters: List[EventEmitter] = list(emitters or [])

    def add_emitter(self, emitter: EventEmitter) -> None:
        self._emitters.append(emitter)

    @property
    def emitters(self) -> List[EventEmitter]:
        """Read-only copy of the child emitters."""
        return list(self._emitters)

    async def emit(self, event: WorkflowEvent) -> None:
        """Emit event to all child emitters, isolating failures."""
        for emitter in self._emitters:
            try:
                await emitter.emit(event)
            except Exception as e:
                logger.error(
                    "Failed to emit event to %s: %s",
                    type(emitter).__name__,
                    str(e),
                    extra={
                        "emitter_type": type(emitter).__name__,
                        "event_type": event.event_type.value,
                        "ticket_id": event.ticket_id,
                        "error": str(e),
                    },
                )

    async def close(self) -> None:
        for emitter in self._emitters:
            try:
                await emitter.close()
            except Exception as e:
                logger.error(
                    "Failed to close emitter %s: %s",
                    type(emitter).__name__,
                    str(e),
                )


class NullEventEmitter(EventEmitter):
    """Event emitter that discards all events."""

    async def emit(self, event: WorkflowEvent) -> None:
        pass


def create_event_emitter(
    sink_types: Optional[List[EventSinkType]] = None,
    logger_name: Optional[str] = None,
) -> EventEmitter:
    """Create an event emitter for the requested sinks.

    Args:
        sink_types: Sinks to enable. If None or empty, returns a
                    LoggingEventEmitter.
        logger_name: Optional logger name for the LoggingEventEmitter.

    Returns:
        A single emitter, or a CompositeEventEmitter when several sinks
        are requested.

    Example:
        >>> emitter = create_event_emitter([
        ...     EventSinkType.LOGGING,
        ...     EventSinkType.METRICS,
        ... ])
        >>> isinstance(emitter, CompositeEventEmitter)
        True
    """
    if not sink_types:
        return LoggingEventEmitter(logger_name=logger_name)

    emitters: List[EventEmitter] = []

    for sink_type in sink_types:
        if sink_type == EventSinkType.LOGGING:
            emitters.append(LoggingEventEmitter(logger_name=logger_name))
        elif sink_type == EventSinkType.METRICS:
            # Deferred import: metrics.py imports EventEmitter from here
            from ticketflow.events.metrics import MetricsEventEmitter

            emitters.append(MetricsEventEmitter())
        else:
            logger.warning("Unknown event sink type: %s, skipping", sink_type)

    if not emitters:
        return LoggingEventEmitter(logger_name=logger_name)

    if len(emitters) == 1:
        return emitters[0]

    return CompositeEventEmitter(emitters)
