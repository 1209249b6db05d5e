"""Workflow event models for observability and live notification.

This module defines the data models for workflow events:
- EventType: Enum of all event types emitted by the orchestrator
- WorkflowEvent: Structured event with ticket id, timestamp and details

Events are fanned out to subscribers (logs, metrics, push transports)
through the EventEmitter interface in emitter.py.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, Field


# LogRecord attributes that may not be overridden through `extra`
_RESERVED_LOG_KEYS = frozenset(
    {
        "args", "asctime", "created", "exc_info", "exc_text", "filename",
        "funcName", "levelname", "levelno", "lineno", "message", "module",
        "msecs", "msg", "name", "pathname", "process", "processName",
        "relativeCreated", "stack_info", "taskName", "thread", "threadName",
    }
)


class EventType(str, Enum):
    """Types of events emitted during a workflow.

    Event Categories:
        PROGRESS: A phase step was published to the progress log.
            Details carry phase, state, percentage and message.

        STATE_TRANSITION: The workflow record changed phase.
            Details carry from_phase and to_phase.

        ANALYSIS_COMPLETED: An analysis is ready for approval, whether
            freshly computed or served from the cache.

        IMPLEMENTATION_COMPLETED: An approved analysis was implemented.
            Details carry the branch, status and pull request URL.

        ERROR: An operation failed. Details carry phase and error_message.
    """

    PROGRESS = "progress"
    STATE_TRANSITION = "state_transition"
    ANALYSIS_COMPLETED = "analysis_completed"
    IMPLEMENTATION_COMPLETED = "implementation_completed"
    ERROR = "error"


class WorkflowEvent(BaseModel):
    """Structured event emitted by the workflow orchestrator.

    Attributes:
        event_type: The category of event.
        ticket_id: Ticket key the event belongs to.
        timestamp: When the event occurred (UTC timezone).
        details: Additional context specific to the event type.

    Example:
        >>> event = WorkflowEvent(
        ...     event_type=EventType.PROGRESS,
        ...     ticket_id="PROJ-123",
        ...     details={"phase": "analyzing_code", "percentage": 30},
        ... )
    """

    event_type: EventType = Field(
        ...,
        description="The category of event being emitted",
    )

    ticket_id: str = Field(
        ...,
        min_length=1,
        description="Ticket key the event belongs to",
    )

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC timezone)",
    )

    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Additional context specific to the event type",
    )

    def to_log_dict(self) -> Dict[str, Any]:
        """Flatten the event for structured logging.

        Returns:
            Dict[str, Any]: Event fields with details merged in and the
            timestamp as an ISO string. Detail keys that collide with
            LogRecord attributes are prefixed with "detail_".
        """
        details = {
            (f"detail_{key}" if key in _RESERVED_LOG_KEYS else key): value
            for key, value in self.details.items()
        }
        return {
            "event_type": self.event_type.value,
            "ticket_id": self.ticket_id,
            "timestamp": self.timestamp.isoformat(),
            **details,
        }
