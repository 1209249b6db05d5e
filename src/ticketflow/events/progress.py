"""Per-ticket progress log.

Every workflow step is published here. A publish:
1. updates the in-memory current status for the ticket
2. appends a durable ProgressEntry through the WorkflowStore
3. notifies subscribers with a PROGRESS event

Steps 2 and 3 are best-effort: failures are logged and never abort the
workflow step that published. Only the most recently updated tickets
are kept in memory; older ones are read back from the store.

Source:
- src/ticketflow/state/store.py (WorkflowStore.append_progress)
- src/ticketflow/events/emitter.py (EventEmitter)
"""

import logging
from collections import OrderedDict
from typing import Optional

from ticketflow.events.emitter import EventEmitter, NullEventEmitter
from ticketflow.events.models import EventType, WorkflowEvent
from ticketflow.state.models import ProgressEntry, WorkflowPhase, WorkflowState
from ticketflow.state.store import WorkflowStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_TRACKED_TICKETS = 1000


class ProgressLog:
    """Append-only progress trail with live notification fan-out.

    Attributes:
        store: Durable storage for progress entries.
        subscribers: Emitter receiving PROGRESS events.
        max_tracked: Tickets whose latest entry is kept in memory.
    """

    def __init__(
        self,
        store: WorkflowStore,
        subscribers: Optional[EventEmitter] = None,
        max_tracked: int = DEFAULT_MAX_TRACKED_TICKETS,
    ):
        self.store = store
        self.subscribers = subscribers or NullEventEmitter()
        self.max_tracked = max_tracked
        self._current: "OrderedDict[str, ProgressEntry]" = OrderedDict()

    async def publish(
        self,
        ticket_id: str,
        phase: WorkflowPhase,
        percentage: int,
        message: str,
        state: Optional[WorkflowState] = None,
    ) -> ProgressEntry:
        """Record a progress step for a ticket.

        Args:
            ticket_id: Ticket key.
            phase: Phase the step belongs to.
            percentage: Overall completion, 0 to 100.
            message: Human-readable step description.
            state: Optional run state at this step.

        Returns:
            The published entry.
        """
        entry = ProgressEntry(
            ticket_id=ticket_id,
            phase=phase,
            state=state,
            percentage=percentage,
            message=message,
        )
        self._current[ticket_id] = entry
        self._current.move_to_end(ticket_id)
        while len(self._current) > self.max_tracked:
            self._current.popitem(last=False)

        try:
            await self.store.append_progress(entry)
        except Exception:
            logger.exception(
                "Failed to persist progress entry",
                extra={"ticket_id": ticket_id, "phase": phase.value},
            )

        try:
            await self.subscribers.emit(
                WorkflowEvent(
                    event_type=EventType.PROGRESS,
                    ticket_id=ticket_id,
                    timestamp=entry.timestamp,
                    details={
                        "phase": phase.value,
                        "state": state.value if state else None,
                        "percentage": percentage,
                        "message": message,
                    },
                )
            )
        except Exception:
            logger.exception(
                "Failed to notify progress subscribers",
                extra={"ticket_id": ticket_id, "phase": phase.value},
            )

        return entry

    def current(self, ticket_id: str) -> Optional[ProgressEntry]:
        """Latest entry published by this process, if any."""
        return self._current.get(ticket_id)

    async def latest(self, ticket_id: str) -> Optional[ProgressEntry]:
        """Latest entry from memory, falling back to the durable trail."""
        entry = self._current.get(ticket_id)
        if entry is not None:
            return entry
        try:
            return await self.store.latest_progress(ticket_id)
        except Exception:
            logger.exception(
                "Failed to read progress entry",
                extra={"ticket_id": ticket_id},
            )
            return None
