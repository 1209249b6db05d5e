"""Per-ticket leases and cancellation signals.

Mutating workflow operations on one ticket are serialized by a per-ticket
asyncio.Lock. The lease is re-entrant within a task chain: an operation
that already holds the lease for a ticket (e.g., start_workflow calling
analyze) re-enters without blocking. Different tickets never contend.

Entries exist only while some task holds or waits for a ticket's lease;
the last one out drops the lock and any pending cancellation signal.
"""

import asyncio
import contextvars
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, FrozenSet, Optional

logger = logging.getLogger(__name__)

_held_leases: contextvars.ContextVar[FrozenSet[str]] = contextvars.ContextVar(
    "ticketflow_held_leases", default=frozenset()
)


class TicketLocks:
    """Registry of per-ticket locks and cancellation signals.

    Example:
        >>> locks = TicketLocks()
        >>> async with locks.lease("PROJ-1"):
        ...     async with locks.lease("PROJ-1"):  # re-entrant
        ...         ...
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}
        self._cancel_reasons: Dict[str, str] = {}

    def is_held(self, ticket_id: str) -> bool:
        """True if the current task chain already holds the ticket lease."""
        return ticket_id in _held_leases.get()

    def is_locked(self, ticket_id: str) -> bool:
        """True if any task currently holds the ticket lease."""
        lock = self._locks.get(ticket_id)
        return lock is not None and lock.locked()

    def in_use(self, ticket_id: str) -> bool:
        """True if any task holds or is waiting for the ticket lease."""
        return self._users.get(ticket_id, 0) > 0

    @property
    def tracked_tickets(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def lease(self, ticket_id: str) -> AsyncIterator[None]:
        """Hold the ticket lease for the duration of the block."""
        if self.is_held(ticket_id):
            yield
            return

        lock = self._locks.setdefault(ticket_id, asyncio.Lock())
        self._users[ticket_id] = self._users.get(ticket_id, 0) + 1
        try:
            async with lock:
                token = _held_leases.set(_held_leases.get() | {ticket_id})
                try:
                    yield
                finally:
                    _held_leases.reset(token)
        finally:
            self._users[ticket_id] -= 1
            if self._users[ticket_id] == 0:
                del self._users[ticket_id]
                del self._locks[ticket_id]
                self._cancel_reasons.pop(ticket_id, None)

    def request_cancel(self, ticket_id: str, reason: str) -> None:
        """Signal in-flight operations on the ticket to stop."""
        self._cancel_reasons[ticket_id] = reason
        logger.info(
            "Cancellation requested",
            extra={"ticket_id": ticket_id, "reason": reason},
        )

    def clear_cancel(self, ticket_id: str) -> None:
        """Reset the cancellation signal before a new operation starts."""
        self._cancel_reasons.pop(ticket_id, None)

    def is_cancelled(self, ticket_id: str) -> bool:
        return ticket_id in self._cancel_reasons

    def cancel_reason(self, ticket_id: str) -> Optional[str]:
        return self._cancel_reasons.get(ticket_id)
