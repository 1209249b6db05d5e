"""Workflow state, persistence and per-ticket leases.

Tickets move through ordered phases:
- not_started → fetching_ticket → analyzing_code → waiting_approval
- → creating_branch → implementing → building → testing
- → committing → pushing → creating_pull_request → updating_jira → completed

State is kept in memory by default, or in PostgreSQL when a database URL
is configured.
"""

from ticketflow.state.locks import TicketLocks
from ticketflow.state.models import (
    AnalysisCacheEntry,
    ProgressEntry,
    WorkflowPhase,
    WorkflowRecord,
    WorkflowState,
    WorkflowStatus,
    WorkflowSummary,
    is_terminal_phase,
)
from ticketflow.state.repository import DatabaseError, PostgresWorkflowStore
from ticketflow.state.store import InMemoryWorkflowStore, WorkflowStore

__all__ = [
    # Models
    "AnalysisCacheEntry",
    "ProgressEntry",
    "WorkflowPhase",
    "WorkflowRecord",
    "WorkflowState",
    "WorkflowStatus",
    "WorkflowSummary",
    "is_terminal_phase",
    # Storage
    "DatabaseError",
    "InMemoryWorkflowStore",
    "PostgresWorkflowStore",
    "WorkflowStore",
    # Leases
    "TicketLocks",
]
