"""Workflow state models.

This module defines the data models for the per-ticket workflow, including:
- WorkflowPhase: Ordered pipeline phases
- WorkflowState: Coarse run state of a workflow
- WorkflowRecord: Persisted state of one ticket's workflow
- ProgressEntry: Append-only progress trail entry
- AnalysisCacheEntry: Content-addressed cached analysis
- WorkflowStatus / WorkflowSummary: Read models for status and history

The models use Pydantic for validation, consistent with the analysis and
implementation models they embed.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from ticketflow.analysis.models import AnalysisResult
from ticketflow.github.models import PullRequestInfo
from ticketflow.implementation.models import ImplementationResult


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowPhase(str, Enum):
    """Phases a ticket moves through, in pipeline order.

    Phase Flow:
        not_started → fetching_ticket → analyzing_code → waiting_approval
        → creating_branch → implementing → building → testing
        → committing → pushing → creating_pull_request → updating_jira
        → completed

    FAILED and CANCELLED are terminal and reachable from any phase.
    """

    NOT_STARTED = "not_started"
    FETCHING_TICKET = "fetching_ticket"
    ANALYZING_CODE = "analyzing_code"
    WAITING_APPROVAL = "waiting_approval"
    IMPLEMENTING = "implementing"
    BUILDING = "building"
    TESTING = "testing"
    CREATING_BRANCH = "creating_branch"
    COMMITTING = "committing"
    PUSHING = "pushing"
    CREATING_PULL_REQUEST = "creating_pull_request"
    UPDATING_JIRA = "updating_jira"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_PHASES = frozenset(
    {WorkflowPhase.COMPLETED, WorkflowPhase.FAILED, WorkflowPhase.CANCELLED}
)


def is_terminal_phase(phase: WorkflowPhase) -> bool:
    """Check if a phase ends the workflow."""
    return phase in TERMINAL_PHASES


class WorkflowState(str, Enum):
    """Coarse run state of a workflow.

    Attributes:
        RUNNING: An operation is executing phases.
        PAUSED: Created but not started.
        WAITING_INPUT: Analysis done, waiting for approval or revision.
        COMPLETED: Implementation finished.
        FAILED: An operation failed; see the record's errors.
        CANCELLED: Cancelled by a caller.
    """

    RUNNING = "running"
    PAUSED = "paused"
    WAITING_INPUT = "waiting_input"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WorkflowRecord(BaseModel):
    """Persisted state of one ticket's workflow.

    There is exactly one record per ticket id. Records are overwritten in
    place and never deleted.

    Attributes:
        ticket_id: Tracker ticket key.
        ticket_title: Ticket summary at creation time.
        current_phase: Most recent phase reached.
        state: Coarse run state.
        analysis: Latest analysis, once produced.
        implementation: Latest implementation result, once produced.
        pull_request: Pull request opened for the ticket, if any.
        errors: Ordered error messages from failed operations.
        is_success: True once the implementation completed.
        started_at: When the record was created (UTC).
        completed_at: When the workflow reached a terminal phase (UTC).
        updated_at: When the record was last modified (UTC).
    """

    ticket_id: str = Field(
        ...,
        min_length=1,
        description="Tracker ticket key",
    )

    ticket_title: str = Field(
        default="",
        description="Ticket summary at creation time",
    )

    current_phase: WorkflowPhase = Field(
        default=WorkflowPhase.NOT_STARTED,
        description="Most recent phase reached",
    )

    state: WorkflowState = Field(
        default=WorkflowState.PAUSED,
        description="Coarse run state of the workflow",
    )

    analysis: Optional[AnalysisResult] = None
    implementation: Optional[ImplementationResult] = None
    pull_request: Optional[PullRequestInfo] = None

    errors: List[str] = Field(
        default_factory=list,
        description="Ordered error messages from failed operations",
    )

    is_success: bool = False

    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=_utcnow)

    def touch(self) -> None:
        self.updated_at = _utcnow()


class ProgressEntry(BaseModel):
    """One step of a ticket's progress trail."""

    ticket_id: str = Field(..., min_length=1)
    phase: WorkflowPhase
    state: Optional[WorkflowState] = None
    percentage: int = Field(..., ge=0, le=100)
    message: str = ""
    timestamp: datetime = Field(default_factory=_utcnow)


class AnalysisCacheEntry(BaseModel):
    """A cached analysis keyed by ticket id and content hash.

    Attributes:
        ticket_id: Ticket key the analysis belongs to.
        content_hash: Hash of the ticket id, title and description.
        analysis_json: Serialized AnalysisResult.
        cached_at: When the entry was last written (UTC).
        last_accessed_at: When the entry was last read or written (UTC).
        expires_at: Optional expiry; None means the entry never expires.
    """

    ticket_id: str = Field(..., min_length=1)
    content_hash: str = Field(..., min_length=1)
    analysis_json: str
    cached_at: datetime = Field(default_factory=_utcnow)
    last_accessed_at: datetime = Field(default_factory=_utcnow)
    expires_at: Optional[datetime] = None

    @property
    def cache_key(self) -> str:
        return make_cache_key(self.ticket_id, self.content_hash)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or _utcnow()) >= self.expires_at


def make_cache_key(ticket_id: str, content_hash: str) -> str:
    """Build the cache key for a ticket and content hash."""
    return f"{ticket_id}_{content_hash}"


class WorkflowStatus(BaseModel):
    """Point-in-time status of a ticket's workflow."""

    ticket_id: str
    phase: WorkflowPhase
    state: Optional[WorkflowState] = None
    percentage: int = Field(default=0, ge=0, le=100)
    message: str = ""
    last_updated: datetime = Field(default_factory=_utcnow)
    analysis: Optional[AnalysisResult] = None


class WorkflowSummary(BaseModel):
    """History row describing a workflow run."""

    ticket_id: str
    ticket_title: str = ""
    final_phase: WorkflowPhase
    is_success: bool = False
    started_at: datetime
    completed_at: Optional[datetime] = None
    pull_request_url: Optional[str] = None

    @classmethod
    def from_record(cls, record: WorkflowRecord) -> "WorkflowSummary":
        return cls(
            ticket_id=record.ticket_id,
            ticket_title=record.ticket_title,
            final_phase=record.current_phase,
            is_success=record.is_success,
            started_at=record.started_at,
            completed_at=record.completed_at,
            pull_request_url=record.pull_request.url if record.pull_request else None,
        )
