"""Workflow state storage protocol and in-memory implementation.

The orchestrator, analysis cache and progress log all persist through a
single WorkflowStore. Two implementations exist:
- InMemoryWorkflowStore (this module): default, process-local
- PostgresWorkflowStore (state/repository.py): durable, asyncpg-backed

Source:
- src/ticketflow/state/models.py (WorkflowRecord, ProgressEntry,
  AnalysisCacheEntry)
"""

import asyncio
from typing import Dict, List, Optional, Protocol, runtime_checkable

from ticketflow.analysis.models import AnalysisResult
from ticketflow.state.models import (
    AnalysisCacheEntry,
    ProgressEntry,
    WorkflowRecord,
)


@runtime_checkable
class WorkflowStore(Protocol):
    """Protocol for workflow state persistence.

    Implementations must:
    - Keep exactly one WorkflowRecord per ticket id (save overwrites)
    - Treat progress entries as append-only
    - Return list_workflows ordered by started_at, newest first
    - Return list_cache_entries ordered by last_accessed_at, newest first
    """

    async def get_workflow(self, ticket_id: str) -> Optional[WorkflowRecord]:
        """Get the workflow record for a ticket, or None."""
        ...

    async def save_workflow(self, record: WorkflowRecord) -> None:
        """Insert or overwrite the workflow record for its ticket."""
        ...

    async def list_workflows(self, limit: int) -> List[WorkflowRecord]:
        """List the most recently started workflow records."""
        ...

    async def append_progress(self, entry: ProgressEntry) -> None:
        """Append a progress entry."""
        ...

    async def latest_progress(self, ticket_id: str) -> Optional[ProgressEntry]:
        """Get the newest progress entry for a ticket, or None."""
        ...

    async def get_cache_entry(self, cache_key: str) -> Optional[AnalysisCacheEntry]:
        ...

    async def put_cache_entry(self, entry: AnalysisCacheEntry) -> None:
        """Insert or overwrite a cache entry by its key."""
        ...

    async def delete_cache_entry(self, cache_key: str) -> None:
        ...

    async def list_cache_entries(self, limit: int) -> List[AnalysisCacheEntry]:
        """List the most recently accessed cache entries."""
        ...

    async def get_pending_analysis(self, ticket_id: str) -> Optional[AnalysisResult]:
        ...

    async def set_pending_analysis(
        self, ticket_id: str, analysis: AnalysisResult
    ) -> None:
        ...

    async def clear_pending_analysis(self, ticket_id: str) -> None:
        ...

    async def health_check(self) -> bool:
        """Return True when the store is reachable."""
        ...


class InMemoryWorkflowStore:
    """Process-local WorkflowStore.

    Values are deep-copied on the way in and out so callers never share
    mutable state with the store, matching the durable implementation.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, WorkflowRecord] = {}
        self._progress: Dict[str, List[ProgressEntry]] = {}
        self._cache: Dict[str, AnalysisCacheEntry] = {}
        self._pending: Dict[str, AnalysisResult] = {}
        self._lock = asyncio.Lock()

    async def get_workflow(self, ticket_id: str) -> Optional[WorkflowRecord]:
        record = self._workflows.get(ticket_id)
        return record.model_copy(deep=True) if record else None

    async def save_workflow(self, record: WorkflowRecord) -> None:
        async with self._lock:
            self._workflows[record.ticket_id] = record.model_copy(deep=True)

    async def list_workflows(self, limit: int) -> List[WorkflowRecord]:
        records = sorted(
            self._workflows.values(),
            key=lambda r: r.started_at,
            reverse=True,
        )
        return [r.model_copy(deep=True) for r in records[:limit]]

    async def append_progress(self, entry: ProgressEntry) -> None:
        async with self._lock:
            self._progress.setdefault(entry.ticket_id, []).append(
                entry.model_copy(deep=True)
            )

    async def latest_progress(self, ticket_id: str) -> Optional[ProgressEntry]:
        entries = self._progress.get(ticket_id)
        if not entries:
            return None
        return max(entries, key=lambda e: e.timestamp).model_copy(deep=True)

    async def progress_history(self, ticket_id: str) -> List[ProgressEntry]:
        """Return every progress entry for a ticket in append order."""
        return [e.model_copy(deep=True) for e in self._progress.get(ticket_id, [])]

    async def get_cache_entry(self, cache_key: str) -> Optional[AnalysisCacheEntry]:
        entry = self._cache.get(cache_key)
        return entry.model_copy(deep=True) if entry else None

    async def put_cache_entry(self, entry: AnalysisCacheEntry) -> None:
        async with self._lock:
            self._cache[entry.cache_key] = entry.model_copy(deep=True)

    async def delete_cache_entry(self, cache_key: str) -> None:
        async with self._lock:
            self._cache.pop(cache_key, None)

    async def list_cache_entries(self, limit: int) -> List[AnalysisCacheEntry]:
        entries = sorted(
            self._cache.values(),
            key=lambda e: e.last_accessed_at,
            reverse=True,
        )
        return [e.model_copy(deep=True) for e in entries[:limit]]

    async def get_pending_analysis(self, ticket_id: str) -> Optional[AnalysisResult]:
        analysis = self._pending.get(ticket_id)
        return analysis.model_copy(deep=True) if analysis else None

    async def set_pending_analysis(
        self, ticket_id: str, analysis: AnalysisResult
    ) -> None:
        async with self._lock:
            self._pending[ticket_id] = analysis.model_copy(deep=True)

    async def clear_pending_analysis(self, ticket_id: str) -> None:
        async with self._lock:
            self._pending.pop(ticket_id, None)

    async def health_check(self) -> bool:
        return True
