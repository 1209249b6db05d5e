"""PostgreSQL store for workflow state persistence.

This module implements the WorkflowStore protocol using asyncpg for async
PostgreSQL access. It provides:
- Connection pooling for production use
- Upserts for workflow records, cache entries and pending analyses
- An append-only progress trail

JSONB columns are written as JSON text and decoded with the pydantic
models, so the store never needs custom asyncpg codecs.

Source:
- migrations/001_workflow_state.sql (schema definition)
- src/ticketflow/state/store.py (WorkflowStore protocol)
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, List, Optional

import asyncpg

from ticketflow.analysis.models import AnalysisResult
from ticketflow.github.models import PullRequestInfo
from ticketflow.implementation.models import ImplementationResult
from ticketflow.state.models import (
    AnalysisCacheEntry,
    ProgressEntry,
    WorkflowPhase,
    WorkflowRecord,
    WorkflowState,
)


logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Raised when a database operation fails.

    Attributes:
        message: Human-readable error description.
        original_error: The underlying exception, if any.
    """

    def __init__(
        self,
        message: str,
        original_error: Optional[Exception] = None,
    ):
        self.message = message
        self.original_error = original_error
        super().__init__(message)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _json_text(value: Any) -> Optional[str]:
    # asyncpg may hand JSONB back as already-decoded text or as str
    if value is None:
        return None
    return value if isinstance(value, str) else json.dumps(value)


class PostgresWorkflowStore:
    """PostgreSQL implementation of the WorkflowStore protocol.

    The store expects the schema from migrations/001_workflow_state.sql to
    be applied before use.

    Attributes:
        connection_string: PostgreSQL connection URL.
        min_pool_size: Minimum connections in pool.
        max_pool_size: Maximum connections in pool.

    Example:
        >>> async with PostgresWorkflowStore("postgresql://...") as store:
        ...     record = await store.get_workflow("PROJ-123")
    """

    def __init__(
        self,
        connection_string: str,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ):
        self.connection_string = connection_string
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def pool(self) -> asyncpg.Pool:
        """Get the connection pool, raising if not connected.

        Raises:
            DatabaseError: If the pool is not initialized.
        """
        if self._pool is None:
            raise DatabaseError(
                "Database pool not initialized. Call connect() first."
            )
        return self._pool

    async def connect(self) -> None:
        """Initialize the connection pool.

        Raises:
            DatabaseError: If connection fails.
        """
        if self._pool is not None:
            logger.warning("Connection pool already initialized")
            return

        try:
            logger.info(
                "Connecting to PostgreSQL",
                extra={
                    "min_pool_size": self.min_pool_size,
                    "max_pool_size": self.max_pool_size,
                },
            )
            self._pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
            )
            logger.info("PostgreSQL connection pool established")
        except Exception as e:
            logger.error(
                "Failed to connect to PostgreSQL",
                extra={"error": str(e)},
            )
            raise DatabaseError(
                f"Failed to connect to PostgreSQL: {e}",
                original_error=e,
            ) from e

    async def disconnect(self) -> None:
        if self._pool is not None:
            logger.info("Closing PostgreSQL connection pool")
            await self._pool.close()
            self._pool = None

    async def __aenter__(self) -> "PostgresWorkflowStore":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """Yield a connection with an active transaction."""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    # ------------------------------------------------------------------
    # Workflow records
    # ------------------------------------------------------------------

    async def get_workflow(self, ticket_id: str) -> Optional[WorkflowRecord]:
        """Get the workflow record for a ticket.

        Raises:
            DatabaseError: If the query fails.
        """
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT
                        ticket_id,
                        ticket_title,
                        current_phase,
                        state,
                        analysis,
                        implementation,
                        pull_request,
                        errors,
                        is_success,
                        started_at,
                        completed_at,
                        updated_at
                    FROM workflows
                    WHERE ticket_id = $1
                    """,
                    ticket_id,
                )
        except Exception as e:
            logger.error(
                "Failed to get workflow record",
                extra={"ticket_id": ticket_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to get workflow record: {e}",
                original_error=e,
            ) from e

        return self._row_to_record(row) if row is not None else None

    async def save_workflow(self, record: WorkflowRecord) -> None:
        """Insert or overwrite the workflow record for its ticket.

        Raises:
            DatabaseError: If the write fails.
        """
        try:
            async with self._transaction() as conn:
                await conn.execute(
                    """
                    INSERT INTO workflows (
                        ticket_id,
                        ticket_title,
                        current_phase,
                        state,
                        analysis,
                        implementation,
                        pull_request,
                        errors,
                        is_success,
                        started_at,
                        completed_at,
                        updated_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                    ON CONFLICT (ticket_id) DO UPDATE SET
                        ticket_title = EXCLUDED.ticket_title,
                        current_phase = EXCLUDED.current_phase,
                        state = EXCLUDED.state,
                        analysis = EXCLUDED.analysis,
                        implementation = EXCLUDED.implementation,
                        pull_request = EXCLUDED.pull_request,
                        errors = EXCLUDED.errors,
                        is_success = EXCLUDED.is_success,
                        completed_at = EXCLUDED.completed_at,
                        updated_at = EXCLUDED.updated_at
                    """,
                    record.ticket_id,
                    record.ticket_title,
                    record.current_phase.value,
                    record.state.value,
                    record.analysis.model_dump_json() if record.analysis else None,
                    record.implementation.model_dump_json()
                    if record.implementation
                    else None,
                    record.pull_request.model_dump_json()
                    if record.pull_request
                    else None,
                    json.dumps(record.errors),
                    record.is_success,
                    record.started_at,
                    record.completed_at,
                    record.updated_at,
                )
        except Exception as e:
            logger.error(
                "Failed to save workflow record",
                extra={"ticket_id": record.ticket_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to save workflow record: {e}",
                original_error=e,
            ) from e

    async def list_workflows(self, limit: int) -> List[WorkflowRecord]:
        """List the most recently started workflow records.

        Raises:
            DatabaseError: If the query fails.
        """
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT
                        ticket_id,
                        ticket_title,
                        current_phase,
                        state,
                        analysis,
                        implementation,
                        pull_request,
                        errors,
                        is_success,
                        started_at,
                        completed_at,
                        updated_at
                    FROM workflows
                    ORDER BY started_at DESC
                    LIMIT $1
                    """,
                    limit,
                )
        except Exception as e:
            logger.error("Failed to list workflow records", extra={"error": str(e)})
            raise DatabaseError(
                f"Failed to list workflow records: {e}",
                original_error=e,
            ) from e

        return [self._row_to_record(row) for row in rows]

    @staticmethod
    def _row_to_record(row: Any) -> WorkflowRecord:
        analysis = _json_text(row["analysis"])
        implementation = _json_text(row["implementation"])
        pull_request = _json_text(row["pull_request"])
        errors = _json_text(row["errors"])

        return WorkflowRecord(
            ticket_id=row["ticket_id"],
            ticket_title=row["ticket_title"],
            current_phase=WorkflowPhase(row["current_phase"]),
            state=WorkflowState(row["state"]),
            analysis=AnalysisResult.model_validate_json(analysis) if analysis else None,
            implementation=ImplementationResult.model_validate_json(implementation)
            if implementation
            else None,
            pull_request=PullRequestInfo.model_validate_json(pull_request)
            if pull_request
            else None,
            errors=json.loads(errors) if errors else [],
            is_success=row["is_success"],
            started_at=_utc(row["started_at"]),
            completed_at=_utc(row["completed_at"]),
            updated_at=_utc(row["updated_at"]),
        )

    # ------------------------------------------------------------------
    # Progress trail
    # ------------------------------------------------------------------

    async def append_progress(self, entry: ProgressEntry) -> None:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO workflow_progress (
                        ticket_id,
                        phase,
                        state,
                        percentage,
                        message,
                        timestamp
                    ) VALUES ($1, $2, $3, $4, $5, $6)
                    """,
                    entry.ticket_id,
                    entry.phase.value,
                    entry.state.value if entry.state else None,
                    entry.percentage,
                    entry.message,
                    entry.timestamp,
                )
        except Exception as e:
            raise DatabaseError(
                f"Failed to append progress entry: {e}",
                original_error=e,
            ) from e

    async def latest_progress(self, ticket_id: str) -> Optional[ProgressEntry]:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT ticket_id, phase, state, percentage, message, timestamp
                    FROM workflow_progress
                    WHERE ticket_id = $1
                    ORDER BY timestamp DESC, id DESC
                    LIMIT 1
                    """,
                    ticket_id,
                )
        except Exception as e:
            raise DatabaseError(
                f"Failed to read progress entry: {e}",
                original_error=e,
            ) from e

        if row is None:
            return None

        return ProgressEntry(
            ticket_id=row["ticket_id"],
            phase=WorkflowPhase(row["phase"]),
            state=WorkflowState(row["state"]) if row["state"] else None,
            percentage=row["percentage"],
            message=row["message"],
            timestamp=_utc(row["timestamp"]),
        )

    # ------------------------------------------------------------------
    # Analysis cache
    # ------------------------------------------------------------------

    async def get_cache_entry(self, cache_key: str) -> Optional[AnalysisCacheEntry]:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT
                        ticket_id,
                        content_hash,
                        analysis_json,
                        cached_at,
                        last_accessed_at,
                        expires_at
                    FROM analysis_cache
                    WHERE cache_key = $1
                    """,
                    cache_key,
                )
        except Exception as e:
            raise DatabaseError(
                f"Failed to read cache entry: {e}",
                original_error=e,
            ) from e

        return self._row_to_cache_entry(row) if row is not None else None

    async def put_cache_entry(self, entry: AnalysisCacheEntry) -> None:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO analysis_cache (
                        cache_key,
                        ticket_id,
                        content_hash,
                        analysis_json,
                        cached_at,
                        last_accessed_at,
                        expires_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                    ON CONFLICT (cache_key) DO UPDATE SET
                        analysis_json = EXCLUDED.analysis_json,
                        cached_at = EXCLUDED.cached_at,
                        last_accessed_at = EXCLUDED.last_accessed_at,
                        expires_at = EXCLUDED.expires_at
                    """,
                    entry.cache_key,
                    entry.ticket_id,
                    entry.content_hash,
                    entry.analysis_json,
                    entry.cached_at,
                    entry.last_accessed_at,
                    entry.expires_at,
                )
        except Exception as e:
            raise DatabaseError(
                f"Failed to write cache entry: {e}",
                original_error=e,
            ) from e

    async def delete_cache_entry(self, cache_key: str) -> None:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    "DELETE FROM analysis_cache WHERE cache_key = $1",
                    cache_key,
                )
        except Exception as e:
            raise DatabaseError(
                f"Failed to delete cache entry: {e}",
                original_error=e,
            ) from e

    async def list_cache_entries(self, limit: int) -> List[AnalysisCacheEntry]:
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT
                        ticket_id,
                        content_hash,
                        analysis_json,
                        cached_at,
                        last_accessed_at,
                        expires_at
                    FROM analysis_cache
                    ORDER BY last_accessed_at DESC
                    LIMIT $1
                    """,
                    limit,
                )
        except Exception as e:
            raise DatabaseError(
                f"Failed to list cache entries: {e}",
                original_error=e,
            ) from e

        return [self._row_to_cache_entry(row) for row in rows]

    @staticmethod
    def _row_to_cache_entry(row: Any) -> AnalysisCacheEntry:
        return AnalysisCacheEntry(
            ticket_id=row["ticket_id"],
            content_hash=row["content_hash"],
            analysis_json=row["analysis_json"],
            cached_at=_utc(row["cached_at"]),
            last_accessed_at=_utc(row["last_accessed_at"]),
            expires_at=_utc(row["expires_at"]),
        )

    # ------------------------------------------------------------------
    # Pending analyses
    # ------------------------------------------------------------------

    async def get_pending_analysis(self, ticket_id: str) -> Optional[AnalysisResult]:
        try:
            async with self.pool.acquire() as conn:
                value = await conn.fetchval(
                    "SELECT analysis FROM pending_analyses WHERE ticket_id = $1",
                    ticket_id,
                )
        except Exception as e:
            raise DatabaseError(
                f"Failed to read pending analysis: {e}",
                original_error=e,
            ) from e

        text = _json_text(value)
        return AnalysisResult.model_validate_json(text) if text else None

    async def set_pending_analysis(
        self, ticket_id: str, analysis: AnalysisResult
    ) -> None:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO pending_analyses (ticket_id, analysis, updated_at)
                    VALUES ($1, $2, $3)
                    ON CONFLICT (ticket_id) DO UPDATE SET
                        analysis = EXCLUDED.analysis,
                        updated_at = EXCLUDED.updated_at
                    """,
                    ticket_id,
                    analysis.model_dump_json(),
                    datetime.now(timezone.utc),
                )
        except Exception as e:
            raise DatabaseError(
                f"Failed to store pending analysis: {e}",
                original_error=e,
            ) from e

    async def clear_pending_analysis(self, ticket_id: str) -> None:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    "DELETE FROM pending_analyses WHERE ticket_id = $1",
                    ticket_id,
                )
        except Exception as e:
            raise DatabaseError(
                f"Failed to clear pending analysis: {e}",
                original_error=e,
            ) from e

    async def health_check(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except Exception as e:
            logger.warning("Database health check failed", extra={"error": str(e)})
            return False
