"""Workflow orchestrator driving tickets from analysis to pull request.

A ticket's workflow has two halves:
- analyze: fetch the ticket, reuse a cached analysis or build code context
  in an isolated workspace and ask the AI for one, then wait for approval
- approve_and_implement: generate code from the approved analysis, apply
  it, build, test, commit, push, open a pull request and update the ticket

Every phase change is persisted on the WorkflowRecord and published to the
progress log. Mutating operations on one ticket are serialized by a
per-ticket lease; cancellation is cooperative and checked at phase
boundaries. The orchestrator delegates all work to injected dependencies.

Source:
- src/ticketflow/collaborators.py (TicketTracker, VersionControl, ...)
- src/ticketflow/state/store.py (WorkflowStore)
- src/ticketflow/state/locks.py (TicketLocks)
- src/ticketflow/analysis/cache.py (AnalysisCache)
- src/ticketflow/provisioner/workspace.py (WorkspaceManager)
- src/ticketflow/context/builder.py (SemanticContextBuilder)
- src/ticketflow/context/optimizer.py (ContextOptimizer)
- src/ticketflow/events/progress.py (ProgressLog)
- src/ticketflow/events/emitter.py (EventEmitter)
- src/ticketflow/implementation/formatting.py (branch, commit, PR text)
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional

from ticketflow.analysis.cache import AnalysisCache, compute_content_hash
from ticketflow.analysis.models import (
    AnalysisResult,
    FileOperation,
    GeneratedCode,
    GeneratedFile,
)
from ticketflow.collaborators import (
    AICompletionService,
    PullRequestService,
    TicketTracker,
    ValidationRunner,
    VersionControl,
)
from ticketflow.config import ConfigurationError, TicketflowSettings
from ticketflow.context.builder import SemanticContextBuilder
from ticketflow.context.optimizer import ContextOptimizer
from ticketflow.events.emitter import EventEmitter, NullEventEmitter
from ticketflow.events.models import EventType, WorkflowEvent
from ticketflow.events.progress import ProgressLog
from ticketflow.github.models import PullRequestInfo, PullRequestRequest
from ticketflow.implementation.formatting import (
    build_checklist,
    build_pull_request_body,
    build_requirements,
    describe_changes,
    generate_branch_name,
    pull_request_labels,
    render_commit_message,
)
from ticketflow.implementation.models import (
    FileChange,
    ImplementationResult,
    ImplementationStatus,
)
from ticketflow.provisioner.workspace import WorkspaceManager
from ticketflow.state.locks import TicketLocks
from ticketflow.state.models import (
    WorkflowPhase,
    WorkflowRecord,
    WorkflowState,
    WorkflowStatus,
    WorkflowSummary,
    is_terminal_phase,
)
from ticketflow.state.store import WorkflowStore
from ticketflow.tracker.models import Ticket
from ticketflow.vcs.git import GitCommandError, RepositoryStatus

logger = logging.getLogger(__name__)


class TicketNotFoundError(Exception):
    """The tracker could not return the ticket."""

    def __init__(self, ticket_id: str, cause: Optional[Exception] = None):
        self.ticket_id = ticket_id
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Ticket {ticket_id} not found{detail}")


class NoPendingAnalysisError(Exception):
    """approve_and_implement was called with no analysis awaiting approval."""

    def __init__(self, ticket_id: str):
        self.ticket_id = ticket_id
        super().__init__(f"No pending analysis for ticket {ticket_id}")


class WorkflowCancelledError(Exception):
    """The workflow was cancelled while an operation was running."""

    def __init__(self, ticket_id: str, reason: Optional[str] = None):
        self.ticket_id = ticket_id
        self.reason = reason
        super().__init__(f"Workflow for {ticket_id} was cancelled: {reason or 'no reason'}")


class BuildFailedError(Exception):
    """The build of the generated code failed."""

    def __init__(self, ticket_id: str, errors: List[str]):
        self.ticket_id = ticket_id
        self.errors = list(errors)
        summary = "; ".join(self.errors[:3]) or "no error output"
        super().__init__(f"Build failed for {ticket_id}: {summary}")


def analysis_branch_name(ticket_id: str) -> str:
    """Branch analyses run on, e.g. "PROJ-12" -> "analysis/proj/12"."""
    return f"analysis/{ticket_id.lower().replace('-', '/')}"


def _count_lines(content: str) -> int:
    return len(content.split("\n"))


def _apply_file(root: Path, generated: GeneratedFile) -> Optional[FileChange]:
    """Write one generated file under root.

    Returns:
        The change made, or None when a file to delete does not exist.

    Raises:
        ValueError: If the path resolves outside root.
    """
    target = (root / generated.path).resolve()
    if not target.is_relative_to(root):
        raise ValueError(f"Refusing to write outside the repository: {generated.path}")

    if generated.operation == FileOperation.DELETE:
        if not target.exists():
            return None
        removed = len(target.read_text(encoding="utf-8").splitlines())
        target.unlink()
        return FileChange(path=generated.path, lines_removed=removed)

    target.parent.mkdir(parents=True, exist_ok=True)
    new_lines = _count_lines(generated.content)

    if generated.operation == FileOperation.CREATE:
        target.write_text(generated.content, encoding="utf-8")
        return FileChange(
            path=generated.path,
            lines_added=new_lines,
            description=generated.description,
        )

    existing_lines = (
        len(target.read_text(encoding="utf-8").splitlines()) if target.exists() else 0
    )
    target.write_text(generated.content, encoding="utf-8")
    return FileChange(
        path=generated.path,
        lines_added=max(0, new_lines - existing_lines),
        lines_removed=max(0, existing_lines - new_lines),
        description=generated.description,
    )


class WorkflowOrchestrator:
    """Orchestrates ticket analysis and implementation.

    Accepts all dependencies via constructor injection.

    Attributes:
        settings: Workflow settings (approval, automation flags, git naming).
        store: Persistence for records, progress, cache and pending analyses.
        tracker: Issue tracker client.
        vcs: Version control client for the working repository.
        pr_service: Pull request client.
        ai: AI completion client for analysis and code generation.
        context_builder: Builds the raw code context for a ticket.
        workspace_manager: Provisions isolated workspaces for analysis.
        validation_runner: Runs the build and test commands.
        cache: Content-addressed analysis cache.
        event_emitter: Receives transition, completion and error events.
        progress: Progress log; publishes PROGRESS events to event_emitter.
        locks: Per-ticket leases and cancellation signals.
        optimizer: Shrinks code context to the configured budget.
    """

    def __init__(
        self,
        settings: TicketflowSettings,
        store: WorkflowStore,
        tracker: TicketTracker,
        vcs: VersionControl,
        pr_service: PullRequestService,
        ai: AICompletionService,
        context_builder: SemanticContextBuilder,
        workspace_manager: WorkspaceManager,
        validation_runner: ValidationRunner,
        cache: Optional[AnalysisCache] = None,
        event_emitter: Optional[EventEmitter] = None,
        progress: Optional[ProgressLog] = None,
        locks: Optional[TicketLocks] = None,
        optimizer: Optional[ContextOptimizer] = None,
    ):
        self.settings = settings
        self.store = store
        self.tracker = tracker
        self.vcs = vcs
        self.pr_service = pr_service
        self.ai = ai
        self.context_builder = context_builder
        self.workspace_manager = workspace_manager
        self.validation_runner = validation_runner
        self.cache = cache or AnalysisCache(store)
        self.event_emitter = event_emitter or NullEventEmitter()
        self.progress = progress or ProgressLog(store, self.event_emitter)
        self.locks = locks or TicketLocks()
        self.optimizer = optimizer or ContextOptimizer()
        self._records: Dict[str, WorkflowRecord] = {}

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    async def create_workflow(self, ticket_id: str) -> WorkflowRecord:
        """Create the workflow record for a ticket.

        Idempotent: an existing record is returned without contacting the
        tracker.

        Raises:
            TicketNotFoundError: If the tracker lookup fails.
        """
        async with self._operation(ticket_id):
            record = await self._load_record(ticket_id)
            if record is not None:
                return record

            ticket = await self._fetch_ticket(ticket_id)
            record = WorkflowRecord(ticket_id=ticket_id, ticket_title=ticket.title)
            await self._save(record)
            await self.progress.publish(
                ticket_id,
                WorkflowPhase.NOT_STARTED,
                0,
                "Workflow created, pending analysis start",
                WorkflowState.PAUSED,
            )

            logger.info(
                "Workflow created",
                extra={"ticket_id": ticket_id, "ticket_title": ticket.title},
            )
            return record

    async def start_workflow(self, ticket_id: str) -> WorkflowRecord:
        """Analyze a ticket and, unless approval is required, implement it.

        Returns:
            The record, waiting for approval or completed.
        """
        async with self._operation(ticket_id):
            record = await self._load_record(ticket_id)
            if record is None:
                record = await self.create_workflow(ticket_id)

            logger.info(
                "Starting workflow",
                extra={"ticket_id": ticket_id, "require_approval": self.settings.require_approval},
            )

            async with self._recording_failures(record):
                record.state = WorkflowState.RUNNING
                await self._save(record)

                analysis = await self._analyze(record)
                if self.settings.require_approval:
                    return record

                await self._implement(record, analysis)

            return record

    async def analyze(self, ticket_id: str) -> AnalysisResult:
        """Analyze a ticket and leave the result awaiting approval.

        An unchanged ticket is served from the analysis cache without an
        AI call or a workspace.

        Raises:
            TicketNotFoundError: If the tracker lookup fails.
            WorkflowCancelledError: If the workflow is cancelled meanwhile.
        """
        async with self._operation(ticket_id):
            record = await self._ensure_record(ticket_id)
            async with self._recording_failures(record):
                return await self._analyze(record)

    async def request_revision(self, ticket_id: str, feedback: str) -> AnalysisResult:
        """Re-run the analysis with reviewer feedback in the prompt.

        The cache is bypassed so the feedback reaches the model; the fresh
        result replaces the cached one.

        Raises:
            ValueError: If feedback is empty.
        """
        if not feedback or not feedback.strip():
            raise ValueError("Revision feedback must not be empty")

        async with self._operation(ticket_id):
            record = await self._ensure_record(ticket_id)
            logger.info("Revision requested", extra={"ticket_id": ticket_id})
            async with self._recording_failures(record):
                return await self._analyze(record, feedback=feedback)

    async def approve_and_implement(self, ticket_id: str) -> ImplementationResult:
        """Implement the pending analysis for a ticket.

        Raises:
            NoPendingAnalysisError: If nothing awaits approval. Nothing is
                changed in that case.
            BuildFailedError: If the build of the generated code fails.
        """
        async with self._operation(ticket_id):
            analysis = await self.store.get_pending_analysis(ticket_id)
            if analysis is None:
                raise NoPendingAnalysisError(ticket_id)

            record = await self._ensure_record(ticket_id)
            async with self._recording_failures(record):
                record.state = WorkflowState.RUNNING
                return await self._implement(record, analysis)

    async def cancel_workflow(self, ticket_id: str, reason: str) -> WorkflowRecord:
        """Cancel a ticket's workflow.

        Does not wait for the ticket lease: in-flight operations observe the
        signal at their next phase boundary. Applied file writes and commits
        are not rolled back, but a dirty working tree is reset to the
        default branch.
        """
        if self.locks.in_use(ticket_id):
            self.locks.request_cancel(ticket_id, reason)

        record = await self._ensure_record(ticket_id)
        record.state = WorkflowState.CANCELLED
        if record.implementation is not None and not record.implementation.completed_at:
            record.implementation.status = ImplementationStatus.CANCELLED
        await self._transition(record, WorkflowPhase.CANCELLED)
        await self.store.clear_pending_analysis(ticket_id)
        await self.progress.publish(
            ticket_id,
            WorkflowPhase.CANCELLED,
            self._current_percentage(ticket_id),
            f"Workflow cancelled: {reason}",
            WorkflowState.CANCELLED,
        )

        if self.settings.auto_update_tracker:
            await self._try_comment(ticket_id, f"Workflow cancelled:\n{reason}")

        try:
            if not await self.vcs.is_clean():
                await self.vcs.discard_changes()
                await self.vcs.checkout(self.settings.default_branch)
        except GitCommandError:
            logger.exception(
                "Failed to reset working tree after cancellation",
                extra={"ticket_id": ticket_id},
            )

        logger.info("Workflow cancelled", extra={"ticket_id": ticket_id, "reason": reason})
        return record

    async def get_workflow_status(self, ticket_id: str) -> WorkflowStatus:
        """Current status from progress, then the record, then a default."""
        record = await self._load_record(ticket_id)
        entry = await self.progress.latest(ticket_id)

        if entry is not None:
            status = WorkflowStatus(
                ticket_id=ticket_id,
                phase=entry.phase,
                state=entry.state,
                percentage=entry.percentage,
                message=entry.message,
                last_updated=entry.timestamp,
            )
        elif record is not None:
            completed = record.state == WorkflowState.COMPLETED
            status = WorkflowStatus(
                ticket_id=ticket_id,
                phase=record.current_phase,
                state=record.state,
                percentage=100 if completed else 0,
                message="Completed" if completed else "In progress",
                last_updated=record.updated_at,
            )
        else:
            status = WorkflowStatus(
                ticket_id=ticket_id,
                phase=WorkflowPhase.NOT_STARTED,
                percentage=0,
                message="Not started",
            )

        pending = await self.store.get_pending_analysis(ticket_id)
        if pending is not None:
            status.analysis = pending
        elif record is not None:
            status.analysis = record.analysis
        return status

    async def get_workflow_history(self, limit: int = 20) -> List[WorkflowSummary]:
        records = await self.store.list_workflows(limit)
        records.sort(key=lambda r: r.started_at, reverse=True)
        return [WorkflowSummary.from_record(r) for r in records[:limit]]

    async def send_analysis_to_tracker(self, ticket_id: str, comment: str) -> None:
        """Post a comment (typically a rendered analysis) on the ticket.

        Raises:
            ValueError: If the comment is empty or whitespace.
        """
        if not comment or not comment.strip():
            raise ValueError("Comment must not be empty")
        await self.tracker.add_comment(ticket_id, comment)
        logger.info("Posted comment to tracker", extra={"ticket_id": ticket_id})

    async def find_similar_analyses(
        self, ticket_id: str, limit: int = 3
    ) -> List[AnalysisResult]:
        """Cached analyses that look related to the ticket."""
        ticket = await self._fetch_ticket(ticket_id)
        return await self.cache.find_similar(ticket, limit)

    async def test_connections(self) -> Dict[str, bool]:
        """Check connectivity of the tracker, pull request and AI services."""
        names = ("tracker", "pull_requests", "ai")
        results = await asyncio.gather(
            self.tracker.test_connection(),
            self.pr_service.test_connection(),
            self.ai.test_connection(),
            return_exceptions=True,
        )
        connections = {}
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "Connection test raised",
                    extra={"service": name, "error": str(result)},
                )
                connections[name] = False
            else:
                connections[name] = bool(result)
        return connections

    # -------------------------------------------------------------------------
    # Analysis
    # -------------------------------------------------------------------------

    async def _analyze(
        self, record: WorkflowRecord, feedback: Optional[str] = None
    ) -> AnalysisResult:
        ticket_id = record.ticket_id
        record.state = WorkflowState.RUNNING
        await self._enter_phase(
            record, WorkflowPhase.FETCHING_TICKET, 5, "Fetching ticket information..."
        )

        ticket = await self._fetch_ticket(ticket_id)
        record.ticket_title = ticket.title
        await self._publish(record, 15, "Ticket retrieved successfully")
        self._check_cancelled(ticket_id)

        content_hash = compute_content_hash(ticket)
        if feedback is None:
            cached = await self.cache.get(ticket_id, content_hash)
            if cached is not None:
                await self._await_approval(
                    record, cached, "Analysis retrieved from cache.", from_cache=True
                )
                return cached

        await self._enter_phase(
            record, WorkflowPhase.ANALYZING_CODE, 20, "Preparing workspace..."
        )

        async with self.workspace_manager.workspace(ticket_id) as workspace:
            vcs = workspace.vcs
            snapshot = await vcs.get_status()
            await self._checkout_analysis_branch(vcs, ticket_id)
            try:
                await self._publish(record, 30, "Analyzing code semantically...")
                context = await self.context_builder.build(ticket, vcs)
                context = self.optimizer.optimize(
                    context, self.settings.max_context_size
                )

                self._check_cancelled(ticket_id)
                await self._publish(record, 50, "Analyzing code with AI...")
                analysis = await self.ai.analyze_ticket(ticket, context, feedback)
            finally:
                await self._restore_branch(vcs, ticket_id, snapshot)

        await self.cache.put(ticket_id, content_hash, analysis)
        await self._await_approval(
            record, analysis, "Analysis completed. Awaiting approval.", from_cache=False
        )
        return analysis

    async def _await_approval(
        self,
        record: WorkflowRecord,
        analysis: AnalysisResult,
        message: str,
        from_cache: bool,
    ) -> None:
        self._check_cancelled(record.ticket_id)
        await self.store.set_pending_analysis(record.ticket_id, analysis)
        record.analysis = analysis
        record.state = WorkflowState.WAITING_INPUT
        await self._enter_phase(record, WorkflowPhase.WAITING_APPROVAL, 100, message)
        await self._emit_analysis_event(record.ticket_id, analysis, from_cache)

        logger.info(
            "Analysis ready for approval",
            extra={
                "ticket_id": record.ticket_id,
                "from_cache": from_cache,
                "affected_file_count": len(analysis.affected_files),
            },
        )

    async def _checkout_analysis_branch(self, vcs: VersionControl, ticket_id: str) -> None:
        """Switch to the ticket's analysis branch, else stay on the default."""
        branch = analysis_branch_name(ticket_id)
        default_branch = self.settings.default_branch
        try:
            await vcs.checkout(default_branch)
            await vcs.pull()
            if branch in await vcs.list_branches():
                await vcs.checkout(branch)
            else:
                await vcs.create_branch(branch)
        except GitCommandError as e:
            logger.warning(
                "Could not prepare analysis branch, using default branch",
                extra={"ticket_id": ticket_id, "branch": branch, "error": str(e)},
            )
            try:
                await vcs.checkout(default_branch)
            except GitCommandError:
                logger.exception(
                    "Failed to check out default branch",
                    extra={"ticket_id": ticket_id, "branch": default_branch},
                )

    async def _restore_branch(
        self, vcs: VersionControl, ticket_id: str, snapshot: RepositoryStatus
    ) -> None:
        """Return to the original branch when it had local changes, else the default."""
        branch = (
            snapshot.current_branch
            if not snapshot.is_clean and snapshot.current_branch
            else self.settings.default_branch
        )
        try:
            await vcs.checkout(branch)
        except GitCommandError:
            logger.exception(
                "Failed to restore branch after analysis",
                extra={"ticket_id": ticket_id, "branch": branch},
            )

    # -------------------------------------------------------------------------
    # Implementation
    # -------------------------------------------------------------------------

    async def _implement(
        self, record: WorkflowRecord, analysis: AnalysisResult
    ) -> ImplementationResult:
        ticket_id = record.ticket_id
        ticket = await self._fetch_ticket(ticket_id)

        if self.settings.auto_update_tracker:
            await self._try_comment(ticket_id, "Implementation started automatically.")

        branch = generate_branch_name(
            ticket,
            self.settings.feature_branch_prefix,
            self.settings.bugfix_branch_prefix,
        )
        implementation = ImplementationResult(
            ticket_id=ticket_id,
            branch_name=branch,
            status=ImplementationStatus.IN_PROGRESS,
        )
        record.implementation = implementation

        try:
            await self._run_implementation(record, ticket, analysis, implementation)
            self._check_cancelled(ticket_id)
        except WorkflowCancelledError:
            implementation.status = ImplementationStatus.CANCELLED
            implementation.completed_at = datetime.now(timezone.utc)
            raise
        except BuildFailedError:
            implementation.completed_at = datetime.now(timezone.utc)
            raise
        except Exception as exc:
            implementation.status = ImplementationStatus.FAILED
            implementation.add_error(record.current_phase.value, str(exc))
            implementation.completed_at = datetime.now(timezone.utc)
            raise

        if implementation.status != ImplementationStatus.TESTS_FAILED:
            implementation.status = ImplementationStatus.COMPLETED
        implementation.completed_at = datetime.now(timezone.utc)

        record.state = WorkflowState.COMPLETED
        record.is_success = implementation.is_success
        await self._enter_phase(
            record, WorkflowPhase.COMPLETED, 100, "Implementation completed!"
        )
        await self._emit_implementation_event(ticket_id, implementation)
        await self.store.clear_pending_analysis(ticket_id)

        logger.info(
            "Implementation completed",
            extra={
                "ticket_id": ticket_id,
                "branch": branch,
                "status": implementation.status.value,
                "pull_request_url": implementation.pull_request_url,
            },
        )
        return implementation

    async def _run_implementation(
        self,
        record: WorkflowRecord,
        ticket: Ticket,
        analysis: AnalysisResult,
        implementation: ImplementationResult,
    ) -> None:
        ticket_id = ticket.id
        branch = implementation.branch_name
        settings = self.settings

        await self._enter_phase(
            record, WorkflowPhase.CREATING_BRANCH, 10, f"Creating branch {branch}..."
        )
        await self.vcs.checkout(settings.default_branch)
        await self.vcs.pull()
        await self.vcs.create_branch(branch)

        await self._enter_phase(
            record, WorkflowPhase.IMPLEMENTING, 20, "Generating code..."
        )
        context = self.optimizer.optimize(
            await self.context_builder.build(ticket, self.vcs),
            settings.max_context_size,
        )
        generated = await self.ai.generate_code(
            f"Ticket: {ticket.id} - {ticket.title}\n{ticket.description}",
            build_requirements(analysis),
            context,
        )

        self._check_cancelled(ticket_id)
        await self._publish(record, 40, "Applying changes...")
        await self._apply_changes(generated, implementation)

        if settings.auto_build:
            await self._enter_phase(record, WorkflowPhase.BUILDING, 50, "Running build...")
            build = await self.validation_runner.run_build(self.vcs.repository_path)
            implementation.build_result = build
            if not build.is_success:
                implementation.status = ImplementationStatus.BUILD_FAILED
                for error in build.errors:
                    implementation.add_error("build", error)
                raise BuildFailedError(ticket_id, build.errors)

        if settings.auto_run_tests:
            await self._enter_phase(record, WorkflowPhase.TESTING, 60, "Running tests...")
            tests = await self.validation_runner.run_tests(self.vcs.repository_path)
            implementation.test_result = tests
            if tests.failed_tests > 0:
                implementation.status = ImplementationStatus.TESTS_FAILED
                implementation.warnings.append(f"{tests.failed_tests} test(s) failed")

        await self._enter_phase(
            record, WorkflowPhase.COMMITTING, 70, "Committing changes..."
        )
        await self.vcs.stage_all()
        commit = await self.vcs.commit(
            render_commit_message(
                settings.commit_message_template,
                ticket,
                describe_changes(implementation),
            )
        )
        implementation.commits.append(commit)

        await self._enter_phase(record, WorkflowPhase.PUSHING, 80, f"Pushing {branch}...")
        await self.vcs.push(branch)

        pull_request: Optional[PullRequestInfo] = None
        if settings.auto_create_pr:
            await self._enter_phase(
                record, WorkflowPhase.CREATING_PULL_REQUEST, 90, "Creating pull request..."
            )
            pull_request = await self._open_pull_request(ticket, analysis, implementation)
            record.pull_request = pull_request
            implementation.pull_request_url = pull_request.url
            implementation.pull_request_number = pull_request.number

        if settings.auto_update_tracker:
            await self._enter_phase(
                record, WorkflowPhase.UPDATING_JIRA, 95, "Updating ticket..."
            )
            await self.tracker.add_comment(ticket_id, implementation.tracker_summary())
            if pull_request is not None:
                await self.tracker.add_remote_link(
                    ticket_id, pull_request.url, f"PR #{pull_request.number}"
                )

    async def _apply_changes(
        self, generated: GeneratedCode, implementation: ImplementationResult
    ) -> None:
        root = Path(self.vcs.repository_path).resolve()
        for generated_file in generated.files:
            change = await asyncio.to_thread(_apply_file, root, generated_file)
            if change is None:
                continue
            if generated_file.operation == FileOperation.DELETE:
                implementation.deleted_files.append(generated_file.path)
            elif generated_file.operation == FileOperation.CREATE:
                implementation.created_files.append(change)
            else:
                implementation.modified_files.append(change)

        logger.info(
            "Applied generated changes",
            extra={
                "ticket_id": implementation.ticket_id,
                "file_count": len(generated.files),
                "summary": describe_changes(implementation),
            },
        )

    async def _open_pull_request(
        self,
        ticket: Ticket,
        analysis: AnalysisResult,
        implementation: ImplementationResult,
    ) -> PullRequestInfo:
        checklist = build_checklist(implementation, analysis)
        request = PullRequestRequest(
            title=f"{ticket.id}: {ticket.title}",
            body=build_pull_request_body(
                ticket,
                implementation,
                checklist,
                build_command=self.settings.build_command,
                test_command=self.settings.test_command,
            ),
            head_branch=implementation.branch_name,
            base_branch=self.settings.default_branch,
            is_draft=self.settings.pr_create_as_draft,
            labels=pull_request_labels(ticket),
            reviewers=list(self.settings.pr_default_reviewers),
        )
        return await self.pr_service.create_pull_request(request)

    # -------------------------------------------------------------------------
    # Records, leases and failures
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def _operation(self, ticket_id: str) -> AsyncIterator[None]:
        """Hold the ticket lease; the outermost holder resets cancellation.

        Records are kept in memory only while their ticket's lease is held,
        so a concurrent cancel mutates the same object the operation saves.
        """
        if self.locks.is_held(ticket_id):
            yield
            return

        async with self.locks.lease(ticket_id):
            self.locks.clear_cancel(ticket_id)
            try:
                yield
            finally:
                self._records.pop(ticket_id, None)

    @asynccontextmanager
    async def _recording_failures(self, record: WorkflowRecord) -> AsyncIterator[None]:
        try:
            yield
        except WorkflowCancelledError as exc:
            logger.info(
                "Operation stopped by cancellation",
                extra={"ticket_id": record.ticket_id, "reason": exc.reason},
            )
            record.state = WorkflowState.CANCELLED
            record.is_success = False
            if record.current_phase != WorkflowPhase.CANCELLED:
                record.current_phase = WorkflowPhase.CANCELLED
                record.completed_at = datetime.now(timezone.utc)
            await self._save(record)
            raise
        except Exception as exc:
            await self._fail(record, exc)
            raise

    async def _load_record(self, ticket_id: str) -> Optional[WorkflowRecord]:
        record = self._records.get(ticket_id)
        if record is not None:
            return record

        record = await self.store.get_workflow(ticket_id)
        if record is not None and self.locks.is_held(ticket_id):
            self._records[ticket_id] = record
        return record

    async def _ensure_record(self, ticket_id: str) -> WorkflowRecord:
        record = await self._load_record(ticket_id)
        if record is None:
            record = WorkflowRecord(ticket_id=ticket_id)
            if self.locks.is_held(ticket_id):
                self._records[ticket_id] = record
        return record

    async def _save(self, record: WorkflowRecord) -> None:
        record.touch()
        if self.locks.is_held(record.ticket_id):
            self._records[record.ticket_id] = record
        await self.store.save_workflow(record)

    async def _fetch_ticket(self, ticket_id: str) -> Ticket:
        try:
            return await self.tracker.get_ticket(ticket_id)
        except ConfigurationError:
            raise
        except Exception as e:
            raise TicketNotFoundError(ticket_id, e) from e

    async def _try_comment(self, ticket_id: str, text: str) -> None:
        try:
            await self.tracker.add_comment(ticket_id, text)
        except Exception:
            logger.exception(
                "Failed to comment on ticket",
                extra={"ticket_id": ticket_id},
            )

    def _check_cancelled(self, ticket_id: str) -> None:
        if self.locks.is_cancelled(ticket_id):
            raise WorkflowCancelledError(ticket_id, self.locks.cancel_reason(ticket_id))

    def _current_percentage(self, ticket_id: str) -> int:
        entry = self.progress.current(ticket_id)
        return entry.percentage if entry is not None else 0

    async def _enter_phase(
        self,
        record: WorkflowRecord,
        phase: WorkflowPhase,
        percentage: int,
        message: str,
    ) -> None:
        """Check for cancellation, move to phase and publish progress."""
        self._check_cancelled(record.ticket_id)
        await self._transition(record, phase)
        await self._publish(record, percentage, message)

    async def _publish(self, record: WorkflowRecord, percentage: int, message: str) -> None:
        await self.progress.publish(
            record.ticket_id, record.current_phase, percentage, message, record.state
        )

    async def _transition(self, record: WorkflowRecord, to_phase: WorkflowPhase) -> None:
        """Persist a phase change and emit a state-transition event."""
        from_phase = record.current_phase
        record.current_phase = to_phase
        if is_terminal_phase(to_phase):
            record.completed_at = datetime.now(timezone.utc)
        await self._save(record)

        if from_phase != to_phase:
            await self._emit_transition_event(
                record.ticket_id, from_phase.value, to_phase.value
            )

    async def _fail(self, record: WorkflowRecord, exc: Exception) -> None:
        """Record the failure, move to FAILED and emit an error event."""
        ticket_id = record.ticket_id
        phase = record.current_phase.value
        error_message = f"{phase}: {exc}"
        logger.exception(
            "Workflow operation failed",
            extra={"ticket_id": ticket_id, "phase": phase},
        )

        record.errors.append(error_message)
        record.state = WorkflowState.FAILED
        record.is_success = False
        try:
            await self._transition(record, WorkflowPhase.FAILED)
        except Exception:
            logger.exception(
                "Failed to persist FAILED state",
                extra={"ticket_id": ticket_id},
            )

        await self.progress.publish(
            ticket_id,
            WorkflowPhase.FAILED,
            self._current_percentage(ticket_id),
            f"Failed: {exc}",
            WorkflowState.FAILED,
        )
        await self._emit_error_event(ticket_id, phase, str(exc))

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    async def _emit_transition_event(
        self, ticket_id: str, from_phase: str, to_phase: str
    ) -> None:
        """Emit a STATE_TRANSITION event."""
        await self._safe_emit(
            WorkflowEvent(
                event_type=EventType.STATE_TRANSITION,
                ticket_id=ticket_id,
                details={"from_phase": from_phase, "to_phase": to_phase},
            )
        )

    async def _emit_error_event(
        self, ticket_id: str, phase: str, error_message: str
    ) -> None:
        """Emit an ERROR event."""
        await self._safe_emit(
            WorkflowEvent(
                event_type=EventType.ERROR,
                ticket_id=ticket_id,
                details={"phase": phase, "error_message": error_message},
            )
        )

    async def _emit_analysis_event(
        self, ticket_id: str, analysis: AnalysisResult, from_cache: bool
    ) -> None:
        """Emit an ANALYSIS_COMPLETED event."""
        await self._safe_emit(
            WorkflowEvent(
                event_type=EventType.ANALYSIS_COMPLETED,
                ticket_id=ticket_id,
                details={
                    "from_cache": from_cache,
                    "complexity": analysis.complexity.value,
                    "affected_file_count": len(analysis.affected_files),
                },
            )
        )

    async def _emit_implementation_event(
        self, ticket_id: str, implementation: ImplementationResult
    ) -> None:
        """Emit an IMPLEMENTATION_COMPLETED event."""
        duration = implementation.duration
        await self._safe_emit(
            WorkflowEvent(
                event_type=EventType.IMPLEMENTATION_COMPLETED,
                ticket_id=ticket_id,
                details={
                    "branch_name": implementation.branch_name,
                    "status": implementation.status.value,
                    "pull_request_url": implementation.pull_request_url,
                    "duration_seconds": duration.total_seconds() if duration else None,
                },
            )
        )

    async def _safe_emit(self, event: WorkflowEvent) -> None:
        """Emit an event, swallowing exceptions to avoid disrupting the workflow."""
        try:
            await self.event_emitter.emit(event)
        except Exception:
            logger.exception(
                "Failed to emit workflow event",
                extra={
                    "event_type": event.event_type.value,
                    "ticket_id": event.ticket_id,
                },
            )
