"""Unit tests for WorkflowOrchestrator.

External services are AsyncMock fakes; state lives in an
InMemoryWorkflowStore and the workspace is a local checkout under
tmp_path, so generated files are written to disk for real.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, call

import pytest

from ticketflow.analysis.models import (
    AffectedFile,
    AnalysisResult,
    GeneratedCode,
    GeneratedFile,
)
from ticketflow.config import TicketflowSettings
from ticketflow.events.models import EventType
from ticketflow.github.models import PullRequestInfo
from ticketflow.implementation.models import (
    BuildResult,
    CommitInfo,
    ImplementationStatus,
    TestResult,
)
from ticketflow.orchestrator import (
    BuildFailedError,
    NoPendingAnalysisError,
    TicketNotFoundError,
    WorkflowCancelledError,
    WorkflowOrchestrator,
    _apply_file,
    analysis_branch_name,
)
from ticketflow.provisioner.workspace import WorkspaceManager
from ticketflow.state.models import WorkflowPhase, WorkflowRecord, WorkflowState
from ticketflow.state.store import InMemoryWorkflowStore
from ticketflow.tracker.models import Ticket
from ticketflow.vcs.git import GitCommandError, RepositoryStatus


def run_async(coro):
    return asyncio.run(coro)


def _ticket(title="Add login rate limiting"):
    return Ticket(
        id="PROJ-1",
        title=title,
        description="Limit failed logins per user.",
        url="https://acme.atlassian.net/browse/PROJ-1",
    )


def _analysis():
    return AnalysisResult(
        ticket_id="PROJ-1",
        affected_files=[AffectedFile(path="src/app.py", change_type="create")],
        complexity="Simple",
    )


class Harness:
    """Orchestrator wired to fakes, with a local checkout at tmp_path."""

    def __init__(self, tmp_path: Path, **overrides):
        values = {
            "repository_path": str(tmp_path),
            "use_temporary_workspace": False,
            "tracker_base_url": "https://acme.atlassian.net",
        }
        values.update(overrides)
        self.root = tmp_path
        self.settings = TicketflowSettings(**values)
        self.store = InMemoryWorkflowStore()

        self.tracker = AsyncMock()
        self.tracker.get_ticket.return_value = _ticket()
        self.tracker.test_connection.return_value = True

        self.vcs = AsyncMock()
        self.vcs.repository_path = str(tmp_path)
        self.vcs.get_status.return_value = RepositoryStatus(
            current_branch="main", is_clean=True
        )
        self.vcs.list_branches.return_value = ["main"]
        self.vcs.is_clean.return_value = True
        self.vcs.commit.return_value = CommitInfo(hash="abc1234def", message="feat")

        self.pr_service = AsyncMock()
        self.pr_service.create_pull_request.return_value = PullRequestInfo(
            number=42, url="https://github.com/acme/widgets/pull/42"
        )

        self.ai = AsyncMock()
        self.ai.analyze_ticket.return_value = _analysis()
        self.ai.generate_code.return_value = GeneratedCode(
            files=[
                GeneratedFile(
                    path="src/app.py",
                    content="def limit():\n    return 5\n",
                    operation="create",
                    description="Rate limiter",
                )
            ]
        )

        self.context_builder = MagicMock()
        self.context_builder.build = AsyncMock(return_value="class LoginService: ...")

        self.validation_runner = AsyncMock()
        self.validation_runner.run_build.return_value = BuildResult(is_success=True)
        self.validation_runner.run_tests.return_value = TestResult(
            total_tests=3, passed_tests=3
        )

        self.emitter = MagicMock()
        self.emitter.emit = AsyncMock()

        self.orchestrator = WorkflowOrchestrator(
            settings=self.settings,
            store=self.store,
            tracker=self.tracker,
            vcs=self.vcs,
            pr_service=self.pr_service,
            ai=self.ai,
            context_builder=self.context_builder,
            workspace_manager=WorkspaceManager(self.settings, self.vcs),
            validation_runner=self.validation_runner,
            event_emitter=self.emitter,
        )

    def events(self, event_type):
        return [
            c.args[0]
            for c in self.emitter.emit.await_args_list
            if c.args[0].event_type == event_type
        ]


@pytest.fixture
def harness(tmp_path):
    return Harness(tmp_path)


def test_analysis_branch_name():
    assert analysis_branch_name("PROJ-12") == "analysis/proj/12"


class TestCreateWorkflow:
    def test_create_is_idempotent(self, harness):
        async def scenario():
            first = await harness.orchestrator.create_workflow("PROJ-1")
            second = await harness.orchestrator.create_workflow("PROJ-1")
            stored = await harness.store.get_workflow("PROJ-1")
            return first, second, stored

        first, second, stored = run_async(scenario())

        assert first.ticket_id == second.ticket_id == "PROJ-1"
        assert harness.tracker.get_ticket.await_count == 1
        assert stored.ticket_title == "Add login rate limiting"
        assert stored.current_phase == WorkflowPhase.NOT_STARTED
        assert stored.state == WorkflowState.PAUSED

    def test_create_publishes_pending_status(self, harness):
        async def scenario():
            await harness.orchestrator.create_workflow("PROJ-1")
            return await harness.orchestrator.get_workflow_status("PROJ-1")

        status = run_async(scenario())

        assert status.percentage == 0
        assert status.message == "Workflow created, pending analysis start"

    def test_unknown_ticket_raises_and_stores_nothing(self, harness):
        harness.tracker.get_ticket.side_effect = RuntimeError("404 Not Found")

        async def scenario():
            with pytest.raises(TicketNotFoundError) as excinfo:
                await harness.orchestrator.create_workflow("PROJ-404")
            return excinfo.value, await harness.store.get_workflow("PROJ-404")

        error, stored = run_async(scenario())

        assert error.ticket_id == "PROJ-404"
        assert stored is None


class TestAnalyze:
    def test_first_analysis_waits_for_approval(self, harness):
        async def scenario():
            analysis = await harness.orchestrator.analyze("PROJ-1")
            status = await harness.orchestrator.get_workflow_status("PROJ-1")
            pending = await harness.store.get_pending_analysis("PROJ-1")
            return analysis, status, pending

        analysis, status, pending = run_async(scenario())

        assert analysis.affected_files[0].path == "src/app.py"
        assert status.phase == WorkflowPhase.WAITING_APPROVAL
        assert status.state == WorkflowState.WAITING_INPUT
        assert status.percentage == 100
        assert status.analysis is not None
        assert pending is not None
        assert harness.ai.analyze_ticket.await_count == 1

    def test_analysis_runs_on_analysis_branch_and_restores_default(self, harness):
        run_async(harness.orchestrator.analyze("PROJ-1"))

        harness.vcs.create_branch.assert_awaited_once_with("analysis/proj/1")
        assert harness.vcs.checkout.await_args_list[-1] == call("main")

    def test_existing_analysis_branch_is_checked_out(self, harness):
        harness.vcs.list_branches.return_value = ["main", "analysis/proj/1"]

        run_async(harness.orchestrator.analyze("PROJ-1"))

        harness.vcs.create_branch.assert_not_awaited()
        assert call("analysis/proj/1") in harness.vcs.checkout.await_args_list

    def test_dirty_tree_returns_to_original_branch(self, harness):
        harness.vcs.get_status.return_value = RepositoryStatus(
            current_branch="wip", is_clean=False
        )

        run_async(harness.orchestrator.analyze("PROJ-1"))

        assert harness.vcs.checkout.await_args_list[-1] == call("wip")

    def test_branch_preparation_failure_falls_back_to_default(self, harness):
        harness.vcs.pull.side_effect = GitCommandError(["pull"], 1, "no remote")

        analysis = run_async(harness.orchestrator.analyze("PROJ-1"))

        assert analysis.ticket_id == "PROJ-1"
        harness.vcs.create_branch.assert_not_awaited()

    def test_unchanged_ticket_is_served_from_cache(self, harness):
        async def scenario():
            await harness.orchestrator.analyze("PROJ-1")
            return await harness.orchestrator.analyze("PROJ-1")

        cached = run_async(scenario())

        assert cached.ticket_id == "PROJ-1"
        assert harness.ai.analyze_ticket.await_count == 1
        assert harness.context_builder.build.await_count == 1
        events = harness.events(EventType.ANALYSIS_COMPLETED)
        assert [e.details["from_cache"] for e in events] == [False, True]

    def test_title_edit_triggers_new_analysis(self, harness):
        async def scenario():
            await harness.orchestrator.analyze("PROJ-1")
            harness.tracker.get_ticket.return_value = _ticket("Add login throttling")
            await harness.orchestrator.analyze("PROJ-1")

        run_async(scenario())

        assert harness.ai.analyze_ticket.await_count == 2

    def test_context_is_sent_to_model(self, harness):
        run_async(harness.orchestrator.analyze("PROJ-1"))

        ticket, context, feedback = harness.ai.analyze_ticket.await_args.args
        assert ticket.id == "PROJ-1"
        assert context == "class LoginService: ..."
        assert feedback is None

    def test_ai_failure_marks_workflow_failed(self, harness):
        harness.ai.analyze_ticket.side_effect = RuntimeError("model offline")

        async def scenario():
            with pytest.raises(RuntimeError):
                await harness.orchestrator.analyze("PROJ-1")
            record = await harness.store.get_workflow("PROJ-1")
            status = await harness.orchestrator.get_workflow_status("PROJ-1")
            return record, status

        record, status = run_async(scenario())

        assert record.state == WorkflowState.FAILED
        assert record.current_phase == WorkflowPhase.FAILED
        assert record.errors == ["analyzing_code: model offline"]
        assert status.message == "Failed: model offline"
        assert harness.vcs.checkout.await_args_list[-1] == call("main")
        errors = harness.events(EventType.ERROR)
        assert errors[0].details["phase"] == "analyzing_code"

    def test_fetch_failure_is_ticket_not_found(self, harness):
        harness.tracker.get_ticket.side_effect = RuntimeError("boom")

        async def scenario():
            with pytest.raises(TicketNotFoundError):
                await harness.orchestrator.analyze("PROJ-1")
            return await harness.store.get_workflow("PROJ-1")

        record = run_async(scenario())

        assert record.errors[0].startswith("fetching_ticket:")
        harness.ai.analyze_ticket.assert_not_awaited()


class TestRevision:
    def test_revision_bypasses_cache_and_passes_feedback(self, harness):
        async def scenario():
            await harness.orchestrator.analyze("PROJ-1")
            await harness.orchestrator.request_revision("PROJ-1", "Cover the admin login too")

        run_async(scenario())

        assert harness.ai.analyze_ticket.await_count == 2
        assert harness.ai.analyze_ticket.await_args.args[2] == "Cover the admin login too"
        harness.tracker.add_comment.assert_not_awaited()

    def test_empty_feedback_is_rejected(self, harness):
        with pytest.raises(ValueError):
            run_async(harness.orchestrator.request_revision("PROJ-1", "   "))

        harness.tracker.get_ticket.assert_not_awaited()
        harness.ai.analyze_ticket.assert_not_awaited()


class TestApproveAndImplement:
    def test_approve_without_analysis_changes_nothing(self, harness):
        async def scenario():
            with pytest.raises(NoPendingAnalysisError):
                await harness.orchestrator.approve_and_implement("PROJ-1")
            return await harness.store.get_workflow("PROJ-1")

        record = run_async(scenario())

        assert record is None
        harness.tracker.get_ticket.assert_not_awaited()
        harness.vcs.checkout.assert_not_awaited()
        harness.ai.generate_code.assert_not_awaited()
        harness.pr_service.create_pull_request.assert_not_awaited()

    def test_happy_path_opens_pull_request(self, harness):
        async def scenario():
            await harness.orchestrator.analyze("PROJ-1")
            result = await harness.orchestrator.approve_and_implement("PROJ-1")
            record = await harness.store.get_workflow("PROJ-1")
            status = await harness.orchestrator.get_workflow_status("PROJ-1")
            pending = await harness.store.get_pending_analysis("PROJ-1")
            return result, record, status, pending

        result, record, status, pending = run_async(scenario())

        assert result.status == ImplementationStatus.COMPLETED
        assert result.branch_name == "feature/PROJ-1-add-login-rate-limiting"
        assert result.pull_request_number == 42
        assert [f.path for f in result.created_files] == ["src/app.py"]
        assert (harness.root / "src" / "app.py").read_text() == "def limit():\n    return 5\n"

        assert record.state == WorkflowState.COMPLETED
        assert record.current_phase == WorkflowPhase.COMPLETED
        assert record.is_success is True
        assert record.pull_request.number == 42
        assert status.percentage == 100
        assert status.message == "Implementation completed!"
        assert pending is None

        harness.vcs.create_branch.assert_awaited_with(result.branch_name)
        harness.vcs.push.assert_awaited_once_with(result.branch_name)
        request = harness.pr_service.create_pull_request.await_args.args[0]
        assert request.title == "PROJ-1: Add login rate limiting"
        assert request.head_branch == result.branch_name
        assert request.base_branch == "main"
        harness.tracker.add_remote_link.assert_awaited_once_with(
            "PROJ-1", "https://github.com/acme/widgets/pull/42", "PR #42"
        )
        summary = harness.tracker.add_comment.await_args.args[1]
        assert summary.startswith("## Implementation Completed")

    def test_commit_message_uses_template(self, harness):
        async def scenario():
            await harness.orchestrator.analyze("PROJ-1")
            await harness.orchestrator.approve_and_implement("PROJ-1")

        run_async(scenario())

        message = harness.vcs.commit.await_args.args[0]
        assert "PROJ-1" in message
        assert "Created 1 file(s)" in message

    def test_build_failure_stops_before_commit(self, harness):
        harness.validation_runner.run_build.return_value = BuildResult(
            is_success=False, errors=["src/app.py:1: error: invalid syntax"]
        )

        async def scenario():
            await harness.orchestrator.analyze("PROJ-1")
            with pytest.raises(BuildFailedError) as excinfo:
                await harness.orchestrator.approve_and_implement("PROJ-1")
            record = await harness.store.get_workflow("PROJ-1")
            pending = await harness.store.get_pending_analysis("PROJ-1")
            return excinfo.value, record, pending

        error, record, pending = run_async(scenario())

        assert error.errors == ["src/app.py:1: error: invalid syntax"]
        harness.validation_runner.run_tests.assert_not_awaited()
        harness.vcs.commit.assert_not_awaited()
        harness.vcs.push.assert_not_awaited()
        harness.pr_service.create_pull_request.assert_not_awaited()
        assert record.state == WorkflowState.FAILED
        assert record.implementation.status == ImplementationStatus.BUILD_FAILED
        assert record.errors[0].startswith("building: Build failed")
        assert pending is not None

    def test_failing_tests_still_commit_and_open_pull_request(self, harness):
        harness.validation_runner.run_tests.return_value = TestResult(
            total_tests=3, passed_tests=2, failed_tests=1
        )

        async def scenario():
            await harness.orchestrator.analyze("PROJ-1")
            result = await harness.orchestrator.approve_and_implement("PROJ-1")
            return result, await harness.store.get_workflow("PROJ-1")

        result, record = run_async(scenario())

        assert result.status == ImplementationStatus.TESTS_FAILED
        assert "1 test(s) failed" in result.warnings
        harness.vcs.commit.assert_awaited_once()
        harness.pr_service.create_pull_request.assert_awaited_once()
        assert record.state == WorkflowState.COMPLETED
        assert record.is_success is False

    def test_disabled_automation_skips_steps(self, tmp_path):
        harness = Harness(
            tmp_path,
            auto_build=False,
            auto_run_tests=False,
            auto_create_pr=False,
            auto_update_tracker=False,
        )

        async def scenario():
            await harness.orchestrator.analyze("PROJ-1")
            return await harness.orchestrator.approve_and_implement("PROJ-1")

        result = run_async(scenario())

        assert result.status == ImplementationStatus.COMPLETED
        assert result.pull_request_url is None
        harness.validation_runner.run_build.assert_not_awaited()
        harness.validation_runner.run_tests.assert_not_awaited()
        harness.pr_service.create_pull_request.assert_not_awaited()
        harness.tracker.add_comment.assert_not_awaited()
        harness.vcs.push.assert_awaited_once()

    def test_completion_event_carries_branch_and_url(self, harness):
        async def scenario():
            await harness.orchestrator.analyze("PROJ-1")
            await harness.orchestrator.approve_and_implement("PROJ-1")

        run_async(scenario())

        (event,) = harness.events(EventType.IMPLEMENTATION_COMPLETED)
        assert event.details["branch_name"] == "feature/PROJ-1-add-login-rate-limiting"
        assert event.details["pull_request_url"] == "https://github.com/acme/widgets/pull/42"
        assert event.details["duration_seconds"] is not None

    def test_generated_path_outside_repository_fails(self, harness):
        harness.ai.generate_code.return_value = GeneratedCode(
            files=[GeneratedFile(path="../escape.py", content="x", operation="create")]
        )

        async def scenario():
            await harness.orchestrator.analyze("PROJ-1")
            with pytest.raises(ValueError):
                await harness.orchestrator.approve_and_implement("PROJ-1")
            return await harness.store.get_workflow("PROJ-1")

        record = run_async(scenario())

        assert record.implementation.status == ImplementationStatus.FAILED
        assert not (harness.root.parent / "escape.py").exists()
        harness.vcs.commit.assert_not_awaited()


class TestStartWorkflow:
    def test_stops_at_approval_when_required(self, harness):
        record = run_async(harness.orchestrator.start_workflow("PROJ-1"))

        assert record.current_phase == WorkflowPhase.WAITING_APPROVAL
        assert record.state == WorkflowState.WAITING_INPUT
        harness.ai.generate_code.assert_not_awaited()

    def test_runs_through_implementation_without_approval(self, tmp_path):
        harness = Harness(tmp_path, require_approval=False)

        record = run_async(harness.orchestrator.start_workflow("PROJ-1"))

        assert record.current_phase == WorkflowPhase.COMPLETED
        assert record.state == WorkflowState.COMPLETED
        assert record.implementation.pull_request_number == 42
        assert harness.tracker.get_ticket.await_count >= 1
        harness.pr_service.create_pull_request.assert_awaited_once()


class TestCancel:
    def test_cancel_clears_pending_analysis(self, harness):
        async def scenario():
            await harness.orchestrator.analyze("PROJ-1")
            record = await harness.orchestrator.cancel_workflow("PROJ-1", "No longer needed")
            pending = await harness.store.get_pending_analysis("PROJ-1")
            status = await harness.orchestrator.get_workflow_status("PROJ-1")
            return record, pending, status

        record, pending, status = run_async(scenario())

        assert record.state == WorkflowState.CANCELLED
        assert record.current_phase == WorkflowPhase.CANCELLED
        assert record.completed_at is not None
        assert pending is None
        assert status.message == "Workflow cancelled: No longer needed"
        harness.tracker.add_comment.assert_awaited_with(
            "PROJ-1", "Workflow cancelled:\nNo longer needed"
        )
        harness.vcs.discard_changes.assert_not_awaited()

    def test_cancel_resets_dirty_tree(self, harness):
        harness.vcs.is_clean.return_value = False

        run_async(harness.orchestrator.cancel_workflow("PROJ-1", "stop"))

        harness.vcs.discard_changes.assert_awaited_once()
        assert harness.vcs.checkout.await_args_list[-1] == call("main")

    def test_comment_failure_does_not_block_cancel(self, harness):
        harness.tracker.add_comment.side_effect = RuntimeError("tracker down")

        record = run_async(harness.orchestrator.cancel_workflow("PROJ-1", "stop"))

        assert record.state == WorkflowState.CANCELLED

    def test_cancel_during_analysis_stops_before_approval(self, harness):
        async def analyze_then_get_cancelled(ticket, context, feedback=None):
            await harness.orchestrator.cancel_workflow("PROJ-1", "Changed my mind")
            return _analysis()

        harness.ai.analyze_ticket.side_effect = analyze_then_get_cancelled

        async def scenario():
            with pytest.raises(WorkflowCancelledError) as excinfo:
                await harness.orchestrator.analyze("PROJ-1")
            record = await harness.store.get_workflow("PROJ-1")
            pending = await harness.store.get_pending_analysis("PROJ-1")
            return excinfo.value, record, pending

        error, record, pending = run_async(scenario())

        assert error.reason == "Changed my mind"
        assert record.state == WorkflowState.CANCELLED
        assert record.errors == []
        assert pending is None
        assert harness.events(EventType.ANALYSIS_COMPLETED) == []

    def test_next_operation_after_cancel_runs(self, harness):
        async def scenario():
            await harness.orchestrator.cancel_workflow("PROJ-1", "stop")
            return await harness.orchestrator.analyze("PROJ-1")

        analysis = run_async(scenario())

        assert analysis.ticket_id == "PROJ-1"

    def test_cancel_while_updating_tracker_persists_cancelled_record(self, harness):
        async def link_then_get_cancelled(ticket_id, url, title):
            await harness.orchestrator.cancel_workflow(ticket_id, "stop")

        harness.tracker.add_remote_link.side_effect = link_then_get_cancelled

        async def scenario():
            await harness.orchestrator.analyze("PROJ-1")
            with pytest.raises(WorkflowCancelledError):
                await harness.orchestrator.approve_and_implement("PROJ-1")
            return await harness.store.get_workflow("PROJ-1")

        record = run_async(scenario())

        assert record.current_phase == WorkflowPhase.CANCELLED
        assert record.state == WorkflowState.CANCELLED
        assert record.implementation.status == ImplementationStatus.CANCELLED
        assert record.is_success is False
        assert harness.events(EventType.IMPLEMENTATION_COMPLETED) == []

    def test_finished_operations_leave_no_per_ticket_state(self, harness):
        async def scenario():
            await harness.orchestrator.analyze("PROJ-1")
            await harness.orchestrator.cancel_workflow("PROJ-1", "stop")

        run_async(scenario())

        assert harness.orchestrator._records == {}
        assert harness.orchestrator.locks.tracked_tickets == 0
        assert not harness.orchestrator.locks.is_cancelled("PROJ-1")


class TestStatusAndHistory:
    def test_unknown_ticket_is_not_started(self, harness):
        status = run_async(harness.orchestrator.get_workflow_status("PROJ-9"))

        assert status.phase == WorkflowPhase.NOT_STARTED
        assert status.percentage == 0
        assert status.message == "Not started"
        assert status.analysis is None

    def test_record_without_progress_reports_completion(self, harness):
        async def scenario():
            await harness.store.save_workflow(
                WorkflowRecord(
                    ticket_id="PROJ-2",
                    current_phase=WorkflowPhase.COMPLETED,
                    state=WorkflowState.COMPLETED,
                    analysis=_analysis(),
                )
            )
            return await harness.orchestrator.get_workflow_status("PROJ-2")

        status = run_async(scenario())

        assert status.phase == WorkflowPhase.COMPLETED
        assert status.percentage == 100
        assert status.message == "Completed"
        assert status.analysis is not None

    def test_history_is_newest_first_and_limited(self, harness):
        now = datetime.now(timezone.utc)

        async def scenario():
            for offset, ticket_id in enumerate(["PROJ-1", "PROJ-2", "PROJ-3"]):
                await harness.store.save_workflow(
                    WorkflowRecord(
                        ticket_id=ticket_id,
                        started_at=now + timedelta(minutes=offset),
                    )
                )
            return await harness.orchestrator.get_workflow_history(limit=2)

        history = run_async(scenario())

        assert [s.ticket_id for s in history] == ["PROJ-3", "PROJ-2"]


class TestTrackerAndConnections:
    def test_send_analysis_posts_comment(self, harness):
        run_async(harness.orchestrator.send_analysis_to_tracker("PROJ-1", "## Analysis"))

        harness.tracker.add_comment.assert_awaited_once_with("PROJ-1", "## Analysis")

    def test_send_empty_comment_is_rejected(self, harness):
        with pytest.raises(ValueError):
            run_async(harness.orchestrator.send_analysis_to_tracker("PROJ-1", "  "))

        harness.tracker.add_comment.assert_not_awaited()

    def test_connection_errors_count_as_disconnected(self, harness):
        harness.pr_service.test_connection.side_effect = RuntimeError("timeout")
        harness.ai.test_connection.return_value = False

        connections = run_async(harness.orchestrator.test_connections())

        assert connections == {"tracker": True, "pull_requests": False, "ai": False}

    def test_find_similar_uses_cached_analyses(self, harness):
        harness.ai.analyze_ticket.return_value = AnalysisResult(
            ticket_id="PROJ-1",
            affected_files=[AffectedFile(path="src/auth/login_limiter.py")],
        )

        async def scenario():
            await harness.orchestrator.analyze("PROJ-1")
            harness.tracker.get_ticket.return_value = Ticket(
                id="PROJ-2", title="Add login rate limiting for admins"
            )
            return await harness.orchestrator.find_similar_analyses("PROJ-2")

        similar = run_async(scenario())

        assert [a.ticket_id for a in similar] == ["PROJ-1"]


class TestSerialization:
    def test_operations_on_one_ticket_do_not_overlap(self, harness):
        active = 0
        peak = 0

        async def slow_analysis(ticket, context, feedback=None):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return _analysis()

        harness.ai.analyze_ticket.side_effect = slow_analysis

        async def scenario():
            await asyncio.gather(
                harness.orchestrator.request_revision("PROJ-1", "first"),
                harness.orchestrator.request_revision("PROJ-1", "second"),
            )

        run_async(scenario())

        assert harness.ai.analyze_ticket.await_count == 2
        assert peak == 1


class TestApplyFile:
    def test_create_counts_lines(self, tmp_path):
        change = _apply_file(
            tmp_path.resolve(),
            GeneratedFile(path="pkg/new.py", content="a\nb\nc", operation="create"),
        )

        assert change.lines_added == 3
        assert (tmp_path / "pkg" / "new.py").read_text() == "a\nb\nc"

    def test_update_records_line_delta(self, tmp_path):
        (tmp_path / "app.py").write_text("a\nb\nc\nd\n")

        change = _apply_file(
            tmp_path.resolve(),
            GeneratedFile(path="app.py", content="a\nb", operation="update"),
        )

        assert change.lines_added == 0
        assert change.lines_removed == 2

    def test_delete_missing_file_is_skipped(self, tmp_path):
        change = _apply_file(
            tmp_path.resolve(),
            GeneratedFile(path="gone.py", operation="delete"),
        )

        assert change is None

    def test_delete_removes_file(self, tmp_path):
        (tmp_path / "old.py").write_text("x\ny\n")

        change = _apply_file(
            tmp_path.resolve(),
            GeneratedFile(path="old.py", operation="delete"),
        )

        assert change.lines_removed == 2
        assert not (tmp_path / "old.py").exists()

    def test_path_escape_is_rejected(self, tmp_path):
        root = tmp_path / "repo"
        root.mkdir()

        with pytest.raises(ValueError):
            _apply_file(
                root.resolve(),
                GeneratedFile(path="../outside.py", content="x", operation="create"),
            )

        assert not (tmp_path / "outside.py").exists()


def _bound_vcs(path):
    vcs = AsyncMock()
    vcs.repository_path = path
    vcs.get_status.return_value = RepositoryStatus(current_branch="main", is_clean=True)
    vcs.list_branches.return_value = ["main"]
    return vcs


def _ephemeral_harness(tmp_path):
    """Harness whose analyses run in disposable clones under tmp_path/workspaces."""
    harness = Harness(
        tmp_path,
        use_temporary_workspace=True,
        temporary_workspace_base_path=str(tmp_path / "workspaces"),
        remote_url="https://github.com/acme/widgets.git",
    )
    harness.clones = []

    async def clone(url, path):
        (Path(path) / ".git").mkdir()

    def bind(path):
        bound = _bound_vcs(path)
        harness.clones.append(bound)
        return bound

    harness.vcs.clone_repository.side_effect = clone
    harness.vcs.bound_to = MagicMock(side_effect=bind)
    return harness


class TestEphemeralWorkspaces:
    def test_analysis_runs_in_clone_and_removes_it(self, tmp_path):
        harness = _ephemeral_harness(tmp_path)

        run_async(harness.orchestrator.analyze("PROJ-1"))

        (clone,) = harness.clones
        clone.create_branch.assert_awaited_once_with("analysis/proj/1")
        assert harness.context_builder.build.await_args.args[1] is clone
        harness.vcs.checkout.assert_not_awaited()
        assert harness.vcs.repository_path == str(tmp_path)
        assert list((tmp_path / "workspaces").iterdir()) == []

    def test_clone_is_removed_after_ai_failure(self, tmp_path):
        harness = _ephemeral_harness(tmp_path)
        harness.ai.analyze_ticket.side_effect = RuntimeError("model offline")

        with pytest.raises(RuntimeError):
            run_async(harness.orchestrator.analyze("PROJ-1"))

        (clone,) = harness.clones
        assert clone.checkout.await_args_list[-1] == call("main")
        assert harness.vcs.repository_path == str(tmp_path)
        assert list((tmp_path / "workspaces").iterdir()) == []

    def test_concurrent_tickets_analyze_in_their_own_clones(self, tmp_path):
        harness = _ephemeral_harness(tmp_path)
        harness.tracker.get_ticket.side_effect = lambda ticket_id: Ticket(
            id=ticket_id, title=f"Work on {ticket_id}"
        )
        seen = {}

        async def build(ticket, vcs):
            await asyncio.sleep(0.01)
            seen[ticket.id] = vcs.repository_path
            return "context"

        harness.context_builder.build = AsyncMock(side_effect=build)

        async def scenario():
            await asyncio.gather(
                harness.orchestrator.analyze("A-1"),
                harness.orchestrator.analyze("B-2"),
            )

        run_async(scenario())

        workspaces = tmp_path / "workspaces"
        assert Path(seen["A-1"]).parent == workspaces
        assert Path(seen["A-1"]).name.startswith("analysis-a_1-")
        assert Path(seen["B-2"]).name.startswith("analysis-b_2-")
        assert harness.vcs.repository_path == str(tmp_path)
        assert list(workspaces.iterdir()) == []


class TestProgressTrail:
    def test_first_analysis_trail(self, harness):
        async def scenario():
            await harness.orchestrator.analyze("PROJ-1")
            return await harness.store.progress_history("PROJ-1")

        trail = run_async(scenario())

        assert [e.percentage for e in trail] == [5, 15, 20, 30, 50, 100]
        assert trail[-1].phase == WorkflowPhase.WAITING_APPROVAL

    def test_cache_hit_jumps_from_15_to_100(self, harness):
        async def scenario():
            await harness.orchestrator.analyze("PROJ-1")
            await harness.orchestrator.analyze("PROJ-1")
            return await harness.store.progress_history("PROJ-1")

        trail = run_async(scenario())

        assert [e.percentage for e in trail[6:]] == [5, 15, 100]
        assert trail[-1].message == "Analysis retrieved from cache."
