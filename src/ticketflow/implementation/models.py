"""Implementation result models.

This module defines the record of an implementation run:
- ImplementationStatus: Lifecycle of an implementation
- FileChange / CommitInfo: What was written and committed
- BuildResult / TestResult: Validation outcomes
- ImplementationResult: Aggregate result with the tracker summary renderer
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class ImplementationStatus(str, Enum):
    """Lifecycle of an implementation run.

    BUILD_FAILED stops the run before commit. TESTS_FAILED is recorded but
    the run still commits, pushes and opens the pull request.
    """

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    BUILD_FAILED = "build_failed"
    TESTS_FAILED = "tests_failed"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FileChange(BaseModel):
    path: str
    lines_added: int = 0
    lines_removed: int = 0
    description: str = ""


class CommitInfo(BaseModel):
    hash: str = ""
    message: str = ""
    author: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def short_hash(self) -> str:
        return self.hash[:7]


class BuildResult(BaseModel):
    is_success: bool = False
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    output: str = ""
    duration_seconds: float = 0.0


class FailedTest(BaseModel):
    test_name: str = ""
    class_name: str = ""
    error_message: str = ""
    stack_trace: Optional[str] = None


class TestResult(BaseModel):
    """Outcome of a test run, parsed from the runner's summary output."""

    __test__ = False

    total_tests: int = 0
    passed_tests: int = 0
    failed_tests: int = 0
    skipped_tests: int = 0
    code_coverage: Optional[float] = None
    duration_seconds: float = 0.0
    failed_test_details: List[FailedTest] = Field(default_factory=list)

    @property
    def all_passed(self) -> bool:
        return self.failed_tests == 0


class PhaseError(BaseModel):
    """An error recorded against a workflow phase."""

    phase: str = ""
    message: str = ""
    details: Optional[str] = None
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ImplementationResult(BaseModel):
    """Aggregate result of implementing an approved analysis.

    Attributes:
        ticket_id: Ticket key being implemented.
        branch_name: Feature or bugfix branch holding the change.
        status: Current implementation status.
        created_files: Files created by the generated code.
        modified_files: Files updated by the generated code.
        deleted_files: Paths removed by the generated code.
        commits: Commits created on the branch.
        build_result: Build outcome, if the build ran.
        test_result: Test outcome, if the tests ran.
        pull_request_url: URL of the opened pull request.
        pull_request_number: Number of the opened pull request.
        errors: Errors recorded during the run.
        warnings: Non-fatal findings (e.g., failed tests).
        started_at: When the run started (UTC).
        completed_at: When the run finished (UTC).
    """

    ticket_id: str = Field(..., min_length=1)
    branch_name: str = ""
    status: ImplementationStatus = ImplementationStatus.NOT_STARTED
    created_files: List[FileChange] = Field(default_factory=list)
    modified_files: List[FileChange] = Field(default_factory=list)
    deleted_files: List[str] = Field(default_factory=list)
    commits: List[CommitInfo] = Field(default_factory=list)
    build_result: Optional[BuildResult] = None
    test_result: Optional[TestResult] = None
    pull_request_url: Optional[str] = None
    pull_request_number: Optional[int] = None
    errors: List[PhaseError] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None

    @property
    def duration(self) -> Optional[timedelta]:
        if self.completed_at is None:
            return None
        return self.completed_at - self.started_at

    @property
    def is_success(self) -> bool:
        return (
            self.status == ImplementationStatus.COMPLETED
            and not self.errors
            and (self.build_result is None or self.build_result.is_success)
            and (self.test_result is None or self.test_result.all_passed)
        )

    def add_error(
        self, phase: str, message: str, details: Optional[str] = None
    ) -> None:
        self.errors.append(PhaseError(phase=phase, message=message, details=details))

    def tracker_summary(self) -> str:
        """Render the run as a markdown comment for the ticket.

        Returns:
            Markdown summary covering branch, changes, build, tests and PR.
        """
        minutes = (
            f"{self.duration.total_seconds() / 60:.0f}" if self.duration else "n/a"
        )
        lines = [
            "## Implementation Completed",
            "",
            f"**Branch:** `{self.branch_name}`",
            f"**Status:** {self.status.value}",
            f"**Duration:** {minutes} minutes",
            "",
            "### Changes",
            f"- Files created: {len(self.created_files)}",
            f"- Files modified: {len(self.modified_files)}",
            f"- Files deleted: {len(self.deleted_files)}",
            "",
        ]

        if self.build_result is not None:
            lines.append("### Build")
            lines.append(
                "- Status: Success" if self.build_result.is_success else "- Status: Failed"
            )
            if not self.build_result.is_success:
                lines.extend(f"  - {error}" for error in self.build_result.errors)
            lines.append("")

        if self.test_result is not None:
            tests = self.test_result
            lines += [
                "### Tests",
                f"- Total: {tests.total_tests}",
                f"- Passed: {tests.passed_tests}",
                f"- Failed: {tests.failed_tests}",
                f"- Skipped: {tests.skipped_tests}",
            ]
            if tests.code_coverage is not None:
                lines.append(f"- Coverage: {tests.code_coverage:.1%}")
            lines.append("")

        if self.pull_request_url:
            lines += [
                "### Pull Request",
                f"[PR #{self.pull_request_number}]({self.pull_request_url})",
                "",
            ]

        if self.warnings:
            lines.append("### Warnings")
            lines.extend(f"- {warning}" for warning in self.warnings)
            lines.append("")

        if self.errors:
            lines.append("### Errors")
            lines.extend(f"- {error.message}" for error in self.errors)

        return "\n".join(lines).rstrip() + "\n"
