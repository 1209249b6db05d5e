"""Interfaces of the external services the orchestrator drives.

Each protocol is satisfied by a concrete client in this package and by
AsyncMock-based fakes in tests:
- TicketTracker: tracker/client.py (JiraClient)
- VersionControl: vcs/git.py (GitRepository)
- PullRequestService: github/client.py (GitHubClient)
- AICompletionService: analysis/agent.py (AnalysisAgent)
- CodeIndexer: context/indexer.py (PythonCodeIndexer)
- ValidationRunner: runner/validation.py (CommandValidationRunner)
"""

from typing import Optional, Protocol, runtime_checkable

from ticketflow.analysis.models import AnalysisResult, GeneratedCode
from ticketflow.context.indexer import SemanticContext
from ticketflow.github.models import PullRequestInfo, PullRequestRequest
from ticketflow.implementation.models import BuildResult, CommitInfo, TestResult
from ticketflow.tracker.models import Ticket
from ticketflow.vcs.git import RepositoryStatus


@runtime_checkable
class TicketTracker(Protocol):
    async def get_ticket(self, ticket_id: str) -> Ticket: ...

    async def add_comment(self, ticket_id: str, text: str) -> None: ...

    async def add_remote_link(self, ticket_id: str, url: str, title: str) -> None: ...

    async def test_connection(self) -> bool: ...


@runtime_checkable
class VersionControl(Protocol):
    @property
    def repository_path(self) -> str: ...

    async def pull(self) -> None: ...

    async def checkout(self, branch: str) -> None: ...

    async def create_branch(self, name: str, base: Optional[str] = None) -> None: ...

    async def stage_all(self) -> None: ...

    async def commit(self, message: str) -> CommitInfo: ...

    async def push(self, branch: str) -> None: ...

    async def get_status(self) -> RepositoryStatus: ...

    async def list_branches(self) -> list[str]: ...

    async def is_clean(self) -> bool: ...

    async def discard_changes(self) -> None: ...

    async def clone_repository(self, url: str, path: str) -> None: ...

    def switch_repository(self, path: str) -> None: ...

    def bound_to(self, path: str) -> "VersionControl": ...

    async def search_in_files(self, term: str, pattern: str) -> list[str]: ...

    async def list_files(self, pattern: str) -> list[str]: ...

    async def read_file(self, path: str) -> str: ...


@runtime_checkable
class PullRequestService(Protocol):
    async def create_pull_request(self, request: PullRequestRequest) -> PullRequestInfo: ...

    async def test_connection(self) -> bool: ...


@runtime_checkable
class AICompletionService(Protocol):
    async def analyze_ticket(
        self,
        ticket: Ticket,
        code_context: str,
        feedback: Optional[str] = None,
    ) -> AnalysisResult: ...

    async def generate_code(
        self, context: str, requirements: str, existing_code: str
    ) -> GeneratedCode: ...

    async def test_connection(self) -> bool: ...


@runtime_checkable
class CodeIndexer(Protocol):
    async def build_semantic_context(self, ticket: Ticket) -> SemanticContext: ...


@runtime_checkable
class ValidationRunner(Protocol):
    async def run_build(self, path: str) -> BuildResult: ...

    async def run_tests(self, path: str) -> TestResult: ...
