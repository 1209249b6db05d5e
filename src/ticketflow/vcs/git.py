"""Git version control over asyncio subprocesses.

GitRepository implements the version control interface the orchestrator
uses: branch management, staging, commits, pushes, status snapshots and
the file search the context builder falls back to. Every call runs the
git binary without blocking the event loop and is bounded by a timeout.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from ticketflow.config import TicketflowSettings
from ticketflow.implementation.models import CommitInfo


logger = logging.getLogger(__name__)

DEFAULT_GIT_TIMEOUT_SECONDS = 300

# Separator for git log --format fields
_FIELD_SEPARATOR = "\x1f"


class GitCommandError(Exception):
    """Raised when a git command fails or times out.

    Attributes:
        command: The git arguments that were run.
        returncode: Process exit code (-1 on timeout or launch failure).
        stderr: Captured standard error.
    """

    def __init__(self, command: list[str], returncode: int, stderr: str):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"git {' '.join(command)} failed ({returncode}): {stderr.strip()}"
        )


@dataclass
class RepositoryStatus:
    """Snapshot of the working tree.

    Attributes:
        current_branch: Checked-out branch name.
        is_clean: True when there are no staged, modified or untracked files.
        branches: Local branch names.
        changed_files: Paths reported by git status.
    """

    current_branch: str
    is_clean: bool
    branches: list[str] = field(default_factory=list)
    changed_files: list[str] = field(default_factory=list)


class GitRepository:
    """Async git client bound to a working tree.

    Each ephemeral workspace gets its own client from bound_to, so
    concurrent workflows never re-point a shared instance.

    Attributes:
        remote_name: Remote used for pull and push.
        default_branch: Branch new work starts from.
        author_name: Commit author name.
        author_email: Commit author email.
        timeout: Seconds before a git command is killed.
    """

    def __init__(
        self,
        repository_path: str,
        remote_name: str = "origin",
        default_branch: str = "main",
        author_name: str = "ticketflow",
        author_email: str = "ticketflow@localhost",
        timeout: int = DEFAULT_GIT_TIMEOUT_SECONDS,
    ):
        self._repository_path = repository_path
        self.remote_name = remote_name
        self.default_branch = default_branch
        self.author_name = author_name
        self.author_email = author_email
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: TicketflowSettings) -> "GitRepository":
        return cls(
            repository_path=settings.repository_path,
            remote_name=settings.remote_name,
            default_branch=settings.default_branch,
            author_name=settings.git_author_name,
            author_email=settings.git_author_email,
            timeout=settings.git_timeout_seconds,
        )

    @property
    def repository_path(self) -> str:
        return self._repository_path

    def bound_to(self, path: str) -> "GitRepository":
        """A client with the same remote and author settings, bound to path."""
        return GitRepository(
            repository_path=path,
            remote_name=self.remote_name,
            default_branch=self.default_branch,
            author_name=self.author_name,
            author_email=self.author_email,
            timeout=self.timeout,
        )

    def switch_repository(self, path: str) -> None:
        """Point subsequent commands at another working tree."""
        logger.debug(
            "Switching repository",
            extra={"from_path": self._repository_path, "to_path": path},
        )
        self._repository_path = path

    async def _execute(
        self, args: list[str], cwd: Optional[str] = None
    ) -> tuple[int, str, str]:
        """Run git and return (returncode, stdout, stderr).

        Raises:
            GitCommandError: If git cannot be launched or times out.
        """
        try:
            process = await asyncio.create_subprocess_exec(
                "git",
                *args,
                cwd=cwd if cwd is not None else self._repository_path,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise GitCommandError(args, -1, f"Failed to execute git: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout
            )
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise GitCommandError(
                args, -1, f"Timed out after {self.timeout}s"
            ) from exc

        return (
            process.returncode,
            stdout.decode(errors="replace"),
            stderr.decode(errors="replace"),
        )

    async def _run(self, *args: str, cwd: Optional[str] = None) -> str:
        """Run git and return stdout, raising on a non-zero exit."""
        returncode, stdout, stderr = await self._execute(list(args), cwd=cwd)
        if returncode != 0:
            raise GitCommandError(list(args), returncode, stderr)
        return stdout

    async def current_branch(self) -> str:
        output = await self._run("rev-parse", "--abbrev-ref", "HEAD")
        return output.strip()

    async def pull(self) -> None:
        branch = await self.current_branch()
        await self._run("pull", "--ff-only", self.remote_name, branch)
        logger.info("Pulled latest changes", extra={"branch": branch})

    async def checkout(self, branch: str) -> None:
        await self._run("checkout", branch)
        logger.info("Checked out branch", extra={"branch": branch})

    async def create_branch(self, name: str, base: Optional[str] = None) -> None:
        """Create and check out a branch, optionally from a base ref."""
        args = ["checkout", "-b", name]
        if base:
            args.append(base)
        await self._run(*args)
        logger.info("Created branch", extra={"branch": name, "base": base})

    async def stage_all(self) -> None:
        await self._run("add", "--all")

    async def commit(self, message: str) -> CommitInfo:
        """Commit staged changes as the configured author.

        Returns:
            CommitInfo for the new HEAD commit.
        """
        await self._run(
            "-c",
            f"user.name={self.author_name}",
            "-c",
            f"user.email={self.author_email}",
            "commit",
            "-m",
            message,
        )
        output = await self._run(
            "log",
            "-1",
            f"--format=%H{_FIELD_SEPARATOR}%an{_FIELD_SEPARATOR}%aI",
        )
        commit_hash, author, timestamp = output.strip().split(_FIELD_SEPARATOR)
        info = CommitInfo(
            hash=commit_hash,
            message=message,
            author=author,
            timestamp=datetime.fromisoformat(timestamp),
        )
        logger.info("Created commit", extra={"commit": info.short_hash})
        return info

    async def push(self, branch: str) -> None:
        await self._run("push", "--set-upstream", self.remote_name, branch)
        logger.info("Pushed branch", extra={"branch": branch, "remote": self.remote_name})

    async def list_branches(self) -> list[str]:
        output = await self._run("branch", "--format=%(refname:short)")
        return [line.strip() for line in output.splitlines() if line.strip()]

    async def _changed_files(self) -> list[str]:
        output = await self._run("status", "--porcelain")
        return [line[3:] for line in output.splitlines() if len(line) > 3]

    async def is_clean(self) -> bool:
        return not await self._changed_files()

    async def get_status(self) -> RepositoryStatus:
        changed = await self._changed_files()
        return RepositoryStatus(
            current_branch=await self.current_branch(),
            is_clean=not changed,
            branches=await self.list_branches(),
            changed_files=changed,
        )

    async def discard_changes(self) -> None:
        """Reset tracked files to HEAD and remove untracked files."""
        await self._run("reset", "--hard", "HEAD")
        await self._run("clean", "-fd")
        logger.info("Discarded working tree changes", extra={"path": self._repository_path})

    async def clone_repository(self, url: str, path: str) -> None:
        """Clone url into path, creating parent directories as needed."""
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        await self._run("clone", url, path, cwd=str(Path(path).parent))
        logger.info("Cloned repository", extra={"target": path})

    async def search_in_files(self, term: str, pattern: str) -> list[str]:
        """List tracked files matching pattern whose content contains term.

        Matching is case-insensitive and literal. No matches is an empty list.
        """
        args = ["grep", "-l", "-i", "-F", "-e", term, "--", pattern]
        returncode, stdout, stderr = await self._execute(args)
        # git grep exits 1 when nothing matched
        if returncode == 1 and not stderr.strip():
            return []
        if returncode != 0:
            raise GitCommandError(args, returncode, stderr)
        return [line.strip() for line in stdout.splitlines() if line.strip()]

    async def list_files(self, pattern: str) -> list[str]:
        """List tracked and untracked, non-ignored files matching pattern."""
        output = await self._run(
            "ls-files", "--cached", "--others", "--exclude-standard", "--", pattern
        )
        return sorted({line.strip() for line in output.splitlines() if line.strip()})

    async def read_file(self, path: str) -> str:
        """Read a file relative to the repository root.

        Raises:
            ValueError: If path resolves outside the repository.
        """
        root = Path(self._repository_path).resolve()
        target = (root / path).resolve()
        if not target.is_relative_to(root):
            raise ValueError(f"Path escapes repository root: {path}")
        return await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")

