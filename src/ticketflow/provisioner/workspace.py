"""Workspace isolation for analysis and implementation runs.

Hands out either the persistent local checkout or a disposable clone per
call, and guarantees the disposable clone is removed on every exit path.
A clone comes with its own version control client, so tickets analyzing
concurrently never share a working tree.

Local mode applies when repository_path is configured, exists on disk,
and use_temporary_workspace is off. Otherwise each acquire creates
{base}/analysis-{ticket}-{uuid} and clones remote_url into it.

Source:
- src/ticketflow/config.py (repository_path, use_temporary_workspace,
  temporary_workspace_base_path, remote_url)
- src/ticketflow/vcs/git.py (GitRepository.clone_repository, bound_to)
"""

import asyncio
import logging
import shutil
import tempfile
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator

from ticketflow.config import ConfigurationError, TicketflowSettings

logger = logging.getLogger(__name__)

WORKSPACE_DIR_PERMISSIONS = 0o755

# Bounded retry for directory removal
RELEASE_MAX_ATTEMPTS = 3
RELEASE_BASE_DELAY_SECONDS = 1.0


@dataclass
class Workspace:
    """A checkout bound to one in-flight analysis or implementation call.

    Attributes:
        path: Absolute path to the working tree.
        ticket_id: Ticket the workspace was acquired for.
        ephemeral: True for a disposable clone that release deletes.
        vcs: Version control client bound to path. The shared client for
            the local checkout, a dedicated one for a clone.
        released: Set once release has run.
    """

    path: Path
    ticket_id: str
    ephemeral: bool
    vcs: Any = None
    released: bool = False


class WorkspaceProvisionError(Exception):
    """Raised when workspace provisioning fails."""

    pass


class GitCloneError(WorkspaceProvisionError):
    """Raised when a Git clone operation fails."""

    def __init__(self, repository_url: str, message: str):
        self.repository_url = repository_url
        super().__init__(f"Failed to clone {repository_url}: {message}")


def default_workspace_base() -> Path:
    return Path(tempfile.gettempdir()) / "ticketflow" / "workspaces"


class WorkspaceManager:
    """Provisions and releases workspaces for workflow runs.

    Attributes:
        settings: Workflow settings (checkout path, ephemeral mode, remote).
        vcs: Shared version control client. It clones disposable workspaces
            and hands out clients bound to them; it is never re-pointed.
        release_base_delay: Base delay in seconds between removal attempts.
    """

    def __init__(
        self,
        settings: TicketflowSettings,
        vcs: Any,
        release_base_delay: float = RELEASE_BASE_DELAY_SECONDS,
    ):
        self.settings = settings
        self.vcs = vcs
        self.release_base_delay = release_base_delay

    @property
    def base_path(self) -> Path:
        if self.settings.temporary_workspace_base_path:
            return Path(self.settings.temporary_workspace_base_path)
        return default_workspace_base()

    def _use_local_checkout(self) -> bool:
        path = self.settings.repository_path
        return (
            bool(path)
            and Path(path).exists()
            and not self.settings.use_temporary_workspace
        )

    def _build_workspace_path(self, ticket_id: str) -> Path:
        safe_name = ticket_id.lower().replace("-", "_")
        return self.base_path / f"analysis-{safe_name}-{uuid.uuid4().hex}"

    async def acquire(self, ticket_id: str) -> Workspace:
        """Provision a workspace for the given ticket.

        Args:
            ticket_id: Ticket key (e.g., "PROJ-123").

        Returns:
            The local checkout, or a fresh clone under the workspace base.

        Raises:
            ConfigurationError: If an ephemeral workspace is needed and
                remote_url is not set.
            WorkspaceProvisionError: If the directory cannot be created.
            GitCloneError: If the clone fails; the directory is removed first.
        """
        if self._use_local_checkout():
            logger.debug(
                "Using local checkout",
                extra={"ticket_id": ticket_id, "path": self.settings.repository_path},
            )
            return Workspace(
                path=Path(self.settings.repository_path),
                ticket_id=ticket_id,
                ephemeral=False,
                vcs=self.vcs,
            )

        if not self.settings.remote_url:
            raise ConfigurationError(
                "remote_url",
                "remote_url is required when no local checkout is available",
            )

        workspace_path = self._build_workspace_path(ticket_id)
        self._create_workspace_directory(workspace_path)

        if not (workspace_path / ".git").exists():
            try:
                await self.vcs.clone_repository(
                    self.settings.remote_url, str(workspace_path)
                )
            except Exception as exc:
                await asyncio.to_thread(shutil.rmtree, workspace_path, True)
                logger.error(
                    "Workspace clone failed",
                    extra={"ticket_id": ticket_id, "path": str(workspace_path)},
                )
                raise GitCloneError(self.settings.remote_url, str(exc)) from exc

        logger.info(
            "Provisioned ephemeral workspace",
            extra={"ticket_id": ticket_id, "path": str(workspace_path)},
        )
        return Workspace(
            path=workspace_path,
            ticket_id=ticket_id,
            ephemeral=True,
            vcs=self.vcs.bound_to(str(workspace_path)),
        )

    def _create_workspace_directory(self, workspace_path: Path) -> None:
        try:
            workspace_path.mkdir(parents=True, exist_ok=True)
            workspace_path.chmod(WORKSPACE_DIR_PERMISSIONS)
        except OSError as exc:
            raise WorkspaceProvisionError(
                f"Failed to create workspace at {workspace_path}: {exc}"
            ) from exc

    async def release(self, workspace: Workspace) -> None:
        """Release a workspace, deleting it when it is ephemeral.

        Removal is retried with exponential backoff. A final failure is
        logged and not raised. Releasing twice is a no-op.
        """
        if workspace.released:
            return
        workspace.released = True

        if not workspace.ephemeral:
            return

        for attempt in range(RELEASE_MAX_ATTEMPTS):
            try:
                if workspace.path.exists():
                    await asyncio.to_thread(shutil.rmtree, workspace.path)
                logger.info(
                    "Removed ephemeral workspace",
                    extra={"ticket_id": workspace.ticket_id, "path": str(workspace.path)},
                )
                return
            except OSError:
                if attempt == RELEASE_MAX_ATTEMPTS - 1:
                    logger.exception(
                        "Failed to remove workspace",
                        extra={
                            "ticket_id": workspace.ticket_id,
                            "path": str(workspace.path),
                            "attempts": RELEASE_MAX_ATTEMPTS,
                        },
                    )
                    return
                delay = self.release_base_delay * (2 ** attempt)
                logger.warning(
                    "Workspace removal failed, retrying",
                    extra={"path": str(workspace.path), "attempt": attempt + 1, "delay": delay},
                )
                await asyncio.sleep(delay)

    @asynccontextmanager
    async def workspace(self, ticket_id: str) -> AsyncIterator[Workspace]:
        """Acquire a workspace for the duration of the block.

        Example:
            >>> async with manager.workspace("PROJ-1") as ws:
            ...     await do_work(ws.path)
        """
        acquired = await self.acquire(ticket_id)
        try:
            yield acquired
        finally:
            await self.release(acquired)

