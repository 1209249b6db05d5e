"""Unit tests for WorkspaceManager."""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from ticketflow.config import ConfigurationError, TicketflowSettings
from ticketflow.provisioner.workspace import (
    GitCloneError,
    Workspace,
    WorkspaceManager,
)


def run_async(coro):
    return asyncio.run(coro)


def _settings(tmp_path: Path, **overrides) -> TicketflowSettings:
    values = {
        "repository_path": "",
        "use_temporary_workspace": True,
        "temporary_workspace_base_path": str(tmp_path / "workspaces"),
        "remote_url": "https://example.com/acme/widgets.git",
    }
    values.update(overrides)
    return TicketflowSettings(**values)


def _cloning_vcs() -> AsyncMock:
    vcs = AsyncMock()

    async def clone(url, path):
        (Path(path) / ".git").mkdir()

    vcs.clone_repository.side_effect = clone
    vcs.bound_to = MagicMock(side_effect=lambda path: MagicMock(repository_path=path))
    return vcs


class TestAcquire:
    def test_local_checkout_is_returned_as_is(self, tmp_path):
        checkout = tmp_path / "checkout"
        checkout.mkdir()
        vcs = AsyncMock()
        manager = WorkspaceManager(
            _settings(tmp_path, repository_path=str(checkout), use_temporary_workspace=False),
            vcs,
        )

        workspace = run_async(manager.acquire("PROJ-1"))

        assert workspace.path == checkout
        assert workspace.ephemeral is False
        assert workspace.vcs is vcs
        vcs.clone_repository.assert_not_awaited()

    def test_missing_local_checkout_uses_clone(self, tmp_path):
        vcs = _cloning_vcs()
        manager = WorkspaceManager(
            _settings(
                tmp_path,
                repository_path=str(tmp_path / "missing"),
                use_temporary_workspace=False,
            ),
            vcs,
        )

        workspace = run_async(manager.acquire("PROJ-1"))

        assert workspace.ephemeral is True
        vcs.clone_repository.assert_awaited_once()

    def test_ephemeral_path_layout(self, tmp_path):
        manager = WorkspaceManager(_settings(tmp_path), _cloning_vcs())

        workspace = run_async(manager.acquire("PROJ-12"))

        assert workspace.path.parent == tmp_path / "workspaces"
        assert workspace.path.name.startswith("analysis-proj_12-")
        assert (workspace.path / ".git").is_dir()

    def test_clone_gets_its_own_bound_client(self, tmp_path):
        vcs = _cloning_vcs()
        vcs.repository_path = "/repo/shared"
        manager = WorkspaceManager(_settings(tmp_path), vcs)

        workspace = run_async(manager.acquire("PROJ-12"))

        assert workspace.vcs is not vcs
        assert workspace.vcs.repository_path == str(workspace.path)
        assert vcs.repository_path == "/repo/shared"
        vcs.bound_to.assert_called_once_with(str(workspace.path))

    def test_each_acquire_gets_a_fresh_directory(self, tmp_path):
        manager = WorkspaceManager(_settings(tmp_path), _cloning_vcs())

        async def scenario():
            return await manager.acquire("PROJ-1"), await manager.acquire("PROJ-1")

        first, second = run_async(scenario())
        assert first.path != second.path

    def test_missing_remote_url_raises_before_creating_anything(self, tmp_path):
        manager = WorkspaceManager(_settings(tmp_path, remote_url=""), AsyncMock())

        with pytest.raises(ConfigurationError) as exc_info:
            run_async(manager.acquire("PROJ-1"))

        assert exc_info.value.setting == "remote_url"
        assert not (tmp_path / "workspaces").exists()

    def test_clone_failure_removes_directory(self, tmp_path):
        vcs = AsyncMock()
        vcs.clone_repository.side_effect = RuntimeError("authentication failed")
        manager = WorkspaceManager(_settings(tmp_path), vcs)

        with pytest.raises(GitCloneError):
            run_async(manager.acquire("PROJ-1"))

        assert list((tmp_path / "workspaces").iterdir()) == []


class TestRelease:
    def test_release_removes_ephemeral_directory(self, tmp_path):
        manager = WorkspaceManager(_settings(tmp_path), _cloning_vcs())

        async def scenario():
            workspace = await manager.acquire("PROJ-1")
            await manager.release(workspace)
            return workspace

        workspace = run_async(scenario())
        assert not workspace.path.exists()
        assert workspace.released is True

    def test_release_keeps_local_checkout(self, tmp_path):
        checkout = tmp_path / "checkout"
        checkout.mkdir()
        manager = WorkspaceManager(_settings(tmp_path), AsyncMock())

        run_async(manager.release(Workspace(path=checkout, ticket_id="PROJ-1", ephemeral=False)))

        assert checkout.exists()

    def test_release_is_idempotent(self, tmp_path):
        manager = WorkspaceManager(_settings(tmp_path), _cloning_vcs())

        async def scenario():
            workspace = await manager.acquire("PROJ-1")
            with patch("ticketflow.provisioner.workspace.shutil.rmtree") as rmtree:
                await manager.release(workspace)
                await manager.release(workspace)
            return rmtree

        assert run_async(scenario()).call_count == 1

    def test_release_retries_then_gives_up_without_raising(self, tmp_path):
        manager = WorkspaceManager(_settings(tmp_path), _cloning_vcs(), release_base_delay=0)

        async def scenario():
            workspace = await manager.acquire("PROJ-1")
            with patch(
                "ticketflow.provisioner.workspace.shutil.rmtree",
                side_effect=OSError("busy"),
            ) as rmtree:
                await manager.release(workspace)
            return rmtree

        assert run_async(scenario()).call_count == 3


class TestWorkspaceScope:
    def test_directory_removed_after_normal_exit(self, tmp_path):
        manager = WorkspaceManager(_settings(tmp_path), _cloning_vcs())

        async def scenario():
            async with manager.workspace("PROJ-1") as workspace:
                assert workspace.path.exists()
                return workspace.path

        assert not run_async(scenario()).exists()

    def test_directory_removed_after_exception(self, tmp_path):
        manager = WorkspaceManager(_settings(tmp_path), _cloning_vcs())
        seen = []

        async def scenario():
            async with manager.workspace("PROJ-1") as workspace:
                seen.append(workspace.path)
                raise RuntimeError("analysis failed")

        with pytest.raises(RuntimeError):
            run_async(scenario())

        assert not seen[0].exists()

