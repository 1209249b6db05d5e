"""Unit tests for the GitHub pull request client."""

import asyncio
import json

import httpx
import pytest

from ticketflow.config import ConfigurationError, TicketflowSettings
from ticketflow.github.client import GitHubAPIError, GitHubClient
from ticketflow.github.models import PullRequestInfo, PullRequestRequest


def run_async(coro):
    return asyncio.run(coro)


PR_RESPONSE = {
    "number": 42,
    "html_url": "https://github.com/acme/widgets/pull/42",
    "title": "PROJ-1: Add login rate limiting",
    "state": "open",
    "head": {"ref": "feature/PROJ-1-add-login-rate-limiting"},
    "base": {"ref": "main"},
    "draft": True,
    "created_at": "2024-01-15T10:30:00Z",
}


def _request(**overrides):
    values = {
        "title": "PROJ-1: Add login rate limiting",
        "body": "## PROJ-1",
        "head_branch": "feature/PROJ-1-add-login-rate-limiting",
        "base_branch": "main",
        "is_draft": True,
    }
    values.update(overrides)
    return PullRequestRequest(**values)


class _Recorder:
    def __init__(self, status=201):
        self.status = status
        self.calls = []

    def __call__(self, request):
        body = json.loads(request.content) if request.content else None
        self.calls.append((request.method, request.url.path, body, request.headers))
        if request.url.path.endswith("/pulls"):
            return httpx.Response(self.status, json=PR_RESPONSE)
        return httpx.Response(200, json={})


def _github(handler, token="ghp_test"):
    client = GitHubClient(
        token=token, owner="acme", repository="widgets", max_retries=0, base_delay=0.0
    )
    client._client = httpx.AsyncClient(
        base_url=client.base_url,
        headers=client._default_headers(),
        transport=httpx.MockTransport(handler),
    )
    return client


class TestCreatePullRequest:
    def test_creates_pull_request(self):
        recorder = _Recorder()

        async def scenario():
            async with _github(recorder) as client:
                return await client.create_pull_request(_request())

        info = run_async(scenario())

        assert info.number == 42
        assert info.url == "https://github.com/acme/widgets/pull/42"
        assert info.is_draft is True
        method, path, body, headers = recorder.calls[0]
        assert (method, path) == ("POST", "/repos/acme/widgets/pulls")
        assert body == {
            "title": "PROJ-1: Add login rate limiting",
            "body": "## PROJ-1",
            "head": "feature/PROJ-1-add-login-rate-limiting",
            "base": "main",
            "draft": True,
        }
        assert headers["Authorization"] == "Bearer ghp_test"
        assert len(recorder.calls) == 1

    def test_labels_and_reviewers_follow_creation(self):
        recorder = _Recorder()

        async def scenario():
            async with _github(recorder) as client:
                await client.create_pull_request(
                    _request(labels=["bug"], reviewers=["octocat"])
                )

        run_async(scenario())

        assert [(c[1], c[2]) for c in recorder.calls[1:]] == [
            ("/repos/acme/widgets/issues/42/labels", {"labels": ["bug"]}),
            ("/repos/acme/widgets/pulls/42/requested_reviewers", {"reviewers": ["octocat"]}),
        ]

    def test_validation_error_raises_api_error(self):
        recorder = _Recorder(status=422)

        async def scenario():
            async with _github(recorder) as client:
                await client.create_pull_request(_request())

        with pytest.raises(GitHubAPIError) as excinfo:
            run_async(scenario())

        assert excinfo.value.status_code == 422

    def test_missing_token_raises_configuration_error(self):
        recorder = _Recorder()

        async def scenario():
            async with _github(recorder, token="") as client:
                await client.create_pull_request(_request())

        with pytest.raises(ConfigurationError) as excinfo:
            run_async(scenario())

        assert excinfo.value.setting == "github_token"
        assert recorder.calls == []


class TestConnection:
    def test_connection_check(self):
        async def scenario(status):
            async with _github(lambda request: httpx.Response(status, json={})) as client:
                return await client.test_connection()

        assert run_async(scenario(200)) is True
        assert run_async(scenario(401)) is False

    def test_no_token_is_disconnected(self):
        client = GitHubClient(token="", owner="acme", repository="widgets")

        assert run_async(client.test_connection()) is False


def test_from_settings_uses_configured_repository():
    settings = TicketflowSettings(
        github_token="ghp_test",
        github_owner="acme",
        github_repository="widgets",
        github_base_url="https://github.example.com/api/v3/",
    )

    client = GitHubClient.from_settings(settings)

    assert client.base_url == "https://github.example.com/api/v3"
    assert client.owner == "acme"
    assert client.repository == "widgets"


def test_pull_request_info_from_response():
    info = PullRequestInfo.from_github_response(PR_RESPONSE)

    assert info.head_branch == "feature/PROJ-1-add-login-rate-limiting"
    assert info.base_branch == "main"
    assert info.created_at is not None
