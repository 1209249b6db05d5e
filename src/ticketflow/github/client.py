"""GitHub API client for opening pull requests.

Creates the pull request for an implemented ticket, then attaches labels
and requests reviewers. Retry and rate limit handling come from
RetryingHTTPClient.

Source:
- src/ticketflow/github/models.py (PullRequestRequest, PullRequestInfo)
- src/ticketflow/config.py (github_token, github_owner, github_repository)
"""

import logging
from typing import Any, Dict, List

from ticketflow.config import ConfigurationError, TicketflowSettings
from ticketflow.github.models import PullRequestInfo, PullRequestRequest
from ticketflow.http import HTTPServiceError, RetryingHTTPClient


logger = logging.getLogger(__name__)

# Timeout for the connectivity check
CONNECTION_TEST_TIMEOUT = 10.0


class GitHubAPIError(HTTPServiceError):
    """Raised when a GitHub API request fails."""


class GitHubClient(RetryingHTTPClient):
    """Async GitHub API client bound to one repository.

    Supports both github.com and GitHub Enterprise Server through base_url.

    Attributes:
        token: GitHub API token (PAT or GitHub App token).
        owner: Repository owner (user or organization).
        repository: Repository name.

    Example:
        >>> client = GitHubClient(token="ghp_xxx", owner="acme", repository="shop")
        >>> async with client:
        ...     info = await client.create_pull_request(request)
    """

    error_class = GitHubAPIError
    service_name = "GitHub API"

    def __init__(
        self,
        token: str,
        owner: str,
        repository: str,
        base_url: str = "https://api.github.com",
        **kwargs: Any,
    ):
        super().__init__(base_url=base_url, **kwargs)
        self.token = token
        self.owner = owner
        self.repository = repository

    @classmethod
    def from_settings(cls, settings: TicketflowSettings) -> "GitHubClient":
        return cls(
            token=settings.github_token,
            owner=settings.github_owner,
            repository=settings.github_repository,
            base_url=settings.github_base_url,
        )

    def _default_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "ticketflow/1.0",
        }

    def _require_configuration(self) -> None:
        if not self.token:
            raise ConfigurationError("github_token")
        if not self.owner:
            raise ConfigurationError("github_owner")
        if not self.repository:
            raise ConfigurationError("github_repository")

    @property
    def _repo_path(self) -> str:
        return f"/repos/{self.owner}/{self.repository}"

    async def create_pull_request(self, request: PullRequestRequest) -> PullRequestInfo:
        """Open a pull request, then attach labels and reviewers.

        Args:
            request: Title, body, branches, draft flag, labels and reviewers.

        Returns:
            PullRequestInfo with the created PR number and URL.

        Raises:
            ConfigurationError: If the token, owner or repository is missing.
            GitHubAPIError: If the request fails.
        """
        self._require_configuration()

        logger.info(
            "Creating pull request",
            extra={
                "owner": self.owner,
                "repo": self.repository,
                "title": request.title,
                "head": request.head_branch,
                "base": request.base_branch,
                "draft": request.is_draft,
            },
        )

        response = await self._request(
            method="POST",
            path=f"{self._repo_path}/pulls",
            json_data={
                "title": request.title,
                "body": request.body,
                "head": request.head_branch,
                "base": request.base_branch,
                "draft": request.is_draft,
            },
        )

        info = PullRequestInfo.from_github_response(response.json())

        logger.info(
            "Pull request created successfully",
            extra={"pr_number": info.number, "pr_url": info.url},
        )

        if request.labels:
            await self._add_labels(info.number, request.labels)

        if request.reviewers:
            await self.request_reviewers(info.number, request.reviewers)

        return info

    async def _add_labels(self, pr_number: int, labels: List[str]) -> None:
        """Add labels to a pull request.

        PRs use the issues API for labels since PRs are a type of issue.
        """
        logger.info(
            "Adding labels to pull request",
            extra={"pr_number": pr_number, "labels": labels},
        )
        await self._request(
            method="POST",
            path=f"{self._repo_path}/issues/{pr_number}/labels",
            json_data={"labels": labels},
        )

    async def request_reviewers(self, pr_number: int, reviewers: List[str]) -> Dict[str, Any]:
        """Request reviewers for a pull request.

        Returns:
            The updated PR data from GitHub API.

        Raises:
            GitHubAPIError: If the request fails.
        """
        logger.info(
            "Requesting reviewers for pull request",
            extra={"pr_number": pr_number, "reviewers": reviewers},
        )
        response = await self._request(
            method="POST",
            path=f"{self._repo_path}/pulls/{pr_number}/requested_reviewers",
            json_data={"reviewers": reviewers},
        )
        return response.json()

    async def test_connection(self) -> bool:
        """Check that the token is valid and the API is reachable.

        Returns:
            True if healthy, False otherwise.
        """
        if not self.token:
            return False
        try:
            response = await self.client.get("/user", timeout=CONNECTION_TEST_TIMEOUT)
            return response.status_code == 200
        except Exception as e:
            logger.warning(
                "GitHub API health check failed",
                extra={"error": str(e)},
            )
            return False

