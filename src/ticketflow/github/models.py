"""Pull request models for the GitHub integration.

Source:
- src/ticketflow/github/client.py (GitHubClient.create_pull_request)
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class PullRequestRequest(BaseModel):
    """Parameters for opening a pull request.

    Attributes:
        title: Pull request title.
        body: Markdown description.
        head_branch: Branch containing the changes.
        base_branch: Branch the changes merge into.
        is_draft: Open as a draft pull request.
        labels: Labels to attach after creation.
        reviewers: GitHub logins to request reviews from.
    """

    title: str = Field(..., min_length=1)
    body: str = ""
    head_branch: str = Field(..., min_length=1)
    base_branch: str = Field(..., min_length=1)
    is_draft: bool = False
    labels: List[str] = Field(default_factory=list)
    reviewers: List[str] = Field(default_factory=list)


class PullRequestInfo(BaseModel):
    """A pull request as reported by the hosting service."""

    number: int
    url: str
    title: str = ""
    state: str = "open"
    head_branch: str = ""
    base_branch: str = ""
    is_draft: bool = False
    created_at: Optional[datetime] = None

    @classmethod
    def from_github_response(cls, data: Dict[str, Any]) -> "PullRequestInfo":
        """Build from the JSON body of POST /repos/{owner}/{repo}/pulls."""
        return cls(
            number=data["number"],
            url=data.get("html_url", ""),
            title=data.get("title", ""),
            state=data.get("state", "open"),
            head_branch=(data.get("head") or {}).get("ref", ""),
            base_branch=(data.get("base") or {}).get("ref", ""),
            is_draft=bool(data.get("draft", False)),
            created_at=data.get("created_at"),
        )
