"""Jira REST client for reading tickets and posting updates.

Talks to the Jira Cloud REST API (v3 by default) with basic
authentication (account email plus API token):
- GET  issue/{key}             fetch a ticket
- POST issue/{key}/comment     add a comment (Atlassian document format)
- POST issue/{key}/remotelink  link the pull request to the ticket
- GET  myself                  connectivity check

Source:
- src/ticketflow/tracker/models.py (Ticket.from_jira_issue)
- src/ticketflow/config.py (tracker_base_url, tracker_email, tracker_api_token)
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from ticketflow.config import ConfigurationError, TicketflowSettings
from ticketflow.http import HTTPServiceError, RetryingHTTPClient
from ticketflow.tracker.models import Ticket


logger = logging.getLogger(__name__)

# Timeout for the connectivity check
CONNECTION_TEST_TIMEOUT = 10.0


class TrackerAPIError(HTTPServiceError):
    """Raised when a tracker API request fails."""


def to_document(text: str) -> Dict[str, Any]:
    """Wrap plain text in an Atlassian document, one paragraph per line block.

    Args:
        text: Plain or markdown text.

    Returns:
        An ADF document suitable for a comment body.
    """
    paragraphs: List[Dict[str, Any]] = []
    for block in text.split("\n\n"):
        if not block.strip():
            continue
        paragraphs.append(
            {"type": "paragraph", "content": [{"type": "text", "text": block}]}
        )
    if not paragraphs:
        paragraphs.append({"type": "paragraph", "content": []})
    return {"type": "doc", "version": 1, "content": paragraphs}


class JiraClient(RetryingHTTPClient):
    """Async Jira client implementing the ticket tracker interface.

    Attributes:
        email: Account email used for basic authentication.
        api_token: API token used for basic authentication.
        api_version: REST API version segment.
    """

    error_class = TrackerAPIError
    service_name = "Jira API"

    def __init__(
        self,
        base_url: str,
        email: str,
        api_token: str,
        api_version: str = "3",
        **kwargs: Any,
    ):
        super().__init__(base_url=base_url, **kwargs)
        self.email = email
        self.api_token = api_token
        self.api_version = api_version

    @classmethod
    def from_settings(cls, settings: TicketflowSettings) -> "JiraClient":
        return cls(
            base_url=settings.tracker_base_url,
            email=settings.tracker_email,
            api_token=settings.tracker_api_token,
            api_version=settings.tracker_api_version,
        )

    def _auth(self) -> Optional[httpx.Auth]:
        return httpx.BasicAuth(self.email, self.api_token)

    def _default_headers(self) -> Dict[str, str]:
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": "ticketflow/1.0",
        }

    def _require_configuration(self) -> None:
        if not self.base_url:
            raise ConfigurationError("tracker_base_url")
        if not self.email:
            raise ConfigurationError("tracker_email")
        if not self.api_token:
            raise ConfigurationError("tracker_api_token")

    def _api_path(self, suffix: str) -> str:
        return f"/rest/api/{self.api_version}/{suffix}"

    async def get_ticket(self, ticket_id: str) -> Ticket:
        """Fetch a ticket by key.

        Raises:
            ConfigurationError: If tracker credentials are missing.
            TrackerAPIError: If the ticket cannot be fetched.
        """
        self._require_configuration()
        logger.debug("Fetching ticket", extra={"ticket_id": ticket_id})

        response = await self._request("GET", self._api_path(f"issue/{ticket_id}"))
        ticket = Ticket.from_jira_issue(response.json(), self.base_url)

        logger.info(
            "Ticket fetched",
            extra={
                "ticket_id": ticket.id,
                "ticket_type": ticket.type.value,
                "priority": ticket.priority.value,
            },
        )
        return ticket

    async def add_comment(self, ticket_id: str, text: str) -> None:
        """Post a comment on a ticket."""
        self._require_configuration()
        await self._request(
            "POST",
            self._api_path(f"issue/{ticket_id}/comment"),
            json_data={"body": to_document(text)},
        )
        logger.info(
            "Comment added to ticket",
            extra={"ticket_id": ticket_id, "comment_length": len(text)},
        )

    async def add_remote_link(self, ticket_id: str, url: str, title: str) -> None:
        """Attach a web link (e.g., the pull request) to a ticket."""
        self._require_configuration()
        await self._request(
            "POST",
            self._api_path(f"issue/{ticket_id}/remotelink"),
            json_data={"object": {"url": url, "title": title}},
        )
        logger.info(
            "Remote link added to ticket",
            extra={"ticket_id": ticket_id, "url": url},
        )

    async def test_connection(self) -> bool:
        """Check that the credentials are valid and the API is reachable.

        Returns:
            True if healthy, False otherwise.
        """
        if not (self.base_url and self.email and self.api_token):
            return False
        try:
            response = await self.client.get(
                self._api_path("myself"), timeout=CONNECTION_TEST_TIMEOUT
            )
            return response.status_code == 200
        except Exception as e:
            logger.warning(
                "Jira API health check failed",
                extra={"error": str(e)},
            )
            return False
