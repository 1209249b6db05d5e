"""Issue tracker ticket models.

This module defines the ticket representation consumed by the workflow:
- TicketType: Normalized issue type
- TicketPriority: Normalized priority
- Ticket: The fields of a tracker issue the workflow reads

Tracker payloads (Jira REST v3) are mapped into these models by
Ticket.from_jira_issue so the rest of the package never touches raw
tracker JSON.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class TicketType(str, Enum):
    """Normalized tracker issue type."""

    BUG = "bug"
    STORY = "story"
    TASK = "task"
    EPIC = "epic"
    SUB_TASK = "sub_task"
    IMPROVEMENT = "improvement"
    NEW_FEATURE = "new_feature"


class TicketPriority(str, Enum):
    """Normalized tracker priority."""

    LOWEST = "lowest"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    HIGHEST = "highest"
    CRITICAL = "critical"


_TYPE_NAMES: Dict[str, TicketType] = {
    "bug": TicketType.BUG,
    "story": TicketType.STORY,
    "task": TicketType.TASK,
    "epic": TicketType.EPIC,
    "sub-task": TicketType.SUB_TASK,
    "subtask": TicketType.SUB_TASK,
    "improvement": TicketType.IMPROVEMENT,
    "new feature": TicketType.NEW_FEATURE,
}

_PRIORITY_NAMES: Dict[str, TicketPriority] = {
    "lowest": TicketPriority.LOWEST,
    "low": TicketPriority.LOW,
    "medium": TicketPriority.MEDIUM,
    "high": TicketPriority.HIGH,
    "highest": TicketPriority.HIGHEST,
    "critical": TicketPriority.CRITICAL,
    "blocker": TicketPriority.CRITICAL,
}

# Block-level document nodes that end a line of text
_BLOCK_NODES = {"paragraph", "heading", "listItem", "codeBlock", "blockquote"}

_ACCEPTANCE_HEADERS = ("acceptance criteria", "critérios de aceitação")
_BULLETS = ("-", "*", "•")


def parse_ticket_type(name: Optional[str]) -> TicketType:
    """Map a tracker issue type name to a TicketType, defaulting to TASK."""
    if not name:
        return TicketType.TASK
    return _TYPE_NAMES.get(name.lower(), TicketType.TASK)


def parse_ticket_priority(name: Optional[str]) -> TicketPriority:
    """Map a tracker priority name to a TicketPriority, defaulting to MEDIUM."""
    if not name:
        return TicketPriority.MEDIUM
    return _PRIORITY_NAMES.get(name.lower(), TicketPriority.MEDIUM)


def extract_document_text(document: Any) -> str:
    """Flatten an Atlassian document (or plain string) into text.

    Text nodes are concatenated in document order. Block-level nodes
    terminate a line so that list items and paragraphs stay separable.

    Args:
        document: ADF node tree, plain string, or None.

    Returns:
        The extracted text, stripped of surrounding whitespace.
    """
    if document is None:
        return ""
    if isinstance(document, str):
        return document.strip()

    parts: List[str] = []
    _collect_text(document, parts)
    return "".join(parts).strip()


def _collect_text(node: Any, parts: List[str]) -> None:
    if isinstance(node, list):
        for item in node:
            _collect_text(item, parts)
        return
    if not isinstance(node, dict):
        return

    text = node.get("text")
    if isinstance(text, str):
        parts.append(text)

    content = node.get("content")
    if isinstance(content, list):
        for item in content:
            _collect_text(item, parts)

    if node.get("type") in _BLOCK_NODES:
        parts.append("\n")


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a Jira timestamp such as 2024-01-15T10:30:00.000+0000."""
    if not value:
        return None
    for fmt in ("%Y-%m-%dT%H:%M:%S.%f%z", "%Y-%m-%dT%H:%M:%S%z"):
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    return None


def extract_acceptance_criteria(text: str) -> List[str]:
    """Collect bullet lines following an "Acceptance Criteria" header.

    The section ends at the first blank line after the header.
    """
    criteria: List[str] = []
    in_section = False

    for line in text.split("\n"):
        stripped = line.strip()
        lowered = stripped.lower()

        if any(header in lowered for header in _ACCEPTANCE_HEADERS):
            in_section = True
            continue

        if in_section and stripped.startswith(_BULLETS):
            criteria.append(stripped.lstrip("-*• "))
        elif in_section and not stripped:
            in_section = False

    return criteria


class Ticket(BaseModel):
    """A tracker issue as seen by the workflow.

    Attributes:
        id: Ticket key (e.g., "PROJ-123").
        project_key: Project prefix of the key.
        title: Ticket summary.
        description: Plain-text description.
        type: Normalized issue type.
        priority: Normalized priority.
        status: Tracker status name.
        labels: Labels attached to the ticket.
        components: Components attached to the ticket.
        assignee: Display name of the assignee.
        reporter: Display name of the reporter.
        url: Browser URL of the ticket.
        acceptance_criteria: Bullet items under an acceptance criteria header.
        created_at: Creation timestamp, when known.
        updated_at: Last update timestamp, when known.
    """

    id: str = Field(..., min_length=1, description="Ticket key")
    project_key: str = Field(default="", description="Project prefix of the key")
    title: str = Field(default="", description="Ticket summary")
    description: str = Field(default="", description="Plain-text description")
    type: TicketType = Field(default=TicketType.TASK, description="Issue type")
    priority: TicketPriority = Field(
        default=TicketPriority.MEDIUM, description="Issue priority"
    )
    status: str = Field(default="", description="Tracker status name")
    labels: List[str] = Field(default_factory=list)
    components: List[str] = Field(default_factory=list)
    assignee: str = Field(default="")
    reporter: str = Field(default="")
    url: str = Field(default="", description="Browser URL of the ticket")
    acceptance_criteria: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_jira_issue(cls, payload: Dict[str, Any], base_url: str) -> "Ticket":
        """Build a Ticket from a Jira REST v3 issue payload.

        Args:
            payload: JSON body of GET /rest/api/3/issue/{key}.
            base_url: Tracker base URL, used to build the browse link.

        Returns:
            The mapped Ticket.
        """
        key = payload.get("key") or ""
        fields = payload.get("fields") or {}

        description = extract_document_text(fields.get("description"))

        return cls(
            id=key,
            project_key=key.split("-")[0] if key else "",
            title=fields.get("summary") or "",
            description=description,
            type=parse_ticket_type((fields.get("issuetype") or {}).get("name")),
            priority=parse_ticket_priority((fields.get("priority") or {}).get("name")),
            status=(fields.get("status") or {}).get("name") or "",
            labels=list(fields.get("labels") or []),
            components=[
                c.get("name", "") for c in fields.get("components") or [] if c
            ],
            assignee=(fields.get("assignee") or {}).get("displayName") or "",
            reporter=(fields.get("reporter") or {}).get("displayName") or "",
            url=f"{base_url.rstrip('/')}/browse/{key}",
            acceptance_criteria=extract_acceptance_criteria(description),
            created_at=_parse_timestamp(fields.get("created")),
            updated_at=_parse_timestamp(fields.get("updated")),
        )
