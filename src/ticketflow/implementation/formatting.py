"""Naming and markdown formatting for the implementation phase.

This module renders the text artifacts an implementation produces:
- Branch names from the ticket type and title
- Commit messages from the configured template
- Requirements markdown handed to code generation
- Pull request labels, checklist and body

Source:
- src/ticketflow/tracker/models.py (Ticket, TicketType, TicketPriority)
- src/ticketflow/analysis/models.py (AnalysisResult)
- src/ticketflow/implementation/models.py (ImplementationResult)
"""

import re

from pydantic import BaseModel

from ticketflow.analysis.models import AnalysisResult
from ticketflow.implementation.models import ImplementationResult
from ticketflow.tracker.models import Ticket, TicketPriority, TicketType


MAX_BRANCH_DESCRIPTION_LENGTH = 50

_INVALID_BRANCH_CHARS = re.compile(r"[^a-z0-9-]")
_MULTIPLE_HYPHENS = re.compile(r"-+")

_COMMIT_TYPES = {
    TicketType.BUG: "fix",
    TicketType.STORY: "feat",
    TicketType.NEW_FEATURE: "feat",
    TicketType.IMPROVEMENT: "improve",
}


def sanitize_branch_name(name: str) -> str:
    """Lowercase, replace invalid characters with "-", collapse and trim hyphens."""
    sanitized = _INVALID_BRANCH_CHARS.sub("-", name.lower())
    sanitized = _MULTIPLE_HYPHENS.sub("-", sanitized)
    return sanitized.strip("-")


def generate_branch_name(
    ticket: Ticket,
    feature_prefix: str = "feature/",
    bugfix_prefix: str = "bugfix/",
) -> str:
    """Build "{prefix}{ticket id}-{sanitized title}" for a ticket.

    Example:
        >>> generate_branch_name(Ticket(id="PROJ-7", title="Fix login!", type="bug"))
        'bugfix/PROJ-7-fix-login'
    """
    prefix = bugfix_prefix if ticket.type == TicketType.BUG else feature_prefix
    description = sanitize_branch_name(ticket.title)[:MAX_BRANCH_DESCRIPTION_LENGTH]
    return f"{prefix}{ticket.id}-{description}"


def commit_type(ticket_type: TicketType) -> str:
    return _COMMIT_TYPES.get(ticket_type, "chore")


def describe_changes(result: ImplementationResult) -> str:
    """Summarize file counts, e.g. "Created 2 file(s), Modified 1 file(s)"."""
    parts = []
    if result.created_files:
        parts.append(f"Created {len(result.created_files)} file(s)")
    if result.modified_files:
        parts.append(f"Modified {len(result.modified_files)} file(s)")
    if result.deleted_files:
        parts.append(f"Deleted {len(result.deleted_files)} file(s)")
    return ", ".join(parts) or "No file changes"


def render_commit_message(template: str, ticket: Ticket, description: str) -> str:
    """Fill the commit template placeholders.

    Placeholders are {type}, {ticketId}, {description} and {body}. They are
    replaced literally so braces in ticket text are safe.
    """
    return (
        template.replace("{type}", commit_type(ticket.type))
        .replace("{ticketId}", ticket.id)
        .replace("{description}", description)
        .replace("{body}", f"Implementation of ticket {ticket.id}: {ticket.title}")
    )


def build_requirements(analysis: AnalysisResult) -> str:
    """Render an approved analysis as requirements for code generation."""
    lines = ["## Implementation Requirements", "", "### Files to Change:"]
    lines.extend(
        f"- {f.path} ({f.change_type.value}): {f.description}"
        for f in analysis.affected_files
    )
    lines += ["", "### Required Changes:"]
    lines.extend(
        f"- [{c.category.value}] {c.component}: {c.description}"
        for c in analysis.required_changes
    )
    lines += ["", "### Implementation Plan:"]
    lines.extend(
        f"{step.order}. {step.description}"
        for step in sorted(analysis.implementation_plan, key=lambda s: s.order)
    )
    if analysis.validation_criteria:
        lines += ["", "### Validation Criteria:"]
        lines.extend(f"- {v.description}" for v in analysis.validation_criteria)
    return "\n".join(lines) + "\n"


def pull_request_labels(ticket: Ticket) -> list[str]:
    labels = []
    if ticket.type == TicketType.BUG:
        labels.append("bug")
    elif ticket.type in (TicketType.STORY, TicketType.NEW_FEATURE):
        labels.append("enhancement")
    if ticket.priority in (TicketPriority.CRITICAL, TicketPriority.HIGHEST):
        labels.append("priority:high")
    return labels


class PullRequestChecklist(BaseModel):
    follows_project_patterns: bool = True
    has_unit_tests: bool = False
    tests_passing: bool = True
    documentation_updated: bool = True
    no_breaking_changes: bool = True
    self_reviewed: bool = True


def build_checklist(
    implementation: ImplementationResult, analysis: AnalysisResult
) -> PullRequestChecklist:
    tests = implementation.test_result
    return PullRequestChecklist(
        has_unit_tests=tests is not None and tests.total_tests > 0,
        tests_passing=tests.all_passed if tests is not None else True,
        no_breaking_changes=not analysis.technical_impact.has_breaking_changes,
    )


def _box(checked: bool) -> str:
    return "[x]" if checked else "[ ]"


def build_pull_request_body(
    ticket: Ticket,
    implementation: ImplementationResult,
    checklist: PullRequestChecklist,
    build_command: str = "python -m compileall -q .",
    test_command: str = "python -m pytest -q",
) -> str:
    """Render the pull request description.

    Args:
        ticket: The implemented ticket.
        implementation: Result carrying the changed files and test counts.
        checklist: Review checklist state.
        build_command: Command shown in the how-to-test steps.
        test_command: Command shown in the how-to-test steps.

    Returns:
        GitHub-flavored markdown.
    """
    is_bug = ticket.type == TicketType.BUG
    lines = [
        f"## {ticket.id}: {ticket.title}",
        "",
        "### Description",
        ticket.description or "(no description provided)",
        "",
        "### Ticket",
        f"[{ticket.id}]({ticket.url})" if ticket.url else ticket.id,
        "",
        "### Type of Change",
        f"- {_box(is_bug)} Bug fix",
        f"- {_box(not is_bug)} New feature",
        f"- {_box(not checklist.no_breaking_changes)} Breaking change",
        "",
        "### Changes",
    ]
    lines.extend(
        f"- Added `{f.path}` - {f.description}" for f in implementation.created_files
    )
    lines.extend(
        f"- Modified `{f.path}` - {f.description}" for f in implementation.modified_files
    )
    lines.extend(f"- Deleted `{path}`" for path in implementation.deleted_files)
    lines += [
        "",
        "### How to Test",
        f"1. Check out the branch: `git checkout {implementation.branch_name}`",
        f"2. Run the build: `{build_command}`",
        f"3. Run the tests: `{test_command}`",
        "4. Verify the acceptance criteria on the ticket",
        "",
        "### Checklist",
        f"- {_box(checklist.follows_project_patterns)} Code follows the project conventions",
        f"- {_box(checklist.has_unit_tests)} Unit tests added or updated",
        f"- {_box(checklist.tests_passing)} Tests pass locally",
        f"- {_box(checklist.documentation_updated)} Documentation updated",
        f"- {_box(checklist.no_breaking_changes)} No breaking changes, or they are documented",
        f"- {_box(checklist.self_reviewed)} Self-review performed",
        "",
    ]

    tests = implementation.test_result
    if tests is not None:
        lines += [
            "### Test Results",
            f"- Total: {tests.total_tests}",
            f"- Passed: {tests.passed_tests}",
            f"- Failed: {tests.failed_tests}",
            "",
        ]

    lines.append("*Generated automatically by ticketflow.*")
    return "\n".join(lines) + "\n"
