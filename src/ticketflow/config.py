"""Workflow configuration using pydantic-settings.

This module defines the TicketflowSettings class that reads configuration
from environment variables with the TICKETFLOW_ prefix. Every field has a
default so the service can start without credentials. Collaborators that
need a credential raise ConfigurationError on first use instead.

Settings groups:
- Workflow switches (approval gate, build, tests, PR, tracker updates)
- Git repository and workspace settings
- Pull request service (GitHub)
- Issue tracker (Jira REST v3)
- AI completion endpoint (OpenAI-compatible)
- Validation commands, cache TTL, context budget
- Persistence and server binding
"""

from pathlib import Path
from typing import List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_COMMIT_TEMPLATE = "{type}({ticketId}): {description}\n\n{body}\n\nCloses {ticketId}"

DEFAULT_IGNORE_PATTERNS = [
    "__pycache__/",
    ".venv/",
    "venv/",
    "node_modules/",
    ".git/",
    "build/",
    "dist/",
    ".mypy_cache/",
    ".pytest_cache/",
]


class ConfigurationError(Exception):
    """Raised when a required setting is missing at the point of use.

    Attributes:
        setting: Name of the missing or invalid setting.
        message: Human-readable error description.
    """

    def __init__(self, setting: str, message: Optional[str] = None):
        self.setting = setting
        self.message = message or f"{setting} is not configured"
        super().__init__(self.message)


class TicketflowSettings(BaseSettings):
    """Workflow configuration from environment variables.

    All environment variables are prefixed with TICKETFLOW_
    (e.g., TICKETFLOW_TRACKER_BASE_URL). List fields accept JSON arrays.
    """

    model_config = SettingsConfigDict(
        env_prefix="TICKETFLOW_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # Workflow
    # -------------------------------------------------------------------------
    # Pause after analysis until a caller approves
    require_approval: bool = True

    auto_build: bool = True
    auto_run_tests: bool = True
    auto_create_pr: bool = True

    # Post progress comments and links on the tracker ticket
    auto_update_tracker: bool = True

    # Path fragments excluded from indexing and text search
    ignore_patterns: List[str] = list(DEFAULT_IGNORE_PATTERNS)

    # -------------------------------------------------------------------------
    # Git
    # -------------------------------------------------------------------------
    # Persistent local checkout, used unless temporary workspaces are forced
    repository_path: str = ""

    # Always analyze in a disposable clone
    use_temporary_workspace: bool = False

    # Parent directory for disposable clones (defaults to the system tempdir)
    temporary_workspace_base_path: str = ""

    # Remote to clone disposable workspaces from
    remote_url: str = ""

    remote_name: str = "origin"
    default_branch: str = "main"
    feature_branch_prefix: str = "feature/"
    bugfix_branch_prefix: str = "bugfix/"
    commit_message_template: str = DEFAULT_COMMIT_TEMPLATE
    git_author_name: str = "ticketflow"
    git_author_email: str = "ticketflow@localhost"
    git_timeout_seconds: int = 300

    # -------------------------------------------------------------------------
    # Pull requests (GitHub)
    # -------------------------------------------------------------------------
    github_token: str = ""
    github_base_url: str = "https://api.github.com"
    github_owner: str = ""
    github_repository: str = ""
    pr_create_as_draft: bool = False
    pr_default_reviewers: List[str] = []

    # -------------------------------------------------------------------------
    # Issue tracker (Jira)
    # -------------------------------------------------------------------------
    tracker_base_url: str = ""
    tracker_email: str = ""
    tracker_api_token: str = ""
    tracker_api_version: str = "3"

    # -------------------------------------------------------------------------
    # AI completion (OpenAI-compatible endpoint)
    # -------------------------------------------------------------------------
    llm_url: str = "http://localhost:8000/v1"
    llm_model: str = "Qwen/Qwen2.5-Coder-14B-Instruct-GPTQ-Int4"
    llm_api_key: str = ""
    llm_temperature: float = 0.3
    llm_timeout_seconds: int = 120
    llm_max_tokens: int = 8192

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------
    build_command: str = "python -m compileall -q ."
    test_command: str = "python -m pytest -q"
    validation_timeout_seconds: int = 900

    # -------------------------------------------------------------------------
    # Analysis cache and context
    # -------------------------------------------------------------------------
    # Hours before a cached analysis expires (unset: never)
    analysis_cache_ttl_hours: Optional[int] = None

    # Character budget for code context sent to the AI
    max_context_size: int = 30000

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------
    # PostgreSQL connection string; empty keeps state in memory
    database_url: str = ""

    # -------------------------------------------------------------------------
    # Server
    # -------------------------------------------------------------------------
    host: str = "0.0.0.0"
    port: int = 8080

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("llm_url", "github_base_url")
    @classmethod
    def validate_http_url(cls, v: str) -> str:
        """Validate that service URLs use http or https."""
        if not v or not v.strip():
            raise ValueError("URL cannot be empty")
        if not v.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("tracker_base_url")
    @classmethod
    def validate_tracker_url(cls, v: str) -> str:
        """Validate the tracker URL when it is set."""
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("tracker_base_url must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Validate that a configured database URL is a PostgreSQL URL."""
        if v and not v.startswith(("postgresql://", "postgres://")):
            raise ValueError(
                "database_url must start with postgresql:// or postgres://"
            )
        return v

    @field_validator("temporary_workspace_base_path")
    @classmethod
    def validate_workspace_path(cls, v: str) -> str:
        """Validate that a configured workspace base path is absolute."""
        if v and not Path(v).is_absolute():
            raise ValueError("temporary_workspace_base_path must be an absolute path")
        return v

    @field_validator(
        "git_timeout_seconds",
        "llm_timeout_seconds",
        "validation_timeout_seconds",
        "max_context_size",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate that timeouts and budgets are positive."""
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("analysis_cache_ttl_hours")
    @classmethod
    def validate_cache_ttl(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("analysis_cache_ttl_hours must be at least 1")
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v


def get_settings() -> TicketflowSettings:
    """Create and return a TicketflowSettings instance.

    Returns:
        TicketflowSettings: Configured settings instance.

    Raises:
        pydantic.ValidationError: If a configured value is invalid.
    """
    return TicketflowSettings()
