"""Analysis result models produced by the AI step.

This module defines the structured output of ticket analysis and code
generation:
- AnalysisResult: Affected files, required changes, impact, risks, plan
- GeneratedCode: File operations proposed for an approved analysis

The AI returns loosely formatted JSON, so enum fields accept either their
canonical value ("very_complex") or the CamelCase / spaced spelling a model
tends to emit ("VeryComplex", "Very Complex").
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List

from pydantic import BaseModel, Field, field_validator


_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def normalize_enum_value(value: Any) -> Any:
    """Normalize an enum spelling to lower snake case.

    Non-string values are returned unchanged so pydantic can report them.
    """
    if not isinstance(value, str):
        return value
    snake = _CAMEL_BOUNDARY.sub("_", value.strip())
    return re.sub(r"[\s\-]+", "_", snake).lower()


class FileChangeType(str, Enum):
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"
    RENAME = "rename"


class ChangeCategory(str, Enum):
    CONTROLLER = "controller"
    SERVICE = "service"
    REPOSITORY = "repository"
    MODEL = "model"
    DTO = "dto"
    VALIDATOR = "validator"
    MIGRATION = "migration"
    CONFIGURATION = "configuration"
    TEST = "test"
    DOCUMENTATION = "documentation"


class RiskSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class OpportunityType(str, Enum):
    REFACTORING = "refactoring"
    PERFORMANCE = "performance"
    SECURITY = "security"
    CODE_QUALITY = "code_quality"
    PATTERN = "pattern"
    DOCUMENTATION = "documentation"


class ValidationType(str, Enum):
    UNIT_TEST = "unit_test"
    INTEGRATION_TEST = "integration_test"
    MANUAL_TEST = "manual_test"
    CODE_REVIEW = "code_review"
    PERFORMANCE_TEST = "performance_test"
    SECURITY_SCAN = "security_scan"


class Complexity(str, Enum):
    TRIVIAL = "trivial"
    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"
    VERY_COMPLEX = "very_complex"


class AnalysisStatus(str, Enum):
    """Review status of an analysis.

    Attributes:
        PENDING: Created, not yet reviewed.
        IN_PROGRESS: Analysis is running.
        COMPLETED: Analysis finished and awaits approval.
        APPROVED: Approved for implementation.
        REJECTED: Rejected by the reviewer.
        NEEDS_REVISION: Reviewer requested changes.
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    APPROVED = "approved"
    REJECTED = "rejected"
    NEEDS_REVISION = "needs_revision"


class FileOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class AffectedFile(BaseModel):
    path: str
    change_type: FileChangeType = FileChangeType.MODIFY
    description: str = ""
    methods_affected: List[str] = Field(default_factory=list)

    @field_validator("change_type", mode="before")
    @classmethod
    def normalize_change_type(cls, v: Any) -> Any:
        return normalize_enum_value(v)


class RequiredChange(BaseModel):
    component: str = ""
    description: str = ""
    category: ChangeCategory = ChangeCategory.SERVICE

    @field_validator("category", mode="before")
    @classmethod
    def normalize_category(cls, v: Any) -> Any:
        return normalize_enum_value(v)


class TechnicalImpact(BaseModel):
    has_breaking_changes: bool = False
    requires_migration: bool = False
    affects_performance: bool = False
    has_security_implications: bool = False
    new_dependencies: List[str] = Field(default_factory=list)
    affected_endpoints: List[str] = Field(default_factory=list)
    affected_services: List[str] = Field(default_factory=list)


class Risk(BaseModel):
    description: str = ""
    severity: RiskSeverity = RiskSeverity.MEDIUM
    mitigation: str = ""

    @field_validator("severity", mode="before")
    @classmethod
    def normalize_severity(cls, v: Any) -> Any:
        return normalize_enum_value(v)


class Opportunity(BaseModel):
    description: str = ""
    type: OpportunityType = OpportunityType.CODE_QUALITY
    estimated_effort_hours: int = 0

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, v: Any) -> Any:
        return normalize_enum_value(v)


class ImplementationStep(BaseModel):
    order: int = 0
    description: str = ""
    files: List[str] = Field(default_factory=list)
    estimated_minutes: int = 0


class ValidationCriteria(BaseModel):
    description: str = ""
    type: ValidationType = ValidationType.UNIT_TEST
    is_automatable: bool = False

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, v: Any) -> Any:
        return normalize_enum_value(v)


class AnalysisResult(BaseModel):
    """Structured technical analysis of a ticket.

    Attributes:
        ticket_id: Ticket key the analysis belongs to.
        analyzed_at: When the analysis was produced (UTC).
        affected_files: Files the change will touch.
        required_changes: Changes grouped by component.
        technical_impact: Breaking change, migration and dependency flags.
        risks: Identified risks with severity and mitigation.
        opportunities: Optional improvements noticed along the way.
        implementation_plan: Ordered implementation steps.
        validation_criteria: How the change should be verified.
        estimated_effort_hours: Overall effort estimate.
        complexity: Overall complexity rating.
        status: Review status.
    """

    ticket_id: str = Field(..., min_length=1)
    analyzed_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    affected_files: List[AffectedFile] = Field(default_factory=list)
    required_changes: List[RequiredChange] = Field(default_factory=list)
    technical_impact: TechnicalImpact = Field(default_factory=TechnicalImpact)
    risks: List[Risk] = Field(default_factory=list)
    opportunities: List[Opportunity] = Field(default_factory=list)
    implementation_plan: List[ImplementationStep] = Field(default_factory=list)
    validation_criteria: List[ValidationCriteria] = Field(default_factory=list)
    estimated_effort_hours: int = Field(default=0, ge=0)
    complexity: Complexity = Complexity.MEDIUM
    status: AnalysisStatus = AnalysisStatus.PENDING

    @field_validator("complexity", "status", mode="before")
    @classmethod
    def normalize_enums(cls, v: Any) -> Any:
        """Accept CamelCase and spaced enum spellings."""
        return normalize_enum_value(v)

    def tracker_comment(self) -> str:
        """Render the analysis as a markdown comment for the ticket."""
        lines = [
            "## Technical Analysis",
            "",
            f"**Analyzed at:** {self.analyzed_at:%Y-%m-%d %H:%M} UTC",
            f"**Complexity:** {self.complexity.value}",
            f"**Estimate:** ~{self.estimated_effort_hours}h",
            "",
            "### Affected Files",
        ]
        lines.extend(
            f"- `{f.path}` - {f.change_type.value}" for f in self.affected_files
        )
        lines += ["", "### Required Changes"]
        lines.extend(
            f"- **{c.component}**: {c.description}" for c in self.required_changes
        )
        lines += ["", "### Impact and Risks"]

        impact = self.technical_impact
        if impact.has_breaking_changes:
            lines.append("- **BREAKING CHANGE** detected")
        if impact.requires_migration:
            lines.append("- Requires a database migration")
        if impact.new_dependencies:
            lines.append(f"- New dependencies: {', '.join(impact.new_dependencies)}")
        lines.extend(f"- [{r.severity.value}] {r.description}" for r in self.risks)
        lines.append("")

        if self.opportunities:
            lines.append("### Improvement Opportunities")
            lines.extend(f"- {o.description}" for o in self.opportunities)
            lines.append("")

        lines.append("### Implementation Plan")
        lines.extend(
            f"{i}. {step.description}"
            for i, step in enumerate(self.implementation_plan, start=1)
        )
        lines += ["", "### Validation Criteria"]
        lines.extend(f"- [ ] {v.description}" for v in self.validation_criteria)
        lines += [
            "",
            "---",
            "Awaiting approval before implementation.",
        ]
        return "\n".join(lines)


class GeneratedFile(BaseModel):
    path: str = Field(..., min_length=1)
    content: str = ""
    operation: FileOperation = FileOperation.UPDATE
    description: str = ""

    @field_validator("operation", mode="before")
    @classmethod
    def normalize_operation(cls, v: Any) -> Any:
        return normalize_enum_value(v)


class GeneratedCode(BaseModel):
    """Code proposed by the AI for an approved analysis."""

    files: List[GeneratedFile] = Field(default_factory=list)
    explanation: str = ""
