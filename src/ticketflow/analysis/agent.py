"""LLM-based ticket analysis and code generation.

AnalysisAgent implements the AI completion interface on top of an
OpenAI-compatible chat endpoint (vLLM, OpenAI, etc.) through LangChain:
- analyze_ticket: structured technical analysis of a ticket
- generate_code: file operations that implement an approved analysis
- test_connection: endpoint reachability

Model output is requested as JSON. Markdown fences are stripped, loosely
typed values are coerced, and unknown enum spellings fall back to
defaults before the result is validated.

Source:
- src/ticketflow/analysis/models.py (AnalysisResult, GeneratedCode)
- src/ticketflow/config.py (llm_url, llm_model, llm_api_key)
"""

import json
import logging
from enum import Enum
from typing import Any, Optional, Type

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import ValidationError

from ticketflow.analysis.models import (
    AnalysisResult,
    AnalysisStatus,
    ChangeCategory,
    Complexity,
    FileChangeType,
    FileOperation,
    GeneratedCode,
    OpportunityType,
    RiskSeverity,
    ValidationType,
    normalize_enum_value,
)
from ticketflow.config import TicketflowSettings
from ticketflow.tracker.models import Ticket


logger = logging.getLogger(__name__)


ANALYSIS_SYSTEM_PROMPT = """You are a senior software engineer performing technical analysis of issue tracker tickets against an existing codebase.

You MUST respond with valid JSON only. Do not include any text before or after the JSON object.

Use the provided code context to identify:

1. **affected_files**: Files to create, modify, delete or rename, with the methods affected.
2. **required_changes**: Changes per component. category is one of: controller, service, repository, model, dto, validator, migration, configuration, test, documentation.
3. **technical_impact**: Breaking changes, migrations, performance and security implications, new dependencies, affected endpoints and services.
4. **risks**: Each with severity (low, medium, high, critical) and a mitigation.
5. **opportunities**: Optional improvements (refactoring, performance, security, code_quality, pattern, documentation).
6. **implementation_plan**: Ordered steps with the files involved and estimated minutes.
7. **validation_criteria**: How to verify the change (unit_test, integration_test, manual_test, code_review, performance_test, security_scan).
8. **estimated_effort_hours** and **complexity** (trivial, simple, medium, complex, very_complex).

Respond with this exact JSON structure:
{
  "affected_files": [{"path": "...", "change_type": "create|modify|delete|rename", "description": "...", "methods_affected": ["..."]}],
  "required_changes": [{"component": "...", "description": "...", "category": "service"}],
  "technical_impact": {"has_breaking_changes": false, "requires_migration": false, "affects_performance": false, "has_security_implications": false, "new_dependencies": [], "affected_endpoints": [], "affected_services": []},
  "risks": [{"description": "...", "severity": "medium", "mitigation": "..."}],
  "opportunities": [{"description": "...", "type": "refactoring", "estimated_effort_hours": 1}],
  "implementation_plan": [{"order": 1, "description": "...", "files": ["..."], "estimated_minutes": 30}],
  "validation_criteria": [{"description": "...", "type": "unit_test", "is_automatable": true}],
  "estimated_effort_hours": 4,
  "complexity": "medium"
}"""


CODE_GENERATION_SYSTEM_PROMPT = """You are a senior software engineer implementing an approved change in an existing codebase.

You MUST respond with valid JSON only. Do not include any text before or after the JSON object.

Return the complete content of every file you create or update. Paths are relative to the repository root. Follow the conventions visible in the existing code.

Respond with this exact JSON structure:
{
  "files": [{"path": "...", "content": "...", "operation": "create|update|delete", "description": "..."}],
  "explanation": "..."
}"""


def _build_analysis_prompt(
    ticket: Ticket,
    code_context: str,
    feedback: Optional[str] = None,
) -> str:
    """Build the user prompt for ticket analysis.

    Reviewer feedback, when given, is appended so a revision addresses it.
    """
    labels = ", ".join(ticket.labels) if ticket.labels else "none"
    components = ", ".join(ticket.components) if ticket.components else "none"
    criteria = "\n".join(f"- {c}" for c in ticket.acceptance_criteria) or "(none listed)"
    description = ticket.description or "(no description provided)"

    prompt = f"""Analyze this ticket:

**Ticket:** {ticket.id} - {ticket.title}
**Type:** {ticket.type.value}
**Priority:** {ticket.priority.value}
**Labels:** {labels}
**Components:** {components}

**Description:**
{description}

**Acceptance Criteria:**
{criteria}

**Code Context:**
{code_context or "(no code context available)"}
"""
    if feedback:
        prompt += f"""
**Reviewer Feedback on the previous analysis:**
{feedback}

Revise the analysis to address this feedback.
"""
    return prompt + "\nProvide your analysis as JSON."


def _build_generation_prompt(context: str, requirements: str, existing_code: str) -> str:
    return f"""Implement the following change.

**Ticket:**
{context}

**Requirements:**
{requirements}

**Existing Code:**
{existing_code or "(no existing code provided)"}

Provide the file operations as JSON."""


def _parse_llm_response(response_text: str) -> dict[str, Any]:
    """Parse the LLM response text into a dictionary.

    Handles common LLM response quirks like markdown code blocks.

    Raises:
        json.JSONDecodeError: If the response is not valid JSON.
        ValueError: If the JSON is not an object.
    """
    text = response_text.strip()

    if text.startswith("```json"):
        text = text[7:]
    elif text.startswith("```"):
        text = text[3:]

    if text.endswith("```"):
        text = text[:-3]

    data = json.loads(text.strip())
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def _coerce_int(value: Any, default: int = 0) -> int:
    try:
        return max(0, int(round(float(value))))
    except (TypeError, ValueError, OverflowError):
        return default


def _coerce_enum(value: Any, enum_cls: Type[Enum], default: Enum) -> str:
    normalized = normalize_enum_value(value)
    valid = {member.value for member in enum_cls}
    if normalized in valid:
        return normalized
    logger.warning(
        "Unknown enum value from LLM, using default",
        extra={"received_value": str(value), "enum": enum_cls.__name__},
    )
    return default.value


def _dict_items(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _normalize_analysis(data: dict[str, Any]) -> dict[str, Any]:
    """Coerce a parsed analysis payload into AnalysisResult field shapes."""
    affected_files = []
    for item in _dict_items(data.get("affected_files")):
        if not item.get("path"):
            continue
        item["change_type"] = _coerce_enum(
            item.get("change_type", "modify"), FileChangeType, FileChangeType.MODIFY
        )
        affected_files.append(item)

    required_changes = _dict_items(data.get("required_changes"))
    for item in required_changes:
        item["category"] = _coerce_enum(
            item.get("category", "service"), ChangeCategory, ChangeCategory.SERVICE
        )

    risks = _dict_items(data.get("risks"))
    for item in risks:
        item["severity"] = _coerce_enum(
            item.get("severity", "medium"), RiskSeverity, RiskSeverity.MEDIUM
        )

    opportunities = _dict_items(data.get("opportunities"))
    for item in opportunities:
        item["type"] = _coerce_enum(
            item.get("type", "code_quality"), OpportunityType, OpportunityType.CODE_QUALITY
        )
        item["estimated_effort_hours"] = _coerce_int(item.get("estimated_effort_hours"))

    plan = _dict_items(data.get("implementation_plan"))
    for index, item in enumerate(plan, start=1):
        item["order"] = _coerce_int(item.get("order"), index)
        item["estimated_minutes"] = _coerce_int(item.get("estimated_minutes"))

    criteria = _dict_items(data.get("validation_criteria"))
    for item in criteria:
        item["type"] = _coerce_enum(
            item.get("type", "unit_test"), ValidationType, ValidationType.UNIT_TEST
        )

    impact = data.get("technical_impact")

    return {
        "affected_files": affected_files,
        "required_changes": required_changes,
        "technical_impact": impact if isinstance(impact, dict) else {},
        "risks": risks,
        "opportunities": opportunities,
        "implementation_plan": plan,
        "validation_criteria": criteria,
        "estimated_effort_hours": _coerce_int(data.get("estimated_effort_hours")),
        "complexity": _coerce_enum(
            data.get("complexity", "medium"), Complexity, Complexity.MEDIUM
        ),
    }


def _normalize_generated_code(data: dict[str, Any]) -> dict[str, Any]:
    files = []
    for item in _dict_items(data.get("files")):
        if not item.get("path"):
            continue
        item["operation"] = _coerce_enum(
            item.get("operation", "update"), FileOperation, FileOperation.UPDATE
        )
        files.append(item)
    return {"files": files, "explanation": str(data.get("explanation") or "")}


class AnalysisError(Exception):
    """Raised when an AI call or its response parsing fails.

    Attributes:
        message: Human-readable error description.
        cause: The underlying exception that caused the failure.
    """

    def __init__(self, message: str, cause: Optional[Exception] = None):
        self.message = message
        self.cause = cause
        super().__init__(message)


class AnalysisAgent:
    """AI completion service backed by an OpenAI-compatible chat model.

    Attributes:
        llm_url: URL of the OpenAI-compatible endpoint.
        model_name: Name of the model to use for inference.
        api_key: API key; local endpoints accept any value.
        timeout: Request timeout in seconds.
        temperature: Sampling temperature for the LLM.
        max_tokens: Completion token limit.

    Example:
        >>> agent = AnalysisAgent(
        ...     llm_url="http://localhost:8000/v1",
        ...     model_name="Qwen/Qwen2.5-Coder-14B-Instruct-GPTQ-Int4",
        ... )
        >>> analysis = await agent.analyze_ticket(ticket, code_context)
    """

    def __init__(
        self,
        llm_url: str,
        model_name: str,
        api_key: str = "",
        timeout: float = 120.0,
        temperature: float = 0.3,
        max_tokens: int = 8192,
    ):
        self.llm_url = llm_url
        self.model_name = model_name
        self.api_key = api_key
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._llm: Optional[ChatOpenAI] = None

    @classmethod
    def from_settings(cls, settings: TicketflowSettings) -> "AnalysisAgent":
        return cls(
            llm_url=settings.llm_url,
            model_name=settings.llm_model,
            api_key=settings.llm_api_key,
            timeout=settings.llm_timeout_seconds,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
        )

    @property
    def llm(self) -> ChatOpenAI:
        """Get the LLM client, creating it if necessary."""
        if self._llm is None:
            self._llm = ChatOpenAI(
                base_url=self.llm_url,
                model=self.model_name,
                temperature=self.temperature,
                timeout=self.timeout,
                max_tokens=self.max_tokens,
                api_key=self.api_key or "not-needed",
            )
        return self._llm

    async def _complete(self, system_prompt: str, user_prompt: str) -> dict[str, Any]:
        """Invoke the model and parse its JSON reply.

        Raises:
            AnalysisError: If the call fails or the reply is not a JSON object.
        """
        messages = [
            SystemMessage(content=system_prompt),
            HumanMessage(content=user_prompt),
        ]

        try:
            response = await self.llm.ainvoke(messages)
            response_text = response.content
        except Exception as e:
            raise AnalysisError(f"LLM invocation failed: {e}", cause=e)

        if not isinstance(response_text, str):
            raise AnalysisError(f"Unexpected response type: {type(response_text)}")

        try:
            return _parse_llm_response(response_text)
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(
                "Failed to parse LLM response as JSON",
                extra={"response_preview": response_text[:200], "error": str(e)},
            )
            raise AnalysisError(f"Invalid JSON response: {e}", cause=e)

    async def analyze_ticket(
        self,
        ticket: Ticket,
        code_context: str,
        feedback: Optional[str] = None,
    ) -> AnalysisResult:
        """Produce a structured technical analysis of a ticket.

        Args:
            ticket: The ticket to analyze.
            code_context: Optimized code context from the indexer.
            feedback: Reviewer feedback on a previous analysis, if revising.

        Returns:
            AnalysisResult with status COMPLETED.

        Raises:
            AnalysisError: If the LLM call, parsing or validation fails.
        """
        logger.info(
            "Analyzing ticket",
            extra={
                "ticket_id": ticket.id,
                "context_length": len(code_context),
                "has_feedback": bool(feedback),
            },
        )

        data = await self._complete(
            ANALYSIS_SYSTEM_PROMPT,
            _build_analysis_prompt(ticket, code_context, feedback),
        )

        try:
            analysis = AnalysisResult(
                ticket_id=ticket.id,
                status=AnalysisStatus.COMPLETED,
                **_normalize_analysis(data),
            )
        except ValidationError as e:
            raise AnalysisError(f"Response validation failed: {e}", cause=e)

        logger.info(
            "Ticket analyzed successfully",
            extra={
                "ticket_id": ticket.id,
                "affected_files_count": len(analysis.affected_files),
                "complexity": analysis.complexity.value,
                "estimated_effort_hours": analysis.estimated_effort_hours,
            },
        )
        return analysis

    async def generate_code(
        self,
        context: str,
        requirements: str,
        existing_code: str,
    ) -> GeneratedCode:
        """Generate file operations that implement the requirements.

        Raises:
            AnalysisError: If the LLM call, parsing or validation fails.
        """
        data = await self._complete(
            CODE_GENERATION_SYSTEM_PROMPT,
            _build_generation_prompt(context, requirements, existing_code),
        )

        try:
            generated = GeneratedCode(**_normalize_generated_code(data))
        except ValidationError as e:
            raise AnalysisError(f"Response validation failed: {e}", cause=e)

        logger.info(
            "Code generated",
            extra={"file_count": len(generated.files)},
        )
        return generated

    async def test_connection(self) -> bool:
        """Check if the LLM endpoint is accessible.

        Returns:
            True if healthy, False otherwise.
        """
        try:
            messages = [HumanMessage(content="Hello")]
            await self.llm.ainvoke(messages)
            return True
        except Exception as e:
            logger.warning(
                "LLM health check failed",
                extra={"error": str(e)},
            )
            return False
