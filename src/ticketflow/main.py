"""FastAPI application entry point for ticketflow.

Exposes the workflow operations over HTTP, along with health, readiness
and Prometheus metrics endpoints. The lifespan wires settings, the state
store, the external service clients and the orchestrator.

Configuration values are logged on startup with secrets redacted.
"""

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Dict, List, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel, Field

from ticketflow.analysis.agent import AnalysisAgent
from ticketflow.analysis.cache import AnalysisCache
from ticketflow.analysis.models import AnalysisResult
from ticketflow.config import ConfigurationError, TicketflowSettings, get_settings
from ticketflow.context.builder import SemanticContextBuilder
from ticketflow.context.indexer import PythonCodeIndexer
from ticketflow.context.optimizer import ContextOptimizer
from ticketflow.events.emitter import EventEmitter, EventSinkType, create_event_emitter
from ticketflow.events.metrics import generate_metrics_output
from ticketflow.events.progress import ProgressLog
from ticketflow.github.client import GitHubClient
from ticketflow.implementation.models import ImplementationResult
from ticketflow.orchestrator import (
    NoPendingAnalysisError,
    TicketNotFoundError,
    WorkflowOrchestrator,
)
from ticketflow.provisioner.workspace import WorkspaceManager
from ticketflow.runner.validation import CommandValidationRunner
from ticketflow.state.models import WorkflowRecord, WorkflowStatus, WorkflowSummary
from ticketflow.state.repository import PostgresWorkflowStore
from ticketflow.state.store import InMemoryWorkflowStore, WorkflowStore
from ticketflow.tracker.client import JiraClient
from ticketflow.vcs.git import GitRepository

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Global instances, initialized during lifespan startup
settings: TicketflowSettings
orchestrator: Optional[WorkflowOrchestrator] = None
store: Optional[WorkflowStore] = None


class RevisionRequest(BaseModel):
    feedback: str = Field(..., min_length=1)


class CancelRequest(BaseModel):
    reason: str = "Cancelled by user"


class CommentRequest(BaseModel):
    comment: str


def _redact_secret(value: str, visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters.

    Args:
        value: The secret value to redact.
        visible_chars: Number of characters to show at the start.

    Returns:
        Redacted string with asterisks replacing hidden characters.
    """
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(settings: TicketflowSettings) -> None:
    """Log configuration values with secrets redacted."""
    logger.info("ticketflow configuration:")
    logger.info(f"  Require Approval: {settings.require_approval}")
    logger.info(
        f"  Automation: build={settings.auto_build} tests={settings.auto_run_tests} "
        f"pr={settings.auto_create_pr} tracker={settings.auto_update_tracker}"
    )
    logger.info(f"  Repository Path: {settings.repository_path or '(none)'}")
    logger.info(f"  Temporary Workspaces: {settings.use_temporary_workspace}")
    logger.info(f"  Remote URL: {settings.remote_url or '(none)'}")
    logger.info(f"  Default Branch: {settings.default_branch}")
    logger.info(f"  Tracker Base URL: {settings.tracker_base_url}")
    logger.info(f"  Tracker Email: {settings.tracker_email}")
    logger.info(f"  Tracker API Token: {_redact_secret(settings.tracker_api_token)}")
    logger.info(f"  GitHub Base URL: {settings.github_base_url}")
    logger.info(
        f"  GitHub Repository: {settings.github_owner}/{settings.github_repository}"
    )
    logger.info(f"  GitHub Token: {_redact_secret(settings.github_token)}")
    logger.info(f"  LLM URL: {settings.llm_url}")
    logger.info(f"  LLM Model: {settings.llm_model}")
    logger.info(f"  LLM API Key: {_redact_secret(settings.llm_api_key)}")
    logger.info(f"  Build Command: {settings.build_command}")
    logger.info(f"  Test Command: {settings.test_command}")
    logger.info(f"  Database URL: {_redact_secret(settings.database_url)}")
    logger.info(f"  Host: {settings.host}")
    logger.info(f"  Port: {settings.port}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown.

    Handles:
    - Configuration loading and logging (with secrets redacted)
    - State store connection
    - Dependency wiring for the workflow orchestrator
    - Closing HTTP clients and the database pool on shutdown
    """
    global settings, orchestrator, store

    logger.info("ticketflow starting up...")

    settings = get_settings()
    _log_configuration(settings)

    if settings.database_url:
        postgres = PostgresWorkflowStore(settings.database_url)
        await postgres.connect()
        store = postgres
    else:
        logger.info("No database URL configured, keeping state in memory")
        store = InMemoryWorkflowStore()

    tracker = JiraClient.from_settings(settings)
    pr_service = GitHubClient.from_settings(settings)
    event_emitter = create_event_emitter(
        [EventSinkType.LOGGING, EventSinkType.METRICS]
    )
    orchestrator = _build_orchestrator(
        settings, store, tracker, pr_service, event_emitter
    )

    logger.info("ticketflow started successfully")

    yield

    logger.info("ticketflow shutting down...")

    await tracker.close()
    await pr_service.close()
    await event_emitter.close()
    if isinstance(store, PostgresWorkflowStore):
        await store.disconnect()

    logger.info("ticketflow shutdown complete")


def _build_orchestrator(
    cfg: TicketflowSettings,
    state_store: WorkflowStore,
    tracker: JiraClient,
    pr_service: GitHubClient,
    event_emitter: EventEmitter,
) -> WorkflowOrchestrator:
    """Wire all workflow dependencies into a WorkflowOrchestrator.

    Args:
        cfg: Validated settings.
        state_store: Persistence backend.
        tracker: Issue tracker client.
        pr_service: Pull request client.
        event_emitter: Event sinks for progress, transitions and errors.

    Returns:
        Fully wired WorkflowOrchestrator.
    """
    vcs = GitRepository.from_settings(cfg)
    optimizer = ContextOptimizer()
    indexer = PythonCodeIndexer(vcs, ignore_patterns=cfg.ignore_patterns)
    ttl = (
        timedelta(hours=cfg.analysis_cache_ttl_hours)
        if cfg.analysis_cache_ttl_hours
        else None
    )

    return WorkflowOrchestrator(
        settings=cfg,
        store=state_store,
        tracker=tracker,
        vcs=vcs,
        pr_service=pr_service,
        ai=AnalysisAgent.from_settings(cfg),
        context_builder=SemanticContextBuilder(
            indexer, vcs, optimizer=optimizer, ignore_patterns=cfg.ignore_patterns
        ),
        workspace_manager=WorkspaceManager(cfg, vcs),
        validation_runner=CommandValidationRunner.from_settings(cfg),
        cache=AnalysisCache(state_store, ttl=ttl),
        event_emitter=event_emitter,
        progress=ProgressLog(state_store, event_emitter),
        optimizer=optimizer,
    )


def _get_orchestrator() -> WorkflowOrchestrator:
    if orchestrator is None:
        raise RuntimeError("Workflow orchestrator not initialized")
    return orchestrator


app = FastAPI(
    title="ticketflow",
    description="Ticket-to-pull-request workflow automation",
    version="1.0.0",
    lifespan=lifespan,
)


@app.exception_handler(TicketNotFoundError)
async def ticket_not_found_handler(request: Request, exc: TicketNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(NoPendingAnalysisError)
async def no_pending_analysis_handler(request: Request, exc: NoPendingAnalysisError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    logger.error(
        "Configuration error",
        extra={"setting": exc.setting, "path": request.url.path},
    )
    return JSONResponse(status_code=500, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.get("/health")
async def health():
    """Liveness probe endpoint.

    Returns:
        dict: Status indicating the application is running.
    """
    return {"status": "healthy"}


@app.get("/ready")
async def ready():
    """Readiness probe endpoint.

    The store must be reachable for the service to be ready. External
    service connectivity is reported but does not gate readiness.
    """
    if store is None or orchestrator is None:
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "reason": "services not initialized"},
        )

    database_healthy = await store.health_check()
    connections = await orchestrator.test_connections()

    body = {
        "status": "ready" if database_healthy else "not_ready",
        "dependencies": {
            "database": "healthy" if database_healthy else "unhealthy",
            **{
                name: "connected" if ok else "disconnected"
                for name, ok in connections.items()
            },
        },
    }
    return JSONResponse(status_code=200 if database_healthy else 503, content=body)


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(generate_metrics_output(), media_type=CONTENT_TYPE_LATEST)


@app.post("/workflows/{ticket_id}", response_model=WorkflowRecord)
async def create_workflow(ticket_id: str):
    return await _get_orchestrator().create_workflow(ticket_id)


@app.post("/workflows/{ticket_id}/start", response_model=WorkflowRecord)
async def start_workflow(ticket_id: str):
    return await _get_orchestrator().start_workflow(ticket_id)


@app.post("/workflows/{ticket_id}/analyze", response_model=AnalysisResult)
async def analyze(ticket_id: str):
    return await _get_orchestrator().analyze(ticket_id)


@app.post("/workflows/{ticket_id}/approve", response_model=ImplementationResult)
async def approve(ticket_id: str):
    return await _get_orchestrator().approve_and_implement(ticket_id)


@app.post("/workflows/{ticket_id}/revise", response_model=AnalysisResult)
async def revise(ticket_id: str, body: RevisionRequest):
    return await _get_orchestrator().request_revision(ticket_id, body.feedback)


@app.post("/workflows/{ticket_id}/cancel", response_model=WorkflowRecord)
async def cancel(ticket_id: str, body: CancelRequest):
    return await _get_orchestrator().cancel_workflow(ticket_id, body.reason)


@app.post("/workflows/{ticket_id}/tracker-comment")
async def tracker_comment(ticket_id: str, body: CommentRequest):
    await _get_orchestrator().send_analysis_to_tracker(ticket_id, body.comment)
    return {"status": "posted", "ticket_id": ticket_id}


@app.get("/workflows/{ticket_id}/status", response_model=WorkflowStatus)
async def workflow_status(ticket_id: str):
    return await _get_orchestrator().get_workflow_status(ticket_id)


@app.get("/workflows/{ticket_id}/similar", response_model=List[AnalysisResult])
async def similar_analyses(ticket_id: str, limit: int = 3):
    return await _get_orchestrator().find_similar_analyses(ticket_id, limit)


@app.get("/workflows", response_model=List[WorkflowSummary])
async def workflow_history(limit: int = 20):
    return await _get_orchestrator().get_workflow_history(limit)


@app.get("/connections")
async def connections() -> Dict[str, bool]:
    return await _get_orchestrator().test_connections()


def main() -> None:
    """Run the API server with uvicorn."""
    cfg = get_settings()
    uvicorn.run(app, host=cfg.host, port=cfg.port)


if __name__ == "__main__":
    main()
