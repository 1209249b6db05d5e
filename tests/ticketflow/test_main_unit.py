"""Unit tests for the HTTP API.

The lifespan is not entered; module globals are patched with an
AsyncMock orchestrator and an in-memory store instead.
"""

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from ticketflow import main
from ticketflow.analysis.models import AnalysisResult
from ticketflow.config import ConfigurationError
from ticketflow.orchestrator import NoPendingAnalysisError, TicketNotFoundError
from ticketflow.state.models import WorkflowPhase, WorkflowRecord, WorkflowStatus
from ticketflow.state.store import InMemoryWorkflowStore


@pytest.fixture
def orchestrator(monkeypatch):
    mock = AsyncMock()
    mock.test_connections.return_value = {"tracker": True, "pull_requests": False, "ai": True}
    monkeypatch.setattr(main, "orchestrator", mock)
    monkeypatch.setattr(main, "store", InMemoryWorkflowStore())
    return mock


@pytest.fixture
def client():
    return TestClient(main.app)


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_ready_without_services(client, monkeypatch):
    monkeypatch.setattr(main, "orchestrator", None)
    monkeypatch.setattr(main, "store", None)

    response = client.get("/ready")

    assert response.status_code == 503
    assert response.json()["status"] == "not_ready"


def test_ready_reports_dependencies(client, orchestrator):
    response = client.get("/ready")

    assert response.status_code == 200
    assert response.json()["dependencies"] == {
        "database": "healthy",
        "tracker": "connected",
        "pull_requests": "disconnected",
        "ai": "connected",
    }


def test_metrics_endpoint(client):
    response = client.get("/metrics")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")


def test_create_workflow(client, orchestrator):
    orchestrator.create_workflow.return_value = WorkflowRecord(
        ticket_id="PROJ-1", ticket_title="Add login rate limiting"
    )

    response = client.post("/workflows/PROJ-1")

    assert response.status_code == 200
    assert response.json()["ticket_title"] == "Add login rate limiting"
    orchestrator.create_workflow.assert_awaited_once_with("PROJ-1")


def test_status(client, orchestrator):
    orchestrator.get_workflow_status.return_value = WorkflowStatus(
        ticket_id="PROJ-1",
        phase=WorkflowPhase.WAITING_APPROVAL,
        percentage=100,
        message="Analysis completed. Awaiting approval.",
    )

    response = client.get("/workflows/PROJ-1/status")

    assert response.status_code == 200
    assert response.json()["phase"] == "waiting_approval"


def test_revise_passes_feedback(client, orchestrator):
    orchestrator.request_revision.return_value = AnalysisResult(ticket_id="PROJ-1")

    response = client.post("/workflows/PROJ-1/revise", json={"feedback": "More tests"})

    assert response.status_code == 200
    orchestrator.request_revision.assert_awaited_once_with("PROJ-1", "More tests")


def test_revise_rejects_empty_feedback(client, orchestrator):
    response = client.post("/workflows/PROJ-1/revise", json={"feedback": ""})

    assert response.status_code == 422
    orchestrator.request_revision.assert_not_awaited()


def test_cancel_uses_default_reason(client, orchestrator):
    orchestrator.cancel_workflow.return_value = WorkflowRecord(ticket_id="PROJ-1")

    response = client.post("/workflows/PROJ-1/cancel", json={})

    assert response.status_code == 200
    orchestrator.cancel_workflow.assert_awaited_once_with("PROJ-1", "Cancelled by user")


def test_history_passes_limit(client, orchestrator):
    orchestrator.get_workflow_history.return_value = []

    response = client.get("/workflows", params={"limit": 5})

    assert response.status_code == 200
    orchestrator.get_workflow_history.assert_awaited_once_with(5)


@pytest.mark.parametrize(
    "error, status_code",
    [
        (TicketNotFoundError("PROJ-404"), 404),
        (NoPendingAnalysisError("PROJ-1"), 409),
        (ValueError("Comment must not be empty"), 400),
        (ConfigurationError("github_token"), 500),
    ],
)
def test_errors_map_to_status_codes(client, orchestrator, error, status_code):
    orchestrator.approve_and_implement.side_effect = error

    response = client.post("/workflows/PROJ-1/approve")

    assert response.status_code == status_code
    assert response.json()["detail"] == str(error)


def test_redact_secret():
    assert main._redact_secret("ghp_abcdef") == "ghp_******"
    assert main._redact_secret("abc") == "***"
