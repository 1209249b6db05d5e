"""Prometheus metrics for workflow observability.

Metrics are exposed at the `/metrics` endpoint in Prometheus format.

Metrics Defined:
- ticketflow_workflows_completed_total: Counter of finished implementations
- ticketflow_workflows_failed_total: Counter of failed operations by phase
- ticketflow_implementation_duration_seconds: Histogram of implementation time
- ticketflow_tickets_by_phase: Gauge of tickets currently in each phase
- ticketflow_analysis_requests_total: Counter of analyses by source
  (cache or ai)

The MetricsEventEmitter updates these metrics from workflow events.

Source:
- src/ticketflow/events/models.py (WorkflowEvent, EventType)
- src/ticketflow/state/models.py (WorkflowPhase)
"""

import logging
from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from ticketflow.events.emitter import EventEmitter
from ticketflow.events.models import EventType, WorkflowEvent
from ticketflow.state.models import WorkflowPhase


logger = logging.getLogger(__name__)


# Covers 10 seconds to 2 hours
DEFAULT_DURATION_BUCKETS = (
    10.0,
    30.0,
    60.0,
    120.0,
    300.0,
    600.0,
    1200.0,
    1800.0,
    3600.0,
    7200.0,
)

WORKFLOW_PHASES = tuple(phase.value for phase in WorkflowPhase)


class WorkflowMetrics:
    """Container for all workflow Prometheus metrics.

    Supports custom registries so tests can inspect values in isolation.

    Metrics:
        workflows_completed_total: Labels: status (completed/tests_failed)
        workflows_failed_total: Labels: phase
        implementation_duration_seconds: Histogram, no labels
        tickets_by_phase: Labels: phase
        analysis_requests_total: Labels: source (cache/ai)

    Example:
        >>> metrics = WorkflowMetrics(registry=CollectorRegistry())
        >>> metrics.record_analysis(from_cache=True)
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """Initialize workflow metrics.

        Args:
            registry: Optional Prometheus registry. Defaults to REGISTRY.
        """
        self.registry = registry or REGISTRY

        self.workflows_completed_total = Counter(
            "ticketflow_workflows_completed_total",
            "Total number of implementations that finished",
            labelnames=["status"],
            registry=self.registry,
        )

        self.workflows_failed_total = Counter(
            "ticketflow_workflows_failed_total",
            "Total number of workflow operations that failed",
            labelnames=["phase"],
            registry=self.registry,
        )

        self.implementation_duration_seconds = Histogram(
            "ticketflow_implementation_duration_seconds",
            "Time spent implementing an approved analysis in seconds",
            buckets=DEFAULT_DURATION_BUCKETS,
            registry=self.registry,
        )

        self.tickets_by_phase = Gauge(
            "ticketflow_tickets_by_phase",
            "Current number of tickets in each workflow phase",
            labelnames=["phase"],
            registry=self.registry,
        )

        self.analysis_requests_total = Counter(
            "ticketflow_analysis_requests_total",
            "Total number of analyses served, by source",
            labelnames=["source"],
            registry=self.registry,
        )

        for phase in WORKFLOW_PHASES:
            self.tickets_by_phase.labels(phase=phase).set(0)

    def record_completed(self, status: str, duration_seconds: Optional[float]) -> None:
        self.workflows_completed_total.labels(status=status).inc()
        if duration_seconds is not None:
            self.implementation_duration_seconds.observe(duration_seconds)

    def record_failed(self, phase: str) -> None:
        self.workflows_failed_total.labels(phase=phase).inc()

    def record_analysis(self, from_cache: bool) -> None:
        source = "cache" if from_cache else "ai"
        self.analysis_requests_total.labels(source=source).inc()

    def update_phase_count(self, phase: str, delta: int) -> None:
        """Adjust the gauge for a phase, never going below zero.

        Args:
            phase: Workflow phase value.
            delta: +1 for entering, -1 for leaving.
        """
        if phase in WORKFLOW_PHASES:
            gauge = self.tickets_by_phase.labels(phase=phase)
            gauge.set(max(0, gauge._value.get() + delta))


_default_metrics: Optional[WorkflowMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> WorkflowMetrics:
    """Get the global metrics instance, or a new one for a custom registry.

    Args:
        registry: Optional Prometheus registry.

    Returns:
        WorkflowMetrics: The metrics instance.
    """
    global _default_metrics

    if registry is not None:
        return WorkflowMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = WorkflowMetrics()

    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Generate Prometheus text output for the /metrics endpoint.

    Args:
        registry: Optional Prometheus registry. Defaults to REGISTRY.

    Returns:
        bytes: Prometheus metrics in text format.
    """
    return generate_latest(registry or REGISTRY)


class MetricsEventEmitter(EventEmitter):
    """Event emitter that updates Prometheus metrics.

    Handles:
    - STATE_TRANSITION: moves a ticket between phase gauges
    - ERROR: increments the failure counter for the phase
    - ANALYSIS_COMPLETED: counts analyses by source (cache or ai)
    - IMPLEMENTATION_COMPLETED: counts completions and records duration

    PROGRESS events are ignored; phase gauges follow record transitions.

    Attributes:
        metrics: The WorkflowMetrics instance to update.
    """

    def __init__(
        self,
        metrics: Optional[WorkflowMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self._metrics = metrics if metrics is not None else get_metrics(registry)

    @property
    def metrics(self) -> WorkflowMetrics:
        return self._metrics

    async def emit(self, event: WorkflowEvent) -> None:
        """Update metrics based on the workflow event.

        Metric update failures are logged and never propagated.
        """
        try:
            details = event.details
            if event.event_type == EventType.STATE_TRANSITION:
                from_phase = details.get("from_phase")
                to_phase = details.get("to_phase")
                if from_phase:
                    self._metrics.update_phase_count(from_phase, -1)
                if to_phase:
                    self._metrics.update_phase_count(to_phase, +1)
            elif event.event_type == EventType.ERROR:
                self._metrics.record_failed(details.get("phase", "unknown"))
            elif event.event_type == EventType.ANALYSIS_COMPLETED:
                self._metrics.record_analysis(bool(details.get("from_cache")))
            elif event.event_type == EventType.IMPLEMENTATION_COMPLETED:
                duration = details.get("duration_seconds")
                self._metrics.record_completed(
                    status=details.get("status", "completed"),
                    duration_seconds=float(duration) if duration is not None else None,
                )
        except Exception as e:
            logger.error(
                "Failed to update metrics for event %s: %s",
                event.event_type.value,
                str(e),
                extra={
                    "event_type": event.event_type.value,
                    "ticket_id": event.ticket_id,
                    "error": str(e),
                },
            )
