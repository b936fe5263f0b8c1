"""Prometheus metrics for workflow observability.

Metrics are exposed at the `/metrics` endpoint in Prometheus format.

Metrics Defined:
- autotriage_tasks_created_total: Counter of agent tasks created, by kind
- autotriage_transitions_total: Counter of workflow transitions, by target
- autotriage_failures_total: Counter of failed operations, by stage
- autotriage_prs_opened_total: Counter of pull requests observed
- autotriage_workflows_by_status: Gauge of workflows entering each status

The MetricsEventEmitter updates these metrics from workflow events.
"""

import logging
from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    generate_latest,
)

from autotriage.events.emitter import EventEmitter
from autotriage.events.models import EventType, WorkflowEvent
from autotriage.state.models import WorkflowStatus


logger = logging.getLogger(__name__)


WORKFLOW_STATUSES = tuple(status.value for status in WorkflowStatus)


class WorkflowMetrics:
    """Container for all workflow Prometheus metrics.

    Pass a custom registry in tests to avoid duplicate registration in the
    default one.

    Example:
        >>> metrics = WorkflowMetrics(registry=CollectorRegistry())
        >>> metrics.record_task_created("triage")
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY

        self.tasks_created_total = Counter(
            "autotriage_tasks_created_total",
            "Total number of agent tasks created",
            labelnames=["kind"],
            registry=self.registry,
        )

        self.transitions_total = Counter(
            "autotriage_transitions_total",
            "Total number of workflow status transitions",
            labelnames=["to_status"],
            registry=self.registry,
        )

        self.failures_total = Counter(
            "autotriage_failures_total",
            "Total number of failed workflow operations",
            labelnames=["stage"],
            registry=self.registry,
        )

        self.prs_opened_total = Counter(
            "autotriage_prs_opened_total",
            "Total number of pull requests observed for triaged issues",
            registry=self.registry,
        )

        # Entries into each status since process start; the store holds the
        # authoritative counts
        self.workflows_by_status = Gauge(
            "autotriage_workflows_by_status",
            "Workflow transitions into each status since process start",
            labelnames=["status"],
            registry=self.registry,
        )
        for status in WORKFLOW_STATUSES:
            self.workflows_by_status.labels(status=status).set(0)

    def record_task_created(self, kind: str) -> None:
        self.tasks_created_total.labels(kind=kind).inc()

    def record_transition(self, to_status: str) -> None:
        self.transitions_total.labels(to_status=to_status).inc()
        if to_status in WORKFLOW_STATUSES:
            self.workflows_by_status.labels(status=to_status).inc()

    def record_failure(self, stage: str) -> None:
        self.failures_total.labels(stage=stage).inc()

    def record_pr_opened(self) -> None:
        self.prs_opened_total.inc()


_default_metrics: Optional[WorkflowMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> WorkflowMetrics:
    """Get the process-wide metrics, or a new instance for a custom registry."""
    global _default_metrics

    if registry is not None:
        return WorkflowMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = WorkflowMetrics()

    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Generate Prometheus text output for the /metrics endpoint."""
    return generate_latest(registry or REGISTRY)


class MetricsEventEmitter(EventEmitter):
    """Event emitter that updates Prometheus metrics.

    - STATE_TRANSITION: Increments transitions_total
    - TASK_CREATED: Increments tasks_created_total
    - ERROR: Increments failures_total
    - COMPLETION: Increments prs_opened_total
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
        try:
            if event.event_type == EventType.STATE_TRANSITION:
                to_status = event.details.get("to_status")
                if to_status:
                    self._metrics.record_transition(to_status)
            elif event.event_type == EventType.TASK_CREATED:
                self._metrics.record_task_created(event.details.get("kind", "unknown"))
            elif event.event_type == EventType.ERROR:
                self._metrics.record_failure(event.details.get("stage", "unknown"))
            elif event.event_type == EventType.COMPLETION:
                self._metrics.record_pr_opened()
        except Exception as e:
            logger.error(
                "Failed to update metrics for event %s: %s",
                event.event_type.value,
                str(e),
                extra={"event_type": event.event_type.value, "issue_id": event.issue_id},
            )
