"""Workflow event emission and metrics.

Event Emitters:
- EventEmitter: Abstract base class for event emission
- LoggingEventEmitter: Emits events as structured log entries
- CompositeEventEmitter: Emits to multiple sinks simultaneously
- MetricsEventEmitter: Emits events as Prometheus metrics
- NullEventEmitter: Discards events (for testing)

Metrics:
- WorkflowMetrics: Container for all Prometheus metrics
- get_metrics: Get or create the metrics instance
- generate_metrics_output: Generate Prometheus format output for /metrics
"""

from autotriage.events.emitter import (
    CompositeEventEmitter,
    EventEmitter,
    EventSinkType,
    LoggingEventEmitter,
    NullEventEmitter,
    create_event_emitter,
)
from autotriage.events.metrics import (
    MetricsEventEmitter,
    WorkflowMetrics,
    generate_metrics_output,
    get_metrics,
)
from autotriage.events.models import EventType, WorkflowEvent

__all__ = [
    # Event models
    "EventType",
    "WorkflowEvent",
    # Event emitters
    "EventEmitter",
    "LoggingEventEmitter",
    "CompositeEventEmitter",
    "MetricsEventEmitter",
    "NullEventEmitter",
    # Metrics
    "WorkflowMetrics",
    "get_metrics",
    "generate_metrics_output",
    # Factory
    "EventSinkType",
    "create_event_emitter",
]
