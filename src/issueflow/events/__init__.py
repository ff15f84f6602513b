"""Workflow event emission and metrics.

Event Emitters:
- EventEmitter: Abstract base class for event emission
- LoggingEventEmitter: Emits events as structured log entries
- CompositeEventEmitter: Emits to multiple sinks
- MetricsEventEmitter: Updates Prometheus run metrics
- NullEventEmitter: Discards events (for testing)

Metrics:
- OrchestratorMetrics: Container for all Prometheus metrics
- get_metrics / generate_metrics_output
"""

from src.issueflow.events.emitter import (
    CompositeEventEmitter,
    EventEmitter,
    LoggingEventEmitter,
    NullEventEmitter,
)
from src.issueflow.events.metrics import (
    MetricsEventEmitter,
    OrchestratorMetrics,
    generate_metrics_output,
    get_metrics,
)
from src.issueflow.events.models import EventType, PipelineEvent

__all__ = [
    # Event models
    "EventType",
    "PipelineEvent",
    # Event emitters
    "EventEmitter",
    "LoggingEventEmitter",
    "CompositeEventEmitter",
    "MetricsEventEmitter",
    "NullEventEmitter",
    # Metrics
    "OrchestratorMetrics",
    "get_metrics",
    "generate_metrics_output",
]
