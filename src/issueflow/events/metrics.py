"""Prometheus metrics for the orchestrator.

Metrics Defined:
- issueflow_workflow_runs_total: Counter of finished runs by final status
- issueflow_workflow_run_duration_seconds: Histogram of run wall time
- issueflow_webhook_events_total: Counter of webhook deliveries by outcome
- issueflow_retries_total: Counter of retry attempts by operation

Run metrics are driven by COMPLETION and DEAD_LETTER events through
MetricsEventEmitter; webhook and retry counters are updated directly by
the HTTP layer and the task scheduler.

Source:
- src/issueflow/events/models.py (PipelineEvent, EventType)
"""

import logging
from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

from src.issueflow.events.emitter import EventEmitter
from src.issueflow.events.models import EventType, PipelineEvent


logger = logging.getLogger(__name__)


# Runs span a planning call, several execution calls and a review.
DEFAULT_DURATION_BUCKETS = (
    1.0,
    5.0,
    15.0,
    30.0,
    60.0,
    120.0,
    300.0,
    600.0,
    1800.0,
    3600.0,
)


class OrchestratorMetrics:
    """Container for all orchestrator Prometheus metrics.

    Pass a custom CollectorRegistry in tests so instances do not collide
    on the default registry.

    Example:
        >>> metrics = OrchestratorMetrics(registry=CollectorRegistry())
        >>> metrics.record_run("completed", duration_seconds=42.0)
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY

        self.workflow_runs_total = Counter(
            "issueflow_workflow_runs_total",
            "Total number of workflow runs by final status",
            labelnames=["status"],
            registry=self.registry,
        )

        self.workflow_run_duration_seconds = Histogram(
            "issueflow_workflow_run_duration_seconds",
            "Wall time of workflow runs in seconds",
            buckets=DEFAULT_DURATION_BUCKETS,
            registry=self.registry,
        )

        self.webhook_events_total = Counter(
            "issueflow_webhook_events_total",
            "Total number of webhook deliveries by event type and outcome",
            labelnames=["event_type", "result"],
            registry=self.registry,
        )

        self.retries_total = Counter(
            "issueflow_retries_total",
            "Total number of retried operation attempts",
            labelnames=["operation"],
            registry=self.registry,
        )

    def record_run(self, status: str, duration_seconds: Optional[float] = None) -> None:
        self.workflow_runs_total.labels(status=status).inc()
        if duration_seconds is not None:
            self.workflow_run_duration_seconds.observe(duration_seconds)

    def record_webhook(self, event_type: str, result: str) -> None:
        self.webhook_events_total.labels(
            event_type=event_type or "unknown",
            result=result,
        ).inc()

    def record_retry(self, operation: str) -> None:
        self.retries_total.labels(operation=operation).inc()


_default_metrics: Optional[OrchestratorMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> OrchestratorMetrics:
    """Get the process-wide metrics instance, or a new one for ``registry``."""
    global _default_metrics

    if registry is not None:
        return OrchestratorMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = OrchestratorMetrics()

    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Render metrics in Prometheus text format for the /metrics endpoint."""
    return generate_latest(registry or REGISTRY)


class MetricsEventEmitter(EventEmitter):
    """Updates run metrics from COMPLETION and DEAD_LETTER events.

    Other event types are ignored.
    """

    def __init__(self, metrics: OrchestratorMetrics):
        self._metrics = metrics

    @property
    def metrics(self) -> OrchestratorMetrics:
        return self._metrics

    async def emit(self, event: PipelineEvent) -> None:
        try:
            if event.event_type == EventType.COMPLETION:
                self._record(event, event.details.get("status", "completed"))
            elif event.event_type == EventType.DEAD_LETTER:
                self._record(event, "dead_letter")
        except Exception as e:
            logger.error(
                "Failed to update metrics for event %s: %s",
                event.event_type.value,
                str(e),
                extra={"event_type": event.event_type.value, "run_id": event.run_id},
            )

    def _record(self, event: PipelineEvent, status: str) -> None:
        duration = event.details.get("duration_seconds")
        self._metrics.record_run(
            status,
            float(duration) if duration is not None else None,
        )
