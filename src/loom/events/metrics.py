"""Prometheus metrics for engine observability.

Metrics are exposed at the `/metrics` endpoint in Prometheus format.

Metrics Defined:
- loom_tasks_dispatched_total: Counter of tasks entering in_progress
- loom_tasks_processed_total: Counter of finished pipeline runs
- loom_task_failures_total: Counter of failures by pipeline stage
- loom_task_duration_seconds: Histogram of pipeline run time
- loom_agent_timeouts_total: Counter of agent runs killed for time

The MetricsEventEmitter keeps these up to date from task events.

Source:
- src/loom/events/models.py (TaskEvent, EventType)
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

from src.loom.events.emitter import EventEmitter
from src.loom.events.models import EventType, TaskEvent


logger = logging.getLogger(__name__)


# Covers 10 seconds to 1 hour; agent runs default to a 30 minute limit
DEFAULT_DURATION_BUCKETS = (
    10.0,
    30.0,
    60.0,
    120.0,
    300.0,
    600.0,
    900.0,
    1200.0,
    1800.0,
    3600.0,
)


class LoomMetrics:
    """Container for all engine Prometheus metrics.

    Supports custom registries for testing.

    Metrics:
        tasks_dispatched_total: Labels repository, kind (new/retry/queued)
        tasks_processed_total: Labels repository, result (success/failure)
        task_failures_total: Labels repository, stage
        task_duration_seconds: Labels repository
        agent_timeouts_total: Labels repository

    Example:
        >>> metrics = LoomMetrics(registry=CollectorRegistry())
        >>> metrics.record_task_processed("org/repo", success=True)
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """Initialize engine metrics.

        Args:
            registry: Optional Prometheus registry. If None, uses the
                      default REGISTRY. Pass a custom registry for testing.
        """
        self.registry = registry or REGISTRY

        self.tasks_dispatched_total = Counter(
            "loom_tasks_dispatched_total",
            "Total number of tasks dispatched to the agent pipeline",
            labelnames=["repository", "kind"],
            registry=self.registry,
        )

        self.tasks_processed_total = Counter(
            "loom_tasks_processed_total",
            "Total number of task pipeline runs that finished",
            labelnames=["repository", "result"],
            registry=self.registry,
        )

        self.task_failures_total = Counter(
            "loom_task_failures_total",
            "Total number of task pipeline failures by stage",
            labelnames=["repository", "stage"],
            registry=self.registry,
        )

        self.task_duration_seconds = Histogram(
            "loom_task_duration_seconds",
            "Time spent running the task pipeline in seconds",
            labelnames=["repository"],
            buckets=DEFAULT_DURATION_BUCKETS,
            registry=self.registry,
        )

        self.agent_timeouts_total = Counter(
            "loom_agent_timeouts_total",
            "Total number of agent runs killed for exceeding the timeout",
            labelnames=["repository"],
            registry=self.registry,
        )

    def record_task_dispatched(self, repository: str, kind: str) -> None:
        self.tasks_dispatched_total.labels(
            repository=repository,
            kind=kind,
        ).inc()

    def record_task_processed(
        self,
        repository: str,
        success: bool,
    ) -> None:
        """Record that a task pipeline run finished.

        Args:
            repository: The repository in format "{owner}/{repo}".
            success: Whether the run opened a pull request.
        """
        result = "success" if success else "failure"
        self.tasks_processed_total.labels(
            repository=repository,
            result=result,
        ).inc()

    def record_task_failed(self, repository: str, stage: str) -> None:
        self.task_failures_total.labels(
            repository=repository,
            stage=stage,
        ).inc()

    def record_task_duration(
        self,
        repository: str,
        duration_seconds: float,
    ) -> None:
        self.task_duration_seconds.labels(
            repository=repository,
        ).observe(duration_seconds)

    def record_agent_timeout(self, repository: str) -> None:
        self.agent_timeouts_total.labels(repository=repository).inc()


# Global metrics instance for the default registry
_default_metrics: Optional[LoomMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> LoomMetrics:
    """Get or create the engine metrics instance.

    Args:
        registry: Optional Prometheus registry. If None, returns the
                  global metrics instance for the default registry.

    Returns:
        LoomMetrics: The metrics instance.
    """
    global _default_metrics

    if registry is not None:
        return LoomMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = LoomMetrics()

    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Generate Prometheus metrics output for the /metrics endpoint.

    Args:
        registry: Optional Prometheus registry. If None, uses the
                  default REGISTRY.

    Returns:
        bytes: Prometheus metrics in text format.
    """
    target_registry = registry or REGISTRY
    return generate_latest(target_registry)


class MetricsEventEmitter(EventEmitter):
    """Event emitter that updates Prometheus metrics.

    - DISPATCHED: Increments tasks_dispatched by kind
    - COMPLETION: Records a successful run and its duration
    - ERROR: Records a failed run, its stage and its duration
    - TIMEOUT: Increments agent_timeouts

    Attributes:
        metrics: The LoomMetrics instance to update.
    """

    def __init__(
        self,
        metrics: Optional[LoomMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        """Initialize the metrics event emitter.

        Args:
            metrics: Optional LoomMetrics instance. If None, uses
                     the global metrics instance.
            registry: Optional Prometheus registry. Only used if metrics
                      is None.
        """
        if metrics is not None:
            self._metrics = metrics
        else:
            self._metrics = get_metrics(registry)

    @property
    def metrics(self) -> LoomMetrics:
        return self._metrics

    async def emit(self, event: TaskEvent) -> None:
        """Update metrics based on the task event.

        Args:
            event: The task event to process.
        """
        try:
            if event.event_type == EventType.DISPATCHED:
                self._handle_dispatched(event)
            elif event.event_type == EventType.COMPLETION:
                self._handle_completion(event)
            elif event.event_type == EventType.ERROR:
                self._handle_error(event)
            elif event.event_type == EventType.TIMEOUT:
                self._metrics.record_agent_timeout(event.repository)
        except Exception as e:
            logger.error(
                "Failed to update metrics for event %s: %s",
                event.event_type.value,
                str(e),
                extra={
                    "event_type": event.event_type.value,
                    "issue_id": event.issue_id,
                    "error": str(e),
                },
            )

    def _handle_dispatched(self, event: TaskEvent) -> None:
        self._metrics.record_task_dispatched(
            repository=event.repository,
            kind=event.details.get("kind", "new"),
        )

    def _record_duration(self, event: TaskEvent) -> None:
        duration = event.details.get("duration_seconds")
        if duration is not None:
            self._metrics.record_task_duration(
                repository=event.repository,
                duration_seconds=float(duration),
            )

    def _handle_completion(self, event: TaskEvent) -> None:
        self._metrics.record_task_processed(
            repository=event.repository,
            success=True,
        )
        self._record_duration(event)

    def _handle_error(self, event: TaskEvent) -> None:
        """Record a failed run at the stage where it stopped."""
        self._metrics.record_task_processed(
            repository=event.repository,
            success=False,
        )
        self._metrics.record_task_failed(
            repository=event.repository,
            stage=event.details.get("stage", "unknown"),
        )
        self._record_duration(event)
