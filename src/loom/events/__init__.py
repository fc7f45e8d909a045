"""Task event emission and metrics.

This module provides:
- EventType, TaskEvent: Event models
- EventEmitter and its logging, composite and null implementations
- LoomMetrics, MetricsEventEmitter: Prometheus metrics fed by events
"""

from src.loom.events.emitter import (
    CompositeEventEmitter,
    EventEmitter,
    EventSinkType,
    LoggingEventEmitter,
    NullEventEmitter,
    create_event_emitter,
)
from src.loom.events.metrics import (
    LoomMetrics,
    MetricsEventEmitter,
    generate_metrics_output,
)
from src.loom.events.models import EventType, TaskEvent

__all__ = [
    # Models
    "EventType",
    "TaskEvent",
    # Emitters
    "CompositeEventEmitter",
    "EventEmitter",
    "EventSinkType",
    "LoggingEventEmitter",
    "NullEventEmitter",
    "create_event_emitter",
    # Metrics
    "LoomMetrics",
    "MetricsEventEmitter",
    "generate_metrics_output",
]
