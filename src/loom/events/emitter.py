"""Sinks for task events.

The orchestrator hands every TaskEvent to a single EventEmitter. In
production that is a CompositeEventEmitter fanning out to the log and
to Prometheus; tests substitute their own.

Source:
- src/loom/events/models.py (TaskEvent, EventType)
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, List, Optional, Sequence

from src.loom.events.models import EventType, TaskEvent


logger = logging.getLogger(__name__)


class EventSinkType(str, Enum):
    """Sinks that create_event_emitter knows how to build."""

    LOGGING = "logging"
    METRICS = "metrics"


class EventEmitter(ABC):
    """Receives task events.

    emit() is awaited inline by the orchestrator, so implementations
    should return quickly.
    """

    @abstractmethod
    async def emit(self, event: TaskEvent) -> None:
        ...

    async def close(self) -> None:
        """Release sink resources. Nothing to do by default."""


# Severity used when an event is written to the log
EVENT_LOG_LEVELS: Dict[EventType, int] = {
    EventType.DISPATCHED: logging.INFO,
    EventType.COMPLETION: logging.INFO,
    EventType.TIMEOUT: logging.WARNING,
    EventType.ERROR: logging.ERROR,
}


class LoggingEventEmitter(EventEmitter):
    """Writes each event as one log record with the event fields in ``extra``."""

    def __init__(self, logger_name: Optional[str] = None):
        self._logger = logging.getLogger(logger_name) if logger_name else logger

    async def emit(self, event: TaskEvent) -> None:
        self._logger.log(
            EVENT_LOG_LEVELS.get(event.event_type, logging.INFO),
            "Task %s: %s",
            event.event_type.value,
            event.issue_id,
            extra=event.to_log_dict(),
        )


class CompositeEventEmitter(EventEmitter):
    """Forwards each event to several emitters in order.

    A child that raises is logged and skipped; the remaining children
    still receive the event.
    """

    def __init__(self, emitters: Optional[Sequence[EventEmitter]] = None):
        self._emitters: List[EventEmitter] = list(emitters or [])

    def add_emitter(self, emitter: EventEmitter) -> None:
        self._emitters.append(emitter)

    @property
    def emitters(self) -> List[EventEmitter]:
        return list(self._emitters)

    async def emit(self, event: TaskEvent) -> None:
        for child in self._emitters:
            try:
                await child.emit(event)
            except Exception as e:
                logger.error(
                    "Event sink %s rejected event: %s",
                    type(child).__name__,
                    e,
                    extra={
                        "emitter_type": type(child).__name__,
                        "event_type": event.event_type.value,
                        "issue_id": event.issue_id,
                    },
                )

    async def close(self) -> None:
        for child in self._emitters:
            try:
                await child.close()
            except Exception as e:
                logger.error("Closing event sink %s failed: %s", type(child).__name__, e)


class NullEventEmitter(EventEmitter):
    """Drops every event."""

    async def emit(self, event: TaskEvent) -> None:
        return None


def _build_sink(sink_type: EventSinkType, logger_name: Optional[str]) -> Optional[EventEmitter]:
    if sink_type == EventSinkType.LOGGING:
        return LoggingEventEmitter(logger_name=logger_name)
    if sink_type == EventSinkType.METRICS:
        # metrics.py imports EventEmitter from this module
        from src.loom.events.metrics import MetricsEventEmitter

        return MetricsEventEmitter()
    logger.warning("Ignoring unknown event sink type %r", sink_type)
    return None


def create_event_emitter(
    sink_types: Optional[Sequence[EventSinkType]] = None,
    logger_name: Optional[str] = None,
) -> EventEmitter:
    """Build the emitter for a list of sinks.

    No sinks (or only unknown ones) means logging only. A single sink is
    returned as is; several are wrapped in a CompositeEventEmitter.

    Example:
        >>> emitter = create_event_emitter([EventSinkType.LOGGING, EventSinkType.METRICS])
        >>> isinstance(emitter, CompositeEventEmitter)
        True
    """
    sinks = [
        sink
        for sink in (_build_sink(sink_type, logger_name) for sink_type in sink_types or [])
        if sink is not None
    ]

    if not sinks:
        return LoggingEventEmitter(logger_name=logger_name)
    if len(sinks) == 1:
        return sinks[0]
    return CompositeEventEmitter(sinks)
