"""Sinks for workflow events.

The coordinator publishes every creation, transition, conflict and sync
outcome to a single EventEmitter. Which sinks sit behind it (log records,
Prometheus counters, or both) is a deployment choice made through
create_event_emitter.
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, List, Optional, Sequence

from agent_pipeline.events.models import EventType, WorkflowEvent


logger = logging.getLogger(__name__)


# Anything not listed is logged at INFO
EVENT_LOG_LEVELS: Dict[EventType, int] = {
    EventType.VERSION_CONFLICT: logging.WARNING,
    EventType.SYNC_FAILED: logging.ERROR,
}


class EventSinkType(str, Enum):
    """Event sinks selectable through AGENT_PIPELINE_EVENT_SINKS."""

    LOGGING = "logging"
    METRICS = "metrics"


class EventEmitter(ABC):
    """Receives workflow events from the coordinator.

    The coordinator never lets an emitter failure reach the caller, but
    implementations should still avoid raising and should not block for
    long inside emit().
    """

    @abstractmethod
    async def emit(self, event: WorkflowEvent) -> None:
        ...

    async def close(self) -> None:
        """Flush and release whatever the sink holds. No-op by default."""


class LoggingEventEmitter(EventEmitter):
    """Writes each event as one log record.

    The record's extra fields are the event's flattened log dict, so a JSON
    formatter sees entity_id, external_ref and every detail as top-level
    keys. Conflicts log at WARNING and sync failures at ERROR.
    """

    def __init__(self, logger_name: Optional[str] = None):
        self._logger = logging.getLogger(logger_name) if logger_name else logger

    async def emit(self, event: WorkflowEvent) -> None:
        self._logger.log(
            EVENT_LOG_LEVELS.get(event.event_type, logging.INFO),
            "%s: entity %s (ref %s)",
            event.event_type.value,
            event.entity_id,
            event.external_ref,
            extra=event.to_log_dict(),
        )


class CompositeEventEmitter(EventEmitter):
    """Fans every event out to several sinks.

    Each sink is isolated: an exception from one is logged and the remaining
    sinks still receive the event.
    """

    def __init__(self, emitters: Sequence[EventEmitter] = ()):
        self._emitters = list(emitters)

    @property
    def emitters(self) -> List[EventEmitter]:
        return list(self._emitters)

    async def emit(self, event: WorkflowEvent) -> None:
        for sink in self._emitters:
            try:
                await sink.emit(event)
            except Exception:
                logger.exception(
                    "Event sink %s dropped %s for %s",
                    type(sink).__name__,
                    event.event_type.value,
                    event.entity_id,
                )

    async def close(self) -> None:
        for sink in self._emitters:
            try:
                await sink.close()
            except Exception:
                logger.exception("Closing event sink %s failed", type(sink).__name__)


class NullEventEmitter(EventEmitter):
    """Discards events. Used when the coordinator is built without sinks."""

    async def emit(self, event: WorkflowEvent) -> None:
        return None


def _build_sink(sink_type: EventSinkType, logger_name: Optional[str]) -> EventEmitter:
    if sink_type is EventSinkType.METRICS:
        # metrics.py imports this module
        from agent_pipeline.events.metrics import MetricsEventEmitter

        return MetricsEventEmitter()
    return LoggingEventEmitter(logger_name=logger_name)


def create_event_emitter(
    sink_types: Optional[Sequence[EventSinkType]] = None,
    logger_name: Optional[str] = None,
) -> EventEmitter:
    """Build the emitter for a list of sink types.

    Duplicates are ignored and order is kept. No sinks means logging only;
    more than one sink yields a CompositeEventEmitter.

    Example:
        >>> create_event_emitter([EventSinkType.LOGGING, EventSinkType.METRICS])
        <agent_pipeline.events.emitter.CompositeEventEmitter object at ...>
    """
    sinks = [
        _build_sink(EventSinkType(sink_type), logger_name)
        for sink_type in dict.fromkeys(sink_types or [EventSinkType.LOGGING])
    ]
    if len(sinks) == 1:
        return sinks[0]
    return CompositeEventEmitter(sinks)
