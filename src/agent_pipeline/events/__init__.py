"""Workflow events and the sinks that consume them."""

from agent_pipeline.events.emitter import (
    CompositeEventEmitter,
    EventEmitter,
    EventSinkType,
    LoggingEventEmitter,
    NullEventEmitter,
    create_event_emitter,
)
from agent_pipeline.events.metrics import (
    MetricsEventEmitter,
    WorkflowMetrics,
    default_metrics,
    generate_metrics_output,
)
from agent_pipeline.events.models import EventType, WorkflowEvent

__all__ = [
    "CompositeEventEmitter",
    "EventEmitter",
    "EventSinkType",
    "EventType",
    "LoggingEventEmitter",
    "MetricsEventEmitter",
    "NullEventEmitter",
    "WorkflowEvent",
    "WorkflowMetrics",
    "create_event_emitter",
    "default_metrics",
    "generate_metrics_output",
]
