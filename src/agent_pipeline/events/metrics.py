"""Prometheus counters and gauges for the workflow ledger.

Counters are fed by workflow events. workflow_entities_by_phase is a
snapshot of the ledger, set from a store listing when /metrics is scraped,
so writes made by other processes are counted too.
"""

import functools
import logging
from typing import Callable, Dict, Iterable, Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, generate_latest

from agent_pipeline.events.emitter import EventEmitter
from agent_pipeline.events.models import EventType, WorkflowEvent
from agent_pipeline.state.models import WorkflowPhase


logger = logging.getLogger(__name__)


class WorkflowMetrics:
    """The workflow collectors, registered on one registry.

    Tests pass a fresh CollectorRegistry so that counters start at zero.

    Example:
        >>> metrics = WorkflowMetrics(registry=CollectorRegistry())
        >>> metrics.record_transition("queued", "intake")
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY
        self.entities_created_total = Counter(
            "workflow_entities_created_total",
            "Workflow entities created",
            registry=self.registry,
        )
        self.transitions_total = Counter(
            "workflow_transitions_total",
            "Committed phase transitions per edge",
            ["from_phase", "to_phase"],
            registry=self.registry,
        )
        self.version_conflicts_total = Counter(
            "workflow_version_conflicts_total",
            "Compare-and-swap writes rejected because of a stale version",
            registry=self.registry,
        )
        self.sync_total = Counter(
            "workflow_sync_total",
            "External tag sync runs by result",
            ["result"],
            registry=self.registry,
        )
        self.entities_by_phase = Gauge(
            "workflow_entities_by_phase",
            "Entities per phase in the ledger at the last scrape",
            ["phase"],
            registry=self.registry,
        )
        for phase in WorkflowPhase:
            self.entities_by_phase.labels(phase=phase.value).set(0)

    def record_created(self) -> None:
        self.entities_created_total.inc()

    def record_transition(self, from_phase: str, to_phase: str) -> None:
        self.transitions_total.labels(from_phase=from_phase, to_phase=to_phase).inc()

    def set_phase_counts(self, phases: Iterable[WorkflowPhase]) -> None:
        """Replace the per-phase gauge with a count of the given phases."""
        counts: Dict[WorkflowPhase, int] = dict.fromkeys(WorkflowPhase, 0)
        for phase in phases:
            counts[phase] += 1
        for phase, count in counts.items():
            self.entities_by_phase.labels(phase=phase.value).set(count)

    def record_conflict(self) -> None:
        self.version_conflicts_total.inc()

    def record_sync(self, success: bool) -> None:
        self.sync_total.labels(result="applied" if success else "failed").inc()


@functools.lru_cache(maxsize=None)
def default_metrics() -> WorkflowMetrics:
    """Process-wide metrics on the default registry, created once."""
    return WorkflowMetrics()


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    return generate_latest(registry or REGISTRY)


class MetricsEventEmitter(EventEmitter):
    """Turns workflow events into metric updates.

    Events without a metric (ENTITY_UPDATED) are ignored. An event missing
    the details its metric needs is logged and dropped.
    """

    def __init__(self, metrics: Optional[WorkflowMetrics] = None):
        self.metrics = metrics or default_metrics()
        self._handlers: Dict[EventType, Callable[[WorkflowEvent], None]] = {
            EventType.ENTITY_CREATED: lambda event: self.metrics.record_created(),
            EventType.PHASE_TRANSITION: lambda event: self.metrics.record_transition(
                event.details["from_phase"], event.details["to_phase"]
            ),
            EventType.VERSION_CONFLICT: lambda event: self.metrics.record_conflict(),
            EventType.SYNC_APPLIED: lambda event: self.metrics.record_sync(True),
            EventType.SYNC_FAILED: lambda event: self.metrics.record_sync(False),
        }

    async def emit(self, event: WorkflowEvent) -> None:
        handler = self._handlers.get(event.event_type)
        if handler is None:
            return
        try:
            handler(event)
        except KeyError as e:
            logger.error(
                "Cannot record %s for %s: missing detail %s",
                event.event_type.value,
                event.entity_id,
                e,
            )
