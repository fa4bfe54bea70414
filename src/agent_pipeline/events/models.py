"""Workflow event models for observability.

This module defines the data models for workflow events:
- EventType: Enum of all event types emitted by the coordinator
- WorkflowEvent: Structured event with entity context and details

Events are emitted for monitoring, alerting and debugging. They are a
side channel: failing to emit an event never affects a committed mutation.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Types of events emitted by the transition coordinator.

    Attributes:
        ENTITY_CREATED: A new entity entered the ledger in the queued phase.
        PHASE_TRANSITION: A phase transition was committed.
        ENTITY_UPDATED: A field-only mutation (error, detail, PR, progress)
            was committed.
        VERSION_CONFLICT: A compare-and-swap lost a race and will be retried.
        SYNC_APPLIED: External tag effects were applied.
        SYNC_FAILED: External tag effects could not be applied.
    """

    ENTITY_CREATED = "entity_created"
    PHASE_TRANSITION = "phase_transition"
    ENTITY_UPDATED = "entity_updated"
    VERSION_CONFLICT = "version_conflict"
    SYNC_APPLIED = "sync_applied"
    SYNC_FAILED = "sync_failed"


class WorkflowEvent(BaseModel):
    """Structured event emitted by the transition coordinator.

    Attributes:
        event_type: The category of event.
        entity_id: The entity the event concerns.
        external_ref: The entity's external reference, when known.
        timestamp: When the event occurred (UTC timezone).
        details: Additional context specific to the event type.

    Details Field Conventions:
        For PHASE_TRANSITION events:
            - from_phase, to_phase, version, actor

        For VERSION_CONFLICT events:
            - expected_version, actual_version, attempt

        For SYNC_APPLIED / SYNC_FAILED events:
            - effects: list of "op:tag" strings
            - error_message (SYNC_FAILED only)
    """

    event_type: EventType

    entity_id: str = Field(..., min_length=1)

    external_ref: Optional[str] = None

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )

    details: Dict[str, Any] = Field(default_factory=dict)

    def to_log_dict(self) -> Dict[str, Any]:
        """Flatten the event into a dictionary for structured logging.

        Example:
            >>> event = WorkflowEvent(
            ...     event_type=EventType.SYNC_FAILED,
            ...     entity_id="001-my-feature",
            ...     details={"error_message": "issue deleted"},
            ... )
            >>> event.to_log_dict()["event_type"]
            'sync_failed'
        """
        return {
            "event_type": self.event_type.value,
            "entity_id": self.entity_id,
            "external_ref": self.external_ref,
            "timestamp": self.timestamp.isoformat(),
            **self.details,
        }
