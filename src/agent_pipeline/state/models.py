"""Workflow ledger models.

This module defines the data models for the workflow ledger, including:
- WorkflowPhase: Enum of all declared workflow phases
- TransitionRecord: Immutable record of a committed phase transition
- ExternalEffect: Declarative tag add/remove intent attached to a phase edge
- WorkflowEntity: Versioned snapshot of one feature/issue plus its history
- EntityMutation: The change a compare-and-swap mutator asks the store to apply
- VALID_TRANSITIONS: Map defining the declared phase graph

The models use Pydantic for validation so that an entity can never be
persisted in an undeclared phase and persisted records missing required
fields are rejected on load.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowPhase(str, Enum):
    """Phases that a workflow entity progresses through.

    Phase Flow:
        queued → intake → [needs_supplement ↔ intake] → spec_created
        → [planning → plan_review | plan_review] → plan_approved
        → tasks_approved → implementing ↔ qa → pr → complete

    Any non-terminal phase can transition to 'failed'. Both 'complete' and
    'failed' are terminal and retained for audit.
    """

    QUEUED = "queued"
    INTAKE = "intake"
    NEEDS_SUPPLEMENT = "needs_supplement"
    SPEC_CREATED = "spec_created"
    PLANNING = "planning"
    PLAN_REVIEW = "plan_review"
    PLAN_APPROVED = "plan_approved"
    TASKS_APPROVED = "tasks_approved"
    IMPLEMENTING = "implementing"
    QA = "qa"
    PR = "pr"
    COMPLETE = "complete"
    FAILED = "failed"


class EffectOp(str, Enum):
    """Operation of an external tag effect."""

    ADD = "add"
    REMOVE = "remove"


class ExternalEffect(BaseModel):
    """Declarative mutation of an external tag set.

    Effects are computed by the phase machine as a pure function of a
    phase edge and applied idempotently by the sync adapter: adding a tag
    that is present, or removing one that is absent, is a no-op.

    Attributes:
        op: Whether the tag is added or removed.
        tag: The tag (label) name.
    """

    model_config = ConfigDict(frozen=True)

    op: EffectOp
    tag: str = Field(..., min_length=1)

    def __str__(self) -> str:
        return f"{self.op.value}:{self.tag}"


class TransitionRecord(BaseModel):
    """Record of a committed phase transition.

    Records are immutable once appended to an entity's history. The
    version_after field ties each record to the mutation that produced it,
    so records of one entity are totally ordered by version.

    Attributes:
        from_phase: The phase before the transition.
        to_phase: The phase after the transition.
        detail: Short free-form description supplied by the caller.
        actor: Who requested the transition (e.g. "bot" or a username).
        timestamp: When the transition was committed (UTC).
        version_after: Entity version produced by this transition.
    """

    model_config = ConfigDict(frozen=True)

    from_phase: WorkflowPhase
    to_phase: WorkflowPhase
    detail: str = ""
    actor: str = "bot"
    timestamp: datetime = Field(default_factory=utc_now)
    version_after: int = Field(..., ge=1)


class ErrorInfo(BaseModel):
    """Error recorded against an entity.

    An error stays on the entity until it is cleared explicitly.
    """

    message: str = Field(..., min_length=1)
    step: str = ""
    retry_count: int = Field(default=0, ge=0)
    timestamp: datetime = Field(default_factory=utc_now)


class TaskProgress(BaseModel):
    """Progress through the implementation task list."""

    total: int = Field(..., ge=0)
    completed: int = Field(..., ge=0)
    current: Optional[str] = None
    blocked: List[str] = Field(default_factory=list)


class WorkflowEntity(BaseModel):
    """Versioned state of one feature/issue in the workflow.

    The version starts at 0 on creation and increases by exactly one per
    committed mutation. Unknown fields found in a persisted record are kept
    and written back unchanged, so newer writers can add optional fields
    without breaking older readers.

    Attributes:
        entity_id: Unique, immutable identifier of the entity.
        external_ref: Opaque reference to the external object (issue number).
        phase: The current workflow phase.
        phase_detail: Short mutable status string.
        version: Compare-and-swap version.
        history: Append-only list of committed phase transitions.
        error: Error recorded against the entity, if any.
        pr_number: Pull request number once one is opened.
        task_progress: Implementation progress, if tracked.
        created_at: When the entity was created (UTC).
        updated_at: When the entity was last mutated (UTC).
    """

    model_config = ConfigDict(extra="allow")

    entity_id: str = Field(..., min_length=1)
    external_ref: str = Field(..., min_length=1)
    phase: WorkflowPhase
    phase_detail: str = ""
    version: int = Field(..., ge=0)
    history: List[TransitionRecord]
    error: Optional[ErrorInfo] = None
    pr_number: Optional[int] = Field(default=None, gt=0)
    task_progress: Optional[TaskProgress] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def new(cls, entity_id: str, external_ref: str) -> "WorkflowEntity":
        """Build a freshly created entity in the queued phase."""
        now = utc_now()
        return cls(
            entity_id=entity_id,
            external_ref=external_ref,
            phase=WorkflowPhase.QUEUED,
            phase_detail="initialized",
            version=0,
            history=[],
            created_at=now,
            updated_at=now,
        )

    def summary(self) -> "EntitySummary":
        return EntitySummary(
            entity_id=self.entity_id,
            external_ref=self.external_ref,
            phase=self.phase,
            phase_detail=self.phase_detail,
            version=self.version,
            has_error=self.error is not None,
            updated_at=self.updated_at,
        )


class EntitySummary(BaseModel):
    """Read-only listing view of an entity."""

    entity_id: str
    external_ref: str
    phase: WorkflowPhase
    phase_detail: str
    version: int
    has_error: bool
    updated_at: datetime


class EntityMutation(BaseModel):
    """A change produced by a compare-and-swap mutator.

    When phase is set the store appends exactly one TransitionRecord built
    from phase, detail and actor. The remaining fields update the snapshot
    without touching history.

    Attributes:
        phase: Target phase, if the mutation is a transition.
        detail: Transition detail recorded in history.
        actor: Who requested the mutation.
        phase_detail: New status string; defaults to detail on transitions.
        error: Error to record.
        clear_error: Drop the recorded error.
        pr_number: Pull request number to record.
        task_progress: Task progress to record.
    """

    phase: Optional[WorkflowPhase] = None
    detail: str = ""
    actor: str = "bot"
    phase_detail: Optional[str] = None
    error: Optional[ErrorInfo] = None
    clear_error: bool = False
    pr_number: Optional[int] = Field(default=None, gt=0)
    task_progress: Optional[TaskProgress] = None


def apply_mutation(
    entity: WorkflowEntity,
    mutation: EntityMutation,
    now: Optional[datetime] = None,
) -> WorkflowEntity:
    """Produce the next snapshot of an entity.

    The returned entity has version + 1 and, for transitions, one new
    history record whose version_after equals the new version. The input
    entity is not modified.

    Args:
        entity: The current snapshot.
        mutation: The change to apply.
        now: Commit timestamp; defaults to the current UTC time.

    Returns:
        The new snapshot.
    """
    now = now or utc_now()
    new_version = entity.version + 1
    update: Dict[str, object] = {"version": new_version, "updated_at": now}

    if mutation.phase is not None:
        record = TransitionRecord(
            from_phase=entity.phase,
            to_phase=mutation.phase,
            detail=mutation.detail,
            actor=mutation.actor,
            timestamp=now,
            version_after=new_version,
        )
        update["phase"] = mutation.phase
        update["history"] = [*entity.history, record]
        update["phase_detail"] = (
            mutation.phase_detail
            if mutation.phase_detail is not None
            else mutation.detail
        )
    elif mutation.phase_detail is not None:
        update["phase_detail"] = mutation.phase_detail

    if mutation.clear_error:
        update["error"] = None
    if mutation.error is not None:
        update["error"] = mutation.error
    if mutation.pr_number is not None:
        update["pr_number"] = mutation.pr_number
    if mutation.task_progress is not None:
        update["task_progress"] = mutation.task_progress

    return entity.model_copy(update=update)


# Declared phase graph
#
# - Any non-terminal phase can transition to FAILED
# - COMPLETE and FAILED are terminal (no outgoing transitions)
# - NEEDS_SUPPLEMENT loops back to INTAKE once the issue is edited
# - SPEC_CREATED may skip plan review straight to PLAN_APPROVED
# - QA failures loop back to IMPLEMENTING
VALID_TRANSITIONS: Dict[WorkflowPhase, List[WorkflowPhase]] = {
    WorkflowPhase.QUEUED: [
        WorkflowPhase.INTAKE,
        WorkflowPhase.FAILED,
    ],
    WorkflowPhase.INTAKE: [
        WorkflowPhase.NEEDS_SUPPLEMENT,
        WorkflowPhase.SPEC_CREATED,
        WorkflowPhase.FAILED,
    ],
    WorkflowPhase.NEEDS_SUPPLEMENT: [
        WorkflowPhase.INTAKE,
        WorkflowPhase.FAILED,
    ],
    WorkflowPhase.SPEC_CREATED: [
        WorkflowPhase.PLANNING,
        WorkflowPhase.PLAN_REVIEW,
        WorkflowPhase.PLAN_APPROVED,
        WorkflowPhase.FAILED,
    ],
    WorkflowPhase.PLANNING: [
        WorkflowPhase.PLAN_REVIEW,
        WorkflowPhase.FAILED,
    ],
    WorkflowPhase.PLAN_REVIEW: [
        WorkflowPhase.PLAN_APPROVED,
        WorkflowPhase.FAILED,
    ],
    WorkflowPhase.PLAN_APPROVED: [
        WorkflowPhase.TASKS_APPROVED,
        WorkflowPhase.FAILED,
    ],
    WorkflowPhase.TASKS_APPROVED: [
        WorkflowPhase.IMPLEMENTING,
        WorkflowPhase.FAILED,
    ],
    WorkflowPhase.IMPLEMENTING: [
        WorkflowPhase.QA,
        WorkflowPhase.FAILED,
    ],
    WorkflowPhase.QA: [
        WorkflowPhase.PR,
        WorkflowPhase.IMPLEMENTING,
        WorkflowPhase.FAILED,
    ],
    WorkflowPhase.PR: [
        WorkflowPhase.COMPLETE,
        WorkflowPhase.FAILED,
    ],
    WorkflowPhase.COMPLETE: [],
    WorkflowPhase.FAILED: [],
}

TERMINAL_PHASES: FrozenSet[WorkflowPhase] = frozenset(
    phase for phase, targets in VALID_TRANSITIONS.items() if not targets
)


def is_valid_transition(from_phase: WorkflowPhase, to_phase: WorkflowPhase) -> bool:
    """Check if a phase transition is declared.

    Example:
        >>> is_valid_transition(WorkflowPhase.QUEUED, WorkflowPhase.INTAKE)
        True
        >>> is_valid_transition(WorkflowPhase.COMPLETE, WorkflowPhase.IMPLEMENTING)
        False
    """
    return to_phase in VALID_TRANSITIONS.get(from_phase, [])


def is_terminal_phase(phase: WorkflowPhase) -> bool:
    """Check if a phase is terminal (has no outgoing transitions).

    Example:
        >>> is_terminal_phase(WorkflowPhase.COMPLETE)
        True
        >>> is_terminal_phase(WorkflowPhase.QA)
        False
    """
    return phase in TERMINAL_PHASES
