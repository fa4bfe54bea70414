"""Phase machine: validation of phase edges and their external effects.

The PhaseMachine decides whether an entity may move from its current phase
to a requested one and, for allowed edges, which external tag effects the
move implies. It performs no I/O; persistence is the ledger store's job and
applying effects is the sync adapter's.

Labels follow the "<prefix><phase>" convention with underscores turned into
hyphens, e.g. WorkflowPhase.PLAN_REVIEW → "agent:plan-review".
"""

import logging
from typing import Iterable, List, Optional, Set

from pydantic import BaseModel, Field

from agent_pipeline.errors import IllegalTransitionError, TerminalPhaseError
from agent_pipeline.state.models import (
    VALID_TRANSITIONS,
    EffectOp,
    ExternalEffect,
    WorkflowPhase,
    is_terminal_phase,
    is_valid_transition,
)


logger = logging.getLogger(__name__)


DEFAULT_LABEL_PREFIX = "agent:"


class TransitionDecision(BaseModel):
    """Outcome of validating a requested phase edge.

    Attributes:
        from_phase: The entity's current phase.
        to_phase: The requested phase.
        allowed: Whether the edge is declared.
        effects: Tag effects implied by the edge (empty when not allowed).
        reason: Why the edge was rejected, if it was.
    """

    from_phase: WorkflowPhase
    to_phase: WorkflowPhase
    allowed: bool
    effects: List[ExternalEffect] = Field(default_factory=list)
    reason: Optional[str] = None


class PhaseMachine:
    """Validates phase transitions against the declared phase graph.

    Attributes:
        label_prefix: Prefix shared by every phase label.

    Example:
        >>> machine = PhaseMachine()
        >>> decision = machine.validate(WorkflowPhase.QUEUED, WorkflowPhase.INTAKE)
        >>> [str(e) for e in decision.effects]
        ['add:agent:intake', 'remove:agent:queued']
    """

    def __init__(self, label_prefix: str = DEFAULT_LABEL_PREFIX):
        self.label_prefix = label_prefix

    def phase_label(self, phase: WorkflowPhase) -> str:
        return f"{self.label_prefix}{phase.value.replace('_', '-')}"

    def phase_labels(self) -> Set[str]:
        """All labels that represent some workflow phase."""
        return {self.phase_label(phase) for phase in WorkflowPhase}

    def allowed_targets(self, phase: WorkflowPhase) -> List[WorkflowPhase]:
        return list(VALID_TRANSITIONS.get(phase, []))

    def effects_for(
        self,
        from_phase: WorkflowPhase,
        to_phase: WorkflowPhase,
    ) -> List[ExternalEffect]:
        """Compute the tag effects of a declared edge.

        The target label is added before any removal so that a partially
        applied effect list leaves an issue over-labelled rather than
        unlabelled. Entering a terminal phase clears every other phase
        label.
        """
        target = self.phase_label(to_phase)
        effects = [ExternalEffect(op=EffectOp.ADD, tag=target)]

        if is_terminal_phase(to_phase):
            stale = [
                self.phase_label(phase)
                for phase in WorkflowPhase
                if phase != to_phase
            ]
        else:
            stale = [self.phase_label(from_phase)]

        effects.extend(
            ExternalEffect(op=EffectOp.REMOVE, tag=tag)
            for tag in stale
            if tag != target
        )
        return effects

    def check(
        self,
        current: WorkflowPhase,
        requested: WorkflowPhase,
    ) -> TransitionDecision:
        """Evaluate a requested edge without raising."""
        if is_terminal_phase(current):
            return TransitionDecision(
                from_phase=current,
                to_phase=requested,
                allowed=False,
                reason="terminal_phase",
            )
        if not is_valid_transition(current, requested):
            return TransitionDecision(
                from_phase=current,
                to_phase=requested,
                allowed=False,
                reason="declared_edge",
            )
        return TransitionDecision(
            from_phase=current,
            to_phase=requested,
            allowed=True,
            effects=self.effects_for(current, requested),
        )

    def validate(
        self,
        current: WorkflowPhase,
        requested: WorkflowPhase,
        entity_id: Optional[str] = None,
    ) -> TransitionDecision:
        """Validate a requested edge.

        Args:
            current: The entity's current phase.
            requested: The requested target phase.
            entity_id: Entity named in any raised error.

        Returns:
            An allowed TransitionDecision carrying the edge's effects.

        Raises:
            TerminalPhaseError: If current is terminal.
            IllegalTransitionError: If the edge is not declared.
        """
        decision = self.check(current, requested)
        if decision.allowed:
            return decision

        logger.warning(
            "Rejected phase transition",
            extra={
                "entity_id": entity_id,
                "from_phase": current.value,
                "to_phase": requested.value,
                "reason": decision.reason,
            },
        )
        if decision.reason == "terminal_phase":
            raise TerminalPhaseError(
                current.value, requested.value, entity_id=entity_id
            )
        raise IllegalTransitionError(
            current.value, requested.value, entity_id=entity_id
        )

    def reconcile_effects(
        self,
        phase: WorkflowPhase,
        current_tags: Iterable[str],
    ) -> List[ExternalEffect]:
        """Effects that project a phase onto an arbitrary tag set.

        The result adds the phase's label if missing and removes any other
        phase label present. Tags outside the phase label namespace are left
        alone.
        """
        present = set(current_tags)
        target = self.phase_label(phase)
        effects: List[ExternalEffect] = []

        if target not in present:
            effects.append(ExternalEffect(op=EffectOp.ADD, tag=target))

        for tag in sorted(present & self.phase_labels()):
            if tag != target:
                effects.append(ExternalEffect(op=EffectOp.REMOVE, tag=tag))

        return effects
