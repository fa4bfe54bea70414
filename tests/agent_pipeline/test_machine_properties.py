"""Property-based tests for the phase machine.

Testing Configuration:
- Library: Hypothesis (Python)
- Minimum iterations: 100 per property test
"""

from typing import Set

import pytest
from hypothesis import given, settings, strategies as st

from agent_pipeline.errors import IllegalTransitionError, TerminalPhaseError
from agent_pipeline.state.machine import PhaseMachine
from agent_pipeline.state.models import (
    TERMINAL_PHASES,
    VALID_TRANSITIONS,
    EffectOp,
    ExternalEffect,
    WorkflowPhase,
)


# =============================================================================
# Hypothesis Strategies for Generating Test Data
# =============================================================================


@st.composite
def declared_edge(draw: st.DrawFn):
    sources = [phase for phase, targets in VALID_TRANSITIONS.items() if targets]
    source = draw(st.sampled_from(sources))
    target = draw(st.sampled_from(VALID_TRANSITIONS[source]))
    return source, target


@st.composite
def undeclared_edge(draw: st.DrawFn):
    source = draw(
        st.sampled_from(
            [phase for phase in WorkflowPhase if phase not in TERMINAL_PHASES]
        )
    )
    invalid = [p for p in WorkflowPhase if p not in VALID_TRANSITIONS[source]]
    target = draw(st.sampled_from(invalid))
    return source, target


label_sets = st.sets(
    st.one_of(
        st.sampled_from(sorted(PhaseMachine().phase_labels())),
        st.sampled_from(["bug", "enhancement", "agent-pipeline", "priority:high"]),
    ),
    max_size=8,
)


def apply_effects(tags: Set[str], effects) -> Set[str]:
    result = set(tags)
    for effect in effects:
        if effect.op == EffectOp.ADD:
            result.add(effect.tag)
        else:
            result.discard(effect.tag)
    return result


# =============================================================================
# Property Tests
# =============================================================================


class TestEdgeValidation:
    """The machine allows exactly the declared edges."""

    @given(edge=declared_edge())
    @settings(max_examples=100)
    def test_declared_edges_are_allowed(self, edge):
        source, target = edge
        decision = PhaseMachine().validate(source, target)

        assert decision.allowed
        assert decision.effects

    @given(edge=undeclared_edge())
    @settings(max_examples=100)
    def test_undeclared_edges_raise_naming_both_phases(self, edge):
        source, target = edge

        with pytest.raises(IllegalTransitionError) as exc_info:
            PhaseMachine().validate(source, target, entity_id="001-x")

        error = exc_info.value
        assert not isinstance(error, TerminalPhaseError)
        assert error.from_phase == source.value
        assert error.to_phase == target.value
        assert error.entity_id == "001-x"
        assert source.value in error.message and target.value in error.message

    @given(
        source=st.sampled_from(sorted(TERMINAL_PHASES)),
        target=st.sampled_from(list(WorkflowPhase)),
    )
    @settings(max_examples=100)
    def test_terminal_phases_reject_everything(self, source, target):
        with pytest.raises(TerminalPhaseError) as exc_info:
            PhaseMachine().validate(source, target)

        assert exc_info.value.rule == "terminal_phase"

    @given(
        source=st.sampled_from(list(WorkflowPhase)),
        target=st.sampled_from(list(WorkflowPhase)),
    )
    @settings(max_examples=100)
    def test_check_agrees_with_validate(self, source, target):
        machine = PhaseMachine()
        decision = machine.check(source, target)

        if decision.allowed:
            assert machine.validate(source, target) == decision
        else:
            assert decision.effects == []
            with pytest.raises(IllegalTransitionError):
                machine.validate(source, target)


class TestEdgeEffects:
    """Effects are a pure function of the edge."""

    @given(edge=declared_edge())
    @settings(max_examples=100)
    def test_effects_are_deterministic(self, edge):
        source, target = edge

        assert PhaseMachine().effects_for(source, target) == PhaseMachine().effects_for(
            source, target
        )

    @given(edge=declared_edge())
    @settings(max_examples=100)
    def test_adds_precede_removes(self, edge):
        effects = PhaseMachine().effects_for(*edge)
        ops = [effect.op for effect in effects]

        assert ops[0] == EffectOp.ADD
        assert EffectOp.ADD not in ops[1:]

    @given(edge=declared_edge(), extra=label_sets)
    @settings(max_examples=100)
    def test_effects_move_the_source_label_to_the_target(self, edge, extra):
        machine = PhaseMachine()
        source, target = edge
        tags = (extra - machine.phase_labels()) | {machine.phase_label(source)}

        result = apply_effects(tags, machine.effects_for(source, target))

        assert result & machine.phase_labels() == {machine.phase_label(target)}
        assert result - machine.phase_labels() == tags - machine.phase_labels()

    def test_terminal_edges_clear_every_other_phase_label(self):
        machine = PhaseMachine()
        effects = machine.effects_for(WorkflowPhase.PR, WorkflowPhase.COMPLETE)
        removed = {e.tag for e in effects if e.op == EffectOp.REMOVE}

        assert effects[0] == ExternalEffect(op=EffectOp.ADD, tag="agent:complete")
        assert removed == machine.phase_labels() - {"agent:complete"}

    def test_labels_use_hyphens_and_prefix(self):
        machine = PhaseMachine(label_prefix="pipeline/")

        assert machine.phase_label(WorkflowPhase.PLAN_REVIEW) == "pipeline/plan-review"
        assert [str(e) for e in machine.effects_for(
            WorkflowPhase.QUEUED, WorkflowPhase.INTAKE
        )] == ["add:pipeline/intake", "remove:pipeline/queued"]


class TestReconcile:
    """Reconciliation converges any tag set to the phase projection."""

    @given(phase=st.sampled_from(list(WorkflowPhase)), tags=label_sets)
    @settings(max_examples=100)
    def test_reconcile_converges(self, phase, tags):
        machine = PhaseMachine()

        result = apply_effects(tags, machine.reconcile_effects(phase, tags))

        assert result & machine.phase_labels() == {machine.phase_label(phase)}
        assert result - machine.phase_labels() == tags - machine.phase_labels()

    @given(phase=st.sampled_from(list(WorkflowPhase)), tags=label_sets)
    @settings(max_examples=100)
    def test_reconcile_is_idempotent(self, phase, tags):
        machine = PhaseMachine()
        converged = apply_effects(tags, machine.reconcile_effects(phase, tags))

        assert machine.reconcile_effects(phase, converged) == []
