"""Property-based tests for the transition coordinator.

Testing Configuration:
- Library: Hypothesis (Python)
- Minimum iterations: 100 per property test
"""

import asyncio

from hypothesis import given, settings, strategies as st

from agent_pipeline.coordinator import TransitionCoordinator
from agent_pipeline.errors import IllegalTransitionError
from agent_pipeline.state.models import VALID_TRANSITIONS, WorkflowPhase
from agent_pipeline.state.store import InMemoryLedgerStore, check_invariants


def run_async(coro):
    return asyncio.run(coro)


requests = st.lists(st.sampled_from(list(WorkflowPhase)), min_size=1, max_size=25)


class TestLedgerInvariants:
    """Whatever is requested, the stored entity stays consistent."""

    @given(requested=requests)
    @settings(max_examples=100, deadline=None)
    def test_arbitrary_requests_keep_entity_consistent(self, requested):
        coordinator = TransitionCoordinator(InMemoryLedgerStore())

        async def scenario():
            await coordinator.create("001-x", "1")
            accepted = []
            for phase in requested:
                before = await coordinator.get("001-x")
                try:
                    await coordinator.request_transition("001-x", phase)
                except IllegalTransitionError:
                    after = await coordinator.get("001-x")
                    assert after == before
                    continue
                assert phase in VALID_TRANSITIONS[before.phase]
                accepted.append(phase)
            return accepted, await coordinator.get("001-x")

        accepted, entity = run_async(scenario())

        assert check_invariants(entity) == []
        assert entity.version == len(accepted)
        assert [record.to_phase for record in entity.history] == accepted
        assert [record.version_after for record in entity.history] == list(
            range(1, len(accepted) + 1)
        )

    @given(
        racers=st.integers(min_value=2, max_value=6),
        target=st.sampled_from([WorkflowPhase.INTAKE, WorkflowPhase.FAILED]),
    )
    @settings(max_examples=100, deadline=None)
    def test_racing_requests_commit_exactly_once(self, racers, target):
        class YieldingStore(InMemoryLedgerStore):
            async def read(self, entity_id):
                entity = await super().read(entity_id)
                await asyncio.sleep(0)
                return entity

        coordinator = TransitionCoordinator(
            YieldingStore(), max_retries=racers, base_delay=0, max_delay=0
        )

        async def scenario():
            await coordinator.create("001-x", "1")
            results = await asyncio.gather(
                *[coordinator.request_transition("001-x", target) for _ in range(racers)],
                return_exceptions=True,
            )
            return results, await coordinator.get("001-x")

        results, entity = run_async(scenario())

        successes = [r for r in results if not isinstance(r, Exception)]
        assert len(successes) == 1
        assert all(
            isinstance(r, IllegalTransitionError)
            for r in results
            if isinstance(r, Exception)
        )
        assert entity.version == 1
        assert len(entity.history) == 1
