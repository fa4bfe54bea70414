"""Pytest configuration and shared fixtures."""

import os
from typing import Dict, List, Set, Tuple

import pytest

from agent_pipeline.coordinator import TransitionCoordinator
from agent_pipeline.state.machine import PhaseMachine
from agent_pipeline.state.store import InMemoryLedgerStore
from agent_pipeline.sync.adapter import ExternalSyncAdapter


class InMemoryTagSystem:
    """In-memory TagSystem recording every call.

    Failures can be scripted per (operation, tag): each scripted error is
    raised once, in order, before the call starts succeeding.
    """

    def __init__(self) -> None:
        self.tags: Dict[str, Set[str]] = {}
        self.calls: List[Tuple[str, str, str]] = []
        self.failures: Dict[Tuple[str, str], List[Exception]] = {}

    def fail(self, op: str, tag: str, *errors: Exception) -> None:
        self.failures.setdefault((op, tag), []).extend(errors)

    def _maybe_fail(self, op: str, tag: str) -> None:
        pending = self.failures.get((op, tag))
        if pending:
            raise pending.pop(0)

    async def add_tag(self, external_ref: str, tag: str) -> None:
        self.calls.append(("add", external_ref, tag))
        self._maybe_fail("add", tag)
        self.tags.setdefault(external_ref, set()).add(tag)

    async def remove_tag(self, external_ref: str, tag: str) -> None:
        self.calls.append(("remove", external_ref, tag))
        self._maybe_fail("remove", tag)
        self.tags.setdefault(external_ref, set()).discard(tag)

    async def list_tags(self, external_ref: str) -> List[str]:
        self.calls.append(("list", external_ref, ""))
        self._maybe_fail("list", "")
        return sorted(self.tags.get(external_ref, set()))


@pytest.fixture(autouse=True)
def clean_pipeline_env(monkeypatch):
    """Keep AGENT_PIPELINE_* variables from the host out of tests."""
    for name in list(os.environ):
        if name.startswith("AGENT_PIPELINE_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def machine() -> PhaseMachine:
    return PhaseMachine()


@pytest.fixture
def store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
def tag_system() -> InMemoryTagSystem:
    return InMemoryTagSystem()


@pytest.fixture
def sync_adapter(tag_system, machine) -> ExternalSyncAdapter:
    return ExternalSyncAdapter(
        tag_system,
        phase_machine=machine,
        max_retries=3,
        base_delay=0,
        max_delay=0,
        attempt_timeout=1.0,
    )


@pytest.fixture
def coordinator(store, machine) -> TransitionCoordinator:
    return TransitionCoordinator(store, phase_machine=machine, base_delay=0, max_delay=0)
