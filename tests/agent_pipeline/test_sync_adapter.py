"""Unit tests for the external sync adapter and GitHub label tag system."""

import asyncio
from unittest.mock import AsyncMock, Mock

import httpx
import pytest
from hypothesis import given, settings, strategies as st

from agent_pipeline.errors import SyncFailedError
from agent_pipeline.state.models import (
    EffectOp,
    ExternalEffect,
    WorkflowEntity,
    WorkflowPhase,
)
from agent_pipeline.sync.adapter import (
    ExternalSyncAdapter,
    GitHubLabelTagSystem,
    PermanentTagError,
    TagSystem,
    TransientTagError,
)
from agent_pipeline.sync.client import GitHubAPIError, GitHubClient, RateLimitError

from conftest import InMemoryTagSystem


def run_async(coro):
    return asyncio.run(coro)


def add(tag):
    return ExternalEffect(op=EffectOp.ADD, tag=tag)


def remove(tag):
    return ExternalEffect(op=EffectOp.REMOVE, tag=tag)


class SlowTagSystem(InMemoryTagSystem):
    async def add_tag(self, external_ref, tag):
        self.calls.append(("add", external_ref, tag))
        await asyncio.sleep(10)


class TestExternalSyncAdapter:

    def test_in_memory_tag_system_satisfies_protocol(self, tag_system):
        assert isinstance(tag_system, TagSystem)

    def test_applies_effects_in_order(self, sync_adapter, tag_system):
        tag_system.tags["42"] = {"agent:queued", "bug"}

        run_async(sync_adapter.apply([add("agent:intake"), remove("agent:queued")], "42"))

        assert tag_system.calls == [
            ("add", "42", "agent:intake"),
            ("remove", "42", "agent:queued"),
        ]
        assert tag_system.tags["42"] == {"agent:intake", "bug"}

    def test_transient_failure_is_retried(self, sync_adapter, tag_system):
        tag_system.fail("add", "agent:intake", TransientTagError("502"))

        run_async(sync_adapter.apply([add("agent:intake")], "42"))

        assert len(tag_system.calls) == 2
        assert tag_system.tags["42"] == {"agent:intake"}

    def test_retry_budget_exhaustion_raises_sync_failed(self, sync_adapter, tag_system):
        tag_system.fail(
            "add", "agent:intake", *[TransientTagError("503") for _ in range(4)]
        )

        with pytest.raises(SyncFailedError) as exc_info:
            run_async(
                sync_adapter.apply([add("agent:intake"), remove("agent:queued")], "42")
            )

        error = exc_info.value
        assert error.effect == "add:agent:intake"
        assert error.external_ref == "42"
        assert isinstance(error.original_error, TransientTagError)
        # 1 attempt + 3 retries, and the removal is never attempted
        assert tag_system.calls == [("add", "42", "agent:intake")] * 4

    def test_permanent_failure_is_not_retried(self, sync_adapter, tag_system):
        tag_system.fail("remove", "agent:queued", PermanentTagError("issue gone"))

        with pytest.raises(SyncFailedError) as exc_info:
            run_async(
                sync_adapter.apply([add("agent:intake"), remove("agent:queued")], "42")
            )

        assert exc_info.value.message == "issue gone"
        assert exc_info.value.effect == "remove:agent:queued"
        assert tag_system.calls == [
            ("add", "42", "agent:intake"),
            ("remove", "42", "agent:queued"),
        ]

    def test_slow_call_times_out_as_transient(self):
        tag_system = SlowTagSystem()
        adapter = ExternalSyncAdapter(
            tag_system, max_retries=1, base_delay=0, max_delay=0, attempt_timeout=0.01
        )

        with pytest.raises(SyncFailedError) as exc_info:
            run_async(adapter.apply([add("agent:intake")], "42"))

        assert "timed out" in exc_info.value.message
        assert len(tag_system.calls) == 2

    def test_reconcile_projects_phase_onto_tags(self, sync_adapter, tag_system):
        entity = WorkflowEntity.new("001-login", "42").model_copy(
            update={"phase": WorkflowPhase.QA}
        )
        tag_system.tags["42"] = {"agent:implementing", "enhancement"}

        effects = run_async(sync_adapter.reconcile(entity))

        assert [str(e) for e in effects] == ["add:agent:qa", "remove:agent:implementing"]
        assert tag_system.tags["42"] == {"agent:qa", "enhancement"}

    def test_reconcile_in_sync_applies_nothing(self, sync_adapter, tag_system):
        entity = WorkflowEntity.new("001-login", "42")
        tag_system.tags["42"] = {"agent:queued"}

        assert run_async(sync_adapter.reconcile(entity)) == []
        assert tag_system.calls == [("list", "42", "")]

    def test_reconcile_list_failure_raises_sync_failed(self, sync_adapter, tag_system):
        entity = WorkflowEntity.new("001-login", "42")
        tag_system.fail("list", "", TransientTagError("502"))

        with pytest.raises(SyncFailedError) as exc_info:
            run_async(sync_adapter.reconcile(entity))

        assert exc_info.value.entity_id == "001-login"
        assert exc_info.value.current_phase == "queued"


class TestGitHubLabelTagSystem:

    def _tags(self):
        client = Mock()
        client.add_label = AsyncMock(return_value=["agent:intake"])
        client.remove_label = AsyncMock(return_value=None)
        client.list_labels = AsyncMock(return_value=["agent:intake", "bug"])
        return GitHubLabelTagSystem(client, "acme", "widgets"), client

    def test_delegates_with_issue_number(self):
        tags, client = self._tags()

        run_async(tags.add_tag("#42", "agent:intake"))
        run_async(tags.remove_tag("42", "agent:queued"))
        labels = run_async(tags.list_tags("42"))

        client.add_label.assert_awaited_once_with("acme", "widgets", 42, "agent:intake")
        client.remove_label.assert_awaited_once_with("acme", "widgets", 42, "agent:queued")
        assert labels == ["agent:intake", "bug"]

    def test_non_numeric_reference_is_permanent(self):
        tags, client = self._tags()

        with pytest.raises(PermanentTagError):
            run_async(tags.add_tag("PROJ-7", "agent:intake"))

        client.add_label.assert_not_called()

    @pytest.mark.parametrize("status_code", [401, 403, 404, 410, 422])
    def test_client_errors_are_permanent(self, status_code):
        tags, client = self._tags()
        client.add_label.side_effect = GitHubAPIError("nope", status_code=status_code)

        with pytest.raises(PermanentTagError):
            run_async(tags.add_tag("42", "agent:intake"))

    @pytest.mark.parametrize(
        "error",
        [
            GitHubAPIError("bad gateway", status_code=502),
            GitHubAPIError("request failed after retries"),
            RateLimitError("slow down", status_code=429, retry_after=30),
            httpx.ConnectError("connection refused"),
        ],
    )
    def test_other_failures_are_transient(self, error):
        tags, client = self._tags()
        client.remove_label.side_effect = error

        with pytest.raises(TransientTagError):
            run_async(tags.remove_tag("42", "agent:intake"))

    def test_unreadable_response_fails_sync_after_retries(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, text="<html>maintenance</html>")

        client = GitHubClient(
            token="ghp_test", max_retries=0, transport=httpx.MockTransport(handler)
        )
        adapter = ExternalSyncAdapter(
            GitHubLabelTagSystem(client, "acme", "widgets"),
            max_retries=2,
            base_delay=0,
            max_delay=0,
        )

        with pytest.raises(SyncFailedError) as exc_info:
            run_async(adapter.apply([add("agent:intake")], "42"))

        assert exc_info.value.external_ref == "42"
        assert len(requests) == 3


tag_names = st.sampled_from(
    ["agent:queued", "agent:intake", "agent:spec-created", "bug"]
)
effects = st.builds(ExternalEffect, op=st.sampled_from(list(EffectOp)), tag=tag_names)


def tags_after(initial, batches):
    tag_system = InMemoryTagSystem()
    tag_system.tags["42"] = set(initial)
    adapter = ExternalSyncAdapter(tag_system, max_retries=0, base_delay=0, max_delay=0)

    async def scenario():
        for batch in batches:
            await adapter.apply(batch, "42")

    run_async(scenario())
    return tag_system.tags.get("42", set())


class TestApplyIdempotence:
    """Re-applying effects leaves the external tags where one pass left them."""

    def test_adding_present_tag_changes_nothing(self):
        assert tags_after({"agent:intake"}, [[add("agent:intake")]]) == {"agent:intake"}

    def test_removing_absent_tag_changes_nothing(self):
        assert tags_after({"bug"}, [[remove("agent:intake")]]) == {"bug"}

    @given(initial=st.sets(tag_names), effect=effects)
    @settings(max_examples=100, deadline=None)
    def test_effect_applied_twice_matches_once(self, initial, effect):
        assert tags_after(initial, [[effect], [effect]]) == tags_after(
            initial, [[effect]]
        )

    @given(initial=st.sets(tag_names), batch=st.lists(effects, max_size=8))
    @settings(max_examples=100, deadline=None)
    def test_effect_list_applied_twice_matches_once(self, initial, batch):
        assert tags_after(initial, [batch, batch]) == tags_after(initial, [batch])
