"""Dependency wiring from settings.

Builds the ledger store, the optional GitHub-backed sync adapter, the event
emitter and the coordinator that ties them together. Both the CLI and the
HTTP server obtain their coordinator through open_coordinator().
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from agent_pipeline.config import PipelineSettings
from agent_pipeline.coordinator import TransitionCoordinator
from agent_pipeline.events.emitter import EventEmitter, create_event_emitter
from agent_pipeline.state.file_store import JsonFileLedgerStore
from agent_pipeline.state.machine import PhaseMachine
from agent_pipeline.state.store import InMemoryLedgerStore, LedgerStore
from agent_pipeline.sync.adapter import ExternalSyncAdapter, GitHubLabelTagSystem
from agent_pipeline.sync.client import GitHubClient


logger = logging.getLogger(__name__)


def build_store(settings: PipelineSettings) -> LedgerStore:
    """Create the ledger store selected by store_backend.

    Raises:
        ValueError: If the postgres backend is selected without a
            database_url.
    """
    if settings.store_backend == "memory":
        return InMemoryLedgerStore()

    if settings.store_backend == "postgres":
        if not settings.database_url:
            raise ValueError(
                "AGENT_PIPELINE_DATABASE_URL is required for the postgres backend"
            )
        # Imported here so asyncpg is only loaded when it is used
        from agent_pipeline.state.repository import PostgresLedgerStore

        return PostgresLedgerStore(settings.database_url)

    return JsonFileLedgerStore(settings.state_dir)


def build_github_client(settings: PipelineSettings) -> Optional[GitHubClient]:
    """Create a GitHub client when label sync is enabled.

    The client does not retry on its own; the sync adapter owns retries.
    """
    if not settings.sync_enabled:
        return None
    return GitHubClient(
        token=settings.github_token,
        base_url=settings.github_base_url,
        max_retries=0,
        timeout=settings.sync_timeout_seconds,
    )


def build_sync_adapter(
    settings: PipelineSettings,
    github_client: Optional[GitHubClient],
    phase_machine: PhaseMachine,
) -> Optional[ExternalSyncAdapter]:
    if github_client is None:
        return None
    owner, repo = settings.repository_parts
    return ExternalSyncAdapter(
        tag_system=GitHubLabelTagSystem(github_client, owner, repo),
        phase_machine=phase_machine,
        max_retries=settings.sync_max_retries,
        base_delay=settings.sync_base_delay,
        max_delay=settings.sync_max_delay,
        attempt_timeout=settings.sync_timeout_seconds,
    )


def build_event_emitter(settings: PipelineSettings) -> EventEmitter:
    return create_event_emitter(settings.event_sink_types)


def build_coordinator(
    settings: PipelineSettings,
    store: Optional[LedgerStore] = None,
    github_client: Optional[GitHubClient] = None,
) -> TransitionCoordinator:
    """Wire a TransitionCoordinator from settings.

    Args:
        settings: Validated settings.
        store: Store to use instead of building one from settings.
        github_client: GitHub client to use for label sync, if any.

    Returns:
        A coordinator whose store has not been connected yet.
    """
    phase_machine = PhaseMachine(label_prefix=settings.label_prefix)
    return TransitionCoordinator(
        store=store or build_store(settings),
        phase_machine=phase_machine,
        sync_adapter=build_sync_adapter(settings, github_client, phase_machine),
        event_emitter=build_event_emitter(settings),
        max_retries=settings.max_conflict_retries,
        base_delay=settings.conflict_base_delay,
        max_delay=settings.conflict_max_delay,
    )


@asynccontextmanager
async def open_coordinator(
    settings: PipelineSettings,
    store: Optional[LedgerStore] = None,
) -> AsyncIterator[TransitionCoordinator]:
    """Connect a coordinator's resources for the duration of a block.

    On exit, pending sync tasks are drained before the store and the
    GitHub client are closed.
    """
    github_client = build_github_client(settings)
    coordinator = build_coordinator(settings, store, github_client)

    logger.debug(
        "Opening coordinator",
        extra={
            "store_backend": settings.store_backend,
            "sync_enabled": settings.sync_enabled,
        },
    )
    await coordinator.store.connect()
    try:
        yield coordinator
    finally:
        await coordinator.drain()
        await coordinator.store.disconnect()
        if github_client is not None:
            await github_client.close()
        await coordinator.event_emitter.close()
