"""Transition coordinator: the only writer of workflow entities.

Every mutation follows the same loop: read the entity and its version,
decide the change (validating the phase edge for transitions), then
compare-and-swap with the version that was read. A lost race is retried
after a full-jitter backoff with a fresh read and a fresh validation, at
most max_retries times.

External tag effects of a committed transition are handed to the sync
adapter as a background task. Tasks of one entity run one after another
in commit order. A sync failure is reported through logging
and events; it never rolls back the committed transition. Call drain()
before shutting down the event loop to let pending sync work finish.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from agent_pipeline.backoff import Backoff
from agent_pipeline.errors import (
    SyncFailedError,
    TooManyConflictsError,
    VersionConflictError,
)
from agent_pipeline.events.emitter import EventEmitter, NullEventEmitter
from agent_pipeline.events.models import EventType, WorkflowEvent
from agent_pipeline.state.machine import PhaseMachine
from agent_pipeline.state.models import (
    EffectOp,
    EntityMutation,
    EntitySummary,
    ErrorInfo,
    ExternalEffect,
    TaskProgress,
    WorkflowEntity,
    WorkflowPhase,
)
from agent_pipeline.state.store import LedgerStore
from agent_pipeline.sync.adapter import ExternalSyncAdapter


logger = logging.getLogger(__name__)


Planner = Callable[[WorkflowEntity], EntityMutation]


class TransitionCoordinator:
    """Drives validated, conflict-safe mutations of workflow entities.

    Accepts all dependencies via constructor injection.

    Attributes:
        store: Ledger store holding entity snapshots and history.
        phase_machine: Validates edges and computes their effects.
        sync_adapter: Applies effects externally; None disables sync.
        event_emitter: Receives workflow events.
        max_retries: Conflict retries after the first attempt.
        backoff: Delay between conflict retries, built from base_delay and
            max_delay.

    Example:
        >>> coordinator = TransitionCoordinator(InMemoryLedgerStore())
        >>> await coordinator.create("001-login", "42")
        >>> entity = await coordinator.request_transition(
        ...     "001-login", WorkflowPhase.INTAKE, actor="alice"
        ... )
        >>> entity.version
        1
    """

    def __init__(
        self,
        store: LedgerStore,
        phase_machine: Optional[PhaseMachine] = None,
        sync_adapter: Optional[ExternalSyncAdapter] = None,
        event_emitter: Optional[EventEmitter] = None,
        max_retries: int = 5,
        base_delay: float = 0.05,
        max_delay: float = 2.0,
    ):
        self.store = store
        self.phase_machine = phase_machine or PhaseMachine()
        self.sync_adapter = sync_adapter
        self.event_emitter = event_emitter or NullEventEmitter()
        self.max_retries = max_retries
        self.backoff = Backoff(base_delay, max_delay)
        self._sync_tasks: Set[asyncio.Task] = set()
        # Newest sync task per entity; each new task waits on its predecessor
        self._sync_tails: Dict[str, asyncio.Task] = {}

    async def _safe_emit(
        self,
        event_type: EventType,
        entity_id: str,
        external_ref: Optional[str] = None,
        **details: Any,
    ) -> None:
        """Emit an event without letting emitter failures reach the caller."""
        event = WorkflowEvent(
            event_type=event_type,
            entity_id=entity_id,
            external_ref=external_ref,
            details=details,
        )
        try:
            await self.event_emitter.emit(event)
        except Exception:
            logger.exception(
                "Failed to emit workflow event",
                extra={
                    "event_type": event_type.value,
                    "entity_id": entity_id,
                },
            )

    async def _commit(
        self,
        entity_id: str,
        plan: Planner,
    ) -> Tuple[WorkflowEntity, WorkflowEntity]:
        """Run the read, plan, compare-and-swap loop.

        The planner sees a fresh snapshot on every attempt and may raise to
        reject the change; such errors are never retried.

        Returns:
            The snapshot the committed change was planned against and the
            resulting snapshot.

        Raises:
            TooManyConflictsError: If every attempt lost a race.
        """
        current_phase: Optional[str] = None

        for attempt in range(self.max_retries + 1):
            current = await self.store.read(entity_id)
            current_phase = current.phase.value
            mutation = plan(current)

            try:
                updated = await self.store.compare_and_swap(
                    entity_id,
                    current.version,
                    lambda _entity: mutation,
                )
                return current, updated
            except VersionConflictError as e:
                await self._safe_emit(
                    EventType.VERSION_CONFLICT,
                    entity_id,
                    current.external_ref,
                    expected_version=e.expected_version,
                    actual_version=e.actual_version,
                    attempt=attempt + 1,
                )
                if attempt < self.max_retries:
                    delay = self.backoff.delay(attempt)
                    logger.info(
                        "Version conflict, retrying",
                        extra={
                            "entity_id": entity_id,
                            "expected_version": e.expected_version,
                            "actual_version": e.actual_version,
                            "attempt": attempt + 1,
                            "max_retries": self.max_retries,
                            "delay": delay,
                        },
                    )
                    await asyncio.sleep(delay)

        logger.error(
            "Giving up after repeated version conflicts",
            extra={
                "entity_id": entity_id,
                "attempts": self.max_retries + 1,
            },
        )
        raise TooManyConflictsError(
            entity_id,
            attempts=self.max_retries + 1,
            current_phase=current_phase,
        )

    async def create(self, entity_id: str, external_ref: str) -> WorkflowEntity:
        """Create an entity in the queued phase.

        Raises:
            AlreadyExistsError: If the entity id is taken.
            ValueError: If the entity id is not a valid storage key.
        """
        entity = await self.store.create(entity_id, external_ref)
        self._schedule_sync(
            entity,
            [
                ExternalEffect(
                    op=EffectOp.ADD,
                    tag=self.phase_machine.phase_label(entity.phase),
                )
            ],
        )
        await self._safe_emit(
            EventType.ENTITY_CREATED,
            entity.entity_id,
            entity.external_ref,
            phase=entity.phase.value,
        )
        return entity

    async def get(self, entity_id: str) -> WorkflowEntity:
        return await self.store.read(entity_id)

    async def list(
        self, phase: Optional[WorkflowPhase] = None
    ) -> List[EntitySummary]:
        return await self.store.list(phase)

    async def request_transition(
        self,
        entity_id: str,
        target_phase: WorkflowPhase,
        actor: str = "bot",
        detail: str = "",
    ) -> WorkflowEntity:
        """Move an entity to a new phase.

        Args:
            entity_id: The entity to move.
            target_phase: The requested phase.
            actor: Who requested the transition.
            detail: Short description recorded in history and used as the
                    new phase detail.

        Returns:
            The committed snapshot.

        Raises:
            NotFoundError: If the entity does not exist.
            IllegalTransitionError: If the edge is not declared for the
                entity's phase at the time of the final attempt.
            TerminalPhaseError: If the entity is in a terminal phase.
            TooManyConflictsError: If conflicts outlast the retry budget.
        """

        def plan(current: WorkflowEntity) -> EntityMutation:
            self.phase_machine.validate(current.phase, target_phase, entity_id)
            mutation = EntityMutation(
                phase=target_phase,
                detail=detail,
                actor=actor,
            )
            if target_phase == WorkflowPhase.FAILED and current.error is None:
                mutation.error = ErrorInfo(
                    message=detail or f"Failed during {current.phase.value}",
                    step=current.phase.value,
                )
            return mutation

        previous, updated = await self._commit(entity_id, plan)
        effects = self.phase_machine.effects_for(previous.phase, updated.phase)
        # Scheduled before any await so sync order follows commit order
        self._schedule_sync(updated, effects)

        logger.info(
            "Committed phase transition",
            extra={
                "entity_id": entity_id,
                "from_phase": previous.phase.value,
                "to_phase": updated.phase.value,
                "version": updated.version,
                "actor": actor,
            },
        )
        await self._safe_emit(
            EventType.PHASE_TRANSITION,
            entity_id,
            updated.external_ref,
            from_phase=previous.phase.value,
            to_phase=updated.phase.value,
            version=updated.version,
            actor=actor,
        )
        return updated

    async def _update(
        self,
        entity_id: str,
        mutation: EntityMutation,
        fields: Sequence[str],
    ) -> WorkflowEntity:
        _previous, updated = await self._commit(entity_id, lambda _e: mutation)
        await self._safe_emit(
            EventType.ENTITY_UPDATED,
            entity_id,
            updated.external_ref,
            fields=list(fields),
            version=updated.version,
        )
        return updated

    async def record_error(
        self,
        entity_id: str,
        message: str,
        step: str = "",
        retry_count: int = 0,
    ) -> WorkflowEntity:
        """Record an error against an entity without changing its phase."""
        error = ErrorInfo(message=message, step=step, retry_count=retry_count)
        return await self._update(
            entity_id, EntityMutation(error=error), ["error"]
        )

    async def clear_error(self, entity_id: str) -> WorkflowEntity:
        return await self._update(
            entity_id, EntityMutation(clear_error=True), ["error"]
        )

    async def set_phase_detail(self, entity_id: str, detail: str) -> WorkflowEntity:
        return await self._update(
            entity_id, EntityMutation(phase_detail=detail), ["phase_detail"]
        )

    async def set_pr_number(self, entity_id: str, pr_number: int) -> WorkflowEntity:
        return await self._update(
            entity_id, EntityMutation(pr_number=pr_number), ["pr_number"]
        )

    async def set_task_progress(
        self,
        entity_id: str,
        total: int,
        completed: int,
        current: Optional[str] = None,
        blocked: Optional[List[str]] = None,
    ) -> WorkflowEntity:
        progress = TaskProgress(
            total=total,
            completed=completed,
            current=current,
            blocked=blocked or [],
        )
        return await self._update(
            entity_id,
            EntityMutation(task_progress=progress),
            ["task_progress"],
        )

    async def resync(self, entity_id: str) -> List[ExternalEffect]:
        """Reconcile an entity's external tags with its current phase.

        Runs in the foreground so the caller sees the outcome, after any
        background sync already scheduled for the entity has finished.

        Returns:
            The effects that were applied.

        Raises:
            NotFoundError: If the entity does not exist.
            SyncFailedError: If reconciliation fails.
        """
        await self._wait_for_sync(entity_id)
        entity = await self.store.read(entity_id)
        if self.sync_adapter is None:
            logger.warning(
                "External sync is not configured, nothing to reconcile",
                extra={"entity_id": entity_id},
            )
            return []

        try:
            effects = await self.sync_adapter.reconcile(entity)
        except SyncFailedError as e:
            e.entity_id = entity_id
            e.current_phase = entity.phase.value
            await self._safe_emit(
                EventType.SYNC_FAILED,
                entity_id,
                entity.external_ref,
                effects=[e.effect] if e.effect else [],
                error_message=e.message,
            )
            raise

        await self._safe_emit(
            EventType.SYNC_APPLIED,
            entity_id,
            entity.external_ref,
            effects=[str(effect) for effect in effects],
        )
        return effects

    def _schedule_sync(
        self,
        entity: WorkflowEntity,
        effects: List[ExternalEffect],
    ) -> None:
        if self.sync_adapter is None or not effects:
            return
        entity_id = entity.entity_id
        task = asyncio.create_task(
            self._run_sync(
                entity_id,
                entity.external_ref,
                effects,
                self._sync_tails.get(entity_id),
            ),
            name=f"sync-{entity_id}-v{entity.version}",
        )
        self._sync_tasks.add(task)
        self._sync_tails[entity_id] = task
        task.add_done_callback(self._sync_tasks.discard)
        task.add_done_callback(lambda done: self._forget_tail(entity_id, done))

    def _forget_tail(self, entity_id: str, task: asyncio.Task) -> None:
        if self._sync_tails.get(entity_id) is task:
            del self._sync_tails[entity_id]

    async def _wait_for_sync(self, entity_id: str) -> None:
        tail = self._sync_tails.get(entity_id)
        if tail is not None:
            await asyncio.wait([tail])

    async def _run_sync(
        self,
        entity_id: str,
        external_ref: str,
        effects: List[ExternalEffect],
        predecessor: Optional[asyncio.Task] = None,
    ) -> None:
        if predecessor is not None:
            # Outcome is reported by the predecessor itself
            await asyncio.wait([predecessor])

        descriptions = [str(effect) for effect in effects]
        try:
            await self.sync_adapter.apply(effects, external_ref)
        except SyncFailedError as e:
            logger.error(
                "External sync failed; ledger transition stays committed",
                extra={
                    "entity_id": entity_id,
                    "external_ref": external_ref,
                    "effects": descriptions,
                    "failed_effect": e.effect,
                    "error": e.message,
                },
            )
            await self._safe_emit(
                EventType.SYNC_FAILED,
                entity_id,
                external_ref,
                effects=descriptions,
                error_message=e.message,
            )
            return

        await self._safe_emit(
            EventType.SYNC_APPLIED,
            entity_id,
            external_ref,
            effects=descriptions,
        )

    @property
    def pending_syncs(self) -> int:
        return len(self._sync_tasks)

    async def drain(self) -> None:
        """Wait for all scheduled sync tasks to finish."""
        while self._sync_tasks:
            tasks = list(self._sync_tasks)
            results = await asyncio.gather(*tasks, return_exceptions=True)
            self._sync_tasks.difference_update(tasks)
            for task, result in zip(tasks, results):
                if isinstance(result, BaseException) and not isinstance(
                    result, asyncio.CancelledError
                ):
                    logger.error(
                        "Sync task raised an unexpected error",
                        exc_info=result,
                        extra={"task": task.get_name()},
                    )
