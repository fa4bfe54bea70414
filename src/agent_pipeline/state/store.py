"""Ledger store interface and in-memory implementation.

The ledger store owns the per-entity snapshot + history and is the only
component allowed to write it. All writes after creation go through
compare_and_swap, which commits only if the stored version still equals
the version the caller read.

Implementations:
- InMemoryLedgerStore: process-local dict, used for tests and local runs
- JsonFileLedgerStore (file_store.py): one JSON document per entity
- PostgresLedgerStore (repository.py): snapshot and transition tables
"""

import copy
import logging
import re
from typing import Callable, Dict, List, Optional, Protocol, runtime_checkable

from pydantic import ValidationError

from agent_pipeline.errors import (
    AlreadyExistsError,
    NotFoundError,
    StorageIOError,
    VersionConflictError,
)
from agent_pipeline.state.models import (
    EntityMutation,
    EntitySummary,
    WorkflowEntity,
    WorkflowPhase,
    apply_mutation,
)


logger = logging.getLogger(__name__)


Mutator = Callable[[WorkflowEntity], EntityMutation]

ENTITY_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9._-]*$")

REQUIRED_RECORD_FIELDS = ("version", "phase", "history")


def validate_entity_id(entity_id: str) -> str:
    """Check that an entity id is usable as a storage key.

    Raises:
        ValueError: If the id is empty or contains characters outside
            letters, digits, '.', '_' and '-', or starts with '.'.
    """
    if not entity_id or not ENTITY_ID_PATTERN.match(entity_id):
        raise ValueError(
            f"Invalid entity id {entity_id!r}: use letters, digits, '.', '_' "
            f"or '-' and do not start with '.'"
        )
    return entity_id


def load_entity(data: Dict, entity_id: Optional[str] = None) -> WorkflowEntity:
    """Decode a persisted entity record.

    Additive unknown fields are preserved on the returned model. Records
    missing a required field, or holding an undeclared phase, are rejected.

    Raises:
        StorageIOError: If the record is malformed.
    """
    missing = [name for name in REQUIRED_RECORD_FIELDS if name not in data]
    if missing:
        raise StorageIOError(
            f"Persisted record for {entity_id or data.get('entity_id')} is "
            f"missing required field(s): {', '.join(missing)}",
            entity_id=entity_id,
        )
    try:
        return WorkflowEntity.model_validate(data)
    except ValidationError as e:
        raise StorageIOError(
            f"Persisted record for {entity_id or data.get('entity_id')} "
            f"is invalid: {e}",
            entity_id=entity_id,
            original_error=e,
        ) from e


def check_invariants(entity: WorkflowEntity) -> List[str]:
    """List the ledger invariants an entity violates.

    Returns:
        Human-readable descriptions of each violation; empty when the
        entity is consistent.
    """
    problems: List[str] = []
    history = entity.history

    if history:
        last = history[-1]
        if last.to_phase != entity.phase:
            problems.append(
                f"last history record ends in {last.to_phase.value} "
                f"but phase is {entity.phase.value}"
            )
        if last.version_after > entity.version:
            problems.append(
                f"last history record has version {last.version_after} "
                f"beyond entity version {entity.version}"
            )
        if history[0].from_phase != WorkflowPhase.QUEUED:
            problems.append(
                f"history starts from {history[0].from_phase.value}, not queued"
            )
    elif entity.phase != WorkflowPhase.QUEUED:
        problems.append(
            f"phase is {entity.phase.value} but history is empty"
        )

    for previous, record in zip(history, history[1:]):
        if record.version_after <= previous.version_after:
            problems.append(
                f"history versions not increasing: {previous.version_after} "
                f"then {record.version_after}"
            )
        if record.from_phase != previous.to_phase:
            problems.append(
                f"history gap: {previous.to_phase.value} then "
                f"{record.from_phase.value}"
            )

    if len(history) > entity.version:
        problems.append(
            f"{len(history)} history records exceed version {entity.version}"
        )
    return problems


@runtime_checkable
class LedgerStore(Protocol):
    """Protocol defining the ledger persistence contract.

    Single-entity reads are strongly consistent. Listing may be eventually
    consistent. compare_and_swap is all-or-nothing: readers never observe a
    snapshot whose phase or version disagrees with its last history record.
    """

    async def connect(self) -> None:
        """Acquire any resources the store needs."""
        ...

    async def disconnect(self) -> None:
        """Release resources acquired by connect()."""
        ...

    async def create(self, entity_id: str, external_ref: str) -> WorkflowEntity:
        """Create an entity in the queued phase at version 0.

        Raises:
            AlreadyExistsError: If entity_id is already present.
        """
        ...

    async def read(self, entity_id: str) -> WorkflowEntity:
        """Read the current snapshot of an entity.

        Raises:
            NotFoundError: If entity_id is absent.
        """
        ...

    async def compare_and_swap(
        self,
        entity_id: str,
        expected_version: int,
        mutator: Mutator,
    ) -> WorkflowEntity:
        """Apply mutator to the entity if its version is still expected_version.

        Raises:
            NotFoundError: If entity_id is absent.
            VersionConflictError: If the stored version differs.
        """
        ...

    async def list(
        self, phase: Optional[WorkflowPhase] = None
    ) -> List[EntitySummary]:
        """List entity summaries, optionally restricted to one phase."""
        ...


class InMemoryLedgerStore:
    """Process-local implementation of the LedgerStore protocol.

    The compare-and-swap critical section contains no await, so it is
    atomic with respect to other coroutines on the same event loop.
    Snapshots are deep-copied on the way in and out, so callers can never
    mutate stored state.
    """

    def __init__(self) -> None:
        self._entities: Dict[str, WorkflowEntity] = {}

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    async def create(self, entity_id: str, external_ref: str) -> WorkflowEntity:
        validate_entity_id(entity_id)
        existing = self._entities.get(entity_id)
        if existing is not None:
            raise AlreadyExistsError(entity_id, existing.phase.value)

        entity = WorkflowEntity.new(entity_id, external_ref)
        self._entities[entity_id] = entity
        logger.info(
            "Created workflow entity",
            extra={"entity_id": entity_id, "external_ref": external_ref},
        )
        return copy.deepcopy(entity)

    async def read(self, entity_id: str) -> WorkflowEntity:
        entity = self._entities.get(entity_id)
        if entity is None:
            raise NotFoundError(entity_id)
        return copy.deepcopy(entity)

    async def compare_and_swap(
        self,
        entity_id: str,
        expected_version: int,
        mutator: Mutator,
    ) -> WorkflowEntity:
        current = self._entities.get(entity_id)
        if current is None:
            raise NotFoundError(entity_id)
        if current.version != expected_version:
            raise VersionConflictError(
                entity_id,
                expected_version,
                current.version,
                current_phase=current.phase.value,
            )

        updated = apply_mutation(current, mutator(copy.deepcopy(current)))
        self._entities[entity_id] = updated
        return copy.deepcopy(updated)

    async def list(
        self, phase: Optional[WorkflowPhase] = None
    ) -> List[EntitySummary]:
        return [
            entity.summary()
            for entity in sorted(
                self._entities.values(), key=lambda e: e.created_at
            )
            if phase is None or entity.phase == phase
        ]
