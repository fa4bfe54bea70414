"""JSON file ledger store.

Each entity lives in its own document at
``<state_dir>/<entity_id>/workflow-state.json`` holding the full snapshot
and history. Writes go to a temporary file in the same directory and are
renamed into place with ``os.replace``, so readers see either the previous
document or the new one, never a partial write. Compare-and-swap holds an
exclusive ``fcntl`` lock on a sidecar ``.lock`` file so that writers in
separate processes are serialized per entity.
"""

import fcntl
import json
import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Union

from agent_pipeline.errors import (
    AlreadyExistsError,
    NotFoundError,
    PipelineError,
    StorageIOError,
    VersionConflictError,
)
from agent_pipeline.state.models import (
    EntitySummary,
    WorkflowEntity,
    WorkflowPhase,
    apply_mutation,
)
from agent_pipeline.state.store import Mutator, load_entity, validate_entity_id


logger = logging.getLogger(__name__)


STATE_FILE_NAME = "workflow-state.json"
LOCK_SUFFIX = ".lock"


class JsonFileLedgerStore:
    """File-backed implementation of the LedgerStore protocol.

    Attributes:
        state_dir: Root directory holding one subdirectory per entity.

    Example:
        >>> store = JsonFileLedgerStore(".agent/state")
        >>> entity = await store.create("001-my-feature", "42")
        >>> entity.version
        0
    """

    def __init__(self, state_dir: Union[str, Path]):
        self.state_dir = Path(state_dir)

    async def connect(self) -> None:
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageIOError(
                f"Cannot create state directory {self.state_dir}: {e}",
                original_error=e,
            ) from e

    async def disconnect(self) -> None:
        pass

    def state_file(self, entity_id: str) -> Path:
        return self.state_dir / validate_entity_id(entity_id) / STATE_FILE_NAME

    @contextmanager
    def _locked(self, path: Path) -> Iterator[None]:
        """Hold an exclusive lock on the sidecar lock file of path."""
        lock_path = path.with_name(path.name + LOCK_SUFFIX)
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        with lock_path.open("a+", encoding="utf-8") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _write(self, path: Path, entity: WorkflowEntity) -> None:
        content = json.dumps(entity.model_dump(mode="json"), indent=2) + "\n"
        fd, tmp_path = tempfile.mkstemp(
            dir=str(path.parent),
            prefix=f".{path.name}.",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _load(self, path: Path, entity_id: str) -> WorkflowEntity:
        try:
            with path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError as e:
            raise NotFoundError(entity_id) from e
        except json.JSONDecodeError as e:
            raise StorageIOError(
                f"State file for {entity_id} is not valid JSON: {e}",
                entity_id=entity_id,
                original_error=e,
            ) from e
        except OSError as e:
            raise StorageIOError(
                f"Cannot read state file for {entity_id}: {e}",
                entity_id=entity_id,
                original_error=e,
            ) from e
        if not isinstance(data, dict):
            raise StorageIOError(
                f"State file for {entity_id} does not hold a JSON object",
                entity_id=entity_id,
            )
        return load_entity(data, entity_id)

    async def create(self, entity_id: str, external_ref: str) -> WorkflowEntity:
        path = self.state_file(entity_id)
        try:
            with self._locked(path):
                if path.exists():
                    existing = self._load(path, entity_id)
                    raise AlreadyExistsError(entity_id, existing.phase.value)
                entity = WorkflowEntity.new(entity_id, external_ref)
                self._write(path, entity)
        except PipelineError:
            raise
        except OSError as e:
            logger.error(
                "Failed to create state file",
                extra={"entity_id": entity_id, "error": str(e)},
            )
            raise StorageIOError(
                f"Failed to create state for {entity_id}: {e}",
                entity_id=entity_id,
                original_error=e,
            ) from e

        logger.info(
            "Created workflow entity",
            extra={
                "entity_id": entity_id,
                "external_ref": external_ref,
                "path": str(path),
            },
        )
        return entity

    async def read(self, entity_id: str) -> WorkflowEntity:
        try:
            path = self.state_file(entity_id)
        except ValueError as e:
            raise NotFoundError(entity_id) from e
        return self._load(path, entity_id)

    async def compare_and_swap(
        self,
        entity_id: str,
        expected_version: int,
        mutator: Mutator,
    ) -> WorkflowEntity:
        try:
            path = self.state_file(entity_id)
        except ValueError as e:
            raise NotFoundError(entity_id) from e
        if not path.exists():
            raise NotFoundError(entity_id)

        try:
            with self._locked(path):
                current = self._load(path, entity_id)
                if current.version != expected_version:
                    raise VersionConflictError(
                        entity_id,
                        expected_version,
                        current.version,
                        current_phase=current.phase.value,
                    )
                updated = apply_mutation(current, mutator(current))
                self._write(path, updated)
        except PipelineError:
            raise
        except OSError as e:
            logger.error(
                "Failed to update state file",
                extra={"entity_id": entity_id, "error": str(e)},
            )
            raise StorageIOError(
                f"Failed to update state for {entity_id}: {e}",
                entity_id=entity_id,
                original_error=e,
            ) from e

        logger.debug(
            "Committed state file",
            extra={
                "entity_id": entity_id,
                "version": updated.version,
                "phase": updated.phase.value,
            },
        )
        return updated

    async def list(
        self, phase: Optional[WorkflowPhase] = None
    ) -> List[EntitySummary]:
        if not self.state_dir.is_dir():
            return []

        entities = [
            self._load(path, path.parent.name)
            for path in self.state_dir.glob(f"*/{STATE_FILE_NAME}")
        ]
        entities.sort(key=lambda e: (e.created_at, e.entity_id))
        return [
            entity.summary()
            for entity in entities
            if phase is None or entity.phase == phase
        ]
