"""PostgreSQL ledger store.

Built on asyncpg. A compare-and-swap is a conditional UPDATE on the version
column. The snapshot update and the history insert share one transaction,
and history is rebuilt from the transitions table on read.

The schema is created by ensure_schema() when missing. A UNIQUE constraint
on (entity_id, version_after) guarantees that no two history records of an
entity share a version.
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, List, Optional

import asyncpg

from agent_pipeline.errors import (
    AlreadyExistsError,
    NotFoundError,
    PipelineError,
    StorageIOError,
    VersionConflictError,
)
from agent_pipeline.state.models import (
    EntitySummary,
    ErrorInfo,
    TaskProgress,
    TransitionRecord,
    WorkflowEntity,
    WorkflowPhase,
    apply_mutation,
)
from agent_pipeline.state.store import Mutator, validate_entity_id


logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS workflow_entities (
    entity_id      TEXT PRIMARY KEY,
    external_ref   TEXT NOT NULL,
    phase          TEXT NOT NULL,
    phase_detail   TEXT NOT NULL DEFAULT '',
    version        INTEGER NOT NULL CHECK (version >= 0),
    error          JSONB,
    pr_number      INTEGER,
    task_progress  JSONB,
    extra          JSONB,
    created_at     TIMESTAMPTZ NOT NULL,
    updated_at     TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS workflow_entities_phase_idx
    ON workflow_entities (phase);

CREATE TABLE IF NOT EXISTS workflow_transitions (
    id             BIGSERIAL PRIMARY KEY,
    entity_id      TEXT NOT NULL
                   REFERENCES workflow_entities (entity_id),
    from_phase     TEXT NOT NULL,
    to_phase       TEXT NOT NULL,
    detail         TEXT NOT NULL DEFAULT '',
    actor          TEXT NOT NULL,
    timestamp      TIMESTAMPTZ NOT NULL,
    version_after  INTEGER NOT NULL,
    UNIQUE (entity_id, version_after)
);
"""

_ENTITY_COLUMNS = """
    entity_id,
    external_ref,
    phase,
    phase_detail,
    version,
    error,
    pr_number,
    task_progress,
    extra,
    created_at,
    updated_at
"""


def _decode_json(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        return json.loads(value)
    return value


def _encode_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value)


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PostgresLedgerStore:
    """Ledger store backed by two PostgreSQL tables.

    Entity rows carry the version used for compare-and-swap; the row lock
    taken by SELECT ... FOR UPDATE serialises writers of one entity, and
    the version check in the UPDATE rejects writers holding a stale read.

    Example:
        >>> async with PostgresLedgerStore("postgresql://...") as store:
        ...     entity = await store.read("001-my-feature")
    """

    def __init__(self, dsn: str, pool_min_size: int = 2, pool_max_size: int = 10):
        self.dsn = dsn
        self.pool_min_size = pool_min_size
        self.pool_max_size = pool_max_size
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise StorageIOError("Ledger store is not connected; await connect() first")
        return self._pool

    async def connect(self) -> None:
        """Open the pool and create the ledger tables if they are missing.

        Calling connect() on a connected store does nothing.
        """
        if self._pool is not None:
            return

        logger.info(
            "Opening ledger database pool",
            extra={"pool_min_size": self.pool_min_size, "pool_max_size": self.pool_max_size},
        )
        try:
            self._pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.pool_min_size,
                max_size=self.pool_max_size,
            )
        except (OSError, asyncpg.PostgresError) as e:
            logger.error("Ledger database unreachable", extra={"error": str(e)})
            raise StorageIOError(
                f"Cannot open ledger database: {e}", original_error=e
            ) from e
        await self.ensure_schema()

    async def disconnect(self) -> None:
        pool, self._pool = self._pool, None
        if pool is not None:
            await pool.close()

    async def __aenter__(self) -> "PostgresLedgerStore":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()

    async def ensure_schema(self) -> None:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(SCHEMA)
        except (OSError, asyncpg.PostgresError) as e:
            raise StorageIOError(
                f"Failed to create ledger schema: {e}",
                original_error=e,
            ) from e

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[asyncpg.Connection]:
        async with self.pool.acquire() as conn, conn.transaction():
            yield conn

    def _row_to_entity(
        self,
        row: Any,
        transition_rows: List[Any],
    ) -> WorkflowEntity:
        history = [
            TransitionRecord(
                from_phase=WorkflowPhase(tr["from_phase"]),
                to_phase=WorkflowPhase(tr["to_phase"]),
                detail=tr["detail"],
                actor=tr["actor"],
                timestamp=_aware(tr["timestamp"]),
                version_after=tr["version_after"],
            )
            for tr in transition_rows
        ]
        error = _decode_json(row["error"])
        task_progress = _decode_json(row["task_progress"])
        extra = _decode_json(row["extra"]) or {}

        return WorkflowEntity(
            entity_id=row["entity_id"],
            external_ref=row["external_ref"],
            phase=WorkflowPhase(row["phase"]),
            phase_detail=row["phase_detail"],
            version=row["version"],
            history=history,
            error=ErrorInfo.model_validate(error) if error else None,
            pr_number=row["pr_number"],
            task_progress=(
                TaskProgress.model_validate(task_progress)
                if task_progress
                else None
            ),
            created_at=_aware(row["created_at"]),
            updated_at=_aware(row["updated_at"]),
            **extra,
        )

    async def _fetch_entity(
        self,
        conn: asyncpg.Connection,
        entity_id: str,
        for_update: bool = False,
    ) -> WorkflowEntity:
        row = await conn.fetchrow(
            f"SELECT {_ENTITY_COLUMNS} FROM workflow_entities "
            f"WHERE entity_id = $1{' FOR UPDATE' if for_update else ''}",
            entity_id,
        )
        if row is None:
            raise NotFoundError(entity_id)

        transition_rows = await conn.fetch(
            """
            SELECT from_phase, to_phase, detail, actor, timestamp, version_after
            FROM workflow_transitions
            WHERE entity_id = $1
            ORDER BY version_after ASC
            """,
            entity_id,
        )
        return self._row_to_entity(row, list(transition_rows))

    async def create(self, entity_id: str, external_ref: str) -> WorkflowEntity:
        validate_entity_id(entity_id)
        entity = WorkflowEntity.new(entity_id, external_ref)

        try:
            async with self._transaction() as conn:
                await conn.execute(
                    f"""
                    INSERT INTO workflow_entities ({_ENTITY_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                    """,
                    entity.entity_id,
                    entity.external_ref,
                    entity.phase.value,
                    entity.phase_detail,
                    entity.version,
                    None,
                    None,
                    None,
                    None,
                    entity.created_at,
                    entity.updated_at,
                )
        except asyncpg.UniqueViolationError as e:
            raise AlreadyExistsError(entity_id) from e
        except Exception as e:
            logger.error(
                "Failed to create workflow entity",
                extra={"entity_id": entity_id, "error": str(e)},
            )
            raise StorageIOError(
                f"Failed to create workflow entity: {e}",
                entity_id=entity_id,
                original_error=e,
            ) from e

        logger.info(
            "Created workflow entity",
            extra={"entity_id": entity_id, "external_ref": external_ref},
        )
        return entity

    async def read(self, entity_id: str) -> WorkflowEntity:
        try:
            async with self.pool.acquire() as conn:
                return await self._fetch_entity(conn, entity_id)
        except PipelineError:
            raise
        except Exception as e:
            logger.error(
                "Failed to read workflow entity",
                extra={"entity_id": entity_id, "error": str(e)},
            )
            raise StorageIOError(
                f"Failed to read workflow entity: {e}",
                entity_id=entity_id,
                original_error=e,
            ) from e

    async def compare_and_swap(
        self,
        entity_id: str,
        expected_version: int,
        mutator: Mutator,
    ) -> WorkflowEntity:
        try:
            async with self._transaction() as conn:
                current = await self._fetch_entity(conn, entity_id, for_update=True)
                if current.version != expected_version:
                    raise VersionConflictError(
                        entity_id,
                        expected_version,
                        current.version,
                        current_phase=current.phase.value,
                    )

                updated = apply_mutation(current, mutator(current))

                result = await conn.execute(
                    """
                    UPDATE workflow_entities
                    SET
                        phase = $2,
                        phase_detail = $3,
                        version = $4,
                        error = $5,
                        pr_number = $6,
                        task_progress = $7,
                        extra = $8,
                        updated_at = $9
                    WHERE entity_id = $1 AND version = $10
                    """,
                    entity_id,
                    updated.phase.value,
                    updated.phase_detail,
                    updated.version,
                    _encode_json(
                        updated.error.model_dump(mode="json")
                        if updated.error
                        else None
                    ),
                    updated.pr_number,
                    _encode_json(
                        updated.task_progress.model_dump(mode="json")
                        if updated.task_progress
                        else None
                    ),
                    _encode_json(updated.model_extra or None),
                    updated.updated_at,
                    expected_version,
                )

                rows_affected = int(result.split()[-1])
                if rows_affected == 0:
                    raise VersionConflictError(entity_id, expected_version)

                for record in updated.history[len(current.history):]:
                    await conn.execute(
                        """
                        INSERT INTO workflow_transitions (
                            entity_id,
                            from_phase,
                            to_phase,
                            detail,
                            actor,
                            timestamp,
                            version_after
                        ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                        """,
                        entity_id,
                        record.from_phase.value,
                        record.to_phase.value,
                        record.detail,
                        record.actor,
                        record.timestamp,
                        record.version_after,
                    )

        except PipelineError:
            raise
        except Exception as e:
            logger.error(
                "Failed to update workflow entity",
                extra={"entity_id": entity_id, "error": str(e)},
            )
            raise StorageIOError(
                f"Failed to update workflow entity: {e}",
                entity_id=entity_id,
                original_error=e,
            ) from e

        logger.debug(
            "Committed workflow entity",
            extra={
                "entity_id": entity_id,
                "phase": updated.phase.value,
                "version": updated.version,
            },
        )
        return updated

    async def list(
        self, phase: Optional[WorkflowPhase] = None
    ) -> List[EntitySummary]:
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT entity_id, external_ref, phase, phase_detail,
                           version, error IS NOT NULL AS has_error, updated_at
                    FROM workflow_entities
                    WHERE $1::text IS NULL OR phase = $1
                    ORDER BY created_at ASC
                    """,
                    phase.value if phase else None,
                )
        except Exception as e:
            logger.error(
                "Failed to list workflow entities",
                extra={"phase": phase.value if phase else None, "error": str(e)},
            )
            raise StorageIOError(
                f"Failed to list workflow entities: {e}",
                original_error=e,
            ) from e

        return [
            EntitySummary(
                entity_id=row["entity_id"],
                external_ref=row["external_ref"],
                phase=WorkflowPhase(row["phase"]),
                phase_detail=row["phase_detail"],
                version=row["version"],
                has_error=row["has_error"],
                updated_at=_aware(row["updated_at"]),
            )
            for row in rows
        ]

    async def health_check(self) -> bool:
        """True when a pooled connection answers a trivial query."""
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetchval("SELECT 1") == 1
        except (StorageIOError, OSError, asyncpg.PostgresError) as e:
            logger.warning("Ledger database not ready", extra={"error": str(e)})
            return False
