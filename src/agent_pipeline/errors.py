"""Error taxonomy for the workflow ledger.

Every error raised by the ledger, the phase machine, the coordinator or the
sync adapter derives from PipelineError and carries enough context for a
caller to act on it without parsing the message:

- entity_id: The entity the request targeted (when known).
- current_phase: The entity's phase at the time of failure (when known).
- rule: Short machine-readable name of the rule that was violated.

Propagation policy:
- VersionConflictError is recovered by the coordinator's bounded retry; only
  TooManyConflictsError reaches callers.
- IllegalTransitionError, TerminalPhaseError, NotFoundError and
  AlreadyExistsError are caller errors and are never retried.
- SyncFailedError never invalidates an already committed transition.
- StorageIOError is fatal for the current request only.
"""

from typing import Any, Dict, Optional


class PipelineError(Exception):
    """Base class for all workflow ledger errors.

    Attributes:
        message: Human-readable error description.
        entity_id: The entity the failing request targeted.
        current_phase: The entity's phase when the error occurred.
        rule: Machine-readable name of the violated rule.
    """

    rule: str = "pipeline_error"

    def __init__(
        self,
        message: str,
        entity_id: Optional[str] = None,
        current_phase: Optional[str] = None,
        rule: Optional[str] = None,
    ):
        self.message = message
        self.entity_id = entity_id
        self.current_phase = current_phase
        if rule is not None:
            self.rule = rule
        super().__init__(message)

    @property
    def error_type(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the error for CLI and HTTP responses."""
        return {
            "error": self.error_type,
            "message": self.message,
            "entity_id": self.entity_id,
            "current_phase": self.current_phase,
            "rule": self.rule,
        }


class AlreadyExistsError(PipelineError):
    """Raised when creating an entity whose id is already taken."""

    rule = "entity_id_unique"

    def __init__(self, entity_id: str, current_phase: Optional[str] = None):
        super().__init__(
            f"Workflow entity already exists: {entity_id}",
            entity_id=entity_id,
            current_phase=current_phase,
        )


class NotFoundError(PipelineError):
    """Raised when an entity does not exist in the ledger."""

    rule = "entity_exists"

    def __init__(self, entity_id: str):
        super().__init__(
            f"Workflow entity not found: {entity_id}",
            entity_id=entity_id,
        )


class IllegalTransitionError(PipelineError):
    """Raised when the requested phase is not reachable from the current one.

    Attributes:
        from_phase: The entity's current phase.
        to_phase: The requested target phase.
    """

    rule = "declared_edge"

    def __init__(
        self,
        from_phase: str,
        to_phase: str,
        entity_id: Optional[str] = None,
        message: Optional[str] = None,
    ):
        self.from_phase = from_phase
        self.to_phase = to_phase
        prefix = f"Entity {entity_id}: " if entity_id else ""
        super().__init__(
            message
            or f"{prefix}illegal transition from {from_phase} to {to_phase}",
            entity_id=entity_id,
            current_phase=from_phase,
        )


class TerminalPhaseError(IllegalTransitionError):
    """Raised when a transition is requested out of a terminal phase."""

    rule = "terminal_phase"

    def __init__(
        self,
        from_phase: str,
        to_phase: str,
        entity_id: Optional[str] = None,
    ):
        prefix = f"Entity {entity_id}: " if entity_id else ""
        super().__init__(
            from_phase,
            to_phase,
            entity_id=entity_id,
            message=(
                f"{prefix}phase {from_phase} is terminal; "
                f"cannot transition to {to_phase}"
            ),
        )


class VersionConflictError(PipelineError):
    """Raised when a compare-and-swap finds a different stored version.

    Attributes:
        expected_version: The version the writer read.
        actual_version: The version found at write time.
    """

    rule = "compare_and_swap"

    def __init__(
        self,
        entity_id: str,
        expected_version: int,
        actual_version: Optional[int] = None,
        current_phase: Optional[str] = None,
    ):
        self.expected_version = expected_version
        self.actual_version = actual_version
        message = (
            f"Version conflict for entity {entity_id}: "
            f"expected {expected_version}"
        )
        if actual_version is not None:
            message += f", found {actual_version}"
        super().__init__(
            message,
            entity_id=entity_id,
            current_phase=current_phase,
        )


class TooManyConflictsError(PipelineError):
    """Raised when the coordinator exhausts its conflict retries.

    Attributes:
        attempts: Number of compare-and-swap attempts made.
    """

    rule = "bounded_retry"

    def __init__(
        self,
        entity_id: str,
        attempts: int,
        current_phase: Optional[str] = None,
    ):
        self.attempts = attempts
        super().__init__(
            f"Gave up on entity {entity_id} after {attempts} "
            f"conflicting write attempts",
            entity_id=entity_id,
            current_phase=current_phase,
        )


class SyncFailedError(PipelineError):
    """Raised when external tag effects could not be applied.

    The ledger transition that produced the effects stays committed.

    Attributes:
        external_ref: The external object the effects targeted.
        effect: Description of the effect that failed, if any.
        original_error: The underlying exception.
    """

    rule = "external_sync"

    def __init__(
        self,
        message: str,
        external_ref: Optional[str] = None,
        effect: Optional[str] = None,
        entity_id: Optional[str] = None,
        current_phase: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.external_ref = external_ref
        self.effect = effect
        self.original_error = original_error
        super().__init__(
            message,
            entity_id=entity_id,
            current_phase=current_phase,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["external_ref"] = self.external_ref
        data["effect"] = self.effect
        return data


class StorageIOError(PipelineError):
    """Raised when the persistence substrate fails.

    Wraps the underlying error (OS, database or decoding failure) so that
    callers can handle storage failures uniformly.

    Attributes:
        original_error: The underlying exception, if any.
    """

    rule = "storage_io"

    def __init__(
        self,
        message: str,
        entity_id: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.original_error = original_error
        super().__init__(message, entity_id=entity_id)
