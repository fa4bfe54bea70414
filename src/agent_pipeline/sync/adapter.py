"""External sync adapter: reflects phase effects onto an external tag system.

The adapter applies the effect lists computed by the phase machine. It
never reads or writes the ledger and never re-runs phase validation, so a
retry here can only repeat the same idempotent tag edits.

Failure classes:
- TransientTagError: rate limiting, 5xx, timeouts and network errors.
  Retried with exponential backoff and full jitter.
- PermanentTagError: the external object is gone or access is denied.
  Raised immediately as SyncFailedError.
"""

import asyncio
import logging
from typing import List, Optional, Protocol, Sequence, runtime_checkable

import httpx

from agent_pipeline.backoff import Backoff
from agent_pipeline.errors import SyncFailedError
from agent_pipeline.state.machine import PhaseMachine
from agent_pipeline.state.models import EffectOp, ExternalEffect, WorkflowEntity
from agent_pipeline.sync.client import GitHubAPIError, GitHubClient, RateLimitError


logger = logging.getLogger(__name__)


class TagSystemError(Exception):
    """Base class for tag system failures.

    Attributes:
        message: Human-readable error description.
        external_ref: The external object the call targeted.
    """

    def __init__(self, message: str, external_ref: Optional[str] = None):
        self.message = message
        self.external_ref = external_ref
        super().__init__(message)


class TransientTagError(TagSystemError):
    """A tag call failed in a way that may succeed on retry."""


class PermanentTagError(TagSystemError):
    """A tag call failed in a way that retrying cannot fix."""


@runtime_checkable
class TagSystem(Protocol):
    """Idempotent tag operations on an external object.

    Adding a tag that is present, or removing one that is absent, must
    succeed without change.
    """

    async def add_tag(self, external_ref: str, tag: str) -> None:
        ...

    async def remove_tag(self, external_ref: str, tag: str) -> None:
        ...

    async def list_tags(self, external_ref: str) -> List[str]:
        ...


class GitHubLabelTagSystem:
    """TagSystem backed by labels on the issues of one GitHub repository.

    The external reference is the issue number. GitHub failures are
    classified into transient and permanent errors for the adapter.

    Example:
        >>> tags = GitHubLabelTagSystem(client, "acme", "widgets")
        >>> await tags.add_tag("42", "agent:intake")
    """

    PERMANENT_STATUS_CODES = {401, 403, 404, 410, 422}

    def __init__(self, client: GitHubClient, owner: str, repo: str):
        self.client = client
        self.owner = owner
        self.repo = repo

    def _issue_number(self, external_ref: str) -> int:
        try:
            return int(external_ref.lstrip("#"))
        except ValueError:
            raise PermanentTagError(
                f"External reference is not an issue number: {external_ref!r}",
                external_ref=external_ref,
            )

    def _classify(self, error: Exception, external_ref: str) -> TagSystemError:
        if isinstance(error, RateLimitError):
            return TransientTagError(
                f"GitHub rate limit exceeded (retry after {error.retry_after}s)",
                external_ref=external_ref,
            )
        if isinstance(error, GitHubAPIError):
            if error.status_code in self.PERMANENT_STATUS_CODES:
                return PermanentTagError(
                    f"GitHub rejected label change for issue {external_ref}: "
                    f"{error.status_code}",
                    external_ref=external_ref,
                )
            return TransientTagError(error.message, external_ref=external_ref)
        return TransientTagError(
            f"GitHub request failed: {error}", external_ref=external_ref
        )

    async def add_tag(self, external_ref: str, tag: str) -> None:
        number = self._issue_number(external_ref)
        try:
            await self.client.add_label(self.owner, self.repo, number, tag)
        except (GitHubAPIError, httpx.HTTPError) as e:
            raise self._classify(e, external_ref) from e

    async def remove_tag(self, external_ref: str, tag: str) -> None:
        number = self._issue_number(external_ref)
        try:
            await self.client.remove_label(self.owner, self.repo, number, tag)
        except (GitHubAPIError, httpx.HTTPError) as e:
            raise self._classify(e, external_ref) from e

    async def list_tags(self, external_ref: str) -> List[str]:
        number = self._issue_number(external_ref)
        try:
            return await self.client.list_labels(self.owner, self.repo, number)
        except (GitHubAPIError, httpx.HTTPError) as e:
            raise self._classify(e, external_ref) from e


class ExternalSyncAdapter:
    """Applies tag effects with bounded retry.

    Effects are applied in order. Each attempt of each effect is bounded by
    attempt_timeout; a timeout counts as a transient failure.

    Attributes:
        tag_system: The external tag system.
        phase_machine: Used to compute reconciliation effects.
        max_retries: Retries per effect after the first attempt.
        backoff: Delay between retries of one effect.
        attempt_timeout: Seconds allowed for a single tag call.
    """

    def __init__(
        self,
        tag_system: TagSystem,
        phase_machine: Optional[PhaseMachine] = None,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        attempt_timeout: float = 10.0,
    ):
        self.tag_system = tag_system
        self.phase_machine = phase_machine or PhaseMachine()
        self.max_retries = max_retries
        self.backoff = Backoff(base_delay, max_delay)
        self.attempt_timeout = attempt_timeout

    async def _call(self, effect: ExternalEffect, external_ref: str) -> None:
        if effect.op == EffectOp.ADD:
            call = self.tag_system.add_tag(external_ref, effect.tag)
        else:
            call = self.tag_system.remove_tag(external_ref, effect.tag)
        try:
            await asyncio.wait_for(call, timeout=self.attempt_timeout)
        except asyncio.TimeoutError as e:
            raise TransientTagError(
                f"Tag call timed out after {self.attempt_timeout}s",
                external_ref=external_ref,
            ) from e

    async def _apply_one(self, effect: ExternalEffect, external_ref: str) -> None:
        for attempt in range(self.max_retries + 1):
            try:
                await self._call(effect, external_ref)
                return
            except PermanentTagError as e:
                logger.error(
                    "Permanent failure applying tag effect",
                    extra={
                        "external_ref": external_ref,
                        "effect": str(effect),
                        "error": e.message,
                    },
                )
                raise SyncFailedError(
                    e.message,
                    external_ref=external_ref,
                    effect=str(effect),
                    original_error=e,
                ) from e
            except TransientTagError as e:
                if attempt >= self.max_retries:
                    logger.error(
                        "Tag effect failed after all retries",
                        extra={
                            "external_ref": external_ref,
                            "effect": str(effect),
                            "attempts": attempt + 1,
                            "error": e.message,
                        },
                    )
                    raise SyncFailedError(
                        f"Gave up applying {effect} to {external_ref} after "
                        f"{attempt + 1} attempts: {e.message}",
                        external_ref=external_ref,
                        effect=str(effect),
                        original_error=e,
                    ) from e

                delay = self.backoff.delay(attempt)
                logger.warning(
                    "Transient failure applying tag effect, retrying",
                    extra={
                        "external_ref": external_ref,
                        "effect": str(effect),
                        "attempt": attempt + 1,
                        "max_retries": self.max_retries,
                        "delay": delay,
                        "error": e.message,
                    },
                )
                await asyncio.sleep(delay)

    async def apply(
        self,
        effects: Sequence[ExternalEffect],
        external_ref: str,
    ) -> None:
        """Apply effects to an external object in order.

        Raises:
            SyncFailedError: On a permanent failure, or when an effect's
                transient failures outlast the retry budget. Effects after
                the failing one are not attempted.
        """
        for effect in effects:
            await self._apply_one(effect, external_ref)

        logger.info(
            "Applied tag effects",
            extra={
                "external_ref": external_ref,
                "effects": [str(effect) for effect in effects],
            },
        )

    async def reconcile(self, entity: WorkflowEntity) -> List[ExternalEffect]:
        """Bring an entity's external tags in line with its current phase.

        Returns:
            The effects that were applied (empty if already in sync).

        Raises:
            SyncFailedError: If tags cannot be listed or an effect fails.
        """
        try:
            tags = await asyncio.wait_for(
                self.tag_system.list_tags(entity.external_ref),
                timeout=self.attempt_timeout,
            )
        except asyncio.TimeoutError as e:
            raise SyncFailedError(
                f"Listing tags for {entity.external_ref} timed out",
                external_ref=entity.external_ref,
                entity_id=entity.entity_id,
                current_phase=entity.phase.value,
                original_error=e,
            ) from e
        except TagSystemError as e:
            raise SyncFailedError(
                e.message,
                external_ref=entity.external_ref,
                entity_id=entity.entity_id,
                current_phase=entity.phase.value,
                original_error=e,
            ) from e

        effects = self.phase_machine.reconcile_effects(entity.phase, tags)
        if effects:
            await self.apply(effects, entity.external_ref)
        else:
            logger.debug(
                "External tags already match phase",
                extra={
                    "entity_id": entity.entity_id,
                    "phase": entity.phase.value,
                },
            )
        return effects
