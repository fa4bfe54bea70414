"""Command line interface for the workflow ledger.

Every command prints JSON on stdout, including errors, and logs to stderr.
Exit codes:

- 0: success
- 2: entity not found
- 3: illegal transition (including transitions out of a terminal phase)
- 4: version conflicts outlasted the retry budget
- 1: anything else (usage errors, invalid input, storage and sync failures)
"""

import asyncio
import json
import logging
import sys
from typing import Any, Awaitable, Callable, Dict, List, Optional

import click
from pydantic import ValidationError

from agent_pipeline import __version__
from agent_pipeline.config import PipelineSettings, get_settings
from agent_pipeline.coordinator import TransitionCoordinator
from agent_pipeline.errors import (
    IllegalTransitionError,
    NotFoundError,
    PipelineError,
    TooManyConflictsError,
    VersionConflictError,
)
from agent_pipeline.state.machine import PhaseMachine
from agent_pipeline.state.models import WorkflowPhase, is_terminal_phase
from agent_pipeline.state.store import check_invariants
from agent_pipeline.wiring import open_coordinator


logger = logging.getLogger(__name__)


EXIT_OK = 0
EXIT_ERROR = 1
EXIT_NOT_FOUND = 2
EXIT_ILLEGAL_TRANSITION = 3
EXIT_CONFLICT = 4


def exit_code_for(error: Exception) -> int:
    if isinstance(error, NotFoundError):
        return EXIT_NOT_FOUND
    if isinstance(error, IllegalTransitionError):
        return EXIT_ILLEGAL_TRANSITION
    if isinstance(error, (TooManyConflictsError, VersionConflictError)):
        return EXIT_CONFLICT
    return EXIT_ERROR


def _echo(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _fail(payload: Dict[str, Any], code: int) -> None:
    _echo(payload)
    raise SystemExit(code)


def _parse_phase(value: str) -> WorkflowPhase:
    normalized = value.strip().lower().replace("-", "_")
    try:
        return WorkflowPhase(normalized)
    except ValueError:
        _fail(
            {
                "error": "InvalidPhase",
                "message": (
                    f"Unknown phase {value!r}; expected one of "
                    f"{', '.join(p.value for p in WorkflowPhase)}"
                ),
            },
            EXIT_ERROR,
        )


def _run(
    ctx: click.Context,
    operation: Callable[[TransitionCoordinator], Awaitable[Any]],
) -> Any:
    """Run one coordinator operation on a fresh event loop.

    Ledger errors are printed as JSON and mapped to exit codes.
    """
    settings: PipelineSettings = ctx.obj["settings"]

    async def runner() -> Any:
        async with open_coordinator(settings) as coordinator:
            return await operation(coordinator)

    try:
        return asyncio.run(runner())
    except PipelineError as e:
        _fail(e.to_dict(), exit_code_for(e))
    except (ValidationError, ValueError) as e:
        _fail({"error": type(e).__name__, "message": str(e)}, EXIT_ERROR)


class JsonErrorGroup(click.Group):
    """Group that reports usage errors as JSON on stdout.

    Usage errors exit with 1 so that exit code 2 always means the entity
    was not found.
    """

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
        except click.ClickException as e:
            _echo({"error": "UsageError", "message": e.format_message()})
            if standalone_mode:
                raise SystemExit(EXIT_ERROR) from None
            return EXIT_ERROR
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(EXIT_ERROR) from None
            raise
        if standalone_mode:
            raise SystemExit(rv or EXIT_OK)
        return rv


@click.group(cls=JsonErrorGroup)
@click.version_option(version=__version__)
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False),
    default=None,
    help="State directory for the file store (overrides AGENT_PIPELINE_STATE_DIR).",
)
@click.option(
    "--log-level",
    default=None,
    help="Log level (overrides AGENT_PIPELINE_LOG_LEVEL).",
)
@click.pass_context
def main(ctx: click.Context, state_dir: Optional[str], log_level: Optional[str]) -> None:
    """Track agent pipeline entities through the workflow phases.

    \b
    Quick start:
      agent-pipeline init 001-login 42         Create an entity for issue #42
      agent-pipeline transition 001-login intake --actor alice
      agent-pipeline show 001-login            Print the entity and its history
      agent-pipeline list --phase intake       List entities in one phase
    """
    overrides: Dict[str, Any] = {}
    if state_dir is not None:
        overrides["state_dir"] = state_dir
    if log_level is not None:
        overrides["log_level"] = log_level

    try:
        settings = PipelineSettings(**overrides) if overrides else get_settings()
    except ValidationError as e:
        _fail({"error": "ConfigurationError", "message": str(e)}, EXIT_ERROR)

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


# -- entity lifecycle --


@main.command()
@click.argument("entity_id")
@click.argument("external_ref")
@click.pass_context
def init(ctx: click.Context, entity_id: str, external_ref: str) -> None:
    """Create ENTITY_ID in the queued phase, linked to EXTERNAL_REF."""
    entity = _run(ctx, lambda c: c.create(entity_id, external_ref))
    _echo(entity.model_dump(mode="json"))


@main.command()
@click.argument("entity_id")
@click.argument("phase")
@click.option("--actor", default="bot", show_default=True, help="Who requests the move.")
@click.option("--detail", default="", help="Short description recorded in history.")
@click.pass_context
def transition(
    ctx: click.Context,
    entity_id: str,
    phase: str,
    actor: str,
    detail: str,
) -> None:
    """Move ENTITY_ID to PHASE."""
    target = _parse_phase(phase)
    entity = _run(
        ctx,
        lambda c: c.request_transition(entity_id, target, actor=actor, detail=detail),
    )
    _echo(entity.model_dump(mode="json"))


@main.command()
@click.argument("entity_id")
@click.pass_context
def show(ctx: click.Context, entity_id: str) -> None:
    """Print ENTITY_ID with its full history."""
    entity = _run(ctx, lambda c: c.get(entity_id))
    _echo(entity.model_dump(mode="json"))


@main.command(name="list")
@click.option("--phase", default=None, help="Only list entities in this phase.")
@click.pass_context
def list_entities(ctx: click.Context, phase: Optional[str]) -> None:
    """List entity summaries."""
    selected = _parse_phase(phase) if phase is not None else None
    summaries = _run(ctx, lambda c: c.list(selected))
    _echo([summary.model_dump(mode="json") for summary in summaries])


# -- field updates --


@main.group()
def error() -> None:
    """Record or clear an entity's error."""


@error.command(name="set")
@click.argument("entity_id")
@click.argument("message")
@click.option("--step", default="", help="Step that failed.")
@click.option("--retry-count", type=click.IntRange(min=0), default=0)
@click.pass_context
def error_set(
    ctx: click.Context,
    entity_id: str,
    message: str,
    step: str,
    retry_count: int,
) -> None:
    """Record MESSAGE as the error of ENTITY_ID."""
    entity = _run(
        ctx,
        lambda c: c.record_error(entity_id, message, step=step, retry_count=retry_count),
    )
    _echo(entity.model_dump(mode="json"))


@error.command(name="clear")
@click.argument("entity_id")
@click.pass_context
def error_clear(ctx: click.Context, entity_id: str) -> None:
    """Clear the error of ENTITY_ID."""
    entity = _run(ctx, lambda c: c.clear_error(entity_id))
    _echo(entity.model_dump(mode="json"))


@main.command()
@click.argument("entity_id")
@click.argument("text")
@click.pass_context
def detail(ctx: click.Context, entity_id: str, text: str) -> None:
    """Set the phase detail of ENTITY_ID."""
    entity = _run(ctx, lambda c: c.set_phase_detail(entity_id, text))
    _echo(entity.model_dump(mode="json"))


@main.command()
@click.argument("entity_id")
@click.argument("number", type=click.IntRange(min=1))
@click.pass_context
def pr(ctx: click.Context, entity_id: str, number: int) -> None:
    """Record pull request NUMBER for ENTITY_ID."""
    entity = _run(ctx, lambda c: c.set_pr_number(entity_id, number))
    _echo(entity.model_dump(mode="json"))


@main.command()
@click.argument("entity_id")
@click.option("--total", type=click.IntRange(min=0), required=True)
@click.option("--completed", type=click.IntRange(min=0), required=True)
@click.option("--current", default=None, help="Task currently in progress.")
@click.option("--blocked", multiple=True, help="Blocked task (repeatable).")
@click.pass_context
def progress(
    ctx: click.Context,
    entity_id: str,
    total: int,
    completed: int,
    current: Optional[str],
    blocked: List[str],
) -> None:
    """Record implementation task progress for ENTITY_ID."""
    entity = _run(
        ctx,
        lambda c: c.set_task_progress(
            entity_id, total, completed, current=current, blocked=list(blocked)
        ),
    )
    _echo(entity.model_dump(mode="json"))


# -- maintenance --


@main.command()
@click.argument("entity_id")
@click.pass_context
def sync(ctx: click.Context, entity_id: str) -> None:
    """Reconcile the external labels of ENTITY_ID with its phase."""
    effects = _run(ctx, lambda c: c.resync(entity_id))
    _echo({"entity_id": entity_id, "applied": [str(effect) for effect in effects]})


@main.command()
@click.argument("entity_id")
@click.pass_context
def validate(ctx: click.Context, entity_id: str) -> None:
    """Check the stored record of ENTITY_ID for consistency."""
    entity = _run(ctx, lambda c: c.get(entity_id))
    problems = check_invariants(entity)
    _echo({"entity_id": entity_id, "valid": not problems, "problems": problems})
    if problems:
        raise SystemExit(EXIT_ERROR)


@main.command()
@click.pass_context
def phases(ctx: click.Context) -> None:
    """Print the phase graph with each phase's label."""
    settings: PipelineSettings = ctx.obj["settings"]
    machine = PhaseMachine(label_prefix=settings.label_prefix)
    _echo(
        {
            phase.value: {
                "label": machine.phase_label(phase),
                "terminal": is_terminal_phase(phase),
                "targets": [target.value for target in machine.allowed_targets(phase)],
            }
            for phase in WorkflowPhase
        }
    )


@main.command()
@click.option("--host", default=None, help="Bind address (overrides AGENT_PIPELINE_HOST).")
@click.option("--port", type=int, default=None, help="Port (overrides AGENT_PIPELINE_PORT).")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int]) -> None:
    """Serve the HTTP API."""
    import uvicorn

    from agent_pipeline.server import create_app

    settings: PipelineSettings = ctx.obj["settings"]
    uvicorn.run(
        create_app(settings=settings),
        host=host or settings.host,
        port=port or settings.port,
    )


if __name__ == "__main__":
    main()
