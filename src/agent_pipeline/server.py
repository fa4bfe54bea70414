"""FastAPI application exposing the workflow ledger over HTTP.

Endpoints:
- POST /entities: create an entity
- GET /entities: list entity summaries, optionally filtered by phase
- GET /entities/{entity_id}: read an entity with its history
- POST /entities/{entity_id}/transitions: request a phase transition
- POST /entities/{entity_id}/sync: reconcile external labels
- GET /health, GET /ready: liveness and readiness probes
- GET /metrics: Prometheus metrics

Ledger errors are returned as JSON bodies built by PipelineError.to_dict().
"""

import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional, Type

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from agent_pipeline import __version__
from agent_pipeline.config import PipelineSettings, get_settings
from agent_pipeline.coordinator import TransitionCoordinator
from agent_pipeline.errors import (
    AlreadyExistsError,
    IllegalTransitionError,
    NotFoundError,
    PipelineError,
    StorageIOError,
    SyncFailedError,
    TooManyConflictsError,
    VersionConflictError,
)
from agent_pipeline.events.metrics import default_metrics, generate_metrics_output
from agent_pipeline.state.models import WorkflowPhase
from agent_pipeline.state.store import LedgerStore
from agent_pipeline.wiring import open_coordinator


logger = logging.getLogger(__name__)


ERROR_STATUS_CODES: Dict[Type[PipelineError], int] = {
    NotFoundError: 404,
    AlreadyExistsError: 409,
    IllegalTransitionError: 409,
    VersionConflictError: 409,
    TooManyConflictsError: 503,
    SyncFailedError: 502,
    StorageIOError: 500,
}


def status_code_for(error: PipelineError) -> int:
    for error_type in type(error).__mro__:
        if error_type in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[error_type]
    return 500


class CreateEntityRequest(BaseModel):
    entity_id: str = Field(..., min_length=1)
    external_ref: str = Field(..., min_length=1)


class TransitionRequest(BaseModel):
    phase: WorkflowPhase
    actor: str = "bot"
    detail: str = ""


def _redact_secret(value: Optional[str], visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters."""
    if not value:
        return "<unset>"
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(settings: PipelineSettings) -> None:
    """Log configuration values with secrets redacted."""
    logger.info("Ledger configuration:")
    logger.info(f"  Store Backend: {settings.store_backend}")
    logger.info(f"  State Dir: {settings.state_dir}")
    logger.info(f"  Database URL: {_redact_secret(settings.database_url)}")
    logger.info(f"  GitHub Base URL: {settings.github_base_url}")
    logger.info(f"  GitHub Token: {_redact_secret(settings.github_token)}")
    logger.info(f"  GitHub Repository: {settings.github_repository}")
    logger.info(f"  Label Sync Enabled: {settings.sync_enabled}")
    logger.info(f"  Label Prefix: {settings.label_prefix}")
    logger.info(f"  Max Conflict Retries: {settings.max_conflict_retries}")
    logger.info(f"  Sync Max Retries: {settings.sync_max_retries}")
    logger.info(f"  Event Sinks: {settings.event_sinks}")
    logger.info(f"  Host: {settings.host}")
    logger.info(f"  Port: {settings.port}")


def create_app(
    settings: Optional[PipelineSettings] = None,
    coordinator: Optional[TransitionCoordinator] = None,
    store: Optional[LedgerStore] = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Settings used to wire a coordinator; read from the
                  environment when omitted.
        coordinator: Ready-made coordinator. Its store must already be
                     connected; it is drained but not closed on shutdown.
        store: Store to wire into a coordinator built from settings.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Workflow ledger API starting up...")

        if coordinator is not None:
            app.state.coordinator = coordinator
            yield
            await coordinator.drain()
        else:
            cfg = settings or get_settings()
            _log_configuration(cfg)
            async with open_coordinator(cfg, store) as wired:
                app.state.coordinator = wired
                logger.info("Workflow ledger API started successfully")
                yield

        logger.info("Workflow ledger API shutdown complete")

    app = FastAPI(
        title="Agent Pipeline Ledger",
        description="Versioned workflow state for agent pipeline issues",
        version=__version__,
        lifespan=lifespan,
    )

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError):
        return JSONResponse(status_code=status_code_for(exc), content=exc.to_dict())

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(
            status_code=422,
            content={"error": type(exc).__name__, "message": str(exc)},
        )

    def get_coordinator(request: Request) -> TransitionCoordinator:
        return request.app.state.coordinator

    @app.post("/entities", status_code=201)
    async def create_entity(body: CreateEntityRequest, request: Request):
        entity = await get_coordinator(request).create(
            body.entity_id, body.external_ref
        )
        return entity.model_dump(mode="json")

    @app.get("/entities")
    async def list_entities(request: Request, phase: Optional[WorkflowPhase] = None):
        summaries = await get_coordinator(request).list(phase)
        return [summary.model_dump(mode="json") for summary in summaries]

    @app.get("/entities/{entity_id}")
    async def get_entity(entity_id: str, request: Request):
        entity = await get_coordinator(request).get(entity_id)
        return entity.model_dump(mode="json")

    @app.post("/entities/{entity_id}/transitions")
    async def request_transition(
        entity_id: str,
        body: TransitionRequest,
        request: Request,
    ):
        entity = await get_coordinator(request).request_transition(
            entity_id,
            body.phase,
            actor=body.actor,
            detail=body.detail,
        )
        return entity.model_dump(mode="json")

    @app.post("/entities/{entity_id}/sync")
    async def sync_entity(entity_id: str, request: Request):
        effects = await get_coordinator(request).resync(entity_id)
        return {"entity_id": entity_id, "applied": [str(e) for e in effects]}

    @app.get("/health")
    async def health():
        """Liveness probe endpoint."""
        return {"status": "healthy"}

    @app.get("/ready")
    async def ready(request: Request):
        """Readiness probe endpoint.

        Reports not_ready with 503 when the store's health check fails.
        Stores without a health check are considered healthy once connected.
        """
        store_health = getattr(
            get_coordinator(request).store, "health_check", None
        )
        healthy = True if store_health is None else await store_health()
        store_status = "healthy" if healthy else "unhealthy"
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "ready" if healthy else "not_ready",
                "dependencies": {"store": store_status},
            },
        )

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics(request: Request):
        """Prometheus metrics endpoint. Refreshes the per-phase gauge first."""
        summaries = await get_coordinator(request).list()
        default_metrics().set_phase_counts(s.phase for s in summaries)
        return PlainTextResponse(
            generate_metrics_output(),
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    return app
