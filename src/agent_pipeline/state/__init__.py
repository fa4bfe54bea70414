"""Workflow ledger: phase models, phase machine and stores.

This package tracks features through the workflow phases:
- queued → intake → [needs_supplement ↔ intake] → spec_created
- → [planning →] plan_review → plan_approved → tasks_approved
- → implementing ↔ qa → pr → complete

State is persisted by a LedgerStore with compare-and-swap on a version
counter. The asyncpg-backed store is imported lazily by the wiring layer so
that file and in-memory deployments do not need a database driver loaded.
"""

from agent_pipeline.state.file_store import JsonFileLedgerStore
from agent_pipeline.state.machine import (
    DEFAULT_LABEL_PREFIX,
    PhaseMachine,
    TransitionDecision,
)
from agent_pipeline.state.models import (
    TERMINAL_PHASES,
    VALID_TRANSITIONS,
    EffectOp,
    EntityMutation,
    EntitySummary,
    ErrorInfo,
    ExternalEffect,
    TaskProgress,
    TransitionRecord,
    WorkflowEntity,
    WorkflowPhase,
    apply_mutation,
    is_terminal_phase,
    is_valid_transition,
)
from agent_pipeline.state.store import (
    InMemoryLedgerStore,
    LedgerStore,
    Mutator,
    check_invariants,
    load_entity,
    validate_entity_id,
)

__all__ = [
    # Models
    "EffectOp",
    "EntityMutation",
    "EntitySummary",
    "ErrorInfo",
    "ExternalEffect",
    "TaskProgress",
    "TERMINAL_PHASES",
    "TransitionRecord",
    "VALID_TRANSITIONS",
    "WorkflowEntity",
    "WorkflowPhase",
    "apply_mutation",
    "is_terminal_phase",
    "is_valid_transition",
    # Phase machine
    "DEFAULT_LABEL_PREFIX",
    "PhaseMachine",
    "TransitionDecision",
    # Stores
    "InMemoryLedgerStore",
    "JsonFileLedgerStore",
    "LedgerStore",
    "Mutator",
    "check_invariants",
    "load_entity",
    "validate_entity_id",
]
