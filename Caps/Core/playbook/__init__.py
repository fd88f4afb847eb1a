"""Playbook execution package.

This package provides the runtime pieces of the engine:
- Data models (ExecutionResult, RunState, LedgerEntry, StepEvent, ...)
- Step executor and capability runner interface
- Validation engine
- Run ledger and its backing stores
- Orchestrator (per-run state machine)
- Playbook catalog

Usage:
    from Caps.Core.playbook import (
        # Models
        ExecutionResult,
        RunStatus,
        StepOutcome,

        # Errors
        ActionTimeout,
        ActionFault,
        ValidationFailed,
        LedgerUnavailable,
        PrerequisiteUnmet,
        InvalidTransition,
    )
"""

# Models
from Caps.Core.playbook.models import (
    CANCELLED_EXIT_CODE,
    FAULT_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    ExecutionResult,
    InvalidTransition,
    LedgerEntry,
    LedgerEntryType,
    RunState,
    RunStatus,
    StepEvent,
    StepOutcome,
    ValidationOutcome,
    combine_results,
)

# Runners and executor
from Caps.Core.playbook.runners.base import (
    ActionFault,
    ActionTimeout,
    CapabilityRunner,
    FunctionRunner,
    RunnerRegistry,
)
from Caps.Core.playbook.executor import (
    execute_action,
    execute_step_actions,
    substitute_variables,
)

# Validation
from Caps.Core.playbook.validation import (
    ValidationFailed,
    evaluate_attempt,
    require_valid,
    validate,
)

# Ledger
from Caps.Core.playbook.ledger import (
    DuplicateAttempt,
    JsonlLedgerStore,
    LedgerStore,
    LedgerUnavailable,
    MemoryLedgerStore,
    PostgresLedgerStore,
    RunLedger,
    replay_run_state,
)

# Orchestration
from Caps.Core.playbook.orchestrator import (
    PrerequisiteUnmet,
    RunOrchestrator,
    ensure_prerequisites,
    next_runnable_step,
)
from Caps.Core.playbook.catalog import PlaybookCatalog

__all__ = [
    # Models
    "CANCELLED_EXIT_CODE",
    "FAULT_EXIT_CODE",
    "TIMEOUT_EXIT_CODE",
    "ExecutionResult",
    "InvalidTransition",
    "LedgerEntry",
    "LedgerEntryType",
    "RunState",
    "RunStatus",
    "StepEvent",
    "StepOutcome",
    "ValidationOutcome",
    "combine_results",
    # Runners and executor
    "ActionFault",
    "ActionTimeout",
    "CapabilityRunner",
    "FunctionRunner",
    "RunnerRegistry",
    "execute_action",
    "execute_step_actions",
    "substitute_variables",
    # Validation
    "ValidationFailed",
    "evaluate_attempt",
    "require_valid",
    "validate",
    # Ledger
    "DuplicateAttempt",
    "JsonlLedgerStore",
    "LedgerStore",
    "LedgerUnavailable",
    "MemoryLedgerStore",
    "PostgresLedgerStore",
    "RunLedger",
    "replay_run_state",
    # Orchestration
    "PrerequisiteUnmet",
    "RunOrchestrator",
    "ensure_prerequisites",
    "next_runnable_step",
    "PlaybookCatalog",
]
