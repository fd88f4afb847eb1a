"""Playbook run data models.

This module contains the core data models for playbook runs:
- ExecutionResult: immutable outcome of running one action
- StepOutcome: Enum for the state of a step within a run
- RunStatus: Enum for the state of a run
- ValidationOutcome: pass/fail plus every failure message for an attempt
- LedgerEntry: append-only audit record of a run transition or attempt
- StepEvent: observer-facing view of a ledger entry
- RunState: mutable bookkeeping owned by the orchestrator of one run

Usage:
    from Caps.Core.playbook.models import (
        ExecutionResult,
        RunState,
        StepOutcome,
    )

    result = ExecutionResult(
        exit_code=0,
        stdout="deployment.apps/postgres created",
        stderr="",
        duration=0.42,
        started_at=now(),
    )
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from Caps.Core.utils.datetime_helpers import now as get_now, parse_datetime

if TYPE_CHECKING:
    from Caps.Core.playbook_parser import Action, Playbook


# Reserved exit codes for results the engine synthesizes itself
TIMEOUT_EXIT_CODE = -1
FAULT_EXIT_CODE = -2
CANCELLED_EXIT_CODE = -3

# Characters of stdout/stderr surfaced through status and events
MAX_REPORTED_OUTPUT = 4096

TRUNCATION_MARKER = "\n...[output truncated]"


def truncate_text(text: str, limit: int) -> str:
    """Cut text to ``limit`` characters, appending a marker when cut."""
    if text is None:
        return ""
    if len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER


class StepOutcome(str, Enum):
    """State of a step within one run.

    States:
        PENDING: Not yet started, or waiting on prerequisites / a retry
        RUNNING: An attempt is in flight
        SUCCEEDED: An attempt passed every check
        FAILED: Attempts are exhausted
        SKIPPED: An operator override skipped the step
        ROLLED_BACK: The step's rollback actions were run deliberately
    """

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    ROLLED_BACK = "rolled_back"

    @classmethod
    def is_satisfied(cls, outcome: "StepOutcome") -> bool:
        """Check if the outcome lets dependent steps run."""
        return outcome in (cls.SUCCEEDED, cls.SKIPPED)


class RunStatus(str, Enum):
    """Status of a run.

    States:
        NOT_STARTED: Created but no step has been picked yet
        RUNNING: Steps are being executed
        COMPLETED: Every step succeeded or was skipped
        ABORTED: The run cannot make progress (failure, cancellation,
                 or the ledger became unavailable)
    """

    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"

    @classmethod
    def is_terminal(cls, status: "RunStatus") -> bool:
        """Check if status is a terminal state."""
        return status in (cls.COMPLETED, cls.ABORTED)


class LedgerEntryType(str, Enum):
    """Kinds of records kept in the run ledger."""

    RUN_STARTED = "run_started"
    RUN_RESUMED = "run_resumed"
    ATTEMPT = "attempt"
    STEP_SKIPPED = "step_skipped"
    STEP_ROLLED_BACK = "step_rolled_back"
    RUN_ENDED = "run_ended"


class InvalidTransition(Exception):
    """Raised when a step or run is moved to a state it cannot reach."""


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of running one action (or one step attempt).

    Attributes:
        exit_code: Process-style exit code; -1 timeout, -2 runner fault,
                   -3 cancelled
        stdout: Captured standard output (possibly truncated)
        stderr: Captured standard error (possibly truncated)
        duration: Wall time in seconds
        started_at: When the action started
        details: Capability-specific extras (e.g. http_status)
    """

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    started_at: Optional[datetime] = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def timed_out(self) -> bool:
        return self.exit_code == TIMEOUT_EXIT_CODE

    @property
    def faulted(self) -> bool:
        return self.exit_code == FAULT_EXIT_CODE

    @property
    def cancelled(self) -> bool:
        return self.exit_code == CANCELLED_EXIT_CODE

    @classmethod
    def synthetic(
        cls,
        exit_code: int,
        message: str,
        started_at: Optional[datetime] = None,
        duration: float = 0.0,
        stdout: str = "",
    ) -> "ExecutionResult":
        """Build a result the engine produced instead of a runner."""
        return cls(
            exit_code=exit_code,
            stdout=stdout,
            stderr=message,
            duration=duration,
            started_at=started_at or get_now(),
        )

    def truncated(self, limit: int = MAX_REPORTED_OUTPUT) -> "ExecutionResult":
        """Copy with stdout/stderr cut to ``limit`` characters."""
        return replace(
            self,
            stdout=truncate_text(self.stdout, limit),
            stderr=truncate_text(self.stderr, limit),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "duration": self.duration,
            "started_at": (self.started_at.isoformat() if self.started_at else None),
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutionResult":
        return cls(
            exit_code=int(data.get("exit_code", 0)),
            stdout=data.get("stdout") or "",
            stderr=data.get("stderr") or "",
            duration=float(data.get("duration") or 0.0),
            started_at=parse_datetime(data.get("started_at")),
            details=dict(data.get("details") or {}),
        )


def first_unexpected_index(
    results: list[ExecutionResult], actions: list["Action"]
) -> Optional[int]:
    """Index of the first result whose exit code the action did not expect."""
    for i, (result, action) in enumerate(zip(results, actions)):
        if result.exit_code not in action.expected_exit_codes:
            return i
    return None


def combine_results(
    results: list[ExecutionResult], actions: list["Action"]
) -> ExecutionResult:
    """
    Fold the per-action results of one step attempt into a single result.

    The exit code is that of the first action that missed its expected exit
    codes, else the last action's. Output is concatenated with a header per
    action, durations are summed and the start time is the first action's.
    A step without actions yields an empty, successful result.
    """
    if not results:
        return ExecutionResult(exit_code=0, started_at=get_now())
    if len(results) == 1:
        return results[0]

    deciding = first_unexpected_index(results, actions)
    exit_code = results[deciding if deciding is not None else -1].exit_code

    stdout_parts = []
    stderr_parts = []
    details: dict[str, Any] = {}
    for i, (result, action) in enumerate(zip(results, actions)):
        header = f"[action {i + 1}: {action.capability.value}]"
        if result.stdout:
            stdout_parts.append(f"{header}\n{result.stdout}")
        if result.stderr:
            stderr_parts.append(f"{header}\n{result.stderr}")
        details.update(result.details)

    return ExecutionResult(
        exit_code=exit_code,
        stdout="\n".join(stdout_parts),
        stderr="\n".join(stderr_parts),
        duration=sum(r.duration for r in results),
        started_at=results[0].started_at,
        details=details,
    )


@dataclass(frozen=True)
class ValidationOutcome:
    """Verdict of the validation engine for one attempt."""

    passed: bool
    failures: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {"passed": self.passed, "failures": list(self.failures)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ValidationOutcome":
        return cls(
            passed=bool(data.get("passed")),
            failures=tuple(data.get("failures") or ()),
        )


@dataclass(frozen=True)
class LedgerEntry:
    """Append-only audit record.

    Attributes:
        run_id: Run this entry belongs to
        entry_type: What happened (see LedgerEntryType)
        timestamp: When the entry was created
        step_name: Step concerned, None for run-level entries
        attempt_number: 1-based attempt counter for ATTEMPT entries, else 0
        result: Composite ExecutionResult of the attempt or rollback
        action_results: Per-action results behind ``result``
        validation: Validation verdict for the attempt
        outcome: StepOutcome after an attempt, or RunStatus for RUN_ENDED
        details: Extra data (playbook source and context for RUN_STARTED,
                 reason for skips and aborts, ...)
        sequence: Per-run position, assigned by the ledger on append
    """

    run_id: str
    entry_type: LedgerEntryType
    timestamp: datetime
    step_name: Optional[str] = None
    attempt_number: int = 0
    result: Optional[ExecutionResult] = None
    action_results: tuple[ExecutionResult, ...] = ()
    validation: Optional[ValidationOutcome] = None
    outcome: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    sequence: int = 0

    def with_sequence(self, sequence: int) -> "LedgerEntry":
        return replace(self, sequence=sequence)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "run_id": self.run_id,
            "sequence": self.sequence,
            "entry_type": self.entry_type.value,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "step_name": self.step_name,
            "attempt_number": self.attempt_number,
            "result": self.result.to_dict() if self.result else None,
            "action_results": [r.to_dict() for r in self.action_results],
            "validation": self.validation.to_dict() if self.validation else None,
            "outcome": self.outcome,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LedgerEntry":
        result = data.get("result")
        validation = data.get("validation")
        return cls(
            run_id=str(data["run_id"]),
            sequence=int(data.get("sequence") or 0),
            entry_type=LedgerEntryType(data["entry_type"]),
            timestamp=parse_datetime(data.get("timestamp")) or get_now(),
            step_name=data.get("step_name"),
            attempt_number=int(data.get("attempt_number") or 0),
            result=ExecutionResult.from_dict(result) if result else None,
            action_results=tuple(
                ExecutionResult.from_dict(r) for r in data.get("action_results") or []
            ),
            validation=ValidationOutcome.from_dict(validation) if validation else None,
            outcome=data.get("outcome"),
            details=dict(data.get("details") or {}),
        )


@dataclass(frozen=True)
class StepEvent:
    """A step or run transition as seen by an observer.

    Events are derived from ledger entries, so a stream can be restarted
    from any sequence number and always reports the same history.
    """

    run_id: str
    sequence: int
    event_type: str
    timestamp: datetime
    step_name: Optional[str] = None
    attempt_number: int = 0
    outcome: Optional[str] = None
    message: str = ""
    result: Optional[ExecutionResult] = None
    failures: tuple[str, ...] = ()

    @property
    def is_terminal(self) -> bool:
        return self.event_type == LedgerEntryType.RUN_ENDED.value

    @classmethod
    def from_ledger_entry(cls, entry: LedgerEntry) -> "StepEvent":
        failures = entry.validation.failures if entry.validation else ()
        message = entry.details.get("reason", "") or ""
        if entry.entry_type == LedgerEntryType.ATTEMPT:
            message = (
                f"Step '{entry.step_name}' attempt {entry.attempt_number} "
                f"{entry.outcome}"
            )
        elif entry.entry_type == LedgerEntryType.RUN_STARTED:
            message = (
                f"Run started for playbook '{entry.details.get('playbook_id')}' "
                f"v{entry.details.get('playbook_version')}"
            )
        elif entry.entry_type == LedgerEntryType.RUN_ENDED and not message:
            message = f"Run {entry.outcome}"
        return cls(
            run_id=entry.run_id,
            sequence=entry.sequence,
            event_type=entry.entry_type.value,
            timestamp=entry.timestamp,
            step_name=entry.step_name,
            attempt_number=entry.attempt_number,
            outcome=entry.outcome,
            message=message,
            result=entry.result.truncated() if entry.result else None,
            failures=tuple(failures),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "run_id": self.run_id,
            "sequence": self.sequence,
            "event_type": self.event_type,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "step_name": self.step_name,
            "attempt_number": self.attempt_number,
            "outcome": self.outcome,
            "message": self.message,
            "result": self.result.to_dict() if self.result else None,
            "failures": list(self.failures),
        }


@dataclass
class RunState:
    """Mutable bookkeeping for one run, owned by its orchestrator.

    Attributes:
        run_id: Identifier of the run
        playbook_id: ID of the playbook being executed
        playbook_version: Version of the playbook being executed
        step_names: Step names in declared order
        status: Current run status
        current_step_index: Index of the step picked last (-1 before any)
        outcomes: Step name to StepOutcome
        attempts: Step name to number of recorded attempts
        last_results: Step name to the latest ExecutionResult
        failures: Step name to the failures of the latest attempt
        started_at: When the run started
        ended_at: When the run reached a terminal state
        error: Reason the run aborted, if it did
        context: Variables available to action payloads
    """

    run_id: str
    playbook_id: str
    playbook_version: str
    step_names: list[str] = field(default_factory=list)
    status: RunStatus = RunStatus.NOT_STARTED
    current_step_index: int = -1
    outcomes: dict[str, StepOutcome] = field(default_factory=dict)
    attempts: dict[str, int] = field(default_factory=dict)
    last_results: dict[str, ExecutionResult] = field(default_factory=dict)
    failures: dict[str, list[str]] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    error: Optional[str] = None
    context: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def for_playbook(
        cls,
        run_id: str,
        playbook: "Playbook",
        context: Optional[dict[str, Any]] = None,
    ) -> "RunState":
        """Create a fresh state with every step Pending."""
        names = playbook.step_names
        return cls(
            run_id=run_id,
            playbook_id=playbook.id,
            playbook_version=playbook.version,
            step_names=names,
            outcomes={name: StepOutcome.PENDING for name in names},
            attempts={name: 0 for name in names},
            context=dict(context or {}),
        )

    def outcome(self, step_name: str) -> StepOutcome:
        return self.outcomes.get(step_name, StepOutcome.PENDING)

    def set_outcome(self, step_name: str, outcome: StepOutcome) -> None:
        """
        Move a step to a new outcome.

        Raises:
            InvalidTransition: If the step already succeeded and the new
                outcome is not ROLLED_BACK
        """
        if step_name not in self.outcomes:
            raise InvalidTransition(f"Unknown step '{step_name}'")
        current = self.outcomes[step_name]
        if current == outcome:
            return
        if current == StepOutcome.SUCCEEDED and outcome != StepOutcome.ROLLED_BACK:
            raise InvalidTransition(
                f"Step '{step_name}' already succeeded; only rollback may change it"
            )
        if outcome == StepOutcome.ROLLED_BACK and current not in (
            StepOutcome.SUCCEEDED, StepOutcome.FAILED
        ):
            raise InvalidTransition(
                f"Step '{step_name}' is {current.value}; only succeeded or "
                "failed steps can be rolled back"
            )
        self.outcomes[step_name] = outcome

    def set_status(self, status: RunStatus) -> None:
        """Move the run to a new status, stamping start and end times."""
        if status == RunStatus.RUNNING and self.started_at is None:
            self.started_at = get_now()
        if RunStatus.is_terminal(status):
            self.ended_at = get_now()
        else:
            self.ended_at = None
        self.status = status

    @property
    def failed_step(self) -> Optional[str]:
        """First failed step in declared order, if any."""
        for name in self.step_names:
            if self.outcomes.get(name) == StepOutcome.FAILED:
                return name
        return None

    def to_dict(self) -> dict[str, Any]:
        """Summary for GetStatus: outcomes plus failure detail per step."""
        steps = []
        for name in self.step_names:
            last = self.last_results.get(name)
            steps.append({
                "name": name,
                "outcome": self.outcome(name).value,
                "attempts": self.attempts.get(name, 0),
                "last_result": last.truncated().to_dict() if last else None,
                "failures": list(self.failures.get(name, [])),
            })
        return {
            "run_id": self.run_id,
            "playbook_id": self.playbook_id,
            "playbook_version": self.playbook_version,
            "status": self.status.value,
            "current_step_index": self.current_step_index,
            "current_step": (
                self.step_names[self.current_step_index]
                if 0 <= self.current_step_index < len(self.step_names)
                else None
            ),
            "failed_step": self.failed_step,
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "steps": steps,
        }
