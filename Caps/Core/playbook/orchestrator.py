"""Playbook orchestrator.

Drives one run through its playbook. Steps run strictly one at a time:
the next step is the first Pending step, in declared order, whose
prerequisites are all Succeeded or Skipped. Each attempt is executed,
validated and written to the ledger before the run state moves on.

Step transitions:
    Pending -> Running -> Succeeded | Failed
    Running -> Pending          (attempt failed, retries left)
    Failed  -> Skipped          (operator override)
    Succeeded -> RolledBack     (explicit rollback only)

Run transitions:
    NotStarted -> Running -> Completed | Aborted

The run aborts when no step is runnable and some step is not satisfied,
when a step with ``on_failure: abort`` fails, when the run is cancelled,
or when the ledger cannot be written.
"""

import logging
import threading
from typing import Any, Callable, Optional

import Caps.Helpers.logSettings as logLevel
from Caps.Core import metrics
from Caps.Core.logging_config import log_context
from Caps.Core.playbook.executor import (
    DEFAULT_MAX_OUTPUT_BYTES,
    build_run_context,
    execute_step_actions,
)
from Caps.Core.playbook.ledger import DuplicateAttempt, LedgerUnavailable, RunLedger
from Caps.Core.playbook.models import (
    LedgerEntry,
    LedgerEntryType,
    RunState,
    RunStatus,
    StepOutcome,
    combine_results,
)
from Caps.Core.playbook.runners.base import RunnerRegistry
from Caps.Core.playbook.validation import Probe, evaluate_attempt
from Caps.Core.playbook_parser import (
    Capability,
    OnFailureAction,
    Playbook,
    Step,
)
from Caps.Core.utils.datetime_helpers import now as get_now

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())


class PrerequisiteUnmet(Exception):
    """A step was asked to run before its prerequisites were satisfied."""

    def __init__(self, step_name: str, missing: list[str]):
        self.step_name = step_name
        self.missing = missing
        super().__init__(
            f"Step '{step_name}' is waiting on: {', '.join(missing)}"
        )


def unmet_prerequisites(step: Step, state: RunState) -> list[str]:
    """Prerequisites of a step that are neither Succeeded nor Skipped."""
    return sorted(
        p for p in step.prerequisites
        if not StepOutcome.is_satisfied(state.outcome(p))
    )


def ensure_prerequisites(step: Step, state: RunState) -> None:
    """
    Check a step may run.

    Raises:
        PrerequisiteUnmet: If any prerequisite is not satisfied
    """
    missing = unmet_prerequisites(step, state)
    if missing:
        raise PrerequisiteUnmet(step.name, missing)


def next_runnable_step(playbook: Playbook, state: RunState) -> Optional[Step]:
    """First Pending step in declared order whose prerequisites are met."""
    for step in playbook.steps:
        if state.outcome(step.name) != StepOutcome.PENDING:
            continue
        if not unmet_prerequisites(step, state):
            return step
    return None


class RunOrchestrator:
    """
    Executes the steps of one run.

    The orchestrator owns the RunState; other threads read it and apply
    operator overrides only while holding ``state_lock``.

    Usage:
        orchestrator = RunOrchestrator(playbook, state, ledger, registry)
        status = orchestrator.run()
    """

    def __init__(
        self,
        playbook: Playbook,
        state: RunState,
        ledger: RunLedger,
        registry: RunnerRegistry,
        cancel_event: Optional[threading.Event] = None,
        probes: Optional[dict[str, Probe]] = None,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        state_lock: Optional[threading.RLock] = None,
        sleep: Optional[Callable[[float], bool]] = None,
    ):
        self.playbook = playbook
        self.state = state
        self.ledger = ledger
        self.registry = registry
        self.cancel_event = cancel_event or threading.Event()
        self.probes = probes or {}
        self.max_output_bytes = max_output_bytes
        self.state_lock = state_lock or threading.RLock()
        # Returns True when the wait was interrupted by cancellation
        self._sleep = sleep or self.cancel_event.wait
        # Set when the ledger refused an entry; only memory holds the outcome
        self.halted = False

    def run(self) -> RunStatus:
        """
        Execute steps until the run completes or aborts.

        Never raises for execution problems; the returned status and the
        RunState carry the outcome.
        """
        with self.state_lock:
            self.state.set_status(RunStatus.RUNNING)
        with log_context(run_id=self.state.run_id, playbook_id=self.playbook.id):
            try:
                return self._drive()
            except (LedgerUnavailable, DuplicateAttempt) as e:
                return self._halt(f"Ledger unavailable: {e}")

    def _drive(self) -> RunStatus:
        while True:
            if self.cancel_event.is_set():
                return self._end(RunStatus.ABORTED, "Run cancelled")

            with self.state_lock:
                step = next_runnable_step(self.playbook, self.state)
                if step is not None:
                    self.state.set_outcome(step.name, StepOutcome.RUNNING)
                    self.state.current_step_index = self.state.step_names.index(
                        step.name
                    )

            if step is None:
                return self._finish()

            with log_context(step_name=step.name):
                outcome = self._run_step(step)

            if outcome == StepOutcome.FAILED and step.on_failure == OnFailureAction.ABORT:
                return self._end(
                    RunStatus.ABORTED,
                    f"Step '{step.name}' failed and is marked on_failure: abort",
                )

    def _finish(self) -> RunStatus:
        with self.state_lock:
            outcomes = dict(self.state.outcomes)
        if all(StepOutcome.is_satisfied(o) for o in outcomes.values()):
            return self._end(RunStatus.COMPLETED)

        failed = [n for n, o in outcomes.items() if o == StepOutcome.FAILED]
        if failed:
            reason = f"Step(s) failed: {', '.join(failed)}"
        else:
            blocked = [
                n for n, o in outcomes.items() if not StepOutcome.is_satisfied(o)
            ]
            reason = f"No runnable step; unsatisfied: {', '.join(blocked)}"
        return self._end(RunStatus.ABORTED, reason)

    def _run_step(self, step: Step) -> StepOutcome:
        """Run attempts of a step until it succeeds, fails or is cancelled."""
        policy = step.retry_policy
        context = build_run_context(
            self.state.run_id,
            self.playbook.id,
            self.playbook.version,
            step.name,
            self.state.context,
        )
        http_checker = self.registry.get(Capability.HTTP_CHECK)

        while True:
            attempt_number = self.state.attempts.get(step.name, 0) + 1

            delay = policy.delay_before(attempt_number)
            if delay > 0:
                logger.log(
                    level=20,
                    msg=f"Run {self.state.run_id}: retrying '{step.name}' "
                    f"(attempt {attempt_number}/{policy.max_attempts}) in {delay}s",
                )
                if self._sleep(delay):
                    self._return_to_pending(step.name)
                    return StepOutcome.PENDING

            if self.cancel_event.is_set():
                self._return_to_pending(step.name)
                return StepOutcome.PENDING

            with self.state_lock:
                current = self.state.outcome(step.name)
                if current not in (StepOutcome.PENDING, StepOutcome.RUNNING):
                    # Skipped by an operator while waiting to retry
                    return current
                self.state.set_outcome(step.name, StepOutcome.RUNNING)

            logger.log(
                level=20,
                msg=f"Run {self.state.run_id}: step '{step.name}' "
                f"attempt {attempt_number}",
            )
            action_results = execute_step_actions(
                step.actions,
                self.registry,
                step.timeout_seconds,
                cancel_event=self.cancel_event,
                context=context,
                max_output_bytes=self.max_output_bytes,
            )
            ran_actions = step.actions[: len(action_results)]
            composite = combine_results(action_results, list(ran_actions))
            verdict = evaluate_attempt(
                composite,
                action_results,
                ran_actions,
                step.validations,
                http_checker=http_checker,
                probes=self.probes,
                max_output_bytes=self.max_output_bytes,
                cancel_event=self.cancel_event,
            )

            if verdict.passed:
                outcome = StepOutcome.SUCCEEDED
            elif attempt_number >= policy.max_attempts:
                outcome = StepOutcome.FAILED
            else:
                outcome = StepOutcome.PENDING

            self.ledger.append(LedgerEntry(
                run_id=self.state.run_id,
                entry_type=LedgerEntryType.ATTEMPT,
                timestamp=get_now(),
                step_name=step.name,
                attempt_number=attempt_number,
                result=composite,
                action_results=tuple(action_results),
                validation=verdict,
                outcome=outcome.value,
            ))

            with self.state_lock:
                self.state.attempts[step.name] = attempt_number
                self.state.last_results[step.name] = composite
                self.state.failures[step.name] = list(verdict.failures)
                self.state.set_outcome(step.name, outcome)
            metrics.record_step_attempt(self.playbook.id, outcome.value)

            if outcome == StepOutcome.SUCCEEDED:
                logger.log(
                    level=20,
                    msg=f"Run {self.state.run_id}: step '{step.name}' succeeded "
                    f"on attempt {attempt_number}",
                )
                return outcome

            logger.log(
                level=30,
                msg=f"Run {self.state.run_id}: step '{step.name}' attempt "
                f"{attempt_number} failed: {'; '.join(verdict.failures)}",
            )
            if outcome == StepOutcome.FAILED or composite.cancelled:
                return outcome

    def _return_to_pending(self, step_name: str) -> None:
        with self.state_lock:
            self.state.set_outcome(step_name, StepOutcome.PENDING)

    def _end(self, status: RunStatus, reason: Optional[str] = None) -> RunStatus:
        details: dict[str, Any] = {}
        if reason:
            details["reason"] = reason
        self.ledger.append(LedgerEntry(
            run_id=self.state.run_id,
            entry_type=LedgerEntryType.RUN_ENDED,
            timestamp=get_now(),
            outcome=status.value,
            details=details,
        ))
        with self.state_lock:
            self.state.set_status(status)
            self.state.error = reason if status == RunStatus.ABORTED else None

        logger.log(
            level=20 if status == RunStatus.COMPLETED else 30,
            msg=f"Run {self.state.run_id} ({self.playbook.id} "
            f"v{self.playbook.version}) {status.value}"
            + (f": {reason}" if reason else ""),
        )
        return status

    def _halt(self, reason: str) -> RunStatus:
        """Abort in memory only; the ledger cannot take more entries."""
        self.halted = True
        with self.state_lock:
            for name, outcome in self.state.outcomes.items():
                if outcome == StepOutcome.RUNNING:
                    self.state.outcomes[name] = StepOutcome.PENDING
            self.state.set_status(RunStatus.ABORTED)
            self.state.error = reason
        logger.log(level=50, msg=f"Run {self.state.run_id} halted: {reason}")
        return RunStatus.ABORTED
