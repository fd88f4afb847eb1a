"""Playbook execution engine for Caps.

This module is the control surface of the engine. It starts runs on their
own threads, resumes them from the ledger, applies operator overrides
(abort, skip, rollback) and reports status and events.

The engine is designed to:
- Run each playbook run on its own thread, steps strictly in sequence
- Record every attempt in the run ledger before moving on
- Resume a run from the ledger alone (the playbook source is stored there)
- Never re-execute a step that already succeeded
- Report failures through status and events instead of raising

Run statuses:
- not_started: Created, no step picked yet
- running: Executing steps
- completed: Every step succeeded or was skipped
- aborted: Failed, cancelled, or stopped by a ledger failure

Usage:
    from Caps.Core.playbook_engine import get_engine

    engine = get_engine()
    run_id = engine.start_run(playbook, context={"NAMESPACE": "db"})
    status = engine.wait_for(run_id)
"""

import json
import logging
import threading
import time
import uuid
import weakref
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import Caps.Helpers.logSettings as logLevel
from Caps.Core import metrics
from Caps.Core.playbook.catalog import PlaybookCatalog
from Caps.Core.playbook.executor import (
    DEFAULT_MAX_OUTPUT_BYTES,
    build_run_context,
    execute_step_actions,
)
from Caps.Core.playbook.ledger import (
    JsonlLedgerStore,
    LedgerStore,
    LedgerUnavailable,
    MemoryLedgerStore,
    PostgresLedgerStore,
    RunLedger,
    replay_run_state,
)
from Caps.Core.playbook.models import (
    InvalidTransition,
    LedgerEntry,
    LedgerEntryType,
    RunState,
    RunStatus,
    StepEvent,
    StepOutcome,
    combine_results,
    first_unexpected_index,
)
from Caps.Core.playbook.orchestrator import (
    PrerequisiteUnmet,
    RunOrchestrator,
    ensure_prerequisites,
)
from Caps.Core.playbook.runners import RunnerRegistry, default_registry
from Caps.Core.playbook.validation import Probe
from Caps.Core.playbook_parser import (
    Playbook,
    PlaybookParseError,
    parse_playbook,
)
from Caps.Core.utils.datetime_helpers import now as get_now

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

# Longest single wait while following an event stream
EVENT_POLL_SECONDS = 1.0


class RunNotFound(Exception):
    """No run with the given id exists in memory or in the ledger."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run '{run_id}' not found")


@dataclass
class RunHandle:
    """Everything the engine keeps for one run."""

    playbook: Playbook
    state: RunState
    cancel_event: threading.Event = field(default_factory=threading.Event)
    lock: threading.RLock = field(default_factory=threading.RLock)
    thread: Optional[threading.Thread] = None
    # Step whose rollback actions are executing right now
    rolling_back: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    @property
    def is_busy(self) -> bool:
        return self.is_active or self.rolling_back is not None


class PlaybookExecutionEngine:
    """
    Engine for executing playbook runs.

    The engine:
    - Starts runs and executes them on background threads
    - Persists every transition to the run ledger
    - Can resume a run after a restart from the ledger alone
    - Applies operator overrides (abort, skip, rollback)

    Usage:
        engine = PlaybookExecutionEngine(ledger=RunLedger(JsonlLedgerStore(dir)))
        run_id = engine.start_run(playbook)
        # or, after a restart
        engine.resume_run(run_id)
    """

    def __init__(
        self,
        ledger: Optional[RunLedger] = None,
        registry: Optional[RunnerRegistry] = None,
        probes: Optional[dict[str, Probe]] = None,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        catalog: Optional[PlaybookCatalog] = None,
        default_timeout_seconds: Optional[float] = None,
    ):
        """Initialize the execution engine."""
        self.ledger = ledger if ledger is not None else RunLedger(MemoryLedgerStore())
        self.registry = registry if registry is not None else default_registry()
        self.probes: dict[str, Probe] = dict(probes or {})
        self.max_output_bytes = max_output_bytes
        self.catalog = catalog if catalog is not None else PlaybookCatalog()
        # Applied to steps without a timeout when the engine parses a document
        self.default_timeout_seconds = default_timeout_seconds
        # Runs that are executing, rolling back, or halted with state the
        # ledger could not take; every other run is rebuilt from the ledger
        self._runs: dict[str, RunHandle] = {}
        self._runs_lock = threading.Lock()
        # Serializes start, resume, abort, skip and rollback of one run
        self._transition_locks: "weakref.WeakValueDictionary[str, threading.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def register_probe(self, name: str, probe: Probe) -> None:
        """Make a custom-probe callable available to validation rules."""
        self.probes[name] = probe

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def start_run(
        self,
        playbook: Union[Playbook, str],
        context: Optional[dict[str, Any]] = None,
        skip: Optional[list[str]] = None,
        wait: bool = False,
        run_id: Optional[str] = None,
    ) -> str:
        """
        Start a new run of a playbook.

        Args:
            playbook: Parsed playbook or raw playbook document
            context: Variables for ${VAR} substitution in action payloads
            skip: Step names to skip from the start
            wait: If True, return only after the run finished
            run_id: Explicit run id (generated when omitted)

        Returns:
            The run id

        Raises:
            PlaybookParseError: If a raw document does not parse
            InvalidTransition: If ``skip`` names an unknown step or the run
                id is taken
            LedgerUnavailable: If the start could not be recorded
        """
        if isinstance(playbook, str):
            playbook = parse_playbook(playbook, self.default_timeout_seconds)

        skip = list(skip or [])
        unknown = [name for name in skip if playbook.get_step(name) is None]
        if unknown:
            raise InvalidTransition(f"Cannot skip unknown step(s): {', '.join(unknown)}")

        run_id = run_id or str(uuid.uuid4())
        source = playbook.source or json.dumps(playbook.to_dict())
        with self._transition_lock(run_id):
            with self._runs_lock:
                taken = run_id in self._runs
            if taken or self.ledger.exists(run_id):
                raise InvalidTransition(f"Run '{run_id}' already exists")
            state = RunState.for_playbook(run_id, playbook, context)
            handle = RunHandle(playbook=playbook, state=state)

            self.ledger.append(LedgerEntry(
                run_id=run_id,
                entry_type=LedgerEntryType.RUN_STARTED,
                timestamp=get_now(),
                details={
                    "playbook_id": playbook.id,
                    "playbook_version": playbook.version,
                    "playbook_source": source,
                    "context": dict(context or {}),
                    "skip": skip,
                },
            ))
            for name in skip:
                self._record_skip(handle, name, "Skipped at run start")

            logger.log(
                level=20,
                msg=f"Started run {run_id} for playbook '{playbook.id}' "
                f"v{playbook.version} ({len(playbook.steps)} step(s))",
            )
            self._launch(handle, resumed=False)
        if wait:
            self.wait_for(run_id)
        return run_id

    def resume_run(self, run_id: str, wait: bool = True) -> RunStatus:
        """
        Resume a run from its ledger.

        Steps that already succeeded are not executed again, and a step
        interrupted mid-retry continues with its next attempt number. A
        completed run is left as it is.

        Returns:
            Run status after the resume (RUNNING when ``wait`` is False and
            the run is still executing)

        Raises:
            RunNotFound: If the ledger has no such run
            InvalidTransition: If the run is executing right now
            LedgerUnavailable: If the ledger cannot be read or written
        """
        with self._transition_lock(run_id):
            with self._runs_lock:
                current = self._runs.get(run_id)
            if current is not None and current.is_busy:
                raise InvalidTransition(f"Run '{run_id}' is already executing")

            handle = self._load_from_ledger(run_id)
            if handle.state.status == RunStatus.COMPLETED:
                logger.log(
                    level=20, msg=f"Run {run_id} already completed; nothing to resume"
                )
                return RunStatus.COMPLETED

            previous = handle.state.status
            self.ledger.append(LedgerEntry(
                run_id=run_id,
                entry_type=LedgerEntryType.RUN_RESUMED,
                timestamp=get_now(),
                details={"previous_status": previous.value},
            ))
            handle.state.error = None

            logger.log(
                level=20,
                msg=f"Resuming run {run_id} (was {previous.value}); outcomes: "
                + ", ".join(f"{n}={o.value}" for n, o in handle.state.outcomes.items()),
            )
            self._launch(handle, resumed=True)
        if wait:
            return self.wait_for(run_id)
        return handle.state.status

    def abort_run(self, run_id: str) -> bool:
        """
        Cancel a run.

        An executing run is signalled and stops at its next checkpoint; the
        in-flight action is aborted. A run that is not executing but not
        terminal either (e.g. left over from a crash) is marked aborted.

        A rollback in progress is cancelled the same way.

        Returns:
            True if the run was aborted, False if it had already ended
        """
        with self._transition_lock(run_id):
            handle = self._handle(run_id)
            with handle.lock:
                if handle.is_busy:
                    handle.cancel_event.set()
                    logger.log(level=20, msg=f"Abort requested for run {run_id}")
                    return True
                if RunStatus.is_terminal(handle.state.status):
                    return False
                self.ledger.append(LedgerEntry(
                    run_id=run_id,
                    entry_type=LedgerEntryType.RUN_ENDED,
                    timestamp=get_now(),
                    outcome=RunStatus.ABORTED.value,
                    details={"reason": "Aborted by operator"},
                ))
                handle.state.set_status(RunStatus.ABORTED)
                handle.state.error = "Aborted by operator"
        return True

    def wait_for(self, run_id: str, timeout: Optional[float] = None) -> RunStatus:
        """Block until the run's thread finishes (or timeout passes)."""
        handle = self._handle(run_id)
        thread = handle.thread
        if thread is not None:
            thread.join(timeout)
        with handle.lock:
            return handle.state.status

    # ------------------------------------------------------------------
    # Operator overrides
    # ------------------------------------------------------------------

    def skip_step(self, run_id: str, step_name: str, reason: str = "") -> None:
        """
        Mark a pending or failed step as skipped.

        Dependents of a skipped step may run. Skipping a failed step of an
        aborted run and resuming it is how an operator gets past a failure.

        Raises:
            RunNotFound, InvalidTransition, LedgerUnavailable
        """
        with self._transition_lock(run_id):
            handle = self._handle(run_id)
            if handle.playbook.get_step(step_name) is None:
                raise InvalidTransition(f"Run '{run_id}' has no step '{step_name}'")
            with handle.lock:
                if handle.rolling_back is not None:
                    raise InvalidTransition(
                        f"Run '{run_id}' is rolling back '{handle.rolling_back}'"
                    )
                outcome = handle.state.outcome(step_name)
                if outcome not in (StepOutcome.PENDING, StepOutcome.FAILED):
                    raise InvalidTransition(
                        f"Step '{step_name}' is {outcome.value}; only pending or "
                        "failed steps can be skipped"
                    )
                self._record_skip(handle, step_name, reason or "Skipped by operator")
        logger.log(level=20, msg=f"Run {run_id}: step '{step_name}' skipped")

    def rollback_step(self, run_id: str, step_name: str) -> dict[str, Any]:
        """
        Run a step's rollback actions.

        Only an explicit call rolls anything back. The step's prerequisites
        must still stand, so dependents are undone before what they built
        on. The step becomes RolledBack when every rollback action exits as
        expected; otherwise it keeps its outcome and the failure is
        recorded. The actions run without holding the run's state lock, so
        status stays readable and ``abort_run`` can cancel them.

        Returns:
            Dictionary with step_name, rolled_back and the rollback result

        Raises:
            RunNotFound, InvalidTransition, LedgerUnavailable
        """
        with self._transition_lock(run_id):
            handle = self._handle(run_id)
            step = handle.playbook.get_step(step_name)
            if step is None:
                raise InvalidTransition(f"Run '{run_id}' has no step '{step_name}'")
            if handle.is_busy:
                raise InvalidTransition(
                    f"Run '{run_id}' is executing; abort it or wait for it to finish"
                )
            if not step.rollback:
                raise InvalidTransition(f"Step '{step_name}' declares no rollback actions")

            with handle.lock:
                current = handle.state.outcome(step_name)
                if current not in (StepOutcome.SUCCEEDED, StepOutcome.FAILED):
                    raise InvalidTransition(
                        f"Step '{step_name}' is {current.value}; only succeeded or "
                        "failed steps can be rolled back"
                    )
                try:
                    ensure_prerequisites(step, handle.state)
                except PrerequisiteUnmet as e:
                    raise InvalidTransition(
                        f"Cannot roll back '{step_name}' after its prerequisites: {e}"
                    ) from e
                handle.rolling_back = step_name
                handle.cancel_event = threading.Event()
                context = build_run_context(
                    run_id,
                    handle.playbook.id,
                    handle.playbook.version,
                    step_name,
                    handle.state.context,
                )
            with self._runs_lock:
                was_registered = self._runs.get(run_id) is handle
                self._runs[run_id] = handle

        try:
            results = execute_step_actions(
                step.rollback,
                self.registry,
                step.timeout_seconds,
                cancel_event=handle.cancel_event,
                context=context,
                max_output_bytes=self.max_output_bytes,
            )
            ran = list(step.rollback[: len(results)])
            composite = combine_results(results, ran)
            succeeded = (
                len(results) == len(step.rollback)
                and first_unexpected_index(results, ran) is None
            )
            outcome = StepOutcome.ROLLED_BACK if succeeded else current

            with handle.lock:
                self.ledger.append(LedgerEntry(
                    run_id=run_id,
                    entry_type=LedgerEntryType.STEP_ROLLED_BACK,
                    timestamp=get_now(),
                    step_name=step_name,
                    result=composite,
                    action_results=tuple(results),
                    outcome=outcome.value,
                    details={"rolled_back": succeeded},
                ))
                handle.state.last_results[step_name] = composite
                if succeeded:
                    handle.state.set_outcome(step_name, StepOutcome.ROLLED_BACK)
        finally:
            with self._transition_lock(run_id):
                with handle.lock:
                    handle.rolling_back = None
                if not was_registered:
                    self._release(handle)

        logger.log(
            level=20 if succeeded else 40,
            msg=f"Run {run_id}: rollback of '{step_name}' "
            + ("succeeded" if succeeded else f"failed (exit {composite.exit_code})"),
        )
        return {
            "step_name": step_name,
            "rolled_back": succeeded,
            "result": composite.truncated().to_dict(),
        }

    def rollback_run(self, run_id: str) -> list[dict[str, Any]]:
        """
        Roll back every succeeded step in reverse order of success.

        Steps without rollback actions are left alone. Stops at the first
        rollback that fails.
        """
        handle = self._handle(run_id)
        order: list[str] = []
        for entry in self.ledger.peek(run_id):
            if (
                entry.entry_type == LedgerEntryType.ATTEMPT
                and entry.outcome == StepOutcome.SUCCEEDED.value
                and entry.step_name not in order
            ):
                order.append(entry.step_name)

        results = []
        for step_name in reversed(order):
            step = handle.playbook.get_step(step_name)
            if step is None or not step.rollback:
                continue
            if handle.state.outcome(step_name) != StepOutcome.SUCCEEDED:
                continue
            outcome = self.rollback_step(run_id, step_name)
            results.append(outcome)
            if not outcome["rolled_back"]:
                break
        return results

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_status(self, run_id: str) -> dict[str, Any]:
        """
        Summary of a run.

        Includes every step's outcome and attempt count, the failing step,
        its last (truncated) result and its validation failures.
        """
        handle = self._handle(run_id)
        with handle.lock:
            summary = handle.state.to_dict()
        summary["title"] = handle.playbook.title
        summary["active"] = handle.is_active
        return summary

    def stream_events(
        self,
        run_id: str,
        follow: bool = True,
        after: int = 0,
        timeout: Optional[float] = None,
    ) -> Iterator[StepEvent]:
        """
        Iterate over a run's events, derived from its ledger.

        Args:
            run_id: Run to follow
            follow: Keep waiting for new events until the run ends
            after: Only events with a greater sequence number (restart point)
            timeout: Stop following after this many seconds

        Raises:
            RunNotFound: If the run does not exist (raised immediately)
        """
        self._handle(run_id)
        return self._iter_events(run_id, follow, after, timeout)

    def _iter_events(
        self, run_id: str, follow: bool, after: int, timeout: Optional[float]
    ) -> Iterator[StepEvent]:
        last = after
        deadline = time.monotonic() + timeout if timeout is not None else None
        while True:
            for entry in self.ledger.read_since(run_id, last):
                last = entry.sequence
                yield StepEvent.from_ledger_entry(entry)

            if not follow:
                return
            with self._runs_lock:
                handle = self._runs.get(run_id)
            # Nothing else writes to an idle run's ledger
            if handle is None or not handle.is_active:
                if not self.ledger.read_since(run_id, last):
                    return
                continue

            wait = EVENT_POLL_SECONDS
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return
                wait = min(wait, remaining)
            self.ledger.wait_for_entries(run_id, last, timeout=wait)

    def list_runs(self) -> list[dict[str, Any]]:
        """Summaries of every run known to the ledger."""
        runs = []
        for run_id in self.ledger.list_run_ids():
            try:
                handle = self._handle(run_id)
            except RunNotFound:
                continue
            with handle.lock:
                state = handle.state
                runs.append({
                    "run_id": run_id,
                    "playbook_id": state.playbook_id,
                    "playbook_version": state.playbook_version,
                    "status": state.status.value,
                    "failed_step": state.failed_step,
                    "started_at": state.started_at.isoformat() if state.started_at else None,
                    "ended_at": state.ended_at.isoformat() if state.ended_at else None,
                    "active": handle.is_active,
                })
        return runs

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _transition_lock(self, run_id: str) -> threading.Lock:
        with self._runs_lock:
            lock = self._transition_locks.get(run_id)
            if lock is None:
                lock = threading.Lock()
                self._transition_locks[run_id] = lock
            return lock

    def _handle(self, run_id: str) -> RunHandle:
        """The live handle of a run, or one rebuilt from its ledger."""
        with self._runs_lock:
            handle = self._runs.get(run_id)
        if handle is not None:
            return handle
        return self._load_from_ledger(run_id)

    def _load_from_ledger(self, run_id: str) -> RunHandle:
        # Rebuilt handles are short-lived; keep their entries out of the cache
        entries = self.ledger.peek(run_id)
        if not entries:
            raise RunNotFound(run_id)
        started = next(
            (e for e in entries if e.entry_type == LedgerEntryType.RUN_STARTED), None
        )
        if started is None or not started.details.get("playbook_source"):
            raise LedgerUnavailable(f"Ledger of run {run_id} has no run_started entry")
        try:
            playbook = parse_playbook(
                started.details["playbook_source"], self.default_timeout_seconds
            )
        except PlaybookParseError as e:
            raise LedgerUnavailable(
                f"Ledger of run {run_id} holds a playbook that no longer parses: {e}"
            ) from e
        state = replay_run_state(entries, playbook)
        return RunHandle(playbook=playbook, state=state)

    def _record_skip(self, handle: RunHandle, step_name: str, reason: str) -> None:
        self.ledger.append(LedgerEntry(
            run_id=handle.state.run_id,
            entry_type=LedgerEntryType.STEP_SKIPPED,
            timestamp=get_now(),
            step_name=step_name,
            outcome=StepOutcome.SKIPPED.value,
            details={"reason": reason},
        ))
        handle.state.set_outcome(step_name, StepOutcome.SKIPPED)

    def _launch(self, handle: RunHandle, resumed: bool) -> None:
        # Caller holds the run's transition lock
        handle.cancel_event = threading.Event()
        orchestrator = RunOrchestrator(
            handle.playbook,
            handle.state,
            self.ledger,
            self.registry,
            cancel_event=handle.cancel_event,
            probes=self.probes,
            max_output_bytes=self.max_output_bytes,
            state_lock=handle.lock,
        )
        thread = threading.Thread(
            target=self._execute,
            args=(handle, orchestrator, resumed),
            name=f"caps-run-{handle.state.run_id}",
            daemon=True,
        )
        handle.thread = thread
        with self._runs_lock:
            self._runs[handle.state.run_id] = handle
        thread.start()

    def _release(self, handle: RunHandle) -> None:
        """
        Forget a run whose ledger holds its whole story.

        Caller holds the run's transition lock. Later lookups rebuild the
        run from the ledger.
        """
        run_id = handle.state.run_id
        with self._runs_lock:
            if self._runs.get(run_id) is handle:
                del self._runs[run_id]
        self.ledger.forget(run_id)

    def _execute(
        self, handle: RunHandle, orchestrator: RunOrchestrator, resumed: bool
    ) -> None:
        playbook_id = handle.playbook.id
        metrics.record_run_started(playbook_id, resumed=resumed)
        start = time.monotonic()
        status = RunStatus.ABORTED
        try:
            status = orchestrator.run()
        except Exception as e:
            logger.exception(f"Run {handle.state.run_id} crashed: {e}")
            with handle.lock:
                handle.state.set_status(RunStatus.ABORTED)
                handle.state.error = f"Engine error: {type(e).__name__}: {e}"
        else:
            # A halted run's status and error exist only in memory
            if not orchestrator.halted:
                with self._transition_lock(handle.state.run_id):
                    self._release(handle)
        finally:
            metrics.record_run_finished(
                playbook_id, status.value, time.monotonic() - start
            )


def build_ledger(engine_config=None) -> RunLedger:
    """Ledger for the configured backend (memory, file or postgres)."""
    if engine_config is None:
        from config import get_config
        engine_config = get_config().engine

    store: LedgerStore
    if engine_config.ledger_backend == "file":
        store = JsonlLedgerStore(engine_config.ledger_dir)
    elif engine_config.ledger_backend == "postgres":
        store = PostgresLedgerStore()
        store.ensure_schema()
    else:
        store = MemoryLedgerStore()
    return RunLedger(store)


def build_engine_from_config(config=None) -> PlaybookExecutionEngine:
    """Create an engine wired to the configured ledger, runners and playbooks."""
    if config is None:
        from config import get_config
        config = get_config()

    catalog = PlaybookCatalog()
    if config.engine.playbook_dir:
        for error in catalog.load_directory(
            config.engine.playbook_dir, config.engine.default_timeout_seconds
        ):
            logger.log(level=30, msg=f"Playbook not loaded: {error}")

    return PlaybookExecutionEngine(
        ledger=build_ledger(config.engine),
        registry=default_registry(shell=config.engine.shell),
        max_output_bytes=config.engine.max_output_bytes,
        catalog=catalog,
        default_timeout_seconds=config.engine.default_timeout_seconds,
    )


# ============================================================================
# Module-level convenience functions
# ============================================================================

# Global engine instance
_engine: Optional[PlaybookExecutionEngine] = None
_engine_lock = threading.Lock()


def get_engine() -> PlaybookExecutionEngine:
    """Get the global playbook execution engine instance."""
    global _engine
    with _engine_lock:
        if _engine is None:
            _engine = build_engine_from_config()
        return _engine


def set_engine(engine: Optional[PlaybookExecutionEngine]) -> None:
    """Replace the global engine (None resets it)."""
    global _engine
    with _engine_lock:
        _engine = engine


def start_run(
    playbook: Union[Playbook, str],
    context: Optional[dict[str, Any]] = None,
    skip: Optional[list[str]] = None,
    wait: bool = False,
) -> str:
    """Convenience function to start a run on the global engine."""
    return get_engine().start_run(playbook, context=context, skip=skip, wait=wait)


def resume_run(run_id: str, wait: bool = True) -> RunStatus:
    """Convenience function to resume a run on the global engine."""
    return get_engine().resume_run(run_id, wait=wait)


def abort_run(run_id: str) -> bool:
    """Convenience function to abort a run on the global engine."""
    return get_engine().abort_run(run_id)


def get_run_status(run_id: str) -> dict[str, Any]:
    """Convenience function to get a run summary from the global engine."""
    return get_engine().get_status(run_id)


def stream_run_events(
    run_id: str, follow: bool = True, after: int = 0, timeout: Optional[float] = None
) -> Iterator[StepEvent]:
    """Convenience function to stream a run's events from the global engine."""
    return get_engine().stream_events(run_id, follow=follow, after=after, timeout=timeout)


def skip_step(run_id: str, step_name: str, reason: str = "") -> None:
    """Convenience function to skip a step on the global engine."""
    get_engine().skip_step(run_id, step_name, reason=reason)


def rollback_step(run_id: str, step_name: str) -> dict[str, Any]:
    """Convenience function to roll back a step on the global engine."""
    return get_engine().rollback_step(run_id, step_name)


def rollback_run(run_id: str) -> list[dict[str, Any]]:
    """Convenience function to roll back a whole run on the global engine."""
    return get_engine().rollback_run(run_id)


def list_runs() -> list[dict[str, Any]]:
    """Convenience function to list runs of the global engine."""
    return get_engine().list_runs()
