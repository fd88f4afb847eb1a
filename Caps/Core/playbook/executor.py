"""Step executor.

Runs actions through capability runners with a timeout, cooperative
cancellation and output capping, and turns every runner failure into an
ExecutionResult instead of an exception.

Features:
- Variable substitution using ${VAR_NAME} syntax in action payloads
- Per-action timeout enforced by the executor (exit code -1)
- Runner exceptions captured as faults (exit code -2)
- Run cancellation forwarded to the runner as an abort (exit code -3)
- stdout/stderr capped to a byte limit with a truncation marker

Usage:
    from Caps.Core.playbook.executor import execute_action

    result = execute_action(action, runner, timeout=30.0)
"""

import logging
import re
import threading
import time
from dataclasses import replace
from typing import Any, Optional

import Caps.Helpers.logSettings as logLevel
from Caps.Core import metrics
from Caps.Core.playbook.models import (
    CANCELLED_EXIT_CODE,
    FAULT_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    TRUNCATION_MARKER,
    ExecutionResult,
)
from Caps.Core.playbook.runners.base import (
    ActionFault,
    ActionTimeout,
    CapabilityRunner,
    RunnerRegistry,
)
from Caps.Core.playbook_parser import Action
from Caps.Core.utils.datetime_helpers import now as get_now

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())


# Maximum bytes of stdout/stderr kept per action - 1 MiB
DEFAULT_MAX_OUTPUT_BYTES = 1024 * 1024

# How often the executor checks for cancellation while a runner works
POLL_INTERVAL = 0.05

# Seconds a runner gets to hand back partial output after an abort
ABORT_GRACE_SECONDS = 2.0

# Variable pattern for substitution: ${VAR_NAME}
VARIABLE_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def substitute_variables(value: Any, context: dict[str, Any]) -> Any:
    """
    Substitute variables in a value using the run context.

    Supports ${VAR_NAME} syntax. Available variables include:
    - RUN_ID: ID of the current run
    - PLAYBOOK_ID: ID of the playbook
    - PLAYBOOK_VERSION: Version of the playbook
    - STEP_NAME: Name of the step being executed
    - Plus any variables passed as run context

    Unknown variables are left untouched.

    Args:
        value: Value to substitute (string, dict, list, or other)
        context: Dictionary of variable values

    Returns:
        Value with variables substituted
    """
    if isinstance(value, str):

        def replace_var(match: re.Match) -> str:
            replacement = context.get(match.group(1))
            if replacement is not None:
                return str(replacement)
            return match.group(0)

        return VARIABLE_PATTERN.sub(replace_var, value)

    elif isinstance(value, dict):
        return {
            substitute_variables(k, context): substitute_variables(v, context)
            for k, v in value.items()
        }

    elif isinstance(value, list):
        return [substitute_variables(item, context) for item in value]

    else:
        return value


def build_run_context(
    run_id: str,
    playbook_id: str,
    playbook_version: str,
    step_name: Optional[str] = None,
    extra: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Variables available to a step's action payloads."""
    context: dict[str, Any] = dict(extra or {})
    context.update({
        "RUN_ID": run_id,
        "PLAYBOOK_ID": playbook_id,
        "PLAYBOOK_VERSION": playbook_version,
    })
    if step_name:
        context["STEP_NAME"] = step_name
    return context


def cap_output(text: Optional[str], max_bytes: int = DEFAULT_MAX_OUTPUT_BYTES) -> str:
    """Cut text to ``max_bytes`` of UTF-8, appending a marker when cut."""
    if not text:
        return ""
    encoded = text.encode("utf-8", errors="replace")
    if len(encoded) <= max_bytes:
        return text
    return encoded[:max_bytes].decode("utf-8", errors="ignore") + TRUNCATION_MARKER


def _finalize(
    result: ExecutionResult,
    started_at,
    duration: float,
    max_output_bytes: int,
    exit_code: Optional[int] = None,
    note: str = "",
) -> ExecutionResult:
    stderr = result.stderr or ""
    if note:
        stderr = f"{stderr}\n{note}" if stderr else note
    return replace(
        result,
        exit_code=result.exit_code if exit_code is None else exit_code,
        stdout=cap_output(result.stdout, max_output_bytes),
        stderr=cap_output(stderr, max_output_bytes),
        duration=result.duration or duration,
        started_at=result.started_at or started_at,
    )


def execute_action(
    action: Action,
    runner: Optional[CapabilityRunner],
    timeout: float,
    cancel_event: Optional[threading.Event] = None,
    context: Optional[dict[str, Any]] = None,
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
) -> ExecutionResult:
    """
    Execute one action and always return an ExecutionResult.

    The runner works on a daemon thread while this function waits up to
    ``timeout`` seconds. On timeout or when ``cancel_event`` is set the
    runner's abort event is set and a result with the reserved exit code is
    returned, keeping any partial output the runner hands back within a
    short grace period.

    Args:
        action: Action to execute
        runner: Runner for the action's capability, None if unregistered
        timeout: Seconds the action may take
        cancel_event: Run-level cancellation signal
        context: Variables for ${VAR} substitution in the payload
        max_output_bytes: Cap for stdout and stderr

    Returns:
        ExecutionResult (exit code -1 timeout, -2 fault, -3 cancelled)
    """
    started_at = get_now()
    start = time.monotonic()
    capability = action.capability.value

    def _synthetic(exit_code: int, message: str) -> ExecutionResult:
        result = ExecutionResult.synthetic(
            exit_code, message, started_at=started_at,
            duration=time.monotonic() - start,
        )
        metrics.record_action(capability, exit_code, result.duration)
        return result

    if runner is None:
        logger.log(level=30, msg=f"No runner registered for capability '{capability}'")
        return _synthetic(
            FAULT_EXIT_CODE, f"No runner registered for capability '{capability}'"
        )

    if cancel_event is not None and cancel_event.is_set():
        return _synthetic(CANCELLED_EXIT_CODE, "Action cancelled before it started")

    if context:
        action = replace(action, payload=substitute_variables(action.payload, context))

    abort_event = threading.Event()
    outcome: dict[str, Any] = {}

    def _target() -> None:
        try:
            outcome["result"] = runner.run(action, abort_event)
        except Exception as e:
            outcome["error"] = e

    worker = threading.Thread(
        target=_target, name=f"caps-action-{capability}", daemon=True
    )
    worker.start()

    deadline = start + timeout
    interrupted: Optional[int] = None
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            interrupted = TIMEOUT_EXIT_CODE
            break
        worker.join(min(remaining, POLL_INTERVAL))
        if not worker.is_alive():
            break
        if cancel_event is not None and cancel_event.is_set():
            interrupted = CANCELLED_EXIT_CODE
            break

    if interrupted is not None:
        abort_event.set()
        worker.join(ABORT_GRACE_SECONDS)
        duration = time.monotonic() - start
        if interrupted == TIMEOUT_EXIT_CODE:
            note = f"Action timed out after {timeout}s"
        else:
            note = "Action cancelled"
        logger.log(level=30, msg=f"{capability} action interrupted: {note}")
        partial = outcome.get("result")
        if isinstance(partial, ExecutionResult):
            result = _finalize(
                partial, started_at, duration, max_output_bytes,
                exit_code=interrupted, note=note,
            )
        else:
            result = ExecutionResult.synthetic(
                interrupted, note, started_at=started_at, duration=duration
            )
        metrics.record_action(capability, result.exit_code, result.duration)
        return result

    duration = time.monotonic() - start
    error = outcome.get("error")
    if isinstance(error, ActionTimeout):
        logger.log(level=30, msg=f"{capability} action timed out: {error}")
        return _synthetic(TIMEOUT_EXIT_CODE, f"Action timed out: {error}")
    if error is not None:
        if isinstance(error, ActionFault):
            message = f"Action fault: {error}"
        else:
            message = f"{type(error).__name__}: {error}"
        logger.log(level=30, msg=f"{capability} action faulted: {message}")
        return _synthetic(FAULT_EXIT_CODE, message)

    result = outcome.get("result")
    if not isinstance(result, ExecutionResult):
        return _synthetic(
            FAULT_EXIT_CODE,
            f"Runner returned {type(result).__name__} instead of ExecutionResult",
        )

    result = _finalize(result, started_at, duration, max_output_bytes)
    logger.log(
        level=10,
        msg=f"{capability} action exited {result.exit_code} in {result.duration:.3f}s",
    )
    metrics.record_action(capability, result.exit_code, result.duration)
    return result


def execute_step_actions(
    actions: tuple[Action, ...],
    registry: RunnerRegistry,
    timeout: float,
    cancel_event: Optional[threading.Event] = None,
    context: Optional[dict[str, Any]] = None,
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
) -> list[ExecutionResult]:
    """
    Execute a step's actions in order.

    Stops at the first action whose exit code is not in its expected set
    (which includes timeouts, faults and cancellation). The returned list
    holds one result per action that was started.
    """
    results: list[ExecutionResult] = []
    for action in actions:
        result = execute_action(
            action,
            registry.get(action.capability),
            timeout,
            cancel_event=cancel_event,
            context=context,
            max_output_bytes=max_output_bytes,
        )
        results.append(result)
        if result.cancelled or result.exit_code not in action.expected_exit_codes:
            break
    return results
