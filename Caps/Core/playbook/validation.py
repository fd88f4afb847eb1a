"""Validation engine.

Judges an ExecutionResult against a step's validation rules. Every rule is
evaluated, so a failing attempt reports all of its problems at once.

Rule kinds:
- exit-code-equals: exit code is in the expected set
- stdout-contains: stdout contains a substring
- stdout-regex: stdout matches a regular expression
- http-status-equals: an HTTP probe, run through the http-check runner,
  returns one of the expected statuses
- custom-probe: a named callable ``(result, parameters) -> (bool, message)``

A rule whose checker is unavailable, or whose probe raises, fails with a
message; it never raises out of the engine.
"""

import logging
import threading
from collections.abc import Callable
from typing import Any, Optional

import Caps.Helpers.logSettings as logLevel
from Caps.Core.playbook.executor import (
    DEFAULT_MAX_OUTPUT_BYTES,
    cap_output,
    execute_action,
)
from Caps.Core.playbook.models import ExecutionResult, ValidationOutcome
from Caps.Core.playbook.runners.base import CapabilityRunner
from Caps.Core.playbook_parser import (
    Action,
    Capability,
    ValidationKind,
    ValidationRule,
)

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

Probe = Callable[[ExecutionResult, dict[str, Any]], tuple[bool, str]]

# Extra seconds the executor allows on top of an HTTP probe's own timeout
HTTP_PROBE_GRACE_SECONDS = 5.0


class ValidationFailed(Exception):
    """A step attempt did not pass its validation rules."""

    def __init__(self, failures: list[str]):
        self.failures = list(failures)
        super().__init__("; ".join(self.failures) or "Validation failed")


def _check_exit_code(result: ExecutionResult, rule: ValidationRule) -> Optional[str]:
    expected = rule.parameters.get("expected", (0,))
    if result.exit_code in expected:
        return None
    return f"{rule.description}: got exit code {result.exit_code}"


def _check_stdout_contains(stdout: str, rule: ValidationRule) -> Optional[str]:
    if rule.parameters["value"] in stdout:
        return None
    return f"{rule.description}: not found in stdout"


def _check_stdout_regex(stdout: str, rule: ValidationRule) -> Optional[str]:
    if rule.regex is not None and rule.regex.search(stdout):
        return None
    return f"{rule.description}: no match in stdout"


def _check_http_status(
    rule: ValidationRule,
    http_checker: Optional[CapabilityRunner],
    cancel_event: Optional[threading.Event],
) -> Optional[str]:
    if http_checker is None:
        return f"{rule.description}: no http-check runner available"

    params = rule.parameters
    action = Action(
        capability=Capability.HTTP_CHECK,
        payload={
            "url": params["url"],
            "method": params.get("method", "GET"),
            "expected": list(params.get("expected", (200,))),
            "timeout": params.get("timeout", 10.0),
        },
    )
    probe_result = execute_action(
        action,
        http_checker,
        float(params.get("timeout", 10.0)) + HTTP_PROBE_GRACE_SECONDS,
        cancel_event=cancel_event,
    )
    status = probe_result.details.get("http_status")
    if status is None:
        reason = probe_result.stderr or f"exit code {probe_result.exit_code}"
        return f"{rule.description}: probe failed ({reason})"
    if int(status) in params.get("expected", (200,)):
        return None
    return f"{rule.description}: got HTTP {status}"


def _check_custom_probe(
    result: ExecutionResult,
    rule: ValidationRule,
    probes: Optional[dict[str, Probe]],
) -> Optional[str]:
    name = rule.parameters["probe"]
    probe = (probes or {}).get(name)
    if probe is None:
        return f"{rule.description}: probe is not registered"
    try:
        passed, message = probe(result, dict(rule.parameters.get("parameters", {})))
    except Exception as e:
        logger.log(level=30, msg=f"Probe '{name}' raised {type(e).__name__}: {e}")
        return f"{rule.description}: probe raised {type(e).__name__}: {e}"
    if passed:
        return None
    return f"{rule.description}: {message or 'probe reported failure'}"


def validate(
    result: ExecutionResult,
    rules: tuple[ValidationRule, ...],
    http_checker: Optional[CapabilityRunner] = None,
    probes: Optional[dict[str, Probe]] = None,
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
    cancel_event: Optional[threading.Event] = None,
) -> tuple[bool, list[str]]:
    """
    Evaluate every rule against a result.

    Args:
        result: Result of a step attempt
        rules: Rules to evaluate, in declared order
        http_checker: Runner used for http-status-equals rules
        probes: Named callables for custom-probe rules
        max_output_bytes: stdout beyond this is cut before matching
        cancel_event: Run cancellation, forwarded to HTTP probes

    Returns:
        Tuple of (passed, failures), one failure message per failed rule
    """
    stdout = cap_output(result.stdout, max_output_bytes)
    failures: list[str] = []

    for rule in rules:
        if rule.kind == ValidationKind.EXIT_CODE_EQUALS:
            failure = _check_exit_code(result, rule)
        elif rule.kind == ValidationKind.STDOUT_CONTAINS:
            failure = _check_stdout_contains(stdout, rule)
        elif rule.kind == ValidationKind.STDOUT_REGEX:
            failure = _check_stdout_regex(stdout, rule)
        elif rule.kind == ValidationKind.HTTP_STATUS_EQUALS:
            failure = _check_http_status(rule, http_checker, cancel_event)
        else:
            failure = _check_custom_probe(result, rule, probes)

        if failure:
            failures.append(failure)

    return (not failures, failures)


def describe_action_failure(
    index: int, action: Action, result: ExecutionResult
) -> Optional[str]:
    """Failure message for an action result, None if the exit code was expected."""
    if result.exit_code in action.expected_exit_codes and not result.cancelled:
        return None
    label = f"action {index + 1} ({action.capability.value})"
    if result.timed_out:
        return f"{label} timed out"
    if result.cancelled:
        return f"{label} was cancelled"
    if result.faulted:
        return f"{label} faulted: {result.stderr.strip()[:500]}"
    return (
        f"{label} exited {result.exit_code}, expected one of "
        f"{sorted(action.expected_exit_codes)}"
    )


def evaluate_attempt(
    composite: ExecutionResult,
    action_results: list[ExecutionResult],
    actions: tuple[Action, ...],
    rules: tuple[ValidationRule, ...],
    http_checker: Optional[CapabilityRunner] = None,
    probes: Optional[dict[str, Probe]] = None,
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
    cancel_event: Optional[threading.Event] = None,
) -> ValidationOutcome:
    """
    Verdict for a whole step attempt.

    The attempt passes only when every action met its expected exit codes
    and every rule passed. Rules are skipped for a cancelled attempt.
    """
    failures: list[str] = []
    for i, (action, result) in enumerate(zip(actions, action_results)):
        failure = describe_action_failure(i, action, result)
        if failure:
            failures.append(failure)

    if not composite.cancelled:
        _, rule_failures = validate(
            composite,
            rules,
            http_checker=http_checker,
            probes=probes,
            max_output_bytes=max_output_bytes,
            cancel_event=cancel_event,
        )
        failures.extend(rule_failures)

    return ValidationOutcome(passed=not failures, failures=tuple(failures))


def require_valid(
    result: ExecutionResult,
    rules: tuple[ValidationRule, ...],
    http_checker: Optional[CapabilityRunner] = None,
    probes: Optional[dict[str, Probe]] = None,
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
) -> None:
    """
    Raise if a result does not pass every rule.

    Raises:
        ValidationFailed: With every failure message
    """
    passed, failures = validate(
        result, rules, http_checker=http_checker, probes=probes,
        max_output_bytes=max_output_bytes,
    )
    if not passed:
        raise ValidationFailed(failures)
