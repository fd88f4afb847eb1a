"""Playbook document parser for Caps.

This module parses and validates playbook documents. A playbook is an
ordered set of steps describing an operational procedure (deploying a
database, rolling out a service, ...). Each step runs one or more actions
through a capability runner and then checks the result with validation
rules.

Supported capabilities:
- shell: run a command line through the configured shell
- kubectl: run a kubectl command
- http-check: issue an HTTP request and report the status code
- file-write: write content (usually a manifest) to a file

Supported validation rule kinds:
- exit-code-equals: exit code is one of the expected codes
- stdout-contains: captured stdout contains a substring
- stdout-regex: captured stdout matches a regular expression
- http-status-equals: an HTTP probe returns one of the expected statuses
- custom-probe: a named probe registered by the host application

Two document layouts are accepted. A frontmatter block followed by the
step list:

    ---
    id: deploy-postgres
    title: Deploy Postgres
    version: "1.2"
    allowed_capabilities: [shell, kubectl]
    ---
    - name: apply-manifest
      actions:
        - capability: kubectl
          payload: apply -f postgres.yaml
    - name: wait-ready
      prerequisites: [apply-manifest]
      actions:
        - capability: kubectl
          payload: get pods -l app=postgres
      validations:
        - kind: stdout-contains
          value: Running
      retry_policy: {max_attempts: 10, backoff_base: 2s, backoff_max: 30s}

or a single YAML/JSON mapping holding the same frontmatter keys and a
``steps`` list.
"""

import logging
import re
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union

import yaml  # type: ignore[import-untyped]

import Caps.Helpers.logSettings as logLevel

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

DEFAULT_STEP_TIMEOUT = "5m"
DEFAULT_MAX_ATTEMPTS = 1
DEFAULT_BACKOFF_BASE = 1.0
DEFAULT_BACKOFF_MAX = 30.0

FRONTMATTER_DELIMITER = "---"


class Capability(str, Enum):
    """Categories of externally executable operations."""

    SHELL = "shell"
    KUBECTL = "kubectl"
    HTTP_CHECK = "http-check"
    FILE_WRITE = "file-write"

    @classmethod
    def is_valid(cls, value: str) -> bool:
        """Check if a value is a known capability."""
        try:
            cls(str(value).lower())
            return True
        except ValueError:
            return False


class ValidationKind(str, Enum):
    """Supported validation rule kinds."""

    EXIT_CODE_EQUALS = "exit-code-equals"
    STDOUT_CONTAINS = "stdout-contains"
    STDOUT_REGEX = "stdout-regex"
    HTTP_STATUS_EQUALS = "http-status-equals"
    CUSTOM_PROBE = "custom-probe"


class OnFailureAction(str, Enum):
    """What the run does once a step has failed terminally."""

    CONTINUE = "continue"  # Keep running steps that don't depend on it
    ABORT = "abort"  # Abort the run immediately


@dataclass(frozen=True)
class Action:
    """A single executable unit of a step."""

    capability: Capability
    payload: Any
    expected_exit_codes: frozenset = frozenset({0})

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "capability": self.capability.value,
            "payload": self.payload,
            "expected_exit_codes": sorted(self.expected_exit_codes),
        }


@dataclass(frozen=True)
class ValidationRule:
    """A predicate over an execution result.

    ``parameters`` holds the kind-specific settings:
    - exit-code-equals: expected (tuple of ints)
    - stdout-contains: value
    - stdout-regex: pattern (compiled into ``regex``)
    - http-status-equals: url, method, expected (tuple of ints), timeout
    - custom-probe: probe (name), parameters (dict)
    """

    kind: ValidationKind
    parameters: dict[str, Any] = field(default_factory=dict)
    regex: Optional[re.Pattern] = None

    @property
    def description(self) -> str:
        """Short human readable form used in failure messages."""
        p = self.parameters
        if self.kind == ValidationKind.EXIT_CODE_EQUALS:
            return f"exit-code-equals {list(p.get('expected', ()))}"
        if self.kind == ValidationKind.STDOUT_CONTAINS:
            return f"stdout-contains '{p.get('value')}'"
        if self.kind == ValidationKind.STDOUT_REGEX:
            return f"stdout-regex /{p.get('pattern')}/"
        if self.kind == ValidationKind.HTTP_STATUS_EQUALS:
            return f"http-status-equals {list(p.get('expected', ()))} for {p.get('url')}"
        return f"custom-probe '{p.get('probe')}'"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        data: dict[str, Any] = {"kind": self.kind.value}
        for key, value in self.parameters.items():
            data[key] = list(value) if isinstance(value, tuple) else value
        return data


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with exponential backoff."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_base: float = DEFAULT_BACKOFF_BASE
    backoff_max: float = DEFAULT_BACKOFF_MAX

    def delay_before(self, attempt_number: int) -> float:
        """
        Seconds to wait before the given attempt.

        Attempt 1 never waits; attempt n waits
        min(backoff_base * 2 ** (n - 2), backoff_max).
        """
        if attempt_number <= 1:
            return 0.0
        return min(self.backoff_base * (2 ** (attempt_number - 2)), self.backoff_max)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "max_attempts": self.max_attempts,
            "backoff_base": self.backoff_base,
            "backoff_max": self.backoff_max,
        }


@dataclass(frozen=True)
class Step:
    """One named unit of work."""

    name: str
    actions: tuple[Action, ...] = ()
    prerequisites: frozenset = frozenset()
    validations: tuple[ValidationRule, ...] = ()
    retry_policy: RetryPolicy = RetryPolicy()
    timeout_seconds: float = 300.0
    on_failure: OnFailureAction = OnFailureAction.CONTINUE
    rollback: tuple[Action, ...] = ()
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name": self.name,
            "description": self.description,
            "actions": [a.to_dict() for a in self.actions],
            "prerequisites": sorted(self.prerequisites),
            "validations": [v.to_dict() for v in self.validations],
            "retry_policy": self.retry_policy.to_dict(),
            "timeout": self.timeout_seconds,
            "on_failure": self.on_failure.value,
            "rollback": [a.to_dict() for a in self.rollback],
        }


@dataclass(frozen=True)
class Playbook:
    """Parsed, immutable playbook definition."""

    id: str
    title: str
    version: str
    steps: tuple[Step, ...]
    allowed_capabilities: frozenset
    description: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    source: str = field(default="", compare=False, repr=False)

    @property
    def key(self) -> tuple[str, str]:
        """Identity used for idempotent re-execution."""
        return (self.id, self.version)

    @property
    def step_names(self) -> list[str]:
        """Step names in declared order."""
        return [s.name for s in self.steps]

    def get_step(self, name: str) -> Optional[Step]:
        """Find a step by name."""
        for step in self.steps:
            if step.name == name:
                return step
        return None

    def topological_order(self) -> list[str]:
        """Step names in dependency order, ties broken by declared order."""
        return topological_sort(self.steps)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a document mapping that parses back to this playbook."""
        data = dict(self.metadata)
        data.update({
            "id": self.id,
            "title": self.title,
            "version": self.version,
            "description": self.description,
            "allowed_capabilities": sorted(c.value for c in self.allowed_capabilities),
            "steps": [step.to_dict() for step in self.steps],
        })
        return data


class PlaybookParseError(Exception):
    """Exception raised when playbook parsing fails."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        self.message = message
        super().__init__(f"{message}" if not field else f"Field '{field}': {message}")


class MalformedDocument(PlaybookParseError):
    """Required fields are missing or a value has the wrong shape."""


class CyclicDependency(PlaybookParseError):
    """The prerequisite graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(
            f"Prerequisite cycle among steps: {', '.join(cycle)}", "prerequisites"
        )


class UnknownCapability(PlaybookParseError):
    """An action uses a capability the playbook does not allow."""

    def __init__(self, capability: str, field: Optional[str] = None):
        self.capability = capability
        super().__init__(
            f"Capability '{capability}' is not in allowed_capabilities", field
        )


def parse_duration(duration: Union[str, int, float]) -> float:
    """
    Parse a duration to seconds.

    Supports formats:
    - 30 or "30" or "30s" -> 30 seconds
    - "0.5s" -> half a second
    - "5m" -> 300 seconds (5 minutes)
    - "1h" -> 3600 seconds (1 hour)

    Raises:
        ValueError: If format is invalid
    """
    if isinstance(duration, bool):
        raise ValueError("Duration must be a number or string")
    if isinstance(duration, (int, float)):
        if duration < 0:
            raise ValueError("Duration cannot be negative")
        return float(duration)

    if duration is None or not str(duration).strip():
        raise ValueError("Duration cannot be empty")

    duration_str = str(duration).strip().lower()

    match = re.match(r"^(\d+(?:\.\d+)?)(s|m|h)?$", duration_str)
    if not match:
        raise ValueError(
            f"Invalid duration format: '{duration_str}'. "
            "Expected number with optional unit (s/m/h)"
        )

    value = float(match.group(1))
    unit = match.group(2) or "s"

    if unit == "m":
        return value * 60
    elif unit == "h":
        return value * 3600
    return value


def _parse_int_set(value: Any, field_name: str) -> tuple[int, ...]:
    """Accept a single int or a list of ints."""
    items = value if isinstance(value, list) else [value]
    codes = []
    for item in items:
        if isinstance(item, bool):
            raise MalformedDocument(f"Expected integer, got {item!r}", field_name)
        try:
            codes.append(int(item))
        except (TypeError, ValueError):
            raise MalformedDocument(f"Expected integer, got {item!r}", field_name)
    if not codes:
        raise MalformedDocument("At least one value is required", field_name)
    return tuple(codes)


def _parse_action(
    data: Any, allowed: frozenset, field_name: str
) -> Action:
    if not isinstance(data, dict):
        raise MalformedDocument("Action must be a mapping", field_name)

    capability_str = data.get("capability")
    if not capability_str:
        raise MalformedDocument("Action capability is required", f"{field_name}.capability")

    if not Capability.is_valid(capability_str):
        raise UnknownCapability(str(capability_str), f"{field_name}.capability")
    capability = Capability(str(capability_str).lower())
    if capability not in allowed:
        raise UnknownCapability(capability.value, f"{field_name}.capability")

    if "payload" not in data or data.get("payload") in (None, ""):
        raise MalformedDocument("Action payload is required", f"{field_name}.payload")
    payload = data["payload"]
    if not isinstance(payload, (str, dict)):
        raise MalformedDocument(
            "Action payload must be a string or mapping", f"{field_name}.payload"
        )

    expected = data.get("expected_exit_codes", [0])
    codes = _parse_int_set(expected, f"{field_name}.expected_exit_codes")

    return Action(
        capability=capability,
        payload=payload,
        expected_exit_codes=frozenset(codes),
    )


def _parse_validation(data: Any, field_name: str) -> ValidationRule:
    if not isinstance(data, dict):
        raise MalformedDocument("Validation rule must be a mapping", field_name)

    kind_str = data.get("kind") or data.get("type")
    if not kind_str:
        raise MalformedDocument("Validation kind is required", f"{field_name}.kind")
    try:
        kind = ValidationKind(str(kind_str).lower())
    except ValueError:
        valid_kinds = [k.value for k in ValidationKind]
        raise MalformedDocument(
            f"Invalid validation kind: {kind_str}. Must be one of {valid_kinds}",
            f"{field_name}.kind",
        )

    if kind == ValidationKind.EXIT_CODE_EQUALS:
        expected = data.get("expected", data.get("value", 0))
        return ValidationRule(
            kind=kind,
            parameters={"expected": _parse_int_set(expected, f"{field_name}.expected")},
        )

    if kind == ValidationKind.STDOUT_CONTAINS:
        value = data.get("value")
        if value is None or value == "":
            raise MalformedDocument(
                "stdout-contains requires 'value'", f"{field_name}.value"
            )
        return ValidationRule(kind=kind, parameters={"value": str(value)})

    if kind == ValidationKind.STDOUT_REGEX:
        pattern = data.get("pattern") or data.get("value")
        if not pattern:
            raise MalformedDocument(
                "stdout-regex requires 'pattern'", f"{field_name}.pattern"
            )
        try:
            compiled = re.compile(str(pattern), re.MULTILINE)
        except re.error as e:
            raise MalformedDocument(
                f"Invalid regular expression: {e}", f"{field_name}.pattern"
            )
        return ValidationRule(
            kind=kind, parameters={"pattern": str(pattern)}, regex=compiled
        )

    if kind == ValidationKind.HTTP_STATUS_EQUALS:
        url = data.get("url")
        if not url:
            raise MalformedDocument(
                "http-status-equals requires 'url'", f"{field_name}.url"
            )
        expected = data.get("expected", 200)
        timeout = data.get("timeout", "10s")
        try:
            timeout_seconds = parse_duration(timeout)
        except ValueError as e:
            raise MalformedDocument(str(e), f"{field_name}.timeout")
        return ValidationRule(
            kind=kind,
            parameters={
                "url": str(url),
                "method": str(data.get("method", "GET")).upper(),
                "expected": _parse_int_set(expected, f"{field_name}.expected"),
                "timeout": timeout_seconds,
            },
        )

    probe = data.get("probe") or data.get("name")
    if not probe:
        raise MalformedDocument("custom-probe requires 'probe'", f"{field_name}.probe")
    parameters = data.get("parameters", {})
    if not isinstance(parameters, dict):
        raise MalformedDocument(
            "Probe parameters must be a mapping", f"{field_name}.parameters"
        )
    return ValidationRule(
        kind=kind, parameters={"probe": str(probe), "parameters": parameters}
    )


def _parse_retry_policy(data: Any, field_name: str) -> RetryPolicy:
    if data is None:
        return RetryPolicy()
    if not isinstance(data, dict):
        raise MalformedDocument("retry_policy must be a mapping", field_name)

    max_attempts = data.get("max_attempts", DEFAULT_MAX_ATTEMPTS)
    if isinstance(max_attempts, bool):
        raise MalformedDocument(
            "max_attempts must be an integer", f"{field_name}.max_attempts"
        )
    try:
        max_attempts = int(max_attempts)
    except (TypeError, ValueError):
        raise MalformedDocument(
            "max_attempts must be an integer", f"{field_name}.max_attempts"
        )
    if max_attempts < 1:
        raise MalformedDocument(
            "max_attempts must be at least 1", f"{field_name}.max_attempts"
        )

    try:
        backoff_base = parse_duration(data.get("backoff_base", DEFAULT_BACKOFF_BASE))
    except ValueError as e:
        raise MalformedDocument(str(e), f"{field_name}.backoff_base")
    try:
        backoff_max = parse_duration(data.get("backoff_max", DEFAULT_BACKOFF_MAX))
    except ValueError as e:
        raise MalformedDocument(str(e), f"{field_name}.backoff_max")
    if backoff_max < backoff_base:
        raise MalformedDocument(
            "backoff_max must not be smaller than backoff_base",
            f"{field_name}.backoff_max",
        )

    return RetryPolicy(
        max_attempts=max_attempts, backoff_base=backoff_base, backoff_max=backoff_max
    )


def _parse_name_list(value: Any, field_name: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        raise MalformedDocument("Must be a list of step names", field_name)
    return [str(v) for v in value]


def _parse_step(
    data: Any, index: int, allowed: frozenset, default_timeout: Optional[float] = None
) -> Step:
    """
    Parse a single step definition.

    Args:
        data: Step mapping from the document
        index: Zero-based position of the step (used in error fields)
        allowed: Capabilities the playbook allows

    Returns:
        Step object

    Raises:
        PlaybookParseError: If the step is invalid
    """
    prefix = f"steps[{index}]"
    if not isinstance(data, dict):
        raise MalformedDocument("Step must be a mapping", prefix)

    name = data.get("name")
    if not name:
        raise MalformedDocument("Step name is required", f"{prefix}.name")

    actions_data = data.get("actions", [])
    if actions_data is None:
        actions_data = []
    if not isinstance(actions_data, list):
        raise MalformedDocument("actions must be a list", f"{prefix}.actions")
    actions = tuple(
        _parse_action(a, allowed, f"{prefix}.actions[{i}]")
        for i, a in enumerate(actions_data)
    )

    rollback_data = data.get("rollback", [])
    if rollback_data is None:
        rollback_data = []
    if not isinstance(rollback_data, list):
        raise MalformedDocument("rollback must be a list", f"{prefix}.rollback")
    rollback = tuple(
        _parse_action(a, allowed, f"{prefix}.rollback[{i}]")
        for i, a in enumerate(rollback_data)
    )

    validations_data = data.get("validations", [])
    if validations_data is None:
        validations_data = []
    if not isinstance(validations_data, list):
        raise MalformedDocument("validations must be a list", f"{prefix}.validations")
    validations = tuple(
        _parse_validation(v, f"{prefix}.validations[{i}]")
        for i, v in enumerate(validations_data)
    )

    prerequisites = _parse_name_list(
        data.get("prerequisites"), f"{prefix}.prerequisites"
    )

    try:
        timeout = data.get("timeout")
        if timeout is None:
            timeout = DEFAULT_STEP_TIMEOUT if default_timeout is None else default_timeout
        timeout_seconds = parse_duration(timeout)
    except ValueError as e:
        raise MalformedDocument(str(e), f"{prefix}.timeout")
    if timeout_seconds <= 0:
        raise MalformedDocument("timeout must be positive", f"{prefix}.timeout")

    on_failure_str = data.get("on_failure", OnFailureAction.CONTINUE.value)
    try:
        on_failure = OnFailureAction(str(on_failure_str).lower())
    except ValueError:
        valid_actions = [a.value for a in OnFailureAction]
        raise MalformedDocument(
            f"Invalid on_failure action: {on_failure_str}. "
            f"Must be one of {valid_actions}",
            f"{prefix}.on_failure",
        )

    return Step(
        name=str(name),
        description=str(data.get("description", "")),
        actions=actions,
        prerequisites=frozenset(prerequisites),
        validations=validations,
        retry_policy=_parse_retry_policy(
            data.get("retry_policy"), f"{prefix}.retry_policy"
        ),
        timeout_seconds=timeout_seconds,
        on_failure=on_failure,
        rollback=rollback,
    )


def topological_sort(steps: Union[list[Step], tuple[Step, ...]]) -> list[str]:
    """
    Order steps so every step follows its prerequisites (Kahn's algorithm).

    Among steps that are ready at the same time the declared order wins,
    so the result is deterministic.

    Raises:
        CyclicDependency: If some steps can never become ready
    """
    order_index = {step.name: i for i, step in enumerate(steps)}
    in_degree = {step.name: len(step.prerequisites) for step in steps}
    dependents: dict[str, list[str]] = {step.name: [] for step in steps}
    for step in steps:
        for prereq in step.prerequisites:
            if prereq in dependents:
                dependents[prereq].append(step.name)

    ready = deque(step.name for step in steps if in_degree[step.name] == 0)
    ordered: list[str] = []
    while ready:
        name = ready.popleft()
        ordered.append(name)
        newly_ready = []
        for dependent in dependents[name]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                newly_ready.append(dependent)
        # Keep the queue sorted by declared position
        merged = sorted(list(ready) + newly_ready, key=order_index.__getitem__)
        ready = deque(merged)

    if len(ordered) != len(steps):
        done = set(ordered)
        remaining = [s.name for s in steps if s.name not in done]
        raise CyclicDependency(remaining)

    return ordered


def _split_document(raw_document: str) -> dict[str, Any]:
    """
    Load a raw document into a single mapping.

    A leading ``---`` line starts a frontmatter block that ends at the next
    ``---`` line; whatever follows is the step list (or a mapping holding
    ``steps``). Documents without frontmatter are loaded as one mapping.
    """
    text = raw_document.lstrip("\ufeff")
    lines = text.splitlines()

    # Skip blank lines ahead of a possible frontmatter delimiter
    first = 0
    while first < len(lines) and not lines[first].strip():
        first += 1

    if first < len(lines) and lines[first].strip() == FRONTMATTER_DELIMITER:
        closing = None
        for i in range(first + 1, len(lines)):
            if lines[i].strip() == FRONTMATTER_DELIMITER:
                closing = i
                break
        if closing is None:
            raise MalformedDocument("Frontmatter block is not closed with '---'")

        front_text = "\n".join(lines[first + 1:closing])
        body_text = "\n".join(lines[closing + 1:])
        try:
            front = yaml.safe_load(front_text) or {}
            body = yaml.safe_load(body_text) if body_text.strip() else None
        except yaml.YAMLError as e:
            raise MalformedDocument(f"Invalid YAML syntax: {e}")

        if not isinstance(front, dict):
            raise MalformedDocument("Frontmatter must be a mapping")

        data = dict(front)
        if body is None:
            data.setdefault("steps", [])
        elif isinstance(body, list):
            data["steps"] = body
        elif isinstance(body, dict):
            for key, value in body.items():
                data.setdefault(key, value)
        else:
            raise MalformedDocument("Document body must be a list of steps", "steps")
        return data

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise MalformedDocument(f"Invalid YAML syntax: {e}")

    if not isinstance(data, dict):
        raise MalformedDocument("Playbook must be a mapping or use a frontmatter block")
    return data


def parse_playbook_dict(
    data: dict[str, Any], source: str = "", default_timeout: Optional[float] = None
) -> Playbook:
    """
    Build a Playbook from an already-loaded mapping.

    Steps without a ``timeout`` get ``default_timeout`` seconds (5m when
    not given).

    Raises:
        MalformedDocument, CyclicDependency, UnknownCapability
    """
    if not isinstance(data, dict):
        raise MalformedDocument("Playbook must be a mapping")

    for required in ("id", "title", "version"):
        value = data.get(required)
        if value is None or str(value).strip() == "":
            raise MalformedDocument(f"Playbook {required} is required", required)

    allowed_data = data.get("allowed_capabilities")
    if allowed_data is None:
        raise MalformedDocument(
            "Playbook allowed_capabilities is required", "allowed_capabilities"
        )
    if isinstance(allowed_data, str):
        allowed_data = [allowed_data]
    if not isinstance(allowed_data, list):
        raise MalformedDocument(
            "allowed_capabilities must be a list", "allowed_capabilities"
        )
    allowed = set()
    for cap in allowed_data:
        if not Capability.is_valid(cap):
            valid_caps = [c.value for c in Capability]
            raise MalformedDocument(
                f"Invalid capability: {cap}. Must be one of {valid_caps}",
                "allowed_capabilities",
            )
        allowed.add(Capability(str(cap).lower()))
    allowed_caps = frozenset(allowed)

    steps_data = data.get("steps", [])
    if steps_data is None:
        steps_data = []
    if not isinstance(steps_data, list):
        raise MalformedDocument("Steps must be a list", "steps")

    steps: list[Step] = []
    step_names: set = set()
    for i, step_data in enumerate(steps_data):
        step = _parse_step(step_data, i, allowed_caps, default_timeout)
        if step.name in step_names:
            raise MalformedDocument(
                f"Duplicate step name: '{step.name}'", f"steps[{i}].name"
            )
        step_names.add(step.name)
        steps.append(step)

    for i, step in enumerate(steps):
        for prereq in sorted(step.prerequisites):
            if prereq not in step_names:
                raise MalformedDocument(
                    f"Step '{step.name}' depends on unknown step '{prereq}'",
                    f"steps[{i}].prerequisites",
                )

    topological_sort(steps)

    reserved_keys = {
        "id", "title", "version", "description", "allowed_capabilities", "steps",
    }
    metadata = {k: v for k, v in data.items() if k not in reserved_keys}

    playbook = Playbook(
        id=str(data["id"]),
        title=str(data["title"]),
        version=str(data["version"]),
        description=str(data.get("description", "") or ""),
        steps=tuple(steps),
        allowed_capabilities=allowed_caps,
        metadata=metadata,
        source=source,
    )

    logger.log(
        level=10,
        msg=f"Parsed playbook '{playbook.id}' v{playbook.version} "
        f"with {len(playbook.steps)} step(s)",
    )
    return playbook


def parse_playbook(raw_document: str, default_timeout: Optional[float] = None) -> Playbook:
    """
    Parse a playbook document.

    Args:
        raw_document: Document text (frontmatter + steps, or one mapping)
        default_timeout: Seconds for steps that declare no timeout

    Returns:
        Playbook object

    Raises:
        MalformedDocument: If the document is invalid or missing fields
        CyclicDependency: If prerequisites form a cycle
        UnknownCapability: If an action uses a capability not allowed
    """
    if not raw_document or not str(raw_document).strip():
        raise MalformedDocument("Playbook document cannot be empty")

    data = _split_document(str(raw_document))
    return parse_playbook_dict(
        data, source=str(raw_document), default_timeout=default_timeout
    )


def load_playbook_file(
    path: Union[str, Path], default_timeout: Optional[float] = None
) -> Playbook:
    """Read and parse a playbook document from disk."""
    path = Path(path)
    try:
        text = path.read_text("utf-8")
    except OSError as e:
        raise MalformedDocument(f"Unable to read playbook file {path}: {e}")
    return parse_playbook(text, default_timeout=default_timeout)


def validate_playbook_document(raw_document: str) -> list[str]:
    """
    Validate a playbook document without returning the parsed result.

    Returns:
        List of error messages (empty if valid)
    """
    errors: list[str] = []

    try:
        parse_playbook(raw_document)
    except PlaybookParseError as e:
        errors.append(str(e))

    return errors


def is_valid_playbook_document(raw_document: str) -> bool:
    """Check if a playbook document is valid."""
    return len(validate_playbook_document(raw_document)) == 0
