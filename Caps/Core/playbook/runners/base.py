"""Capability runner interface.

A capability runner executes one Action of a given capability and reports
an ExecutionResult. The engine never talks to shells, clusters or HTTP
endpoints itself; everything goes through a runner looked up in a
RunnerRegistry, so tests and embedding applications can inject their own.

Runners must be reentrant: one instance may serve several runs at once.
A runner should watch ``abort_event`` and stop early when it is set,
returning whatever partial output it has.

Usage:
    from Caps.Core.playbook.runners.base import FunctionRunner, RunnerRegistry
    from Caps.Core.playbook_parser import Capability

    registry = RunnerRegistry()
    registry.register(
        Capability.SHELL,
        FunctionRunner(lambda action, abort: ExecutionResult(exit_code=0)),
    )
"""

import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Optional, Union

from Caps.Core.playbook.models import ExecutionResult
from Caps.Core.playbook_parser import Action, Capability


class ActionTimeout(Exception):
    """An action did not finish within its step's timeout."""


class ActionFault(Exception):
    """A runner could not execute an action."""


class CapabilityRunner(ABC):
    """Executes actions of one capability."""

    @abstractmethod
    def run(self, action: Action, abort_event: threading.Event) -> ExecutionResult:
        """
        Execute the action.

        Args:
            action: Action with its payload already substituted
            abort_event: Set by the engine on timeout or cancellation

        Returns:
            ExecutionResult describing what happened

        Raises:
            ActionFault: The runner could not execute the action at all
            ActionTimeout: The runner gave up waiting on its own
        """


class FunctionRunner(CapabilityRunner):
    """Adapts a plain callable ``(action, abort_event) -> ExecutionResult``."""

    def __init__(
        self, func: Callable[[Action, threading.Event], ExecutionResult]
    ):
        self.func = func

    def run(self, action: Action, abort_event: threading.Event) -> ExecutionResult:
        return self.func(action, abort_event)


class RunnerRegistry:
    """Maps capabilities to runners."""

    def __init__(
        self, runners: Optional[dict[Union[Capability, str], CapabilityRunner]] = None
    ):
        self._runners: dict[Capability, CapabilityRunner] = {}
        self._lock = threading.Lock()
        for capability, runner in (runners or {}).items():
            self.register(capability, runner)

    def register(
        self, capability: Union[Capability, str], runner: CapabilityRunner
    ) -> None:
        """Register (or replace) the runner for a capability."""
        if not isinstance(capability, Capability):
            capability = Capability(str(capability).lower())
        if not isinstance(runner, CapabilityRunner):
            if not callable(runner):
                raise TypeError(f"Runner for {capability.value} must be callable")
            runner = FunctionRunner(runner)
        with self._lock:
            self._runners[capability] = runner

    def get(self, capability: Capability) -> Optional[CapabilityRunner]:
        """Runner for a capability, or None if none is registered."""
        with self._lock:
            return self._runners.get(capability)

    def capabilities(self) -> list[str]:
        """Registered capability names."""
        with self._lock:
            return sorted(c.value for c in self._runners)

    def __contains__(self, capability: object) -> bool:
        with self._lock:
            return capability in self._runners
