"""Capability runners shipped with Caps.

Usage:
    from Caps.Core.playbook.runners import default_registry

    registry = default_registry(shell="/bin/bash")
"""

from typing import Optional

from Caps.Core.playbook.runners.base import (
    ActionFault,
    ActionTimeout,
    CapabilityRunner,
    FunctionRunner,
    RunnerRegistry,
)
from Caps.Core.playbook.runners.file_write import FileWriteRunner
from Caps.Core.playbook.runners.http_check import HttpCheckRunner
from Caps.Core.playbook.runners.shell import KubectlRunner, ShellRunner
from Caps.Core.playbook_parser import Capability


def default_registry(
    shell: str = "/bin/sh",
    kubectl_binary: str = "kubectl",
    file_base_dir: Optional[str] = None,
) -> RunnerRegistry:
    """Registry with a runner for every built-in capability."""
    return RunnerRegistry({
        Capability.SHELL: ShellRunner(shell),
        Capability.KUBECTL: KubectlRunner(kubectl_binary),
        Capability.HTTP_CHECK: HttpCheckRunner(),
        Capability.FILE_WRITE: FileWriteRunner(file_base_dir),
    })


__all__ = [
    "ActionFault",
    "ActionTimeout",
    "CapabilityRunner",
    "FunctionRunner",
    "RunnerRegistry",
    "ShellRunner",
    "KubectlRunner",
    "HttpCheckRunner",
    "FileWriteRunner",
    "default_registry",
]
