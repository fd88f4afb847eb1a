"""Shell and kubectl capability runners.

Both runners start a subprocess, capture its output, and kill it when the
engine sets the abort event. Child processes get an allowlisted
environment so engine credentials (PG_PASS, tokens, ...) never leak into
playbook commands.

Payloads:
    shell:   "systemctl restart nginx"
             {"command": "...", "env": {...}, "cwd": "/srv", "input": "..."}
    kubectl: "apply -f postgres.yaml"
             {"args": ["get", "pods"], "env": {...}}
"""

import logging
import os
import shlex
import signal
import subprocess
import threading
import time
from typing import Any, Optional

import Caps.Helpers.logSettings as logLevel
from Caps.Core.playbook.models import ExecutionResult
from Caps.Core.playbook.runners.base import ActionFault, CapabilityRunner
from Caps.Core.playbook_parser import Action
from Caps.Core.utils.datetime_helpers import now as get_now

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

# How often a running process is checked against the abort event
PROCESS_POLL_INTERVAL = 0.1

# How long a killed process group gets to release its output pipes
KILL_WAIT_SECONDS = 1.0

# Allowlist of environment variables passed to child processes
ALLOWED_ENV_VARS: list[str] = [
    "PATH",
    "HOME",
    "USER",
    "LANG",
    "LC_ALL",
    "TZ",
    "KUBECONFIG",
]


def build_process_env(extra: Optional[dict[str, Any]] = None) -> dict[str, str]:
    """
    Build a safe environment for a child process.

    Only allowlisted variables are copied from the engine's environment.
    CAPS_ADDITIONAL_ENV_VARS (comma-separated names) extends the allowlist;
    ``extra`` comes from the action payload and is added as given.
    """
    allowed = set(ALLOWED_ENV_VARS)
    additional = os.environ.get("CAPS_ADDITIONAL_ENV_VARS", "")
    for name in additional.split(","):
        name = name.strip()
        if name:
            allowed.add(name)

    env = {name: os.environ[name] for name in allowed if name in os.environ}
    for key, value in (extra or {}).items():
        env[str(key)] = str(value)
    return env


def _kill_process_group(proc: subprocess.Popen) -> None:
    """SIGKILL the process and everything it started."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        logger.log(level=10, msg=f"Process group {proc.pid} already exited")


def run_process(
    argv: list[str],
    abort_event: threading.Event,
    env: Optional[dict[str, str]] = None,
    cwd: Optional[str] = None,
    stdin_text: Optional[str] = None,
) -> ExecutionResult:
    """
    Run a process to completion or until ``abort_event`` is set.

    The process leads its own session, so on abort the whole group is
    killed, including children of a shell command. Whatever it printed so
    far is returned with its (signal) return code.

    Raises:
        ActionFault: The process could not be started
    """
    started_at = get_now()
    start = time.monotonic()
    try:
        proc = subprocess.Popen(
            argv,
            stdin=subprocess.PIPE if stdin_text is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            env=env,
            cwd=cwd,
            start_new_session=True,
        )
    except (OSError, ValueError) as e:
        raise ActionFault(f"Cannot start {argv[0]}: {e}") from e

    pending_input = stdin_text
    while True:
        try:
            stdout, stderr = proc.communicate(
                input=pending_input, timeout=PROCESS_POLL_INTERVAL
            )
            break
        except subprocess.TimeoutExpired:
            pending_input = None
            if abort_event.is_set():
                logger.log(level=30, msg=f"Killing aborted process group of {argv[0]}")
                _kill_process_group(proc)
                try:
                    stdout, stderr = proc.communicate(timeout=KILL_WAIT_SECONDS)
                except subprocess.TimeoutExpired:
                    logger.log(
                        level=40,
                        msg=f"Output pipes of killed {argv[0]} still open; "
                        "dropping its output",
                    )
                    proc.wait()
                    stdout, stderr = "", ""
                break

    return ExecutionResult(
        exit_code=proc.returncode,
        stdout=stdout or "",
        stderr=stderr or "",
        duration=time.monotonic() - start,
        started_at=started_at,
    )


class ShellRunner(CapabilityRunner):
    """Runs command lines through a shell (``<shell> -c <command>``)."""

    def __init__(self, shell: str = "/bin/sh"):
        self.shell = shell

    def run(self, action: Action, abort_event: threading.Event) -> ExecutionResult:
        payload = action.payload
        if isinstance(payload, dict):
            command = payload.get("command")
            env = build_process_env(payload.get("env"))
            cwd = payload.get("cwd")
            stdin_text = payload.get("input")
        else:
            command, env, cwd, stdin_text = payload, build_process_env(), None, None

        if not command:
            raise ActionFault("shell payload has no command")

        logger.log(level=20, msg=f"Running shell command: {command}")
        return run_process(
            [self.shell, "-c", str(command)],
            abort_event,
            env=env,
            cwd=cwd,
            stdin_text=stdin_text,
        )


class KubectlRunner(CapabilityRunner):
    """Runs kubectl with the payload as its arguments."""

    def __init__(self, binary: str = "kubectl", context: Optional[str] = None):
        self.binary = binary
        self.context = context

    def build_argv(self, payload: Any) -> list[str]:
        if isinstance(payload, dict):
            args = payload.get("args")
            if isinstance(args, str):
                args = shlex.split(args)
        else:
            args = shlex.split(str(payload))
        if not args:
            raise ActionFault("kubectl payload has no arguments")
        argv = [self.binary]
        if self.context:
            argv += ["--context", self.context]
        return argv + [str(a) for a in args]

    def run(self, action: Action, abort_event: threading.Event) -> ExecutionResult:
        payload = action.payload
        try:
            argv = self.build_argv(payload)
        except ValueError as e:
            raise ActionFault(f"Cannot parse kubectl arguments: {e}") from e
        env = build_process_env(payload.get("env") if isinstance(payload, dict) else None)
        stdin_text = payload.get("input") if isinstance(payload, dict) else None

        logger.log(level=20, msg=f"Running {' '.join(argv)}")
        return run_process(argv, abort_event, env=env, stdin_text=stdin_text)
