"""File write capability runner.

Writes content (usually a rendered manifest) to a file. When the runner
has a base directory, paths must resolve inside it.

Payload:
    {"path": "manifests/postgres.yaml", "content": "...", "mode": "0644",
     "append": false}
"""

import logging
import os
import threading
import time
from pathlib import Path
from typing import Optional, Union

import Caps.Helpers.logSettings as logLevel
from Caps.Core.playbook.models import ExecutionResult
from Caps.Core.playbook.runners.base import ActionFault, CapabilityRunner
from Caps.Core.playbook_parser import Action
from Caps.Core.utils.datetime_helpers import now as get_now

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())


class FileWriteRunner(CapabilityRunner):
    """Writes payload content to disk."""

    def __init__(self, base_dir: Optional[Union[str, Path]] = None):
        self.base_dir = Path(base_dir).resolve() if base_dir else None

    def resolve_path(self, raw_path: str) -> Path:
        path = Path(raw_path)
        if self.base_dir is None:
            return path
        if not path.is_absolute():
            path = self.base_dir / path
        resolved = path.resolve()
        if resolved != self.base_dir and self.base_dir not in resolved.parents:
            raise ActionFault(f"Path '{raw_path}' is outside {self.base_dir}")
        return resolved

    def run(self, action: Action, abort_event: threading.Event) -> ExecutionResult:
        payload = action.payload
        if not isinstance(payload, dict):
            raise ActionFault("file-write payload must be a mapping with path and content")
        if not payload.get("path"):
            raise ActionFault("file-write payload has no path")

        path = self.resolve_path(str(payload["path"]))
        content = payload.get("content", "")
        if not isinstance(content, str):
            content = str(content)
        append = bool(payload.get("append", False))

        started_at = get_now()
        start = time.monotonic()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a" if append else "w", encoding="utf-8") as f:
                f.write(content)
            if payload.get("mode"):
                os.chmod(path, int(str(payload["mode"]), 8))
        except (OSError, ValueError) as e:
            logger.log(level=30, msg=f"Unable to write {path}: {e}")
            return ExecutionResult(
                exit_code=1,
                stderr=f"Unable to write {path}: {e}",
                duration=time.monotonic() - start,
                started_at=started_at,
            )

        size = len(content.encode("utf-8"))
        logger.log(level=20, msg=f"Wrote {size} bytes to {path}")
        return ExecutionResult(
            exit_code=0,
            stdout=f"Wrote {size} bytes to {path}",
            duration=time.monotonic() - start,
            started_at=started_at,
            details={"path": str(path), "bytes": size},
        )
