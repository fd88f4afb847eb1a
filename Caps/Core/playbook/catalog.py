"""Playbook catalog.

Holds parsed playbooks by id and version, optionally loaded from a
directory of ``*.yaml``, ``*.yml``, ``*.json`` and ``*.md`` documents.

Usage:
    from Caps.Core.playbook.catalog import PlaybookCatalog

    catalog = PlaybookCatalog()
    errors = catalog.load_directory("/etc/caps/playbooks")
    playbook = catalog.get("deploy-postgres")
"""

import logging
import threading
from pathlib import Path
from typing import Optional, Union

import Caps.Helpers.logSettings as logLevel
from Caps.Core.playbook_parser import Playbook, PlaybookParseError, load_playbook_file

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

PLAYBOOK_SUFFIXES = (".yaml", ".yml", ".json", ".md")


def _version_key(version: str) -> tuple:
    """Sort key that orders "1.10" after "1.9"."""
    parts = []
    for part in version.replace("-", ".").split("."):
        parts.append((0, int(part), "") if part.isdigit() else (1, 0, part))
    return tuple(parts)


class PlaybookCatalog:
    """In-memory index of playbooks keyed by (id, version)."""

    def __init__(self) -> None:
        self._playbooks: dict[tuple[str, str], Playbook] = {}
        self._lock = threading.Lock()

    def register(self, playbook: Playbook) -> None:
        """Add a playbook, replacing one with the same id and version."""
        with self._lock:
            self._playbooks[playbook.key] = playbook
        logger.log(
            level=10, msg=f"Registered playbook '{playbook.id}' v{playbook.version}"
        )

    def load_directory(
        self, directory: Union[str, Path], default_timeout: Optional[float] = None
    ) -> list[str]:
        """
        Parse every playbook document in a directory.

        Documents that fail to parse are reported, not registered.

        Returns:
            List of error messages, one per rejected file
        """
        directory = Path(directory)
        if not directory.is_dir():
            return [f"Playbook directory {directory} does not exist"]

        errors = []
        for path in sorted(directory.iterdir()):
            if path.suffix.lower() not in PLAYBOOK_SUFFIXES or not path.is_file():
                continue
            try:
                self.register(load_playbook_file(path, default_timeout))
            except PlaybookParseError as e:
                logger.log(level=30, msg=f"Rejected playbook {path.name}: {e}")
                errors.append(f"{path.name}: {e}")
        return errors

    def get(self, playbook_id: str, version: Optional[str] = None) -> Optional[Playbook]:
        """A playbook by id; the highest version when none is given."""
        with self._lock:
            if version is not None:
                return self._playbooks.get((playbook_id, str(version)))
            candidates = [p for (pid, _), p in self._playbooks.items() if pid == playbook_id]
        if not candidates:
            return None
        return max(candidates, key=lambda p: _version_key(p.version))

    def list(self) -> list[dict]:
        """Summaries of every registered playbook."""
        with self._lock:
            playbooks = sorted(self._playbooks.values(), key=lambda p: p.key)
        return [
            {
                "id": p.id,
                "title": p.title,
                "version": p.version,
                "steps": len(p.steps),
            }
            for p in playbooks
        ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._playbooks)
