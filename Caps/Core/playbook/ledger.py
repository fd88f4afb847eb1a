"""Run ledger.

Append-only record of every run transition and step attempt. The ledger is
the source of truth for resuming a run: replaying its entries rebuilds the
RunState exactly as the orchestrator left it.

Backing stores:
- MemoryLedgerStore: process memory, for tests and ephemeral use
- JsonlLedgerStore: one JSON-lines file per run, flushed and fsync'd
- PostgresLedgerStore: caps.ledger_entries table through Caps.Core.database

Writes are serialized per run (one lock per run_id); distinct runs append
independently. A failed store write raises LedgerUnavailable, which the
orchestrator treats as fatal for the run.

Usage:
    from Caps.Core.playbook.ledger import RunLedger, MemoryLedgerStore

    ledger = RunLedger(MemoryLedgerStore())
    stored = ledger.append(entry)
    entries = ledger.read_all(stored.run_id)
"""

import json
import logging
import os
import re
import threading
import weakref
from abc import ABC, abstractmethod
from collections import OrderedDict
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Union

import Caps.Core.database as db
import Caps.Helpers.logSettings as logLevel
from Caps.Core import metrics
from Caps.Core.playbook.models import (
    LedgerEntry,
    LedgerEntryType,
    RunState,
    RunStatus,
    StepOutcome,
)

if TYPE_CHECKING:
    from Caps.Core.playbook_parser import Playbook

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

RUN_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]+$")

# Runs whose entries RunLedger keeps in memory at once
DEFAULT_MAX_CACHED_RUNS = 128


class LedgerUnavailable(Exception):
    """The ledger store could not be written or read."""


class DuplicateAttempt(Exception):
    """An attempt entry reuses an attempt number already recorded."""


class LedgerStore(ABC):
    """Persistence for ledger entries."""

    backend_name = "abstract"

    @abstractmethod
    def write(self, entry: LedgerEntry) -> None:
        """Persist one entry. Raises LedgerUnavailable on failure."""

    @abstractmethod
    def read(self, run_id: str) -> list[LedgerEntry]:
        """All entries of a run in sequence order."""

    @abstractmethod
    def list_run_ids(self) -> list[str]:
        """IDs of every run with at least one entry."""


class MemoryLedgerStore(LedgerStore):
    """Keeps entries in process memory."""

    backend_name = "memory"

    def __init__(self) -> None:
        self._entries: dict[str, list[LedgerEntry]] = {}
        self._lock = threading.Lock()

    def write(self, entry: LedgerEntry) -> None:
        with self._lock:
            self._entries.setdefault(entry.run_id, []).append(entry)

    def read(self, run_id: str) -> list[LedgerEntry]:
        with self._lock:
            return list(self._entries.get(run_id, []))

    def list_run_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._entries)


class JsonlLedgerStore(LedgerStore):
    """One ``<run_id>.jsonl`` file per run under a directory."""

    backend_name = "file"

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)

    def _path(self, run_id: str) -> Path:
        if not RUN_ID_PATTERN.match(run_id):
            raise LedgerUnavailable(f"Run id '{run_id}' is not a valid file name")
        return self.directory / f"{run_id}.jsonl"

    def _repair_tail(self, path: Path) -> None:
        """
        Make sure the next append starts on a fresh line.

        A crash mid-append leaves a last line without its newline. If that
        line is a complete entry it only gets the newline; otherwise the
        fragment is cut off, since ``read`` never returned it.
        """
        if not path.exists() or path.stat().st_size == 0:
            return
        with open(path, "rb+") as f:
            f.seek(-1, os.SEEK_END)
            if f.read(1) == b"\n":
                return
            f.seek(0)
            data = f.read()
            keep = data.rfind(b"\n") + 1
            try:
                LedgerEntry.from_dict(json.loads(data[keep:].decode("utf-8")))
            except (ValueError, KeyError):
                logger.log(
                    level=30,
                    msg=f"Truncating incomplete last line of {path} "
                    f"({len(data) - keep} bytes)",
                )
                f.truncate(keep)
            else:
                f.seek(0, os.SEEK_END)
                f.write(b"\n")
            f.flush()
            os.fsync(f.fileno())

    def write(self, entry: LedgerEntry) -> None:
        path = self._path(entry.run_id)
        line = json.dumps(entry.to_dict(), sort_keys=True)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            self._repair_tail(path)
            with open(path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise LedgerUnavailable(f"Cannot write ledger file {path}: {e}") from e

    def read(self, run_id: str) -> list[LedgerEntry]:
        path = self._path(run_id)
        if not path.exists():
            return []
        try:
            with open(path, encoding="utf-8") as f:
                lines = f.read().splitlines()
        except OSError as e:
            raise LedgerUnavailable(f"Cannot read ledger file {path}: {e}") from e

        entries = []
        for number, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                entries.append(LedgerEntry.from_dict(json.loads(line)))
            except (ValueError, KeyError) as e:
                # A torn final line is what a crash mid-append leaves behind
                if number == len(lines):
                    logger.log(
                        level=30,
                        msg=f"Ignoring incomplete last line of {path}: {e}",
                    )
                    break
                raise LedgerUnavailable(
                    f"Corrupt ledger file {path} at line {number}: {e}"
                ) from e
        return entries

    def list_run_ids(self) -> list[str]:
        if not self.directory.exists():
            return []
        return sorted(p.stem for p in self.directory.glob("*.jsonl"))


class PostgresLedgerStore(LedgerStore):
    """Stores entries in the caps.ledger_entries table."""

    backend_name = "postgres"

    SCHEMA_SQL = """
        CREATE SCHEMA IF NOT EXISTS caps;
        CREATE TABLE IF NOT EXISTS caps.ledger_entries (
            run_id TEXT NOT NULL,
            sequence INTEGER NOT NULL,
            entry_type TEXT NOT NULL,
            step_name TEXT,
            attempt_number INTEGER NOT NULL DEFAULT 0,
            entry JSONB NOT NULL,
            created_at TIMESTAMPTZ NOT NULL,
            PRIMARY KEY (run_id, sequence)
        );
        CREATE UNIQUE INDEX IF NOT EXISTS ledger_entries_attempt_idx
            ON caps.ledger_entries (run_id, step_name, attempt_number)
            WHERE entry_type = 'attempt';
    """

    def ensure_schema(self) -> bool:
        """Create the ledger table if it does not exist."""
        created = db.execute(self.SCHEMA_SQL)
        if not created:
            logger.log(level=40, msg="Unable to create caps.ledger_entries")
        return created

    def write(self, entry: LedgerEntry) -> None:
        ok = db.execute(
            """
            INSERT INTO caps.ledger_entries
            (run_id, sequence, entry_type, step_name, attempt_number, entry,
             created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                entry.run_id,
                entry.sequence,
                entry.entry_type.value,
                entry.step_name,
                entry.attempt_number,
                json.dumps(entry.to_dict()),
                entry.timestamp,
            ),
        )
        if not ok:
            raise LedgerUnavailable(
                f"Failed to insert ledger entry {entry.sequence} for run {entry.run_id}"
            )

    def read(self, run_id: str) -> list[LedgerEntry]:
        rows = db.fetch_rows(
            """
            SELECT entry FROM caps.ledger_entries
            WHERE run_id = %s
            ORDER BY sequence
            """,
            (run_id,),
        )
        if rows is None:
            raise LedgerUnavailable(f"Failed to read ledger for run {run_id}")
        entries = []
        for (data,) in rows:
            # JSONB arrives decoded unless a custom typecaster is registered
            if isinstance(data, str):
                data = json.loads(data)
            entries.append(LedgerEntry.from_dict(data))
        return entries

    def list_run_ids(self) -> list[str]:
        rows = db.fetch_rows(
            "SELECT DISTINCT run_id FROM caps.ledger_entries ORDER BY run_id"
        )
        if rows is None:
            raise LedgerUnavailable("Failed to list ledger runs")
        return [row[0] for row in rows]


class RunLedger:
    """Serializes appends per run and assigns sequence numbers.

    Entries of the most recently used runs are cached so appends do not
    re-read the store; older runs fall out of the cache and are read again
    on demand. Waiters blocked in ``wait_for_entries`` are woken on every
    append.
    """

    def __init__(
        self,
        store: Optional[LedgerStore] = None,
        max_cached_runs: int = DEFAULT_MAX_CACHED_RUNS,
    ):
        self.store = store or MemoryLedgerStore()
        self.max_cached_runs = max_cached_runs
        self._cache: "OrderedDict[str, list[LedgerEntry]]" = OrderedDict()
        # A run's lock lives only while some thread holds or waits on it
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = (
            weakref.WeakValueDictionary()
        )
        self._locks_guard = threading.Lock()
        self._appended = threading.Condition()

    def _run_lock(self, run_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(run_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[run_id] = lock
            return lock

    def _load(self, run_id: str) -> list[LedgerEntry]:
        # Caller holds the run lock
        with self._locks_guard:
            entries = self._cache.get(run_id)
            if entries is not None:
                self._cache.move_to_end(run_id)
                return entries
        entries = self.store.read(run_id)
        with self._locks_guard:
            self._cache[run_id] = entries
            while len(self._cache) > self.max_cached_runs:
                self._cache.popitem(last=False)
        return entries

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        """
        Append an entry, assigning its sequence number.

        Raises:
            DuplicateAttempt: The step already has an entry for this attempt
            LedgerUnavailable: The store write failed
        """
        with self._run_lock(entry.run_id):
            entries = self._load(entry.run_id)
            if entry.entry_type == LedgerEntryType.ATTEMPT:
                for existing in entries:
                    if (
                        existing.entry_type == LedgerEntryType.ATTEMPT
                        and existing.step_name == entry.step_name
                        and existing.attempt_number == entry.attempt_number
                    ):
                        raise DuplicateAttempt(
                            f"Run {entry.run_id} step '{entry.step_name}' already "
                            f"has attempt {entry.attempt_number}"
                        )

            sequence = entries[-1].sequence + 1 if entries else 1
            stored = entry.with_sequence(sequence)
            try:
                self.store.write(stored)
            except LedgerUnavailable:
                metrics.record_ledger_write_failure(self.store.backend_name)
                logger.log(
                    level=40,
                    msg=f"Ledger write failed for run {entry.run_id} "
                    f"({entry.entry_type.value})",
                )
                raise
            entries.append(stored)

        with self._appended:
            self._appended.notify_all()
        return stored

    def read_all(self, run_id: str) -> list[LedgerEntry]:
        """All entries of a run in sequence order."""
        with self._run_lock(run_id):
            return list(self._load(run_id))

    def read_since(self, run_id: str, after: int) -> list[LedgerEntry]:
        """Entries with a sequence number greater than ``after``."""
        return [e for e in self.read_all(run_id) if e.sequence > after]

    def wait_for_entries(
        self, run_id: str, after: int, timeout: Optional[float] = None
    ) -> list[LedgerEntry]:
        """Block until entries newer than ``after`` exist or timeout passes."""
        with self._appended:
            self._appended.wait_for(
                lambda: bool(self.read_since(run_id, after)), timeout=timeout
            )
        return self.read_since(run_id, after)

    def peek(self, run_id: str) -> list[LedgerEntry]:
        """Entries of a run, read without adding them to the cache."""
        with self._run_lock(run_id):
            with self._locks_guard:
                cached = self._cache.get(run_id)
            if cached is not None:
                return list(cached)
            return self.store.read(run_id)

    def exists(self, run_id: str) -> bool:
        return bool(self.peek(run_id))

    def list_run_ids(self) -> list[str]:
        ids = set(self.store.list_run_ids())
        with self._locks_guard:
            ids.update(run_id for run_id, e in list(self._cache.items()) if e)
        return sorted(ids)

    def forget(self, run_id: str) -> None:
        """Drop the cached entries of a run; the store is untouched."""
        with self._run_lock(run_id):
            with self._locks_guard:
                self._cache.pop(run_id, None)


def replay_run_state(entries: list[LedgerEntry], playbook: "Playbook") -> RunState:
    """
    Rebuild a RunState from ledger entries.

    Outcomes are taken as recorded, so a replayed state matches the one the
    orchestrator held when it wrote the last entry.
    """
    if not entries:
        raise ValueError("Cannot replay an empty ledger")

    run_id = entries[0].run_id
    started = next(
        (e for e in entries if e.entry_type == LedgerEntryType.RUN_STARTED), None
    )
    context = dict(started.details.get("context") or {}) if started else {}
    state = RunState.for_playbook(run_id, playbook, context)
    index_of = {name: i for i, name in enumerate(state.step_names)}

    for entry in entries:
        step = entry.step_name
        if step is not None and step not in state.outcomes:
            logger.log(
                level=30,
                msg=f"Run {run_id} ledger names unknown step '{step}'; ignoring",
            )
            continue

        if entry.entry_type == LedgerEntryType.RUN_STARTED:
            state.status = RunStatus.RUNNING
            state.started_at = entry.timestamp
        elif entry.entry_type == LedgerEntryType.RUN_RESUMED:
            state.status = RunStatus.RUNNING
            state.ended_at = None
            state.error = None
        elif entry.entry_type == LedgerEntryType.ATTEMPT:
            state.attempts[step] = max(state.attempts.get(step, 0), entry.attempt_number)
            if entry.result is not None:
                state.last_results[step] = entry.result
            state.failures[step] = (
                list(entry.validation.failures) if entry.validation else []
            )
            if entry.outcome:
                state.outcomes[step] = StepOutcome(entry.outcome)
            state.current_step_index = index_of[step]
        elif entry.entry_type == LedgerEntryType.STEP_SKIPPED:
            state.outcomes[step] = StepOutcome.SKIPPED
        elif entry.entry_type == LedgerEntryType.STEP_ROLLED_BACK:
            if entry.outcome:
                state.outcomes[step] = StepOutcome(entry.outcome)
            if entry.result is not None:
                state.last_results[step] = entry.result
        elif entry.entry_type == LedgerEntryType.RUN_ENDED:
            state.status = RunStatus(entry.outcome or RunStatus.ABORTED.value)
            state.ended_at = entry.timestamp
            state.error = entry.details.get("reason")

    return state
