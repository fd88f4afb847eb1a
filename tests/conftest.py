"""Pytest configuration and shared fixtures."""
import os
import sys
import threading
import pytest
from unittest.mock import MagicMock, patch

# Add the project root to the Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from Caps.Core.playbook.models import ExecutionResult  # noqa: E402
from Caps.Core.playbook.runners.base import CapabilityRunner, RunnerRegistry  # noqa: E402
from Caps.Core.playbook_parser import Capability  # noqa: E402


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Set up required environment variables for testing.

    This fixture is autouse=True so it runs for all tests automatically,
    ensuring database credentials and engine settings are always available.
    """
    env_vars = {
        "PG_USER": "test_user",
        "PG_PASS": "test_pass",
        "DB_NAME": "test_caps",
        "DB_HOST": "localhost",
        "PORT": "5000",
        "CAPS_LEDGER_BACKEND": "memory",
        "CAPS_BASE_URL": "http://localhost:5000",
        "CAPS_TIMEZONE": "UTC",
    }
    with patch.dict(os.environ, env_vars):
        yield env_vars


@pytest.fixture
def mock_db_connection():
    """Mock database connection."""
    with patch("psycopg2.connect") as mock_connect:
        mock_conn = MagicMock()
        mock_cursor = MagicMock()
        mock_conn.cursor.return_value = mock_cursor
        mock_connect.return_value = mock_conn
        yield {
            "connect": mock_connect,
            "connection": mock_conn,
            "cursor": mock_cursor,
        }


class ScriptedRunner(CapabilityRunner):
    """Runner that answers from a script keyed by command.

    Each script entry is a list consumed in order; the last item repeats.
    Items may be an exit code, an ExecutionResult, an exception to raise,
    a callable ``(action, abort_event)`` or the string "block", which waits
    for the abort event and returns partial output.
    """

    def __init__(self, responses=None, default=0):
        self.responses = {k: list(v) for k, v in (responses or {}).items()}
        self.default = default
        self.calls = []
        self._lock = threading.Lock()

    @staticmethod
    def key_of(payload):
        if isinstance(payload, dict):
            return payload.get("command") or payload.get("args") or payload.get("url")
        return payload

    def run(self, action, abort_event):
        key = self.key_of(action.payload)
        with self._lock:
            self.calls.append(key)
            items = self.responses.get(key)
            if items:
                item = items.pop(0) if len(items) > 1 else items[0]
            else:
                item = self.default

        if isinstance(item, BaseException):
            raise item
        if isinstance(item, ExecutionResult):
            return item
        if item == "block":
            abort_event.wait(10)
            return ExecutionResult(exit_code=137, stdout="partial output")
        if callable(item):
            return item(action, abort_event)
        return ExecutionResult(exit_code=int(item), stdout=f"ran {key}")

    def count(self, key):
        with self._lock:
            return self.calls.count(key)


@pytest.fixture
def scripted_runner():
    """A ScriptedRunner whose commands all exit 0 unless scripted."""
    return ScriptedRunner()


@pytest.fixture
def registry(scripted_runner):
    """Registry sending shell and kubectl actions to the scripted runner."""
    return RunnerRegistry({
        Capability.SHELL: scripted_runner,
        Capability.KUBECTL: scripted_runner,
    })


@pytest.fixture
def engine(registry):
    """Engine with an in-memory ledger and the scripted runner."""
    from Caps.Core.playbook.ledger import MemoryLedgerStore, RunLedger
    from Caps.Core.playbook_engine import PlaybookExecutionEngine

    return PlaybookExecutionEngine(
        ledger=RunLedger(MemoryLedgerStore()),
        registry=registry,
    )


CHAIN_PLAYBOOK = """---
id: chain
title: Three dependent steps
version: "1"
allowed_capabilities: [shell]
---
- name: A
  actions:
    - capability: shell
      payload: step-a
- name: B
  prerequisites: [A]
  actions:
    - capability: shell
      payload: step-b
- name: C
  prerequisites: [B]
  actions:
    - capability: shell
      payload: step-c
  validations:
    - kind: exit-code-equals
      expected: 0
  retry_policy:
    max_attempts: 2
    backoff_base: 0.01s
    backoff_max: 0.05s
"""

INDEPENDENT_PLAYBOOK = """---
id: independent
title: Two independent steps
version: "1"
allowed_capabilities: [shell]
---
- name: D
  actions:
    - capability: shell
      payload: step-d
- name: E
  actions:
    - capability: shell
      payload: step-e
"""

POSTGRES_PLAYBOOK = """
id: deploy-postgres
title: Deploy Postgres
version: "1.2"
description: Apply the manifest and wait for the pod
allowed_capabilities: [shell, kubectl]
owner: platform
steps:
  - name: apply-manifest
    timeout: 30s
    actions:
      - capability: kubectl
        payload: apply -f postgres.yaml
    rollback:
      - capability: kubectl
        payload: delete -f postgres.yaml
  - name: wait-ready
    prerequisites: [apply-manifest]
    on_failure: abort
    actions:
      - capability: kubectl
        payload: get pods -l app=postgres
    validations:
      - kind: stdout-contains
        value: Running
    retry_policy: {max_attempts: 3, backoff_base: 0.01s, backoff_max: 0.02s}
"""


@pytest.fixture
def chain_playbook_doc():
    """A -> B -> C where C retries once."""
    return CHAIN_PLAYBOOK


@pytest.fixture
def independent_playbook_doc():
    """D and E with no prerequisites."""
    return INDEPENDENT_PLAYBOOK


@pytest.fixture
def postgres_playbook_doc():
    """Single-mapping playbook with kubectl steps and a rollback."""
    return POSTGRES_PLAYBOOK


@pytest.fixture
def app(engine):
    """Create Flask test application bound to the test engine."""
    from caps_server import create_app

    app = create_app(engine=engine)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    """Create Flask test client."""
    return app.test_client()
