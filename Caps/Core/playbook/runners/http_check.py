"""HTTP check capability runner.

Issues one HTTP request and reports the status code. The exit code is 0
when the status is one of the expected statuses and 1 otherwise; the
status itself is returned in ``details["http_status"]`` so validation rules
can compare it directly.

Payloads:
    "https://svc.internal/healthz"
    {"url": "...", "method": "GET", "expected": [200, 204], "timeout": 10,
     "headers": {...}, "body": {...}}
"""

import logging
import threading
import time
from typing import Any, Optional

import requests

import Caps.Helpers.logSettings as logLevel
from Caps.Core.playbook.models import ExecutionResult
from Caps.Core.playbook.runners.base import (
    ActionFault,
    ActionTimeout,
    CapabilityRunner,
)
from Caps.Core.playbook_parser import Action
from Caps.Core.utils.datetime_helpers import now as get_now

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

# HTTP timeout for checks (seconds)
DEFAULT_HTTP_TIMEOUT = 10.0

# Maximum response body size kept in stdout (bytes)
MAX_RESPONSE_BODY_SIZE = 4096


def _expected_statuses(value: Any) -> set[int]:
    if value is None:
        return {200}
    if isinstance(value, (list, tuple, set, frozenset)):
        return {int(v) for v in value}
    return {int(value)}


class HttpCheckRunner(CapabilityRunner):
    """Performs HTTP requests with a shared requests.Session."""

    def __init__(self, session: Optional[requests.Session] = None):
        self.session = session or requests.Session()

    def run(self, action: Action, abort_event: threading.Event) -> ExecutionResult:
        payload = action.payload
        if isinstance(payload, str):
            payload = {"url": payload}
        url = payload.get("url")
        if not url:
            raise ActionFault("http-check payload has no url")

        method = str(payload.get("method", "GET")).upper()
        timeout = float(payload.get("timeout", DEFAULT_HTTP_TIMEOUT))
        try:
            expected = _expected_statuses(payload.get("expected"))
        except (TypeError, ValueError) as e:
            raise ActionFault(f"Invalid expected statuses: {e}") from e

        body = payload.get("body")
        kwargs: dict[str, Any] = {
            "headers": payload.get("headers") or {},
            "timeout": timeout,
        }
        if isinstance(body, (dict, list)):
            kwargs["json"] = body
        elif body is not None:
            kwargs["data"] = str(body)

        started_at = get_now()
        start = time.monotonic()
        try:
            response = self.session.request(method, url, **kwargs)
        except requests.exceptions.Timeout as e:
            raise ActionTimeout(f"{method} {url} timed out after {timeout}s") from e
        except requests.exceptions.RequestException as e:
            raise ActionFault(f"{method} {url} failed: {e}") from e

        status = response.status_code
        text = response.text or ""
        if len(text) > MAX_RESPONSE_BODY_SIZE:
            text = text[:MAX_RESPONSE_BODY_SIZE] + "...[truncated]"

        ok = status in expected
        logger.log(
            level=20 if ok else 30,
            msg=f"HTTP check {method} {url} returned {status}",
        )
        return ExecutionResult(
            exit_code=0 if ok else 1,
            stdout=f"HTTP {status}\n{text}",
            stderr="" if ok else f"Expected one of {sorted(expected)}, got {status}",
            duration=time.monotonic() - start,
            started_at=started_at,
            details={"http_status": status, "url": url, "method": method},
        )
