"""
Prometheus metrics for Caps.

Provides run, step and action metrics for the playbook engine plus HTTP
request metrics for the control-surface API. Metrics are exposed in
OpenMetrics format by default.

Environment variables:
- CAPS_SERVICE_NAME: Service name label for metrics (default: caps)
- CAPS_ENVIRONMENT: Deployment environment (default: development)
- CAPS_VERSION: Application version (default: unknown)

Usage:
    from Caps.Core.metrics import (
        record_run_finished,
        record_step_attempt,
        get_metrics,
    )

    record_step_attempt(playbook_id="deploy-postgres", outcome="succeeded")
"""

import logging
import os
import sys
import time
from functools import wraps
from collections.abc import Callable
from typing import Any

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY,
)
from prometheus_client.openmetrics.exposition import (
    generate_latest as generate_openmetrics_latest,
    CONTENT_TYPE_LATEST as OPENMETRICS_CONTENT_TYPE,
)

import Caps.Helpers.logSettings as logLevel

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

# Default configuration values
DEFAULT_SERVICE_NAME: str = "caps"
DEFAULT_ENVIRONMENT: str = "development"
DEFAULT_VERSION: str = "unknown"


def _get_python_version() -> str:
    """Python version in format 'major.minor.micro'."""
    return f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"


def _get_config() -> dict[str, str]:
    """
    Get metrics configuration from environment variables.

    Returns:
        Dictionary with configuration values
    """
    return {
        "service_name": os.environ.get("CAPS_SERVICE_NAME", DEFAULT_SERVICE_NAME),
        "environment": os.environ.get("CAPS_ENVIRONMENT", DEFAULT_ENVIRONMENT),
        "version": os.environ.get("CAPS_VERSION", DEFAULT_VERSION),
        "python_version": _get_python_version(),
    }


# Module-level config (initialized once at import time)
_config = _get_config()


APP_INFO = Info("caps_app", "Caps application information")
APP_INFO.info({"version": "1.0.0", "description": "Playbook execution engine"})

CAPS_BUILD_INFO = Gauge(
    "caps_build_info",
    "Caps service information",
    ["service_name", "service_version", "deployment_environment", "python_version"],
)
CAPS_BUILD_INFO.labels(
    service_name=_config["service_name"],
    service_version=_config["version"],
    deployment_environment=_config["environment"],
    python_version=_config["python_version"],
).set(1)

# Request metrics
REQUEST_COUNT = Counter(
    "caps_http_server_request_total",
    "Total HTTP requests",
    ["method", "route", "status_code", "service_name"],
)

REQUEST_LATENCY = Histogram(
    "caps_http_server_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "route", "service_name"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

# Run metrics
RUNS_STARTED = Counter(
    "caps_runs_started_total",
    "Total playbook runs started or resumed",
    ["playbook", "mode", "service_name"],
)

RUNS_FINISHED = Counter(
    "caps_runs_finished_total",
    "Total playbook runs that reached a terminal status",
    ["playbook", "status", "service_name"],
)

RUN_DURATION = Histogram(
    "caps_run_duration_seconds",
    "Playbook run duration in seconds",
    ["playbook", "service_name"],
    buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0, 3600.0],
)

ACTIVE_RUNS = Gauge("caps_runs_active", "Number of runs currently executing")

# Step and action metrics
STEP_ATTEMPTS = Counter(
    "caps_step_attempts_total",
    "Total step attempts by outcome",
    ["playbook", "outcome", "service_name"],
)

ACTION_DURATION = Histogram(
    "caps_action_duration_seconds",
    "Action execution duration in seconds",
    ["capability", "service_name"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0],
)

ACTION_RESULTS = Counter(
    "caps_action_results_total",
    "Total actions executed, by capability and result class",
    ["capability", "result", "service_name"],
)

# Ledger metrics
LEDGER_WRITE_FAILURES = Counter(
    "caps_ledger_write_failures_total",
    "Total ledger appends that failed",
    ["backend", "service_name"],
)


def track_request_metrics(func: Callable) -> Callable:
    """Decorator to record count and latency of a Flask view."""

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        from flask import request

        start_time = time.time()
        status_code = 500
        try:
            response = func(*args, **kwargs)
            if isinstance(response, tuple) and len(response) > 1:
                status_code = response[1]
            elif hasattr(response, "status_code"):
                status_code = response.status_code
            else:
                status_code = 200
            return response
        finally:
            duration = time.time() - start_time
            route = request.url_rule.rule if request.url_rule else request.path
            REQUEST_COUNT.labels(
                method=request.method,
                route=route,
                status_code=str(status_code),
                service_name=_config["service_name"],
            ).inc()
            REQUEST_LATENCY.labels(
                method=request.method,
                route=route,
                service_name=_config["service_name"],
            ).observe(duration)

    return wrapper


def record_run_started(playbook_id: str, resumed: bool = False) -> None:
    """
    Record a run start.

    Args:
        playbook_id: ID of the playbook being run
        resumed: True when the run was resumed from the ledger
    """
    RUNS_STARTED.labels(
        playbook=playbook_id,
        mode="resume" if resumed else "start",
        service_name=_config["service_name"],
    ).inc()
    ACTIVE_RUNS.inc()


def record_run_finished(
    playbook_id: str, status: str, duration_seconds: float
) -> None:
    """
    Record a run reaching a terminal status.

    Args:
        playbook_id: ID of the playbook that was run
        status: Terminal status (completed, aborted)
        duration_seconds: Wall time of this execution of the run
    """
    RUNS_FINISHED.labels(
        playbook=playbook_id, status=status, service_name=_config["service_name"]
    ).inc()
    RUN_DURATION.labels(
        playbook=playbook_id, service_name=_config["service_name"]
    ).observe(duration_seconds)
    ACTIVE_RUNS.dec()


def record_step_attempt(playbook_id: str, outcome: str) -> None:
    """Record one step attempt with its resulting outcome."""
    STEP_ATTEMPTS.labels(
        playbook=playbook_id, outcome=outcome, service_name=_config["service_name"]
    ).inc()


def record_action(capability: str, exit_code: int, duration_seconds: float) -> None:
    """
    Record an executed action.

    Args:
        capability: Capability the action ran through
        exit_code: Exit code of the result (-1, -2, -3 are engine-synthesized)
        duration_seconds: Duration of the action
    """
    if exit_code == -1:
        result = "timeout"
    elif exit_code == -2:
        result = "fault"
    elif exit_code == -3:
        result = "cancelled"
    else:
        result = "exited"
    ACTION_RESULTS.labels(
        capability=capability, result=result, service_name=_config["service_name"]
    ).inc()
    ACTION_DURATION.labels(
        capability=capability, service_name=_config["service_name"]
    ).observe(duration_seconds)


def record_ledger_write_failure(backend: str) -> None:
    """Record a failed ledger append."""
    LEDGER_WRITE_FAILURES.labels(
        backend=backend, service_name=_config["service_name"]
    ).inc()


def get_metrics(openmetrics: bool = True) -> bytes:
    """
    Generate Prometheus/OpenMetrics output.

    Args:
        openmetrics: If True (default), use OpenMetrics format.
                     If False, use standard Prometheus format.

    Returns:
        Metrics output as bytes
    """
    if openmetrics:
        return generate_openmetrics_latest(REGISTRY)
    return generate_latest()


def get_metrics_content_type(openmetrics: bool = True) -> str:
    """Content type matching get_metrics(openmetrics)."""
    if openmetrics:
        return OPENMETRICS_CONTENT_TYPE
    return CONTENT_TYPE_LATEST


def refresh_config() -> None:
    """
    Refresh the metrics configuration from environment variables.

    Call this if environment variables change after module import.
    """
    global _config
    _config = _get_config()

    CAPS_BUILD_INFO.labels(
        service_name=_config["service_name"],
        service_version=_config["version"],
        deployment_environment=_config["environment"],
        python_version=_config["python_version"],
    ).set(1)
