"""Unit tests for metrics module."""
import os
from unittest.mock import patch

from flask import Flask
from prometheus_client import REGISTRY


def _sample(name, labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


class TestGetConfig:
    """Tests for _get_config function."""

    def test_defaults(self):
        """Test defaults when no variables are set."""
        from Caps.Core.metrics import _get_config

        with patch.dict(os.environ, {}, clear=True):
            config = _get_config()

        assert config["service_name"] == "caps"
        assert config["environment"] == "development"
        assert config["version"] == "unknown"
        assert config["python_version"].count(".") == 2

    def test_env_overrides(self):
        """Test CAPS_* variables are honoured."""
        from Caps.Core.metrics import _get_config

        with patch.dict(os.environ, {"CAPS_SERVICE_NAME": "caps-worker",
                                     "CAPS_VERSION": "2.0.0"}):
            config = _get_config()

        assert config["service_name"] == "caps-worker"
        assert config["version"] == "2.0.0"


class TestRunMetrics:
    """Tests for run, step and action recorders."""

    def test_run_started_and_finished(self):
        """Test run counters and the active gauge move together."""
        from Caps.Core import metrics

        labels = {"playbook": "metrics-run", "mode": "resume", "service_name": "caps"}
        active_before = _sample("caps_runs_active", {})
        started_before = _sample("caps_runs_started_total", labels)

        metrics.record_run_started("metrics-run", resumed=True)
        assert _sample("caps_runs_active", {}) == active_before + 1

        metrics.record_run_finished("metrics-run", "completed", 1.5)

        assert _sample("caps_runs_started_total", labels) == started_before + 1
        assert _sample("caps_runs_active", {}) == active_before
        assert _sample("caps_runs_finished_total", {
            "playbook": "metrics-run", "status": "completed", "service_name": "caps",
        }) >= 1

    def test_step_attempt(self):
        """Test attempts are counted by outcome."""
        from Caps.Core import metrics

        labels = {"playbook": "metrics-step", "outcome": "failed", "service_name": "caps"}
        before = _sample("caps_step_attempts_total", labels)

        metrics.record_step_attempt("metrics-step", "failed")

        assert _sample("caps_step_attempts_total", labels) == before + 1

    def test_action_result_classes(self):
        """Test reserved exit codes map to their result class."""
        from Caps.Core import metrics

        expected = {-1: "timeout", -2: "fault", -3: "cancelled", 0: "exited", 7: "exited"}
        for exit_code, result in expected.items():
            labels = {"capability": "metrics-cap", "result": result, "service_name": "caps"}
            before = _sample("caps_action_results_total", labels)

            metrics.record_action("metrics-cap", exit_code, 0.2)

            assert _sample("caps_action_results_total", labels) == before + 1

    def test_ledger_write_failure(self):
        """Test ledger failures are counted by backend."""
        from Caps.Core import metrics

        labels = {"backend": "metrics-backend", "service_name": "caps"}
        before = _sample("caps_ledger_write_failures_total", labels)

        metrics.record_ledger_write_failure("metrics-backend")

        assert _sample("caps_ledger_write_failures_total", labels) == before + 1


class TestTrackRequestMetrics:
    """Tests for the track_request_metrics decorator."""

    def test_records_status_from_tuple(self):
        """Test the status code is taken from a (body, status) tuple."""
        from Caps.Core.metrics import track_request_metrics

        app = Flask(__name__)

        @app.route("/tracked")
        @track_request_metrics
        def tracked():
            return "{}", 409

        labels = {"method": "GET", "route": "/tracked", "status_code": "409",
                  "service_name": "caps"}
        before = _sample("caps_http_server_request_total", labels)

        response = app.test_client().get("/tracked")

        assert response.status_code == 409
        assert tracked.__name__ == "tracked"
        assert _sample("caps_http_server_request_total", labels) == before + 1


class TestExposition:
    """Tests for metrics output."""

    def test_openmetrics(self):
        """Test OpenMetrics output ends with EOF."""
        from Caps.Core.metrics import get_metrics, get_metrics_content_type

        output = get_metrics()

        assert b"caps_build_info" in output
        assert output.rstrip().endswith(b"# EOF")
        assert "openmetrics" in get_metrics_content_type()

    def test_prometheus_text(self):
        """Test the classic Prometheus format is available."""
        from Caps.Core.metrics import get_metrics, get_metrics_content_type

        output = get_metrics(openmetrics=False)

        assert b"# EOF" not in output
        assert get_metrics_content_type(openmetrics=False).startswith("text/plain")

    def test_refresh_config(self):
        """Test refresh_config publishes new build info labels."""
        from Caps.Core import metrics

        with patch.dict(os.environ, {"CAPS_VERSION": "9.9.9"}):
            metrics.refresh_config()
        try:
            assert metrics._config["version"] == "9.9.9"
            assert _sample("caps_build_info", {
                "service_name": "caps", "service_version": "9.9.9",
                "deployment_environment": "development",
                "python_version": metrics._config["python_version"],
            }) == 1.0
        finally:
            metrics.refresh_config()
