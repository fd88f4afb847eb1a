"""Unit tests for health checks."""
from unittest.mock import patch


class TestLedgerHealth:
    """Tests for check_ledger_health."""

    def test_healthy(self, engine):
        """Test a readable ledger is healthy."""
        from Caps.Core.health import check_ledger_health

        result = check_ledger_health(engine)

        assert result == {"status": "healthy", "backend": "memory", "runs": 0}

    def test_unhealthy(self, engine):
        """Test a failing store is unhealthy with the error."""
        from Caps.Core.health import check_ledger_health
        from Caps.Core.playbook.ledger import LedgerUnavailable

        with patch.object(engine.ledger, "list_run_ids",
                          side_effect=LedgerUnavailable("disk gone")):
            result = check_ledger_health(engine)

        assert result["status"] == "unhealthy"
        assert result["error"] == "disk gone"


class TestFullHealth:
    """Tests for get_full_health_status."""

    def test_healthy(self, engine):
        """Test all components healthy."""
        from Caps.Core.health import get_full_health_status

        status = get_full_health_status(engine)

        assert status["status"] == "healthy"
        assert status["components"]["runners"]["capabilities"] == ["kubectl", "shell"]
        assert status["components"]["playbooks"]["loaded"] == 0

    def test_degraded_without_runners(self):
        """Test an empty registry degrades health."""
        from Caps.Core.health import get_full_health_status
        from Caps.Core.playbook.runners.base import RunnerRegistry
        from Caps.Core.playbook_engine import PlaybookExecutionEngine

        engine = PlaybookExecutionEngine(registry=RunnerRegistry({}))

        assert get_full_health_status(engine)["status"] == "degraded"

    def test_unhealthy_ledger_wins(self, engine):
        """Test ledger failure makes the service unhealthy."""
        from Caps.Core.health import get_full_health_status
        from Caps.Core.playbook.ledger import LedgerUnavailable

        with patch.object(engine.ledger, "list_run_ids",
                          side_effect=LedgerUnavailable("down")):
            assert get_full_health_status(engine)["status"] == "unhealthy"


class TestProbes:
    """Tests for liveness and readiness."""

    def test_liveness(self):
        """Test liveness always answers alive."""
        from Caps.Core.health import get_liveness_status

        assert get_liveness_status()["status"] == "alive"

    def test_readiness(self, engine):
        """Test readiness follows the ledger."""
        from Caps.Core.health import get_readiness_status
        from Caps.Core.playbook.ledger import LedgerUnavailable

        assert get_readiness_status(engine)["status"] == "ready"
        with patch.object(engine.ledger, "list_run_ids",
                          side_effect=LedgerUnavailable("down")):
            assert get_readiness_status(engine)["status"] == "not_ready"
