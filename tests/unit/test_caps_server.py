"""Unit tests for the Flask application factory."""
import os
from unittest.mock import patch


class TestCreateApp:
    """Tests for create_app."""

    def test_uses_given_engine(self, engine, chain_playbook_doc):
        """Test routes run against the engine passed in."""
        import caps_server

        app = caps_server.create_app(engine=engine)
        client = app.test_client()

        response = client.post("/v1/runs", json={"document": chain_playbook_doc, "wait": True})

        assert response.status_code == 200
        assert engine.list_runs()[0]["status"] == "completed"

    def test_invalid_config_only_warns(self, engine):
        """Test configuration problems do not stop the web server."""
        import caps_server
        from config import reload_config

        with patch.dict(os.environ, {"CAPS_LEDGER_BACKEND": "redis"}):
            reload_config()
            with patch.object(caps_server.logger, "warning") as mock_warning:
                app = caps_server.create_app(engine=engine)
        reload_config()

        assert app.test_client().get("/health/live").status_code == 200
        mock_warning.assert_called_once()
        assert "CAPS_LEDGER_BACKEND" in mock_warning.call_args[0][0]
