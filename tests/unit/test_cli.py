"""Unit tests for the Caps CLI."""
import json
from unittest.mock import MagicMock, patch

import pytest
import requests


def _response(payload, status=200):
    response = MagicMock()
    response.status_code = status
    response.json.return_value = payload
    return response


class TestHelpers:
    """Tests for CLI helper functions."""

    def test_get_base_url(self, monkeypatch):
        """Test the base URL comes from CAPS_BASE_URL without a trailing slash."""
        from cli.caps_cli import get_base_url

        monkeypatch.setenv("CAPS_BASE_URL", "http://caps.internal:8080/")

        assert get_base_url() == "http://caps.internal:8080"

    def test_parse_context(self):
        """Test KEY=VALUE pairs, including values containing '='."""
        from cli.caps_cli import parse_context

        assert parse_context(["NS=db", "ARGS=a=b"]) == {"NS": "db", "ARGS": "a=b"}
        assert parse_context(None) == {}
        with pytest.raises(ValueError):
            parse_context(["novalue"])

    def test_format_table(self):
        """Test column widths follow the widest cell."""
        from cli.caps_cli import format_table

        table = format_table(["Step", "Outcome"], [["apply", "succeeded"]])

        assert table.splitlines() == [
            "Step  | Outcome  ",
            "------+----------",
            "apply | succeeded",
        ]
        assert format_table(["A"], []) == "No results found."

    def test_format_event(self):
        """Test attempt events show the exit code and failures."""
        from cli.caps_cli import format_event

        line = format_event({
            "sequence": 4,
            "timestamp": "2026-01-01T00:00:00+00:00",
            "event_type": "attempt",
            "step_name": "C",
            "attempt_number": 2,
            "outcome": "failed",
            "result": {"exit_code": 1},
            "failures": ["exit-code-equals [0]: got exit code 1"],
        })

        assert line == (
            "#4 2026-01-01T00:00:00+00:00 attempt C attempt=2 outcome=failed exit=1"
            "\n    - exit-code-equals [0]: got exit code 1"
        )

    def test_api_request_connection_error(self):
        """Test connection errors become an unsuccessful result."""
        from cli.caps_cli import api_request

        with patch("cli.caps_cli.requests.get",
                   side_effect=requests.ConnectionError("refused")):
            result = api_request("GET", "/v1/runs")

        assert result["success"] is False
        assert "refused" in result["message"]

    def test_api_request_unsupported_method(self):
        """Test only GET and POST are supported."""
        from cli.caps_cli import api_request

        with pytest.raises(ValueError):
            api_request("DELETE", "/v1/runs/x")


class TestValidateCommand:
    """Tests for the validate command."""

    def test_valid_file(self, tmp_path, chain_playbook_doc, capsys):
        """Test a valid file prints its execution order."""
        from cli.caps_cli import main

        path = tmp_path / "chain.md"
        path.write_text(chain_playbook_doc)

        assert main(["validate", str(path)]) == 0
        assert "Execution order: A -> B -> C" in capsys.readouterr().out

    def test_invalid_file(self, tmp_path, capsys):
        """Test an invalid file exits 1."""
        from cli.caps_cli import main

        path = tmp_path / "bad.yaml"
        path.write_text("id: x\n")

        assert main(["validate", str(path)]) == 1
        assert "Invalid playbook" in capsys.readouterr().out

    def test_missing_file(self, tmp_path, capsys):
        """Test an unreadable file exits 1."""
        from cli.caps_cli import main

        assert main(["validate", str(tmp_path / "missing.yaml")]) == 1
        assert "cannot read" in capsys.readouterr().out


class TestRunCommands:
    """Tests for commands talking to the API."""

    def test_run_file(self, tmp_path, chain_playbook_doc, capsys):
        """Test run submits the document with context and skips."""
        from cli.caps_cli import main

        path = tmp_path / "chain.md"
        path.write_text(chain_playbook_doc)

        with patch("cli.caps_cli.requests.post") as mock_post:
            mock_post.return_value = _response(
                {"success": True, "message": "Run started.", "results": {"run_id": "r1"}}
            )
            code = main(["run", str(path), "--context", "NS=db", "--skip", "A"])

        assert code == 0
        body = mock_post.call_args[1]["json"]
        assert body["document"] == chain_playbook_doc
        assert body["context"] == {"NS": "db"}
        assert body["skip"] == ["A"]
        assert mock_post.call_args[0][0] == "http://localhost:5000/v1/runs"
        assert "Run started: r1" in capsys.readouterr().out

    def test_run_wait_failed(self, capsys):
        """Test a waited run that aborted exits 1 and prints the steps."""
        from cli.caps_cli import main

        run = {
            "run_id": "r1", "playbook_id": "chain", "playbook_version": "1",
            "status": "aborted", "failed_step": "C",
            "steps": [{"name": "C", "outcome": "failed", "attempts": 2,
                       "last_result": {"exit_code": 1}, "failures": ["boom"]}],
        }
        with patch("cli.caps_cli.requests.post") as mock_post:
            mock_post.return_value = _response({"success": True, "results": run})
            code = main(["run", "--playbook-id", "chain", "--version", "1", "--wait"])

        assert code == 1
        assert mock_post.call_args[1]["json"]["playbook_id"] == "chain"
        assert mock_post.call_args[1]["timeout"] is None
        out = capsys.readouterr().out
        assert "Failed:    C" in out
        assert "boom" in out

    def test_run_without_playbook(self, capsys):
        """Test run needs a file or playbook id."""
        from cli.caps_cli import main

        assert main(["run"]) == 1

    def test_run_bad_context(self, capsys):
        """Test malformed context exits before calling the API."""
        from cli.caps_cli import main

        with patch("cli.caps_cli.requests.post") as mock_post:
            assert main(["run", "--playbook-id", "x", "--context", "bad"]) == 1
        mock_post.assert_not_called()

    def test_runs(self, capsys):
        """Test listing runs prints a table."""
        from cli.caps_cli import main

        with patch("cli.caps_cli.requests.get") as mock_get:
            mock_get.return_value = _response({"success": True, "results": [{
                "run_id": "r1", "playbook_id": "chain", "playbook_version": "1",
                "status": "completed", "failed_step": None, "started_at": None,
            }]})
            assert main(["runs"]) == 0

        assert "r1" in capsys.readouterr().out

    def test_status_not_found(self, capsys):
        """Test an unknown run prints the API message."""
        from cli.caps_cli import main

        with patch("cli.caps_cli.requests.get") as mock_get:
            mock_get.return_value = _response(
                {"success": False, "message": "Run 'x' not found", "results": ""}, 404
            )
            assert main(["status", "x"]) == 1

        assert "Run 'x' not found" in capsys.readouterr().out

    def test_resume_wait(self, capsys):
        """Test resume --wait exits 0 only for a completed run."""
        from cli.caps_cli import main

        with patch("cli.caps_cli.requests.post") as mock_post:
            mock_post.return_value = _response(
                {"success": True, "results": {"run_id": "r1", "status": "completed"}}
            )
            assert main(["resume", "r1", "--wait"]) == 0

        assert mock_post.call_args[1]["json"] == {"wait": True}

    def test_abort_and_skip(self):
        """Test abort and skip post to their endpoints."""
        from cli.caps_cli import main

        with patch("cli.caps_cli.requests.post") as mock_post:
            mock_post.return_value = _response({"success": True, "results": {}})
            assert main(["abort", "r1"]) == 0
            assert main(["skip", "r1", "B", "--reason", "flaky"]) == 0

        urls = [c[0][0] for c in mock_post.call_args_list]
        assert urls == ["http://localhost:5000/v1/runs/r1/abort",
                        "http://localhost:5000/v1/runs/r1/skip"]
        assert mock_post.call_args[1]["json"] == {"step": "B", "reason": "flaky"}

    def test_rollback_failure(self, capsys):
        """Test a failed rollback prints each step and exits 1."""
        from cli.caps_cli import main

        with patch("cli.caps_cli.requests.post") as mock_post:
            mock_post.return_value = _response({
                "success": False, "message": "Rollback failed.",
                "results": [{"step_name": "apply", "rolled_back": False,
                             "result": {"exit_code": 1}}],
            }, 500)
            assert main(["rollback", "r1", "--step", "apply"]) == 1

        out = capsys.readouterr().out
        assert "apply: rollback FAILED (exit 1)" in out

    def test_events_list(self, capsys):
        """Test events without --follow prints the list."""
        from cli.caps_cli import main

        with patch("cli.caps_cli.requests.get") as mock_get:
            mock_get.return_value = _response({"success": True, "results": [
                {"sequence": 1, "timestamp": "t", "event_type": "run_started"},
            ]})
            assert main(["events", "r1", "--after", "0"]) == 0

        assert "#1 t run_started" in capsys.readouterr().out

    def test_events_follow(self, capsys):
        """Test --follow prints streamed lines."""
        from cli.caps_cli import main

        response = MagicMock(status_code=200)
        response.iter_lines.return_value = [
            json.dumps({"sequence": 1, "timestamp": "t", "event_type": "run_started"}),
            "",
            json.dumps({"sequence": 2, "timestamp": "t", "event_type": "run_ended",
                        "outcome": "completed"}),
        ]
        response.__enter__.return_value = response

        with patch("cli.caps_cli.requests.get", return_value=response) as mock_get:
            assert main(["events", "r1", "--follow"]) == 0

        assert mock_get.call_args[1]["stream"] is True
        out = capsys.readouterr().out.splitlines()
        assert out == ["#1 t run_started", "#2 t run_ended outcome=completed"]

    def test_health(self, capsys):
        """Test health prints components and exits 0 when healthy."""
        from cli.caps_cli import main

        with patch("cli.caps_cli.requests.get") as mock_get:
            mock_get.return_value = _response({
                "status": "healthy", "timestamp": "t",
                "components": {"ledger": {"status": "healthy"}},
            })
            assert main(["health"]) == 0

        assert "ledger: [OK] healthy" in capsys.readouterr().out

    def test_no_command(self, capsys):
        """Test running without a command prints help."""
        from cli.caps_cli import main

        assert main([]) == 1
