"""Unit tests for the step executor."""
import threading

import pytest


def _action(payload="echo hi", codes=(0,)):
    from Caps.Core.playbook_parser import Action, Capability

    return Action(
        capability=Capability.SHELL,
        payload=payload,
        expected_exit_codes=frozenset(codes),
    )


class TestSubstituteVariables:
    """Tests for substitute_variables."""

    def test_string_substitution(self):
        """Test ${VAR} is replaced from the context."""
        from Caps.Core.playbook.executor import substitute_variables

        assert substitute_variables("kubectl -n ${NS} get pods", {"NS": "db"}) == \
            "kubectl -n db get pods"

    def test_unknown_variables_are_left(self):
        """Test unknown variables stay as written."""
        from Caps.Core.playbook.executor import substitute_variables

        assert substitute_variables("${MISSING}-x", {}) == "${MISSING}-x"

    def test_nested_structures(self):
        """Test dicts and lists are substituted recursively."""
        from Caps.Core.playbook.executor import substitute_variables

        value = {"path": "${DIR}/a.yaml", "args": ["${X}", 3], "n": 1}
        result = substitute_variables(value, {"DIR": "/tmp", "X": "y"})

        assert result == {"path": "/tmp/a.yaml", "args": ["y", 3], "n": 1}

    def test_build_run_context(self):
        """Test built-in variables override user context."""
        from Caps.Core.playbook.executor import build_run_context

        context = build_run_context("r1", "pb", "2", "apply", {"RUN_ID": "fake", "NS": "db"})

        assert context == {
            "RUN_ID": "r1",
            "PLAYBOOK_ID": "pb",
            "PLAYBOOK_VERSION": "2",
            "STEP_NAME": "apply",
            "NS": "db",
        }


class TestCapOutput:
    """Tests for cap_output."""

    def test_short_text_untouched(self):
        """Test text under the limit is unchanged."""
        from Caps.Core.playbook.executor import cap_output

        assert cap_output("hello", 10) == "hello"
        assert cap_output(None, 10) == ""

    def test_long_text_marked(self):
        """Test text over the limit is cut and marked."""
        from Caps.Core.playbook.executor import cap_output
        from Caps.Core.playbook.models import TRUNCATION_MARKER

        assert cap_output("abcdefghij" * 3, 10) == "abcdefghij" + TRUNCATION_MARKER

    def test_multibyte_boundary(self):
        """Test a cut inside a multibyte character drops the partial character."""
        from Caps.Core.playbook.executor import cap_output
        from Caps.Core.playbook.models import TRUNCATION_MARKER

        assert cap_output("é" * 10, 5) == "éé" + TRUNCATION_MARKER


class TestExecuteAction:
    """Tests for execute_action."""

    def test_success(self, scripted_runner):
        """Test a runner result is returned with timing filled in."""
        from Caps.Core.playbook.executor import execute_action

        result = execute_action(_action(), scripted_runner, timeout=5)

        assert result.exit_code == 0
        assert result.stdout == "ran echo hi"
        assert result.started_at is not None
        assert result.duration >= 0

    def test_missing_runner_is_fault(self):
        """Test an unregistered capability yields -2."""
        from Caps.Core.playbook.executor import execute_action

        result = execute_action(_action(), None, timeout=5)

        assert result.exit_code == -2
        assert "No runner registered" in result.stderr

    def test_unexpected_exception_is_fault(self, scripted_runner):
        """Test a runner raising an arbitrary exception yields -2."""
        from Caps.Core.playbook.executor import execute_action

        scripted_runner.responses["echo hi"] = [RuntimeError("connection reset")]
        result = execute_action(_action(), scripted_runner, timeout=5)

        assert result.exit_code == -2
        assert result.stderr == "RuntimeError: connection reset"

    def test_action_fault(self, scripted_runner):
        """Test ActionFault yields -2 with its message."""
        from Caps.Core.playbook.executor import execute_action
        from Caps.Core.playbook.runners.base import ActionFault

        scripted_runner.responses["echo hi"] = [ActionFault("binary missing")]
        result = execute_action(_action(), scripted_runner, timeout=5)

        assert result.exit_code == -2
        assert result.stderr == "Action fault: binary missing"

    def test_runner_reported_timeout(self, scripted_runner):
        """Test ActionTimeout raised by the runner yields -1."""
        from Caps.Core.playbook.executor import execute_action
        from Caps.Core.playbook.runners.base import ActionTimeout

        scripted_runner.responses["echo hi"] = [ActionTimeout("gave up")]
        result = execute_action(_action(), scripted_runner, timeout=5)

        assert result.timed_out

    def test_timeout_keeps_partial_output(self, scripted_runner):
        """Test the executor's own timeout aborts the runner and keeps its output."""
        from Caps.Core.playbook.executor import execute_action

        scripted_runner.responses["echo hi"] = ["block"]
        result = execute_action(_action(), scripted_runner, timeout=0.2)

        assert result.exit_code == -1
        assert result.stdout == "partial output"
        assert "timed out after 0.2s" in result.stderr

    def test_cancellation_mid_action(self, scripted_runner):
        """Test setting the cancel event aborts a running action with -3."""
        from Caps.Core.playbook.executor import execute_action

        scripted_runner.responses["echo hi"] = ["block"]
        cancel = threading.Event()
        timer = threading.Timer(0.1, cancel.set)
        timer.start()
        try:
            result = execute_action(_action(), scripted_runner, timeout=30, cancel_event=cancel)
        finally:
            timer.cancel()

        assert result.cancelled
        assert result.stdout == "partial output"

    def test_cancelled_before_start(self, scripted_runner):
        """Test a set cancel event prevents the runner from being called."""
        from Caps.Core.playbook.executor import execute_action

        cancel = threading.Event()
        cancel.set()
        result = execute_action(_action(), scripted_runner, timeout=5, cancel_event=cancel)

        assert result.cancelled
        assert scripted_runner.calls == []

    def test_wrong_return_type_is_fault(self, scripted_runner):
        """Test a runner returning something else yields -2."""
        from Caps.Core.playbook.executor import execute_action

        scripted_runner.responses["echo hi"] = [lambda action, abort: "done"]
        result = execute_action(_action(), scripted_runner, timeout=5)

        assert result.faulted
        assert "str" in result.stderr

    def test_output_is_capped(self, scripted_runner):
        """Test stdout beyond max_output_bytes is cut."""
        from Caps.Core.playbook.executor import execute_action
        from Caps.Core.playbook.models import TRUNCATION_MARKER, ExecutionResult

        scripted_runner.responses["echo hi"] = [ExecutionResult(exit_code=0, stdout="z" * 100)]
        result = execute_action(_action(), scripted_runner, timeout=5, max_output_bytes=16)

        assert result.stdout == "z" * 16 + TRUNCATION_MARKER

    def test_payload_substitution(self, scripted_runner):
        """Test the runner sees the substituted payload."""
        from Caps.Core.playbook.executor import execute_action

        execute_action(_action("deploy ${NS}"), scripted_runner, timeout=5, context={"NS": "db"})

        assert scripted_runner.calls == ["deploy db"]


class TestExecuteStepActions:
    """Tests for execute_step_actions."""

    def test_stops_at_unexpected_exit(self, scripted_runner, registry):
        """Test later actions do not run after a failure."""
        from Caps.Core.playbook.executor import execute_step_actions

        scripted_runner.responses["first"] = [1]
        results = execute_step_actions(
            (_action("first"), _action("second")), registry, timeout=5
        )

        assert [r.exit_code for r in results] == [1]
        assert scripted_runner.calls == ["first"]

    def test_expected_nonzero_continues(self, scripted_runner, registry):
        """Test an expected non-zero exit code does not stop the step."""
        from Caps.Core.playbook.executor import execute_step_actions

        scripted_runner.responses["grep-miss"] = [1]
        results = execute_step_actions(
            (_action("grep-miss", codes=(0, 1)), _action("second")), registry, timeout=5
        )

        assert [r.exit_code for r in results] == [1, 0]

    @pytest.mark.parametrize("failure", ["fault", "timeout"])
    def test_reserved_codes_stop(self, scripted_runner, registry, failure):
        """Test faults and timeouts stop the remaining actions."""
        from Caps.Core.playbook.executor import execute_step_actions
        from Caps.Core.playbook.runners.base import ActionFault, ActionTimeout

        error = ActionFault("x") if failure == "fault" else ActionTimeout("x")
        scripted_runner.responses["first"] = [error]
        results = execute_step_actions(
            (_action("first"), _action("second")), registry, timeout=5
        )

        assert len(results) == 1
        assert results[0].exit_code in (-1, -2)
