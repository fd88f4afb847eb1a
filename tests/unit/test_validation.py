"""Unit tests for the validation engine."""
import pytest


def _rules(*rule_dicts):
    """Parse validation rules through the playbook parser."""
    from Caps.Core.playbook_parser import _parse_validation

    return tuple(_parse_validation(r, f"validations[{i}]") for i, r in enumerate(rule_dicts))


def _result(exit_code=0, stdout=""):
    from Caps.Core.playbook.models import ExecutionResult

    return ExecutionResult(exit_code=exit_code, stdout=stdout)


def _http_runner(status):
    """FunctionRunner answering like HttpCheckRunner with a fixed status."""
    from Caps.Core.playbook.models import ExecutionResult
    from Caps.Core.playbook.runners.base import FunctionRunner

    seen = []

    def run(action, abort_event):
        seen.append(action.payload)
        return ExecutionResult(
            exit_code=0, stdout=f"HTTP {status}", details={"http_status": status}
        )

    runner = FunctionRunner(run)
    runner.seen = seen
    return runner


class TestValidate:
    """Tests for validate."""

    def test_no_rules_pass(self):
        """Test an empty rule list passes."""
        from Caps.Core.playbook.validation import validate

        assert validate(_result(1), ()) == (True, [])

    def test_exit_code_equals(self):
        """Test exit-code-equals against a set of codes."""
        from Caps.Core.playbook.validation import validate

        rules = _rules({"kind": "exit-code-equals", "expected": [0, 2]})

        assert validate(_result(2), rules)[0] is True
        passed, failures = validate(_result(1), rules)
        assert passed is False
        assert failures == ["exit-code-equals [0, 2]: got exit code 1"]

    def test_stdout_contains_and_regex(self):
        """Test substring and regex rules."""
        from Caps.Core.playbook.validation import validate

        rules = _rules(
            {"kind": "stdout-contains", "value": "Running"},
            {"kind": "stdout-regex", "pattern": r"^postgres-\d+\s+1/1"},
        )
        stdout = "NAME READY\npostgres-0   1/1   Running"

        assert validate(_result(0, stdout), rules) == (True, [])

    def test_all_rules_are_evaluated(self):
        """Test failures from every rule are reported, in order."""
        from Caps.Core.playbook.validation import validate

        rules = _rules(
            {"kind": "exit-code-equals", "expected": 0},
            {"kind": "stdout-contains", "value": "Running"},
            {"kind": "stdout-regex", "pattern": "ready=true"},
        )
        passed, failures = validate(_result(1, "Pending"), rules)

        assert passed is False
        assert len(failures) == 3
        assert failures[0].startswith("exit-code-equals")
        assert failures[1].startswith("stdout-contains 'Running'")
        assert failures[2].startswith("stdout-regex /ready=true/")

    def test_stdout_is_capped_before_matching(self):
        """Test text past max_output_bytes is not matched."""
        from Caps.Core.playbook.validation import validate

        rules = _rules({"kind": "stdout-contains", "value": "needle"})
        stdout = "x" * 2000 + "needle"

        assert validate(_result(0, stdout), rules, max_output_bytes=1024)[0] is False
        assert validate(_result(0, stdout), rules)[0] is True

    def test_http_status_equals(self):
        """Test an HTTP probe through the http-check runner."""
        from Caps.Core.playbook.validation import validate

        rules = _rules({"kind": "http-status-equals", "url": "http://svc/healthz",
                        "expected": [200, 204]})
        runner = _http_runner(204)

        assert validate(_result(), rules, http_checker=runner) == (True, [])
        assert runner.seen[0]["url"] == "http://svc/healthz"

    def test_http_status_mismatch(self):
        """Test an unexpected HTTP status fails the rule."""
        from Caps.Core.playbook.validation import validate

        rules = _rules({"kind": "http-status-equals", "url": "http://svc/healthz"})
        passed, failures = validate(_result(), rules, http_checker=_http_runner(503))

        assert passed is False
        assert failures[0].endswith("got HTTP 503")

    def test_http_probe_fault(self):
        """Test a probe that cannot connect fails with the fault message."""
        from Caps.Core.playbook.runners.base import ActionFault, FunctionRunner
        from Caps.Core.playbook.validation import validate

        def refuse(action, abort_event):
            raise ActionFault("connection refused")

        rules = _rules({"kind": "http-status-equals", "url": "http://svc/healthz"})
        passed, failures = validate(_result(), rules, http_checker=FunctionRunner(refuse))

        assert passed is False
        assert "connection refused" in failures[0]

    def test_http_without_runner(self):
        """Test an http rule fails when no http-check runner exists."""
        from Caps.Core.playbook.validation import validate

        rules = _rules({"kind": "http-status-equals", "url": "http://svc/healthz"})
        passed, failures = validate(_result(), rules)

        assert passed is False
        assert "no http-check runner" in failures[0]

    def test_custom_probe(self):
        """Test a registered probe receives the result and parameters."""
        from Caps.Core.playbook.validation import validate

        calls = []

        def replicas_ready(result, parameters):
            calls.append(parameters)
            return result.stdout.count("Running") >= parameters["min"], "too few replicas"

        rules = _rules({"kind": "custom-probe", "probe": "replicas",
                        "parameters": {"min": 2}})
        probes = {"replicas": replicas_ready}

        assert validate(_result(0, "Running Running"), rules, probes=probes)[0] is True
        passed, failures = validate(_result(0, "Running"), rules, probes=probes)
        assert passed is False
        assert failures == ["custom-probe 'replicas': too few replicas"]
        assert calls == [{"min": 2}, {"min": 2}]

    def test_custom_probe_errors_become_failures(self):
        """Test unregistered and raising probes fail instead of raising."""
        from Caps.Core.playbook.validation import validate

        def broken(result, parameters):
            raise KeyError("missing")

        rules = _rules(
            {"kind": "custom-probe", "probe": "broken"},
            {"kind": "custom-probe", "probe": "unknown"},
        )
        passed, failures = validate(_result(), rules, probes={"broken": broken})

        assert passed is False
        assert "probe raised KeyError" in failures[0]
        assert "not registered" in failures[1]


class TestEvaluateAttempt:
    """Tests for evaluate_attempt."""

    def _actions(self, n=1):
        from Caps.Core.playbook_parser import Action, Capability

        return tuple(Action(capability=Capability.SHELL, payload=f"a{i}") for i in range(n))

    def test_action_failure_without_rules(self):
        """Test an unexpected exit code fails the attempt even with no rules."""
        from Caps.Core.playbook.validation import evaluate_attempt

        outcome = evaluate_attempt(_result(1), [_result(1)], self._actions(), ())

        assert outcome.passed is False
        assert outcome.failures == ("action 1 (shell) exited 1, expected one of [0]",)

    def test_fault_message(self):
        """Test faults are described with their stderr."""
        from Caps.Core.playbook.models import ExecutionResult
        from Caps.Core.playbook.validation import evaluate_attempt

        fault = ExecutionResult.synthetic(-2, "Action fault: binary missing")
        outcome = evaluate_attempt(fault, [fault], self._actions(), ())

        assert outcome.failures == ("action 1 (shell) faulted: Action fault: binary missing",)

    def test_cancelled_attempt_skips_rules(self):
        """Test rules are not evaluated for a cancelled attempt."""
        from Caps.Core.playbook.models import ExecutionResult
        from Caps.Core.playbook.validation import evaluate_attempt

        cancelled = ExecutionResult.synthetic(-3, "Action cancelled")
        rules = _rules({"kind": "stdout-contains", "value": "ok"})
        outcome = evaluate_attempt(cancelled, [cancelled], self._actions(), rules)

        assert outcome.failures == ("action 1 (shell) was cancelled",)

    def test_success(self):
        """Test an attempt passing actions and rules."""
        from Caps.Core.playbook.validation import evaluate_attempt

        rules = _rules({"kind": "stdout-contains", "value": "ok"})
        outcome = evaluate_attempt(_result(0, "ok"), [_result(0, "ok")], self._actions(), rules)

        assert outcome.passed is True
        assert outcome.failures == ()


class TestRequireValid:
    """Tests for require_valid."""

    def test_raises_with_all_failures(self):
        """Test ValidationFailed carries every failure."""
        from Caps.Core.playbook.validation import ValidationFailed, require_valid

        rules = _rules(
            {"kind": "exit-code-equals", "expected": 0},
            {"kind": "stdout-contains", "value": "ok"},
        )
        with pytest.raises(ValidationFailed) as exc_info:
            require_valid(_result(1, "nope"), rules)
        assert len(exc_info.value.failures) == 2

    def test_passes_silently(self):
        """Test a valid result does not raise."""
        from Caps.Core.playbook.validation import require_valid

        require_valid(_result(0), _rules({"kind": "exit-code-equals", "expected": 0}))
