#!/usr/bin/env python3
"""
Caps CLI - Command-line interface for the Caps playbook execution engine.

Usage:
    caps-cli validate <file>
    caps-cli run <file> [--context=KEY=VALUE ...] [--skip=<step> ...] [--wait]
    caps-cli run --playbook-id=<id> [--version=<version>] [--wait]
    caps-cli runs
    caps-cli status <run_id>
    caps-cli resume <run_id> [--wait]
    caps-cli abort <run_id>
    caps-cli skip <run_id> <step> [--reason=<reason>]
    caps-cli rollback <run_id> [--step=<step>]
    caps-cli events <run_id> [--follow] [--after=<sequence>]
    caps-cli health

`validate` parses the file locally; every other command talks to the
service at CAPS_BASE_URL (default http://localhost:5000).
"""
import os
import sys
import json
import argparse
import requests
from typing import Optional, Dict, Any

from Caps.Core.playbook_parser import PlaybookParseError, parse_playbook


def get_base_url() -> str:
    """Get the Caps API base URL from environment."""
    url = os.environ.get("CAPS_BASE_URL", "http://localhost:5000")
    return url.rstrip("/")


def api_request(
    method: str,
    endpoint: str,
    data: Optional[Dict] = None,
    params: Optional[Dict] = None,
    timeout: float = 30
) -> Dict[str, Any]:
    """Make an API request to Caps."""
    url = f"{get_base_url()}{endpoint}"
    headers = {"Content-Type": "application/json"}

    try:
        if method.upper() == "GET":
            response = requests.get(url, params=params, headers=headers, timeout=timeout)
        elif method.upper() == "POST":
            response = requests.post(url, json=data or {}, headers=headers, timeout=timeout)
        else:
            raise ValueError(f"Unsupported HTTP method: {method}")

        return response.json()
    except requests.RequestException as e:
        return {"success": False, "message": str(e), "results": []}
    except json.JSONDecodeError:
        return {"success": False, "message": "Invalid JSON response", "results": []}


def format_table(headers: list, rows: list) -> str:
    """Format data as a table."""
    if not rows:
        return "No results found."

    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(str(cell)))

    header_line = " | ".join(h.ljust(widths[i]) for i, h in enumerate(headers))
    separator = "-+-".join("-" * w for w in widths)

    row_lines = []
    for row in rows:
        row_lines.append(" | ".join(str(cell).ljust(widths[i]) for i, cell in enumerate(row)))

    return f"{header_line}\n{separator}\n" + "\n".join(row_lines)


def parse_context(pairs: list) -> Dict[str, str]:
    """Turn KEY=VALUE arguments into a dict."""
    context = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"Context must be KEY=VALUE, got '{pair}'")
        context[key] = value
    return context


def read_document(path: str) -> str:
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def print_run(run: Dict[str, Any]) -> None:
    """Print a run summary."""
    print(f"Run:       {run.get('run_id')}")
    print(f"Playbook:  {run.get('playbook_id')} v{run.get('playbook_version')}")
    print(f"Status:    {run.get('status')}")
    if run.get("current_step"):
        print(f"Current:   {run.get('current_step')}")
    if run.get("failed_step"):
        print(f"Failed:    {run.get('failed_step')}")
    if run.get("error"):
        print(f"Error:     {run.get('error')}")
    print()

    rows = []
    for step in run.get("steps", []):
        last = step.get("last_result") or {}
        rows.append([
            step.get("name", ""),
            step.get("outcome", ""),
            step.get("attempts", 0),
            last.get("exit_code", "-"),
            "; ".join(step.get("failures") or []) or "-",
        ])
    print(format_table(["Step", "Outcome", "Attempts", "Exit", "Failures"], rows))


def format_event(event: Dict[str, Any]) -> str:
    parts = [f"#{event.get('sequence')}", event.get("timestamp", ""), event.get("event_type", "")]
    if event.get("step_name"):
        parts.append(event["step_name"])
    if event.get("attempt_number"):
        parts.append(f"attempt={event['attempt_number']}")
    if event.get("outcome"):
        parts.append(f"outcome={event['outcome']}")
    result = event.get("result") or {}
    if result.get("exit_code") is not None:
        parts.append(f"exit={result['exit_code']}")
    line = " ".join(str(p) for p in parts)
    for failure in event.get("failures") or []:
        line += f"\n    - {failure}"
    return line


def cmd_validate(args: argparse.Namespace) -> int:
    """Parse a playbook file locally."""
    try:
        playbook = parse_playbook(read_document(args.file))
    except OSError as e:
        print(f"Error: cannot read {args.file}: {e}")
        return 1
    except PlaybookParseError as e:
        print(f"Invalid playbook: {e}")
        return 1

    print(f"Playbook '{playbook.id}' v{playbook.version} is valid.")
    print(f"Execution order: {' -> '.join(playbook.topological_order())}")
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    """Start a run."""
    try:
        context = parse_context(args.context)
    except ValueError as e:
        print(f"Error: {e}")
        return 1

    data: Dict[str, Any] = {"context": context, "skip": args.skip or [], "wait": args.wait}
    if args.playbook_id:
        data["playbook_id"] = args.playbook_id
        if args.version:
            data["version"] = args.version
    elif args.file:
        try:
            data["document"] = read_document(args.file)
        except OSError as e:
            print(f"Error: cannot read {args.file}: {e}")
            return 1
    else:
        print("Error: provide a playbook file or --playbook-id")
        return 1

    # A waited run can take as long as the playbook does
    result = api_request("POST", "/v1/runs", data=data, timeout=None if args.wait else 30)
    if not result.get("success", False):
        print(f"Error: {result.get('message', 'Failed to start run')}")
        return 1

    run = result.get("results", {})
    if args.wait:
        print_run(run)
        return 0 if run.get("status") == "completed" else 1
    print(f"Run started: {run.get('run_id')}")
    return 0


def cmd_runs(args: argparse.Namespace) -> int:
    """List runs."""
    result = api_request("GET", "/v1/runs")
    if not result.get("success", False):
        print(f"Error: {result.get('message', 'Failed to list runs')}")
        return 1

    rows = []
    for run in result.get("results", []):
        rows.append([
            run.get("run_id", ""),
            run.get("playbook_id", ""),
            run.get("playbook_version", ""),
            run.get("status", ""),
            run.get("failed_step") or "-",
            run.get("started_at") or "-",
        ])
    print(format_table(["Run", "Playbook", "Version", "Status", "Failed Step", "Started"], rows))
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Show a run."""
    result = api_request("GET", f"/v1/runs/{args.run_id}")
    if not result.get("success", False):
        print(f"Error: {result.get('message', 'Run not found')}")
        return 1
    print_run(result.get("results", {}))
    return 0


def cmd_resume(args: argparse.Namespace) -> int:
    """Resume a run from its ledger."""
    result = api_request(
        "POST", f"/v1/runs/{args.run_id}/resume",
        data={"wait": args.wait}, timeout=None if args.wait else 30
    )
    if not result.get("success", False):
        print(f"Error: {result.get('message', 'Failed to resume run')}")
        return 1
    status = result.get("results", {}).get("status")
    print(f"Run '{args.run_id}' is {status}.")
    if args.wait:
        return 0 if status == "completed" else 1
    return 0


def cmd_abort(args: argparse.Namespace) -> int:
    """Abort a run."""
    result = api_request("POST", f"/v1/runs/{args.run_id}/abort")
    if result.get("success", False):
        print(f"Abort requested for run '{args.run_id}'.")
        return 0
    print(f"Error: {result.get('message', 'Failed to abort run')}")
    return 1


def cmd_skip(args: argparse.Namespace) -> int:
    """Skip a step."""
    data = {"step": args.step}
    if args.reason:
        data["reason"] = args.reason
    result = api_request("POST", f"/v1/runs/{args.run_id}/skip", data=data)
    if result.get("success", False):
        print(f"Step '{args.step}' of run '{args.run_id}' skipped.")
        return 0
    print(f"Error: {result.get('message', 'Failed to skip step')}")
    return 1


def cmd_rollback(args: argparse.Namespace) -> int:
    """Roll back one step, or every succeeded step."""
    data = {"step": args.step} if args.step else {}
    result = api_request("POST", f"/v1/runs/{args.run_id}/rollback", data=data, timeout=None)

    results = result.get("results")
    if isinstance(results, list):
        if not results:
            print("Nothing to roll back.")
        for r in results:
            state = "rolled back" if r.get("rolled_back") else "rollback FAILED"
            exit_code = (r.get("result") or {}).get("exit_code")
            print(f"  {r.get('step_name')}: {state} (exit {exit_code})")

    if not result.get("success", False):
        print(f"Error: {result.get('message', 'Rollback failed')}")
        return 1
    return 0


def cmd_events(args: argparse.Namespace) -> int:
    """Print a run's events, optionally following until the run ends."""
    endpoint = f"/v1/runs/{args.run_id}/events"
    if not args.follow:
        result = api_request("GET", endpoint, params={"after": args.after})
        if not result.get("success", False):
            print(f"Error: {result.get('message', 'Run not found')}")
            return 1
        for event in result.get("results", []):
            print(format_event(event))
        return 0

    try:
        with requests.get(
            f"{get_base_url()}{endpoint}",
            params={"after": args.after, "follow": 1},
            stream=True,
            timeout=(10, None),
        ) as response:
            if response.status_code != 200:
                print(f"Error: {response.json().get('message', 'Run not found')}")
                return 1
            for line in response.iter_lines(decode_unicode=True):
                if line:
                    print(format_event(json.loads(line)), flush=True)
    except requests.RequestException as e:
        print(f"Error connecting to Caps: {e}")
        return 1
    return 0


def cmd_health(args: argparse.Namespace) -> int:
    """Check Caps health status."""
    try:
        response = requests.get(f"{get_base_url()}/health", timeout=10)
        health_data = response.json()

        print(f"Overall Status: {health_data.get('status', 'unknown').upper()}")
        print(f"Timestamp:      {health_data.get('timestamp', 'unknown')}")
        print()
        print("Components:")

        components = health_data.get("components", {})
        for name, info in components.items():
            status = info.get("status", "unknown")
            status_icon = "OK" if status == "healthy" else "WARN"
            print(f"  {name}: [{status_icon}] {status}")

        return 0 if health_data.get("status") == "healthy" else 1
    except requests.RequestException as e:
        print(f"Error connecting to Caps: {e}")
        return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Caps CLI - Command-line interface for the Caps playbook engine",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    validate_parser = subparsers.add_parser("validate", help="Validate a playbook file locally")
    validate_parser.add_argument("file", help="Playbook file (YAML, JSON or Markdown)")

    run_parser = subparsers.add_parser("run", help="Start a run")
    run_parser.add_argument("file", nargs="?", help="Playbook file to submit")
    run_parser.add_argument("--playbook-id", help="Run a playbook loaded by the service")
    run_parser.add_argument("--version", help="Playbook version (default: latest)")
    run_parser.add_argument("--context", action="append", default=[],
                            help="Run variable as KEY=VALUE (repeatable)")
    run_parser.add_argument("--skip", action="append", default=[],
                            help="Step to skip (repeatable)")
    run_parser.add_argument("--wait", action="store_true", help="Wait for the run to finish")

    subparsers.add_parser("runs", help="List runs")

    status_parser = subparsers.add_parser("status", help="Show a run")
    status_parser.add_argument("run_id", help="Run id")

    resume_parser = subparsers.add_parser("resume", help="Resume a run from its ledger")
    resume_parser.add_argument("run_id", help="Run id")
    resume_parser.add_argument("--wait", action="store_true", help="Wait for the run to finish")

    abort_parser = subparsers.add_parser("abort", help="Abort a run")
    abort_parser.add_argument("run_id", help="Run id")

    skip_parser = subparsers.add_parser("skip", help="Skip a pending or failed step")
    skip_parser.add_argument("run_id", help="Run id")
    skip_parser.add_argument("step", help="Step name")
    skip_parser.add_argument("--reason", help="Why the step is skipped")

    rollback_parser = subparsers.add_parser("rollback", help="Run rollback actions")
    rollback_parser.add_argument("run_id", help="Run id")
    rollback_parser.add_argument("--step", help="Only this step (default: every succeeded step)")

    events_parser = subparsers.add_parser("events", help="Show a run's events")
    events_parser.add_argument("run_id", help="Run id")
    events_parser.add_argument("--follow", action="store_true", help="Follow until the run ends")
    events_parser.add_argument("--after", type=int, default=0, help="Only events after this sequence")

    subparsers.add_parser("health", help="Check Caps health status")
    return parser


COMMANDS = {
    "validate": cmd_validate,
    "run": cmd_run,
    "runs": cmd_runs,
    "status": cmd_status,
    "resume": cmd_resume,
    "abort": cmd_abort,
    "skip": cmd_skip,
    "rollback": cmd_rollback,
    "events": cmd_events,
    "health": cmd_health,
}


def main(argv: Optional[list] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    return COMMANDS[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
