import argparse
import json
import sys
import time
from typing import List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"
TERMINAL_STATUSES = {"completed", "failed", "stopped"}


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _print_run(run: dict) -> None:
    if not run:
        print("No run data.")
        return
    print(f"Run {run.get('runId')}: {run.get('status')}")
    steps = (run.get("planState") or {}).get("steps") or []
    active = run.get("activeStepId")
    for step in steps:
        marker = ">" if step.get("id") == active else " "
        print(f" {marker} [{step.get('status')}] {step.get('title')}  ({step.get('id')})")
    if run.get("requiresHumanIntervention"):
        print("Waiting for a human.")
    if run.get("errorMessage"):
        print(f"Error: {run['errorMessage']}")


def _poll_run(client: httpx.Client, base: str, run_id: str, timeout_s: int = 900, interval_s: float = 2.0) -> Optional[dict]:
    start = time.time()
    last_status = None
    while time.time() - start < timeout_s:
        resp = client.get(_join_url(base, f"/api/runs/{run_id}"), timeout=10)
        resp.raise_for_status()
        run = resp.json()
        if run.get("status") != last_status:
            last_status = run.get("status")
            print(f"{run_id}: {last_status}")
        if last_status in TERMINAL_STATUSES or last_status == "waiting_human":
            return run
        time.sleep(interval_s)
    print("Timed out waiting for the run.")
    return None


def _action(args: argparse.Namespace, payload: dict) -> int:
    with httpx.Client() as client:
        resp = client.post(_join_url(args.base_url, f"/api/runs/{args.run_id}/actions"), json=payload, timeout=30)
        if resp.status_code >= 400:
            print(f"{payload['action']} failed: HTTP {resp.status_code} {resp.text}")
            return 1
        data = resp.json()
        print(f"{payload['action']}: {data.get('status', 'ok')}")
    return 0


def run_submit(args: argparse.Namespace) -> int:
    payload = {
        "task": args.task,
        "ignoreRobotsTxt": args.ignore_robots,
        "requireHumanApproval": args.require_approval,
    }
    if args.model:
        payload["model"] = args.model
    if args.browser:
        payload["browser"] = args.browser
    if args.headed:
        payload["headless"] = False
    if args.search:
        payload["useSearch"] = True
    if args.max_steps:
        payload["planLimits"] = {"maxSteps": args.max_steps}
    with httpx.Client() as client:
        resp = client.post(_join_url(args.base_url, "/api/runs"), json=payload, timeout=30)
        if resp.status_code >= 400:
            print(f"Failed to submit run: HTTP {resp.status_code}")
            return 1
        data = resp.json()
        run_id = data["runId"]
        print(f"Submitted run {run_id} ({data.get('status')})")
        if args.wait:
            run = _poll_run(client, args.base_url, run_id, timeout_s=args.timeout)
            if run is None:
                return 1
            _print_run(run)
            return 0 if run.get("status") == "completed" else 2
    return 0


def run_status(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.get(_join_url(args.base_url, f"/api/runs/{args.run_id}"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to fetch run: HTTP {resp.status_code}")
            return 1
        _print_run(resp.json())
    return 0


def run_watch(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        try:
            run = _poll_run(client, args.base_url, args.run_id, timeout_s=args.timeout)
        except httpx.HTTPStatusError as exc:
            print(f"Failed to fetch run: HTTP {exc.response.status_code}")
            return 1
    if run is None:
        return 1
    _print_run(run)
    return 0


def run_stop(args: argparse.Namespace) -> int:
    return _action(args, {"action": "stop"})


def run_resume(args: argparse.Namespace) -> int:
    payload = {"action": "resume"}
    if args.step:
        payload["stepId"] = args.step
    return _action(args, payload)


def run_approve(args: argparse.Namespace) -> int:
    return _action(args, {"action": "approve_step", "stepId": args.step_id})


def run_audit(args: argparse.Namespace) -> int:
    params = {"limit": args.limit}
    if args.type:
        params["type"] = args.type
    with httpx.Client() as client:
        resp = client.get(_join_url(args.base_url, f"/api/runs/{args.run_id}/audit"), params=params, timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to fetch audit log: HTTP {resp.status_code}")
            return 1
        for entry in resp.json().get("audit", []):
            payload = entry.get("payload") or {}
            line = f"{entry.get('created_at')} {entry.get('level'):<7} {payload.get('type', '-'):<18} {entry.get('message')}"
            print(line)
            if args.verbose:
                print("    " + json.dumps(payload))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="webpilot CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    submit = subparsers.add_parser("submit", help="Queue a new run")
    submit.add_argument("task", help="Task for the agent")
    submit.add_argument("--model", help="Planner model id")
    submit.add_argument("--browser", choices=["chromium", "firefox", "webkit"])
    submit.add_argument("--headed", action="store_true", help="Show the browser window")
    submit.add_argument("--ignore-robots", action="store_true", help="Proceed past robots.txt disallow rules")
    submit.add_argument("--require-approval", action="store_true", help="Pause before risky steps")
    submit.add_argument("--search", action="store_true", help="Search the web before planning")
    submit.add_argument("--max-steps", type=int, help="Plan step limit")
    submit.add_argument("--wait", action="store_true", help="Wait until the run finishes or pauses")
    submit.add_argument("--timeout", type=int, default=900, help="Max wait seconds")
    submit.set_defaults(func=run_submit)

    status = subparsers.add_parser("status", help="Show a run")
    status.add_argument("run_id")
    status.set_defaults(func=run_status)

    watch = subparsers.add_parser("watch", help="Poll a run until it finishes or pauses")
    watch.add_argument("run_id")
    watch.add_argument("--timeout", type=int, default=900, help="Max wait seconds")
    watch.set_defaults(func=run_watch)

    stop = subparsers.add_parser("stop", help="Stop a run")
    stop.add_argument("run_id")
    stop.set_defaults(func=run_stop)

    resume = subparsers.add_parser("resume", help="Resume a stopped, failed or waiting run")
    resume.add_argument("run_id")
    resume.add_argument("--step", help="Restart from this step id")
    resume.set_defaults(func=run_resume)

    approve = subparsers.add_parser("approve", help="Approve the step a run is waiting on")
    approve.add_argument("run_id")
    approve.add_argument("step_id")
    approve.set_defaults(func=run_approve)

    audit = subparsers.add_parser("audit", help="Print the audit log")
    audit.add_argument("run_id")
    audit.add_argument("--type", help="Only entries of this type")
    audit.add_argument("--limit", type=int, default=200)
    audit.add_argument("-v", "--verbose", action="store_true", help="Print payloads")
    audit.set_defaults(func=run_audit)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    func = getattr(args, "func", None)
    if func is None:
        parser.print_help()
        return 1
    return func(args)


if __name__ == "__main__":
    sys.exit(main())
