from __future__ import annotations

import argparse
import json
import sys

import requests

from prr.rollouts import SCALE_DOWN_STEPS, SCALE_UP_STEPS, parse_steps


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _add_target(p: argparse.ArgumentParser) -> None:
    p.add_argument("--namespace", default="default")
    p.add_argument("--name", "--deployment-name", dest="name", required=True, help="Deployment name")


def _add_budget(p: argparse.ArgumentParser) -> None:
    p.add_argument("--max-wait-s", type=int, default=600, help="Seconds each step may take to become available")
    p.add_argument("--max-unavailable", type=int, default=1, help="Unavailable replicas tolerated at the deadline")


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Progressive Replica Reconciler CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    p.add_argument("--user", default=None, help="Basic auth user for mutating calls")
    p.add_argument("--password", default=None, help="Basic auth password for mutating calls")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("workloads", help="List managed workloads")

    s_show = sub.add_parser("show", help="Show one workload and its rollout plan")
    _add_target(s_show)
    s_show.add_argument("--transitions", action="store_true", help="Show recorded plan transitions instead")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)

    s_start = sub.add_parser("start", help="Start a rollout with explicit steps")
    _add_target(s_start)
    s_start.add_argument("--steps", required=True, help="Comma separated replica counts, e.g. 1,2,5,8:pause,10")
    _add_budget(s_start)

    s_up = sub.add_parser("scaleup", help="Start the preset scale-up rollout")
    _add_target(s_up)
    _add_budget(s_up)

    s_down = sub.add_parser("scaledown", help="Start the preset scale-down rollout")
    _add_target(s_down)
    _add_budget(s_down)

    s_rel = sub.add_parser("release", help="Continue a paused or timed out rollout")
    _add_target(s_rel)

    s_stop = sub.add_parser("stop", help="Hold a rollout at the nearest step")
    _add_target(s_stop)

    s_rec = sub.add_parser("reconcile", help="Run one reconcile pass now")
    _add_target(s_rec)

    args = p.parse_args(argv)

    base = args.api.rstrip("/")
    auth = (args.user, args.password) if args.password is not None else None

    if args.cmd == "workloads":
        _print(requests.get(f"{base}/workloads", timeout=10).json())
        return 0

    if args.cmd == "events":
        _print(requests.get(f"{base}/events", params={"limit": args.limit}, timeout=10).json())
        return 0

    target = f"{base}/workloads/{args.namespace}/{args.name}"

    if args.cmd == "show":
        url = f"{target}/transitions" if args.transitions else target
        r = requests.get(url, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd in {"start", "scaleup", "scaledown"}:
        if args.cmd == "start":
            try:
                steps = parse_steps(args.steps)
            except ValueError as e:
                print(f"invalid --steps: {e}", file=sys.stderr)
                return 2
        else:
            steps = list(SCALE_UP_STEPS if args.cmd == "scaleup" else SCALE_DOWN_STEPS)
        payload = {
            "steps": [{"replicas": s.replicas, "pause": s.pause} for s in steps],
            "max_wait_available_seconds": args.max_wait_s,
            "max_unavailable_replicas": args.max_unavailable,
        }
        r = requests.post(f"{target}/rollout", json=payload, auth=auth, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd in {"release", "stop", "reconcile"}:
        r = requests.post(f"{target}/{args.cmd}", auth=auth, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
