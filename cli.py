from __future__ import annotations

import argparse
import json
import sys

import requests

from topo.descriptors import load_file
from topo.errors import TopologyError
from topo.graph import DependencyGraph


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _plan(path: str) -> dict:
    store = load_file(path)
    graph = DependencyGraph(store)
    return {
        "levels": graph.levels(),
        "stop_order": graph.stop_order(),
        "routes": [
            {"listen_port": d.route.listen_port, "target": d.name, "target_port": d.route_target_port, "tls": d.route.tls}
            for d in store.routed()
        ],
        "resources": {d.name: d.resources.as_dict() for d in store if d.resources.as_dict()},
    }


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Service Topology Orchestrator CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_status = sub.add_parser("status", help="Show aggregate status")
    s_status.add_argument("service", nargs="?", help="Only this service")

    sub.add_parser("routes", help="Show the route table")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--service")

    s_restart = sub.add_parser("restart", help="Restart a service")
    s_restart.add_argument("service")

    s_plan = sub.add_parser("plan", help="Print start levels and stop order for a topology file")
    s_plan.add_argument("file")

    s_val = sub.add_parser("validate", help="Validate a topology file")
    s_val.add_argument("file")

    args = p.parse_args(argv)

    if args.cmd in {"plan", "validate"}:
        try:
            plan = _plan(args.file)
        except (TopologyError, OSError) as e:
            print(f"error: {e}", file=sys.stderr)
            return 1
        if args.cmd == "plan":
            _print(plan)
        else:
            print(f"ok: {sum(len(lvl) for lvl in plan['levels'])} services, {len(plan['routes'])} routes")
        return 0

    base = args.api.rstrip("/")

    if args.cmd == "status":
        url = f"{base}/status/{args.service}" if args.service else f"{base}/status"
        r = requests.get(url, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "routes":
        _print(requests.get(f"{base}/routes", timeout=10).json())
        return 0

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.service:
            params["service"] = args.service
        _print(requests.get(f"{base}/events", params=params, timeout=10).json())
        return 0

    if args.cmd == "restart":
        r = requests.post(f"{base}/services/{args.service}/restart", timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
