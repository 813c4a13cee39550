from __future__ import annotations

import argparse
import json
import os
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="NLB port controller CLI")
    p.add_argument("--api", default=os.getenv("NLBC_API", "http://localhost:8000"), help="API base URL")
    p.add_argument("--user", default=os.getenv("NLBC_ADMIN_USER", "admin"))
    p.add_argument("--password", default=os.getenv("NLBC_ADMIN_PASSWORD"))
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("pool", help="Show load balancers and occupied ports")
    sub.add_parser("allocations", help="List service allocations")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--service", help="Only events for namespace/name")

    s_dg = sub.add_parser("dangling", help="Show orphaned and leaked listeners")
    s_dg.add_argument("--kind", choices=["orphan", "leak"])
    s_dg.add_argument("--all", action="store_true", help="Include already collected entries")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")
    auth = (args.user, args.password) if args.password else None

    if args.cmd == "pool":
        r = requests.get(f"{base}/pool", auth=auth, timeout=10)
    elif args.cmd == "allocations":
        r = requests.get(f"{base}/allocations", auth=auth, timeout=10)
    elif args.cmd == "events":
        params = {"limit": args.limit}
        if args.service:
            params["service"] = args.service
        r = requests.get(f"{base}/events", params=params, auth=auth, timeout=10)
    elif args.cmd == "dangling":
        params = {"include_collected": str(args.all).lower()}
        if args.kind:
            params["kind"] = args.kind
        r = requests.get(f"{base}/dangling", params=params, auth=auth, timeout=10)
    else:
        return 2

    _print(r.json())
    return 0 if r.ok else 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
