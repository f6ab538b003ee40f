from __future__ import annotations

import argparse
import json
import os
import sys
import time
from typing import Any
import urllib.parse
import urllib.request
import urllib.error


DEFAULT_BASE_URL = os.getenv("HUB_BASE_URL", "http://localhost:8000")
DEFAULT_ADMIN_KEY = os.getenv("INTERNAL_ADMIN_KEY", "")
DEFAULT_ACTOR = os.getenv("HUB_ADMIN_ACTOR", "ops-cli")

DEFAULT_TIMEOUT_SECONDS = 30
WATCH_INTERVAL_SECONDS = 2.0


def http_call(method: str, url: str, admin_key: str, actor: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    req = urllib.request.Request(
        url=url,
        data=data,
        method=method,
        headers={
            "Content-Type": "application/json",
            "X-Internal-Admin-Key": admin_key,
            "X-Admin-Actor": actor,
        },
    )
    try:
        with urllib.request.urlopen(req, timeout=DEFAULT_TIMEOUT_SECONDS) as resp:
            raw = resp.read().decode("utf-8")
            parsed = json.loads(raw) if raw else {}
            return parsed if isinstance(parsed, dict) else {"items": parsed}
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8", errors="replace")
        print(f"HTTP {e.code} {e.reason} for {url}", file=sys.stderr)
        if body:
            print(body, file=sys.stderr)
        return {"error": {"status": e.code, "reason": e.reason, "body": body}}
    except urllib.error.URLError as e:
        print(f"Network error for {url}: {e}", file=sys.stderr)
        return {"error": {"reason": str(e)}}


def _print(resp: dict[str, Any]) -> int:
    print(json.dumps(resp, indent=2, ensure_ascii=False))
    return 0 if "error" not in resp else 1


def _is_finished(batch: dict[str, Any]) -> bool:
    progress = batch.get("progress") or {}
    if progress.get("phase") in ("finished", "failed"):
        return True
    entries = batch.get("entries") or []
    # long operations own exactly one started entry; done once it is terminal
    return bool(entries) and all(e.get("status") != "started" for e in entries) and not progress


def watch(base: str, batch_id: str, admin_key: str, actor: str) -> int:
    url = f"{base}/operations/{urllib.parse.quote(batch_id)}"
    last = None
    while True:
        batch = http_call("GET", url, admin_key, actor)
        if "error" in batch:
            return 1
        progress = batch.get("progress") or {}
        line = (
            f"[{progress.get('operation_type', '?')}] {progress.get('phase', '?')} "
            f"{progress.get('current', 0)}/{progress.get('total', 0)} {progress.get('current_city_name') or ''}"
        )
        if progress.get("retry_attempt"):
            line += f" (retry {progress['retry_attempt']}/{progress.get('retry_max')})"
        if progress.get("message"):
            line += f" - {progress['message']}"
        if line != last:
            print(line.strip())
            last = line
        if _is_finished(batch):
            failed = any(e.get("status") == "failed" for e in batch.get("entries") or [])
            return 1 if failed or progress.get("phase") == "failed" else 0
        time.sleep(WATCH_INTERVAL_SECONDS)


def main() -> int:
    p = argparse.ArgumentParser(description="Drive the delivery coverage pipeline over the admin API.")
    p.add_argument("--base-url", default=DEFAULT_BASE_URL)
    p.add_argument("--admin-key", default=DEFAULT_ADMIN_KEY)
    p.add_argument("--actor", default=DEFAULT_ACTOR, help="reviewer identity recorded on approvals")
    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="stage counts and the recommended next action")
    for name in ("delta-check", "ai-import", "geo-sync"):
        sp = sub.add_parser(name, help=f"start a {name} run")
        sp.add_argument("--watch", action="store_true", help="follow progress until the run finishes")

    sp = sub.add_parser("staging", help="list staging cities")
    sp.add_argument("--status", choices=["pending", "approved", "rejected", "committed"])

    sp = sub.add_parser("show", help="one staging city with its districts and areas")
    sp.add_argument("city_id")

    sp = sub.add_parser("approve", help="approve pending staging cities")
    sp.add_argument("city_ids", nargs="+")

    sp = sub.add_parser("reject", help="reject a pending staging city")
    sp.add_argument("city_id")

    sp = sub.add_parser("commit", help="commit approved cities (all approved when no ids given)")
    sp.add_argument("city_ids", nargs="*")
    sp.add_argument("--yes", action="store_true", help="required (safety)")
    sp.add_argument("--watch", action="store_true")

    sp = sub.add_parser("log", help="recent operation log entries")
    sp.add_argument("--limit", type=int, default=20)
    sp.add_argument("--type", dest="operation_type")

    sp = sub.add_parser("watch", help="follow a batch until it finishes")
    sp.add_argument("batch_id")

    sp = sub.add_parser("cancel", help="stop a running commit before its next city")
    sp.add_argument("batch_id")

    args = p.parse_args()

    if not args.admin_key:
        print("Missing INTERNAL_ADMIN_KEY (env) or --admin-key", file=sys.stderr)
        return 2

    base = f"{args.base_url.rstrip('/')}/v1/admin/coverage"
    key, actor = args.admin_key, args.actor

    if args.command == "status":
        return _print(http_call("GET", f"{base}/status", key, actor))

    if args.command in ("delta-check", "ai-import", "geo-sync", "commit"):
        payload = None
        if args.command == "commit":
            if not args.yes:
                print("Refusing to commit without --yes (safety).", file=sys.stderr)
                return 2
            payload = {"city_ids": args.city_ids or None}
        resp = http_call("POST", f"{base}/{args.command}", key, actor, payload if payload is not None else {})
        code = _print(resp)
        if code or not args.watch:
            return code
        return watch(base, resp["batch_id"], key, actor)

    if args.command == "staging":
        query = f"?status={args.status}" if args.status else ""
        return _print(http_call("GET", f"{base}/staging{query}", key, actor))

    if args.command == "show":
        return _print(http_call("GET", f"{base}/staging/{args.city_id}", key, actor))

    if args.command == "approve":
        if len(args.city_ids) == 1:
            return _print(http_call("POST", f"{base}/staging/{args.city_ids[0]}:approve", key, actor, {}))
        return _print(http_call("POST", f"{base}/staging:approve", key, actor, {"city_ids": args.city_ids}))

    if args.command == "reject":
        return _print(http_call("POST", f"{base}/staging/{args.city_id}:reject", key, actor, {}))

    if args.command == "log":
        query = {"limit": str(args.limit)}
        if args.operation_type:
            query["operation_type"] = args.operation_type
        return _print(http_call("GET", f"{base}/operations?{urllib.parse.urlencode(query)}", key, actor))

    if args.command == "watch":
        return watch(base, args.batch_id, key, actor)

    if args.command == "cancel":
        return _print(http_call("POST", f"{base}/operations/{args.batch_id}:cancel", key, actor, {}))

    print(f"Unknown command: {args.command}", file=sys.stderr)
    return 2

if __name__ == "__main__":
    raise SystemExit(main())
