#!/usr/bin/env python3
"""Trigger an overdue reminder run on a running backend and print the run report."""

from __future__ import annotations

import argparse
import json
import sys
import urllib.error
import urllib.request

BASE_URL_DEFAULT = "http://localhost:8000/api/v1/reminders"


def post_json(url: str, data: dict) -> dict:
    """POST JSON to a URL and return parsed response."""
    body = json.dumps(data).encode("utf-8")
    req = urllib.request.Request(
        url,
        data=body,
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    with urllib.request.urlopen(req) as resp:
        return json.loads(resp.read().decode("utf-8"))


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run due reminders, or every overdue obligation of one lender.")
    parser.add_argument("--base-url", default=BASE_URL_DEFAULT, help="Reminders API base URL")
    parser.add_argument("--user-id", default=None, help="Run the obligation-driven pipeline for this lender only")
    parser.add_argument("--now", default=None, help="ISO-8601 timestamp to evaluate at instead of the server clock")
    parser.add_argument("--limit", type=int, default=None, help="Maximum candidates to evaluate in a due run")
    parser.add_argument("--json", action="store_true", help="Print the full run report as JSON")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    base_url = args.base_url.rstrip("/")
    payload: dict[str, object] = {}
    if args.now:
        payload["now_override"] = args.now

    if args.user_id:
        url = f"{base_url}/run/users/{args.user_id}"
    else:
        url = f"{base_url}/run/due"
        if args.limit is not None:
            payload["limit"] = args.limit

    try:
        report = post_json(url, payload)
    except urllib.error.HTTPError as exc:
        print(f"reminder run failed: HTTP {exc.code} {exc.read().decode('utf-8', 'replace')}", file=sys.stderr)
        return 1
    except urllib.error.URLError as exc:
        print(f"reminder run failed: {exc.reason}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(report, indent=2, sort_keys=True))
        return 0

    print(f"run {report['run_id']} ({report['mode']}) at {report['run_at']}")
    print(
        f"  evaluated={report['evaluated_count']} dispatched={report['dispatched_count']} "
        f"failed={report['failed_count']} cancelled={report['cancelled']}"
    )
    for tier, count in sorted(report.get("sent_by_tier", {}).items()):
        print(f"  sent {tier}: {count}")
    for error in report.get("errors", []):
        print(f"  error obligation={error.get('obligation_id')} user={error.get('user_id')}: {error['error']}")
    return 1 if report.get("errors") else 0


if __name__ == "__main__":
    raise SystemExit(main())
