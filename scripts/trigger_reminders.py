#!/usr/bin/env python3
"""Trigger a reminder run on the live backend; meant to be called from cron."""

from __future__ import annotations

import argparse
import json
import logging
import sys
import urllib.error
import urllib.request
from datetime import date

BASE_URL_DEFAULT = "http://localhost:8000/api/v1/contributions"

RUN_PATHS = {
    "forward": "/admin/trigger-reminders",
    "overdue": "/admin/trigger-overdue-reminders",
    "birthdays": "/admin/birthdays/trigger-birthday-wishes",
}

logger = logging.getLogger("trigger_reminders")


def post_json(url: str, data: dict, *, timeout: int) -> dict:
    """POST JSON to a URL and return parsed response."""
    body = json.dumps(data).encode("utf-8")
    req = urllib.request.Request(
        url,
        data=body,
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    with urllib.request.urlopen(req, timeout=timeout) as resp:
        return json.loads(resp.read().decode("utf-8"))


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Trigger contribution reminder runs.")
    parser.add_argument("runs", nargs="+", choices=sorted(RUN_PATHS), help="Runs to trigger, in order")
    parser.add_argument("--base-url", default=BASE_URL_DEFAULT, help="Contributions backend API base URL")
    parser.add_argument("--as-of", type=date.fromisoformat, default=None, help="Override today (YYYY-MM-DD)")
    parser.add_argument("--dry-run", action="store_true", help="Compute reminders without delivering them")
    parser.add_argument("--timeout", type=int, default=300, help="Request timeout in seconds")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    logging.basicConfig(level=args.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    payload: dict[str, object] = {}
    if args.dry_run:
        payload["dry_run"] = True
    if args.as_of is not None:
        payload["as_of"] = args.as_of.isoformat()

    exit_code = 0
    for run in args.runs:
        url = f"{args.base_url.rstrip('/')}{RUN_PATHS[run]}"
        try:
            summary = post_json(url, payload, timeout=args.timeout)
        except urllib.error.HTTPError as exc:
            logger.error("%s run rejected: HTTP %s %s", run, exc.code, exc.read().decode("utf-8", "replace"))
            exit_code = 1
            continue
        except urllib.error.URLError as exc:
            logger.error("%s run failed: %s", run, exc.reason)
            exit_code = 1
            continue

        logger.info(
            "%s run %s: sent=%s skipped=%s failed=%s errored=%s",
            run,
            summary.get("run_id"),
            summary.get("sent_count"),
            summary.get("skipped_count"),
            summary.get("failed_count"),
            summary.get("errored_count"),
        )
        if summary.get("errored_count"):
            exit_code = 1
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
