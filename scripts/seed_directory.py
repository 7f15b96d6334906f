#!/usr/bin/env python3
"""Load users, groups, memberships and contributions from a JSON file into the backend."""

from __future__ import annotations

import argparse
import json
import sys
import urllib.error
import urllib.request
from pathlib import Path

BASE_URL_DEFAULT = "http://localhost:8000/api/v1/contributions"
SECTIONS = ("users", "groups", "memberships", "contributions")


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
    parser = argparse.ArgumentParser(description="Seed the contributions directory from a JSON file.")
    parser.add_argument("seed_file", type=Path, help="JSON file with users/groups/memberships/contributions")
    parser.add_argument("--base-url", default=BASE_URL_DEFAULT, help="Contributions backend API base URL")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    if not args.seed_file.is_file():
        print(f"seed file not found: {args.seed_file}", file=sys.stderr)
        return 1

    raw = json.loads(args.seed_file.read_text(encoding="utf-8"))
    payload = {section: raw.get(section, []) for section in SECTIONS}
    print(", ".join(f"{section}={len(payload[section])}" for section in SECTIONS))

    try:
        result = post_json(f"{args.base_url.rstrip('/')}/admin/directory/upsert", payload)
    except urllib.error.HTTPError as exc:
        print(f"upsert rejected: HTTP {exc.code} {exc.read().decode('utf-8', 'replace')}", file=sys.stderr)
        return 1
    except urllib.error.URLError as exc:
        print(f"upsert failed: {exc.reason}", file=sys.stderr)
        return 1

    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
