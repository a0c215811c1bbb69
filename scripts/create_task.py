#!/usr/bin/env python3
import argparse
import json
import os
import sys
import urllib.error
import urllib.request


def _get_env(name: str, default: str = "") -> str:
    return os.getenv(name) or default


def _post_json(url: str, payload: dict, org_id: str) -> dict:
    data = json.dumps(payload).encode("utf-8")
    req = urllib.request.Request(
        url,
        data=data,
        headers={"Content-Type": "application/json", "X-Org-Id": org_id},
        method="POST",
    )
    try:
        with urllib.request.urlopen(req) as resp:
            body = resp.read().decode("utf-8")
            return json.loads(body) if body else {}
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8")
        raise SystemExit(f"Fleet API error ({e.code}): {body}") from e


def main() -> int:
    parser = argparse.ArgumentParser(description="Create a Mission Control task via the dashboard API.")
    parser.add_argument("--title", required=True, help="Task title")
    parser.add_argument("--description", default="", help="Task description")
    parser.add_argument("--assignee", help="Agent id to assign (omit to leave in the inbox)")
    parser.add_argument("--team-id", help="Scope the task to one team")
    parser.add_argument("--priority", type=int, help="Priority 1-10")
    parser.add_argument("--mission-id", help="Group the task under a mission")
    parser.add_argument("--org", help="Organization id (default from FLEET_ORG_ID)")
    parser.add_argument("--dashboard-url", help="Dashboard base URL (default from DASHBOARD_URL)")

    args = parser.parse_args()

    dashboard_url = args.dashboard_url or _get_env("DASHBOARD_URL", "http://localhost:8080")
    endpoint = dashboard_url.rstrip("/") + "/api/tasks"
    org_id = args.org or _get_env("FLEET_ORG_ID", "dev-org")

    if args.priority is not None and not 1 <= args.priority <= 10:
        print("--priority must be between 1 and 10", file=sys.stderr)
        return 2

    req = {"title": args.title, "description": args.description}
    if args.assignee:
        req["assignee_id"] = args.assignee
    if args.team_id:
        req["team_id"] = args.team_id
    if args.priority is not None:
        req["priority"] = args.priority
    if args.mission_id:
        req["mission_id"] = args.mission_id

    response = _post_json(endpoint, req, org_id)
    print(json.dumps(response, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
