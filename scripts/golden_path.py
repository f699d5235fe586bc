#!/usr/bin/env python3
"""Golden path demo for TaskGate: create, move to review, approve, read the audit trail."""

from __future__ import annotations

import json
import os
import sys
from typing import Any
from urllib.error import HTTPError
from urllib.parse import urlencode
from urllib.request import Request, urlopen


def _env(name: str, default: str | None = None) -> str | None:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value


class HttpClient:
    def __init__(self, base_url: str, api_key: str | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers: dict[str, str] = {"Content-Type": "application/json"}
        if api_key:
            self.headers["Authorization"] = f"Bearer {api_key}"

    def request_json(
        self,
        method: str,
        path: str,
        actor: dict[str, str],
        payload: dict[str, Any] | None = None,
        query: dict[str, Any] | None = None,
        timeout: float = 10.0,
    ) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        if query:
            query = {k: v for k, v in query.items() if v is not None}
            if query:
                url = f"{url}?{urlencode(query)}"

        data = None
        if payload is not None:
            data = json.dumps(payload, default=str).encode("utf-8")

        req = Request(url, data=data, method=method)
        for key, value in {**self.headers, **actor}.items():
            req.add_header(key, value)

        try:
            with urlopen(req, timeout=timeout) as response:
                raw = response.read()
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            raise RuntimeError(f"{method} {url} failed: {exc.code} {exc.reason}: {detail}") from None

        if not raw:
            return {}
        return json.loads(raw.decode("utf-8"))


def _actor(actor_id: str, role: str, team_id: str | None) -> dict[str, str]:
    headers = {"X-Actor-ID": actor_id, "X-Actor-Role": role}
    if team_id:
        headers["X-Actor-Team-ID"] = team_id
    return headers


def main() -> int:
    taskgate_url = _env("TASKGATE_URL", "http://localhost:8080")
    api_key = _env("TASKGATE_API_KEY")
    team_id = _env("TASKGATE_TEAM_ID", "team-demo")
    project_id = _env("TASKGATE_PROJECT_ID", "project-demo")

    client = HttpClient(taskgate_url, api_key=api_key)
    lead = _actor(_env("TASKGATE_LEAD_ID", "lead-demo"), "team_lead", team_id)
    employee = _actor(_env("TASKGATE_EMPLOYEE_ID", "employee-demo"), "employee", team_id)

    print("Checking health...")
    health = client.request_json("GET", "/v1/health", lead)
    if health.get("status") != "healthy":
        raise RuntimeError(f"Unexpected health response: {health}")

    print("Creating task as team lead...")
    task = client.request_json(
        "POST",
        "/v1/tasks",
        lead,
        payload={
            "title": "Golden path task",
            "description": "Created by scripts/golden_path.py",
            "priority": "high",
            "project_id": project_id,
            "team_id": team_id,
            "assignee_id": employee["X-Actor-ID"],
            "stage": "backlog",
        },
    )
    task_id = task["task_id"]
    print(f"Task created: {task_id} (stage={task['stage']}, status={task['status']})")

    for to_stage in ("todo", "in_progress", "review"):
        task = client.request_json(
            "POST",
            f"/v1/tasks/{task_id}/move",
            employee,
            payload={"to_stage": to_stage, "expected_stage": task["stage"]},
        )
        print(f"Moved to {task['stage']} (status={task['status']})")

    print("Approving as team lead...")
    task = client.request_json(
        "POST",
        f"/v1/tasks/{task_id}/approve",
        lead,
        payload={"expected_stage": "review"},
    )
    if task["stage"] != "done":
        raise RuntimeError(f"Approval did not complete the task: {task}")
    print(f"Approved: stage={task['stage']} completed_date={task['completed_date']}")

    # Audit entries are written off the request path in queued mode.
    trail = client.request_json(
        "GET",
        f"/v1/audit/resources/Task/{task_id}",
        lead,
        query={"limit": 20},
    )
    print(f"Audit trail ({trail['count']} entries, newest first):")
    for item in trail["entries"]:
        entry = item["entry"]
        marker = "ok" if item["integrity_valid"] else "TAMPERED"
        print(f"  {entry['timestamp']} {entry['action']:<8} {entry['actor_id']:<16} [{marker}]")

    print("Golden path complete.")
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except RuntimeError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
