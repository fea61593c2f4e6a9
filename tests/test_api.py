from __future__ import annotations

import json
import time
import unittest
from typing import Any

from fastapi.testclient import TestClient

from stata_run_backend.api import create_app
from stata_run_backend.config import Settings
from stata_run_backend.service_container import build_services


class _FakeTransport:
    def __init__(self) -> None:
        self.submitted: list[tuple[str, str]] = []
        self.cancelled: list[str] = []

    async def submit(self, *, task_id: str, code: str) -> None:
        self.submitted.append((task_id, code))

    async def cancel(self, *, task_id: str) -> None:
        self.cancelled.append(task_id)


class RunApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.transport = _FakeTransport()
        self.services = build_services(Settings(cancel_grace_ms=0), transport=self.transport)
        self.app = create_app(self.services)

    def _post_notification(self, client: TestClient, payload: dict[str, Any] | str) -> bool:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        response = client.post("/v1/notifications", json={"data": data})
        self.assertEqual(response.status_code, 200)
        return bool(response.json()["accepted"])

    def _wait_for_state(self, client: TestClient, run_id: str, state: str) -> dict[str, Any]:
        body: dict[str, Any] = {}
        for _ in range(100):
            body = client.get(f"/v1/runs/{run_id}").json()
            if body.get("state") == state:
                return body
            time.sleep(0.01)
        self.fail(f"run {run_id} never reached {state}: {body}")

    def test_health_and_config(self) -> None:
        with TestClient(self.app) as client:
            health = client.get("/health")
            self.assertEqual(health.status_code, 200)
            self.assertEqual(health.json(), {"ok": True, "pending_tasks": 0})

            config = client.get("/v1/config").json()
            self.assertEqual(config["max_buffer_chars"], 20000)
            self.assertEqual(config["backfill_delta_chars"], 5000)
            self.assertEqual(config["transport"], "detached")

    def test_run_lifecycle_over_http(self) -> None:
        with TestClient(self.app) as client:
            created = client.post("/v1/runs", json={"code": "di 1", "run_id": "r1", "task_id": "t1"})
            self.assertEqual(created.status_code, 200)
            self.assertEqual(created.json()["state"], "running")
            self.assertEqual(self.transport.submitted, [("t1", "di 1")])
            self.assertEqual(client.get("/health").json()["pending_tasks"], 1)

            self.assertTrue(self._post_notification(client, {"event": "log", "task_id": "t1", "text": "{res}1\n"}))
            self.assertTrue(self._post_notification(client, {"event": "task_done", "task_id": "t1", "rc": 0}))

            body = self._wait_for_state(client, "r1", "succeeded")
            self.assertTrue(body["success"])
            self.assertEqual(body["rc"], 0)
            self.assertEqual(body["stdout"], "{res}1\n")

            listed = client.get("/v1/runs").json()
            self.assertEqual([run["id"] for run in listed], ["r1"])

            event_types = [event["type"] for event in self.services.events.list_events(run_id="r1")]
            self.assertEqual(event_types, ["runStarted", "runLogAppend", "runFinished"])

    def test_cancel_over_http(self) -> None:
        with TestClient(self.app) as client:
            client.post("/v1/runs", json={"code": "sleep 10000", "run_id": "r1", "task_id": "t1"})
            response = client.post("/v1/runs/r1/cancel")
            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.json()["state"], "cancelled")
            self.assertTrue(response.json()["cancel_requested"])
            self.assertEqual(self.transport.cancelled, ["t1"])

            self.assertEqual(client.delete("/v1/runs/r1").status_code, 200)
            self.assertEqual(client.get("/v1/runs/r1").status_code, 404)

    def test_conflicts_and_missing_runs(self) -> None:
        with TestClient(self.app) as client:
            client.post("/v1/runs", json={"code": "di 1", "run_id": "r1", "task_id": "t1"})

            duplicate = client.post("/v1/runs", json={"code": "di 2", "task_id": "t1"})
            self.assertEqual(duplicate.status_code, 409)
            busy = client.post("/v1/runs", json={"code": "di 2", "run_id": "r1"})
            self.assertEqual(busy.status_code, 409)
            self.assertEqual(client.delete("/v1/runs/r1").status_code, 409)

            self.assertEqual(client.get("/v1/runs/missing").status_code, 404)
            self.assertEqual(client.post("/v1/runs/missing/cancel").status_code, 404)
            self.assertEqual(client.delete("/v1/runs/missing").status_code, 404)

    def test_request_validation(self) -> None:
        with TestClient(self.app) as client:
            self.assertEqual(client.post("/v1/runs", json={"code": ""}).status_code, 422)
            self.assertEqual(client.post("/v1/runs", json={"code": "di 1", "timeout_ms": -1}).status_code, 422)
            self.assertEqual(client.post("/v1/runs", json={"code": "   "}).status_code, 400)

    def test_unusable_notification_is_not_accepted(self) -> None:
        with TestClient(self.app) as client:
            self.assertFalse(self._post_notification(client, {"task_id": "t1"}))
            self.assertTrue(self._post_notification(client, "{res}plain text\n"))


if __name__ == "__main__":
    unittest.main()
