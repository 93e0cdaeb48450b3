"""Integration tests for the REST API."""

import unittest

from fastapi.testclient import TestClient

from safe_migrate.infrastructure.di_container import DIContainer
from safe_migrate.infrastructure.repositories.plan_repository import InMemoryPlanRepository
from safe_migrate.presentation.api.app import create_app
from tests.fixtures.test_data import TestDataFactory


class TestAPI(unittest.TestCase):
    """Integration tests for the API endpoints."""

    def setUp(self):
        container = DIContainer()
        container._services["plan_repository"] = InMemoryPlanRepository()
        self.client = TestClient(create_app(container))

    def test_health(self):
        response = self.client.get("/health")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "healthy"})

    def test_check_accepts_safe_batch(self):
        # Act
        response = self.client.post("/api/v1/check", json=TestDataFactory.create_operations_json())

        # Assert
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["ok"])
        self.assertEqual([v["status"] for v in body["verdicts"]], ["allowed", "allowed", "blocked_with_suggestion"])
        self.assertEqual(len(body["post_deploy"]), 1)

        plans = self.client.get("/api/v1/plans").json()["plans"]
        self.assertEqual(plans[0]["plan_id"], "drop-users-legacy_flag-s1")
        self.assertEqual(plans[0]["state"], "old_removed")

    def test_rejected_batch_returns_conflict(self):
        payload = {"operations": [
            {"id": "op-1", "kind": "add-column", "table": "users", "column": "age", "definition": "integer NOT NULL"},
        ]}

        response = self.client.post("/api/v1/check", json=payload)

        self.assertEqual(response.status_code, 409)
        detail = response.json()["detail"]
        self.assertFalse(detail["ok"])
        self.assertEqual(detail["pre_deploy"], [])

    def test_bad_phase_is_unprocessable(self):
        payload = {"operations": [{"kind": "drop-column", "table": "users", "column": "x", "phase": "whenever"}]}

        response = self.client.post("/api/v1/check", json=payload)

        self.assertEqual(response.status_code, 422)

    def test_resume_unknown_plan(self):
        response = self.client.post("/api/v1/plans/rename-users-nope-s1/resume",
                                    json={"operator": "dba", "reason": "retry"})

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["detail"]["errors"][0]["type"], "PlanNotFoundError")
