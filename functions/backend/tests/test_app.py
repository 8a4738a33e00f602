import unittest

from fastapi.testclient import TestClient

from backend.app import create_app
from backend.credentials import InMemoryCredentialStore
from backend.db import InMemoryDbClient
from backend.dependencies import get_db_client, get_identity_service
from backend.errors import TransientError
from backend.passwords import hash_password
from backend.queue import InMemoryEventQueue
from backend.retry import RetryPolicy
from backend.service import IdentityConsistencyService
from shared.types import DeliveryEvent, EventKind, ReconciliationAction


class FailingCredentialStore(InMemoryCredentialStore):
    def delete_by_id(self, identity):
        raise TransientError("auth backend down")


class BackendApiTests(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryDbClient()
        self.credentials = FailingCredentialStore()
        self.service = IdentityConsistencyService(
            credentials=self.credentials,
            db=self.db,
            queue=InMemoryEventQueue(),
            policy=RetryPolicy(max_attempts=2, base_delay_seconds=0.0),
            bcrypt_rounds=4,
            sleep=lambda _: None,
        )
        app = create_app()
        app.dependency_overrides[get_db_client] = lambda: self.db
        app.dependency_overrides[get_identity_service] = lambda: self.service
        self.client = TestClient(app)

        self.db.create_profile("u1", "Ada", "ada@example.com", hash_password("original-pass", 4))
        self.db.create_profile("u2", "Grace", "grace@example.com", hash_password("original-pass", 4))

    def test_list_users_hides_passwords(self):
        response = self.client.get("/api/users")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.json(),
            [
                {"name": "Ada", "email": "ada@example.com"},
                {"name": "Grace", "email": "grace@example.com"},
            ],
        )

    def test_change_password(self):
        response = self.client.post(
            "/api/users/change-password",
            json={"email": "ada@example.com", "newPassword": "a-new-secret"},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"message": "Password updated successfully"})
        self.assertTrue(self.service.verify_password("u1", "a-new-secret"))
        self.assertFalse(self.service.verify_password("u1", "original-pass"))

    def test_change_password_rejects_weak_password(self):
        before = self.db.get_profile("u1").password_hash
        response = self.client.post(
            "/api/users/change-password",
            json={"email": "ada@example.com", "newPassword": "short"},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.db.get_profile("u1").password_hash, before)

    def test_change_password_unknown_email(self):
        response = self.client.post(
            "/api/users/change-password",
            json={"email": "nobody@example.com", "newPassword": "a-new-secret"},
        )
        self.assertEqual(response.status_code, 404)

    def test_change_password_missing_field(self):
        response = self.client.post(
            "/api/users/change-password", json={"email": "ada@example.com"}
        )
        self.assertEqual(response.status_code, 422)

    def test_failed_tasks_and_audit(self):
        task = self.service.handle_profile_deleted(
            DeliveryEvent(identity="u1", kind=EventKind.DELETED, delivery_id="d1")
        )

        failed = self.client.get("/api/reconciliation/failed")
        self.assertEqual(failed.status_code, 200)
        tasks = failed.json()["tasks"]
        self.assertEqual(len(tasks), 1)
        self.assertEqual(tasks[0]["task_id"], task.task_id)
        self.assertEqual(tasks[0]["status"], "FAILED_EXHAUSTED")
        self.assertEqual(tasks[0]["attempt_count"], 2)

        detail = self.client.get(f"/api/reconciliation/tasks/{task.task_id}")
        self.assertEqual(detail.status_code, 200)
        self.assertEqual(
            detail.json()["action"], ReconciliationAction.DELETE_CREDENTIAL.value
        )

        audit = self.client.get("/api/reconciliation/audit", params={"identity": "u1"})
        self.assertEqual(audit.status_code, 200)
        self.assertEqual([r["outcome"] for r in audit.json()["records"]], ["failed"])

    def test_cancel_task(self):
        task = self.service.submit(
            DeliveryEvent(identity="u2", kind=EventKind.DELETED, delivery_id="d2")
        )

        response = self.client.post(f"/api/reconciliation/tasks/{task.task_id}/cancel")
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["cancelled"])

        again = self.client.post(f"/api/reconciliation/tasks/{task.task_id}/cancel")
        self.assertEqual(again.status_code, 409)

    def test_unknown_task(self):
        response = self.client.get("/api/reconciliation/tasks/missing")
        self.assertEqual(response.status_code, 404)


if __name__ == "__main__":
    unittest.main()
