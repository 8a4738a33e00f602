import threading
import time
import unittest
from unittest.mock import MagicMock

from backend.credentials import InMemoryCredentialStore
from backend.db import InMemoryDbClient
from backend.errors import TransientError
from backend.queue import InMemoryEventQueue
from backend.retry import RetryPolicy
from backend.service import IdentityConsistencyService
from backend.worker import WorkerPool, drain, process_next
from shared.types import DeliveryEvent, EventKind, TaskStatus


def make_service():
    credentials = InMemoryCredentialStore()
    db = InMemoryDbClient()
    queue = InMemoryEventQueue()
    service = IdentityConsistencyService(
        credentials=credentials,
        db=db,
        queue=queue,
        policy=RetryPolicy(max_attempts=3, base_delay_seconds=0.0),
        bcrypt_rounds=4,
        sleep=lambda _: None,
    )
    return service, credentials, db, queue


class WorkerTests(unittest.TestCase):
    def test_process_next_reconciles_deletion(self):
        service, credentials, db, queue = make_service()
        credentials.issue("u1", "u1@example.com")
        task = service.submit(
            DeliveryEvent(identity="u1", kind=EventKind.DELETED, delivery_id="d1")
        )

        processed = process_next(service=service, queue=queue, block=False)

        self.assertTrue(processed)
        self.assertEqual(db.get_task(task.task_id).status, TaskStatus.SUCCEEDED)
        self.assertFalse(credentials.exists("u1"))

    def test_process_next_no_events(self):
        service, _, _, queue = make_service()
        processed = process_next(service=service, queue=queue, block=False)
        self.assertFalse(processed)

    def test_process_next_survives_handler_errors(self):
        queue = InMemoryEventQueue()
        service = MagicMock()
        service.dispatch.side_effect = RuntimeError("boom")
        queue.publish(DeliveryEvent(identity="u1", kind=EventKind.DELETED, delivery_id="d1"))

        with self.assertLogs("backend.worker", level="ERROR"):
            processed = process_next(service=service, queue=queue, block=False)

        self.assertTrue(processed)
        self.assertEqual(len(queue), 0)

    def test_drain_processes_everything(self):
        service, credentials, _, queue = make_service()
        for index in range(3):
            credentials.issue(f"u{index}", f"u{index}@example.com")
            service.submit(
                DeliveryEvent(
                    identity=f"u{index}", kind=EventKind.DELETED, delivery_id=f"d{index}"
                )
            )

        self.assertEqual(drain(service=service, queue=queue), 3)
        self.assertEqual(credentials.credentials, {})


class WorkerPoolTests(unittest.TestCase):
    def test_pool_processes_events_for_many_identities(self):
        service, credentials, db, queue = make_service()
        identities = [f"user-{index}" for index in range(8)]
        for identity in identities:
            credentials.issue(identity, f"{identity}@example.com")

        pool = WorkerPool(service, queue, size=3, poll_timeout_seconds=1)
        pool.start()
        try:
            for identity in identities:
                service.submit(
                    DeliveryEvent(
                        identity=identity,
                        kind=EventKind.DELETED,
                        delivery_id=f"evt-{identity}",
                    )
                )
            deadline = time.time() + 10
            while time.time() < deadline:
                tasks = db.list_tasks()
                if len(tasks) == len(identities) and all(
                    t.status.is_terminal for t in tasks
                ):
                    break
                time.sleep(0.05)
        finally:
            pool.stop(timeout=5)

        self.assertFalse(pool.running)
        statuses = {t.identity: t.status for t in db.list_tasks()}
        self.assertEqual(
            statuses, {identity: TaskStatus.SUCCEEDED for identity in identities}
        )
        self.assertEqual(credentials.credentials, {})

    def test_duplicate_delivery_does_not_stall_other_identities(self):
        class DownForU1(InMemoryCredentialStore):
            def delete_by_id(self, identity):
                if identity == "u1":
                    raise TransientError("auth backend down")
                return super().delete_by_id(identity)

        credentials = DownForU1()
        db = InMemoryDbClient()
        queue = InMemoryEventQueue()
        backoff = threading.Event()
        service = IdentityConsistencyService(
            credentials=credentials,
            db=db,
            queue=queue,
            policy=RetryPolicy(max_attempts=3, base_delay_seconds=1.0),
            bcrypt_rounds=4,
            sleep=lambda _: backoff.wait(10),
        )
        credentials.issue("u1", "u1@example.com")
        credentials.issue("u2", "u2@example.com")
        self.addCleanup(backoff.set)

        first = DeliveryEvent(identity="u1", kind=EventKind.DELETED, delivery_id="d1")
        service.submit(first)
        service.submit(first)
        service.submit(
            DeliveryEvent(identity="u2", kind=EventKind.DELETED, delivery_id="d2")
        )
        self.assertEqual(len(queue), 3)

        pool = WorkerPool(service, queue, size=2, poll_timeout_seconds=1)
        pool.start()
        try:
            deadline = time.time() + 5
            while credentials.exists("u2") and time.time() < deadline:
                time.sleep(0.02)
            u2_done = not credentials.exists("u2")
            u1_waiting = not backoff.is_set()
        finally:
            backoff.set()
            pool.stop(timeout=5)

        self.assertTrue(u2_done)
        self.assertTrue(u1_waiting)
        u1_tasks = [t for t in db.list_tasks() if t.identity == "u1"]
        self.assertEqual(len(u1_tasks), 1)

    def test_pool_requires_a_worker(self):
        service, _, _, queue = make_service()
        with self.assertRaises(ValueError):
            WorkerPool(service, queue, size=0)


if __name__ == "__main__":
    unittest.main()
