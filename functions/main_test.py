# Copyright 2025 Google LLC
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# ==============================================================================
# Standard library imports
import unittest
from unittest.mock import MagicMock, patch

# Local application imports
import main
from backend.credentials import InMemoryCredentialStore
from backend.db import InMemoryDbClient
from backend.queue import InMemoryEventQueue
from backend.retry import RetryPolicy
from backend.service import IdentityConsistencyService
from shared.types import EventKind, TaskStatus


class MainTest(unittest.TestCase):
    def setUp(self):
        self.credentials = InMemoryCredentialStore()
        self.queue = InMemoryEventQueue()
        self.service = IdentityConsistencyService(
            credentials=self.credentials,
            db=InMemoryDbClient(),
            queue=self.queue,
            policy=RetryPolicy(max_attempts=3, base_delay_seconds=0.0),
            bcrypt_rounds=4,
            sleep=lambda _: None,
        )
        self.credentials.issue("user-1", "user-1@example.com")

        patches = [
            patch("main.get_identity_service", return_value=self.service),
            patch("main.get_queue_client", return_value=self.queue),
        ]
        for p in patches:
            p.start()
            self.addCleanup(p.stop)

    @patch("main._is_queue_external", return_value=False)
    def test_deleted_profile_is_reconciled_inline(self, _):
        task = main.publish_profile_event("user-1", EventKind.DELETED, "evt-1")

        self.assertEqual(task.status, TaskStatus.SUCCEEDED)
        self.assertFalse(self.credentials.exists("user-1"))
        self.assertEqual(len(self.queue), 0)

    @patch("main._is_queue_external", return_value=False)
    def test_redelivered_event_is_not_reapplied(self, _):
        first = main.publish_profile_event("user-1", EventKind.DELETED, "evt-1")
        second = main.publish_profile_event("user-1", EventKind.DELETED, "evt-1")

        self.assertEqual(first.task_id, second.task_id)
        self.assertEqual(len(self.service.audit_trail("user-1")), 1)

    @patch("main._is_queue_external", return_value=True)
    def test_external_queue_is_left_for_workers(self, _):
        task = main.publish_profile_event("user-1", EventKind.DELETED, "evt-1")

        self.assertEqual(task.status, TaskStatus.PENDING)
        self.assertEqual(len(self.queue), 1)
        self.assertTrue(self.credentials.exists("user-1"))

    @patch("main._is_queue_external", return_value=True)
    def test_restored_profile_cancels_pending_deletion(self, _):
        task = main.publish_profile_event("user-1", EventKind.DELETED, "evt-1")

        result = main.publish_profile_event("user-1", EventKind.RESTORED, "evt-2")

        self.assertIsNone(result)
        self.assertEqual(self.service.get_task(task.task_id).status, TaskStatus.CANCELLED)

    @patch("main.logger")
    def test_submit_failure_is_reraised(self, mock_logger):
        failing = MagicMock()
        failing.submit.side_effect = RuntimeError("queue unavailable")

        with patch("main.get_identity_service", return_value=failing):
            with self.assertRaises(RuntimeError):
                main.publish_profile_event("user-1", EventKind.DELETED, "evt-1")

        mock_logger.error.assert_called_once()


if __name__ == "__main__":
    unittest.main()
