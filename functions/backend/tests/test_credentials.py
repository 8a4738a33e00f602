import unittest
from unittest.mock import PropertyMock, patch, sentinel

from firebase_admin import auth
from firebase_admin import exceptions as firebase_exceptions

from backend.credentials import FirebaseCredentialStore, InMemoryCredentialStore
from backend.errors import PermanentError, TransientError
from shared.types import CredentialResult


class InMemoryCredentialStoreTests(unittest.TestCase):
    def test_delete_is_idempotent(self):
        store = InMemoryCredentialStore()
        store.issue("u1", "u1@example.com")

        self.assertEqual(store.delete_by_id("u1"), CredentialResult.DELETED)
        self.assertEqual(store.delete_by_id("u1"), CredentialResult.NOT_FOUND)
        self.assertFalse(store.exists("u1"))

    def test_revoke_unknown_identity(self):
        store = InMemoryCredentialStore()
        self.assertEqual(store.revoke_sessions("ghost"), CredentialResult.NOT_FOUND)


@patch.object(FirebaseCredentialStore, "app", new_callable=PropertyMock)
class FirebaseCredentialStoreTests(unittest.TestCase):
    def setUp(self):
        self.store = FirebaseCredentialStore(project_id="demo-project")

    @patch("backend.credentials.auth.delete_user")
    def test_delete_user(self, delete_user, app):
        app.return_value = sentinel.app

        self.assertEqual(self.store.delete_by_id("u1"), CredentialResult.DELETED)
        delete_user.assert_called_once_with("u1", app=sentinel.app)

    @patch("backend.credentials.auth.delete_user")
    def test_missing_user_is_not_found(self, delete_user, app):
        delete_user.side_effect = auth.UserNotFoundError("No user record found")

        self.assertEqual(self.store.delete_by_id("ghost"), CredentialResult.NOT_FOUND)

    @patch("backend.credentials.auth.delete_user")
    def test_unavailable_is_transient(self, delete_user, app):
        delete_user.side_effect = firebase_exceptions.UnavailableError("backend down")

        with self.assertRaises(TransientError):
            self.store.delete_by_id("u1")

    @patch("backend.credentials.auth.delete_user")
    def test_permission_denied_is_permanent(self, delete_user, app):
        delete_user.side_effect = firebase_exceptions.PermissionDeniedError("no access")

        with self.assertRaises(PermanentError):
            self.store.delete_by_id("u1")

    @patch("backend.credentials.auth.delete_user")
    def test_invalid_uid_is_permanent(self, delete_user, app):
        delete_user.side_effect = ValueError("Invalid uid")

        with self.assertRaises(PermanentError):
            self.store.delete_by_id("")

    @patch("backend.credentials.auth.revoke_refresh_tokens")
    def test_revoke_sessions(self, revoke, app):
        app.return_value = sentinel.app

        self.assertEqual(self.store.revoke_sessions("u1"), CredentialResult.REVOKED)
        revoke.assert_called_once_with("u1", app=sentinel.app)

    @patch("backend.credentials.auth.get_user")
    def test_exists(self, get_user, app):
        get_user.side_effect = [sentinel.user, auth.UserNotFoundError("missing")]

        self.assertTrue(self.store.exists("u1"))
        self.assertFalse(self.store.exists("u2"))


class FirebaseAppLifecycleTests(unittest.TestCase):
    @patch("backend.credentials.firebase_admin")
    def test_app_is_initialised_once_and_closed(self, firebase_admin):
        firebase_admin.get_app.side_effect = ValueError("no app")
        firebase_admin.initialize_app.return_value = sentinel.app
        store = FirebaseCredentialStore(project_id="demo-project", app_name="test-app")

        self.assertIs(store.app, sentinel.app)
        self.assertIs(store.app, sentinel.app)
        firebase_admin.initialize_app.assert_called_once_with(
            options={"projectId": "demo-project"}, name="test-app"
        )

        store.close()
        firebase_admin.delete_app.assert_called_once_with(sentinel.app)


if __name__ == "__main__":
    unittest.main()
