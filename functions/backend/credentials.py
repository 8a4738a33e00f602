"""
Credential store abstraction for Firebase Auth and in-memory testing.

The store is opaque to the rest of the backend: it can issue, look up,
revoke and delete a credential by identity. Provider failures are translated
into TransientError / PermanentError so the retry loop can tell them apart.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Optional, Protocol

import firebase_admin
from firebase_admin import auth
from firebase_admin import exceptions as firebase_exceptions

from backend.errors import PermanentError, TransientError
from shared.types import CredentialResult

# Firebase error codes that indicate the call may succeed later.
TRANSIENT_FIREBASE_ERRORS = (
    firebase_exceptions.UnavailableError,
    firebase_exceptions.DeadlineExceededError,
    firebase_exceptions.InternalError,
    firebase_exceptions.ResourceExhaustedError,
    firebase_exceptions.UnknownError,
)


class CredentialStore(Protocol):
    """Operations the backend needs from the authentication provider."""

    def delete_by_id(self, identity: str) -> CredentialResult:
        ...

    def revoke_sessions(self, identity: str) -> CredentialResult:
        ...

    def issue(self, identity: str, email: str, password: str | None = None) -> None:
        ...

    def exists(self, identity: str) -> bool:
        ...

    def close(self) -> None:
        ...


@dataclass
class InMemoryCredentialStore:
    """Test double for credential interactions."""

    credentials: dict = field(default_factory=dict)
    revoked_at: dict = field(default_factory=dict)

    def __post_init__(self):
        self._lock = threading.Lock()

    def delete_by_id(self, identity: str) -> CredentialResult:
        with self._lock:
            if self.credentials.pop(identity, None) is None:
                return CredentialResult.NOT_FOUND
            return CredentialResult.DELETED

    def revoke_sessions(self, identity: str) -> CredentialResult:
        with self._lock:
            if identity not in self.credentials:
                return CredentialResult.NOT_FOUND
            self.revoked_at[identity] = time.time()
            return CredentialResult.REVOKED

    def issue(self, identity: str, email: str, password: str | None = None) -> None:
        with self._lock:
            if identity in self.credentials:
                raise PermanentError(f"Credential {identity} already exists")
            self.credentials[identity] = {"email": email}

    def exists(self, identity: str) -> bool:
        with self._lock:
            return identity in self.credentials

    def reset(self) -> None:
        with self._lock:
            self.credentials.clear()
            self.revoked_at.clear()

    def close(self) -> None:
        pass


@dataclass
class FirebaseCredentialStore:
    """
    Firebase Auth backed store.

    The admin app is initialised on first use under its own name and torn
    down in close(), instead of relying on the process-wide default app.
    """

    project_id: Optional[str] = None
    app_name: str = "identity-consistency"

    def __post_init__(self):
        self._app: Optional[firebase_admin.App] = None
        self._lock = threading.Lock()

    @property
    def app(self) -> firebase_admin.App:
        with self._lock:
            if self._app is None:
                try:
                    self._app = firebase_admin.get_app(self.app_name)
                except ValueError:
                    options = {"projectId": self.project_id} if self.project_id else None
                    self._app = firebase_admin.initialize_app(
                        options=options, name=self.app_name
                    )
            return self._app

    def close(self) -> None:
        with self._lock:
            if self._app is not None:
                firebase_admin.delete_app(self._app)
                self._app = None

    def delete_by_id(self, identity: str) -> CredentialResult:
        try:
            auth.delete_user(identity, app=self.app)
        except auth.UserNotFoundError:
            return CredentialResult.NOT_FOUND
        except Exception as exc:
            _raise_translated(exc, "delete", identity)
            raise
        return CredentialResult.DELETED

    def revoke_sessions(self, identity: str) -> CredentialResult:
        try:
            auth.revoke_refresh_tokens(identity, app=self.app)
        except auth.UserNotFoundError:
            return CredentialResult.NOT_FOUND
        except Exception as exc:
            _raise_translated(exc, "revoke sessions for", identity)
            raise
        return CredentialResult.REVOKED

    def issue(self, identity: str, email: str, password: str | None = None) -> None:
        kwargs = {"uid": identity, "email": email}
        if password:
            kwargs["password"] = password
        try:
            auth.create_user(app=self.app, **kwargs)
        except Exception as exc:
            _raise_translated(exc, "create", identity)
            raise

    def exists(self, identity: str) -> bool:
        try:
            auth.get_user(identity, app=self.app)
        except auth.UserNotFoundError:
            return False
        except Exception as exc:
            _raise_translated(exc, "look up", identity)
            raise
        return True


def _raise_translated(exc: Exception, verb: str, identity: str) -> None:
    message = f"Failed to {verb} credential {identity}: {exc}"
    if isinstance(exc, TRANSIENT_FIREBASE_ERRORS):
        raise TransientError(message) from exc
    if isinstance(exc, (firebase_exceptions.FirebaseError, ValueError)):
        raise PermanentError(message) from exc
