"""
Identity consistency service.

Keeps the credential store (Firebase Auth) and the profile store in agreement
as profiles are deleted, restored or have their password rotated. Events
arrive at-least-once, so every handler is idempotent; transient store failures
are retried with bounded exponential backoff, and anything that cannot be
reconciled ends as a FAILED_EXHAUSTED task an operator can query.

All work for one identity is serialized through a per-identity lock. Work for
different identities runs in parallel.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar

from backend import passwords
from backend.config import Settings
from backend.credentials import CredentialStore
from backend.db import AuditRecord, DbClient, ReconciliationTask
from backend.errors import (
    NotFoundError,
    PermanentError,
    ReconciliationFailedError,
    TransientError,
)
from backend.locks import KeyedLock
from backend.queue import EventQueue
from backend.retry import RetryPolicy
from shared.types import (
    ACTION_FOR_KIND,
    KIND_FOR_ACTION,
    CredentialResult,
    DeliveryEvent,
    EventKind,
    Outcome,
    ReconciliationAction,
    TaskStatus,
)

logger = logging.getLogger(__name__)

# An attempt returns the outcome label to store, or raises one of the
# store errors from backend.errors.
Attempt = Callable[[ReconciliationTask], str]

T = TypeVar("T")


class IdentityConsistencyService:
    def __init__(
        self,
        *,
        credentials: CredentialStore,
        db: DbClient,
        queue: EventQueue,
        policy: Optional[RetryPolicy] = None,
        bcrypt_rounds: int = 12,
        password_min_length: int = 8,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.credentials = credentials
        self.db = db
        self.queue = queue
        self.policy = policy or RetryPolicy()
        self.bcrypt_rounds = bcrypt_rounds
        self.password_min_length = password_min_length
        self._sleep = sleep
        self._locks = KeyedLock()
        self._closed = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        credentials: CredentialStore,
        db: DbClient,
        queue: EventQueue,
    ) -> "IdentityConsistencyService":
        return cls(
            credentials=credentials,
            db=db,
            queue=queue,
            policy=RetryPolicy.from_settings(settings),
            bcrypt_rounds=settings.bcrypt_rounds,
            password_min_length=settings.password_min_length,
        )

    def __enter__(self) -> "IdentityConsistencyService":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.credentials.close()
        logger.info("Identity consistency service closed")

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("IdentityConsistencyService is closed")

    # Event intake

    def submit(self, event: DeliveryEvent) -> Optional[ReconciliationTask]:
        """
        Record a delivery and hand it to the worker pool.

        RESTORED events are applied immediately instead of being queued, so
        they can cancel deletions that no worker has started yet.
        """
        self._ensure_open()
        if event.kind == EventKind.RESTORED:
            self.cancel_pending(event.identity)
            return None

        action = ACTION_FOR_KIND[event.kind]
        task, created = self.db.get_or_create_task(
            event.identity, action, event.delivery_id
        )
        if created or (task.status == TaskStatus.PENDING and task.attempt_count == 0):
            # Re-publishing an unstarted task covers a publish lost on an
            # earlier delivery; workers ignore the extra copy.
            self.queue.publish(event)
        else:
            logger.info(
                "Delivery %s for %s joins task %s (%s)",
                event.delivery_id,
                event.identity,
                task.task_id,
                task.status.value,
            )
        return task

    def dispatch(self, event: DeliveryEvent) -> Optional[ReconciliationTask]:
        """Route a consumed event to its handler."""
        if event.kind == EventKind.DELETED:
            return self.handle_profile_deleted(event)
        if event.kind == EventKind.PASSWORD_CHANGED:
            return self.handle_password_changed(event)
        if event.kind == EventKind.RESTORED:
            self.cancel_pending(event.identity)
            return None
        raise ValueError(f"Unsupported event kind: {event.kind}")

    # Reconciliation handlers

    def handle_profile_deleted(self, event: DeliveryEvent) -> ReconciliationTask:
        """Delete the credential of a profile that no longer exists."""
        return self._reconcile_credential(
            event, ReconciliationAction.DELETE_CREDENTIAL, self.credentials.delete_by_id
        )

    def handle_password_changed(self, event: DeliveryEvent) -> ReconciliationTask:
        """Revoke sessions issued before a password rotation."""
        return self._reconcile_credential(
            event,
            ReconciliationAction.REVOKE_SESSIONS,
            self.credentials.revoke_sessions,
        )

    def _reconcile_credential(
        self,
        event: DeliveryEvent,
        action: ReconciliationAction,
        operation: Callable[[str], CredentialResult],
    ) -> ReconciliationTask:
        self._ensure_open()
        identity = event.identity
        with self._locks.try_hold(identity) as free:
            if free:
                return self._reconcile_locked(event, action, operation)
            task, created = self.db.get_or_create_task(
                identity, action, event.delivery_id
            )
            if not created:
                # Whoever holds the identity owns this task, or the stale
                # requeue will pick it up. Don't tie up a worker waiting.
                logger.info(
                    "Delivery %s for %s: identity busy, task %s left as %s",
                    event.delivery_id,
                    identity,
                    task.task_id,
                    task.status.value,
                )
                return task
        with self._locks.hold(identity):
            return self._reconcile_locked(event, action, operation)

    def _reconcile_locked(
        self,
        event: DeliveryEvent,
        action: ReconciliationAction,
        operation: Callable[[str], CredentialResult],
    ) -> ReconciliationTask:
        identity = event.identity
        task, _ = self.db.get_or_create_task(identity, action, event.delivery_id)
        if task.status.is_terminal:
            logger.info(
                "Ignoring redelivery %s for %s: task %s already %s",
                event.delivery_id,
                identity,
                task.task_id,
                task.status.value,
            )
            return task

        def attempt(current: ReconciliationTask) -> str:
            result = operation(identity)
            if result != CredentialResult.NOT_FOUND:
                return Outcome.SUCCESS
            # Already gone. Only the first task to see that gets audited.
            if self.db.has_succeeded_task(
                identity, action, exclude_task_id=current.task_id
            ):
                return Outcome.DUPLICATE
            return Outcome.NOT_FOUND

        return self._run_attempts(task, attempt)

    def handle_password_change(
        self, identity: str, new_password: str
    ) -> ReconciliationTask:
        """
        Replace the stored password hash of a profile.

        Raises ValidationError for a weak password (nothing is written),
        NotFoundError for an unknown identity and ReconciliationFailedError
        when the store stayed unavailable for every attempt.
        """
        self._ensure_open()
        passwords.validate_password(new_password, self.password_min_length)
        # Hash once so every retry writes the same value.
        password_hash = passwords.hash_password(new_password, self.bcrypt_rounds)

        with self._locks.hold(identity):
            task = self.db.create_task(
                identity, ReconciliationAction.ROTATE_CREDENTIAL_HASH
            )

            def attempt(current: ReconciliationTask) -> str:
                if self.db.update_password_hash(identity, password_hash) is None:
                    raise NotFoundError(f"No profile for identity {identity}")
                return Outcome.SUCCESS

            task = self._run_attempts(task, attempt)

        if task.status != TaskStatus.SUCCEEDED:
            raise ReconciliationFailedError(task)
        self._queue_session_revocation(task)
        return task

    def change_password_by_email(
        self, email: str, new_password: str
    ) -> ReconciliationTask:
        self._ensure_open()
        passwords.validate_password(new_password, self.password_min_length)
        profile = self._read_with_retries(
            f"profile lookup for {email}", lambda: self.db.get_profile_by_email(email)
        )
        if profile is None:
            raise NotFoundError(f"No profile for email {email}")
        return self.handle_password_change(profile.identity, new_password)

    def verify_password(self, identity: str, password: str) -> bool:
        """Check a password against the stored hash, read fresh on every call."""
        profile = self.db.get_profile(identity)
        return passwords.verify_password(
            password, profile.password_hash if profile else None
        )

    def _queue_session_revocation(self, task: ReconciliationTask) -> None:
        event = DeliveryEvent(
            identity=task.identity,
            kind=EventKind.PASSWORD_CHANGED,
            delivery_id=f"rotate:{task.task_id}",
        )
        try:
            self.submit(event)
        except Exception:
            logger.exception(
                "Password for %s changed but session revocation was not queued",
                task.identity,
            )
            self.db.record_audit(
                task.identity,
                ReconciliationAction.REVOKE_SESSIONS,
                Outcome.NOT_QUEUED,
                task.task_id,
            )

    # Retry machinery

    def _read_with_retries(self, description: str, read: Callable[[], T]) -> T:
        """
        Run a read against a store with the task retry policy. The last
        TransientError propagates once the attempts run out.
        """
        attempt = 1
        while True:
            try:
                return read()
            except TransientError as exc:
                if self.policy.exhausted(attempt):
                    raise
                delay = self.policy.delay_for(attempt)
                logger.warning(
                    "%s failed on attempt %d/%d, retrying in %.1fs: %s",
                    description,
                    attempt,
                    self.policy.max_attempts,
                    delay,
                    exc,
                )
                self._sleep(delay)
                attempt += 1

    def _run_attempts(
        self, task: ReconciliationTask, attempt: Attempt
    ) -> ReconciliationTask:
        while True:
            claimed = self.db.transition_task(
                task.task_id,
                expected_status=task.status,
                expected_attempts=task.attempt_count,
                status=TaskStatus.PENDING,
                attempt_count=task.attempt_count + 1,
            )
            if claimed is None:
                current = self.db.get_task(task.task_id)
                logger.warning(
                    "Task %s changed before attempt %d (now %s); skipping",
                    task.task_id,
                    task.attempt_count + 1,
                    current.status.value if current else "missing",
                )
                return current or task
            task = claimed

            try:
                outcome = attempt(task)
            except TransientError as exc:
                if self.policy.exhausted(task.attempt_count):
                    return self._fail(
                        task,
                        f"identity {task.identity} left unreconciled after "
                        f"{task.attempt_count} attempts: {exc}",
                    )
                task = self._settle(task, TaskStatus.RETRYING, last_error=str(exc))
                if task.status != TaskStatus.RETRYING:
                    return task
                delay = self.policy.delay_for(task.attempt_count)
                logger.warning(
                    "%s for %s failed on attempt %d/%d, retrying in %.1fs: %s",
                    task.action.value,
                    task.identity,
                    task.attempt_count,
                    self.policy.max_attempts,
                    delay,
                    exc,
                )
                self._sleep(delay)
                continue
            except PermanentError as exc:
                return self._fail(
                    task,
                    f"identity {task.identity} left unreconciled, permanent error: {exc}",
                )
            except NotFoundError as exc:
                self._settle(
                    task,
                    TaskStatus.REJECTED,
                    last_error=str(exc),
                    outcome=Outcome.REJECTED,
                )
                self.db.record_audit(
                    task.identity, task.action, Outcome.REJECTED, task.task_id
                )
                raise
            except Exception as exc:
                self._fail(
                    task,
                    f"identity {task.identity} left unreconciled, unexpected error: {exc!r}",
                )
                raise

            task = self._settle(task, TaskStatus.SUCCEEDED, outcome=outcome)
            if outcome == Outcome.DUPLICATE:
                logger.info(
                    "%s for %s already applied; task %s recorded as duplicate",
                    task.action.value,
                    task.identity,
                    task.task_id,
                )
            else:
                self.db.record_audit(task.identity, task.action, outcome, task.task_id)
                logger.info(
                    "%s for %s succeeded (%s) after %d attempt(s)",
                    task.action.value,
                    task.identity,
                    outcome,
                    task.attempt_count,
                )
            return task

    def _settle(
        self,
        task: ReconciliationTask,
        status: TaskStatus,
        *,
        last_error: Optional[str] = None,
        outcome: Optional[str] = None,
    ) -> ReconciliationTask:
        updated = self.db.transition_task(
            task.task_id,
            expected_status=task.status,
            expected_attempts=task.attempt_count,
            status=status,
            last_error=last_error,
            outcome=outcome,
        )
        if updated is None:
            current = self.db.get_task(task.task_id)
            logger.warning(
                "Task %s was taken over while moving to %s (now %s)",
                task.task_id,
                status.value,
                current.status.value if current else "missing",
            )
            return current or task
        return updated

    def _fail(self, task: ReconciliationTask, reason: str) -> ReconciliationTask:
        task = self._settle(
            task, TaskStatus.FAILED_EXHAUSTED, last_error=reason, outcome=Outcome.FAILED
        )
        self.db.record_audit(task.identity, task.action, Outcome.FAILED, task.task_id)
        logger.error("%s task %s failed: %s", task.action.value, task.task_id, reason)
        return task

    # Cancellation and recovery

    def cancel_task(self, task_id: str) -> bool:
        """Cancel a task that has not been attempted yet."""
        cancelled = self.db.transition_task(
            task_id,
            expected_status=TaskStatus.PENDING,
            expected_attempts=0,
            status=TaskStatus.CANCELLED,
            outcome=Outcome.CANCELLED,
        )
        if cancelled is None:
            return False
        self.db.record_audit(
            cancelled.identity, cancelled.action, Outcome.CANCELLED, cancelled.task_id
        )
        logger.info(
            "Cancelled %s task %s for %s",
            cancelled.action.value,
            cancelled.task_id,
            cancelled.identity,
        )
        return True

    def cancel_pending(
        self,
        identity: str,
        action: ReconciliationAction = ReconciliationAction.DELETE_CREDENTIAL,
    ) -> list[ReconciliationTask]:
        cancelled = []
        for task in self.db.list_tasks(
            status=TaskStatus.PENDING, identity=identity, action=action
        ):
            if task.attempt_count == 0 and self.cancel_task(task.task_id):
                cancelled.append(self.db.get_task(task.task_id) or task)
        return cancelled

    def requeue_stale_tasks(self, older_than_seconds: float = 900) -> int:
        """
        Republish events for unfinished tasks nobody has touched for a while,
        e.g. after a worker crash or a lost queue message. Returns the number
        of events published.
        """
        cutoff = time.time() - older_than_seconds
        requeued = 0
        for task in self.db.list_stale_tasks(cutoff):
            kind = KIND_FOR_ACTION.get(task.action)
            if kind is None:
                # The plaintext for a password rotation only lived in memory.
                self._abandon(task)
                continue
            self.queue.publish(
                DeliveryEvent(
                    identity=task.identity,
                    kind=kind,
                    delivery_id=task.delivery_id or f"requeue:{task.task_id}",
                )
            )
            requeued += 1
        if requeued:
            logger.info("Requeued %d stale reconciliation task(s)", requeued)
        return requeued

    def _abandon(self, task: ReconciliationTask) -> None:
        reason = f"identity {task.identity}: abandoned before completion"
        failed = self.db.transition_task(
            task.task_id,
            expected_status=task.status,
            expected_attempts=task.attempt_count,
            status=TaskStatus.FAILED_EXHAUSTED,
            last_error=reason,
            outcome=Outcome.FAILED,
        )
        if failed is not None:
            self.db.record_audit(task.identity, task.action, Outcome.FAILED, task.task_id)
            logger.error("%s task %s failed: %s", task.action.value, task.task_id, reason)

    # Operator queries

    def failed_tasks(self, limit: int = 100) -> list[ReconciliationTask]:
        return self.db.list_tasks(status=TaskStatus.FAILED_EXHAUSTED, limit=limit)

    def get_task(self, task_id: str) -> Optional[ReconciliationTask]:
        return self.db.get_task(task_id)

    def audit_trail(
        self, identity: Optional[str] = None, limit: int = 100
    ) -> list[AuditRecord]:
        return self.db.list_audit(identity=identity, limit=limit)
