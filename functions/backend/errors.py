"""
Error taxonomy shared by the stores and the identity consistency service.

Only ValidationError, NotFoundError and ReconciliationFailedError ever leave
the service; TransientError and PermanentError are raised by store adapters
and consumed by the retry loop.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from backend.db import ReconciliationTask


class IdentityError(Exception):
    """Base class for identity reconciliation errors."""


class ValidationError(IdentityError):
    """Bad caller input. Never retried."""


class NotFoundError(IdentityError):
    """The identity or email is unknown to the store."""


class TransientError(IdentityError):
    """Timeouts, throttling or temporary unavailability. Retried with backoff."""


class PermanentError(IdentityError):
    """Permission or configuration failures. Surfaced without retry."""


class ReconciliationFailedError(IdentityError):
    """A task ended in FAILED_EXHAUSTED while a caller waited on it."""

    def __init__(self, task: "ReconciliationTask"):
        super().__init__(
            f"{task.action.value} for identity {task.identity} failed after "
            f"{task.attempt_count} attempt(s): {task.last_error}"
        )
        self.task = task
