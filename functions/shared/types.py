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

from dataclasses import dataclass
from enum import Enum


class EventKind(Enum):
    """Kinds of profile mutations delivered by the event bus."""

    DELETED = "DELETED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    # Compensating event: the profile document was (re)created.
    RESTORED = "RESTORED"


class ReconciliationAction(Enum):
    DELETE_CREDENTIAL = "DELETE_CREDENTIAL"
    ROTATE_CREDENTIAL_HASH = "ROTATE_CREDENTIAL_HASH"
    REVOKE_SESSIONS = "REVOKE_SESSIONS"


class TaskStatus(Enum):
    PENDING = "PENDING"
    RETRYING = "RETRYING"
    SUCCEEDED = "SUCCEEDED"
    FAILED_EXHAUSTED = "FAILED_EXHAUSTED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        TaskStatus.SUCCEEDED,
        TaskStatus.FAILED_EXHAUSTED,
        TaskStatus.CANCELLED,
        TaskStatus.REJECTED,
    }
)

ACTIVE_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.RETRYING})


class CredentialResult(Enum):
    """Successful outcomes of a credential store call."""

    DELETED = "DELETED"
    REVOKED = "REVOKED"
    NOT_FOUND = "NOT_FOUND"


class Outcome:
    """Outcome labels stored on tasks and audit records."""

    SUCCESS = "success"
    NOT_FOUND = "not_found"
    DUPLICATE = "duplicate"
    FAILED = "failed"
    REJECTED = "rejected"
    NOT_QUEUED = "not_queued"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class DeliveryEvent:
    """A single (possibly repeated) delivery of a profile mutation."""

    identity: str
    kind: EventKind
    delivery_id: str

    def as_dict(self) -> dict:
        return {
            "identity": self.identity,
            "kind": self.kind.value,
            "delivery_id": self.delivery_id,
        }


# Event kind that produces each queued action, used when republishing tasks.
KIND_FOR_ACTION = {
    ReconciliationAction.DELETE_CREDENTIAL: EventKind.DELETED,
    ReconciliationAction.REVOKE_SESSIONS: EventKind.PASSWORD_CHANGED,
}

ACTION_FOR_KIND = {kind: action for action, kind in KIND_FOR_ACTION.items()}

