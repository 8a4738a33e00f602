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

# Cloud functions for the identity backend - Firestore profile triggers.
#
# This file containing Python cloud functions must be named main.py.
# See https://cloud.google.com/run/docs/write-functions#python for more info.
#
# The triggers only turn Firestore document events into DeliveryEvents and
# hand them to the identity service; reconciliation happens in the worker
# pool (or inline when no external queue is configured).

# Standard library imports
from typing import Optional

# Third-party library imports
from firebase_functions import logger, options
from firebase_functions.firestore_fn import (
    DocumentSnapshot,
    Event,
    on_document_created,
    on_document_deleted,
)

# Local application imports
from backend.config import get_settings
from backend.db import ReconciliationTask
from backend.dependencies import get_identity_service, get_queue_client
from backend.worker import drain
from shared.types import DeliveryEvent, EventKind

USERS_DOCUMENT = "users/{userId}"

options.set_global_options(max_instances=10)


def _is_queue_external() -> bool:
    """Returns True if a separate worker pool consumes the event queue."""
    settings = get_settings()
    return bool(settings.redis_url) and not settings.use_in_memory_backends


def publish_profile_event(
    user_id: str, kind: EventKind, delivery_id: str
) -> Optional[ReconciliationTask]:
    """
    Submit one profile event to the identity service.

    Exceptions propagate so the Functions runtime can redeliver the event;
    redeliveries reuse the same delivery id and are deduplicated by the service.
    """
    service = get_identity_service()
    event = DeliveryEvent(identity=user_id, kind=kind, delivery_id=delivery_id)
    try:
        task = service.submit(event)
    except Exception as e:
        logger.error(f"Failed to submit {kind.value} event for {user_id}: {e}")
        raise

    if not _is_queue_external():
        # No worker pool behind an in-process queue; reconcile before returning.
        drain(service=service, queue=get_queue_client())
        if task is not None:
            task = service.get_task(task.task_id) or task

    if task is not None:
        logger.info(
            f"{kind.value} event {delivery_id} for {user_id}: task {task.task_id} is {task.status.value}"
        )
    return task


@on_document_deleted(document=USERS_DOCUMENT)
def on_user_profile_deleted(event: Event[Optional[DocumentSnapshot]]) -> None:
    """Deletes the Firebase Auth user once its profile document is gone."""
    publish_profile_event(event.params["userId"], EventKind.DELETED, event.id)


@on_document_created(document=USERS_DOCUMENT)
def on_user_profile_created(event: Event[Optional[DocumentSnapshot]]) -> None:
    """
    A profile (re)appearing cancels any deletion of that user that has not
    been attempted yet.
    """
    publish_profile_event(event.params["userId"], EventKind.RESTORED, event.id)
