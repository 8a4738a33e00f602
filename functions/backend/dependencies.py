"""
Dependency wiring for the FastAPI app, the worker and the cloud functions.
"""

from __future__ import annotations

import logging

from backend.config import get_settings
from backend.credentials import (
    CredentialStore,
    FirebaseCredentialStore,
    InMemoryCredentialStore,
)
from backend.db import DbClient, InMemoryDbClient, PostgresDbClient
from backend.queue import EventQueue, InMemoryEventQueue, RedisEventQueue
from backend.service import IdentityConsistencyService

logger = logging.getLogger(__name__)

_db_client: DbClient | None = None
_queue_client: EventQueue | None = None
_credential_store: CredentialStore | None = None
_identity_service: IdentityConsistencyService | None = None


def get_db_client() -> DbClient:
    """
    Return a singleton DB client so profile and task state persists across requests.
    """
    global _db_client
    if _db_client is not None:
        return _db_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        _db_client = InMemoryDbClient()
    else:
        _db_client = PostgresDbClient(settings.database_url)
    return _db_client


def get_queue_client() -> EventQueue:
    """
    Return a singleton queue client for dispatching events to workers.
    """
    global _queue_client
    if _queue_client is not None:
        return _queue_client

    settings = get_settings()
    if settings.redis_url and not settings.use_in_memory_backends:
        _queue_client = RedisEventQueue(
            url=settings.redis_url,
            queue_key=settings.redis_queue_key,
        )
    else:
        _queue_client = InMemoryEventQueue()
    return _queue_client


def get_credential_store() -> CredentialStore:
    global _credential_store
    if _credential_store is not None:
        return _credential_store

    settings = get_settings()
    if settings.use_in_memory_backends:
        _credential_store = InMemoryCredentialStore()
    else:
        # Without a project id the Firebase app resolves it from the runtime.
        _credential_store = FirebaseCredentialStore(
            project_id=settings.firebase_project_id
        )
    return _credential_store


def get_identity_service() -> IdentityConsistencyService:
    """
    Return the process-wide service, rebuilding it if it has been closed.
    """
    global _identity_service
    if _identity_service and not _identity_service.closed:
        return _identity_service

    settings = get_settings()
    _identity_service = IdentityConsistencyService.from_settings(
        settings,
        credentials=get_credential_store(),
        db=get_db_client(),
        queue=get_queue_client(),
    )
    logger.info(
        "Identity service ready (credentials=%s, db=%s, queue=%s)",
        _identity_service.credentials.__class__.__name__,
        _identity_service.db.__class__.__name__,
        _identity_service.queue.__class__.__name__,
    )
    return _identity_service


def shutdown() -> None:
    """Close the service and forget every singleton."""
    global _db_client, _queue_client, _credential_store, _identity_service
    if _identity_service:
        _identity_service.close()
    elif _credential_store:
        _credential_store.close()
    _db_client = None
    _queue_client = None
    _credential_store = None
    _identity_service = None
