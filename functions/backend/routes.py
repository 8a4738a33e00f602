"""
HTTP routes for the identity backend API.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from backend.db import DbClient
from backend.dependencies import get_db_client, get_identity_service
from backend.errors import (
    NotFoundError,
    ReconciliationFailedError,
    TransientError,
    ValidationError,
)
from backend.schemas import (
    AuditRecordResponse,
    AuditTrailResponse,
    CancelTaskResponse,
    ChangePasswordRequest,
    FailedTasksResponse,
    MessageResponse,
    TaskResponse,
    UserSummary,
)
from backend.service import IdentityConsistencyService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/users", response_model=list[UserSummary])
def list_users(
    limit: int = Query(100, ge=1, le=1000),
    db: DbClient = Depends(get_db_client),
):
    """Names and emails only; password hashes never leave the store."""
    return [UserSummary(**profile.as_summary()) for profile in db.list_profiles(limit)]


@router.post("/users/change-password", response_model=MessageResponse)
def change_password(
    payload: ChangePasswordRequest,
    service: IdentityConsistencyService = Depends(get_identity_service),
):
    try:
        service.change_password_by_email(payload.email, payload.new_password)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except NotFoundError:
        raise HTTPException(status_code=404, detail="User not found")
    except (ReconciliationFailedError, TransientError) as exc:
        logger.error("Password change for %s failed: %s", payload.email, exc)
        raise HTTPException(
            status_code=503, detail="Password store unavailable, try again later"
        )
    return MessageResponse(message="Password updated successfully")


@router.get("/reconciliation/failed", response_model=FailedTasksResponse)
def failed_tasks(
    limit: int = Query(100, ge=1, le=1000),
    service: IdentityConsistencyService = Depends(get_identity_service),
):
    tasks = service.failed_tasks(limit=limit)
    return FailedTasksResponse(tasks=[TaskResponse(**t.as_dict()) for t in tasks])


@router.get("/reconciliation/tasks/{task_id}", response_model=TaskResponse)
def get_task(
    task_id: str,
    service: IdentityConsistencyService = Depends(get_identity_service),
):
    task = service.get_task(task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    return TaskResponse(**task.as_dict())


@router.post(
    "/reconciliation/tasks/{task_id}/cancel", response_model=CancelTaskResponse
)
def cancel_task(
    task_id: str,
    service: IdentityConsistencyService = Depends(get_identity_service),
):
    task = service.get_task(task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    if not service.cancel_task(task_id):
        raise HTTPException(
            status_code=409,
            detail=f"Task is {task.status.value} after {task.attempt_count} attempt(s) and can no longer be cancelled",
        )
    return CancelTaskResponse(task_id=task_id, cancelled=True)


@router.get("/reconciliation/audit", response_model=AuditTrailResponse)
def audit_trail(
    identity: str | None = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    service: IdentityConsistencyService = Depends(get_identity_service),
):
    records = service.audit_trail(identity=identity, limit=limit)
    return AuditTrailResponse(
        records=[AuditRecordResponse(**r.as_dict()) for r in records]
    )
