"""
Pydantic schemas for the identity backend API.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class UserSummary(BaseModel):
    name: str
    email: str


class ChangePasswordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str = Field(..., max_length=320)
    new_password: str = Field(..., alias="newPassword", max_length=1024)


class MessageResponse(BaseModel):
    message: str


class TaskResponse(BaseModel):
    task_id: str
    identity: str
    action: str
    status: str
    attempt_count: int
    last_error: Optional[str] = None
    outcome: Optional[str] = None
    delivery_id: Optional[str] = None
    created_at: float
    updated_at: float


class FailedTasksResponse(BaseModel):
    tasks: list[TaskResponse]


class CancelTaskResponse(BaseModel):
    task_id: str
    cancelled: bool


class AuditRecordResponse(BaseModel):
    audit_id: str
    identity: str
    action: str
    outcome: str
    task_id: Optional[str] = None
    created_at: float


class AuditTrailResponse(BaseModel):
    records: list[AuditRecordResponse]
