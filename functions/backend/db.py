"""
Database abstraction for Postgres and an in-memory test implementation.

Holds the profile store, the reconciliation task table and the audit log.
Task rows are only ever changed through compare-and-swap transitions keyed by
(task_id, status, attempt_count).
"""

from __future__ import annotations

import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Dict, Iterator, List, Optional, Protocol

from sqlalchemy import (
    Column,
    Float,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    select,
    update,
)
from sqlalchemy import exc as sa_exc
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from backend.errors import TransientError
from shared.types import (
    ACTIVE_STATUSES,
    ReconciliationAction,
    TaskStatus,
)


class DbClient(Protocol):
    """Interface for database access."""

    def create_profile(
        self, identity: str, display_name: str, email: str, password_hash: str
    ) -> "ProfileRecord":
        ...

    def get_profile(self, identity: str) -> Optional["ProfileRecord"]:
        ...

    def get_profile_by_email(self, email: str) -> Optional["ProfileRecord"]:
        ...

    def list_profiles(self, limit: int = 100) -> list["ProfileRecord"]:
        ...

    def delete_profile(self, identity: str) -> bool:
        ...

    def update_password_hash(
        self, identity: str, password_hash: str
    ) -> Optional["ProfileRecord"]:
        ...

    def create_task(
        self,
        identity: str,
        action: ReconciliationAction,
        delivery_id: str | None = None,
    ) -> "ReconciliationTask":
        ...

    def get_or_create_task(
        self,
        identity: str,
        action: ReconciliationAction,
        delivery_id: str | None = None,
    ) -> tuple["ReconciliationTask", bool]:
        ...

    def get_task(self, task_id: str) -> Optional["ReconciliationTask"]:
        ...

    def transition_task(
        self,
        task_id: str,
        *,
        expected_status: TaskStatus,
        expected_attempts: int,
        status: TaskStatus,
        attempt_count: Optional[int] = None,
        last_error: Optional[str] = None,
        outcome: Optional[str] = None,
    ) -> Optional["ReconciliationTask"]:
        ...

    def list_tasks(
        self,
        *,
        status: Optional[TaskStatus] = None,
        identity: Optional[str] = None,
        action: Optional[ReconciliationAction] = None,
        limit: int = 100,
    ) -> list["ReconciliationTask"]:
        ...

    def has_succeeded_task(
        self,
        identity: str,
        action: ReconciliationAction,
        exclude_task_id: Optional[str] = None,
    ) -> bool:
        ...

    def list_stale_tasks(self, cutoff: float) -> list["ReconciliationTask"]:
        ...

    def record_audit(
        self,
        identity: str,
        action: ReconciliationAction,
        outcome: str,
        task_id: Optional[str] = None,
    ) -> "AuditRecord":
        ...

    def list_audit(
        self,
        *,
        identity: Optional[str] = None,
        action: Optional[ReconciliationAction] = None,
        limit: int = 100,
    ) -> list["AuditRecord"]:
        ...


@dataclass
class ProfileRecord:
    identity: str
    display_name: str
    email: str
    password_hash: str
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())

    def as_summary(self) -> dict:
        return {"name": self.display_name, "email": self.email}


@dataclass
class ReconciliationTask:
    task_id: str
    identity: str
    action: ReconciliationAction
    status: TaskStatus = TaskStatus.PENDING
    attempt_count: int = 0
    last_error: Optional[str] = None
    outcome: Optional[str] = None
    delivery_id: Optional[str] = None
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "identity": self.identity,
            "action": self.action.value,
            "status": self.status.value,
            "attempt_count": self.attempt_count,
            "last_error": self.last_error,
            "outcome": self.outcome,
            "delivery_id": self.delivery_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class AuditRecord:
    audit_id: str
    identity: str
    action: ReconciliationAction
    outcome: str
    task_id: Optional[str] = None
    created_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return {
            "audit_id": self.audit_id,
            "identity": self.identity,
            "action": self.action.value,
            "outcome": self.outcome,
            "task_id": self.task_id,
            "created_at": self.created_at,
        }


class InMemoryDbClient:
    """Simple in-memory database for development and tests. Thread-safe."""

    def __init__(self):
        self._lock = threading.RLock()
        self.profiles: Dict[str, ProfileRecord] = {}
        self.tasks: Dict[str, ReconciliationTask] = {}
        self.audit: List[AuditRecord] = []

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        with self._lock:
            self.profiles.clear()
            self.tasks.clear()
            self.audit.clear()

    # Profiles

    def create_profile(
        self, identity: str, display_name: str, email: str, password_hash: str
    ) -> ProfileRecord:
        with self._lock:
            if identity in self.profiles:
                raise ValueError(f"Profile {identity} already exists")
            if self._find_by_email(email):
                raise ValueError(f"Email {email} already registered")
            record = ProfileRecord(
                identity=identity,
                display_name=display_name,
                email=email,
                password_hash=password_hash,
            )
            self.profiles[identity] = record
            return replace(record)

    def get_profile(self, identity: str) -> Optional[ProfileRecord]:
        with self._lock:
            record = self.profiles.get(identity)
            return replace(record) if record else None

    def get_profile_by_email(self, email: str) -> Optional[ProfileRecord]:
        with self._lock:
            record = self._find_by_email(email)
            return replace(record) if record else None

    def _find_by_email(self, email: str) -> Optional[ProfileRecord]:
        for record in self.profiles.values():
            if record.email == email:
                return record
        return None

    def list_profiles(self, limit: int = 100) -> list[ProfileRecord]:
        with self._lock:
            records = sorted(self.profiles.values(), key=lambda r: r.created_at)
            return [replace(r) for r in records[:limit]]

    def delete_profile(self, identity: str) -> bool:
        with self._lock:
            return self.profiles.pop(identity, None) is not None

    def update_password_hash(
        self, identity: str, password_hash: str
    ) -> Optional[ProfileRecord]:
        with self._lock:
            record = self.profiles.get(identity)
            if not record:
                return None
            record.password_hash = password_hash
            record.updated_at = time.time()
            return replace(record)

    # Tasks

    def create_task(
        self,
        identity: str,
        action: ReconciliationAction,
        delivery_id: str | None = None,
    ) -> ReconciliationTask:
        with self._lock:
            task = ReconciliationTask(
                task_id=uuid.uuid4().hex,
                identity=identity,
                action=action,
                delivery_id=delivery_id,
            )
            self.tasks[task.task_id] = task
            return replace(task)

    def get_or_create_task(
        self,
        identity: str,
        action: ReconciliationAction,
        delivery_id: str | None = None,
    ) -> tuple[ReconciliationTask, bool]:
        with self._lock:
            for task in self.tasks.values():
                if (
                    delivery_id
                    and task.delivery_id == delivery_id
                    and task.identity == identity
                    and task.action == action
                ):
                    return replace(task), False
            for task in sorted(self.tasks.values(), key=lambda t: t.created_at):
                if (
                    task.identity == identity
                    and task.action == action
                    and task.status in ACTIVE_STATUSES
                ):
                    return replace(task), False
            return self.create_task(identity, action, delivery_id), True

    def get_task(self, task_id: str) -> Optional[ReconciliationTask]:
        with self._lock:
            task = self.tasks.get(task_id)
            return replace(task) if task else None

    def transition_task(
        self,
        task_id: str,
        *,
        expected_status: TaskStatus,
        expected_attempts: int,
        status: TaskStatus,
        attempt_count: Optional[int] = None,
        last_error: Optional[str] = None,
        outcome: Optional[str] = None,
    ) -> Optional[ReconciliationTask]:
        with self._lock:
            task = self.tasks.get(task_id)
            if (
                not task
                or task.status != expected_status
                or task.attempt_count != expected_attempts
            ):
                return None
            task.status = status
            if attempt_count is not None:
                task.attempt_count = attempt_count
            if last_error is not None:
                task.last_error = last_error
            if outcome is not None:
                task.outcome = outcome
            task.updated_at = time.time()
            return replace(task)

    def list_tasks(
        self,
        *,
        status: Optional[TaskStatus] = None,
        identity: Optional[str] = None,
        action: Optional[ReconciliationAction] = None,
        limit: int = 100,
    ) -> list[ReconciliationTask]:
        with self._lock:
            items = [
                replace(task)
                for task in sorted(self.tasks.values(), key=lambda t: t.created_at)
                if (status is None or task.status == status)
                and (identity is None or task.identity == identity)
                and (action is None or task.action == action)
            ]
            return items[:limit]

    def has_succeeded_task(
        self,
        identity: str,
        action: ReconciliationAction,
        exclude_task_id: Optional[str] = None,
    ) -> bool:
        with self._lock:
            return any(
                task.identity == identity
                and task.action == action
                and task.status == TaskStatus.SUCCEEDED
                and task.task_id != exclude_task_id
                for task in self.tasks.values()
            )

    def list_stale_tasks(self, cutoff: float) -> list[ReconciliationTask]:
        with self._lock:
            return [
                replace(task)
                for task in self.tasks.values()
                if task.status in ACTIVE_STATUSES and task.updated_at < cutoff
            ]

    # Audit

    def record_audit(
        self,
        identity: str,
        action: ReconciliationAction,
        outcome: str,
        task_id: Optional[str] = None,
    ) -> AuditRecord:
        with self._lock:
            record = AuditRecord(
                audit_id=uuid.uuid4().hex,
                identity=identity,
                action=action,
                outcome=outcome,
                task_id=task_id,
            )
            self.audit.append(record)
            return replace(record)

    def list_audit(
        self,
        *,
        identity: Optional[str] = None,
        action: Optional[ReconciliationAction] = None,
        limit: int = 100,
    ) -> list[AuditRecord]:
        with self._lock:
            items = [
                replace(record)
                for record in self.audit
                if (identity is None or record.identity == identity)
                and (action is None or record.action == action)
            ]
            return items[:limit]


class PostgresDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for PostgresDbClient")
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        # Connection drops and pool exhaustion are worth retrying.
        try:
            with self.Session() as session:
                yield session
        except (sa_exc.OperationalError, sa_exc.TimeoutError) as exc:
            raise TransientError(f"database unavailable: {exc}") from exc

    def _to_profile(self, row: "ProfileRow") -> ProfileRecord:
        return ProfileRecord(
            identity=row.identity,
            display_name=row.display_name,
            email=row.email,
            password_hash=row.password_hash,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _to_task(self, row: "TaskRow") -> ReconciliationTask:
        return ReconciliationTask(
            task_id=row.task_id,
            identity=row.identity,
            action=ReconciliationAction(row.action),
            status=TaskStatus(row.status),
            attempt_count=row.attempt_count,
            last_error=row.last_error,
            outcome=row.outcome,
            delivery_id=row.delivery_id,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _to_audit(self, row: "AuditRow") -> AuditRecord:
        return AuditRecord(
            audit_id=row.audit_id,
            identity=row.identity,
            action=ReconciliationAction(row.action),
            outcome=row.outcome,
            task_id=row.task_id,
            created_at=row.created_at,
        )

    # Profiles

    def create_profile(
        self, identity: str, display_name: str, email: str, password_hash: str
    ) -> ProfileRecord:
        now = time.time()
        with self._session() as session:
            row = ProfileRow(
                identity=identity,
                display_name=display_name,
                email=email,
                password_hash=password_hash,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            try:
                session.commit()
            except sa_exc.IntegrityError as exc:
                session.rollback()
                raise ValueError(f"Profile {identity} <{email}> already exists") from exc
            return self._to_profile(row)

    def get_profile(self, identity: str) -> Optional[ProfileRecord]:
        with self._session() as session:
            row = session.get(ProfileRow, identity)
            return self._to_profile(row) if row else None

    def get_profile_by_email(self, email: str) -> Optional[ProfileRecord]:
        with self._session() as session:
            stmt = select(ProfileRow).where(ProfileRow.email == email).limit(1)
            row = session.execute(stmt).scalar_one_or_none()
            return self._to_profile(row) if row else None

    def list_profiles(self, limit: int = 100) -> list[ProfileRecord]:
        with self._session() as session:
            rows = (
                session.query(ProfileRow)
                .order_by(ProfileRow.created_at.asc())
                .limit(limit)
                .all()
            )
            return [self._to_profile(row) for row in rows]

    def delete_profile(self, identity: str) -> bool:
        with self._session() as session:
            row = session.get(ProfileRow, identity)
            if not row:
                return False
            session.delete(row)
            session.commit()
            return True

    def update_password_hash(
        self, identity: str, password_hash: str
    ) -> Optional[ProfileRecord]:
        # One conditional UPDATE so concurrent writers never interleave fields.
        with self._session() as session:
            result = session.execute(
                update(ProfileRow)
                .where(ProfileRow.identity == identity)
                .values(password_hash=password_hash, updated_at=time.time())
            )
            session.commit()
            if result.rowcount != 1:
                return None
            row = session.get(ProfileRow, identity, populate_existing=True)
            return self._to_profile(row) if row else None

    # Tasks

    def create_task(
        self,
        identity: str,
        action: ReconciliationAction,
        delivery_id: str | None = None,
    ) -> ReconciliationTask:
        now = time.time()
        with self._session() as session:
            row = TaskRow(
                task_id=uuid.uuid4().hex,
                identity=identity,
                action=action.value,
                status=TaskStatus.PENDING.value,
                attempt_count=0,
                delivery_id=delivery_id,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            return self._to_task(row)

    def get_or_create_task(
        self,
        identity: str,
        action: ReconciliationAction,
        delivery_id: str | None = None,
    ) -> tuple[ReconciliationTask, bool]:
        existing = self._find_task_for(identity, action, delivery_id)
        if existing:
            return existing, False
        try:
            return self.create_task(identity, action, delivery_id), True
        except sa_exc.IntegrityError:
            # Another process inserted the same delivery first.
            existing = self._find_task_for(identity, action, delivery_id)
            if existing is None:
                raise
            return existing, False

    def _find_task_for(
        self,
        identity: str,
        action: ReconciliationAction,
        delivery_id: str | None,
    ) -> Optional[ReconciliationTask]:
        with self._session() as session:
            if delivery_id:
                stmt = select(TaskRow).where(
                    TaskRow.delivery_id == delivery_id,
                    TaskRow.identity == identity,
                    TaskRow.action == action.value,
                )
                row = session.execute(stmt).scalar_one_or_none()
                if row:
                    return self._to_task(row)
            stmt = (
                select(TaskRow)
                .where(
                    TaskRow.identity == identity,
                    TaskRow.action == action.value,
                    TaskRow.status.in_([s.value for s in ACTIVE_STATUSES]),
                )
                .order_by(TaskRow.created_at.asc())
                .limit(1)
            )
            row = session.execute(stmt).scalar_one_or_none()
            return self._to_task(row) if row else None

    def get_task(self, task_id: str) -> Optional[ReconciliationTask]:
        with self._session() as session:
            row = session.get(TaskRow, task_id)
            return self._to_task(row) if row else None

    def transition_task(
        self,
        task_id: str,
        *,
        expected_status: TaskStatus,
        expected_attempts: int,
        status: TaskStatus,
        attempt_count: Optional[int] = None,
        last_error: Optional[str] = None,
        outcome: Optional[str] = None,
    ) -> Optional[ReconciliationTask]:
        values = {"status": status.value, "updated_at": time.time()}
        if attempt_count is not None:
            values["attempt_count"] = attempt_count
        if last_error is not None:
            values["last_error"] = last_error
        if outcome is not None:
            values["outcome"] = outcome
        with self._session() as session:
            result = session.execute(
                update(TaskRow)
                .where(
                    TaskRow.task_id == task_id,
                    TaskRow.status == expected_status.value,
                    TaskRow.attempt_count == expected_attempts,
                )
                .values(**values)
            )
            session.commit()
            if result.rowcount != 1:
                return None
            row = session.get(TaskRow, task_id, populate_existing=True)
            return self._to_task(row) if row else None

    def list_tasks(
        self,
        *,
        status: Optional[TaskStatus] = None,
        identity: Optional[str] = None,
        action: Optional[ReconciliationAction] = None,
        limit: int = 100,
    ) -> list[ReconciliationTask]:
        with self._session() as session:
            query = session.query(TaskRow)
            if status is not None:
                query = query.filter(TaskRow.status == status.value)
            if identity is not None:
                query = query.filter(TaskRow.identity == identity)
            if action is not None:
                query = query.filter(TaskRow.action == action.value)
            rows = query.order_by(TaskRow.created_at.asc()).limit(limit).all()
            return [self._to_task(row) for row in rows]

    def has_succeeded_task(
        self,
        identity: str,
        action: ReconciliationAction,
        exclude_task_id: Optional[str] = None,
    ) -> bool:
        with self._session() as session:
            query = session.query(TaskRow.task_id).filter(
                TaskRow.identity == identity,
                TaskRow.action == action.value,
                TaskRow.status == TaskStatus.SUCCEEDED.value,
            )
            if exclude_task_id:
                query = query.filter(TaskRow.task_id != exclude_task_id)
            return query.first() is not None

    def list_stale_tasks(self, cutoff: float) -> list[ReconciliationTask]:
        with self._session() as session:
            rows = (
                session.query(TaskRow)
                .filter(
                    TaskRow.status.in_([s.value for s in ACTIVE_STATUSES]),
                    TaskRow.updated_at < cutoff,
                )
                .order_by(TaskRow.updated_at.asc())
                .all()
            )
            return [self._to_task(row) for row in rows]

    # Audit

    def record_audit(
        self,
        identity: str,
        action: ReconciliationAction,
        outcome: str,
        task_id: Optional[str] = None,
    ) -> AuditRecord:
        with self._session() as session:
            row = AuditRow(
                audit_id=uuid.uuid4().hex,
                task_id=task_id,
                identity=identity,
                action=action.value,
                outcome=outcome,
                created_at=time.time(),
            )
            session.add(row)
            session.commit()
            return self._to_audit(row)

    def list_audit(
        self,
        *,
        identity: Optional[str] = None,
        action: Optional[ReconciliationAction] = None,
        limit: int = 100,
    ) -> list[AuditRecord]:
        with self._session() as session:
            query = session.query(AuditRow)
            if identity is not None:
                query = query.filter(AuditRow.identity == identity)
            if action is not None:
                query = query.filter(AuditRow.action == action.value)
            rows = query.order_by(AuditRow.created_at.asc()).limit(limit).all()
            return [self._to_audit(row) for row in rows]


Base = declarative_base()


class ProfileRow(Base):
    __tablename__ = "profiles"

    identity = Column(String, primary_key=True)
    display_name = Column(String, nullable=False)
    email = Column(String, nullable=False, unique=True, index=True)
    password_hash = Column(String, nullable=False)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class TaskRow(Base):
    __tablename__ = "reconciliation_tasks"
    __table_args__ = (
        UniqueConstraint("identity", "action", "delivery_id", name="uq_task_delivery"),
    )

    task_id = Column(String, primary_key=True)
    identity = Column(String, nullable=False, index=True)
    action = Column(String, nullable=False)
    status = Column(String, nullable=False, index=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    last_error = Column(String, nullable=True)
    outcome = Column(String, nullable=True)
    delivery_id = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class AuditRow(Base):
    __tablename__ = "reconciliation_audit"

    audit_id = Column(String, primary_key=True)
    task_id = Column(String, nullable=True, index=True)
    identity = Column(String, nullable=False, index=True)
    action = Column(String, nullable=False)
    outcome = Column(String, nullable=False)
    created_at = Column(Float, nullable=False)
