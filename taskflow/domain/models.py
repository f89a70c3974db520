from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, ForeignKeyConstraint, Index
from sqlmodel import Field, SQLModel

from taskflow.domain.state_machine import ReminderStatus, ReviewStatus, TaskStatus


def now_utc() -> datetime:
    return datetime.now(UTC)


class Priority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AccountKind(StrEnum):
    CUSTOMER = "customer"
    PROSPECT = "prospect"


class OverdueIndicator(StrEnum):
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: str = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    correlation_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    actor_id: str | None = Field(default=None, index=True)
    action: str
    resource: str
    method: str
    status_code: int
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class DirectoryUser(SQLModel, table=True):
    __tablename__ = "directory_users"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    username: str = Field(index=True, unique=True)
    home_department: str | None = Field(default=None, index=True)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class DirectoryUserRole(SQLModel, table=True):
    __tablename__ = "directory_user_roles"

    user_id: str = Field(foreign_key="directory_users.id", primary_key=True)
    role: str = Field(primary_key=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Account(SQLModel, table=True):
    __tablename__ = "accounts"
    __table_args__ = (Index("ix_accounts_kind_id", "kind", "id"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    kind: AccountKind
    name: str = Field(index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class WorkItemBase(SQLModel):
    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    title: str
    description: str | None = None
    created_by: str = Field(index=True)
    department: str | None = Field(default=None, index=True)
    display_order: int = Field(default=0, index=True)
    priority: Priority = Field(default=Priority.MEDIUM)
    attached_kind: AccountKind | None = Field(default=None)
    attached_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc, index=True)


class Task(WorkItemBase, table=True):
    __tablename__ = "tasks"
    __table_args__ = (
        Index("ix_tasks_attached", "attached_kind", "attached_id"),
        Index("ix_tasks_department_order", "department", "display_order"),
    )

    due_at: datetime | None = Field(default=None, index=True)
    status: TaskStatus = Field(default=TaskStatus.PLANNED, index=True)
    assignee: str = Field(index=True)
    review_status: ReviewStatus = Field(default=ReviewStatus.NONE)
    approver: str | None = None
    review_comment: str | None = None
    completed_at: datetime | None = Field(default=None, index=True)


class Reminder(WorkItemBase, table=True):
    __tablename__ = "reminders"
    __table_args__ = (
        Index("ix_reminders_attached", "attached_kind", "attached_id"),
        Index("ix_reminders_department_order", "department", "display_order"),
    )

    remind_at: datetime | None = Field(default=None, index=True)
    status: ReminderStatus = Field(default=ReminderStatus.PLANNED, index=True)

    @property
    def done(self) -> bool:
        return self.status == ReminderStatus.DONE


class ReminderAssignee(SQLModel, table=True):
    __tablename__ = "reminder_assignees"
    __table_args__ = (
        ForeignKeyConstraint(["reminder_id"], ["reminders.id"], ondelete="CASCADE"),
        Index("ix_reminder_assignees_user", "user_id"),
    )

    reminder_id: str = Field(primary_key=True)
    user_id: str = Field(primary_key=True)
    position: int = Field(default=0)
    created_at: datetime = Field(default_factory=now_utc)


class DisplayOrderCounter(SQLModel, table=True):
    __tablename__ = "display_order_counters"

    creator_id: str = Field(primary_key=True)
    last_value: int = Field(default=0)
    updated_at: datetime = Field(default_factory=now_utc)


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    correlation_id: str | None = None
    payload: dict[str, Any] = PydanticField(default_factory=dict)


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class AttachmentRef(BaseModel):
    kind: AccountKind
    id: str


class TaskCreate(BaseModel):
    title: str
    description: str | None = None
    due_at: datetime | None = None
    priority: Priority = Priority.MEDIUM
    department: str | None = None
    assignee: str | None = None
    attached_to: AttachmentRef | None = None
    status: TaskStatus | None = None


class TaskUpdate(BaseModel):
    title: str | None = None
    description: str | None = None
    due_at: datetime | None = None
    priority: Priority | None = None
    department: str | None = None
    assignee: str | None = None
    status: TaskStatus | None = None
    review_status: ReviewStatus | None = None
    review_comment: str | None = None
    attached_to: AttachmentRef | None = None


class TaskRead(ORMReadModel):
    id: str
    title: str
    description: str | None = None
    created_by: str
    department: str | None = None
    display_order: int
    priority: Priority
    attached_to: AttachmentRef | None = None
    due_at: datetime | None = None
    status: TaskStatus
    effective_status: TaskStatus
    is_overdue: bool
    assignee: str
    review_status: ReviewStatus
    approver: str | None = None
    review_comment: str | None = None
    completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class TaskGroupRead(BaseModel):
    department: str | None = None
    items: list[TaskRead]


class TaskBoardRead(BaseModel):
    overdue: list[TaskRead] = PydanticField(default_factory=list)
    planned: list[TaskRead] = PydanticField(default_factory=list)
    in_progress: list[TaskRead] = PydanticField(default_factory=list)
    done: list[TaskRead] = PydanticField(default_factory=list)


class OverdueSweepRead(BaseModel):
    marked: int
    task_ids: list[str]


class ReminderCreate(BaseModel):
    title: str
    description: str | None = None
    remind_at: datetime
    priority: Priority = Priority.MEDIUM
    department: str | None = None
    assignees: list[str] = PydanticField(default_factory=list)
    attached_to: AttachmentRef | None = None
    status: ReminderStatus | None = None
    done: bool | None = None


class ReminderUpdate(BaseModel):
    title: str | None = None
    description: str | None = None
    remind_at: datetime | None = None
    priority: Priority | None = None
    department: str | None = None
    assignees: list[str] | None = None
    status: ReminderStatus | None = None
    done: bool | None = None
    attached_to: AttachmentRef | None = None


class ReminderPostponeRequest(BaseModel):
    days: int


class ReminderAssigneesSyncRequest(BaseModel):
    user_ids: list[str]


class ReminderRead(ORMReadModel):
    id: str
    title: str
    description: str | None = None
    created_by: str
    department: str | None = None
    display_order: int
    priority: Priority
    attached_to: AttachmentRef | None = None
    remind_at: datetime | None = None
    status: ReminderStatus
    done: bool
    assignees: list[str]
    created_at: datetime
    updated_at: datetime


class ReminderGroupRead(BaseModel):
    department: str | None = None
    items: list[ReminderRead]


class WeeklyCounterRead(BaseModel):
    current: int
    last: int
    diff: int


class WeeklyStatsRead(BaseModel):
    week_start: datetime
    created: WeeklyCounterRead
    completed: WeeklyCounterRead


class AccountOverdueRead(BaseModel):
    kind: AccountKind
    id: str
    name: str
    overdue_tasks: int
    indicator: OverdueIndicator


class WorkloadRead(BaseModel):
    user_id: str
    username: str
    home_department: str | None = None
    active_tasks: int
    completed_tasks: int
    active_reminders: int


class DashboardStatsRead(BaseModel):
    open_tasks: int
    overdue_tasks: int
    pending_reminders: int
