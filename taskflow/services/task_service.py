from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import or_
from sqlmodel import Session, col, select

from taskflow.domain.models import Priority, Task, TaskCreate, TaskUpdate, now_utc
from taskflow.domain.permissions import Caller, can_mutate
from taskflow.domain.state_machine import (
    REVIEW_DECISIONS,
    SETTABLE_TASK_STATUSES,
    ReviewStatus,
    TaskStatus,
    effective_task_status,
    is_task_overdue,
)
from taskflow.infra.events import event_bus
from taskflow.infra.logging_setup import get_logger
from taskflow.services.work_item_service import WorkItemService, group_by_department

logger = get_logger(__name__)

BOARD_COLUMNS = (TaskStatus.OVERDUE, TaskStatus.PLANNED, TaskStatus.IN_PROGRESS, TaskStatus.DONE)


def _recipient(row: Task) -> str:
    return row.assignee or row.created_by


class TaskService(WorkItemService):
    item_label = "task"

    def _get_task(self, session: Session, task_id: str) -> Task:
        row = session.exec(select(Task).where(Task.id == task_id)).first()
        if row is None:
            raise self._not_found()
        return row

    @staticmethod
    def _ordered(statement: Any) -> Any:
        return statement.order_by(Task.display_order, Task.created_at)

    @staticmethod
    def _involving(caller_id: str) -> Any:
        return or_(Task.created_by == caller_id, Task.assignee == caller_id)

    def create_task(self, caller_id: str, payload: TaskCreate) -> Task:
        caller = self._caller(caller_id)
        errors: dict[str, str] = {}
        title = self._check_title(payload.title, errors)
        department = self._check_department(payload.department, errors)
        assignee = payload.assignee or caller.id
        if payload.assignee is not None:
            self._check_users("assignee", [payload.assignee], errors)
        status = payload.status or TaskStatus.PLANNED
        if status not in SETTABLE_TASK_STATUSES:
            errors["status"] = f"status {status} is computed and cannot be set"
        self._raise_if_errors(errors, "invalid task")
        self._ensure_attachment_exists(payload.attached_to)

        now = now_utc()
        with self._session() as session:
            row = Task(
                title=title or "",
                description=payload.description,
                created_by=caller.id,
                department=self._resolve_department(department, assignee, caller.id),
                display_order=self._order_allocator().next_order(session, caller.id),
                priority=payload.priority,
                attached_kind=payload.attached_to.kind if payload.attached_to else None,
                attached_id=payload.attached_to.id if payload.attached_to else None,
                due_at=payload.due_at,
                status=status,
                assignee=assignee,
                completed_at=now if status == TaskStatus.DONE else None,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)

        logger.info("task %s created by %s in %s", row.id, caller.id, row.department or "global")
        event_bus.publish_dict(
            "task.created",
            {
                "task_id": row.id,
                "department": row.department,
                "assignee": row.assignee,
                "display_order": row.display_order,
            },
            actor_id=caller.id,
        )
        if row.assignee != caller.id:
            event_bus.publish_dict(
                "task.assigned",
                {"task_id": row.id, "recipient_id": row.assignee},
                actor_id=caller.id,
            )
        return row

    def get_task(self, caller_id: str, task_id: str) -> Task:
        with self._session() as session:
            return self._get_task(session, task_id)

    def update_task(
        self,
        caller_id: str,
        task_id: str,
        payload: TaskUpdate,
        *,
        now: datetime | None = None,
    ) -> Task:
        fields = payload.model_fields_set
        caller = self._caller(caller_id)
        policy = self._policy()
        now = now or now_utc()
        with self._session() as session:
            row = self._get_task(session, task_id)
            if not can_mutate(caller, row.created_by, {row.assignee}):
                raise self._deny(caller, "update", row.id)

            errors: dict[str, str] = {}
            if "attached_to" in fields:
                self._check_attachment_unchanged(row, payload.attached_to, errors)
            title = self._check_title(payload.title, errors) if "title" in fields else None
            department = self._check_department(payload.department, errors) if "department" in fields else None
            if "priority" in fields and payload.priority is None:
                errors["priority"] = "priority cannot be empty"
            if "assignee" in fields and payload.assignee is not None:
                self._check_users("assignee", [payload.assignee], errors)
            if "status" in fields:
                if payload.status is None:
                    errors["status"] = "status cannot be empty"
                elif payload.status not in SETTABLE_TASK_STATUSES:
                    errors["status"] = f"status {payload.status} is computed and cannot be set"
                elif not policy.can_transition_status(row.status, payload.status):
                    errors["status"] = f"illegal transition: {row.status} -> {payload.status}"
            if "review_status" in fields:
                if payload.review_status is None:
                    errors["review_status"] = "review_status cannot be empty"
                elif not policy.can_transition_review(row.review_status, payload.review_status):
                    errors["review_status"] = (
                        f"illegal review transition: {row.review_status} -> {payload.review_status}"
                    )
            self._raise_if_errors(errors, "invalid task update")

            changed: list[str] = []
            previous_assignee = row.assignee
            previous_review = row.review_status
            if title is not None:
                row.title = title
                changed.append("title")
            if "description" in fields:
                row.description = payload.description
                changed.append("description")
            if "due_at" in fields:
                row.due_at = payload.due_at
                changed.append("due_at")
            if "priority" in fields and payload.priority is not None:
                row.priority = Priority(payload.priority)
                changed.append("priority")
            if "assignee" in fields:
                row.assignee = payload.assignee or row.created_by
                if row.assignee != previous_assignee:
                    changed.append("assignee")
            if "department" in fields:
                row.department = department
                changed.append("department")
            elif row.assignee != previous_assignee:
                self._recompute_department(row, row.assignee)
            if "status" in fields and payload.status is not None:
                self._apply_status(row, payload.status, now)
                changed.append("status")
            if "review_status" in fields and payload.review_status is not None:
                self._apply_review(row, payload.review_status, caller)
                changed.append("review_status")
            if "review_comment" in fields:
                row.review_comment = payload.review_comment
                changed.append("review_comment")
            if row.status == TaskStatus.OVERDUE and not is_task_overdue(row.status, row.due_at, now):
                row.status = TaskStatus.PLANNED
            row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)

        event_bus.publish_dict(
            "task.updated",
            {"task_id": row.id, "fields": changed, "status": row.status},
            actor_id=caller.id,
        )
        if row.assignee != previous_assignee:
            event_bus.publish_dict(
                "task.assigned",
                {"task_id": row.id, "recipient_id": row.assignee, "previous_assignee": previous_assignee},
                actor_id=caller.id,
            )
        if row.review_status != previous_review:
            event_bus.publish_dict(
                "task.review_changed",
                {
                    "task_id": row.id,
                    "from": previous_review,
                    "to": row.review_status,
                    "approver": row.approver,
                },
                actor_id=caller.id,
            )
        return row

    @staticmethod
    def _apply_status(row: Task, target: TaskStatus, now: datetime) -> None:
        if target == TaskStatus.DONE and row.status != TaskStatus.DONE:
            row.completed_at = now
        elif target != TaskStatus.DONE:
            row.completed_at = None
        row.status = target

    @staticmethod
    def _apply_review(row: Task, target: ReviewStatus, caller: Caller) -> None:
        if target == row.review_status:
            return
        if target in REVIEW_DECISIONS:
            row.approver = caller.id
        else:
            row.approver = None
        row.review_status = target

    def delete_task(self, caller_id: str, task_id: str) -> None:
        caller = self._caller(caller_id)
        with self._session() as session:
            row = self._get_task(session, task_id)
            if not can_mutate(caller, row.created_by, {row.assignee}):
                raise self._deny(caller, "delete", row.id)
            session.delete(row)
            session.commit()

        logger.info("task %s deleted by %s", task_id, caller.id)
        event_bus.publish_dict("task.deleted", {"task_id": task_id}, actor_id=caller.id)

    def list_by_department(
        self,
        caller_id: str,
        department: str,
        *,
        status: TaskStatus | None = None,
        priority: Priority | None = None,
        now: datetime | None = None,
    ) -> list[Task]:
        caller = self._caller(caller_id)
        department = self._listed_department(department)
        statement = select(Task).where(Task.department == department)
        if not caller.is_admin:
            statement = statement.where(self._involving(caller.id))
        if priority is not None:
            statement = statement.where(Task.priority == priority)
        with self._session() as session:
            rows = list(session.exec(self._ordered(statement)).all())
        if status is None:
            return rows
        now = now or now_utc()
        return [row for row in rows if effective_task_status(row.status, row.due_at, now) == status]

    def list_mine(self, caller_id: str) -> list[Task]:
        statement = select(Task).where(self._involving(caller_id))
        with self._session() as session:
            return list(session.exec(self._ordered(statement)).all())

    def list_mine_grouped(self, caller_id: str) -> list[tuple[str | None, list[Task]]]:
        return group_by_department(self.list_mine(caller_id))

    def list_global(self, caller_id: str) -> list[Task]:
        caller = self._caller(caller_id)
        statement = select(Task).where(col(Task.department).is_(None))
        if not caller.is_admin:
            statement = statement.where(self._involving(caller.id))
        with self._session() as session:
            return list(session.exec(self._ordered(statement)).all())

    def list_for_user(self, caller_id: str, user_id: str) -> list[Task]:
        caller = self._caller(caller_id)
        if not caller.is_admin:
            raise self._deny(caller, "list another user's", user_id)
        statement = select(Task).where(self._involving(user_id))
        with self._session() as session:
            return list(session.exec(self._ordered(statement)).all())

    def board(self, caller_id: str, *, now: datetime | None = None) -> dict[TaskStatus, list[Task]]:
        now = now or now_utc()
        statement = select(Task).where(Task.assignee == caller_id)
        with self._session() as session:
            rows = list(session.exec(self._ordered(statement)).all())
        columns: dict[TaskStatus, list[Task]] = {column: [] for column in BOARD_COLUMNS}
        for row in rows:
            columns[effective_task_status(row.status, row.due_at, now)].append(row)
        return columns

    def sweep_overdue(self, caller_id: str, *, now: datetime | None = None) -> list[Task]:
        """Store ``overdue`` on every past-due task that is not done yet.

        Tasks already stored as overdue are left alone, so each task is
        announced once per lapse.
        """
        caller = self._caller(caller_id)
        if not caller.is_admin:
            raise self._deny(caller, "sweep", "overdue tasks")
        now = now or now_utc()
        with self._session() as session:
            candidates = session.exec(
                select(Task)
                .where(Task.status != TaskStatus.DONE)
                .where(Task.status != TaskStatus.OVERDUE)
                .where(col(Task.due_at).is_not(None))
            ).all()
            marked = [row for row in candidates if is_task_overdue(row.status, row.due_at, now)]
            for row in marked:
                row.status = TaskStatus.OVERDUE
                row.updated_at = now
                session.add(row)
            session.commit()
            for row in marked:
                session.refresh(row)

        logger.info("overdue sweep by %s marked %d task(s)", caller.id, len(marked))
        for row in marked:
            event_bus.publish_dict(
                "task.overdue",
                {"task_id": row.id, "recipient_id": _recipient(row), "due_at": row.due_at.isoformat() if row.due_at else None},
                actor_id=caller.id,
            )
        return marked

