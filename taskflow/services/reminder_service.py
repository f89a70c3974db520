from __future__ import annotations

from collections.abc import Sequence
from datetime import timedelta
from typing import Any

from sqlalchemy import delete, or_
from sqlmodel import Session, col, select

from taskflow.domain.errors import ValidationError
from taskflow.domain.models import (
    Priority,
    Reminder,
    ReminderAssignee,
    ReminderCreate,
    ReminderUpdate,
    now_utc,
)
from taskflow.domain.permissions import can_mutate
from taskflow.domain.routing import primary_assignee
from taskflow.domain.state_machine import ReminderStatus, ensure_utc
from taskflow.infra.events import event_bus
from taskflow.infra.logging_setup import get_logger
from taskflow.services.work_item_service import WorkItemService, group_by_department

logger = get_logger(__name__)

POSTPONE_MIN_DAYS = 1
POSTPONE_MAX_DAYS = 365

ReminderWithAssignees = tuple[Reminder, list[str]]


def _dedupe(user_ids: Sequence[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for user_id in user_ids:
        if user_id in seen:
            continue
        seen.add(user_id)
        ordered.append(user_id)
    return ordered


def resolve_completion(
    current: ReminderStatus,
    status: ReminderStatus | None,
    done: bool | None,
) -> ReminderStatus:
    """Fold the ``status`` and ``done`` inputs into the single stored status."""
    target = status or current
    if done is None:
        return target
    if done:
        if status is not None and status != ReminderStatus.DONE:
            raise ValidationError.for_field("done", f"done=true contradicts status={status}")
        return ReminderStatus.DONE
    if status == ReminderStatus.DONE:
        raise ValidationError.for_field("done", "done=false contradicts status=done")
    if target == ReminderStatus.DONE:
        return ReminderStatus.PLANNED
    return target


class ReminderService(WorkItemService):
    item_label = "reminder"

    def _get_reminder(self, session: Session, reminder_id: str) -> Reminder:
        row = session.exec(select(Reminder).where(Reminder.id == reminder_id)).first()
        if row is None:
            raise self._not_found()
        return row

    def _assignee_ids(self, session: Session, reminder_id: str) -> list[str]:
        return list(
            session.exec(
                select(ReminderAssignee.user_id)
                .where(ReminderAssignee.reminder_id == reminder_id)
                .order_by(ReminderAssignee.position)
            ).all()
        )

    def _with_assignees(self, session: Session, rows: list[Reminder]) -> list[ReminderWithAssignees]:
        if not rows:
            return []
        links = session.exec(
            select(ReminderAssignee.reminder_id, ReminderAssignee.user_id)
            .where(col(ReminderAssignee.reminder_id).in_([row.id for row in rows]))
            .order_by(ReminderAssignee.reminder_id, ReminderAssignee.position)
        ).all()
        by_reminder: dict[str, list[str]] = {}
        for reminder_id, user_id in links:
            by_reminder.setdefault(reminder_id, []).append(user_id)
        return [(row, by_reminder.get(row.id, [])) for row in rows]

    def _replace_assignees(self, session: Session, reminder_id: str, user_ids: list[str]) -> None:
        session.execute(delete(ReminderAssignee).where(col(ReminderAssignee.reminder_id) == reminder_id))
        for position, user_id in enumerate(user_ids):
            session.add(ReminderAssignee(reminder_id=reminder_id, user_id=user_id, position=position))

    @staticmethod
    def _ordered(statement: Any) -> Any:
        return statement.order_by(Reminder.display_order, Reminder.created_at)

    @staticmethod
    def _involving(caller_id: str) -> Any:
        assigned = select(ReminderAssignee.reminder_id).where(ReminderAssignee.user_id == caller_id)
        return or_(Reminder.created_by == caller_id, col(Reminder.id).in_(assigned))

    def _list(self, statement: Any) -> list[ReminderWithAssignees]:
        with self._session() as session:
            rows = list(session.exec(self._ordered(statement)).all())
            return self._with_assignees(session, rows)

    def create_reminder(self, caller_id: str, payload: ReminderCreate) -> ReminderWithAssignees:
        caller = self._caller(caller_id)
        errors: dict[str, str] = {}
        title = self._check_title(payload.title, errors)
        department = self._check_department(payload.department, errors)
        assignees = _dedupe(payload.assignees)
        self._check_users("assignees", assignees, errors)
        try:
            status = resolve_completion(ReminderStatus.PLANNED, payload.status, payload.done)
        except ValidationError as exc:
            errors.update(exc.errors)
            status = ReminderStatus.PLANNED
        self._raise_if_errors(errors, "invalid reminder")
        self._ensure_attachment_exists(payload.attached_to)

        now = now_utc()
        with self._session() as session:
            row = Reminder(
                title=title or "",
                description=payload.description,
                created_by=caller.id,
                department=self._resolve_department(department, primary_assignee(assignees), caller.id),
                display_order=self._order_allocator().next_order(session, caller.id),
                priority=payload.priority,
                attached_kind=payload.attached_to.kind if payload.attached_to else None,
                attached_id=payload.attached_to.id if payload.attached_to else None,
                remind_at=payload.remind_at,
                status=status,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            self._replace_assignees(session, row.id, assignees)
            session.commit()
            session.refresh(row)

        logger.info("reminder %s created by %s in %s", row.id, caller.id, row.department or "global")
        event_bus.publish_dict(
            "reminder.created",
            {"reminder_id": row.id, "department": row.department, "assignees": assignees},
            actor_id=caller.id,
        )
        return row, assignees

    def get_reminder(self, caller_id: str, reminder_id: str) -> ReminderWithAssignees:
        with self._session() as session:
            row = self._get_reminder(session, reminder_id)
            return row, self._assignee_ids(session, row.id)

    def update_reminder(
        self,
        caller_id: str,
        reminder_id: str,
        payload: ReminderUpdate,
    ) -> ReminderWithAssignees:
        fields = payload.model_fields_set
        caller = self._caller(caller_id)
        now = now_utc()
        with self._session() as session:
            row = self._get_reminder(session, reminder_id)
            current_assignees = self._assignee_ids(session, row.id)
            if not can_mutate(caller, row.created_by, current_assignees):
                raise self._deny(caller, "update", row.id)

            errors: dict[str, str] = {}
            if "attached_to" in fields:
                self._check_attachment_unchanged(row, payload.attached_to, errors)
            title = self._check_title(payload.title, errors) if "title" in fields else None
            department = self._check_department(payload.department, errors) if "department" in fields else None
            if "remind_at" in fields and payload.remind_at is None:
                errors["remind_at"] = "remind_at is required"
            if "priority" in fields and payload.priority is None:
                errors["priority"] = "priority cannot be empty"
            new_assignees: list[str] | None = None
            if "assignees" in fields:
                if payload.assignees is None:
                    errors["assignees"] = "assignees must be a list"
                else:
                    new_assignees = _dedupe(payload.assignees)
                    self._check_users("assignees", new_assignees, errors)
            if "status" in fields and payload.status is None:
                errors["status"] = "status cannot be empty"
            if "done" in fields and payload.done is None:
                errors["done"] = "done cannot be empty"
            status = row.status
            try:
                status = resolve_completion(row.status, payload.status, payload.done)
            except ValidationError as exc:
                errors.update(exc.errors)
            self._raise_if_errors(errors, "invalid reminder update")

            changed: list[str] = []
            if title is not None:
                row.title = title
                changed.append("title")
            if "description" in fields:
                row.description = payload.description
                changed.append("description")
            if "remind_at" in fields and payload.remind_at is not None:
                row.remind_at = payload.remind_at
                changed.append("remind_at")
            if "priority" in fields and payload.priority is not None:
                row.priority = Priority(payload.priority)
                changed.append("priority")
            if status != row.status:
                row.status = status
                changed.append("status")
            assignees_changed = new_assignees is not None and new_assignees != current_assignees
            if assignees_changed and new_assignees is not None:
                self._replace_assignees(session, row.id, new_assignees)
                changed.append("assignees")
            if "department" in fields:
                row.department = department
                changed.append("department")
            elif assignees_changed and new_assignees is not None:
                self._recompute_department(row, primary_assignee(new_assignees))
            row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            assignees = self._assignee_ids(session, row.id)

        event_bus.publish_dict(
            "reminder.updated",
            {"reminder_id": row.id, "fields": changed, "done": row.done},
            actor_id=caller.id,
        )
        return row, assignees

    def postpone(self, caller_id: str, reminder_id: str, days: int) -> ReminderWithAssignees:
        """Push ``remind_at`` back by ``days`` whole days.

        Each call shifts from the stored value, so repeated calls accumulate.
        A reminder without a date is returned untouched. A missing reminder is
        reported before an out-of-range ``days``, which is reported before a
        caller who may not touch the reminder.
        """
        caller = self._caller(caller_id)
        with self._session() as session:
            row = self._get_reminder(session, reminder_id)
            if not POSTPONE_MIN_DAYS <= days <= POSTPONE_MAX_DAYS:
                raise ValidationError.for_field(
                    "days",
                    f"days must be between {POSTPONE_MIN_DAYS} and {POSTPONE_MAX_DAYS}",
                )
            assignees = self._assignee_ids(session, row.id)
            if not can_mutate(caller, row.created_by, assignees):
                raise self._deny(caller, "postpone", row.id)
            if row.remind_at is None:
                return row, assignees
            previous = ensure_utc(row.remind_at)
            row.remind_at = previous + timedelta(days=days)
            row.updated_at = now_utc()
            session.add(row)
            session.commit()
            session.refresh(row)

        event_bus.publish_dict(
            "reminder.postponed",
            {
                "reminder_id": row.id,
                "days": days,
                "from": previous.isoformat(),
                "to": ensure_utc(row.remind_at).isoformat(),
            },
            actor_id=caller.id,
        )
        return row, assignees

    def sync_assignees(
        self,
        caller_id: str,
        reminder_id: str,
        user_ids: Sequence[str],
    ) -> ReminderWithAssignees:
        caller = self._caller(caller_id)
        assignees = _dedupe(user_ids)
        with self._session() as session:
            row = self._get_reminder(session, reminder_id)
            current = self._assignee_ids(session, row.id)
            if not can_mutate(caller, row.created_by, current):
                raise self._deny(caller, "reassign", row.id)
            errors: dict[str, str] = {}
            self._check_users("user_ids", assignees, errors)
            self._raise_if_errors(errors, "invalid assignees")
            self._replace_assignees(session, row.id, assignees)
            if assignees != current:
                self._recompute_department(row, primary_assignee(assignees))
            row.updated_at = now_utc()
            session.add(row)
            session.commit()
            session.refresh(row)

        event_bus.publish_dict(
            "reminder.assignees_synced",
            {"reminder_id": row.id, "assignees": assignees, "previous": current},
            actor_id=caller.id,
        )
        return row, assignees

    def delete_reminder(self, caller_id: str, reminder_id: str) -> None:
        caller = self._caller(caller_id)
        with self._session() as session:
            row = self._get_reminder(session, reminder_id)
            assignees = self._assignee_ids(session, row.id)
            if not can_mutate(caller, row.created_by, assignees):
                raise self._deny(caller, "delete", row.id)
            self._replace_assignees(session, row.id, [])
            session.delete(row)
            session.commit()

        logger.info("reminder %s deleted by %s", reminder_id, caller.id)
        event_bus.publish_dict(
            "reminder.deleted",
            {"reminder_id": reminder_id, "detached": assignees},
            actor_id=caller.id,
        )

    def list_by_department(
        self,
        caller_id: str,
        department: str,
        *,
        status: ReminderStatus | None = None,
        priority: Priority | None = None,
    ) -> list[ReminderWithAssignees]:
        caller = self._caller(caller_id)
        department = self._listed_department(department)
        statement = select(Reminder).where(Reminder.department == department)
        if not caller.is_admin:
            statement = statement.where(self._involving(caller.id))
        if status is not None:
            statement = statement.where(Reminder.status == status)
        if priority is not None:
            statement = statement.where(Reminder.priority == priority)
        return self._list(statement)

    def list_mine(self, caller_id: str) -> list[ReminderWithAssignees]:
        return self._list(select(Reminder).where(self._involving(caller_id)))

    def list_mine_grouped(self, caller_id: str) -> list[tuple[str | None, list[ReminderWithAssignees]]]:
        items = self.list_mine(caller_id)
        assignees_by_id = {row.id: assignees for row, assignees in items}
        return [
            (department, [(row, assignees_by_id[row.id]) for row in rows])
            for department, rows in group_by_department(row for row, _ in items)
        ]

    def list_global(self, caller_id: str) -> list[ReminderWithAssignees]:
        caller = self._caller(caller_id)
        statement = select(Reminder).where(col(Reminder.department).is_(None))
        if not caller.is_admin:
            statement = statement.where(self._involving(caller.id))
        return self._list(statement)
