from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta

from sqlmodel import Session, col, select

from taskflow.adapters.base import IdentityDirectory
from taskflow.adapters.sql_directory import SqlIdentityDirectory
from taskflow.domain.errors import AuthorizationError
from taskflow.domain.models import (
    Account,
    AccountOverdueRead,
    DashboardStatsRead,
    DirectoryUser,
    OverdueIndicator,
    Reminder,
    ReminderAssignee,
    Task,
    WeeklyCounterRead,
    WeeklyStatsRead,
    WorkloadRead,
    now_utc,
)
from taskflow.domain.permissions import Caller
from taskflow.domain.state_machine import ReminderStatus, TaskStatus, ensure_utc, is_task_overdue
from taskflow.infra.db import get_engine
from taskflow.infra.logging_setup import get_logger
from taskflow.infra.settings import overdue_critical_threshold
from taskflow.services.work_item_service import load_caller

logger = get_logger(__name__)


def week_start(now: datetime) -> datetime:
    """Monday 00:00 UTC of the week containing ``now``."""
    current = ensure_utc(now)
    midnight = current.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight - timedelta(days=midnight.weekday())


def month_start(now: datetime) -> datetime:
    current = ensure_utc(now)
    return current.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def overdue_indicator(count: int, threshold: int) -> OverdueIndicator:
    if count <= 0:
        return OverdueIndicator.OK
    if count < threshold:
        return OverdueIndicator.WARNING
    return OverdueIndicator.CRITICAL


def _counter(current: int, last: int) -> WeeklyCounterRead:
    return WeeklyCounterRead(current=current, last=last, diff=current - last)


def _in_window(value: datetime | None, start: datetime, end: datetime) -> bool:
    return value is not None and start <= ensure_utc(value) < end


class DashboardService:
    def __init__(self, *, identity: IdentityDirectory | None = None) -> None:
        self._identity = identity or SqlIdentityDirectory()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _caller(self, caller_id: str) -> Caller:
        return load_caller(self._identity, caller_id)

    def _visible_tasks(self, session: Session, caller: Caller) -> list[Task]:
        # Admins see every department; others only their home department.
        statement = select(Task)
        if not caller.is_admin:
            if caller.home_department is None:
                return []
            statement = statement.where(Task.department == caller.home_department)
        return list(session.exec(statement).all())

    def _visible_open_reminders(self, session: Session, caller: Caller) -> list[Reminder]:
        statement = select(Reminder).where(Reminder.status != ReminderStatus.DONE)
        if not caller.is_admin:
            if caller.home_department is None:
                return []
            statement = statement.where(Reminder.department == caller.home_department)
        return list(session.exec(statement).all())

    def weekly_stats(self, caller_id: str, *, now: datetime | None = None) -> WeeklyStatsRead:
        now = now or now_utc()
        current_start = week_start(now)
        last_start = current_start - timedelta(days=7)
        next_start = current_start + timedelta(days=7)
        with self._session() as session:
            rows = list(session.exec(select(Task).where(Task.assignee == caller_id)).all())

        created_current = sum(1 for row in rows if _in_window(row.created_at, current_start, next_start))
        created_last = sum(1 for row in rows if _in_window(row.created_at, last_start, current_start))
        completed_current = sum(
            1
            for row in rows
            if row.status == TaskStatus.DONE and _in_window(row.completed_at, current_start, next_start)
        )
        completed_last = sum(
            1
            for row in rows
            if row.status == TaskStatus.DONE and _in_window(row.completed_at, last_start, current_start)
        )
        return WeeklyStatsRead(
            week_start=current_start,
            created=_counter(created_current, created_last),
            completed=_counter(completed_current, completed_last),
        )

    def overdue_rollup(self, caller_id: str, *, now: datetime | None = None) -> list[AccountOverdueRead]:
        """Overdue task count and status colour for every account."""
        caller = self._caller(caller_id)
        now = now or now_utc()
        threshold = overdue_critical_threshold()
        with self._session() as session:
            accounts = list(session.exec(select(Account).order_by(Account.kind, Account.name)).all())
            tasks = self._visible_tasks(session, caller)

        counts: Counter[tuple[str, str]] = Counter(
            (str(row.attached_kind), row.attached_id)
            for row in tasks
            if row.attached_kind is not None
            and row.attached_id is not None
            and is_task_overdue(row.status, row.due_at, now)
        )
        result: list[AccountOverdueRead] = []
        for account in accounts:
            count = counts.get((str(account.kind), account.id), 0)
            result.append(
                AccountOverdueRead(
                    kind=account.kind,
                    id=account.id,
                    name=account.name,
                    overdue_tasks=count,
                    indicator=overdue_indicator(count, threshold),
                )
            )
        return result

    def workload(self, caller_id: str, *, now: datetime | None = None) -> list[WorkloadRead]:
        caller = self._caller(caller_id)
        if not caller.is_admin:
            logger.warning("%s denied workload view", caller.id)
            raise AuthorizationError("admin role required")
        now = now or now_utc()
        since = month_start(now)
        until = (since + timedelta(days=32)).replace(day=1)
        with self._session() as session:
            users = list(
                session.exec(
                    select(DirectoryUser)
                    .where(col(DirectoryUser.is_active).is_(True))
                    .order_by(DirectoryUser.username)
                ).all()
            )
            tasks = list(session.exec(select(Task)).all())
            open_reminder_links = session.exec(
                select(ReminderAssignee.user_id)
                .join(Reminder, col(Reminder.id) == col(ReminderAssignee.reminder_id))
                .where(Reminder.status != ReminderStatus.DONE)
            ).all()

        active: Counter[str] = Counter(row.assignee for row in tasks if row.status != TaskStatus.DONE)
        completed: Counter[str] = Counter(
            row.assignee
            for row in tasks
            if row.status == TaskStatus.DONE and _in_window(row.completed_at, since, until)
        )
        reminders: Counter[str] = Counter(open_reminder_links)
        return [
            WorkloadRead(
                user_id=user.id,
                username=user.username,
                home_department=user.home_department,
                active_tasks=active.get(user.id, 0),
                completed_tasks=completed.get(user.id, 0),
                active_reminders=reminders.get(user.id, 0),
            )
            for user in users
        ]

    def stats(self, caller_id: str, *, now: datetime | None = None) -> DashboardStatsRead:
        caller = self._caller(caller_id)
        now = now or now_utc()
        with self._session() as session:
            tasks = self._visible_tasks(session, caller)
            reminders = self._visible_open_reminders(session, caller)

        open_tasks = [row for row in tasks if row.status != TaskStatus.DONE]
        return DashboardStatsRead(
            open_tasks=len(open_tasks),
            overdue_tasks=sum(1 for row in open_tasks if is_task_overdue(row.status, row.due_at, now)),
            pending_reminders=len(reminders),
        )
