from __future__ import annotations

from collections.abc import Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlmodel import Session, SQLModel, create_engine

from taskflow import main as app_main
from taskflow.domain.errors import AuthorizationError
from taskflow.domain.models import (
    Account,
    AccountKind,
    DirectoryUser,
    DirectoryUserRole,
    OverdueIndicator,
    Reminder,
    ReminderAssignee,
    Task,
)
from taskflow.domain.state_machine import ReminderStatus, TaskStatus
from taskflow.infra import audit, db, events
from taskflow.infra.auth import create_access_token
from taskflow.services.dashboard_service import DashboardService, overdue_indicator, week_start

# A Wednesday; the current week starts Monday 2024-03-11.
NOW = datetime(2024, 3, 13, 12, 0, tzinfo=UTC)


@pytest.fixture()
def dashboard_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "dashboard_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    monkeypatch.setattr(audit, "engine", test_engine)
    monkeypatch.setattr(events, "engine", test_engine)
    monkeypatch.setenv("OVERDUE_CRITICAL_THRESHOLD", "3")
    with Session(test_engine) as session:
        for user_id, department in (
            ("admin", "direction"),
            ("alice", "dev"),
            ("bob", "seo"),
            ("carol", None),
        ):
            session.add(DirectoryUser(id=user_id, username=user_id, home_department=department))
        session.commit()
        session.add(DirectoryUserRole(user_id="admin", role="admin"))
        session.add(Account(id="acc-1", kind=AccountKind.CUSTOMER, name="Acme"))
        session.add(Account(id="acc-2", kind=AccountKind.PROSPECT, name="Beta Corp"))
        session.commit()
    client = TestClient(app_main.app)
    yield client
    client.close()


def _auth_header(user_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id=user_id)}"}


def _add(*rows: Any) -> None:
    with Session(db.engine, expire_on_commit=False) as session:
        for row in rows:
            session.add(row)
        session.commit()


def _task(title: str, **fields: Any) -> Task:
    fields.setdefault("created_by", "alice")
    fields.setdefault("assignee", "alice")
    fields.setdefault("department", "dev")
    return Task(title=title, **fields)


def _by_id(rows: list[Any]) -> dict[str, Any]:
    return {row.id: row for row in rows}


def test_week_start_is_monday_utc() -> None:
    assert week_start(NOW) == datetime(2024, 3, 11, tzinfo=UTC)
    assert week_start(datetime(2024, 3, 11, 0, 0, tzinfo=UTC)) == datetime(2024, 3, 11, tzinfo=UTC)
    assert week_start(datetime(2024, 3, 17, 23, 59)) == datetime(2024, 3, 11, tzinfo=UTC)


def test_overdue_indicator_thresholds() -> None:
    assert overdue_indicator(0, 3) == OverdueIndicator.OK
    assert overdue_indicator(1, 3) == OverdueIndicator.WARNING
    assert overdue_indicator(2, 3) == OverdueIndicator.WARNING
    assert overdue_indicator(3, 3) == OverdueIndicator.CRITICAL


def test_weekly_stats_counts_assigned_tasks(dashboard_client: TestClient) -> None:
    _add(
        _task("this week, done", created_at=datetime(2024, 3, 12, tzinfo=UTC),
              status=TaskStatus.DONE, completed_at=datetime(2024, 3, 12, 15, tzinfo=UTC)),
        _task("last week, open", created_at=datetime(2024, 3, 5, tzinfo=UTC)),
        _task("last week, done now", created_at=datetime(2024, 3, 6, tzinfo=UTC),
              status=TaskStatus.DONE, completed_at=datetime(2024, 3, 13, 10, tzinfo=UTC)),
        _task("older, done last week", created_at=datetime(2024, 3, 1, tzinfo=UTC),
              status=TaskStatus.DONE, completed_at=datetime(2024, 3, 7, tzinfo=UTC)),
        _task("someone else's", assignee="bob", created_at=datetime(2024, 3, 12, tzinfo=UTC)),
    )

    stats = DashboardService().weekly_stats("alice", now=NOW)
    assert stats.week_start == datetime(2024, 3, 11, tzinfo=UTC)
    assert (stats.created.current, stats.created.last, stats.created.diff) == (1, 2, -1)
    assert (stats.completed.current, stats.completed.last, stats.completed.diff) == (2, 1, 1)

    response = dashboard_client.get("/api/tasks/stats/weekly", headers=_auth_header("alice"))
    assert response.status_code == 200
    assert set(response.json()["created"]) == {"current", "last", "diff"}


def test_overdue_rollup_scoped_by_department(dashboard_client: TestClient) -> None:
    past = NOW - timedelta(days=2)
    future = NOW + timedelta(days=2)
    working = _task("in progress, late", status=TaskStatus.IN_PROGRESS, due_at=past,
                    attached_kind=AccountKind.CUSTOMER, attached_id="acc-1")
    _add(
        working,
        _task("planned, late", due_at=past, attached_kind=AccountKind.CUSTOMER, attached_id="acc-1"),
        _task("planned, on time", due_at=future, attached_kind=AccountKind.CUSTOMER, attached_id="acc-1"),
        _task("done, late", status=TaskStatus.DONE, due_at=past,
              attached_kind=AccountKind.CUSTOMER, attached_id="acc-1"),
        _task("seo, late", department="seo", assignee="bob", due_at=past,
              attached_kind=AccountKind.CUSTOMER, attached_id="acc-1"),
    )
    service = DashboardService()

    admin_view = _by_id(service.overdue_rollup("admin", now=NOW))
    assert admin_view["acc-1"].overdue_tasks == 3
    assert admin_view["acc-1"].indicator == OverdueIndicator.CRITICAL
    assert admin_view["acc-2"].overdue_tasks == 0
    assert admin_view["acc-2"].indicator == OverdueIndicator.OK

    alice_view = _by_id(service.overdue_rollup("alice", now=NOW))
    assert alice_view["acc-1"].overdue_tasks == 2
    assert alice_view["acc-1"].indicator == OverdueIndicator.WARNING

    carol_view = _by_id(service.overdue_rollup("carol", now=NOW))
    assert carol_view["acc-1"].overdue_tasks == 0

    response = dashboard_client.patch(
        f"/api/tasks/{working.id}",
        json={"status": "done"},
        headers=_auth_header("alice"),
    )
    assert response.status_code == 200
    assert response.json()["status"] == "done"

    admin_view = _by_id(service.overdue_rollup("admin", now=NOW))
    assert admin_view["acc-1"].overdue_tasks == 2
    assert admin_view["acc-1"].indicator == OverdueIndicator.WARNING

    response = dashboard_client.get("/api/dashboard/overdue-rollup", headers=_auth_header("admin"))
    assert response.status_code == 200
    assert {item["id"] for item in response.json()} == {"acc-1", "acc-2"}


def test_workload_is_admin_only(dashboard_client: TestClient) -> None:
    reminder_open = Reminder(title="call", created_by="bob", display_order=1)
    reminder_done = Reminder(title="mail", created_by="bob", display_order=2, status=ReminderStatus.DONE)
    _add(
        _task("active one"),
        _task("active two", status=TaskStatus.IN_PROGRESS),
        _task("done this month", status=TaskStatus.DONE, completed_at=datetime(2024, 3, 2, tzinfo=UTC)),
        _task("done last month", status=TaskStatus.DONE, completed_at=datetime(2024, 2, 20, tzinfo=UTC)),
        reminder_open,
        reminder_done,
    )
    _add(
        ReminderAssignee(reminder_id=reminder_open.id, user_id="alice", position=0),
        ReminderAssignee(reminder_id=reminder_done.id, user_id="alice", position=0),
    )
    service = DashboardService()

    with pytest.raises(AuthorizationError):
        service.workload("alice", now=NOW)

    rows = {row.user_id: row for row in service.workload("admin", now=NOW)}
    assert set(rows) == {"admin", "alice", "bob", "carol"}
    assert rows["alice"].active_tasks == 2
    assert rows["alice"].completed_tasks == 1
    assert rows["alice"].active_reminders == 1
    assert rows["bob"].active_tasks == 0

    assert dashboard_client.get("/api/dashboard/workload", headers=_auth_header("alice")).status_code == 403
    assert dashboard_client.get("/api/dashboard/workload", headers=_auth_header("admin")).status_code == 200


def test_counters_follow_caller_scope(dashboard_client: TestClient) -> None:
    past = NOW - timedelta(days=1)
    _add(
        _task("dev open"),
        _task("dev late", due_at=past),
        _task("dev done", status=TaskStatus.DONE),
        _task("seo open", department="seo", assignee="bob"),
        Reminder(title="dev reminder", created_by="alice", department="dev", display_order=1),
        Reminder(title="seo reminder", created_by="bob", department="seo", display_order=1),
    )
    service = DashboardService()

    admin = service.stats("admin", now=NOW)
    assert (admin.open_tasks, admin.overdue_tasks, admin.pending_reminders) == (3, 1, 2)
    alice = service.stats("alice", now=NOW)
    assert (alice.open_tasks, alice.overdue_tasks, alice.pending_reminders) == (2, 1, 1)
    carol = service.stats("carol", now=NOW)
    assert (carol.open_tasks, carol.overdue_tasks, carol.pending_reminders) == (0, 0, 0)

    response = dashboard_client.get("/api/dashboard/stats", headers=_auth_header("bob"))
    assert response.status_code == 200
    assert response.json() == {"open_tasks": 1, "overdue_tasks": 0, "pending_reminders": 1}
