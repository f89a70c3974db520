from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlmodel import Session, SQLModel, create_engine, select

from taskflow import main as app_main
from taskflow.domain.models import (
    Account,
    AccountKind,
    AuditLog,
    DirectoryUser,
    DirectoryUserRole,
    EventRecord,
)
from taskflow.infra import audit, db, events
from taskflow.infra.auth import create_access_token

PAST = "2020-01-01T09:00:00Z"
FUTURE = "2999-01-01T09:00:00Z"


@pytest.fixture()
def task_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "tasks_test.db"
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
    monkeypatch.setenv("SEQUENCER_BACKEND", "db")
    monkeypatch.setenv("TASK_TRANSITION_POLICY", "permissive")
    _seed_directory(test_engine)
    client = TestClient(app_main.app)
    yield client
    client.close()


def _seed_directory(engine: object) -> None:
    with Session(engine) as session:  # type: ignore[arg-type]
        for user_id, department in (
            ("admin", "direction"),
            ("alice", "dev"),
            ("bob", "seo"),
            ("carol", None),
            ("dave", "dev"),
        ):
            session.add(DirectoryUser(id=user_id, username=user_id, home_department=department))
        session.commit()
        session.add(DirectoryUserRole(user_id="admin", role="admin"))
        session.add(Account(id="acc-1", kind=AccountKind.CUSTOMER, name="Acme"))
        session.commit()


def _auth_header(user_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id=user_id)}"}


def _create_task(client: TestClient, user_id: str, **fields: object) -> dict[str, object]:
    payload: dict[str, object] = {"title": "Prepare quarterly report", **fields}
    response = client.post("/api/tasks", json=payload, headers=_auth_header(user_id))
    assert response.status_code == 201, response.text
    return response.json()


def _patch(client: TestClient, user_id: str, task_id: object, payload: dict[str, object]):
    return client.patch(f"/api/tasks/{task_id}", json=payload, headers=_auth_header(user_id))


def test_requests_without_token_are_rejected(task_client: TestClient) -> None:
    assert task_client.get("/api/tasks/mine").status_code == 401
    response = task_client.get("/api/tasks/mine", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


def test_create_task_defaults_and_increasing_order(task_client: TestClient) -> None:
    first = _create_task(task_client, "alice")
    assert first["assignee"] == "alice"
    assert first["created_by"] == "alice"
    assert first["department"] == "dev"
    assert first["status"] == "planned"
    assert first["effective_status"] == "planned"
    assert first["review_status"] == "none"
    assert first["priority"] == "medium"
    assert first["display_order"] == 1

    second = _create_task(task_client, "alice", title="Second")
    assert second["display_order"] == 2
    other_creator = _create_task(task_client, "bob")
    assert other_creator["display_order"] == 1


def test_department_resolution_on_create(task_client: TestClient) -> None:
    explicit = _create_task(task_client, "alice", assignee="bob", department="com")
    assert explicit["department"] == "com"
    from_assignee = _create_task(task_client, "alice", assignee="bob")
    assert from_assignee["department"] == "seo"
    from_creator = _create_task(task_client, "alice", assignee="carol")
    assert from_creator["department"] == "dev"
    global_item = _create_task(task_client, "carol")
    assert global_item["department"] is None


def test_create_task_validation_errors(task_client: TestClient) -> None:
    response = task_client.post(
        "/api/tasks",
        json={"title": "  ", "department": "marketing", "assignee": "ghost"},
        headers=_auth_header("alice"),
    )
    assert response.status_code == 422
    errors = response.json()["detail"]["errors"]
    assert set(errors) == {"title", "department", "assignee"}

    response = task_client.post(
        "/api/tasks",
        json={"title": "Chase invoice", "status": "overdue"},
        headers=_auth_header("alice"),
    )
    assert response.status_code == 422
    assert "status" in response.json()["detail"]["errors"]


def test_attachment_must_exist_and_is_immutable(task_client: TestClient) -> None:
    response = task_client.post(
        "/api/tasks",
        json={"title": "Call back", "attached_to": {"kind": "prospect", "id": "missing"}},
        headers=_auth_header("alice"),
    )
    assert response.status_code == 404

    task = _create_task(task_client, "alice", attached_to={"kind": "customer", "id": "acc-1"})
    assert task["attached_to"] == {"kind": "customer", "id": "acc-1"}

    response = _patch(task_client, "alice", task["id"], {"attached_to": {"kind": "prospect", "id": "acc-1"}})
    assert response.status_code == 422
    assert "attached_to" in response.json()["detail"]["errors"]

    response = _patch(
        task_client,
        "alice",
        task["id"],
        {"attached_to": {"kind": "customer", "id": "acc-1"}, "title": "Call back today"},
    )
    assert response.status_code == 200
    assert response.json()["title"] == "Call back today"


def test_status_transitions_under_permissive_policy(task_client: TestClient) -> None:
    task = _create_task(task_client, "alice")
    response = _patch(task_client, "alice", task["id"], {"status": "done"})
    assert response.status_code == 200
    assert response.json()["status"] == "done"
    assert response.json()["completed_at"] is not None

    response = _patch(task_client, "alice", task["id"], {"status": "planned"})
    assert response.status_code == 200
    assert response.json()["completed_at"] is None

    response = _patch(task_client, "alice", task["id"], {"status": "overdue"})
    assert response.status_code == 422
    assert "status" in response.json()["detail"]["errors"]


def test_strict_policy_rejects_skipped_steps(task_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TASK_TRANSITION_POLICY", "strict")
    task = _create_task(task_client, "alice")
    response = _patch(task_client, "alice", task["id"], {"status": "done"})
    assert response.status_code == 422
    assert _patch(task_client, "alice", task["id"], {"status": "in_progress"}).status_code == 200
    assert _patch(task_client, "alice", task["id"], {"status": "done"}).status_code == 200


def test_only_creator_assignee_or_admin_may_mutate(task_client: TestClient) -> None:
    task = _create_task(task_client, "alice", assignee="dave")

    assert _patch(task_client, "bob", task["id"], {"title": "Hijack"}).status_code == 403
    assert task_client.delete(f"/api/tasks/{task['id']}", headers=_auth_header("bob")).status_code == 403
    assert _patch(task_client, "dave", task["id"], {"status": "in_progress"}).status_code == 200
    assert _patch(task_client, "admin", task["id"], {"priority": "high"}).status_code == 200

    response = task_client.delete(f"/api/tasks/{task['id']}", headers=_auth_header("admin"))
    assert response.status_code == 204
    response = task_client.get(f"/api/tasks/{task['id']}", headers=_auth_header("alice"))
    assert response.status_code == 404


def test_reassignment_recomputes_department(task_client: TestClient) -> None:
    task = _create_task(task_client, "alice")
    assert task["department"] == "dev"

    response = _patch(task_client, "alice", task["id"], {"assignee": "bob"})
    assert response.status_code == 200
    assert response.json()["department"] == "seo"

    # carol has no home department; the creator's department takes over.
    response = _patch(task_client, "alice", task["id"], {"assignee": "carol"})
    assert response.json()["department"] == "dev"

    response = _patch(task_client, "alice", task["id"], {"department": None})
    assert response.json()["department"] is None

    response = _patch(task_client, "alice", task["id"], {"department": "nowhere"})
    assert response.status_code == 422


def test_reassignment_to_user_without_department_keeps_department(task_client: TestClient) -> None:
    task = _create_task(task_client, "carol", assignee="bob")
    assert task["department"] == "seo"
    response = _patch(task_client, "carol", task["id"], {"assignee": "carol"})
    assert response.status_code == 200
    assert response.json()["department"] == "seo"


def test_review_decision_records_approver(task_client: TestClient) -> None:
    task = _create_task(task_client, "alice", assignee="bob")

    response = _patch(task_client, "admin", task["id"], {"review_status": "approved", "review_comment": "ok"})
    assert response.status_code == 200
    body = response.json()
    assert body["review_status"] == "approved"
    assert body["approver"] == "admin"
    assert body["review_comment"] == "ok"

    response = _patch(task_client, "bob", task["id"], {"review_status": "pending"})
    assert response.json()["approver"] is None

    with Session(db.engine) as session:
        changes = session.exec(
            select(EventRecord).where(EventRecord.event_type == "task.review_changed")
        ).all()
    assert len(changes) == 2


def test_department_listing_filters_and_visibility(task_client: TestClient) -> None:
    t1 = _create_task(task_client, "alice", title="Alpha", priority="high")
    _create_task(task_client, "alice", title="Beta", priority="low")
    t3 = _create_task(task_client, "alice", title="Gamma", priority="high")
    assert _patch(task_client, "alice", t3["id"], {"status": "done"}).status_code == 200

    response = task_client.get(
        "/api/tasks/departments/dev",
        params={"status": "planned", "priority": "high"},
        headers=_auth_header("alice"),
    )
    assert response.status_code == 200
    assert [item["id"] for item in response.json()] == [t1["id"]]

    response = task_client.get("/api/tasks/departments/dev", headers=_auth_header("alice"))
    assert [item["title"] for item in response.json()] == ["Alpha", "Beta", "Gamma"]

    response = task_client.get("/api/tasks/departments/dev", headers=_auth_header("bob"))
    assert response.json() == []
    response = task_client.get("/api/tasks/departments/dev", headers=_auth_header("admin"))
    assert len(response.json()) == 3


def test_department_listing_rejects_unknown_department(task_client: TestClient) -> None:
    response = task_client.get("/api/tasks/departments/nowhere", headers=_auth_header("alice"))
    assert response.status_code == 422
    assert "department" in response.json()["detail"]["errors"]


def test_mine_is_union_of_created_and_assigned(task_client: TestClient) -> None:
    for_bob = _create_task(task_client, "alice", assignee="bob")
    by_bob = _create_task(task_client, "bob", assignee="carol")
    _create_task(task_client, "dave")

    def ids(user_id: str) -> set[str]:
        response = task_client.get("/api/tasks/mine", headers=_auth_header(user_id))
        assert response.status_code == 200
        return {item["id"] for item in response.json()}

    assert ids("bob") == {for_bob["id"], by_bob["id"]}
    assert ids("carol") == {by_bob["id"]}
    assert ids("alice") == {for_bob["id"]}

    response = task_client.get("/api/tasks/mine/grouped", headers=_auth_header("bob"))
    groups = response.json()
    assert [group["department"] for group in groups] == ["seo"]
    assert len(groups[0]["items"]) == 2


def test_global_view_and_admin_user_view(task_client: TestClient) -> None:
    global_task = _create_task(task_client, "carol")

    response = task_client.get("/api/tasks/global", headers=_auth_header("carol"))
    assert [item["id"] for item in response.json()] == [global_task["id"]]
    response = task_client.get("/api/tasks/global", headers=_auth_header("alice"))
    assert response.json() == []
    response = task_client.get("/api/tasks/global", headers=_auth_header("admin"))
    assert [item["id"] for item in response.json()] == [global_task["id"]]

    assert task_client.get("/api/tasks/users/carol", headers=_auth_header("alice")).status_code == 403
    response = task_client.get("/api/tasks/users/carol", headers=_auth_header("admin"))
    assert response.status_code == 200
    assert [item["id"] for item in response.json()] == [global_task["id"]]


def test_board_columns_use_effective_status(task_client: TestClient) -> None:
    late = _create_task(task_client, "alice", title="Late", due_at=PAST, status="in_progress")
    upcoming = _create_task(task_client, "alice", title="Upcoming", due_at=FUTURE)
    finished = _create_task(task_client, "alice", title="Finished", due_at=PAST, status="done")
    assert late["is_overdue"] is True
    assert late["status"] == "in_progress"

    response = task_client.get("/api/tasks/board", headers=_auth_header("alice"))
    assert response.status_code == 200
    board = response.json()
    assert [item["id"] for item in board["overdue"]] == [late["id"]]
    assert [item["id"] for item in board["planned"]] == [upcoming["id"]]
    assert [item["id"] for item in board["done"]] == [finished["id"]]
    assert board["in_progress"] == []


def test_sweep_marks_overdue_once_and_emits_events(task_client: TestClient) -> None:
    late = _create_task(task_client, "alice", assignee="bob", due_at=PAST)
    _create_task(task_client, "alice", due_at=FUTURE)
    _create_task(task_client, "alice", due_at=PAST, status="done")

    assert task_client.post("/api/tasks:sweep-overdue", headers=_auth_header("alice")).status_code == 403

    response = task_client.post("/api/tasks:sweep-overdue", headers=_auth_header("admin"))
    assert response.status_code == 200
    assert response.json() == {"marked": 1, "task_ids": [late["id"]]}

    response = task_client.post("/api/tasks:sweep-overdue", headers=_auth_header("admin"))
    assert response.json()["marked"] == 0

    stored = task_client.get(f"/api/tasks/{late['id']}", headers=_auth_header("bob")).json()
    assert stored["status"] == "overdue"

    with Session(db.engine) as session:
        overdue_events = session.exec(
            select(EventRecord).where(EventRecord.event_type == "task.overdue")
        ).all()
    assert len(overdue_events) == 1
    assert overdue_events[0].payload["recipient_id"] == "bob"

    # Moving the due date forward clears the stored overdue mark.
    response = _patch(task_client, "bob", late["id"], {"due_at": FUTURE})
    assert response.status_code == 200
    assert response.json()["status"] == "planned"


def test_writes_are_audited(task_client: TestClient) -> None:
    task = _create_task(task_client, "alice")
    _patch(task_client, "bob", task["id"], {"title": "nope"})

    with Session(db.engine) as session:
        rows = session.exec(select(AuditLog)).all()
    by_action = {row.action: row for row in rows}
    assert by_action["task.create"].actor_id == "alice"
    assert by_action["task.create"].resource == f"task:{task['id']}"
    assert by_action["task.update"].status_code == 403
    assert by_action["task.update"].detail["result"]["outcome"] == "denied"
