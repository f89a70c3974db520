from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status

from taskflow.api.deps import get_current_claims, require_admin
from taskflow.domain.errors import AuthorizationError, NotFoundError, ValidationError
from taskflow.domain.models import (
    AttachmentRef,
    OverdueSweepRead,
    Priority,
    Task,
    TaskBoardRead,
    TaskCreate,
    TaskGroupRead,
    TaskRead,
    TaskUpdate,
    WeeklyStatsRead,
    now_utc,
)
from taskflow.domain.state_machine import TaskStatus, effective_task_status
from taskflow.infra.audit import set_audit_context
from taskflow.services.dashboard_service import DashboardService
from taskflow.services.task_service import TaskService

router = APIRouter()


def get_task_service() -> TaskService:
    return TaskService()


def get_dashboard_service() -> DashboardService:
    return DashboardService()


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[TaskService, Depends(get_task_service)]
Stats = Annotated[DashboardService, Depends(get_dashboard_service)]


def _task_read(row: Task, now: datetime) -> TaskRead:
    payload = row.model_dump()
    effective = effective_task_status(row.status, row.due_at, now)
    payload["effective_status"] = effective
    payload["is_overdue"] = effective == TaskStatus.OVERDUE
    if row.attached_kind is not None and row.attached_id is not None:
        payload["attached_to"] = AttachmentRef(kind=row.attached_kind, id=row.attached_id)
    return TaskRead.model_validate(payload)


def _task_list(rows: list[Task]) -> list[TaskRead]:
    now = now_utc()
    return [_task_read(row, now) for row in rows]


def _handle_error(exc: Exception) -> None:
    if isinstance(exc, ValidationError):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(exc), "errors": exc.errors},
        ) from exc
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, AuthorizationError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    raise exc


@router.post("/tasks", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def create_task(payload: TaskCreate, request: Request, claims: Claims, service: Service) -> TaskRead:
    set_audit_context(
        request,
        action="task.create",
        detail={"what": {"title": payload.title, "department": payload.department}},
    )
    try:
        row = service.create_task(claims["sub"], payload)
    except (ValidationError, NotFoundError, AuthorizationError) as exc:
        _handle_error(exc)
        raise
    set_audit_context(request, resource=f"task:{row.id}")
    return _task_read(row, now_utc())


@router.post(
    "/tasks:sweep-overdue",
    response_model=OverdueSweepRead,
    dependencies=[Depends(require_admin)],
)
def sweep_overdue(request: Request, claims: Claims, service: Service) -> OverdueSweepRead:
    set_audit_context(request, action="task.sweep_overdue", resource="tasks")
    try:
        rows = service.sweep_overdue(claims["sub"])
    except AuthorizationError as exc:
        _handle_error(exc)
        raise
    set_audit_context(request, detail={"result": {"marked": len(rows)}})
    return OverdueSweepRead(marked=len(rows), task_ids=[row.id for row in rows])


@router.get("/tasks/mine", response_model=list[TaskRead])
def list_my_tasks(claims: Claims, service: Service) -> list[TaskRead]:
    return _task_list(service.list_mine(claims["sub"]))


@router.get("/tasks/mine/grouped", response_model=list[TaskGroupRead])
def list_my_tasks_grouped(claims: Claims, service: Service) -> list[TaskGroupRead]:
    now = now_utc()
    return [
        TaskGroupRead(department=department, items=[_task_read(row, now) for row in rows])
        for department, rows in service.list_mine_grouped(claims["sub"])
    ]


@router.get("/tasks/board", response_model=TaskBoardRead)
def my_board(claims: Claims, service: Service) -> TaskBoardRead:
    now = now_utc()
    columns = service.board(claims["sub"], now=now)
    return TaskBoardRead(
        **{str(column): [_task_read(row, now) for row in rows] for column, rows in columns.items()}
    )


@router.get("/tasks/global", response_model=list[TaskRead])
def list_global_tasks(claims: Claims, service: Service) -> list[TaskRead]:
    return _task_list(service.list_global(claims["sub"]))


@router.get("/tasks/stats/weekly", response_model=WeeklyStatsRead)
def weekly_stats(claims: Claims, stats: Stats) -> WeeklyStatsRead:
    return stats.weekly_stats(claims["sub"])


@router.get("/tasks/departments/{department}", response_model=list[TaskRead])
def list_department_tasks(
    department: str,
    claims: Claims,
    service: Service,
    status_filter: Annotated[TaskStatus | None, Query(alias="status")] = None,
    priority: Priority | None = None,
) -> list[TaskRead]:
    try:
        rows = service.list_by_department(claims["sub"], department, status=status_filter, priority=priority)
    except ValidationError as exc:
        _handle_error(exc)
        raise
    return _task_list(rows)


@router.get("/tasks/users/{user_id}", response_model=list[TaskRead])
def list_user_tasks(user_id: str, claims: Claims, service: Service) -> list[TaskRead]:
    try:
        rows = service.list_for_user(claims["sub"], user_id)
    except AuthorizationError as exc:
        _handle_error(exc)
        raise
    return _task_list(rows)


@router.get("/tasks/{task_id}", response_model=TaskRead)
def get_task(task_id: str, claims: Claims, service: Service) -> TaskRead:
    try:
        row = service.get_task(claims["sub"], task_id)
    except NotFoundError as exc:
        _handle_error(exc)
        raise
    return _task_read(row, now_utc())


@router.patch("/tasks/{task_id}", response_model=TaskRead)
def update_task(
    task_id: str,
    payload: TaskUpdate,
    request: Request,
    claims: Claims,
    service: Service,
) -> TaskRead:
    set_audit_context(
        request,
        action="task.update",
        resource=f"task:{task_id}",
        detail={"what": {"fields": sorted(payload.model_fields_set)}},
    )
    try:
        row = service.update_task(claims["sub"], task_id, payload)
    except (ValidationError, NotFoundError, AuthorizationError) as exc:
        _handle_error(exc)
        raise
    return _task_read(row, now_utc())


@router.delete("/tasks/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_task(task_id: str, request: Request, claims: Claims, service: Service) -> Response:
    set_audit_context(request, action="task.delete", resource=f"task:{task_id}")
    try:
        service.delete_task(claims["sub"], task_id)
    except (NotFoundError, AuthorizationError) as exc:
        _handle_error(exc)
        raise
    return Response(status_code=status.HTTP_204_NO_CONTENT)
