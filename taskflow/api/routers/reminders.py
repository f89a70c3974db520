from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status

from taskflow.api.deps import get_current_claims
from taskflow.domain.errors import AuthorizationError, NotFoundError, ValidationError
from taskflow.domain.models import (
    AttachmentRef,
    Priority,
    Reminder,
    ReminderAssigneesSyncRequest,
    ReminderCreate,
    ReminderGroupRead,
    ReminderPostponeRequest,
    ReminderRead,
    ReminderUpdate,
)
from taskflow.domain.state_machine import ReminderStatus
from taskflow.infra.audit import set_audit_context
from taskflow.services.reminder_service import ReminderService, ReminderWithAssignees

router = APIRouter()


def get_reminder_service() -> ReminderService:
    return ReminderService()


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[ReminderService, Depends(get_reminder_service)]


def _reminder_read(row: Reminder, assignees: list[str]) -> ReminderRead:
    payload = row.model_dump()
    payload["done"] = row.done
    payload["assignees"] = assignees
    if row.attached_kind is not None and row.attached_id is not None:
        payload["attached_to"] = AttachmentRef(kind=row.attached_kind, id=row.attached_id)
    return ReminderRead.model_validate(payload)


def _reminder_list(items: list[ReminderWithAssignees]) -> list[ReminderRead]:
    return [_reminder_read(row, assignees) for row, assignees in items]


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


@router.post("", response_model=ReminderRead, status_code=status.HTTP_201_CREATED)
def create_reminder(
    payload: ReminderCreate,
    request: Request,
    claims: Claims,
    service: Service,
) -> ReminderRead:
    set_audit_context(
        request,
        action="reminder.create",
        detail={"what": {"title": payload.title, "assignees": payload.assignees}},
    )
    try:
        row, assignees = service.create_reminder(claims["sub"], payload)
    except (ValidationError, NotFoundError) as exc:
        _handle_error(exc)
        raise
    set_audit_context(request, resource=f"reminder:{row.id}")
    return _reminder_read(row, assignees)


@router.get("/mine", response_model=list[ReminderRead])
def list_my_reminders(claims: Claims, service: Service) -> list[ReminderRead]:
    return _reminder_list(service.list_mine(claims["sub"]))


@router.get("/mine/grouped", response_model=list[ReminderGroupRead])
def list_my_reminders_grouped(claims: Claims, service: Service) -> list[ReminderGroupRead]:
    return [
        ReminderGroupRead(department=department, items=_reminder_list(items))
        for department, items in service.list_mine_grouped(claims["sub"])
    ]


@router.get("/global", response_model=list[ReminderRead])
def list_global_reminders(claims: Claims, service: Service) -> list[ReminderRead]:
    return _reminder_list(service.list_global(claims["sub"]))


@router.get("/departments/{department}", response_model=list[ReminderRead])
def list_department_reminders(
    department: str,
    claims: Claims,
    service: Service,
    status_filter: Annotated[ReminderStatus | None, Query(alias="status")] = None,
    priority: Priority | None = None,
) -> list[ReminderRead]:
    try:
        items = service.list_by_department(claims["sub"], department, status=status_filter, priority=priority)
    except ValidationError as exc:
        _handle_error(exc)
        raise
    return _reminder_list(items)


@router.get("/{reminder_id}", response_model=ReminderRead)
def get_reminder(reminder_id: str, claims: Claims, service: Service) -> ReminderRead:
    try:
        row, assignees = service.get_reminder(claims["sub"], reminder_id)
    except NotFoundError as exc:
        _handle_error(exc)
        raise
    return _reminder_read(row, assignees)


@router.patch("/{reminder_id}", response_model=ReminderRead)
def update_reminder(
    reminder_id: str,
    payload: ReminderUpdate,
    request: Request,
    claims: Claims,
    service: Service,
) -> ReminderRead:
    set_audit_context(
        request,
        action="reminder.update",
        resource=f"reminder:{reminder_id}",
        detail={"what": {"fields": sorted(payload.model_fields_set)}},
    )
    try:
        row, assignees = service.update_reminder(claims["sub"], reminder_id, payload)
    except (ValidationError, NotFoundError, AuthorizationError) as exc:
        _handle_error(exc)
        raise
    return _reminder_read(row, assignees)


@router.post("/{reminder_id}/postpone", response_model=ReminderRead)
def postpone_reminder(
    reminder_id: str,
    payload: ReminderPostponeRequest,
    request: Request,
    claims: Claims,
    service: Service,
) -> ReminderRead:
    set_audit_context(
        request,
        action="reminder.postpone",
        resource=f"reminder:{reminder_id}",
        detail={"what": {"days": payload.days}},
    )
    try:
        row, assignees = service.postpone(claims["sub"], reminder_id, payload.days)
    except (ValidationError, NotFoundError, AuthorizationError) as exc:
        _handle_error(exc)
        raise
    return _reminder_read(row, assignees)


@router.put("/{reminder_id}/assignees", response_model=ReminderRead)
def sync_reminder_assignees(
    reminder_id: str,
    payload: ReminderAssigneesSyncRequest,
    request: Request,
    claims: Claims,
    service: Service,
) -> ReminderRead:
    set_audit_context(
        request,
        action="reminder.assignees.sync",
        resource=f"reminder:{reminder_id}",
        detail={"what": {"user_ids": payload.user_ids}},
    )
    try:
        row, assignees = service.sync_assignees(claims["sub"], reminder_id, payload.user_ids)
    except (ValidationError, NotFoundError, AuthorizationError) as exc:
        _handle_error(exc)
        raise
    return _reminder_read(row, assignees)


@router.delete("/{reminder_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_reminder(reminder_id: str, request: Request, claims: Claims, service: Service) -> Response:
    set_audit_context(request, action="reminder.delete", resource=f"reminder:{reminder_id}")
    try:
        service.delete_reminder(claims["sub"], reminder_id)
    except (NotFoundError, AuthorizationError) as exc:
        _handle_error(exc)
        raise
    return Response(status_code=status.HTTP_204_NO_CONTENT)
