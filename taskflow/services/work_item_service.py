from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import TypeVar

from sqlmodel import Session

from taskflow.adapters.base import AccountDirectory, IdentityDirectory
from taskflow.adapters.sql_directory import SqlAccountDirectory, SqlIdentityDirectory
from taskflow.domain.errors import AuthorizationError, NotFoundError, ValidationError
from taskflow.domain.models import AttachmentRef, WorkItemBase
from taskflow.domain.permissions import ROLE_ADMIN, Caller
from taskflow.domain.routing import resolve_department
from taskflow.domain.state_machine import TransitionPolicy, get_transition_policy
from taskflow.infra.db import get_engine
from taskflow.infra.logging_setup import get_logger
from taskflow.infra.settings import known_departments, transition_policy_name
from taskflow.services.sequencer import OrderAllocator, get_order_allocator

logger = get_logger(__name__)

ItemT = TypeVar("ItemT", bound=WorkItemBase)

TITLE_MAX_LENGTH = 255


def load_caller(identity: IdentityDirectory, caller_id: str) -> Caller:
    # Roles are read on every call; a revoked admin loses the override immediately.
    return Caller(
        id=caller_id,
        is_admin=identity.user_has_role(caller_id, ROLE_ADMIN),
        home_department=identity.user_home_department(caller_id),
    )


def group_by_department(rows: Iterable[ItemT]) -> list[tuple[str | None, list[ItemT]]]:
    """Group already ordered rows by department, named departments first, global last."""
    groups: dict[str | None, list[ItemT]] = {}
    for row in rows:
        groups.setdefault(row.department, []).append(row)
    named = sorted(key for key in groups if key is not None)
    ordered: list[tuple[str | None, list[ItemT]]] = [(key, groups[key]) for key in named]
    if None in groups:
        ordered.append((None, groups[None]))
    return ordered


class WorkItemService:
    item_label = "work item"

    def __init__(
        self,
        *,
        identity: IdentityDirectory | None = None,
        accounts: AccountDirectory | None = None,
        allocator: OrderAllocator | None = None,
    ) -> None:
        self._identity = identity or SqlIdentityDirectory()
        self._accounts = accounts or SqlAccountDirectory()
        self._allocator = allocator

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _order_allocator(self) -> OrderAllocator:
        return self._allocator or get_order_allocator()

    def _policy(self) -> TransitionPolicy:
        return get_transition_policy(transition_policy_name())

    def _caller(self, caller_id: str) -> Caller:
        return load_caller(self._identity, caller_id)

    def _deny(self, caller: Caller, action: str, item_id: str) -> AuthorizationError:
        logger.warning("%s %s on %s %s not permitted", caller.id, action, self.item_label, item_id)
        return AuthorizationError(f"not permitted to {action} this {self.item_label}")

    def _not_found(self) -> NotFoundError:
        return NotFoundError(f"{self.item_label} not found")

    @staticmethod
    def _check_title(value: str | None, errors: dict[str, str]) -> str | None:
        if value is None or not value.strip():
            errors["title"] = "title is required"
            return None
        cleaned = value.strip()
        if len(cleaned) > TITLE_MAX_LENGTH:
            errors["title"] = f"title must be at most {TITLE_MAX_LENGTH} characters"
            return None
        return cleaned

    @staticmethod
    def _check_department(value: str | None, errors: dict[str, str]) -> str | None:
        if value is None or not value.strip():
            return None
        cleaned = value.strip()
        if cleaned not in known_departments():
            errors["department"] = f"unknown department: {cleaned}"
            return None
        return cleaned

    def _listed_department(self, value: str) -> str:
        errors: dict[str, str] = {}
        department = self._check_department(value, errors)
        if department is None:
            errors.setdefault("department", "department is required")
            raise ValidationError("invalid department", errors)
        return department

    def _check_users(self, field: str, user_ids: Sequence[str], errors: dict[str, str]) -> None:
        unknown = [user_id for user_id in user_ids if not self._identity.user_exists(user_id)]
        if unknown:
            errors[field] = f"unknown user: {', '.join(unknown)}"

    def _ensure_attachment_exists(self, ref: AttachmentRef | None) -> None:
        if ref is None:
            return
        if not self._accounts.account_exists(ref.kind, ref.id):
            raise NotFoundError(f"attached {ref.kind} not found")

    @staticmethod
    def _check_attachment_unchanged(
        row: WorkItemBase,
        ref: AttachmentRef | None,
        errors: dict[str, str],
    ) -> None:
        current = (row.attached_kind, row.attached_id)
        requested = (ref.kind, ref.id) if ref is not None else (None, None)
        if current != requested:
            errors["attached_to"] = "attached_to cannot be changed after creation"

    @staticmethod
    def _raise_if_errors(errors: dict[str, str], message: str) -> None:
        if errors:
            raise ValidationError(message, errors)

    def _resolve_department(
        self,
        explicit: str | None,
        primary_assignee_id: str | None,
        creator_id: str,
    ) -> str | None:
        assignee_department = (
            self._identity.user_home_department(primary_assignee_id)
            if primary_assignee_id is not None
            else None
        )
        return resolve_department(
            explicit,
            assignee_department,
            self._identity.user_home_department(creator_id),
        )

    def _recompute_department(self, row: WorkItemBase, primary_assignee_id: str | None) -> None:
        # A newly assigned user can move the item; nothing here ever clears it.
        resolved = self._resolve_department(None, primary_assignee_id, row.created_by)
        if resolved is not None:
            row.department = resolved
