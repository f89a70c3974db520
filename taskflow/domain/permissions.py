from __future__ import annotations

from collections.abc import Collection
from dataclasses import dataclass

ROLE_ADMIN = "admin"


@dataclass(frozen=True)
class Caller:
    id: str
    is_admin: bool = False
    home_department: str | None = None


def is_involved(caller_id: str, created_by: str, assignee_ids: Collection[str]) -> bool:
    return caller_id == created_by or caller_id in assignee_ids


def can_mutate(caller: Caller, created_by: str, assignee_ids: Collection[str]) -> bool:
    """Creator, any assignee, or an admin may change or delete a work item."""
    if caller.is_admin:
        return True
    return is_involved(caller.id, created_by, assignee_ids)
