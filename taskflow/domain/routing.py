from __future__ import annotations

from collections.abc import Iterable


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def resolve_department(
    explicit: str | None,
    assignee_department: str | None,
    creator_department: str | None,
) -> str | None:
    """Owning department of a work item.

    Priority: explicit value, then the primary assignee's home department, then
    the creator's home department. ``None`` marks a global item.
    """
    for candidate in (explicit, assignee_department, creator_department):
        resolved = _clean(candidate)
        if resolved is not None:
            return resolved
    return None


def primary_assignee(assignee_ids: Iterable[str]) -> str | None:
    for user_id in assignee_ids:
        return user_id
    return None


def next_display_order(current_max: int | None) -> int:
    return (current_max or 0) + 1
