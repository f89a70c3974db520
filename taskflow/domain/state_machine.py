from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Protocol


class TaskStatus(StrEnum):
    PLANNED = "planned"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    OVERDUE = "overdue"


class ReminderStatus(StrEnum):
    PLANNED = "planned"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class ReviewStatus(StrEnum):
    NONE = "none"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    NEEDS_CORRECTION = "needs_correction"


# Statuses a caller may write; overdue is only stored by the sweep.
SETTABLE_TASK_STATUSES: frozenset[TaskStatus] = frozenset(
    {TaskStatus.PLANNED, TaskStatus.IN_PROGRESS, TaskStatus.DONE}
)

REVIEW_DECISIONS: frozenset[ReviewStatus] = frozenset(
    {ReviewStatus.APPROVED, ReviewStatus.REJECTED, ReviewStatus.NEEDS_CORRECTION}
)

STRICT_TASK_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PLANNED: {TaskStatus.IN_PROGRESS},
    TaskStatus.IN_PROGRESS: {TaskStatus.DONE},
    TaskStatus.OVERDUE: {TaskStatus.IN_PROGRESS, TaskStatus.DONE},
    TaskStatus.DONE: set(),
}

STRICT_REVIEW_TRANSITIONS: dict[ReviewStatus, set[ReviewStatus]] = {
    ReviewStatus.NONE: {ReviewStatus.PENDING},
    ReviewStatus.PENDING: {
        ReviewStatus.APPROVED,
        ReviewStatus.REJECTED,
        ReviewStatus.NEEDS_CORRECTION,
        ReviewStatus.NONE,
    },
    ReviewStatus.APPROVED: {ReviewStatus.PENDING, ReviewStatus.NONE},
    ReviewStatus.REJECTED: {ReviewStatus.PENDING, ReviewStatus.NONE},
    ReviewStatus.NEEDS_CORRECTION: {ReviewStatus.PENDING, ReviewStatus.NONE},
}


class TransitionPolicy(Protocol):
    name: str

    def can_transition_status(self, source: TaskStatus, target: TaskStatus) -> bool: ...

    def can_transition_review(self, source: ReviewStatus, target: ReviewStatus) -> bool: ...


class PermissiveTransitionPolicy:
    """Any settable status may follow any other, on both axes."""

    name = "permissive"

    def can_transition_status(self, source: TaskStatus, target: TaskStatus) -> bool:
        return target in SETTABLE_TASK_STATUSES

    def can_transition_review(self, source: ReviewStatus, target: ReviewStatus) -> bool:
        return True


class StrictTransitionPolicy:
    name = "strict"

    def can_transition_status(self, source: TaskStatus, target: TaskStatus) -> bool:
        if target not in SETTABLE_TASK_STATUSES:
            return False
        if source == target:
            return True
        return target in STRICT_TASK_TRANSITIONS.get(source, set())

    def can_transition_review(self, source: ReviewStatus, target: ReviewStatus) -> bool:
        if source == target:
            return True
        return target in STRICT_REVIEW_TRANSITIONS.get(source, set())


TRANSITION_POLICIES: dict[str, TransitionPolicy] = {
    PermissiveTransitionPolicy.name: PermissiveTransitionPolicy(),
    StrictTransitionPolicy.name: StrictTransitionPolicy(),
}


def get_transition_policy(name: str) -> TransitionPolicy:
    policy = TRANSITION_POLICIES.get(name.strip().lower())
    if policy is None:
        raise ValueError(f"unknown transition policy: {name}")
    return policy


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def is_task_overdue(status: TaskStatus, due_at: datetime | None, now: datetime) -> bool:
    if status == TaskStatus.DONE or due_at is None:
        return False
    return ensure_utc(due_at) < ensure_utc(now)


def effective_task_status(status: TaskStatus, due_at: datetime | None, now: datetime) -> TaskStatus:
    """Status as read paths present it.

    A past-due task that is not done reads as overdue whatever is stored. A
    stored overdue that is no longer past due reads as planned.
    """
    if is_task_overdue(status, due_at, now):
        return TaskStatus.OVERDUE
    if status == TaskStatus.OVERDUE:
        return TaskStatus.PLANNED
    return status
