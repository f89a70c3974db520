from __future__ import annotations

from typing import Protocol

from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, select

from taskflow.domain.models import DisplayOrderCounter, Reminder, Task, now_utc
from taskflow.domain.routing import next_display_order
from taskflow.infra import redis_state
from taskflow.infra.settings import sequencer_backend


class OrderAllocator(Protocol):
    def next_order(self, session: Session, creator_id: str) -> int: ...


def current_max_order(session: Session, creator_id: str) -> int:
    """Highest display order over every work item the creator owns (0 when none)."""
    task_max = session.exec(
        select(func.max(Task.display_order)).where(Task.created_by == creator_id)
    ).first()
    reminder_max = session.exec(
        select(func.max(Reminder.display_order)).where(Reminder.created_by == creator_id)
    ).first()
    return max(task_max or 0, reminder_max or 0)


class DatabaseOrderAllocator:
    """Per-creator counter row bumped by a single upsert.

    Every allocation is floored at the creator's current max plus one, so orders
    keep increasing across a migration from max-based numbering and after a
    switch from the Redis backend.
    """

    _INSERTS = {
        "postgresql": pg_insert,
        "sqlite": sqlite_insert,
    }
    # Two-argument scalar maximum per dialect.
    _GREATEST = {
        "postgresql": func.greatest,
        "sqlite": func.max,
    }

    def next_order(self, session: Session, creator_id: str) -> int:
        bind = session.get_bind()
        insert_fn = self._INSERTS.get(bind.dialect.name)
        if insert_fn is None:
            raise RuntimeError(f"unsupported dialect for order allocation: {bind.dialect.name}")
        greatest = self._GREATEST[bind.dialect.name]
        now = now_utc()
        seed = next_display_order(current_max_order(session, creator_id))
        upsert = insert_fn(DisplayOrderCounter).values(
            creator_id=creator_id, last_value=seed, updated_at=now
        )
        statement = (
            upsert.on_conflict_do_update(
                index_elements=["creator_id"],
                set_={
                    "last_value": greatest(
                        DisplayOrderCounter.last_value + 1, upsert.excluded.last_value
                    ),
                    "updated_at": now,
                },
            )
            .returning(DisplayOrderCounter.last_value)
        )
        return int(session.execute(statement).scalar_one())


class RedisOrderAllocator:
    KEY_PREFIX = "taskflow:display_order"

    @classmethod
    def _key(cls, creator_id: str) -> str:
        return f"{cls.KEY_PREFIX}:{creator_id}"

    def next_order(self, session: Session, creator_id: str) -> int:
        return redis_state.next_counter_value(
            self._key(creator_id),
            lambda: current_max_order(session, creator_id),
        )


def get_order_allocator() -> OrderAllocator:
    backend = sequencer_backend()
    if backend == "redis":
        return RedisOrderAllocator()
    if backend == "db":
        return DatabaseOrderAllocator()
    raise ValueError(f"unknown sequencer backend: {backend}")
