from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from typing import Any

from sqlmodel import Session

from taskflow.domain.models import EventEnvelope, EventRecord
from taskflow.infra.db import engine
from taskflow.infra.logging_setup import get_logger

EventHandler = Callable[[EventEnvelope], None]

logger = get_logger(__name__)


def _record(event: EventEnvelope) -> EventRecord:
    return EventRecord(
        event_id=event.event_id,
        event_type=event.event_type,
        ts=event.ts,
        actor_id=event.actor_id,
        correlation_id=event.correlation_id,
        payload=event.payload,
    )


class EventBus:
    """Persists domain events, then hands them to in-process subscribers.

    Subscriptions match an exact type (``task.assigned``), a namespace
    (``task.*``) or everything (``*``).
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        self._subscribers[pattern].append(handler)

    def unsubscribe(self, pattern: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(pattern)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def _handlers_for(self, event_type: str) -> list[EventHandler]:
        namespace = event_type.split(".", 1)[0]
        patterns = (event_type, f"{namespace}.*", "*")
        return [handler for pattern in patterns for handler in self._subscribers.get(pattern, [])]

    def publish(self, event: EventEnvelope, session: Session | None = None) -> None:
        if session is None:
            with Session(engine) as own_session:
                own_session.add(_record(event))
                own_session.commit()
        else:
            session.add(_record(event))
        logger.debug("event %s (%s) published", event.event_type, event.event_id)

        for handler in self._handlers_for(event.event_type):
            handler(event)

    def publish_dict(
        self,
        event_type: str,
        payload: dict[str, Any],
        *,
        actor_id: str | None = None,
        correlation_id: str | None = None,
    ) -> EventEnvelope:
        event = EventEnvelope(
            event_type=event_type,
            actor_id=actor_id,
            correlation_id=correlation_id,
            payload=payload,
        )
        self.publish(event)
        return event


event_bus = EventBus()
