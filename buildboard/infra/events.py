from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable

from sqlmodel import Session

from buildboard.domain.models import EventEnvelope, EventRecord

EventHandler = Callable[[EventEnvelope], None]

ASSIGNMENT_CREATED = "assignment.created"
ASSIGNMENT_BULK_CREATED = "assignment.bulk_created"
ASSIGNMENT_UPDATED = "assignment.updated"
ASSIGNMENT_DELETED = "assignment.deleted"
ASSIGNMENT_TRANSFERRED = "assignment.transferred"
LOCATION_CREATED = "location.created"

logger = logging.getLogger(__name__)


class EventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._subscribers[event_type].append(handler)

    def record(self, event: EventEnvelope, session: Session) -> None:
        """Stage the event row inside the caller's transaction."""
        session.add(
            EventRecord(
                event_id=event.event_id,
                event_type=event.event_type,
                organization_id=event.organization_id,
                ts=event.ts,
                actor_id=event.actor_id,
                correlation_id=event.correlation_id,
                payload=event.payload,
            )
        )

    def dispatch(self, event: EventEnvelope) -> None:
        handlers = [*self._subscribers.get(event.event_type, []), *self._subscribers.get("*", [])]
        for handler in handlers:
            handler(event)
        logger.debug("dispatched %s to %d handlers", event.event_type, len(handlers))


event_bus = EventBus()
