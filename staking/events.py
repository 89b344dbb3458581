import logging
from typing import Optional, Protocol

from .models import EventType, StakingEvent

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    def emit(self, event: StakingEvent) -> None:
        ...


class InMemoryEventLog:
    """Ordered record of every event the engine emitted."""

    def __init__(self):
        self.events: list[StakingEvent] = []

    def emit(self, event: StakingEvent) -> None:
        self.events.append(event)
        logger.info(
            "%s pool=%s user=%s amount=%s rewards=%s tick=%s",
            event.event_type.value, event.pool_id, event.user,
            event.amount, event.reward_amounts, event.tick,
        )

    def filter(
        self,
        pool_id: Optional[str] = None,
        user: Optional[str] = None,
        event_type: Optional[EventType] = None,
    ) -> list[StakingEvent]:
        events = self.events
        if pool_id is not None:
            events = [e for e in events if e.pool_id == pool_id]
        if user is not None:
            events = [e for e in events if e.user == user]
        if event_type is not None:
            events = [e for e in events if e.event_type == event_type]
        return events

    def __len__(self) -> int:
        return len(self.events)
