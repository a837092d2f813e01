from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import structlog
from pydantic import BaseModel, Field

from paycore.common.date_functions import utc_now
from paycore.common.payment_enums import DomainEventName

logger = structlog.get_logger()


class DomainEvent(BaseModel):
    name: DomainEventName
    aggregate: str
    aggregate_id: int
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utc_now)
    correlation_id: Optional[str] = None


def event(
    name: DomainEventName,
    aggregate: str,
    aggregate_id: int,
    **payload: Any,
) -> DomainEvent:
    """Shorthand used by the orchestrators."""
    return DomainEvent(
        name=name,
        aggregate=aggregate,
        aggregate_id=aggregate_id,
        payload=payload,
        correlation_id=structlog.contextvars.get_contextvars().get("correlation_id"),
    )


class EventSink:
    """
    Where domain events go once the unit of work that produced them has
    committed. Implementations override `publish`; `emit` never raises.
    """

    async def publish(self, event: DomainEvent) -> None:
        raise NotImplementedError

    async def emit(self, events: Iterable[DomainEvent]) -> None:
        for evt in events:
            try:
                await self.publish(evt)
            except Exception as e:  # noqa: BLE001
                logger.error(
                    "Failed to publish domain event",
                    event_name=evt.name.value,
                    aggregate=evt.aggregate,
                    aggregate_id=evt.aggregate_id,
                    error=str(e),
                )


class LoggingEventSink(EventSink):
    async def publish(self, event: DomainEvent) -> None:
        logger.info(
            "domain_event",
            event_name=event.name.value,
            aggregate=event.aggregate,
            aggregate_id=event.aggregate_id,
            payload=event.payload,
        )


class InMemoryEventSink(EventSink):
    """Keeps every published event; used by tests and local tooling."""

    def __init__(self):
        self.events: List[DomainEvent] = []

    async def publish(self, event: DomainEvent) -> None:
        self.events.append(event)

    def names(self) -> List[str]:
        return [e.name.value for e in self.events]

    def count(self, name: DomainEventName) -> int:
        return sum(1 for e in self.events if e.name == name)

    def clear(self) -> None:
        self.events.clear()
