"""In-process event gateway and the notifier built on top of any gateway.

InMemoryEventBus keeps an ordered log of everything emitted and fans events
out to async subscribers. Subscriber failures are logged and never reach the
emitter: a broken client must not undo a committed state change.

Usage:
    bus = InMemoryEventBus()
    bus.subscribe(EventType.TRANSACTION_UPDATED, on_transaction_updated)
    notifier = GatewayNotifier(bus)
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from escrow_coordinator.domain.enums import EventType
from escrow_coordinator.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from escrow_coordinator.domain.ports import EventGateway

    Subscriber = Callable[[EventType, dict[str, Any]], Awaitable[None]]

logger = get_logger(__name__)


@dataclass(frozen=True)
class EmittedEvent:
    event_type: EventType
    payload: dict[str, Any]


class InMemoryEventBus:
    """EventGateway that records events and dispatches them to subscribers."""

    def __init__(self) -> None:
        self.events: list[EmittedEvent] = []
        self._subscribers: dict[EventType, list[Subscriber]] = defaultdict(list)

    def subscribe(self, event_type: EventType, callback: Subscriber) -> None:
        self._subscribers[event_type].append(callback)

    async def emit(self, event_type: EventType, payload: dict[str, Any]) -> None:
        self.events.append(EmittedEvent(event_type=event_type, payload=payload))
        for callback in list(self._subscribers.get(event_type, ())):
            try:
                await callback(event_type, payload)
            except Exception:
                logger.exception("event_bus.subscriber_failed", event_type=str(event_type))

    def of_type(self, event_type: EventType) -> list[dict[str, Any]]:
        return [e.payload for e in self.events if e.event_type == event_type]


class GatewayNotifier:
    """Notifier that publishes each notification as a notification.created event.

    Delivery channels (in-app, email) are downstream consumers of the event.
    """

    def __init__(self, gateway: EventGateway) -> None:
        self._gateway = gateway

    async def notify(self, user_id: str, template: str, metadata: dict[str, Any]) -> None:
        await self._gateway.emit(
            EventType.NOTIFICATION_CREATED,
            {
                "user_id": user_id,
                "template": template,
                "channel": metadata.get("channel", "in_app"),
                "metadata": metadata,
            },
        )
        logger.debug("notification.queued", user_id=user_id, template=template)
