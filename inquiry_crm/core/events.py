from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

INQUIRY_EVENT_TYPES = ("inquiry.created", "inquiry.updated", "inquiry.deleted")
FOLLOW_UP_EVENT_TYPES = ("follow_up.created", "follow_up.updated", "follow_up.deleted")
DIRECTORY_EVENT_TYPES = (
    "department.created",
    "department.updated",
    "department.deleted",
    "user.created",
    "user.updated",
    "user.deleted",
)
DOMAIN_EVENT_TYPES = INQUIRY_EVENT_TYPES + FOLLOW_UP_EVENT_TYPES + DIRECTORY_EVENT_TYPES


@dataclass(frozen=True, slots=True)
class InternalEvent:
    name: str
    payload: dict[str, Any]

    @property
    def entity_id(self) -> Any:
        return self.payload.get("entity_id")


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    """Synchronous fan-out; handlers run in the publisher's thread and transaction."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        if handler not in self._subscribers[event_name]:
            self._subscribers[event_name].append(handler)

    def subscribe_many(self, event_names: Iterable[str], handler: EventHandler) -> None:
        for event_name in event_names:
            self.subscribe(event_name, handler)

    def has_subscribers(self, event_name: str) -> bool:
        return bool(self._subscribers.get(event_name))

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        event = InternalEvent(name=event_name, payload=payload)
        for handler in list(self._subscribers.get(event_name, [])):
            handler(event)


event_bus = InProcessEventBus()
