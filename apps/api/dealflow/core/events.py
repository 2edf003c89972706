from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

PLACEMENT_OUTCOME_EVENTS = ("pipeline.placement.won", "pipeline.placement.lost")


@dataclass
class InternalEvent:
    name: str
    payload: dict[str, Any]

    @property
    def placement_id(self) -> str | None:
        body = self.payload.get("payload")
        if isinstance(body, dict):
            return body.get("placement_id")
        return None


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    """Synchronous fan-out of committed pipeline events to in-process handlers."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_names: str | Iterable[str], handler: EventHandler) -> None:
        names = [event_names] if isinstance(event_names, str) else list(event_names)
        for name in names:
            if handler not in self._subscribers[name]:
                self._subscribers[name].append(handler)

    def handlers_for(self, event_name: str) -> list[EventHandler]:
        return list(self._subscribers.get(event_name, []))

    def publish(self, event_name: str, payload: dict[str, Any]) -> int:
        event = InternalEvent(name=event_name, payload=payload)
        handlers = self.handlers_for(event_name)
        for handler in handlers:
            handler(event)
        return len(handlers)


event_bus = InProcessEventBus()
