from collections import defaultdict, deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


@dataclass(frozen=True)
class InternalEvent:
    name: str
    payload: dict[str, Any]
    published_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EventHandler = Callable[[InternalEvent], None]

DEFAULT_HISTORY_SIZE = 500


def _matches(pattern: str, event_name: str) -> bool:
    """``crm.deal.*`` matches every event under ``crm.deal.``; anything else must match exactly."""
    if pattern == "*":
        return True
    if pattern.endswith(".*"):
        return event_name.startswith(pattern[:-1])
    return pattern == event_name


class InProcessEventBus:
    """Synchronous fan-out for domain events published after a unit of work commits.

    Handlers run in subscription order on the publishing thread. A bounded
    ``history`` keeps the most recent events for inspection.
    """

    def __init__(self, history_size: int = DEFAULT_HISTORY_SIZE) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)
        self.history: deque[InternalEvent] = deque(maxlen=history_size)

    def subscribe(self, pattern: str, handler: EventHandler) -> Callable[[], None]:
        self._subscribers[pattern].append(handler)

        def unsubscribe() -> None:
            handlers = self._subscribers.get(pattern, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def handlers_for(self, event_name: str) -> list[EventHandler]:
        return [
            handler
            for pattern, handlers in list(self._subscribers.items())
            if _matches(pattern, event_name)
            for handler in list(handlers)
        ]

    def publish(self, event_name: str, payload: dict[str, Any]) -> InternalEvent:
        event = InternalEvent(name=event_name, payload=payload)
        self.history.append(event)
        for handler in self.handlers_for(event_name):
            handler(event)
        return event

    def recent(self, pattern: str = "*") -> list[InternalEvent]:
        return [event for event in self.history if _matches(pattern, event.name)]


event_bus = InProcessEventBus()
