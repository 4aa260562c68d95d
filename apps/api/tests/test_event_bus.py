from __future__ import annotations

from collections.abc import Generator

import pytest

from app import events
from app.core.events import InProcessEventBus, InternalEvent


@pytest.fixture()
def bus() -> InProcessEventBus:
    return InProcessEventBus(history_size=3)


@pytest.fixture()
def clear_events() -> Generator[None, None, None]:
    events.published_events.clear()
    yield
    events.published_events.clear()


def test_prefix_subscription_receives_matching_events(bus: InProcessEventBus) -> None:
    received: list[str] = []
    bus.subscribe("crm.deal.*", lambda event: received.append(event.name))

    bus.publish("crm.deal.stage_changed", {"deal_id": "d-1"})
    bus.publish("crm.dealer.created", {})
    bus.publish("system.started", {})

    assert received == ["crm.deal.stage_changed"]


def test_exact_and_wildcard_handlers_run_in_subscription_order(bus: InProcessEventBus) -> None:
    calls: list[str] = []
    bus.subscribe("system.started", lambda event: calls.append("exact"))
    bus.subscribe("*", lambda event: calls.append("all"))

    published = bus.publish("system.started", {"service": "api"})

    assert calls == ["exact", "all"]
    assert isinstance(published, InternalEvent)
    assert published.payload == {"service": "api"}


def test_unsubscribe_stops_delivery(bus: InProcessEventBus) -> None:
    received: list[InternalEvent] = []
    unsubscribe = bus.subscribe("crm.*", received.append)

    bus.publish("crm.deal.stage_changed", {})
    unsubscribe()
    unsubscribe()
    bus.publish("crm.deal.stage_changed", {})

    assert len(received) == 1


def test_history_keeps_only_most_recent_events(bus: InProcessEventBus) -> None:
    for index in range(5):
        bus.publish("crm.deal.stage_changed", {"index": index})
    bus.publish("system.started", {})

    assert len(bus.history) == 3
    assert [event.payload["index"] for event in bus.recent("crm.deal.*")] == [3, 4]
    assert [event.name for event in bus.recent()][-1] == "system.started"


def test_handler_errors_propagate_to_publisher(bus: InProcessEventBus) -> None:
    def broken(event: InternalEvent) -> None:
        raise RuntimeError("handler failed")

    bus.subscribe("crm.*", broken)

    with pytest.raises(RuntimeError):
        bus.publish("crm.deal.stage_changed", {})


def test_published_envelopes_are_capped(clear_events: None) -> None:
    for index in range(events.MAX_PUBLISHED_EVENTS + 25):
        events.publish("test.bulk", {"index": index})

    assert len(events.published_events) == events.MAX_PUBLISHED_EVENTS
    assert events.published_events[0]["payload"] == {"index": 25}
    assert events.published_events[-1]["payload"] == {"index": events.MAX_PUBLISHED_EVENTS + 24}
