from __future__ import annotations

import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id
from app.core.events import event_bus

MAX_PUBLISHED_EVENTS = 1000

# Most recent envelopes only; older ones fall off once the cap is reached.
published_events: deque[dict[str, Any]] = deque(maxlen=MAX_PUBLISHED_EVENTS)


def publish(event_type: str, payload: dict[str, Any], *, actor_user_id: str | None = None) -> dict[str, Any]:
    envelope: dict[str, Any] = {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "actor_user_id": actor_user_id,
        "correlation_id": get_correlation_id(),
        "version": 1,
        "payload": payload,
    }
    published_events.append(envelope)
    event_bus.publish(event_type, envelope)
    return envelope
