from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from inquiry_crm.context import get_correlation_id
from inquiry_crm.core.events import event_bus

published_events: list[dict[str, Any]] = []


def build_envelope(event_type: str, entity_id: int, payload: dict[str, Any], actor_user_id: int | None = None) -> dict[str, Any]:
    return {
        "event_type": event_type,
        "entity_id": entity_id,
        "actor_user_id": actor_user_id,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "payload": payload,
    }


def publish(envelope: dict[str, Any]) -> None:
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_bus.has_subscribers(event_type):
        event_bus.publish(event_type, envelope)
