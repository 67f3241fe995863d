from __future__ import annotations

import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any

from inquiry_crm.context import get_correlation_id
from inquiry_crm.core.config import get_settings

# Oldest entries fall off once the cap is reached.
audit_entries: deque[dict[str, Any]] = deque(maxlen=get_settings().audit_max_entries)

SCOPE_DENIED = "scope.denied"


def resize(max_entries: int) -> None:
    global audit_entries
    audit_entries = deque(audit_entries, maxlen=max_entries)


def _normalize_id(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


def record(
    actor_user_id: str | int | None,
    entity_type: str,
    entity_id: str | int,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    entry = {
        "id": str(uuid.uuid4()),
        "actor_user_id": _normalize_id(actor_user_id),
        "entity_type": entity_type,
        "entity_id": _normalize_id(entity_id),
        "action": action,
        "before": before,
        "after": after,
        "correlation_id": correlation_id or get_correlation_id(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    audit_entries.append(entry)
    return entry


def record_scope_denial(
    *,
    user_id: int,
    role: str,
    department_id: int | None,
    resource: str,
    resource_id: Any,
    action: str,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    """Audit a point access that fell outside the caller's scope.

    The entry is keyed on the requested row (or "scope" when the id is unknown) so
    that denials against one inquiry can be listed with ``entries_for``.
    """
    return record(
        actor_user_id=user_id,
        entity_type="security.scope",
        entity_id=resource_id if resource_id is not None else "scope",
        action=SCOPE_DENIED,
        before=None,
        after={
            "resource": resource,
            "action": action,
            "role": role,
            "user_id": user_id,
            "department_id": department_id,
        },
        correlation_id=correlation_id,
    )


def entries_for(entity_type: str, entity_id: str | int) -> list[dict[str, Any]]:
    key = str(entity_id)
    return [entry for entry in audit_entries if entry["entity_type"] == entity_type and entry["entity_id"] == key]
