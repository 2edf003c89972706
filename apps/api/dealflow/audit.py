from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Literal

from dealflow.context import get_correlation_id

AuditAction = Literal["create", "update", "delete", "move"]

audit_entries: list[dict[str, Any]] = []


def record(
    actor_user_id: str,
    entity_type: str,
    entity_id: str,
    action: AuditAction,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    """Append an audit entry for a committed pipeline write and return it."""
    entry = {
        "id": str(uuid.uuid4()),
        "actor_user_id": actor_user_id,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "before": before,
        "after": after,
        "changed_fields": _changed_fields(before, after),
        "correlation_id": correlation_id or get_correlation_id(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    audit_entries.append(entry)
    return entry


def entries_for(entity_id: str, entity_type: str | None = None) -> list[dict[str, Any]]:
    return [
        entry
        for entry in audit_entries
        if entry["entity_id"] == entity_id and (entity_type is None or entry["entity_type"] == entity_type)
    ]


def _changed_fields(before: dict[str, Any] | None, after: dict[str, Any] | None) -> list[str]:
    if before is None or after is None:
        return sorted((after or before or {}).keys())
    return sorted(key for key in before.keys() | after.keys() if before.get(key) != after.get(key))
