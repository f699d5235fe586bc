"""Integrity hashing for audit entries.

Each entry's hash covers only its own fields. Entries are not chained, so
deleting an entry outright is not detectable here.
"""

import hashlib
import json
from datetime import datetime, timezone
from typing import Any

from taskgate.models import AuditAction, AuditChanges, AuditLogEntry, ResourceType


def canonical_timestamp(value: datetime) -> str:
    """Naive UTC ISO-8601 with microseconds.

    Some drivers drop tzinfo on the way back, so the hashed form never
    carries an offset.
    """
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(timespec="microseconds")


def compute_integrity_hash(
    action: AuditAction,
    resource_type: ResourceType,
    resource_id: str | None,
    actor_id: str | None,
    timestamp: datetime,
    changes: AuditChanges | dict[str, Any] | None,
) -> str:
    """SHA-256 of the canonical JSON form of an entry's identifying fields."""
    if isinstance(changes, AuditChanges):
        changes = changes.model_dump(mode="json")

    data = {
        "action": action.value,
        "resource_type": resource_type.value,
        "resource_id": resource_id,
        "actor_id": actor_id,
        "timestamp": canonical_timestamp(timestamp),
        "changes": changes or {},
    }
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def verify_entry(entry: AuditLogEntry) -> bool:
    """Recompute the hash from the entry's stored fields and compare."""
    expected = compute_integrity_hash(
        action=entry.action,
        resource_type=entry.resource_type,
        resource_id=entry.resource_id,
        actor_id=entry.actor_id,
        timestamp=entry.timestamp,
        changes=entry.changes,
    )
    return expected == entry.integrity_hash
