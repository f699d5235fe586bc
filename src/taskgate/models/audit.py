"""Audit models - immutable forensic records of mutations."""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from taskgate.models.enums import AuditAction, ResourceType, Stage


class RequestMeta(BaseModel):
    """Request context captured alongside an audit entry."""

    ip_address: str = "unknown"
    user_agent: str = "unknown"
    method: Optional[str] = None
    url: Optional[str] = None


class AuditChanges(BaseModel):
    """Before/after snapshot of the mutated resource."""

    before: Optional[dict[str, Any]] = None
    after: Optional[dict[str, Any]] = None


class AuditLogEntry(BaseModel):
    """Append-only audit record; ``integrity_hash`` covers its own fields."""

    entry_id: UUID
    action: AuditAction
    resource_type: ResourceType
    resource_id: Optional[str] = None
    actor_id: Optional[str] = None
    request: RequestMeta = Field(default_factory=RequestMeta)
    changes: AuditChanges = Field(default_factory=AuditChanges)
    description: str
    integrity_hash: str
    timestamp: datetime


class TaskMutationEvent(BaseModel):
    """Emitted by the engine after a committed task mutation."""

    task_id: UUID
    action: AuditAction
    actor_id: str
    timestamp: datetime
    from_stage: Optional[Stage] = None
    to_stage: Optional[Stage] = None
    before: Optional[dict[str, Any]] = None
    after: Optional[dict[str, Any]] = None
    description: str = ""
    request: RequestMeta = Field(default_factory=RequestMeta)


class AuditFilters(BaseModel):
    """Filters accepted by audit trail queries."""

    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    action: Optional[AuditAction] = None
    limit: Optional[int] = Field(default=None, ge=1)


class AuditLogSearch(AuditFilters):
    """Filters for the general audit listing, paged by page number."""

    actor_id: Optional[str] = None
    resource_type: Optional[ResourceType] = None
    resource_id: Optional[str] = None
    ip_address: Optional[str] = None
    page: int = Field(default=1, ge=1)


class VerifiedAuditEntry(BaseModel):
    """Audit entry paired with the result of recomputing its hash."""

    entry: AuditLogEntry
    integrity_valid: bool


class AuditExport(BaseModel):
    """Every entry in a window, as written to a JSON export."""

    export_date: datetime
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    total_records: int
    entries: list[VerifiedAuditEntry]


class ActivityGroup(BaseModel):
    """Count of entries for one (action, resource type) pair."""

    action: AuditAction
    resource_type: ResourceType
    count: int
    last_activity: datetime


class ActivitySummary(BaseModel):
    """Aggregated audit activity over a time window."""

    start_date: datetime
    end_date: datetime
    groups: list[ActivityGroup]
    total: int
    error_count: int
    access_denied_count: int
