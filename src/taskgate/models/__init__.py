"""TaskGate data models."""

from taskgate.models.enums import (
    Action,
    AuditAction,
    ExportFormat,
    Priority,
    ResourceType,
    Role,
    Stage,
    TaskStatus,
    status_for_stage,
)
from taskgate.models.actor import Actor
from taskgate.models.task import EDITABLE_FIELDS, Task, TaskDraft
from taskgate.models.audit import (
    ActivityGroup,
    ActivitySummary,
    AuditChanges,
    AuditExport,
    AuditFilters,
    AuditLogEntry,
    AuditLogSearch,
    RequestMeta,
    TaskMutationEvent,
    VerifiedAuditEntry,
)

__all__ = [
    "Action",
    "ActivityGroup",
    "ActivitySummary",
    "Actor",
    "AuditAction",
    "AuditChanges",
    "AuditExport",
    "AuditFilters",
    "AuditLogEntry",
    "AuditLogSearch",
    "EDITABLE_FIELDS",
    "ExportFormat",
    "Priority",
    "RequestMeta",
    "ResourceType",
    "Role",
    "Stage",
    "Task",
    "TaskDraft",
    "TaskMutationEvent",
    "TaskStatus",
    "VerifiedAuditEntry",
    "status_for_stage",
]
