"""API request/response schemas."""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from taskgate.models import (
    ActivitySummary,
    AuditLogEntry,
    Priority,
    Stage,
    Task,
    TaskStatus,
    VerifiedAuditEntry,
)


# ============================================================================
# Shared schemas
# ============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str


class ErrorResponse(BaseModel):
    """Error body returned for domain failures."""

    detail: str
    code: str


# ============================================================================
# Task schemas
# ============================================================================


class CreateTaskRequest(BaseModel):
    """Create task request."""

    title: str = Field(..., max_length=200, description="Task title")
    description: Optional[str] = Field(None, description="Task description")
    priority: Priority = Field(Priority.MEDIUM, description="Task priority")
    tags: list[str] = Field(default_factory=list, description="Free-form tags")
    project_id: Optional[str] = Field(None, description="Owning project")
    assignee_id: Optional[str] = Field(None, description="Assigned user")
    team_id: Optional[str] = Field(None, description="Owning team")
    stage: Stage = Field(Stage.BACKLOG, description="Initial stage: backlog or todo")
    scheduled_date: Optional[datetime] = None
    due_date: Optional[datetime] = None


class UpdateTaskRequest(BaseModel):
    """Field update request. Stage and status are not accepted."""

    model_config = {"extra": "forbid"}

    title: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = None
    priority: Optional[Priority] = None
    tags: Optional[list[str]] = None
    remark: Optional[str] = Field(None, max_length=500)
    project_id: Optional[str] = None
    assignee_id: Optional[str] = None
    scheduled_date: Optional[datetime] = None
    start_date: Optional[datetime] = None
    due_date: Optional[datetime] = None


class MoveTaskRequest(BaseModel):
    """Generic forward stage move."""

    to_stage: Stage = Field(..., description="Target stage")
    expected_stage: Optional[Stage] = Field(
        None, description="Stage the client last saw; defaults to the current stage"
    )


class ApproveTaskRequest(BaseModel):
    """Approve a task in review."""

    expected_stage: Optional[Stage] = None


class RejectTaskRequest(BaseModel):
    """Reject a task in review. A blank reason is refused by the engine."""

    reason: Optional[str] = Field(None, description="Why the work was rejected")
    expected_stage: Optional[Stage] = None


class TaskResponse(BaseModel):
    """Task response."""

    task_id: UUID
    title: str
    description: Optional[str] = None
    stage: Stage
    status: TaskStatus
    priority: Priority
    tags: list[str]
    remark: Optional[str] = None
    project_id: Optional[str] = None
    assignee_id: Optional[str] = None
    creator_id: str
    team_id: Optional[str] = None
    scheduled_date: Optional[datetime] = None
    start_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    completed_date: Optional[datetime] = None
    is_overdue: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_task(cls, task: Task) -> "TaskResponse":
        return cls(**task.model_dump(), is_overdue=task.is_overdue())


class ListTasksResponse(BaseModel):
    """List tasks response."""

    tasks: list[TaskResponse]
    next_cursor: Optional[str] = None


class BoardColumn(BaseModel):
    """One kanban column."""

    stage: Stage
    count: int
    tasks: list[TaskResponse]


class BoardResponse(BaseModel):
    """Kanban board of a project."""

    project_id: str
    columns: list[BoardColumn]
    total: int


# ============================================================================
# Audit schemas
# ============================================================================


class AuditEntryResponse(BaseModel):
    """Audit entry with its integrity check result."""

    entry: AuditLogEntry
    integrity_valid: bool

    @classmethod
    def from_verified(cls, verified: VerifiedAuditEntry) -> "AuditEntryResponse":
        return cls(entry=verified.entry, integrity_valid=verified.integrity_valid)


class AuditTrailResponse(BaseModel):
    """Ordered list of audit entries, newest first."""

    entries: list[AuditEntryResponse]
    count: int


class AuditLogsResponse(BaseModel):
    """One page of the filtered audit listing."""

    entries: list[AuditEntryResponse]
    total: int
    page: int
    limit: int
    pages: int


class ActivitySummaryResponse(ActivitySummary):
    """Activity summary over a window."""


class VerifyEntryResponse(BaseModel):
    """Result of verifying a single entry."""

    entry_id: UUID
    integrity_valid: bool
    integrity_hash: str


class BulkVerifyResponse(BaseModel):
    """Result of verifying a batch of entries."""

    total_checked: int
    valid: int
    invalid: int
    invalid_entry_ids: list[str]


class MetricsResponse(BaseModel):
    """In-process metrics snapshot."""

    counters: dict[str, float]
    gauges: dict[str, float]
    histograms: dict[str, dict[str, Any]]
