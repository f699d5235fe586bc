"""Task model - core work unit on the board."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, computed_field

from taskgate.models.enums import Priority, Stage, TaskStatus, status_for_stage
from taskgate.utils.time import utc_now


class Task(BaseModel):
    """Canonical task record.

    ``stage`` is the only lifecycle field that is stored and mutated;
    ``status`` is always derived from it.
    """

    # Identity
    task_id: UUID

    # Content
    title: str
    description: Optional[str] = None
    priority: Priority = Priority.MEDIUM
    tags: list[str] = Field(default_factory=list)
    remark: Optional[str] = None

    # Lifecycle
    stage: Stage = Stage.BACKLOG

    # Relationships
    project_id: Optional[str] = None
    assignee_id: Optional[str] = None
    creator_id: str
    team_id: Optional[str] = None

    # Schedule
    scheduled_date: Optional[datetime] = None
    start_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    completed_date: Optional[datetime] = None

    # Timestamps
    created_at: datetime
    updated_at: datetime

    @computed_field  # type: ignore[prop-decorator]
    @property
    def status(self) -> TaskStatus:
        return status_for_stage(self.stage)

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        """Check if the due date has passed without the task being done."""
        if self.due_date is None or self.stage.is_terminal():
            return False
        return self.due_date < (now or utc_now())

    def snapshot(self) -> dict:
        """JSON-native view used for audit before/after payloads."""
        return self.model_dump(mode="json")


class TaskDraft(BaseModel):
    """Fields supplied by a caller when creating a task."""

    title: str
    description: Optional[str] = None
    priority: Priority = Priority.MEDIUM
    tags: list[str] = Field(default_factory=list)
    project_id: Optional[str] = None
    assignee_id: Optional[str] = None
    team_id: Optional[str] = None
    stage: Stage = Stage.BACKLOG
    scheduled_date: Optional[datetime] = None
    due_date: Optional[datetime] = None


# Fields that the field-update path may change. Stage and status are only
# ever written by the compare-and-set path.
EDITABLE_FIELDS: frozenset[str] = frozenset(
    {
        "title",
        "description",
        "priority",
        "tags",
        "remark",
        "project_id",
        "assignee_id",
        "scheduled_date",
        "start_date",
        "due_date",
    }
)
