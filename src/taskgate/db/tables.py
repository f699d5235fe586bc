"""SQLAlchemy table definitions."""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, DateTime, Enum, Index, String, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from taskgate.db.base import Base
from taskgate.models.enums import (
    AuditAction,
    Priority,
    ResourceType,
    Stage,
    TaskStatus,
)

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _enum(enum_cls) -> Enum:
    """Store enum values (not member names) so rows read like the API."""
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=32,
    )


class TaskTable(Base):
    """Tasks table - canonical task records."""

    __tablename__ = "tasks"

    task_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)

    # Content
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    priority: Mapped[Priority] = mapped_column(
        _enum(Priority), nullable=False, default=Priority.MEDIUM
    )
    tags: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    remark: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Lifecycle. status is written only alongside stage, from the projection.
    stage: Mapped[Stage] = mapped_column(_enum(Stage), nullable=False, default=Stage.BACKLOG)
    status: Mapped[TaskStatus] = mapped_column(
        _enum(TaskStatus), nullable=False, default=TaskStatus.NEW
    )

    # Relationships (external ids)
    project_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    assignee_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    creator_id: Mapped[str] = mapped_column(String(255), nullable=False)
    team_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Schedule
    scheduled_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_tasks_project_stage", "project_id", "stage"),
        Index("idx_tasks_team_stage", "team_id", "stage"),
        Index("idx_tasks_assignee", "assignee_id"),
        Index("idx_tasks_creator", "creator_id"),
        Index("idx_tasks_created", "created_at"),
    )


class AuditLogTable(Base):
    """Audit log table - append-only, never updated."""

    __tablename__ = "audit_logs"

    entry_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    action: Mapped[AuditAction] = mapped_column(_enum(AuditAction), nullable=False)
    resource_type: Mapped[ResourceType] = mapped_column(_enum(ResourceType), nullable=False)
    resource_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    actor_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Request metadata
    ip_address: Mapped[str] = mapped_column(String(64), nullable=False)
    user_agent: Mapped[str] = mapped_column(String(512), nullable=False)
    request_method: Mapped[str | None] = mapped_column(String(16), nullable=True)
    request_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)

    # Change snapshot
    changes: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    description: Mapped[str] = mapped_column(Text, nullable=False)

    # Integrity
    integrity_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_audit_actor_time", "actor_id", "timestamp"),
        Index("idx_audit_resource_time", "resource_type", "resource_id", "timestamp"),
        Index("idx_audit_action_time", "action", "timestamp"),
        Index("idx_audit_time", "timestamp"),
        Index("idx_audit_ip_time", "ip_address", "timestamp"),
    )
