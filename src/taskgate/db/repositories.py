"""Database repositories for TaskGate entities."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import Select, and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from taskgate.db.tables import AuditLogTable, TaskTable
from taskgate.models import (
    EDITABLE_FIELDS,
    Actor,
    AuditAction,
    AuditChanges,
    AuditLogEntry,
    RequestMeta,
    ResourceType,
    Stage,
    Task,
    TaskDraft,
    status_for_stage,
)
from taskgate.utils.time import ensure_utc, utc_now
from taskgate.workflow import sanctioned_edges

TaskCursor = tuple[datetime, UUID]


def encode_task_cursor(task: Task) -> str:
    """Opaque keyset cursor: ``<created_at>|<task_id>``."""
    return f"{task.created_at.isoformat()}|{task.task_id}"


def decode_task_cursor(cursor: str) -> TaskCursor:
    """Parse a cursor from ``encode_task_cursor``. Raises ValueError if malformed."""
    created_at, sep, task_id = cursor.partition("|")
    if not sep:
        raise ValueError(f"Malformed cursor: {cursor!r}")
    return ensure_utc(datetime.fromisoformat(created_at)), UUID(task_id)


class TaskRepository:
    """Repository for task operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, draft: TaskDraft, creator_id: str) -> Task:
        """Insert a new task; server assigns id and timestamps."""
        now = utc_now()

        task_row = TaskTable(
            task_id=uuid4(),
            title=draft.title,
            description=draft.description,
            priority=draft.priority,
            tags=list(draft.tags),
            remark=None,
            stage=draft.stage,
            status=status_for_stage(draft.stage),
            project_id=draft.project_id,
            assignee_id=draft.assignee_id,
            creator_id=creator_id,
            team_id=draft.team_id,
            scheduled_date=draft.scheduled_date,
            start_date=None,
            due_date=draft.due_date,
            completed_date=None,
            created_at=now,
            updated_at=now,
        )

        self.session.add(task_row)
        await self.session.flush()
        return self._row_to_model(task_row)

    async def get(self, task_id: UUID) -> Task | None:
        """Get a task by ID, always reflecting the latest database state."""
        result = await self.session.execute(
            select(TaskTable)
            .where(TaskTable.task_id == task_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return self._row_to_model(row) if row else None

    async def exists(self, task_id: UUID) -> bool:
        result = await self.session.execute(
            select(TaskTable.task_id).where(TaskTable.task_id == task_id).limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def list(
        self,
        project_id: str | None = None,
        team_id: str | None = None,
        assignee_id: str | None = None,
        stage: Stage | None = None,
        visible_to: Actor | None = None,
        limit: int = 50,
        cursor: TaskCursor | None = None,
    ) -> tuple[list[Task], str | None]:
        """List tasks with optional filtering, newest first.

        Pages are keyed on ``(created_at, task_id)`` so rows sharing a
        timestamp are never skipped at a page boundary.
        """
        query = select(TaskTable)

        if project_id:
            query = query.where(TaskTable.project_id == project_id)
        if team_id:
            query = query.where(TaskTable.team_id == team_id)
        if assignee_id:
            query = query.where(TaskTable.assignee_id == assignee_id)
        if stage:
            query = query.where(TaskTable.stage == stage)
        if visible_to is not None and not visible_to.is_privileged():
            query = query.where(self._visibility_clause(visible_to))

        # Keyset pagination
        if cursor:
            cursor_time, cursor_id = cursor
            query = query.where(
                or_(
                    TaskTable.created_at < cursor_time,
                    and_(TaskTable.created_at == cursor_time, TaskTable.task_id < cursor_id),
                )
            )

        query = query.order_by(TaskTable.created_at.desc(), TaskTable.task_id.desc()).limit(
            limit + 1
        )

        result = await self.session.execute(query)
        tasks = [self._row_to_model(r) for r in result.scalars().all()]

        next_cursor = None
        if len(tasks) > limit:
            tasks = tasks[:limit]
            next_cursor = encode_task_cursor(tasks[-1])

        return tasks, next_cursor

    async def list_in_review(self, team_id: str | None = None, limit: int = 200) -> list[Task]:
        """Tasks awaiting approval, oldest update first."""
        query = select(TaskTable).where(TaskTable.stage == Stage.REVIEW)
        if team_id:
            query = query.where(TaskTable.team_id == team_id)
        query = query.order_by(TaskTable.updated_at.asc()).limit(limit)

        result = await self.session.execute(query)
        return [self._row_to_model(r) for r in result.scalars().all()]

    async def update_fields(self, task_id: UUID, changes: dict[str, Any]) -> Task | None:
        """Update non-lifecycle fields. Stage and status are never accepted here."""
        illegal = set(changes) - EDITABLE_FIELDS
        if illegal:
            raise ValueError(f"Fields not editable through update_fields: {sorted(illegal)}")

        values = dict(changes)
        values["updated_at"] = utc_now()

        await self.session.execute(
            update(TaskTable)
            .where(TaskTable.task_id == task_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return await self.get(task_id)

    async def compare_and_set_stage(
        self,
        task_id: UUID,
        expected_stage: Stage,
        new_stage: Stage,
        extra_values: dict[str, Any] | None = None,
    ) -> Task | None:
        """
        Atomically move a task from ``expected_stage`` to ``new_stage``.

        Single conditional UPDATE; returns None when the row is missing or
        its stage no longer matches ``expected_stage``. Stage-dependent
        dates are filled in the same statement.
        """
        if (expected_stage, new_stage) not in sanctioned_edges():
            raise ValueError(f"Unsanctioned stage edge {expected_stage.value} -> {new_stage.value}")

        now = utc_now()
        values: dict[str, Any] = {
            "stage": new_stage,
            "status": status_for_stage(new_stage),
            "updated_at": now,
        }
        if new_stage == Stage.IN_PROGRESS:
            values["start_date"] = func.coalesce(TaskTable.start_date, now)
        if new_stage == Stage.DONE:
            values["completed_date"] = func.coalesce(TaskTable.completed_date, now)
        if extra_values:
            values.update(extra_values)

        result = await self.session.execute(
            update(TaskTable)
            .where(
                TaskTable.task_id == task_id,
                TaskTable.stage == expected_stage,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None

        return await self.get(task_id)

    @staticmethod
    def _visibility_clause(actor: Actor):
        clauses = [TaskTable.creator_id == actor.id, TaskTable.assignee_id == actor.id]
        if actor.team_id:
            clauses.append(TaskTable.team_id == actor.team_id)
        return or_(*clauses)

    def _row_to_model(self, row: TaskTable) -> Task:
        """Convert database row to model."""
        return Task(
            task_id=row.task_id,
            title=row.title,
            description=row.description,
            priority=row.priority,
            tags=list(row.tags or []),
            remark=row.remark,
            stage=row.stage,
            project_id=row.project_id,
            assignee_id=row.assignee_id,
            creator_id=row.creator_id,
            team_id=row.team_id,
            scheduled_date=ensure_utc(row.scheduled_date),
            start_date=ensure_utc(row.start_date),
            due_date=ensure_utc(row.due_date),
            completed_date=ensure_utc(row.completed_date),
            created_at=ensure_utc(row.created_at),
            updated_at=ensure_utc(row.updated_at),
        )


class AuditLogRepository:
    """Repository for audit log entries. Insert and read only."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, entry: AuditLogEntry) -> AuditLogEntry:
        """Persist an already-hashed entry."""
        row = AuditLogTable(
            entry_id=entry.entry_id,
            action=entry.action,
            resource_type=entry.resource_type,
            resource_id=entry.resource_id,
            actor_id=entry.actor_id,
            ip_address=entry.request.ip_address,
            user_agent=entry.request.user_agent,
            request_method=entry.request.method,
            request_url=entry.request.url,
            changes=entry.changes.model_dump(mode="json"),
            description=entry.description,
            integrity_hash=entry.integrity_hash,
            timestamp=entry.timestamp,
        )
        self.session.add(row)
        await self.session.flush()
        return self._row_to_model(row)

    async def get(self, entry_id: UUID) -> AuditLogEntry | None:
        result = await self.session.execute(
            select(AuditLogTable).where(AuditLogTable.entry_id == entry_id)
        )
        row = result.scalar_one_or_none()
        return self._row_to_model(row) if row else None

    async def list(
        self,
        resource_type: ResourceType | None = None,
        resource_id: str | None = None,
        actor_id: str | None = None,
        action: AuditAction | None = None,
        ip_address: str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        limit: int | None = 100,
        offset: int = 0,
    ) -> list[AuditLogEntry]:
        """List entries newest first. ``limit=None`` returns every match."""
        query = self._filtered(
            select(AuditLogTable),
            resource_type=resource_type,
            resource_id=resource_id,
            actor_id=actor_id,
            action=action,
            ip_address=ip_address,
            start_date=start_date,
            end_date=end_date,
        )
        query = query.order_by(AuditLogTable.timestamp.desc(), AuditLogTable.entry_id.desc())
        if offset:
            query = query.offset(offset)
        if limit is not None:
            query = query.limit(limit)

        result = await self.session.execute(query)
        return [self._row_to_model(r) for r in result.scalars().all()]

    async def count(
        self,
        resource_type: ResourceType | None = None,
        resource_id: str | None = None,
        actor_id: str | None = None,
        action: AuditAction | None = None,
        ip_address: str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> int:
        """Number of entries matching the same filters as ``list``."""
        query = self._filtered(
            select(func.count(AuditLogTable.entry_id)),
            resource_type=resource_type,
            resource_id=resource_id,
            actor_id=actor_id,
            action=action,
            ip_address=ip_address,
            start_date=start_date,
            end_date=end_date,
        )
        result = await self.session.execute(query)
        return int(result.scalar_one())

    @staticmethod
    def _filtered(
        query: Select,
        resource_type: ResourceType | None,
        resource_id: str | None,
        actor_id: str | None,
        action: AuditAction | None,
        ip_address: str | None,
        start_date: datetime | None,
        end_date: datetime | None,
    ) -> Select:
        if resource_type:
            query = query.where(AuditLogTable.resource_type == resource_type)
        if resource_id:
            query = query.where(AuditLogTable.resource_id == resource_id)
        if actor_id:
            query = query.where(AuditLogTable.actor_id == actor_id)
        if action:
            query = query.where(AuditLogTable.action == action)
        if ip_address:
            query = query.where(AuditLogTable.ip_address == ip_address)
        if start_date:
            query = query.where(AuditLogTable.timestamp >= start_date)
        if end_date:
            query = query.where(AuditLogTable.timestamp <= end_date)
        return query

    async def summarize(
        self,
        start_date: datetime,
        end_date: datetime,
    ) -> list[tuple[AuditAction, ResourceType, int, datetime]]:
        """Counts grouped by (action, resource_type), largest first."""
        count_col = func.count(AuditLogTable.entry_id).label("count")
        query = (
            select(
                AuditLogTable.action,
                AuditLogTable.resource_type,
                count_col,
                func.max(AuditLogTable.timestamp).label("last_activity"),
            )
            .where(
                AuditLogTable.timestamp >= start_date,
                AuditLogTable.timestamp <= end_date,
            )
            .group_by(AuditLogTable.action, AuditLogTable.resource_type)
            .order_by(count_col.desc())
        )

        result = await self.session.execute(query)
        return [
            (
                AuditAction(row.action),
                ResourceType(row.resource_type),
                int(row.count),
                ensure_utc(_as_datetime(row.last_activity)),
            )
            for row in result.all()
        ]

    def _row_to_model(self, row: AuditLogTable) -> AuditLogEntry:
        """Convert database row to model."""
        return AuditLogEntry(
            entry_id=row.entry_id,
            action=row.action,
            resource_type=row.resource_type,
            resource_id=row.resource_id,
            actor_id=row.actor_id,
            request=RequestMeta(
                ip_address=row.ip_address,
                user_agent=row.user_agent,
                method=row.request_method,
                url=row.request_url,
            ),
            changes=AuditChanges(**(row.changes or {})),
            description=row.description,
            integrity_hash=row.integrity_hash,
            timestamp=ensure_utc(row.timestamp),
        )


def _as_datetime(value: Any) -> datetime:
    """Aggregates over DateTime come back as strings on SQLite."""
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    return value
