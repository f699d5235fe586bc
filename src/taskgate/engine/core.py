"""TaskGate core engine - canonical task operations."""

import logging
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from taskgate.config import settings
from taskgate.db.repositories import TaskRepository, decode_task_cursor
from taskgate.engine.errors import (
    Forbidden,
    InvalidTransition,
    StageConflict,
    TaskNotFound,
    ValidationError,
)
from taskgate.models import (
    EDITABLE_FIELDS,
    Action,
    Actor,
    AuditAction,
    RequestMeta,
    Stage,
    Task,
    TaskDraft,
    TaskMutationEvent,
)
from taskgate.observability.metrics import metrics
from taskgate.policy import Decision, can_approve, can_perform
from taskgate.utils.time import ensure_utc, utc_now
from taskgate.workflow import INITIAL_STAGES, edge_for_action, is_valid_move

logger = logging.getLogger(__name__)

_DATE_FIELDS = ("scheduled_date", "start_date", "due_date")
_REQUIRED_FIELDS = ("title", "priority", "tags")


class AuditSink(Protocol):
    """Anything that accepts committed mutation events."""

    async def publish(self, event: TaskMutationEvent) -> None: ...


class TaskGateEngine:
    """Core engine implementing canonical TaskGate operations."""

    def __init__(self, session: AsyncSession, audit_sink: AuditSink | None = None):
        self.session = session
        self.audit_sink = audit_sink
        self.tasks = TaskRepository(session)

    # =========================================================================
    # Task lifecycle
    # =========================================================================

    async def create_task(
        self,
        draft: TaskDraft,
        actor: Actor,
        request: RequestMeta | None = None,
    ) -> Task:
        """Create a task on behalf of ``actor``."""
        title = draft.title.strip()
        if not title:
            raise ValidationError("title is required", field="title")
        if draft.stage not in INITIAL_STAGES:
            raise ValidationError(
                f"Tasks can only be created in {sorted(s.value for s in INITIAL_STAGES)}",
                field="stage",
            )

        draft = draft.model_copy(
            update={
                "title": title,
                "scheduled_date": ensure_utc(draft.scheduled_date),
                "due_date": ensure_utc(draft.due_date),
            }
        )

        now = utc_now()
        prospective = Task(
            task_id=UUID(int=0),
            creator_id=actor.id,
            created_at=now,
            updated_at=now,
            **draft.model_dump(),
        )
        self._authorize(can_perform(actor, prospective, Action.CREATE), "create")

        task = await self.tasks.create(draft, creator_id=actor.id)
        await self.session.commit()
        metrics.inc_counter("tasks.created")
        logger.info(f"Task {task.task_id} created by {actor.id} in {task.stage.value}")

        await self._publish(
            TaskMutationEvent(
                task_id=task.task_id,
                action=AuditAction.CREATE,
                actor_id=actor.id,
                timestamp=task.created_at,
                to_stage=task.stage,
                after=task.snapshot(),
                description=f"Created task '{task.title}'",
                request=request or RequestMeta(),
            )
        )
        return task

    async def get_task(self, task_id: UUID, actor: Actor) -> Task:
        """Get a task by ID if the actor may view it."""
        task = await self._load(task_id)
        self._authorize(can_perform(actor, task, Action.VIEW), "view")
        return task

    async def list_tasks(
        self,
        actor: Actor,
        project_id: str | None = None,
        team_id: str | None = None,
        assignee_id: str | None = None,
        stage: Stage | None = None,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> tuple[list[Task], str | None]:
        """List tasks visible to the actor, newest first."""
        limit = min(limit or settings.default_list_limit, settings.max_list_limit)
        position = None
        if cursor:
            try:
                position = decode_task_cursor(cursor)
            except ValueError:
                raise ValidationError("Invalid pagination cursor", field="cursor")
        return await self.tasks.list(
            project_id=project_id,
            team_id=team_id,
            assignee_id=assignee_id,
            stage=stage,
            visible_to=actor,
            limit=limit,
            cursor=position,
        )

    async def update_task_fields(
        self,
        task_id: UUID,
        changes: dict[str, Any],
        actor: Actor,
        request: RequestMeta | None = None,
    ) -> Task:
        """
        Update non-lifecycle fields of a task.

        Stage and status are never accepted here; they move only through
        move/approve/reject.
        """
        illegal = set(changes) - EDITABLE_FIELDS
        if illegal:
            raise ValidationError(
                f"Fields cannot be updated: {', '.join(sorted(illegal))}",
                field=sorted(illegal)[0],
            )
        for name in _REQUIRED_FIELDS:
            if name in changes and changes[name] is None:
                raise ValidationError(f"{name} cannot be cleared", field=name)
        if "title" in changes:
            title = changes["title"].strip()
            if not title:
                raise ValidationError("title is required", field="title")
            changes = {**changes, "title": title}
        for name in _DATE_FIELDS:
            if changes.get(name) is not None:
                changes = {**changes, name: ensure_utc(changes[name])}

        before = await self._load(task_id)
        self._authorize(can_perform(actor, before, Action.EDIT), "edit")

        if not changes:
            return before

        after = await self.tasks.update_fields(task_id, changes)
        if after is None:
            raise TaskNotFound(str(task_id))
        await self.session.commit()

        await self._publish(
            TaskMutationEvent(
                task_id=task_id,
                action=AuditAction.UPDATE,
                actor_id=actor.id,
                timestamp=after.updated_at,
                before=before.snapshot(),
                after=after.snapshot(),
                description=f"Updated {', '.join(sorted(changes))} of task '{after.title}'",
                request=request or RequestMeta(),
            )
        )
        return after

    # =========================================================================
    # Stage transitions
    # =========================================================================

    async def move_task(
        self,
        task_id: UUID,
        to_stage: Stage,
        actor: Actor,
        expected_stage: Stage | None = None,
        request: RequestMeta | None = None,
    ) -> Task:
        """Advance a task one step along the forward stage graph."""
        task = await self._load(task_id)
        self._authorize(can_perform(actor, task, Action.MOVE), "move", task_id)

        from_stage = expected_stage or task.stage
        if not is_valid_move(from_stage, to_stage):
            metrics.inc_counter("tasks.transitions.invalid")
            logger.warning(
                f"Unexpected move of task {task_id} from {from_stage.value} "
                f"to {to_stage.value} by {actor.id}"
            )
            raise InvalidTransition(from_stage.value, to_stage.value)

        return await self._apply_transition(
            task=task,
            from_stage=from_stage,
            to_stage=to_stage,
            action=AuditAction.MOVE,
            actor=actor,
            description=f"Moved task '{task.title}' from {from_stage.value} to {to_stage.value}",
            request=request,
        )

    async def approve_task(
        self,
        task_id: UUID,
        actor: Actor,
        expected_stage: Stage | None = None,
        request: RequestMeta | None = None,
    ) -> Task:
        """Approve a task in review, completing it."""
        task = await self._load(task_id)
        self._authorize(can_approve(actor, task), "approve", task_id)

        from_stage = expected_stage or task.stage
        to_stage = self._approval_target(AuditAction.APPROVE, from_stage, task_id, actor)

        return await self._apply_transition(
            task=task,
            from_stage=from_stage,
            to_stage=to_stage,
            action=AuditAction.APPROVE,
            actor=actor,
            description=f"Approved task '{task.title}'",
            request=request,
        )

    async def reject_task(
        self,
        task_id: UUID,
        reason: str | None,
        actor: Actor,
        expected_stage: Stage | None = None,
        request: RequestMeta | None = None,
    ) -> Task:
        """Send a task in review back to in_progress with a mandatory reason."""
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A reason is required to reject a task", field="reason")

        task = await self._load(task_id)
        self._authorize(can_approve(actor, task), "reject", task_id)

        from_stage = expected_stage or task.stage
        to_stage = self._approval_target(AuditAction.REJECT, from_stage, task_id, actor)

        return await self._apply_transition(
            task=task,
            from_stage=from_stage,
            to_stage=to_stage,
            action=AuditAction.REJECT,
            actor=actor,
            description=f"Rejected task '{task.title}': {reason}",
            request=request,
            extra_values={"remark": f"Rejected: {reason}"},
        )

    # =========================================================================
    # Board views
    # =========================================================================

    async def get_board(self, project_id: str, actor: Actor) -> dict[Stage, list[Task]]:
        """Tasks of a project visible to the actor, grouped by stage."""
        board: dict[Stage, list[Task]] = {stage: [] for stage in Stage}
        tasks, _ = await self.tasks.list(
            project_id=project_id,
            visible_to=actor,
            limit=settings.max_list_limit,
        )
        for task in tasks:
            board[task.stage].append(task)
        return board

    async def list_pending_approvals(self, actor: Actor) -> list[Task]:
        """Tasks in review that the actor may approve, oldest first."""
        team_id = None if actor.is_privileged() else actor.team_id
        if team_id is None and not actor.is_privileged():
            return []

        candidates = await self.tasks.list_in_review(
            team_id=team_id,
            limit=settings.max_list_limit,
        )
        return [task for task in candidates if can_approve(actor, task)]

    # =========================================================================
    # Internal helpers
    # =========================================================================

    async def _load(self, task_id: UUID) -> Task:
        task = await self.tasks.get(task_id)
        if not task:
            raise TaskNotFound(str(task_id))
        return task

    def _authorize(self, decision: Decision, action: str, task_id: UUID | None = None) -> None:
        if decision:
            return
        if action in {"move", "approve", "reject"}:
            metrics.inc_counter("tasks.transitions.forbidden")
        logger.info(f"Forbidden {action} on task {task_id}: {decision.reason}")
        raise Forbidden(decision.reason)

    def _approval_target(
        self,
        action: AuditAction,
        from_stage: Stage,
        task_id: UUID,
        actor: Actor,
    ) -> Stage:
        to_stage = edge_for_action(action, from_stage)
        if to_stage is None:
            metrics.inc_counter("tasks.transitions.invalid")
            logger.warning(
                f"Unexpected {action.value.lower()} of task {task_id} "
                f"from {from_stage.value} by {actor.id}"
            )
            raise InvalidTransition(
                from_stage.value,
                Stage.DONE.value if action == AuditAction.APPROVE else Stage.IN_PROGRESS.value,
                action=action.value.lower(),
            )
        return to_stage

    async def _apply_transition(
        self,
        task: Task,
        from_stage: Stage,
        to_stage: Stage,
        action: AuditAction,
        actor: Actor,
        description: str,
        request: RequestMeta | None,
        extra_values: dict[str, Any] | None = None,
    ) -> Task:
        """Compare-and-set the stage, commit, then publish the audit event."""
        updated = await self.tasks.compare_and_set_stage(
            task.task_id,
            expected_stage=from_stage,
            new_stage=to_stage,
            extra_values=extra_values,
        )
        if updated is None:
            await self.session.rollback()
            if not await self.tasks.exists(task.task_id):
                raise TaskNotFound(str(task.task_id))
            metrics.inc_counter("tasks.transitions.conflict")
            logger.info(
                f"Stage conflict on task {task.task_id}: expected {from_stage.value}, "
                f"{action.value.lower()} by {actor.id}"
            )
            raise StageConflict(str(task.task_id), from_stage.value)

        await self.session.commit()
        metrics.inc_counter(f"tasks.transitions.{action.value.lower()}")
        logger.info(
            f"Task {task.task_id} {from_stage.value} -> {to_stage.value} "
            f"({action.value.lower()}) by {actor.id}"
        )

        await self._publish(
            TaskMutationEvent(
                task_id=task.task_id,
                action=action,
                actor_id=actor.id,
                timestamp=updated.updated_at,
                from_stage=from_stage,
                to_stage=to_stage,
                before=task.snapshot(),
                after=updated.snapshot(),
                description=description,
                request=request or RequestMeta(),
            )
        )
        return updated

    async def _publish(self, event: TaskMutationEvent) -> None:
        if self.audit_sink is None:
            return
        await self.audit_sink.publish(event)
