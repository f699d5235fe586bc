"""REST API router."""

import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.ext.asyncio import AsyncSession

from taskgate import __version__
from taskgate.api.deps import (
    get_actor,
    get_audit_sink,
    get_db_session,
    get_request_meta,
    verify_api_key,
)
from taskgate.api.schemas import (
    ActivitySummaryResponse,
    ApproveTaskRequest,
    AuditEntryResponse,
    AuditLogsResponse,
    AuditTrailResponse,
    BoardColumn,
    BoardResponse,
    BulkVerifyResponse,
    CreateTaskRequest,
    ErrorResponse,
    HealthResponse,
    ListTasksResponse,
    MetricsResponse,
    MoveTaskRequest,
    RejectTaskRequest,
    TaskResponse,
    UpdateTaskRequest,
    VerifyEntryResponse,
)
from taskgate.audit import AuditQueryService
from taskgate.config import settings
from taskgate.db.repositories import TaskRepository
from taskgate.engine import (
    AuditSink,
    Forbidden,
    InvalidTransition,
    StageConflict,
    TaskGateEngine,
    TaskGateError,
    TaskNotFound,
    ValidationError,
)
from taskgate.models import (
    Actor,
    AuditAction,
    AuditFilters,
    AuditLogSearch,
    ExportFormat,
    RequestMeta,
    ResourceType,
    Stage,
    TaskDraft,
)
from taskgate.observability.metrics import metrics
from taskgate.policy import (
    Decision,
    can_read_audit_trail,
    can_read_system_audit,
    can_read_user_activity,
)
from taskgate.utils.time import utc_now

logger = logging.getLogger("taskgate.api")

_STATUS_CODES: dict[type[TaskGateError], int] = {
    ValidationError: 400,
    Forbidden: 403,
    TaskNotFound: 404,
    StageConflict: 409,
    InvalidTransition: 422,
}

router = APIRouter(
    prefix="/v1",
    dependencies=[Depends(verify_api_key)],
    responses={code: {"model": ErrorResponse} for code in _STATUS_CODES.values()},
)


async def taskgate_error_handler(request: Request, exc: TaskGateError) -> JSONResponse:
    """Render a domain error as ``ErrorResponse`` with its mapped status."""
    status_code = _STATUS_CODES.get(type(exc), 500)
    if status_code == 500:
        logger.error(f"Unmapped domain error on {request.method} {request.url.path}: {exc}")
    body = ErrorResponse(detail=exc.message, code=exc.code)
    return JSONResponse(status_code=status_code, content=body.model_dump())


def _require(decision: Decision) -> None:
    if not decision:
        logger.info(f"Forbidden audit read: {decision.reason}")
        raise Forbidden(decision.reason)


# ============================================================================
# Health & Metrics
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse(status="healthy", version=__version__)


@router.get("/metrics", response_model=MetricsResponse)
async def get_metrics(actor: Actor = Depends(get_actor)):
    """In-process metrics snapshot (admin and managing director only)."""
    _require(can_read_system_audit(actor))
    return MetricsResponse(**metrics.snapshot())


# ============================================================================
# Tasks
# ============================================================================


@router.post("/tasks", response_model=TaskResponse, status_code=201)
async def create_task(
    body: CreateTaskRequest,
    actor: Actor = Depends(get_actor),
    request_meta: RequestMeta = Depends(get_request_meta),
    session: AsyncSession = Depends(get_db_session),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    """Create a new task."""
    engine = TaskGateEngine(session, audit_sink)
    task = await engine.create_task(
        TaskDraft(**body.model_dump()),
        actor=actor,
        request=request_meta,
    )
    return TaskResponse.from_task(task)


@router.get("/tasks", response_model=ListTasksResponse)
async def list_tasks(
    project_id: Optional[str] = Query(None),
    team_id: Optional[str] = Query(None),
    assignee_id: Optional[str] = Query(None),
    stage: Optional[Stage] = Query(None),
    limit: Optional[int] = Query(None, ge=1, le=200),
    cursor: Optional[str] = Query(None),
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
):
    """List tasks the caller may view, newest first."""
    engine = TaskGateEngine(session)
    tasks, next_cursor = await engine.list_tasks(
        actor=actor,
        project_id=project_id,
        team_id=team_id,
        assignee_id=assignee_id,
        stage=stage,
        limit=limit,
        cursor=cursor,
    )
    return ListTasksResponse(
        tasks=[TaskResponse.from_task(t) for t in tasks],
        next_cursor=next_cursor,
    )


@router.get("/tasks/pending-approvals", response_model=ListTasksResponse)
async def list_pending_approvals(
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
):
    """Tasks in review that the caller may approve or reject."""
    engine = TaskGateEngine(session)
    tasks = await engine.list_pending_approvals(actor)
    return ListTasksResponse(tasks=[TaskResponse.from_task(t) for t in tasks])


@router.get("/tasks/{task_id}", response_model=TaskResponse)
async def get_task(
    task_id: UUID,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
):
    """Get task by ID."""
    engine = TaskGateEngine(session)
    task = await engine.get_task(task_id, actor)
    return TaskResponse.from_task(task)


@router.patch("/tasks/{task_id}", response_model=TaskResponse)
async def update_task(
    task_id: UUID,
    body: UpdateTaskRequest,
    actor: Actor = Depends(get_actor),
    request_meta: RequestMeta = Depends(get_request_meta),
    session: AsyncSession = Depends(get_db_session),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    """Update non-lifecycle fields of a task."""
    engine = TaskGateEngine(session, audit_sink)
    task = await engine.update_task_fields(
        task_id,
        body.model_dump(exclude_unset=True),
        actor=actor,
        request=request_meta,
    )
    return TaskResponse.from_task(task)


@router.post("/tasks/{task_id}/move", response_model=TaskResponse)
async def move_task(
    task_id: UUID,
    body: MoveTaskRequest,
    actor: Actor = Depends(get_actor),
    request_meta: RequestMeta = Depends(get_request_meta),
    session: AsyncSession = Depends(get_db_session),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    """Move a task to the next stage."""
    engine = TaskGateEngine(session, audit_sink)
    task = await engine.move_task(
        task_id,
        body.to_stage,
        actor=actor,
        expected_stage=body.expected_stage,
        request=request_meta,
    )
    return TaskResponse.from_task(task)


@router.post("/tasks/{task_id}/approve", response_model=TaskResponse)
async def approve_task(
    task_id: UUID,
    body: Optional[ApproveTaskRequest] = None,
    actor: Actor = Depends(get_actor),
    request_meta: RequestMeta = Depends(get_request_meta),
    session: AsyncSession = Depends(get_db_session),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    """Approve a task in review."""
    engine = TaskGateEngine(session, audit_sink)
    task = await engine.approve_task(
        task_id,
        actor=actor,
        expected_stage=body.expected_stage if body else None,
        request=request_meta,
    )
    return TaskResponse.from_task(task)


@router.post("/tasks/{task_id}/reject", response_model=TaskResponse)
async def reject_task(
    task_id: UUID,
    body: RejectTaskRequest,
    actor: Actor = Depends(get_actor),
    request_meta: RequestMeta = Depends(get_request_meta),
    session: AsyncSession = Depends(get_db_session),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    """Reject a task in review back to in_progress."""
    engine = TaskGateEngine(session, audit_sink)
    task = await engine.reject_task(
        task_id,
        body.reason,
        actor=actor,
        expected_stage=body.expected_stage,
        request=request_meta,
    )
    return TaskResponse.from_task(task)


@router.get("/projects/{project_id}/board", response_model=BoardResponse)
async def get_board(
    project_id: str,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
):
    """Kanban board of a project, limited to tasks the caller may view."""
    engine = TaskGateEngine(session)
    board = await engine.get_board(project_id, actor)
    columns = [
        BoardColumn(
            stage=stage,
            count=len(tasks),
            tasks=[TaskResponse.from_task(t) for t in tasks],
        )
        for stage, tasks in board.items()
    ]
    return BoardResponse(
        project_id=project_id,
        columns=columns,
        total=sum(c.count for c in columns),
    )


# ============================================================================
# Audit
# ============================================================================


@router.get("/audit/logs", response_model=AuditLogsResponse)
async def list_audit_logs(
    user_id: Optional[str] = Query(None),
    action: Optional[AuditAction] = Query(None),
    resource_type: Optional[ResourceType] = Query(None),
    resource_id: Optional[str] = Query(None),
    ip_address: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
):
    """Filtered, paginated audit listing (admin and managing director only)."""
    _require(can_read_system_audit(actor))

    search = AuditLogSearch(
        actor_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        ip_address=ip_address,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
    )
    entries, total = await AuditQueryService(session).list_entries(search)
    page_size = min(limit or settings.audit_default_limit, settings.audit_max_limit)
    return AuditLogsResponse(
        entries=[AuditEntryResponse.from_verified(e) for e in entries],
        total=total,
        page=page,
        limit=page_size,
        pages=(total + page_size - 1) // page_size,
    )


@router.get("/audit/export")
async def export_audit_logs(
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    format: ExportFormat = Query(ExportFormat.JSON),
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
):
    """Download every entry in a window as JSON or CSV (admin and managing director only)."""
    _require(can_read_system_audit(actor))

    content = await AuditQueryService(session).export(start_date, end_date, format)
    media_type = "text/csv" if format == ExportFormat.CSV else "application/json"
    filename = f"audit-logs-{utc_now().date().isoformat()}.{format.value}"
    logger.info(f"Audit export ({format.value}) by {actor.id}")
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/audit/resources/{resource_type}/{resource_id}", response_model=AuditTrailResponse)
async def get_resource_audit_trail(
    resource_type: ResourceType,
    resource_id: str,
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    action: Optional[AuditAction] = Query(None),
    limit: Optional[int] = Query(None, ge=1),
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
):
    """Audit trail of one resource, newest first."""
    task = None
    if resource_type == ResourceType.TASK:
        try:
            task = await TaskRepository(session).get(UUID(resource_id))
        except ValueError:
            task = None
    _require(can_read_audit_trail(actor, task))

    entries = await AuditQueryService(session).get_resource_trail(
        resource_type,
        resource_id,
        AuditFilters(start_date=start_date, end_date=end_date, action=action, limit=limit),
    )
    return AuditTrailResponse(
        entries=[AuditEntryResponse.from_verified(e) for e in entries],
        count=len(entries),
    )


@router.get("/audit/users/{actor_id}", response_model=AuditTrailResponse)
async def get_user_activity(
    actor_id: str,
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    action: Optional[AuditAction] = Query(None),
    limit: Optional[int] = Query(None, ge=1),
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
):
    """Audit entries written by one user, newest first."""
    _require(can_read_user_activity(actor, actor_id))

    entries = await AuditQueryService(session).get_user_activity(
        actor_id,
        AuditFilters(start_date=start_date, end_date=end_date, action=action, limit=limit),
    )
    return AuditTrailResponse(
        entries=[AuditEntryResponse.from_verified(e) for e in entries],
        count=len(entries),
    )


@router.get("/audit/summary", response_model=ActivitySummaryResponse)
async def get_activity_summary(
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
):
    """Counts grouped by action and resource type (admin and managing director only)."""
    _require(can_read_system_audit(actor))

    summary = await AuditQueryService(session).get_activity_summary(start_date, end_date)
    return ActivitySummaryResponse(**summary.model_dump())


@router.get("/audit/entries/{entry_id}/verify", response_model=VerifyEntryResponse)
async def verify_audit_entry(
    entry_id: UUID,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
):
    """Recompute the integrity hash of one entry."""
    _require(can_read_system_audit(actor))

    verified = await AuditQueryService(session).verify_entry_by_id(entry_id)
    if verified is None:
        raise HTTPException(status_code=404, detail=f"Audit entry not found: {entry_id}")
    return VerifyEntryResponse(
        entry_id=verified.entry.entry_id,
        integrity_valid=verified.integrity_valid,
        integrity_hash=verified.entry.integrity_hash,
    )


@router.get("/audit/verify", response_model=BulkVerifyResponse)
async def bulk_verify_audit(
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    limit: Optional[int] = Query(None, ge=1),
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
):
    """Verify a batch of entries and report the ones that fail."""
    _require(can_read_system_audit(actor))

    result = await AuditQueryService(session).bulk_verify(start_date, end_date, limit)
    return BulkVerifyResponse(**result)
