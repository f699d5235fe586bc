"""
Stage transition engine tests: graph, approval gate, optimistic concurrency.
"""

from uuid import uuid4

import pytest

from taskgate.audit import verify_entry
from taskgate.db.repositories import AuditLogRepository, TaskRepository
from taskgate.engine import (
    Forbidden,
    InvalidTransition,
    StageConflict,
    TaskNotFound,
    ValidationError,
)
from taskgate.engine.errors import FORBIDDEN_MESSAGE
from taskgate.models import AuditAction, ResourceType, Stage, TaskStatus
from taskgate.observability.metrics import metrics
from taskgate.workflow import sanctioned_edges


async def _audit_entries(session, task_id):
    return await AuditLogRepository(session).list(
        resource_type=ResourceType.TASK,
        resource_id=str(task_id),
    )


@pytest.mark.asyncio
async def test_forward_walk_updates_stage_status_and_dates(task_engine, make_task, assignee):
    task = await make_task(Stage.TODO)
    assert task.status == TaskStatus.SCHEDULED
    assert task.start_date is None

    task = await task_engine.move_task(task.task_id, Stage.IN_PROGRESS, actor=assignee)
    assert task.stage == Stage.IN_PROGRESS
    assert task.status == TaskStatus.IN_PROGRESS
    assert task.start_date is not None

    task = await task_engine.move_task(task.task_id, Stage.REVIEW, actor=assignee)
    assert task.stage == Stage.REVIEW
    assert task.status == TaskStatus.IN_PROGRESS
    assert task.completed_date is None


STAGES = list(Stage)
INVALID_MOVES = [
    (src, dst)
    for src in STAGES
    for dst in STAGES
    if (src, dst)
    not in {
        (Stage.BACKLOG, Stage.TODO),
        (Stage.TODO, Stage.IN_PROGRESS),
        (Stage.IN_PROGRESS, Stage.REVIEW),
    }
]


@pytest.mark.asyncio
@pytest.mark.parametrize("from_stage,to_stage", INVALID_MOVES)
async def test_moves_outside_the_graph_are_invalid(
    session, task_engine, make_task, lead, from_stage, to_stage
):
    task = await make_task(from_stage)

    with pytest.raises(InvalidTransition):
        await task_engine.move_task(task.task_id, to_stage, actor=lead)

    stored = await TaskRepository(session).get(task.task_id)
    assert stored.stage == from_stage
    assert metrics.counter_value("tasks.transitions.invalid") == 1


@pytest.mark.asyncio
async def test_leaving_review_is_not_a_generic_move(task_engine, make_task, admin):
    task = await make_task(Stage.REVIEW)
    with pytest.raises(InvalidTransition):
        await task_engine.move_task(task.task_id, Stage.DONE, actor=admin)


@pytest.mark.asyncio
@pytest.mark.parametrize("stage", [Stage.BACKLOG, Stage.TODO, Stage.IN_PROGRESS, Stage.DONE])
async def test_approve_outside_review_is_invalid(task_engine, make_task, lead, stage):
    task = await make_task(stage)
    with pytest.raises(InvalidTransition):
        await task_engine.approve_task(task.task_id, actor=lead)
    with pytest.raises(InvalidTransition):
        await task_engine.reject_task(task.task_id, "not ready", actor=lead)


@pytest.mark.asyncio
async def test_store_refuses_unsanctioned_edges(session, make_task):
    task = await make_task(Stage.BACKLOG)
    assert (Stage.BACKLOG, Stage.DONE) not in sanctioned_edges()
    with pytest.raises(ValueError):
        await TaskRepository(session).compare_and_set_stage(
            task.task_id, Stage.BACKLOG, Stage.DONE
        )


# ============================================================================
# Authorization
# ============================================================================


@pytest.mark.asyncio
async def test_unrelated_actor_cannot_mutate(session, task_engine, make_task, outsider):
    task = await make_task(Stage.REVIEW)
    before = await _audit_entries(session, task.task_id)

    with pytest.raises(Forbidden) as exc_info:
        await task_engine.approve_task(task.task_id, actor=outsider)
    assert exc_info.value.message == FORBIDDEN_MESSAGE

    with pytest.raises(Forbidden):
        await task_engine.reject_task(task.task_id, "sloppy", actor=outsider)
    with pytest.raises(Forbidden):
        await task_engine.update_task_fields(task.task_id, {"title": "mine"}, actor=outsider)

    todo = await make_task(Stage.TODO)
    with pytest.raises(Forbidden):
        await task_engine.move_task(todo.task_id, Stage.IN_PROGRESS, actor=outsider)

    stored = await TaskRepository(session).get(task.task_id)
    assert stored.stage == Stage.REVIEW
    assert stored.title == task.title
    assert len(await _audit_entries(session, task.task_id)) == len(before)
    assert metrics.counter_value("tasks.transitions.forbidden") == 3


@pytest.mark.asyncio
async def test_scenario_a_employee_rejecting_is_forbidden(
    session, task_engine, make_task, outsider
):
    task = await make_task(Stage.REVIEW)

    with pytest.raises(Forbidden):
        await task_engine.reject_task(task.task_id, "Needs more work", actor=outsider)

    stored = await TaskRepository(session).get(task.task_id)
    assert stored.stage == Stage.REVIEW


@pytest.mark.asyncio
async def test_assignee_cannot_approve_own_work(task_engine, make_task, assignee):
    task = await make_task(Stage.REVIEW)
    with pytest.raises(Forbidden):
        await task_engine.approve_task(task.task_id, actor=assignee)


@pytest.mark.asyncio
async def test_scenario_b_team_lead_approves(session, task_engine, make_task, lead):
    task = await make_task(Stage.REVIEW)
    before = await _audit_entries(session, task.task_id)

    approved = await task_engine.approve_task(task.task_id, actor=lead)

    assert approved.stage == Stage.DONE
    assert approved.status == TaskStatus.COMPLETED
    assert approved.completed_date is not None

    after = await _audit_entries(session, task.task_id)
    new_entries = [e for e in after if e.entry_id not in {b.entry_id for b in before}]
    assert len(new_entries) == 1
    entry = new_entries[0]
    assert entry.action == AuditAction.APPROVE
    assert entry.actor_id == lead.id
    assert entry.changes.after["stage"] == "done"
    assert entry.changes.before["stage"] == "review"


@pytest.mark.asyncio
async def test_scenario_c_assignee_move_is_audited_with_valid_hash(
    session, task_engine, make_task, assignee
):
    task = await make_task(Stage.TODO)

    moved = await task_engine.move_task(task.task_id, Stage.IN_PROGRESS, actor=assignee)
    assert moved.stage == Stage.IN_PROGRESS

    entries = await _audit_entries(session, task.task_id)
    latest = entries[0]
    assert latest.action == AuditAction.MOVE
    assert latest.actor_id == assignee.id
    assert latest.changes.after["stage"] == "in_progress"
    assert verify_entry(latest)


@pytest.mark.asyncio
async def test_reject_returns_to_in_progress_with_remark(task_engine, make_task, lead):
    task = await make_task(Stage.REVIEW)

    rejected = await task_engine.reject_task(task.task_id, "  Missing tests  ", actor=lead)

    assert rejected.stage == Stage.IN_PROGRESS
    assert rejected.remark == "Rejected: Missing tests"
    # Start date survives the round trip through review.
    assert rejected.start_date == task.start_date


@pytest.mark.asyncio
@pytest.mark.parametrize("reason", [None, "", "   "])
async def test_reject_requires_reason(session, task_engine, make_task, lead, reason):
    task = await make_task(Stage.REVIEW)
    with pytest.raises(ValidationError):
        await task_engine.reject_task(task.task_id, reason, actor=lead)
    assert (await TaskRepository(session).get(task.task_id)).stage == Stage.REVIEW


@pytest.mark.asyncio
async def test_missing_reason_is_reported_before_missing_task(task_engine, lead):
    with pytest.raises(ValidationError):
        await task_engine.reject_task(uuid4(), "", actor=lead)


@pytest.mark.asyncio
async def test_unknown_task_is_not_found(task_engine, admin):
    with pytest.raises(TaskNotFound):
        await task_engine.move_task(uuid4(), Stage.TODO, actor=admin)
    with pytest.raises(TaskNotFound):
        await task_engine.approve_task(uuid4(), actor=admin)
    with pytest.raises(TaskNotFound):
        await task_engine.get_task(uuid4(), actor=admin)


# ============================================================================
# Optimistic concurrency
# ============================================================================


@pytest.mark.asyncio
async def test_stale_expected_stage_is_a_conflict(session, task_engine, make_task, assignee):
    task = await make_task(Stage.TODO)

    await task_engine.move_task(
        task.task_id, Stage.IN_PROGRESS, actor=assignee, expected_stage=Stage.TODO
    )

    # Re-submitting the same transition never double-applies.
    with pytest.raises(StageConflict) as exc_info:
        await task_engine.move_task(
            task.task_id, Stage.IN_PROGRESS, actor=assignee, expected_stage=Stage.TODO
        )
    assert "refresh" in exc_info.value.message

    stored = await TaskRepository(session).get(task.task_id)
    assert stored.stage == Stage.IN_PROGRESS
    moves = [
        e for e in await _audit_entries(session, task.task_id)
        if e.action == AuditAction.MOVE and e.changes.after["stage"] == "in_progress"
    ]
    assert len(moves) == 1
    assert metrics.counter_value("tasks.transitions.conflict") == 1


@pytest.mark.asyncio
async def test_double_approval_conflicts(task_engine, make_task, lead, admin):
    task = await make_task(Stage.REVIEW)

    await task_engine.approve_task(task.task_id, actor=lead, expected_stage=Stage.REVIEW)
    with pytest.raises(StageConflict):
        await task_engine.approve_task(task.task_id, actor=admin, expected_stage=Stage.REVIEW)


@pytest.mark.asyncio
async def test_compare_and_set_reports_vanished_row(session):
    updated = await TaskRepository(session).compare_and_set_stage(
        uuid4(), Stage.TODO, Stage.IN_PROGRESS
    )
    assert updated is None


# ============================================================================
# Creation and field updates
# ============================================================================


@pytest.mark.asyncio
async def test_create_then_read_round_trip(task_engine, lead, assignee):
    from taskgate.models import Priority, TaskDraft

    draft = TaskDraft(
        title="Plan sprint",
        description="Pick the stories",
        priority=Priority.HIGH,
        tags=["planning", "q1"],
        project_id="project-9",
        assignee_id=assignee.id,
        team_id=lead.team_id,
        stage=Stage.TODO,
    )
    created = await task_engine.create_task(draft, actor=lead)
    fetched = await task_engine.get_task(created.task_id, actor=lead)

    assert fetched == created
    for field, value in draft.model_dump().items():
        assert getattr(fetched, field) == value
    assert fetched.creator_id == lead.id
    assert fetched.status == TaskStatus.SCHEDULED


@pytest.mark.asyncio
@pytest.mark.parametrize("stage", [Stage.IN_PROGRESS, Stage.REVIEW, Stage.DONE])
async def test_create_rejects_late_initial_stage(task_engine, lead, stage):
    from taskgate.models import TaskDraft

    with pytest.raises(ValidationError):
        await task_engine.create_task(
            TaskDraft(title="Skip ahead", team_id=lead.team_id, stage=stage), actor=lead
        )


@pytest.mark.asyncio
async def test_create_requires_title(task_engine, lead):
    from taskgate.models import TaskDraft

    with pytest.raises(ValidationError):
        await task_engine.create_task(TaskDraft(title="   ", team_id=lead.team_id), actor=lead)


@pytest.mark.asyncio
async def test_employee_creates_personal_task_only(task_engine, assignee, teammate):
    from taskgate.models import TaskDraft

    personal = await task_engine.create_task(
        TaskDraft(title="Renew certificate", assignee_id=assignee.id), actor=assignee
    )
    assert personal.creator_id == assignee.id

    with pytest.raises(Forbidden):
        await task_engine.create_task(
            TaskDraft(title="Do my work", assignee_id=teammate.id, team_id=assignee.team_id),
            actor=assignee,
        )


@pytest.mark.asyncio
async def test_update_fields_is_audited_and_leaves_stage_alone(
    session, task_engine, make_task, lead
):
    task = await make_task(Stage.TODO)

    updated = await task_engine.update_task_fields(
        task.task_id, {"title": "Renamed", "tags": ["x"]}, actor=lead
    )
    assert updated.title == "Renamed"
    assert updated.tags == ["x"]
    assert updated.stage == Stage.TODO

    latest = (await _audit_entries(session, task.task_id))[0]
    assert latest.action == AuditAction.UPDATE
    assert latest.changes.before["title"] == task.title
    assert latest.changes.after["title"] == "Renamed"


@pytest.mark.asyncio
@pytest.mark.parametrize("field", ["stage", "status", "creator_id"])
async def test_update_fields_refuses_lifecycle_fields(task_engine, make_task, lead, field):
    task = await make_task(Stage.TODO)
    with pytest.raises(ValidationError):
        await task_engine.update_task_fields(task.task_id, {field: "done"}, actor=lead)


@pytest.mark.asyncio
async def test_assignee_cannot_edit_fields(task_engine, make_task, assignee):
    task = await make_task(Stage.TODO)
    with pytest.raises(Forbidden):
        await task_engine.update_task_fields(task.task_id, {"title": "x"}, actor=assignee)


# ============================================================================
# Board views
# ============================================================================


@pytest.mark.asyncio
async def test_board_groups_visible_tasks_by_stage(task_engine, make_task, lead, outsider):
    await make_task(Stage.BACKLOG)
    await make_task(Stage.REVIEW)
    await make_task(Stage.REVIEW)
    await make_task(Stage.TODO, project_id="project-2")

    board = await task_engine.get_board("project-1", lead)
    assert len(board[Stage.BACKLOG]) == 1
    assert len(board[Stage.REVIEW]) == 2
    assert board[Stage.TODO] == []

    hidden = await task_engine.get_board("project-1", outsider)
    assert all(tasks == [] for tasks in hidden.values())


@pytest.mark.asyncio
async def test_pending_approvals(task_engine, make_task, lead, other_lead, admin, assignee):
    first = await make_task(Stage.REVIEW)
    second = await make_task(Stage.REVIEW)
    await make_task(Stage.IN_PROGRESS)

    pending = await task_engine.list_pending_approvals(lead)
    assert [t.task_id for t in pending] == [first.task_id, second.task_id]

    assert await task_engine.list_pending_approvals(other_lead) == []
    assert await task_engine.list_pending_approvals(assignee) == []
    assert len(await task_engine.list_pending_approvals(admin)) == 2
