"""
Audit recorder tests: integrity hashing, tamper detection, best-effort writes.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from taskgate.audit import (
    AuditRecorder,
    InlineAuditSink,
    QueuedAuditSink,
    canonical_timestamp,
    compute_integrity_hash,
    verify_entry,
)
from taskgate.db.repositories import AuditLogRepository, TaskRepository
from taskgate.db.tables import AuditLogTable
from taskgate.engine import AuditWriteFailure, TaskGateEngine
from taskgate.models import (
    AuditAction,
    AuditChanges,
    RequestMeta,
    ResourceType,
    Stage,
    TaskMutationEvent,
)
from taskgate.observability.metrics import metrics
from taskgate.utils.time import utc_now


def _flaky_create(monkeypatch, failures: int):
    """Make AuditLogRepository.create fail ``failures`` times, then behave."""
    original = AuditLogRepository.create
    calls = {"count": 0}

    async def create(self, entry):
        calls["count"] += 1
        if calls["count"] <= failures:
            raise OperationalError("INSERT INTO audit_logs", {}, Exception("disk I/O error"))
        return await original(self, entry)

    monkeypatch.setattr(AuditLogRepository, "create", create)
    return calls


async def _record(recorder: AuditRecorder, **overrides):
    values = dict(
        action=AuditAction.UPDATE,
        resource_type=ResourceType.TASK,
        resource_id=str(uuid4()),
        actor_id="lead-a",
        before={"title": "Old"},
        after={"title": "New"},
        description="Renamed task",
        request=RequestMeta(ip_address="10.0.0.7", user_agent="pytest", method="PATCH"),
    )
    values.update(overrides)
    return await recorder.record(**values)


# ============================================================================
# Hashing
# ============================================================================


def test_hash_is_stable_across_key_order_and_offsets():
    ts = datetime(2026, 3, 1, 12, 0, 0, 123456, tzinfo=timezone.utc)
    shifted = ts.astimezone(timezone(timedelta(hours=2)))

    first = compute_integrity_hash(
        AuditAction.MOVE, ResourceType.TASK, "t-1", "u-1", ts,
        {"before": {"stage": "todo", "title": "A"}, "after": {"stage": "in_progress"}},
    )
    second = compute_integrity_hash(
        AuditAction.MOVE, ResourceType.TASK, "t-1", "u-1", shifted,
        AuditChanges(before={"title": "A", "stage": "todo"}, after={"stage": "in_progress"}),
    )
    assert first == second
    assert len(first) == 64


def test_canonical_timestamp_is_naive_utc_with_microseconds():
    ts = datetime(2026, 3, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
    assert canonical_timestamp(ts) == "2026-03-01T12:00:00.000000"
    assert canonical_timestamp(ts.replace(tzinfo=None)) == "2026-03-01T14:00:00.000000"


@pytest.mark.parametrize(
    "field,value",
    [
        ("action", AuditAction.DELETE),
        ("resource_type", ResourceType.PROJECT),
        ("resource_id", "someone-else"),
        ("actor_id", "mallory"),
    ],
)
def test_any_hashed_field_changes_the_hash(field, value):
    base = dict(
        action=AuditAction.MOVE,
        resource_type=ResourceType.TASK,
        resource_id="t-1",
        actor_id="u-1",
        timestamp=utc_now(),
        changes={"after": {"stage": "todo"}},
    )
    assert compute_integrity_hash(**base) != compute_integrity_hash(**{**base, field: value})


# ============================================================================
# Recorder
# ============================================================================


@pytest.mark.asyncio
async def test_entry_verifies_after_creation_and_after_reload(session, engine):
    recorder = AuditRecorder()
    entry = await _record(recorder)

    assert verify_entry(entry)
    reloaded = await AuditLogRepository(session).get(entry.entry_id)
    assert reloaded is not None
    assert verify_entry(reloaded)
    assert reloaded.integrity_hash == entry.integrity_hash
    assert reloaded.request.ip_address == "10.0.0.7"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "column,value",
    [
        ("actor_id", "mallory"),
        ("resource_id", "another-task"),
        ("action", AuditAction.DELETE),
        ("changes", {"before": {"title": "Old"}, "after": {"title": "Forged"}}),
        ("timestamp", datetime(2020, 1, 1, tzinfo=timezone.utc)),
    ],
)
async def test_tampering_with_a_stored_field_fails_verification(session, engine, column, value):
    entry = await _record(AuditRecorder())

    await session.execute(
        update(AuditLogTable)
        .where(AuditLogTable.entry_id == entry.entry_id)
        .values(**{column: value})
    )
    await session.commit()

    tampered = await AuditLogRepository(session).get(entry.entry_id)
    assert tampered is not None
    assert not verify_entry(tampered)


@pytest.mark.asyncio
async def test_record_raises_audit_write_failure(engine, monkeypatch):
    _flaky_create(monkeypatch, failures=1)
    with pytest.raises(AuditWriteFailure):
        await _record(AuditRecorder())


@pytest.mark.asyncio
async def test_write_failure_is_retried_once(session, engine, monkeypatch):
    calls = _flaky_create(monkeypatch, failures=1)
    recorder = AuditRecorder(retry_attempts=1, retry_delay_ms=0)

    entry = await recorder.record_safely(
        action=AuditAction.CREATE,
        resource_type=ResourceType.TASK,
        resource_id="t-1",
        actor_id="lead-a",
        after={"title": "New"},
    )

    assert entry is not None
    assert calls["count"] == 2
    assert metrics.counter_value("audit.write.retried") == 1
    assert await AuditLogRepository(session).get(entry.entry_id) is not None


@pytest.mark.asyncio
async def test_persistent_write_failure_is_swallowed(engine, monkeypatch, caplog):
    calls = _flaky_create(monkeypatch, failures=10)
    recorder = AuditRecorder(retry_attempts=1, retry_delay_ms=0)

    entry = await recorder.record_safely(
        action=AuditAction.CREATE,
        resource_type=ResourceType.TASK,
        resource_id="t-1",
        actor_id="lead-a",
    )

    assert entry is None
    assert calls["count"] == 2
    assert metrics.counter_value("audit.write.failed") == 1
    assert "entry dropped" in caplog.text


@pytest.mark.asyncio
async def test_stage_move_succeeds_when_audit_store_is_down(
    session, make_task, assignee, monkeypatch
):
    task = await make_task(Stage.TODO)
    _flaky_create(monkeypatch, failures=10)

    engine = TaskGateEngine(session, InlineAuditSink(AuditRecorder(retry_delay_ms=0)))
    moved = await engine.move_task(task.task_id, Stage.IN_PROGRESS, actor=assignee)

    assert moved.stage == Stage.IN_PROGRESS
    assert (await TaskRepository(session).get(task.task_id)).stage == Stage.IN_PROGRESS
    assert metrics.counter_value("audit.write.failed") == 1


# ============================================================================
# Queued sink
# ============================================================================


def _event(**overrides) -> TaskMutationEvent:
    values = dict(
        task_id=uuid4(),
        action=AuditAction.MOVE,
        actor_id="emp-a1",
        timestamp=utc_now(),
        from_stage=Stage.TODO,
        to_stage=Stage.IN_PROGRESS,
        before={"stage": "todo"},
        after={"stage": "in_progress"},
        description="Moved",
    )
    values.update(overrides)
    return TaskMutationEvent(**values)


@pytest.mark.asyncio
async def test_queued_sink_persists_in_background(session, engine):
    sink = QueuedAuditSink(AuditRecorder(retry_delay_ms=0), maxsize=10)
    await sink.start()
    try:
        event = _event()
        await sink.publish(event)
        await sink.drain()
    finally:
        await sink.stop()

    entries = await AuditLogRepository(session).list(resource_id=str(event.task_id))
    assert len(entries) == 1
    assert entries[0].action == AuditAction.MOVE
    assert verify_entry(entries[0])


@pytest.mark.asyncio
async def test_queued_sink_drops_when_full_without_blocking(engine):
    sink = QueuedAuditSink(AuditRecorder(), maxsize=1)

    # Consumer not started: the second publish must return immediately.
    await sink.publish(_event())
    await asyncio.wait_for(sink.publish(_event()), timeout=1)

    assert metrics.counter_value("audit.queue.dropped") == 1


@pytest.mark.asyncio
async def test_queued_sink_survives_write_failures(session, engine, monkeypatch):
    _flaky_create(monkeypatch, failures=2)
    sink = QueuedAuditSink(AuditRecorder(retry_attempts=1, retry_delay_ms=0), maxsize=10)
    await sink.start()
    try:
        lost, kept = _event(), _event()
        await sink.publish(lost)
        await sink.publish(kept)
        await sink.drain()
        assert sink.running
    finally:
        await sink.stop()

    repo = AuditLogRepository(session)
    assert await repo.list(resource_id=str(lost.task_id)) == []
    assert len(await repo.list(resource_id=str(kept.task_id))) == 1
