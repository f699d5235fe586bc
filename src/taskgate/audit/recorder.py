"""Audit trail recorder.

Entries are written in their own session, never inside the transaction of
the mutation they describe.
"""

import asyncio
import logging
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from taskgate.audit.hashing import compute_integrity_hash
from taskgate.config import settings
from taskgate.db import base as db_base
from taskgate.db.repositories import AuditLogRepository
from taskgate.engine.errors import AuditWriteFailure
from taskgate.models import (
    AuditAction,
    AuditChanges,
    AuditLogEntry,
    RequestMeta,
    ResourceType,
    TaskMutationEvent,
)
from taskgate.observability.metrics import metrics
from taskgate.utils.time import utc_now

logger = logging.getLogger("taskgate.audit")


class AuditRecorder:
    """Builds, hashes and persists audit entries."""

    def __init__(
        self,
        session_factory=None,
        retry_attempts: Optional[int] = None,
        retry_delay_ms: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self.retry_attempts = (
            settings.audit_retry_attempts if retry_attempts is None else retry_attempts
        )
        self.retry_delay_ms = (
            settings.audit_retry_delay_ms if retry_delay_ms is None else retry_delay_ms
        )

    @property
    def session_factory(self):
        # Looked up at call time so a rebound factory (tests) is honoured.
        return self._session_factory or db_base.async_session_factory

    async def record(
        self,
        action: AuditAction,
        resource_type: ResourceType,
        resource_id: Optional[str],
        actor_id: Optional[str],
        before: Optional[dict[str, Any]] = None,
        after: Optional[dict[str, Any]] = None,
        description: str = "",
        request: Optional[RequestMeta] = None,
    ) -> AuditLogEntry:
        """
        Persist one entry. Raises AuditWriteFailure if it cannot be stored.
        """
        timestamp = utc_now()
        changes = AuditChanges(before=before, after=after)
        entry = AuditLogEntry(
            entry_id=uuid4(),
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            actor_id=actor_id,
            request=request or RequestMeta(),
            changes=changes,
            description=description or f"{action.value} {resource_type.value}",
            integrity_hash=compute_integrity_hash(
                action=action,
                resource_type=resource_type,
                resource_id=resource_id,
                actor_id=actor_id,
                timestamp=timestamp,
                changes=changes,
            ),
            timestamp=timestamp,
        )

        try:
            with metrics.timer("audit.record_latency_ms"):
                async with self.session_factory() as session:
                    stored = await AuditLogRepository(session).create(entry)
                    await session.commit()
        except (SQLAlchemyError, OSError) as e:
            raise AuditWriteFailure(f"Could not persist audit entry {entry.entry_id}: {e}") from e

        metrics.inc_counter("audit.recorded")
        return stored

    async def record_safely(self, **kwargs: Any) -> Optional[AuditLogEntry]:
        """
        Record with retry; never raises AuditWriteFailure.

        Returns None when the entry could not be stored after all attempts.
        """
        attempts = 1 + max(self.retry_attempts, 0)
        for attempt in range(1, attempts + 1):
            try:
                return await self.record(**kwargs)
            except AuditWriteFailure as e:
                if attempt < attempts:
                    metrics.inc_counter("audit.write.retried")
                    logger.warning(f"Audit write failed (attempt {attempt}), retrying: {e}")
                    await asyncio.sleep(self.retry_delay_ms / 1000.0)
                    continue
                metrics.inc_counter("audit.write.failed")
                logger.error(
                    f"Audit write failed after {attempts} attempts; entry dropped: "
                    f"{kwargs.get('action')} {kwargs.get('resource_type')} "
                    f"{kwargs.get('resource_id')}: {e}"
                )
        return None

    async def record_event(self, event: TaskMutationEvent) -> Optional[AuditLogEntry]:
        """Persist the audit entry for a committed task mutation."""
        return await self.record_safely(
            action=event.action,
            resource_type=ResourceType.TASK,
            resource_id=str(event.task_id),
            actor_id=event.actor_id,
            before=event.before,
            after=event.after,
            description=event.description,
            request=event.request,
        )
