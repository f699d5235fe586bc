"""Audit query service: trails, activity and integrity verification."""

import csv
import io
import logging
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from taskgate.audit.hashing import verify_entry
from taskgate.config import settings
from taskgate.db.repositories import AuditLogRepository
from taskgate.models import (
    ActivityGroup,
    ActivitySummary,
    AuditAction,
    AuditExport,
    AuditFilters,
    AuditLogEntry,
    AuditLogSearch,
    ExportFormat,
    ResourceType,
    VerifiedAuditEntry,
)
from taskgate.observability.metrics import metrics
from taskgate.utils.time import ensure_utc, utc_now

logger = logging.getLogger("taskgate.audit")


class AuditQueryService:
    """Read side of the audit trail. Every returned entry is re-verified."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.entries = AuditLogRepository(session)

    async def get_resource_trail(
        self,
        resource_type: ResourceType,
        resource_id: str,
        filters: Optional[AuditFilters] = None,
    ) -> list[VerifiedAuditEntry]:
        """Entries for one resource, newest first."""
        filters = filters or AuditFilters()
        entries = await self.entries.list(
            resource_type=resource_type,
            resource_id=resource_id,
            **self._filter_kwargs(filters),
        )
        return [self._verified(e) for e in entries]

    async def get_user_activity(
        self,
        actor_id: str,
        filters: Optional[AuditFilters] = None,
    ) -> list[VerifiedAuditEntry]:
        """Entries written by one actor, newest first."""
        filters = filters or AuditFilters()
        entries = await self.entries.list(
            actor_id=actor_id,
            **self._filter_kwargs(filters),
        )
        return [self._verified(e) for e in entries]

    async def list_entries(
        self,
        search: Optional[AuditLogSearch] = None,
    ) -> tuple[list[VerifiedAuditEntry], int]:
        """One page of entries matching ``search``, plus the total match count."""
        search = search or AuditLogSearch()
        kwargs = self._filter_kwargs(search)
        limit = kwargs.pop("limit")
        matching = {
            "actor_id": search.actor_id,
            "resource_type": search.resource_type,
            "resource_id": search.resource_id,
            "ip_address": search.ip_address,
            **kwargs,
        }

        total = await self.entries.count(**matching)
        entries = await self.entries.list(
            limit=limit,
            offset=(search.page - 1) * limit,
            **matching,
        )
        return [self._verified(e) for e in entries], total

    async def export(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        format: ExportFormat = ExportFormat.JSON,
    ) -> str:
        """Serialize every entry in the window, newest first, with its check result."""
        start_date = ensure_utc(start_date)
        end_date = ensure_utc(end_date)
        entries = await self.entries.list(
            start_date=start_date,
            end_date=end_date,
            limit=settings.audit_export_limit,
        )
        verified = [self._verified(e) for e in entries]
        logger.info(f"Exporting {len(verified)} audit entries as {format.value}")

        if format == ExportFormat.CSV:
            return _to_csv(verified)
        return AuditExport(
            export_date=utc_now(),
            start_date=start_date,
            end_date=end_date,
            total_records=len(verified),
            entries=verified,
        ).model_dump_json()

    async def get_activity_summary(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> ActivitySummary:
        """Counts grouped by (action, resource type) over a window.

        Defaults to the last ``audit_summary_window_hours``.
        """
        end_date = ensure_utc(end_date) or utc_now()
        start_date = ensure_utc(start_date) or (
            end_date - timedelta(hours=settings.audit_summary_window_hours)
        )

        rows = await self.entries.summarize(start_date, end_date)
        groups = [
            ActivityGroup(
                action=action,
                resource_type=resource_type,
                count=count,
                last_activity=last_activity,
            )
            for action, resource_type, count, last_activity in rows
        ]

        def _count(action: AuditAction) -> int:
            return sum(g.count for g in groups if g.action == action)

        return ActivitySummary(
            start_date=start_date,
            end_date=end_date,
            groups=groups,
            total=sum(g.count for g in groups),
            error_count=_count(AuditAction.ERROR),
            access_denied_count=_count(AuditAction.ACCESS_DENIED),
        )

    async def verify_entry_by_id(self, entry_id: UUID) -> Optional[VerifiedAuditEntry]:
        """Recompute one entry's hash. None if the entry does not exist."""
        entry = await self.entries.get(entry_id)
        if entry is None:
            return None
        return self._verified(entry)

    async def bulk_verify(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> dict[str, Any]:
        """Verify a batch of entries; reports totals and the ids that fail."""
        limit = min(limit or settings.audit_bulk_verify_limit, settings.audit_bulk_verify_limit)
        entries = await self.entries.list(
            start_date=ensure_utc(start_date),
            end_date=ensure_utc(end_date),
            limit=limit,
        )

        invalid = [str(e.entry_id) for e in entries if not self._verified(e).integrity_valid]
        return {
            "total_checked": len(entries),
            "valid": len(entries) - len(invalid),
            "invalid": len(invalid),
            "invalid_entry_ids": invalid,
        }

    def _filter_kwargs(self, filters: AuditFilters) -> dict[str, Any]:
        limit = min(filters.limit or settings.audit_default_limit, settings.audit_max_limit)
        return {
            "action": filters.action,
            "start_date": ensure_utc(filters.start_date),
            "end_date": ensure_utc(filters.end_date),
            "limit": limit,
        }

    def _verified(self, entry: AuditLogEntry) -> VerifiedAuditEntry:
        valid = verify_entry(entry)
        if not valid:
            metrics.inc_counter("audit.integrity.mismatch")
            logger.warning(
                f"Audit entry {entry.entry_id} failed integrity check "
                f"({entry.resource_type.value} {entry.resource_id})"
            )
        return VerifiedAuditEntry(entry=entry, integrity_valid=valid)


_CSV_COLUMNS = (
    "timestamp",
    "action",
    "resource_type",
    "resource_id",
    "actor_id",
    "ip_address",
    "description",
    "integrity_valid",
)


def _to_csv(verified: list[VerifiedAuditEntry]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(_CSV_COLUMNS)
    for item in verified:
        entry = item.entry
        writer.writerow(
            [
                entry.timestamp.isoformat(),
                entry.action.value,
                entry.resource_type.value,
                entry.resource_id or "",
                entry.actor_id or "",
                entry.request.ip_address,
                entry.description,
                "true" if item.integrity_valid else "false",
            ]
        )
    return buffer.getvalue()
