"""Audit trail: recording, sinks, querying and verification."""

from taskgate.audit.hashing import canonical_timestamp, compute_integrity_hash, verify_entry
from taskgate.audit.query import AuditQueryService
from taskgate.audit.recorder import AuditRecorder
from taskgate.audit.sinks import InlineAuditSink, QueuedAuditSink, build_audit_sink

__all__ = [
    "AuditQueryService",
    "AuditRecorder",
    "InlineAuditSink",
    "QueuedAuditSink",
    "build_audit_sink",
    "canonical_timestamp",
    "compute_integrity_hash",
    "verify_entry",
]
