"""TaskGate engine - stage transitions and task operations."""

from taskgate.engine.core import AuditSink, TaskGateEngine
from taskgate.engine.errors import (
    AuditWriteFailure,
    Forbidden,
    InvalidTransition,
    StageConflict,
    TaskGateError,
    TaskNotFound,
    ValidationError,
)

__all__ = [
    "AuditSink",
    "AuditWriteFailure",
    "Forbidden",
    "InvalidTransition",
    "StageConflict",
    "TaskGateEngine",
    "TaskGateError",
    "TaskNotFound",
    "ValidationError",
]
