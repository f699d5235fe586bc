"""TaskGate database layer."""

from taskgate.db.base import Base, close_db, get_session, init_db
from taskgate.db.tables import AuditLogTable, TaskTable

__all__ = [
    "AuditLogTable",
    "Base",
    "TaskTable",
    "close_db",
    "get_session",
    "init_db",
]
