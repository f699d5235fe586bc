"""TaskGate enumerations."""

from enum import Enum


class Role(str, Enum):
    """Closed set of actor roles."""

    ADMIN = "admin"
    MANAGING_DIRECTOR = "managing_director"
    TEAM_LEAD = "team_lead"
    EMPLOYEE = "employee"

    @classmethod
    def parse(cls, value: str) -> "Role":
        """Parse a role header value, accepting legacy spellings."""
        normalized = value.strip().lower().replace("-", "_").replace(" ", "_")
        aliases = {
            "it_admin": cls.ADMIN,
            "md": cls.MANAGING_DIRECTOR,
            "teamlead": cls.TEAM_LEAD,
        }
        if normalized in aliases:
            return aliases[normalized]
        return cls(normalized)


class Action(str, Enum):
    """Actions checked by the authorization evaluator."""

    VIEW = "view"
    CREATE = "create"
    EDIT = "edit"
    DELETE = "delete"
    MOVE = "move"
    APPROVE = "approve"
    REJECT = "reject"
    VIEW_AUDIT = "view_audit"

    @classmethod
    def approval_actions(cls) -> set["Action"]:
        """Actions gated by the approval-specific check."""
        return {cls.APPROVE, cls.REJECT}


class Stage(str, Enum):
    """Kanban workflow position."""

    BACKLOG = "backlog"
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    DONE = "done"

    def is_terminal(self) -> bool:
        return self == Stage.DONE


class TaskStatus(str, Enum):
    """Legacy four-value lifecycle, projected from the stage."""

    NEW = "new"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class Priority(str, Enum):
    """Task priority."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class AuditAction(str, Enum):
    """Kinds of audited events."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    ACCESS_DENIED = "ACCESS_DENIED"
    ERROR = "ERROR"
    MOVE = "MOVE"
    APPROVE = "APPROVE"
    REJECT = "REJECT"


class ResourceType(str, Enum):
    """Kinds of audited resources."""

    USER = "User"
    TEAM = "Team"
    PROJECT = "Project"
    TASK = "Task"
    AUTH = "Auth"
    SYSTEM = "System"


class ExportFormat(str, Enum):
    """Audit export encodings."""

    JSON = "json"
    CSV = "csv"


STAGE_TO_STATUS: dict[Stage, TaskStatus] = {
    Stage.BACKLOG: TaskStatus.NEW,
    Stage.TODO: TaskStatus.SCHEDULED,
    Stage.IN_PROGRESS: TaskStatus.IN_PROGRESS,
    Stage.REVIEW: TaskStatus.IN_PROGRESS,
    Stage.DONE: TaskStatus.COMPLETED,
}


def status_for_stage(stage: Stage) -> TaskStatus:
    """Project a kanban stage onto the legacy status field."""
    return STAGE_TO_STATUS[stage]
