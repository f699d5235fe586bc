"""TaskGate engine errors."""

FORBIDDEN_MESSAGE = "You do not have permission to perform this action"


class TaskGateError(Exception):
    """Base error for TaskGate operations."""

    def __init__(self, message: str, code: str = "TASKGATE_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class ValidationError(TaskGateError):
    """Malformed input, e.g. a rejection without a reason."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message, "VALIDATION_ERROR")
        self.field = field


class TaskNotFound(TaskGateError):
    """Task does not exist."""

    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}", "TASK_NOT_FOUND")
        self.task_id = task_id


class Forbidden(TaskGateError):
    """Evaluator veto.

    The message is always generic; ``reason`` is kept for server-side logs.
    """

    def __init__(self, reason: str = ""):
        super().__init__(FORBIDDEN_MESSAGE, "FORBIDDEN")
        self.reason = reason


class InvalidTransition(TaskGateError):
    """Requested edge is not in the stage graph."""

    def __init__(self, from_stage: str, to_stage: str, action: str = "move"):
        super().__init__(
            f"Invalid {action} from {from_stage} to {to_stage}",
            "INVALID_TRANSITION",
        )
        self.from_stage = from_stage
        self.to_stage = to_stage
        self.action = action


class StageConflict(TaskGateError):
    """Optimistic-concurrency precondition failed."""

    def __init__(self, task_id: str, expected_stage: str):
        super().__init__(
            f"Task {task_id} is no longer in stage {expected_stage}; refresh and retry",
            "CONFLICT",
        )
        self.task_id = task_id
        self.expected_stage = expected_stage


class AuditWriteFailure(TaskGateError):
    """Audit entry could not be persisted. Never surfaced to callers."""

    def __init__(self, message: str):
        super().__init__(message, "AUDIT_WRITE_FAILURE")
