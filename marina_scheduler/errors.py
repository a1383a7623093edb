# marina_scheduler/errors.py
#
# Typed failures of the scheduling engine. Each carries a stable code the
# caller-facing API exposes so the UI can render differentiated feedback.


class SchedulingError(Exception):
    """Base exception for all scheduling engine errors."""

    code = "SchedulingError"

    def __init__(self, message: str, details: dict = None):
        """
        Args:
            message: Human-readable error message
            details: Optional dict with additional error context
        """
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class NotFound(SchedulingError):
    """Raised when a task id does not resolve to a stored task."""

    code = "NotFound"

    def __init__(self, task_id):
        super().__init__(
            message=f"Task {task_id} not found",
            details={"task_id": task_id},
        )


class InvalidState(SchedulingError):
    """Raised when a move is attempted on a task that is not scheduled, or a rule is malformed."""

    code = "InvalidState"


class ConcurrentModification(SchedulingError):
    """Raised when another actor moved the task between our read and our write."""

    code = "ConcurrentModification"

    def __init__(self, task_id, expected_date, actual_date=None):
        super().__init__(
            message=f"Task {task_id} was modified concurrently (expected {expected_date})",
            details={
                "task_id": task_id,
                "expected_date": str(expected_date),
                "actual_date": str(actual_date) if actual_date is not None else None,
            },
        )


class DataUnavailable(SchedulingError):
    """Raised when the weather fact provider fails or times out."""

    code = "DataUnavailable"


class ConfigurationError(SchedulingError):
    """Raised when the rule set cannot be loaded. Fatal at startup."""

    code = "ConfigurationError"
