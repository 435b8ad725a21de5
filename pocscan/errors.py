"""
pocscan - Errors
Exceptions raised by the task manager and scan orchestrator.
"""


class PocscanError(Exception):
    """Base class for all engine errors."""


class TaskNotFoundError(PocscanError):
    def __init__(self, task_id: int):
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class TaskStateError(PocscanError):
    """Operation not allowed in the task's current lifecycle state."""

    def __init__(self, task_id: int, status: str, message: str):
        super().__init__(message)
        self.task_id = task_id
        self.status = status


class ScanSetupError(PocscanError):
    """Output dir, targets file, command or process start failed."""
