"""Exceptions raised by the taskboard engine.

Every error carries a short ``code`` so the tool layer can report what kind
of failure happened without matching on messages.
"""


class TaskboardError(Exception):
    """Base exception for taskboard errors."""

    code = "error"


class NotFoundError(TaskboardError):
    """Raised when a task does not exist or is not visible to the owner."""

    code = "not_found"

    def __init__(self, task_id: int) -> None:
        self.task_id = task_id
        super().__init__(f"Task '{task_id}' not found")


class InvalidArgumentError(TaskboardError):
    """Raised when a caller supplies a value outside the allowed domain."""

    code = "invalid_argument"


class StorageError(TaskboardError):
    """Raised when the underlying store fails."""

    code = "storage_error"


class ConflictError(StorageError):
    """Raised when the store reports the database as locked or busy."""

    code = "conflict"


class OperationCancelledError(StorageError):
    """Raised when a transaction hits its deadline or is cancelled."""

    code = "cancelled"
