"""Core exception classes for the application."""


class NotFoundError(Exception):
    """Raised when a resource is not found."""


class TaskNotFoundError(NotFoundError):
    """Raised when no background task is registered for a session."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Task not found for session: {session_id}")
        self.session_id = session_id


class ValidationError(Exception):
    """Raised when validation fails."""


class ConcurrencyClosedError(Exception):
    """Raised in admission waiters when their queue is torn down."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Concurrency queue for '{key}' was cancelled")
        self.key = key
