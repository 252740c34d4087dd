class TaskListError(Exception):
    """Base class for every error raised by tasklist."""


class ValidationError(TaskListError):
    """A required field is missing or invalid. Raised before any network call."""


class TransportError(TaskListError):
    """The network or the store failed. Optimistic state is rolled back."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class StoreError(TransportError):
    """Raised by the service layer when the database rejects a statement."""


class AuthError(TaskListError):
    """No usable identity; callers should send the user back to login."""
