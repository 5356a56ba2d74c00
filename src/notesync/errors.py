"""Exception taxonomy for Notesync."""


class NoteSyncError(Exception):
    """Base class for all Notesync errors."""

    pass


class ConnectivityError(NoteSyncError):
    """The remote store could not be reached (probe or transport failure)."""

    pass


class RemoteOperationError(NoteSyncError):
    """The remote store rejected an operation.

    Args:
        message (str): Error message
        status_code (int): HTTP status code
        code (str): Backend error code

    Attributes:
        message (str): Error message
        status_code (int): HTTP status code
        code (str): Backend error code
    """

    def __init__(self, message: str, status_code: int = 0, code: str = ""):
        self.message = message
        self.status_code = status_code
        self.code = code
        super().__init__(self.message)


class StorageError(NoteSyncError):
    """Local persistence failed."""

    pass


class HierarchyError(NoteSyncError):
    """A move or create would break the note hierarchy (cycle or depth limit)."""

    pass


class RetryExhaustedError(NoteSyncError):
    """Automatic sync retries reached their cap."""

    def __init__(self, attempts: int, last_error: str = ""):
        self.attempts = attempts
        self.last_error = last_error
        message = f"Sync failed after {attempts} retries"
        if last_error:
            message = f"{message}: {last_error}"
        super().__init__(message)


class NoteValidationError(NoteSyncError, ValueError):
    """Input for a note action is invalid."""

    pass


class NoteNotFoundError(NoteSyncError, KeyError):
    """No note with the given id exists in the local collection."""

    def __init__(self, note_id: str):
        self.note_id = note_id
        super().__init__(note_id)

    def __str__(self) -> str:
        return f"Note not found: {self.note_id}"
