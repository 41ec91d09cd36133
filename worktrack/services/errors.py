"""
Errors raised by the worktrack services.

These signal a rejected request, not a crash: the API layer turns
each one into a structured error response.
"""


class WorkTrackError(Exception):
    """Base class for every rejection the services can report."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class NotFoundError(WorkTrackError):
    """A referenced item or routine does not exist or was soft-deleted."""


class SelfReferenceError(WorkTrackError):
    """An item was asked to block (or link to) itself."""


class ConflictError(WorkTrackError):
    """The edge or record already exists."""


class BlockingCycleError(ConflictError):
    """The new blocking edge would close a cycle and cycles are disabled."""

    def __init__(self, message: str, path=None):
        self.path = path or []
        super().__init__(message)


class RecurrenceFormatError(WorkTrackError, ValueError):
    """Stored recurrence JSON cannot be parsed."""

    def __init__(self, message: str, field: str = None, raw: str = None):
        self.field = field
        self.raw = raw
        super().__init__(message)
