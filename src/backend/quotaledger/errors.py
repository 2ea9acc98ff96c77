"""Quota ledger error hierarchy.

Every error raised by the engine inherits from LedgerError. ``code`` is a
stable machine-readable tag for the transport layer; ``retryable`` tells the
caller whether the same request may succeed later without being changed.
The engine itself never retries.
"""


class LedgerError(Exception):
    code: str = "INTERNAL_ERROR"
    retryable: bool = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message


class ValidationError(LedgerError):
    code = "VALIDATION_ERROR"


class PermissionDeniedError(LedgerError):
    code = "PERMISSION_DENIED"


class NotFoundError(LedgerError):
    code = "NOT_FOUND"


class InsufficientCapacityError(LedgerError):
    code = "INSUFFICIENT_CAPACITY"


class HierarchyViolationError(LedgerError):
    code = "HIERARCHY_VIOLATION"


class BusyResourceError(LedgerError):
    code = "BUSY_RESOURCE"


class StorageError(LedgerError):
    code = "STORAGE_ERROR"
    retryable = True


class UpstreamError(LedgerError):
    """The authorization oracle was unreachable or answered with an error."""

    code = "UPSTREAM_ERROR"
    retryable = True
