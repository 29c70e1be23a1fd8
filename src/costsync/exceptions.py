"""Error taxonomy for the consistency engine.

Every operator-facing failure carries a human-readable message plus a
``kind`` string so the HTTP layer can report both without inspecting
exception classes. Kept in one module to avoid circular imports between
gateways, reconcile and the service facade.
"""


class ConsistencyError(Exception):
    """Base exception for all consistency engine errors."""

    kind = "internal"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class TransientIOError(ConsistencyError):
    """Raised when the cache or the ledger is unreachable. Retry-eligible."""

    kind = "transient_io"
    status_code = 503


class PartialRebuildError(TransientIOError):
    """Raised when a global rebuild was interrupted after deleting some keys."""

    def __init__(self, message: str, deleted: int) -> None:
        super().__init__(message)
        self.deleted = deleted


class ConcurrencyConflict(ConsistencyError):
    """Raised when a fix for the same (key, dimension) is already in flight."""

    kind = "concurrency_conflict"
    status_code = 409


class ValidationError(ConsistencyError):
    """Raised when an operator request is malformed. Nothing is persisted."""

    kind = "validation"
    status_code = 422


class SchedulerBusyError(ConsistencyError):
    """Raised when a manual trigger arrives while a run is already in progress."""

    kind = "scheduler_busy"
    status_code = 409


class RecordNotFound(ConsistencyError):
    """Raised when a history record id does not exist."""

    kind = "not_found"
    status_code = 404
