"""
Error taxonomy for the linking pipeline.

DataError       - malformed or missing input, empty corpus, dimension mismatch.
                  Never retried.
TransientError  - network, timeout, rate limit. Retried with backoff.
WorkerCriticalError - the execution unit crashed or ran out of resources.
                  The task fails and the worker is restarted.
TaskCancelledError  - terminal, never retried.
"""

from __future__ import annotations


class LinkerError(Exception):
    """Base class for every error raised by internal_linker."""


class DataError(LinkerError, ValueError):
    """Invalid input data (empty corpus, non-sequence document, stale vectors)."""


class TransientError(LinkerError):
    """A failure that may succeed when the call is repeated."""

    def __init__(self, message: str, code: int | str | None = None):
        super().__init__(message)
        self.code = code


class WorkerCriticalError(LinkerError):
    """The worker process is no longer usable and must be restarted."""


class TaskFailedError(LinkerError):
    """A task raised an ordinary exception inside its worker."""

    def __init__(self, message: str, error_type: str | None = None, traceback: str | None = None):
        super().__init__(message)
        self.error_type = error_type
        self.traceback = traceback


class TaskCancelledError(LinkerError):
    """The task was cancelled before it produced an outcome."""


class PoolShuttingDownError(LinkerError, RuntimeError):
    """The worker pool no longer accepts submissions."""


# =============================================================================
# Module exports
# =============================================================================

__all__ = [
    "LinkerError",
    "DataError",
    "TransientError",
    "WorkerCriticalError",
    "TaskFailedError",
    "TaskCancelledError",
    "PoolShuttingDownError",
]
