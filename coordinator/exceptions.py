"""Custom exception classes for the coordinator (control-process side)."""

from typing import Optional

from common.exceptions import CacheError


class WorkerStartupError(CacheError):
    """
    Raised when the transfer worker cannot be brought to the ready state.
    Caching is disabled for the run; the build itself continues.
    """
    pass


class WorkerStartTimeoutError(WorkerStartupError):
    """
    Raised when the worker does not answer Ping within the startup timeout.
    """
    pass


class WorkerExitedError(WorkerStartupError):
    """
    Raised when the worker process exits before becoming ready.
    """

    def __init__(self, exit_code: Optional[int]):
        super().__init__(f"Transfer worker exited with code {exit_code} before becoming ready")
        self.exit_code = exit_code


class CoordinatorStateError(CacheError):
    """
    Raised when a call is made in a lifecycle state that does not allow it.
    """
    pass


class TransferError(CacheError):
    """
    Base class for failures of a single transfer call.
    """
    pass


class TransferChannelError(TransferError):
    """
    Raised when the local channel to the worker breaks mid-call
    (process gone, socket error, malformed or mismatched response).
    The outcome of the transfer is unknown.
    """
    pass


class TransferFailedError(TransferError):
    """
    Raised when the worker answered with an error (storage or filesystem failure).
    """
    pass


class FingerprintError(CacheError):
    """
    Raised when a node or one of its dependencies is missing from the graph.
    """
    pass
