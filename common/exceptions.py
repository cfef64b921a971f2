"""Exception classes shared by the worker service and the coordinator."""


class CacheError(Exception):
    """
    Base exception class for all artifact cache errors.
    """
    pass


class StorageError(CacheError):
    """
    Raised when the object storage rejects or fails a request
    (credentials, permissions, missing bucket, network).
    """
    pass


class TransientStorageError(StorageError):
    """
    Raised for storage failures that may succeed if tried again later
    (throttling, 5xx responses, dropped connections).
    """
    pass


class ArchiveError(CacheError):
    """
    Raised when an archive stream cannot be produced or extracted.
    """
    pass
