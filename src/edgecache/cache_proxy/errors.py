"""Error types raised by the caching proxy."""

from __future__ import annotations

from fastapi import status


class EdgeCacheError(RuntimeError):
    """Base class for request-scoped failures; carries the HTTP status it maps to."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, *, key: str | None = None) -> None:
        super().__init__(message)
        self.key = key


class ObjectNotFoundError(EdgeCacheError):
    """Raised when the backend has no object under the requested key."""

    status_code = status.HTTP_404_NOT_FOUND


class InvalidKeyError(EdgeCacheError):
    """Raised when a key does not split into bucket and object path."""

    status_code = status.HTTP_404_NOT_FOUND


class BackendError(EdgeCacheError):
    """Raised when region resolution or a download fails."""

    status_code = status.HTTP_404_NOT_FOUND


class StorageError(EdgeCacheError):
    """Raised when writing an object into the local cache fails."""


class RecoverableMetadataError(RuntimeError):
    """Raised while loading persisted metadata that cannot be trusted."""
