"""Structured errors raised by querycache.

Every error carries a machine-readable ``code`` and a ``recoverable`` flag so
callers can decide whether retrying the same request makes sense.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    INVALID_OPTIONS = "INVALID_OPTIONS"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    COLLECTION_NOT_FOUND = "COLLECTION_NOT_FOUND"
    FAILED_PRECONDITION = "FAILED_PRECONDITION"
    SOURCE_UNAVAILABLE = "SOURCE_UNAVAILABLE"
    SOURCE_FAILED = "SOURCE_FAILED"
    STORAGE_FULL = "STORAGE_FULL"


_RECOVERABLE = frozenset({ErrorCode.SOURCE_UNAVAILABLE, ErrorCode.STORAGE_FULL})


class QueryCacheError(Exception):
    """Base class for all querycache errors."""

    def __init__(self, code: ErrorCode, message: str, recoverable: bool | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.recoverable = code in _RECOVERABLE if recoverable is None else recoverable

    def to_dict(self) -> dict[str, object]:
        return {
            "error": {
                "code": self.code.value,
                "message": self.message,
                "recoverable": self.recoverable,
            }
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code.value!r}, message={self.message!r})"


class DataSourceError(QueryCacheError):
    """The upstream collection backend failed. Never cached, never retried."""


class StorageFullError(QueryCacheError):
    """The durable store has no room for another entry."""

    def __init__(self, message: str = "durable store is full") -> None:
        super().__init__(ErrorCode.STORAGE_FULL, message)


class InvalidOptionsError(QueryCacheError):
    """Malformed query options. Raised before any I/O happens."""

    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.INVALID_OPTIONS, message, recoverable=False)
