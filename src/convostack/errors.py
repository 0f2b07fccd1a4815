"""
Error taxonomy for the collection engine.

Errors are classified by kind, never by message text. Remote failures are
decoded once at the API boundary (see remote.decode_remote_error).
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    QUOTA_EXCEEDED = "quota_exceeded"
    NOT_FOUND = "not_found"
    NETWORK = "network"
    IN_PROGRESS = "in_progress"


class EngineError(Exception):
    """Base class for every error the engine raises."""

    kind: ErrorKind = ErrorKind.NETWORK

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(EngineError):
    """A move was rejected locally (self-parent or cycle)."""

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.reason = reason


class QuotaExceededError(EngineError):
    """The remote refused a create because a tier limit was reached."""

    kind = ErrorKind.QUOTA_EXCEEDED

    def __init__(self, message: str, limit: Optional[int] = None):
        super().__init__(message)
        self.limit = limit


class NotFoundError(EngineError):
    kind = ErrorKind.NOT_FOUND


class NetworkError(EngineError):
    """Timeout, connectivity, or an unclassified server error."""

    kind = ErrorKind.NETWORK


class OperationInProgressError(EngineError):
    """A mutation targeted a record that already has one pending."""

    kind = ErrorKind.IN_PROGRESS
