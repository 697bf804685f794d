"""Custom exceptions for queue, transport and import operations."""

from __future__ import annotations

from typing import Optional

from .models import FailureKind


class ReportSyncError(Exception):
    """Base class for errors raised by reportsync."""

    pass


class QueueStoreError(ReportSyncError):
    """Raised when the durable store cannot persist a change.

    Only raised where the caller must know that nothing was written,
    e.g. when a new report could not be queued. Reads never raise; they
    fall back to a recovery read or an empty queue.
    """

    kind = FailureKind.STORE_IO


class InvalidStateTransitionError(ValueError):
    """Raised when an invalid item state transition is attempted.

    Example:
        Attempting to move a PENDING item straight to FAILED without a
        submission attempt raises this exception.
    """

    pass


class ItemNotFoundError(KeyError):
    """Raised when an item id is not present in the queue."""

    pass


class ImportValidationError(ValueError):
    """Raised when imported queue data is unusable as a whole.

    Individual malformed records are skipped and reported instead; this
    is only raised when the input cannot be parsed, is not a list of
    records, or contains no valid record at all.
    """

    pass


class TransportError(ReportSyncError):
    """Raised by ingestion transports when a submission fails.

    Attributes:
        kind: Failure classification used by the retry policy
        status_code: HTTP status code when the failure came from a response
    """

    kind = FailureKind.TRANSIENT

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientTransportError(TransportError):
    """Network unreachable, timeout, or a 5xx/429 response."""

    kind = FailureKind.TRANSIENT


class PermanentTransportError(TransportError):
    """The service refused the report (4xx other than validation)."""

    kind = FailureKind.PERMANENT


class ValidationTransportError(TransportError):
    """The service rejected the report payload as invalid."""

    kind = FailureKind.VALIDATION


class ConfigurationError(ReportSyncError):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


__all__ = [
    "ConfigurationError",
    "ImportValidationError",
    "InvalidStateTransitionError",
    "ItemNotFoundError",
    "PermanentTransportError",
    "QueueStoreError",
    "ReportSyncError",
    "TransientTransportError",
    "TransportError",
    "ValidationTransportError",
]
