"""Retry budget and failure classification for queued reports.

Automatic passes retry a failed report until its retry budget is spent.
Permanent and validation failures are not retried automatically; they
keep their recorded cause and remain retryable by an operator.
"""

from __future__ import annotations

import asyncio
import sqlite3
from typing import Optional

from pydantic import BaseModel, Field

from .exceptions import QueueStoreError, TransportError
from .models import FailureKind, ItemStatus, QueueItem

RETRYABLE_KINDS = frozenset({FailureKind.TRANSIENT})


def classify_failure(exc: BaseException) -> FailureKind:
    """Map an exception raised during submission to a failure kind.

    Unknown exceptions are treated as transient so that a programming
    error in a transport cannot silently drop a report.
    """
    if isinstance(exc, TransportError):
        return exc.kind
    if isinstance(exc, QueueStoreError):
        return FailureKind.STORE_IO
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return FailureKind.TRANSIENT
    if isinstance(exc, sqlite3.Error):
        return FailureKind.STORE_IO
    return FailureKind.TRANSIENT


def describe_failure(exc: BaseException) -> str:
    message = str(exc).strip()
    if not message:
        return exc.__class__.__name__
    return f"{exc.__class__.__name__}: {message}"


class RetryPolicy(BaseModel):
    """Decides whether a queued item may be attempted again.

    Attributes:
        max_retries: Failed attempts after which automatic passes skip the item
        inter_item_delay_seconds: Fixed pause between item attempts in a pass
        permanent_failures_no_retry: Skip items whose last failure was
            permanent or a validation error
    """

    max_retries: int = Field(default=3, ge=1, le=20)
    inter_item_delay_seconds: float = Field(default=1.0, ge=0.0, le=60.0)
    permanent_failures_no_retry: bool = True

    def should_attempt(self, item: QueueItem) -> bool:
        if item.retry_count >= self.max_retries:
            return False
        if (
            item.status == ItemStatus.FAILED
            and self.permanent_failures_no_retry
            and item.last_error_kind is not None
            and not self.is_retryable(item.last_error_kind)
        ):
            return False
        return True

    def is_retryable(self, kind: Optional[FailureKind]) -> bool:
        if kind is None:
            return True
        return kind in RETRYABLE_KINDS

    def classify(self, exc: BaseException) -> FailureKind:
        return classify_failure(exc)

    def remaining_attempts(self, item: QueueItem) -> int:
        return max(0, self.max_retries - item.retry_count)


__all__ = [
    "RETRYABLE_KINDS",
    "RetryPolicy",
    "classify_failure",
    "describe_failure",
]
