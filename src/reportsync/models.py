"""Domain models for the offline report queue."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ItemStatus(str, Enum):
    """Queue item lifecycle states."""

    PENDING = "pending"  # Waiting for a sync pass
    PROCESSING = "processing"  # Submission in flight
    COMPLETED = "completed"  # Delivered (never retained, item is removed)
    FAILED = "failed"  # Last attempt failed


class FailureKind(str, Enum):
    """Failure classification for retry decisions."""

    TRANSIENT = "transient"  # Network unreachable, 5xx, timeouts
    PERMANENT = "permanent"  # Payload rejected by the service
    VALIDATION = "validation"  # Payload failed server-side validation
    STORE_IO = "store_io"  # Local persistence failed


class QueueItem(BaseModel):
    """A single report waiting for delivery.

    The ``id`` is generated once at creation and reused for every
    submission attempt, so the ingestion service can deduplicate
    repeated deliveries of the same report.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = Field(default_factory=utcnow)
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: ItemStatus = ItemStatus.PENDING
    retry_count: int = Field(default=0, ge=0)
    last_error: Optional[str] = None
    last_error_kind: Optional[FailureKind] = None
    last_attempt_at: Optional[datetime] = None

    @field_validator("created_at", "last_attempt_at")
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Treat timestamps without a timezone as UTC."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @property
    def attachments(self) -> List[Any]:
        attachments = self.payload.get("attachments") or []
        if isinstance(attachments, list):
            return attachments
        return [attachments]

    def to_record(self) -> Dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        return self.model_dump(mode="json")


@dataclass
class QueueStats:
    """Counts derived from a queue snapshot."""

    total: int = 0
    pending: int = 0
    processing: int = 0
    failed: int = 0
    completed: int = 0
    retry_count: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


__all__ = [
    "FailureKind",
    "ItemStatus",
    "QueueItem",
    "QueueStats",
    "utcnow",
]
