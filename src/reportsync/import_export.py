"""Queue backup and restore.

Exports are versioned JSON envelopes::

    {"version": 1, "exported_at": "...", "items": [...]}

Imports accept such an envelope, a bare list of records, or the legacy
camelCase record layout. Malformed records are rejected one by one and
reported; only input that is unusable as a whole raises.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from .exceptions import ImportValidationError
from .models import ItemStatus, QueueItem, utcnow
from .store import SCHEMA_VERSION, migrate_record

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("id", "created_at", "payload", "status")


@dataclass
class RejectedRecord:
    index: int
    reason: str


@dataclass
class ImportBatch:
    """Records accepted and rejected from one import payload."""

    items: List[QueueItem] = field(default_factory=list)
    rejected: List[RejectedRecord] = field(default_factory=list)

    @property
    def rejected_count(self) -> int:
        return len(self.rejected)


def export_queue(items: Iterable[QueueItem]) -> str:
    records = [item.to_record() for item in items]
    envelope = {
        "version": SCHEMA_VERSION,
        "exported_at": utcnow().isoformat(),
        "count": len(records),
        "items": records,
    }
    return json.dumps(envelope, indent=2)


def parse_import(data: Any) -> ImportBatch:
    """Validate import data and convert it into queue items.

    Args:
        data: JSON text/bytes, or already decoded list/envelope

    Returns:
        ImportBatch with the accepted items and per-record rejections

    Raises:
        ImportValidationError: If the data cannot be parsed, is not a list
            of records, or no record is valid
    """
    records = _extract_records(_decode(data))

    batch = ImportBatch()
    seen_ids = set()
    for index, record in enumerate(records):
        reason = _validate_record(record)
        if reason is None:
            try:
                item = _record_to_item(record)
            except ValidationError as exc:
                reason = f"invalid record: {exc.errors()[0]['msg']}"
            else:
                if item.id in seen_ids:
                    reason = f"duplicate id {item.id} in import"
                else:
                    seen_ids.add(item.id)
                    batch.items.append(item)
                    continue
        batch.rejected.append(RejectedRecord(index=index, reason=reason))

    if batch.rejected:
        logger.warning(
            "Rejected malformed import records",
            extra={
                "rejected": batch.rejected_count,
                "accepted": len(batch.items),
            },
        )

    if records and not batch.items:
        raise ImportValidationError(
            f"No valid items to import ({batch.rejected_count} rejected; "
            f"first error: {batch.rejected[0].reason})"
        )
    return batch


def _decode(data: Any) -> Any:
    if isinstance(data, (bytes, bytearray)):
        try:
            data = bytes(data).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ImportValidationError("Import data is not UTF-8 text") from exc
    if isinstance(data, str):
        try:
            return json.loads(data)
        except json.JSONDecodeError as exc:
            raise ImportValidationError(f"Failed to parse queue data: {exc}") from exc
    return data


def _extract_records(data: Any) -> List[Any]:
    if isinstance(data, dict):
        version = data.get("version")
        if version is not None and (not isinstance(version, int) or version > SCHEMA_VERSION):
            raise ImportValidationError(f"Unsupported export version: {version!r}")
        data = data.get("items")
    if not isinstance(data, list):
        raise ImportValidationError("Invalid file format: expected a list of queue items")
    return data


def _validate_record(record: Any) -> Optional[str]:
    if not isinstance(record, dict):
        return "record is not an object"
    migrated = migrate_record(record)
    missing = [name for name in REQUIRED_FIELDS if migrated.get(name) in (None, "")]
    if missing:
        return f"missing required fields: {', '.join(missing)}"
    if not isinstance(migrated["payload"], dict):
        return "payload must be an object"
    try:
        status = ItemStatus(migrated["status"])
    except ValueError:
        return f"unknown status {migrated['status']!r}"
    if status == ItemStatus.COMPLETED:
        return "completed items are not retained"
    return None


def _record_to_item(record: Dict[str, Any]) -> QueueItem:
    migrated = migrate_record(record)
    if migrated["status"] == ItemStatus.PROCESSING.value:
        # Not in flight in this process
        migrated["status"] = ItemStatus.PENDING.value
    fields = {name: migrated.get(name) for name in QueueItem.model_fields if name in migrated}
    return QueueItem.model_validate(fields)


__all__ = [
    "ImportBatch",
    "REQUIRED_FIELDS",
    "RejectedRecord",
    "export_queue",
    "parse_import",
]
