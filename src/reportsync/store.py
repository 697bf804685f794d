"""Durable queue storage with schema versioning and recovery reads.

The whole queue is persisted as one JSON document under a single key::

    {"version": 1, "updated_at": "...", "items": [...]}

Every mutation is a read-modify-write of the complete list performed
under a process-wide lock (and, for backends that provide one, a
cross-process advisory lock), so no partially applied change is ever
observable. Before each write the previous good document is copied to
``<key>.bak``; a corrupted or unreadable primary document is preserved
under ``<key>.corrupt`` and the backup is used instead.
"""

from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from pydantic import ValidationError

from .exceptions import QueueStoreError
from .models import ItemStatus, QueueItem, utcnow
from .storage import KeyValueStore

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
DEFAULT_QUEUE_KEY = "offline_reports"

# Field names used by the unversioned layout (a bare JSON list)
LEGACY_FIELD_MAP = {
    "timestamp": "created_at",
    "createdAt": "created_at",
    "data": "payload",
    "retryCount": "retry_count",
    "lastError": "last_error",
    "lastAttempt": "last_attempt_at",
    "lastAttemptAt": "last_attempt_at",
}


def migrate_record(record: Dict[str, Any]) -> Dict[str, Any]:
    """Rename legacy camelCase fields to the current names.

    Current names win when a record carries both spellings.
    """
    migrated = dict(record)
    for legacy, current in LEGACY_FIELD_MAP.items():
        if legacy in migrated:
            value = migrated.pop(legacy)
            migrated.setdefault(current, value)
    if migrated.get("retry_count") is None:
        migrated["retry_count"] = 0
    return migrated


def decode_document(raw: bytes) -> List[QueueItem]:
    """Decode a persisted queue document.

    Raises:
        ValueError: If the document is not valid JSON, has an unknown
            layout or version, or holds an invalid record
    """
    data = json.loads(raw.decode("utf-8"))

    if isinstance(data, list):
        # Unversioned legacy layout
        records = [migrate_record(record) for record in data]
    elif isinstance(data, dict):
        version = data.get("version")
        if not isinstance(version, int) or version > SCHEMA_VERSION:
            raise ValueError(f"Unsupported queue schema version: {version!r}")
        records = data.get("items")
        if not isinstance(records, list):
            raise ValueError("Queue document has no 'items' list")
    else:
        raise ValueError("Queue document must be a list or an object")

    try:
        return [QueueItem.model_validate(record) for record in records]
    except ValidationError as exc:
        raise ValueError(f"Invalid queue record: {exc}") from exc


def encode_document(items: Iterable[QueueItem]) -> bytes:
    document = {
        "version": SCHEMA_VERSION,
        "updated_at": utcnow().isoformat(),
        "items": [item.to_record() for item in items],
    }
    return json.dumps(document).encode("utf-8")


class QueueStore:
    """CRUD over the persisted list of queue items, keyed by item id.

    Attributes:
        last_load_error: Description of the most recent failed load, or
            None when the last load succeeded. Surfaced by the health
            report so callers can warn the operator.
    """

    def __init__(self, backend: KeyValueStore, key: str = DEFAULT_QUEUE_KEY) -> None:
        self._backend = backend
        self._key = key
        self._backup_key = f"{key}.bak"
        self._corrupt_key = f"{key}.corrupt"
        self._lock = threading.RLock()
        self.last_load_error: Optional[str] = None

    @property
    def key(self) -> str:
        return self._key

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        with self._lock:
            lock_factory = getattr(self._backend, "lock", None)
            if lock_factory is None:
                yield
                return
            with lock_factory(self._key):
                yield

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def load(self) -> List[QueueItem]:
        """Return all items; never raises."""
        with self._transaction():
            return self._load_unlocked()

    def get(self, item_id: str) -> Optional[QueueItem]:
        for item in self.load():
            if item.id == item_id:
                return item
        return None

    def _load_unlocked(self) -> List[QueueItem]:
        try:
            raw = self._backend.read(self._key)
        except Exception as exc:  # noqa: BLE001 - any backend failure
            return self._recover(f"Queue store unreadable: {exc}")

        if raw is None:
            self.last_load_error = None
            return []

        try:
            items = decode_document(raw)
        except ValueError as exc:
            return self._recover(f"Queue store corrupted: {exc}", corrupt=raw)

        self.last_load_error = None
        return items

    def _recover(self, reason: str, corrupt: Optional[bytes] = None) -> List[QueueItem]:
        logger.warning(
            "Queue load failed, attempting recovery read",
            extra={"queue_key": self._key, "reason": reason},
        )
        self.last_load_error = reason

        if corrupt is not None:
            try:
                self._backend.write(self._corrupt_key, corrupt)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "Failed to preserve corrupted queue document",
                    extra={"queue_key": self._key, "error": str(exc)},
                )

        try:
            raw = self._backend.read(self._backup_key)
            if raw is None:
                return []
            items = decode_document(raw)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Queue backup unusable, starting from an empty queue",
                extra={"queue_key": self._key, "error": str(exc)},
            )
            return []

        logger.warning(
            "Recovered queue from backup",
            extra={"queue_key": self._key, "items": len(items)},
        )
        return items

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def save(self, items: List[QueueItem]) -> bool:
        """Replace the persisted queue; returns False on I/O errors."""
        with self._transaction():
            return self._write_unlocked(items)

    def _write_unlocked(self, items: List[QueueItem]) -> bool:
        try:
            data = encode_document(items)
            previous = self._backend.read(self._key)
            if previous is not None and _is_decodable(previous):
                self._backend.write(self._backup_key, previous)
            self._backend.write(self._key, data)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Failed to save queue",
                extra={"queue_key": self._key, "items": len(items), "error": str(exc)},
            )
            return False
        return True

    def append(self, item: QueueItem) -> None:
        """Persist a new item.

        Raises:
            ValueError: If an item with the same id already exists
            QueueStoreError: If the queue could not be written
        """
        with self._transaction():
            items = self._load_unlocked()
            if any(existing.id == item.id for existing in items):
                raise ValueError(f"Queue item {item.id} already exists")
            items.append(item)
            if not self._write_unlocked(items):
                raise QueueStoreError(f"Failed to persist queue item {item.id}")

    def remove(self, item_id: str) -> bool:
        """Delete an item; returns False if absent or not persisted."""
        return bool(self.remove_where(lambda item: item.id == item_id))

    def remove_where(self, predicate: Callable[[QueueItem], bool]) -> List[QueueItem]:
        """Delete every matching item and return what was removed."""
        with self._transaction():
            items = self._load_unlocked()
            removed = [item for item in items if predicate(item)]
            if not removed:
                return []
            kept = [item for item in items if not predicate(item)]
            if not self._write_unlocked(kept):
                return []
            return removed

    def apply(
        self, item_id: str, change: Callable[[QueueItem], QueueItem]
    ) -> Optional[QueueItem]:
        """Atomically replace one item with ``change(item)``.

        Returns:
            The updated item, or None if the id is unknown or the write
            failed. Removed items are never recreated.
        """
        with self._transaction():
            items = self._load_unlocked()
            for index, item in enumerate(items):
                if item.id == item_id:
                    updated = change(item)
                    items[index] = updated
                    if not self._write_unlocked(items):
                        return None
                    return updated
            return None

    def update(self, item_id: str, **fields: Any) -> Optional[QueueItem]:
        """Atomically merge ``fields`` into one item."""
        return self.apply(item_id, lambda item: _with_fields(item, fields))

    def update_where(
        self, predicate: Callable[[QueueItem], bool], **fields: Any
    ) -> List[QueueItem]:
        """Merge ``fields`` into every matching item; returns updated items."""
        with self._transaction():
            items = self._load_unlocked()
            updated: List[QueueItem] = []
            for index, item in enumerate(items):
                if predicate(item):
                    items[index] = _with_fields(item, fields)
                    updated.append(items[index])
            if not updated:
                return []
            if not self._write_unlocked(items):
                return []
            return updated

    def merge(self, incoming: Iterable[QueueItem]) -> List[QueueItem]:
        """Add items whose id is not yet stored; existing items win.

        Returns:
            The newly added items (empty if the write failed)
        """
        with self._transaction():
            items = self._load_unlocked()
            known = {item.id for item in items}
            added: List[QueueItem] = []
            for item in incoming:
                if item.id in known:
                    continue
                known.add(item.id)
                added.append(item)
            if not added:
                return []
            if not self._write_unlocked(items + added):
                return []
            return added

    def count(self, status: Optional[ItemStatus] = None) -> int:
        items = self.load()
        if status is None:
            return len(items)
        return sum(1 for item in items if item.status == status)


def _with_fields(item: QueueItem, fields: Dict[str, Any]) -> QueueItem:
    data = item.model_dump()
    data.update(fields)
    return QueueItem.model_validate(data)


def _is_decodable(raw: bytes) -> bool:
    try:
        decode_document(raw)
    except ValueError:
        return False
    return True


__all__ = [
    "DEFAULT_QUEUE_KEY",
    "QueueStore",
    "SCHEMA_VERSION",
    "decode_document",
    "encode_document",
    "migrate_record",
]
