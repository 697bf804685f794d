"""In-process publish/subscribe for queue changes.

Handlers run synchronously in the emitting thread. Each invocation is
isolated: a handler that raises is logged and counted, and delivery
continues with the remaining handlers.

Example:
    >>> notifier = QueueEventNotifier()
    >>> notifier.subscribe(QueueEventType.ITEM_ADDED, lambda item: print(item.id))
    >>> notifier.emit(QueueEventType.ITEM_ADDED, item)
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Any, Callable, Dict, List, Union

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], None]


class QueueEventType(str, Enum):
    """Queue change notifications."""

    ITEM_ADDED = "item_added"  # Payload: QueueItem
    ITEM_UPDATED = "item_updated"  # Payload: QueueItem
    ITEM_REMOVED = "item_removed"  # Payload: item id


EventName = Union[QueueEventType, str]


def _normalize(event: EventName) -> QueueEventType:
    if isinstance(event, QueueEventType):
        return event
    try:
        return QueueEventType(event)
    except ValueError:
        raise ValueError(
            f"Unknown queue event '{event}'. "
            f"Valid events: {[e.value for e in QueueEventType]}"
        ) from None


class QueueEventNotifier:
    """Dispatches queue events to subscribed handlers.

    Attributes:
        emit_count: Total number of events emitted
        error_count: Total number of handler invocations that raised
    """

    def __init__(self) -> None:
        self._handlers: Dict[QueueEventType, List[EventHandler]] = {
            event: [] for event in QueueEventType
        }
        self._lock = threading.Lock()
        self.emit_count = 0
        self.error_count = 0

    def subscribe(self, event: EventName, handler: EventHandler) -> None:
        event_type = _normalize(event)
        with self._lock:
            self._handlers[event_type].append(handler)

    def unsubscribe(self, event: EventName, handler: EventHandler) -> bool:
        """Remove a handler; returns False if it was not subscribed."""
        event_type = _normalize(event)
        with self._lock:
            handlers = self._handlers[event_type]
            if handler not in handlers:
                return False
            handlers.remove(handler)
            return True

    def handler_count(self, event: EventName) -> int:
        with self._lock:
            return len(self._handlers[_normalize(event)])

    def emit(self, event: EventName, data: Any) -> int:
        """Deliver ``data`` to every handler of ``event``.

        Returns:
            Number of handlers that completed without raising
        """
        event_type = _normalize(event)
        with self._lock:
            handlers = list(self._handlers[event_type])
            self.emit_count += 1

        delivered = 0
        for handler in handlers:
            try:
                handler(data)
                delivered += 1
            except Exception as e:  # noqa: BLE001
                with self._lock:
                    self.error_count += 1
                logger.error(
                    f"Queue event handler failed for {event_type.value}: {e}",
                    exc_info=True,
                )
        return delivered


__all__ = ["EventHandler", "QueueEventNotifier", "QueueEventType"]
