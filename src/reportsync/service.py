"""Caller-facing facade over the offline report queue.

:class:`OfflineQueueService` is what a host application talks to: it
enqueues reports while offline, exposes the queue for display, and owns
the sync engine and its scheduler. All collaborators are injected so the
same service runs against the HTTP transport in production and against
test doubles in tests.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Union

from .config import SyncConfig, create_backend
from .connectivity import ConnectivitySignal, HttpProbeConnectivity, ManualConnectivity
from .engine import SleepFunc, SyncEngine, SyncPassReport
from .events import EventHandler, EventName, QueueEventNotifier, QueueEventType
from .exceptions import ItemNotFoundError
from .import_export import export_queue, parse_import
from .models import ItemStatus, QueueItem, QueueStats, utcnow
from .retry_policy import RetryPolicy
from .scheduler import IntervalTimer, SyncScheduler
from .state_machine import StateMachineValidator, TransitionActor
from .stats import HealthThresholds, collect_queue_health, compute_queue_stats
from .storage import KeyValueStore, MemoryKeyValueStore
from .store import DEFAULT_QUEUE_KEY, QueueStore
from .transport import HttpIngestionTransport, IngestionTransport

logger = logging.getLogger(__name__)


class OfflineQueueService:
    """Offline queue with automatic synchronization.

    Example:
        >>> service = OfflineQueueService(
        ...     backend=FileKeyValueStore(Path("~/.reportsync/queue").expanduser()),
        ...     transport=HttpIngestionTransport("https://reports.example.org/api"),
        ...     connectivity=ManualConnectivity(online=False),
        ... )
        >>> item_id = service.add_to_queue({"title": "Pothole on Main St"})
        >>> await service.start()
    """

    def __init__(
        self,
        backend: Optional[KeyValueStore] = None,
        *,
        transport: Optional[IngestionTransport] = None,
        connectivity: Optional[ConnectivitySignal] = None,
        retry_policy: Optional[RetryPolicy] = None,
        queue_key: str = DEFAULT_QUEUE_KEY,
        timer: Optional[IntervalTimer] = None,
        sync_interval_seconds: float = 30.0,
        initial_delay_seconds: float = 2.0,
        health_thresholds: Optional[HealthThresholds] = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self._store = QueueStore(backend or MemoryKeyValueStore(), queue_key)
        self._notifier = QueueEventNotifier()
        self._validator = StateMachineValidator()
        self._connectivity = connectivity or ManualConnectivity(online=True)
        self._transport = transport
        self._thresholds = health_thresholds or HealthThresholds()
        self._engine = SyncEngine(
            self._store,
            notifier=self._notifier,
            retry_policy=retry_policy,
            connectivity=self._connectivity,
            transport=transport,
            validator=self._validator,
            sleep=sleep,
        )
        self._scheduler: Optional[SyncScheduler] = None
        if transport is not None:
            self._scheduler = SyncScheduler(
                self._engine,
                self._connectivity,
                transport,
                timer=timer,
                interval_seconds=sync_interval_seconds,
                initial_delay_seconds=initial_delay_seconds,
                sleep=sleep,
            )

    @classmethod
    def from_config(
        cls,
        config: SyncConfig,
        *,
        transport: Optional[IngestionTransport] = None,
        connectivity: Optional[ConnectivitySignal] = None,
        timer: Optional[IntervalTimer] = None,
    ) -> "OfflineQueueService":
        """Build a service from validated configuration.

        An HTTP transport and probe-based connectivity are created from
        ``config.transport`` unless explicit ones are given.
        """
        transport_config = config.transport
        if transport is None and transport_config.base_url:
            transport = HttpIngestionTransport(
                transport_config.base_url,
                timeout_seconds=transport_config.timeout_seconds,
                headers=transport_config.headers,
            )
        if connectivity is None:
            probe_url = transport_config.probe_url or transport_config.base_url
            if probe_url:
                connectivity = HttpProbeConnectivity(
                    probe_url, timeout_seconds=min(transport_config.timeout_seconds, 10.0)
                )

        return cls(
            create_backend(config),
            transport=transport,
            connectivity=connectivity,
            retry_policy=config.retry.to_policy(),
            queue_key=config.storage.queue_key,
            timer=timer,
            sync_interval_seconds=config.scheduler.sync_interval_seconds,
            initial_delay_seconds=config.scheduler.initial_delay_seconds,
            health_thresholds=config.health.to_thresholds(),
        )

    @property
    def store(self) -> QueueStore:
        return self._store

    @property
    def engine(self) -> SyncEngine:
        return self._engine

    @property
    def scheduler(self) -> Optional[SyncScheduler]:
        return self._scheduler

    @property
    def connectivity(self) -> ConnectivitySignal:
        return self._connectivity

    @property
    def validator(self) -> StateMachineValidator:
        return self._validator

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Recover interrupted items and start automatic synchronization."""
        recovered = self._engine.recover_interrupted()
        if self._scheduler is not None:
            await self._scheduler.start()
        logger.info(
            "Offline queue service started",
            extra={"recovered": recovered, "queued": self._store.count()},
        )

    async def stop(self) -> None:
        if self._scheduler is not None:
            await self._scheduler.stop()
        aclose = getattr(self._transport, "aclose", None)
        if aclose is not None:
            await aclose()
        logger.info("Offline queue service stopped")

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    def add_to_queue(self, payload: Dict[str, Any]) -> str:
        """Queue a report for later delivery.

        Args:
            payload: Report data; an ``attachments`` entry is uploaded
                after the report itself is accepted

        Returns:
            The new item id, reused for every delivery attempt

        Raises:
            QueueStoreError: If the item could not be persisted
        """
        item = QueueItem(payload=dict(payload))
        self._store.append(item)
        logger.info("Added report to offline queue", extra={"item_id": item.id})
        self._notifier.emit(QueueEventType.ITEM_ADDED, item)
        return item.id

    def get_queue(self) -> List[QueueItem]:
        return sorted(self._store.load(), key=lambda item: item.created_at)

    def get_item(self, item_id: str) -> Optional[QueueItem]:
        return self._store.get(item_id)

    def require_item(self, item_id: str) -> QueueItem:
        item = self._store.get(item_id)
        if item is None:
            raise ItemNotFoundError(item_id)
        return item

    def get_queue_stats(self) -> QueueStats:
        return compute_queue_stats(self._store.load())

    def get_health(self) -> Dict[str, Any]:
        stats = self.get_queue_stats()
        return collect_queue_health(
            stats,
            online=self._connectivity.is_online(),
            syncing=self._engine.is_syncing,
            thresholds=self._thresholds,
            store_warning=self._store.last_load_error,
        )

    def remove_from_queue(self, item_id: str) -> bool:
        """Delete a pending or failed item.

        Returns:
            False if the item is unknown or currently being submitted
        """
        item = self._store.get(item_id)
        if item is None:
            return False
        if not self._validator.can_transition(
            item.status, ItemStatus.COMPLETED, TransitionActor.OPERATOR
        ):
            logger.warning(
                "Refusing to remove queue item",
                extra={"item_id": item_id, "status": item.status.value},
            )
            return False

        removed = self._store.remove_where(
            lambda current: current.id == item_id and current.status == item.status
        )
        if not removed:
            return False
        self._validator.validate_transition(
            item_id, item.status, ItemStatus.COMPLETED, actor=TransitionActor.OPERATOR
        )
        logger.info("Removed item from offline queue", extra={"item_id": item_id})
        self._notifier.emit(QueueEventType.ITEM_REMOVED, item_id)
        return True

    def update_item_status(
        self,
        item_id: str,
        status: Union[ItemStatus, str],
        error: Optional[str] = None,
        *,
        actor: TransitionActor = TransitionActor.OPERATOR,
    ) -> Optional[QueueItem]:
        """Move an item to ``status``.

        Recording an ``error`` also increments ``retry_count`` and stamps
        ``last_attempt_at``. Moving an item to ``completed`` deletes it.

        Returns:
            The updated item, or None if the id is unknown (or the item
            was deleted because it completed)

        Raises:
            InvalidStateTransitionError: If ``actor`` may not perform the
                transition
        """
        target = ItemStatus(status)
        item = self._store.get(item_id)
        if item is None:
            return None

        self._validator.validate_transition(
            item_id, item.status, target, actor=actor, reason=error
        )

        if target == ItemStatus.COMPLETED:
            if self._store.remove(item_id):
                self._notifier.emit(QueueEventType.ITEM_REMOVED, item_id)
            return None

        def change(current: QueueItem) -> QueueItem:
            update: Dict[str, Any] = {"status": target}
            if current.status == ItemStatus.FAILED and target == ItemStatus.PENDING:
                # Manual retry starts a fresh budget
                update.update(retry_count=0, last_error=None, last_error_kind=None)
            elif error is not None:
                update.update(
                    retry_count=current.retry_count + 1,
                    last_error=error,
                    last_attempt_at=utcnow(),
                )
            return current.model_copy(update=update)

        updated = self._store.apply(item_id, change)
        if updated is not None:
            self._notifier.emit(QueueEventType.ITEM_UPDATED, updated)
        return updated

    async def run_pass(
        self, transport: Optional[IngestionTransport] = None
    ) -> SyncPassReport:
        return await self._engine.run_pass(transport or self._transport)

    def retry_item(self, item_id: str) -> bool:
        """Move one failed item back to pending with a fresh budget.

        Returns:
            False if the item is unknown or not failed
        """
        item = self._store.get(item_id)
        if item is None or item.status != ItemStatus.FAILED:
            return False
        return self.update_item_status(item_id, ItemStatus.PENDING) is not None

    def retry_failed_items(self) -> int:
        return self._engine.retry_failed_items()

    def clear_failed_items(self) -> int:
        return self._engine.clear_failed_items()

    def export_queue(self) -> str:
        return export_queue(self.get_queue())

    def import_queue(self, data: Any) -> int:
        """Merge exported queue data into the store.

        Items whose id is already queued are left untouched.

        Returns:
            Number of items added

        Raises:
            ImportValidationError: If the data is unusable as a whole
        """
        batch = parse_import(data)
        added = self._store.merge(batch.items)
        for item in added:
            self._notifier.emit(QueueEventType.ITEM_ADDED, item)
        logger.info(
            "Imported queue items",
            extra={
                "added": len(added),
                "already_queued": len(batch.items) - len(added),
                "rejected": batch.rejected_count,
            },
        )
        return len(added)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, event: EventName, handler: EventHandler) -> None:
        self._notifier.subscribe(event, handler)

    def unsubscribe(self, event: EventName, handler: EventHandler) -> bool:
        return self._notifier.unsubscribe(event, handler)


__all__ = ["OfflineQueueService"]
