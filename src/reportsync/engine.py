"""Sync engine delivering queued reports to the ingestion service.

A sync pass walks the eligible items oldest first and submits them one at
a time. Passes are single-flight: the guard is an ``asyncio.Lock`` held
with ``async with`` for the whole pass, and a second caller that finds it
held returns immediately instead of waiting.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .connectivity import ConnectivitySignal
from .events import QueueEventNotifier, QueueEventType
from .models import ItemStatus, QueueItem, utcnow
from .retry_policy import RetryPolicy, describe_failure
from .state_machine import StateMachineValidator, TransitionActor
from .store import QueueStore
from .transport import IngestionTransport, SubmissionReceipt

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[Any]]


@dataclass
class SyncPassReport:
    """Outcome of one sync pass.

    Attributes:
        started_at: When the pass was requested
        finished_at: When the pass ended (None for skipped passes)
        attempted: Items submitted to the transport
        succeeded: Items delivered and removed from the queue
        failed: Items whose submission failed
        skipped_items: Items selected but no longer eligible when reached
        attachment_failures: Attachment uploads that failed after delivery
        attempted_ids: Item ids in submission order
        skipped: True if the whole pass was a no-op
        skip_reason: ``in_progress`` or ``offline`` for skipped passes
        error: Unexpected error that ended the pass early, if any
    """

    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped_items: int = 0
    attachment_failures: int = 0
    attempted_ids: List[str] = field(default_factory=list)
    skipped: bool = False
    skip_reason: Optional[str] = None
    error: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        data["duration_seconds"] = self.duration_seconds
        return data


class SyncEngine:
    """Runs sync passes over a :class:`QueueStore`."""

    def __init__(
        self,
        store: QueueStore,
        *,
        notifier: Optional[QueueEventNotifier] = None,
        retry_policy: Optional[RetryPolicy] = None,
        connectivity: Optional[ConnectivitySignal] = None,
        transport: Optional[IngestionTransport] = None,
        validator: Optional[StateMachineValidator] = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self._store = store
        self._notifier = notifier or QueueEventNotifier()
        self._policy = retry_policy or RetryPolicy()
        self._connectivity = connectivity
        self._transport = transport
        self._validator = validator or StateMachineValidator()
        self._sleep = sleep
        self._guard = asyncio.Lock()
        self.last_report: Optional[SyncPassReport] = None

    @property
    def is_syncing(self) -> bool:
        return self._guard.locked()

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._policy

    def is_eligible(self, item: QueueItem) -> bool:
        """True if an automatic pass may submit this item now."""
        if item.status in (ItemStatus.PENDING, ItemStatus.FAILED):
            return self._policy.should_attempt(item)
        return False

    def has_pending_work(self) -> bool:
        return any(self.is_eligible(item) for item in self._store.load())

    async def run_pass(
        self, transport: Optional[IngestionTransport] = None
    ) -> SyncPassReport:
        """Run one sync pass; never raises for item or transport failures.

        Raises:
            ValueError: If no transport was given here or at construction
        """
        transport = transport or self._transport
        if transport is None:
            raise ValueError("run_pass requires an ingestion transport")

        report = SyncPassReport()

        if self._guard.locked():
            logger.info("Sync already in progress, skipping pass")
            return self._skip(report, "in_progress")

        if self._connectivity is not None and not self._connectivity.is_online():
            logger.info("Offline, skipping sync pass")
            return self._skip(report, "offline")

        async with self._guard:
            try:
                await self._run_items(transport, report)
            except Exception as exc:  # noqa: BLE001
                report.error = describe_failure(exc)
                logger.error("Sync pass aborted by unexpected error", exc_info=True)
            finally:
                report.finished_at = utcnow()
                self.last_report = report

        if report.attempted:
            logger.info(
                "Sync pass completed",
                extra={
                    "attempted": report.attempted,
                    "succeeded": report.succeeded,
                    "failed": report.failed,
                    "attachment_failures": report.attachment_failures,
                    "duration_seconds": report.duration_seconds,
                },
            )
        return report

    def _skip(self, report: SyncPassReport, reason: str) -> SyncPassReport:
        report.skipped = True
        report.skip_reason = reason
        return report

    async def _run_items(
        self, transport: IngestionTransport, report: SyncPassReport
    ) -> None:
        candidates = sorted(
            (item for item in self._store.load() if self.is_eligible(item)),
            key=lambda item: item.created_at,
        )
        if not candidates:
            logger.debug("No pending items in offline queue")
            return

        logger.info("Processing queued reports", extra={"count": len(candidates)})
        delay = self._policy.inter_item_delay_seconds
        for index, snapshot in enumerate(candidates):
            attempted = await self._process_item(snapshot.id, transport, report)
            if attempted and delay > 0 and index < len(candidates) - 1:
                await self._sleep(delay)

    async def _process_item(
        self, item_id: str, transport: IngestionTransport, report: SyncPassReport
    ) -> bool:
        # Re-read: the item may have been deleted or retried since the snapshot
        item = self._store.get(item_id)
        if item is None or not self.is_eligible(item):
            report.skipped_items += 1
            return False

        self._validator.validate_transition(
            item.id, item.status, ItemStatus.PROCESSING, actor=TransitionActor.ENGINE
        )
        processing = self._store.update(
            item.id, status=ItemStatus.PROCESSING, last_attempt_at=utcnow()
        )
        if processing is None:
            logger.warning("Could not mark item processing", extra={"item_id": item.id})
            report.skipped_items += 1
            return False
        self._notifier.emit(QueueEventType.ITEM_UPDATED, processing)

        report.attempted += 1
        report.attempted_ids.append(item.id)

        try:
            receipt = await transport.submit(item.payload, idempotency_key=item.id)
        except asyncio.CancelledError:
            self._release_interrupted(item.id)
            raise
        except Exception as exc:  # noqa: BLE001
            self._fail_in_flight(processing, exc, report)
            return True

        try:
            report.attachment_failures += await self._upload_attachments(item, transport)
            self._complete(processing, receipt, report)
        except asyncio.CancelledError:
            self._release_interrupted(item.id)
            raise
        except Exception as exc:  # noqa: BLE001
            self._fail_in_flight(processing, exc, report)
        return True

    async def _upload_attachments(
        self, item: QueueItem, transport: IngestionTransport
    ) -> int:
        failures = 0
        for attachment in item.attachments:
            try:
                await transport.upload_attachment(attachment, idempotency_key=item.id)
            except Exception as exc:  # noqa: BLE001
                failures += 1
                logger.error(
                    "Attachment upload failed",
                    extra={"item_id": item.id, "error": describe_failure(exc)},
                )
        return failures

    def _complete(
        self, item: QueueItem, receipt: Optional[SubmissionReceipt], report: SyncPassReport
    ) -> None:
        self._validator.validate_transition(
            item.id, ItemStatus.PROCESSING, ItemStatus.COMPLETED, actor=TransitionActor.ENGINE
        )
        removed = self._store.remove(item.id)
        report.succeeded += 1
        if not removed:
            # Left PROCESSING; recovered to PENDING on next start and
            # deduplicated downstream by id
            logger.error("Delivered item could not be removed", extra={"item_id": item.id})
            return
        self._notifier.emit(QueueEventType.ITEM_REMOVED, item.id)
        logger.info(
            "Delivered queued report",
            extra={
                "item_id": item.id,
                "remote_id": getattr(receipt, "remote_id", None),
                "duplicate": bool(getattr(receipt, "duplicate", False)),
            },
        )

    def _fail_in_flight(
        self, item: QueueItem, exc: BaseException, report: SyncPassReport
    ) -> None:
        """Record an error for the in-flight item without ending the pass."""
        try:
            if self._store.get(item.id) is None:
                logger.error(
                    "Unexpected error after queued report was removed",
                    extra={"item_id": item.id, "error": describe_failure(exc)},
                )
                return
            self._record_failure(item, exc, report)
        except Exception:  # noqa: BLE001
            # Left PROCESSING; recovered to PENDING on next start
            report.failed += 1
            logger.error(
                "Could not record failure for queued report",
                extra={"item_id": item.id, "error": describe_failure(exc)},
                exc_info=True,
            )

    def _record_failure(
        self, item: QueueItem, exc: BaseException, report: SyncPassReport
    ) -> None:
        kind = self._policy.classify(exc)
        message = describe_failure(exc)
        self._validator.validate_transition(
            item.id,
            ItemStatus.PROCESSING,
            ItemStatus.FAILED,
            actor=TransitionActor.ENGINE,
            reason=message,
        )
        failed = self._store.apply(
            item.id,
            lambda current: current.model_copy(
                update={
                    "status": ItemStatus.FAILED,
                    "retry_count": current.retry_count + 1,
                    "last_error": message,
                    "last_error_kind": kind,
                    "last_attempt_at": utcnow(),
                }
            ),
        )
        report.failed += 1
        logger.warning(
            "Failed to deliver queued report",
            extra={
                "item_id": item.id,
                "failure_kind": kind.value,
                "error": message,
                "retry_count": failed.retry_count if failed else None,
            },
        )
        if failed is not None:
            self._notifier.emit(QueueEventType.ITEM_UPDATED, failed)

    def _release_interrupted(self, item_id: str) -> None:
        released = self._store.apply(
            item_id,
            lambda current: current.model_copy(update={"status": ItemStatus.PENDING})
            if current.status == ItemStatus.PROCESSING
            else current,
        )
        if released is not None:
            self._notifier.emit(QueueEventType.ITEM_UPDATED, released)

    def retry_failed_items(self) -> int:
        """Move every failed item back to pending with a fresh budget."""
        updated = self._store.update_where(
            lambda item: item.status == ItemStatus.FAILED,
            status=ItemStatus.PENDING,
            retry_count=0,
            last_error=None,
            last_error_kind=None,
        )
        for item in updated:
            self._validator.validate_transition(
                item.id, ItemStatus.FAILED, ItemStatus.PENDING, actor=TransitionActor.OPERATOR
            )
            self._notifier.emit(QueueEventType.ITEM_UPDATED, item)
        logger.info("Reset failed items for retry", extra={"count": len(updated)})
        return len(updated)

    def clear_failed_items(self) -> int:
        """Delete every failed item."""
        removed = self._store.remove_where(lambda item: item.status == ItemStatus.FAILED)
        for item in removed:
            self._validator.validate_transition(
                item.id, ItemStatus.FAILED, ItemStatus.COMPLETED, actor=TransitionActor.OPERATOR
            )
            self._notifier.emit(QueueEventType.ITEM_REMOVED, item.id)
        logger.info("Cleared failed items from offline queue", extra={"count": len(removed)})
        return len(removed)

    def recover_interrupted(self) -> int:
        """Reset items left PROCESSING by a previous process to PENDING.

        Does nothing while a pass is running in this process, because the
        PROCESSING item then belongs to that pass.
        """
        if self.is_syncing:
            return 0
        recovered = self._store.update_where(
            lambda item: item.status == ItemStatus.PROCESSING,
            status=ItemStatus.PENDING,
        )
        for item in recovered:
            self._validator.validate_transition(
                item.id, ItemStatus.PROCESSING, ItemStatus.PENDING, actor=TransitionActor.RECOVERY
            )
            self._notifier.emit(QueueEventType.ITEM_UPDATED, item)
        if recovered:
            logger.warning(
                "Recovered interrupted queue items",
                extra={"count": len(recovered)},
            )
        return len(recovered)


__all__ = ["SleepFunc", "SyncEngine", "SyncPassReport"]
