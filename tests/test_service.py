"""Tests for the offline queue service facade."""

import json

import pytest

from reportsync.config import StorageBackend, SyncConfig
from reportsync.connectivity import HttpProbeConnectivity, ManualConnectivity
from reportsync.events import QueueEventType
from reportsync.exceptions import (
    ImportValidationError,
    InvalidStateTransitionError,
    ItemNotFoundError,
)
from reportsync.models import FailureKind, ItemStatus
from reportsync.retry_policy import RetryPolicy
from reportsync.scheduler import ManualTimer
from reportsync.service import OfflineQueueService
from reportsync.state_machine import TransitionActor
from reportsync.storage import FileKeyValueStore, MemoryKeyValueStore

from conftest import make_item


@pytest.fixture
def service(backend, transport, fake_sleep):
    return OfflineQueueService(
        backend,
        transport=transport,
        connectivity=ManualConnectivity(online=False),
        retry_policy=RetryPolicy(inter_item_delay_seconds=0.0),
        timer=ManualTimer(),
        initial_delay_seconds=0.0,
        sleep=fake_sleep,
    )


def test_add_to_queue_persists_and_notifies(service):
    added = []
    service.subscribe(QueueEventType.ITEM_ADDED, added.append)

    item_id = service.add_to_queue({"title": "pothole"})

    item = service.get_item(item_id)
    assert item.status == ItemStatus.PENDING
    assert item.retry_count == 0
    assert item.payload == {"title": "pothole"}
    assert [i.id for i in added] == [item_id]
    assert service.get_queue_stats().pending == 1


def test_get_queue_is_ordered_by_creation(service):
    newer = make_item("newer", minutes_ago=1)
    older = make_item("older", minutes_ago=5)
    service.store.append(newer)
    service.store.append(older)

    assert [i.id for i in service.get_queue()] == [older.id, newer.id]


@pytest.mark.asyncio
async def test_offline_report_is_delivered_after_reconnect(service, transport):
    item_id = service.add_to_queue({"title": "pothole"})
    assert service.get_queue_stats().pending == 1

    await service.start()
    assert transport.submissions == []

    service.connectivity.set_online(True)
    await service.scheduler.wait_idle()

    assert service.get_queue_stats().pending == 0
    assert service.get_item(item_id) is None
    assert transport.submitted_keys == [item_id]
    await service.stop()


@pytest.mark.asyncio
async def test_start_recovers_interrupted_items(service):
    stuck = make_item("stuck", status=ItemStatus.PROCESSING)
    service.store.append(stuck)

    await service.start()

    assert service.get_item(stuck.id).status == ItemStatus.PENDING
    await service.stop()


def test_retry_failed_items(service):
    for i in range(2):
        service.store.append(make_item(f"f{i}", status=ItemStatus.FAILED, retry_count=3))

    assert service.retry_failed_items() == 2

    stats = service.get_queue_stats()
    assert stats.pending == 2
    assert stats.failed == 0
    assert all(i.retry_count == 0 for i in service.get_queue())


def test_clear_failed_items(service):
    pending_id = service.add_to_queue({"title": "keep"})
    for i in range(2):
        service.store.append(make_item(f"f{i}", status=ItemStatus.FAILED, retry_count=1))

    assert service.clear_failed_items() == 2

    assert [i.id for i in service.get_queue()] == [pending_id]


def test_remove_pending_and_failed_items(service):
    removed = []
    service.subscribe(QueueEventType.ITEM_REMOVED, removed.append)
    pending_id = service.add_to_queue({"title": "p"})
    failed = make_item("f", status=ItemStatus.FAILED, retry_count=1)
    service.store.append(failed)

    assert service.remove_from_queue(pending_id) is True
    assert service.remove_from_queue(failed.id) is True
    assert service.remove_from_queue("missing") is False
    assert removed == [pending_id, failed.id]


def test_processing_item_cannot_be_removed(service):
    in_flight = make_item("busy", status=ItemStatus.PROCESSING)
    service.store.append(in_flight)

    assert service.remove_from_queue(in_flight.id) is False
    assert service.get_item(in_flight.id) is not None


def test_update_item_status_records_error(service):
    item_id = service.add_to_queue({"title": "p"})
    service.update_item_status(item_id, ItemStatus.PROCESSING, actor=TransitionActor.ENGINE)

    failed = service.update_item_status(
        item_id, "failed", error="Network Error", actor=TransitionActor.ENGINE
    )

    assert failed.status == ItemStatus.FAILED
    assert failed.retry_count == 1
    assert failed.last_error == "Network Error"
    assert failed.last_attempt_at is not None


def test_update_item_status_rejects_invalid_transition(service):
    item_id = service.add_to_queue({"title": "p"})

    with pytest.raises(InvalidStateTransitionError):
        service.update_item_status(item_id, ItemStatus.FAILED, error="nope")
    assert service.get_item(item_id).status == ItemStatus.PENDING


def test_update_item_status_completed_removes_item(service):
    item_id = service.add_to_queue({"title": "p"})

    assert service.update_item_status(item_id, ItemStatus.COMPLETED) is None
    assert service.get_item(item_id) is None


def test_update_item_status_unknown_id(service):
    assert service.update_item_status("missing", ItemStatus.PENDING) is None


def test_export_then_import_into_empty_service(service, transport):
    service.add_to_queue({"title": "a"})
    service.store.append(make_item("b", status=ItemStatus.FAILED, retry_count=2))
    exported = service.export_queue()

    target = OfflineQueueService(MemoryKeyValueStore(), transport=transport)
    added = []
    target.subscribe(QueueEventType.ITEM_ADDED, added.append)

    assert target.import_queue(exported) == 2

    original = {i.id: i for i in service.get_queue()}
    for item in target.get_queue():
        source = original[item.id]
        assert item.payload == source.payload
        assert item.status == source.status
        assert item.retry_count == source.retry_count
    assert len(added) == 2


def test_import_skips_already_queued_items(service):
    service.add_to_queue({"title": "a"})
    exported = service.export_queue()

    assert service.import_queue(exported) == 0
    assert service.get_queue_stats().total == 1


def test_import_rejects_unusable_data(service):
    with pytest.raises(ImportValidationError):
        service.import_queue("not json")
    with pytest.raises(ImportValidationError):
        service.import_queue(json.dumps([{"id": "x"}]))


def test_health_reports_store_warning(backend, transport):
    backend.write("offline_reports", b"{corrupt")
    service = OfflineQueueService(backend, transport=transport)

    health = service.get_health()

    assert health["status"] == "warning"
    assert health["stats"]["total"] == 0
    assert any("corrupted" in issue for issue in health["issues"])


def test_health_is_healthy_for_small_queue(service):
    service.add_to_queue({"title": "a"})
    health = service.get_health()

    assert health["status"] == "healthy"
    assert health["online"] is False
    assert health["syncing"] is False


def test_unsubscribe(service):
    added = []
    service.subscribe(QueueEventType.ITEM_ADDED, added.append)
    assert service.unsubscribe(QueueEventType.ITEM_ADDED, added.append)

    service.add_to_queue({"title": "a"})
    assert added == []


@pytest.mark.asyncio
async def test_run_pass_without_transport_raises():
    service = OfflineQueueService(MemoryKeyValueStore())
    assert service.scheduler is None
    with pytest.raises(ValueError):
        await service.run_pass()


def test_from_config_builds_file_backed_service(tmp_path):
    config = SyncConfig(
        workspace=tmp_path,
        transport={"base_url": "https://reports.example.org/api"},
        retry={"max_retries": 5},
    )

    service = OfflineQueueService.from_config(config, timer=ManualTimer())
    service.add_to_queue({"title": "a"})

    assert (tmp_path / "queue" / "offline_reports.json").exists()
    assert service.engine.retry_policy.max_retries == 5
    assert isinstance(service.connectivity, HttpProbeConnectivity)
    assert service.scheduler is not None


def test_from_config_memory_backend_without_transport(tmp_path):
    config = SyncConfig(workspace=tmp_path, storage={"backend": StorageBackend.MEMORY})

    service = OfflineQueueService.from_config(config)

    assert service.scheduler is None
    assert isinstance(service.connectivity, ManualConnectivity)
    assert not (tmp_path / "queue").exists()


def test_file_backed_service_survives_restart(tmp_path, transport):
    first = OfflineQueueService(FileKeyValueStore(tmp_path), transport=transport)
    item_id = first.add_to_queue({"title": "persisted"})

    second = OfflineQueueService(FileKeyValueStore(tmp_path), transport=transport)
    assert second.get_item(item_id).payload == {"title": "persisted"}


def test_retry_item_resets_single_failed_item(service):
    failed = make_item(
        "f", status=ItemStatus.FAILED, retry_count=3, last_error="HTTP 403",
        last_error_kind=FailureKind.PERMANENT,
    )
    other = make_item("g", status=ItemStatus.FAILED, retry_count=1)
    pending_id = service.add_to_queue({"title": "p"})
    service.store.append(failed)
    service.store.append(other)

    assert service.retry_item(failed.id) is True
    assert service.retry_item(pending_id) is False
    assert service.retry_item("missing") is False

    reset = service.get_item(failed.id)
    assert reset.status == ItemStatus.PENDING
    assert reset.retry_count == 0
    assert reset.last_error is None
    assert reset.last_error_kind is None
    assert service.get_item(other.id).status == ItemStatus.FAILED


@pytest.mark.asyncio
async def test_imported_naive_timestamp_sorts_and_syncs(service, transport):
    native_id = service.add_to_queue({"title": "native"})
    service.import_queue(
        [
            {
                "id": "legacy-1",
                "created_at": "2024-05-01T12:00:00",
                "payload": {"title": "legacy"},
                "status": "pending",
                "retry_count": 0,
            }
        ]
    )

    assert [i.id for i in service.get_queue()] == ["legacy-1", native_id]

    service.connectivity.set_online(True)
    report = await service.run_pass()

    assert report.error is None
    assert transport.submitted_keys == ["legacy-1", native_id]
    assert service.get_queue_stats().total == 0


def test_require_item(service):
    item_id = service.add_to_queue({"title": "p"})

    assert service.require_item(item_id).id == item_id
    with pytest.raises(ItemNotFoundError):
        service.require_item("missing")
