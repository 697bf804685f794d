"""Tests for the reportsync CLI."""

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from reportsync.cli import app
from reportsync.models import ItemStatus
from reportsync.storage import FileKeyValueStore
from reportsync.store import QueueStore

from conftest import make_item


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def temp_workspace(tmp_path: Path) -> Path:
    workspace = tmp_path / "workspace"
    workspace.mkdir(parents=True)
    return workspace


@pytest.fixture
def queue(temp_workspace: Path) -> QueueStore:
    return QueueStore(FileKeyValueStore(temp_workspace / "queue"))


def test_stats_empty_queue(runner, temp_workspace):
    result = runner.invoke(app, ["stats", "--workspace", str(temp_workspace)])

    assert result.exit_code == 0
    assert "Offline Queue" in result.output


def test_stats_json(runner, temp_workspace, queue):
    queue.append(make_item("a"))
    queue.append(make_item("b", status=ItemStatus.FAILED, retry_count=2))

    result = runner.invoke(app, ["stats", "--workspace", str(temp_workspace), "--format", "json"])

    assert result.exit_code == 0
    stats = json.loads(result.output)
    assert stats["total"] == 2
    assert stats["pending"] == 1
    assert stats["failed"] == 1
    assert stats["retry_count"] == 2


def test_add_then_list(runner, temp_workspace):
    added = runner.invoke(
        app, ["add", '{"title": "pothole"}', "--workspace", str(temp_workspace)]
    )
    assert added.exit_code == 0
    item_id = added.output.strip()

    result = runner.invoke(app, ["list", "--workspace", str(temp_workspace), "--format", "json"])

    assert result.exit_code == 0
    [record] = json.loads(result.output)
    assert record["id"] == item_id
    assert record["payload"] == {"title": "pothole"}
    assert record["status"] == "pending"


def test_add_rejects_non_object_payload(runner, temp_workspace):
    result = runner.invoke(app, ["add", "[1, 2]", "--workspace", str(temp_workspace)])
    assert result.exit_code == 1


def test_list_filters_by_status(runner, temp_workspace, queue):
    queue.append(make_item("a"))
    failed = make_item("b", status=ItemStatus.FAILED, retry_count=1)
    queue.append(failed)

    result = runner.invoke(
        app,
        ["list", "--workspace", str(temp_workspace), "--status", "failed", "--format", "json"],
    )

    assert result.exit_code == 0
    assert [r["id"] for r in json.loads(result.output)] == [failed.id]


def test_list_empty_table(runner, temp_workspace):
    result = runner.invoke(app, ["list", "--workspace", str(temp_workspace)])
    assert result.exit_code == 0
    assert "empty" in result.output


def test_health_json(runner, temp_workspace):
    result = runner.invoke(app, ["health", "--workspace", str(temp_workspace), "--format", "json"])

    assert result.exit_code == 0
    assert json.loads(result.output)["status"] == "healthy"


def test_retry_failed(runner, temp_workspace, queue):
    for i in range(2):
        queue.append(make_item(f"f{i}", status=ItemStatus.FAILED, retry_count=3))

    result = runner.invoke(app, ["retry-failed", "--workspace", str(temp_workspace)])

    assert result.exit_code == 0
    assert "Reset 2" in result.output
    assert queue.count(ItemStatus.PENDING) == 2


def test_clear_failed_requires_confirmation(runner, temp_workspace, queue):
    queue.append(make_item("f", status=ItemStatus.FAILED, retry_count=1))

    aborted = runner.invoke(app, ["clear-failed", "--workspace", str(temp_workspace)], input="n\n")
    assert aborted.exit_code == 1
    assert queue.count() == 1

    result = runner.invoke(app, ["clear-failed", "--workspace", str(temp_workspace), "--yes"])
    assert result.exit_code == 0
    assert queue.count() == 0


def test_remove(runner, temp_workspace, queue):
    item = make_item("a")
    queue.append(item)

    result = runner.invoke(app, ["remove", item.id, "--workspace", str(temp_workspace)])
    assert result.exit_code == 0
    assert queue.get(item.id) is None

    missing = runner.invoke(app, ["remove", item.id, "--workspace", str(temp_workspace)])
    assert missing.exit_code == 1
    assert "Item not found" in missing.output


def test_remove_processing_item_fails(runner, temp_workspace, queue):
    item = make_item("a", status=ItemStatus.PROCESSING)
    queue.append(item)

    result = runner.invoke(app, ["remove", item.id, "--workspace", str(temp_workspace)])

    assert result.exit_code == 1
    assert queue.get(item.id) is not None


def test_export_and_import(runner, tmp_path, temp_workspace, queue):
    queue.append(make_item("a"))
    export_file = tmp_path / "backup.json"

    exported = runner.invoke(
        app, ["export", "--workspace", str(temp_workspace), "--output", str(export_file)]
    )
    assert exported.exit_code == 0
    assert json.loads(export_file.read_text())["count"] == 1

    other = tmp_path / "other"
    other.mkdir()
    imported = runner.invoke(app, ["import", str(export_file), "--workspace", str(other)])

    assert imported.exit_code == 0
    assert "Imported 1" in imported.output
    assert QueueStore(FileKeyValueStore(other / "queue")).count() == 1


def test_import_invalid_file(runner, tmp_path, temp_workspace):
    bad = tmp_path / "bad.json"
    bad.write_text("{not json")

    result = runner.invoke(app, ["import", str(bad), "--workspace", str(temp_workspace)])

    assert result.exit_code == 1
    assert "Import failed" in result.output


def test_sync_without_url_fails(runner, temp_workspace):
    result = runner.invoke(app, ["sync", "--workspace", str(temp_workspace)])
    assert result.exit_code == 1


def test_invalid_config_fails(runner, temp_workspace):
    (temp_workspace / "config.yaml").write_text("retry:\n  max_retries: 0\n")

    result = runner.invoke(app, ["stats", "--workspace", str(temp_workspace)])

    assert result.exit_code == 1


def test_retry_single_item(runner, temp_workspace, queue):
    failed = make_item("f", status=ItemStatus.FAILED, retry_count=3)
    queue.append(failed)

    result = runner.invoke(app, ["retry", failed.id, "--workspace", str(temp_workspace)])

    assert result.exit_code == 0
    assert queue.get(failed.id).status == ItemStatus.PENDING
    assert queue.get(failed.id).retry_count == 0

    again = runner.invoke(app, ["retry", failed.id, "--workspace", str(temp_workspace)])
    assert again.exit_code == 1
    assert "Cannot retry item in status 'pending'" in again.output

    missing = runner.invoke(app, ["retry", "no-such-item", "--workspace", str(temp_workspace)])
    assert missing.exit_code == 1
    assert "Item not found: no-such-item" in missing.output
