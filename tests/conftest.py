"""Shared fixtures and test doubles for reportsync tests."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest

from reportsync.connectivity import ManualConnectivity
from reportsync.engine import SyncEngine
from reportsync.events import QueueEventNotifier
from reportsync.models import QueueItem
from reportsync.retry_policy import RetryPolicy
from reportsync.storage import MemoryKeyValueStore
from reportsync.store import QueueStore
from reportsync.transport import SubmissionReceipt


class RecordingTransport:
    """Ingestion transport double that records every call.

    ``outcome`` decides what happens for each submission: return None to
    succeed, or return/raise an exception to fail.
    """

    def __init__(
        self,
        outcome: Optional[Callable[[Dict[str, Any], str], Optional[BaseException]]] = None,
        attachment_error: Optional[BaseException] = None,
    ) -> None:
        self.outcome = outcome
        self.attachment_error = attachment_error
        self.submissions: List[Dict[str, Any]] = []
        self.attachments: List[Any] = []

    @property
    def submitted_keys(self) -> List[str]:
        return [call["idempotency_key"] for call in self.submissions]

    @property
    def submitted_titles(self) -> List[Any]:
        return [call["payload"].get("title") for call in self.submissions]

    async def submit(self, payload: Dict[str, Any], *, idempotency_key: str) -> SubmissionReceipt:
        self.submissions.append({"payload": payload, "idempotency_key": idempotency_key})
        if self.outcome is not None:
            error = self.outcome(payload, idempotency_key)
            if error is not None:
                raise error
        return SubmissionReceipt(remote_id=f"remote-{idempotency_key}", status_code=201)

    async def upload_attachment(self, attachment: Any, *, idempotency_key: str) -> str:
        self.attachments.append(attachment)
        if self.attachment_error is not None:
            raise self.attachment_error
        return f"https://files.example.org/{idempotency_key}"


class BlockingTransport(RecordingTransport):
    """Transport whose submissions wait until ``release`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def submit(self, payload: Dict[str, Any], *, idempotency_key: str) -> SubmissionReceipt:
        self.started.set()
        await self.release.wait()
        return await super().submit(payload, idempotency_key=idempotency_key)


class FakeSleep:
    """Records requested delays instead of sleeping."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


def make_item(title: str, *, minutes_ago: int = 0, **fields: Any) -> QueueItem:
    created = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc) - timedelta(minutes=minutes_ago)
    return QueueItem(payload={"title": title}, created_at=created, **fields)


@pytest.fixture
def backend() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def store(backend: MemoryKeyValueStore) -> QueueStore:
    return QueueStore(backend)


@pytest.fixture
def notifier() -> QueueEventNotifier:
    return QueueEventNotifier()


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy(max_retries=3, inter_item_delay_seconds=0.0)


@pytest.fixture
def connectivity() -> ManualConnectivity:
    return ManualConnectivity(online=True)


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def engine(store, notifier, policy, connectivity, transport, fake_sleep) -> SyncEngine:
    return SyncEngine(
        store,
        notifier=notifier,
        retry_policy=policy,
        connectivity=connectivity,
        transport=transport,
        sleep=fake_sleep,
    )
