"""Tests for queue event notification."""

import pytest

from reportsync.events import QueueEventNotifier, QueueEventType

from conftest import make_item


def test_handlers_receive_payload(notifier):
    received = []
    notifier.subscribe(QueueEventType.ITEM_ADDED, received.append)
    item = make_item("pothole")

    delivered = notifier.emit(QueueEventType.ITEM_ADDED, item)

    assert delivered == 1
    assert received == [item]


def test_events_accept_string_names(notifier):
    received = []
    notifier.subscribe("item_removed", received.append)
    notifier.emit(QueueEventType.ITEM_REMOVED, "item-1")
    assert received == ["item-1"]


def test_unknown_event_name_raises(notifier):
    with pytest.raises(ValueError):
        notifier.subscribe("itemAdded", lambda data: None)


def test_failing_handler_does_not_block_others(notifier):
    received = []

    def broken(_data):
        raise RuntimeError("handler bug")

    notifier.subscribe(QueueEventType.ITEM_UPDATED, broken)
    notifier.subscribe(QueueEventType.ITEM_UPDATED, received.append)

    delivered = notifier.emit(QueueEventType.ITEM_UPDATED, "payload")

    assert delivered == 1
    assert received == ["payload"]
    assert notifier.error_count == 1
    assert notifier.emit_count == 1


def test_unsubscribe(notifier):
    received = []
    notifier.subscribe(QueueEventType.ITEM_ADDED, received.append)

    assert notifier.unsubscribe(QueueEventType.ITEM_ADDED, received.append) is True
    assert notifier.unsubscribe(QueueEventType.ITEM_ADDED, received.append) is False
    assert notifier.handler_count(QueueEventType.ITEM_ADDED) == 0

    notifier.emit(QueueEventType.ITEM_ADDED, "ignored")
    assert received == []


def test_events_are_isolated_by_type():
    notifier = QueueEventNotifier()
    added = []
    notifier.subscribe(QueueEventType.ITEM_ADDED, added.append)

    assert notifier.emit(QueueEventType.ITEM_REMOVED, "x") == 0
    assert added == []
