"""Tests for queue item state machine validation."""

from dataclasses import asdict

import pytest

from reportsync.exceptions import InvalidStateTransitionError
from reportsync.models import ItemStatus
from reportsync.state_machine import (
    VALID_TRANSITIONS,
    StateMachineValidator,
    TransitionActor,
)


@pytest.mark.parametrize(
    "from_status,to_status,actor",
    [
        (ItemStatus.PENDING, ItemStatus.PROCESSING, TransitionActor.ENGINE),
        (ItemStatus.PROCESSING, ItemStatus.COMPLETED, TransitionActor.ENGINE),
        (ItemStatus.PROCESSING, ItemStatus.FAILED, TransitionActor.ENGINE),
        (ItemStatus.FAILED, ItemStatus.PROCESSING, TransitionActor.ENGINE),
        (ItemStatus.FAILED, ItemStatus.PENDING, TransitionActor.OPERATOR),
        (ItemStatus.FAILED, ItemStatus.COMPLETED, TransitionActor.OPERATOR),
        (ItemStatus.PENDING, ItemStatus.COMPLETED, TransitionActor.OPERATOR),
        (ItemStatus.PROCESSING, ItemStatus.PENDING, TransitionActor.RECOVERY),
    ],
)
def test_valid_transitions(from_status, to_status, actor):
    validator = StateMachineValidator()
    transition = validator.validate_transition(
        "item-1", from_status, to_status, actor=actor
    )

    assert transition.is_valid()
    assert not transition.is_idempotent()
    assert validator.history[-1] is transition


@pytest.mark.parametrize(
    "from_status,to_status,actor",
    [
        # Only an operator resets a failed item to pending
        (ItemStatus.FAILED, ItemStatus.PENDING, TransitionActor.ENGINE),
        # In-flight items cannot be deleted
        (ItemStatus.PROCESSING, ItemStatus.COMPLETED, TransitionActor.OPERATOR),
        (ItemStatus.PENDING, ItemStatus.FAILED, TransitionActor.ENGINE),
        (ItemStatus.COMPLETED, ItemStatus.PENDING, TransitionActor.OPERATOR),
        (ItemStatus.PENDING, ItemStatus.PROCESSING, TransitionActor.OPERATOR),
    ],
)
def test_invalid_transitions_raise(from_status, to_status, actor):
    validator = StateMachineValidator()

    with pytest.raises(InvalidStateTransitionError):
        validator.validate_transition("item-1", from_status, to_status, actor=actor)
    assert validator.history == []


def test_same_state_is_idempotent():
    validator = StateMachineValidator()
    transition = validator.validate_transition(
        "item-1", ItemStatus.FAILED, ItemStatus.FAILED, actor=TransitionActor.ENGINE
    )
    assert transition.is_idempotent()


def test_completed_is_terminal():
    assert VALID_TRANSITIONS[ItemStatus.COMPLETED] == {}
    validator = StateMachineValidator()
    assert not validator.can_transition(
        ItemStatus.COMPLETED, ItemStatus.COMPLETED, TransitionActor.ENGINE
    )


def test_can_transition_does_not_record_history():
    validator = StateMachineValidator()
    assert validator.can_transition(
        ItemStatus.PENDING, ItemStatus.PROCESSING, TransitionActor.ENGINE
    )
    assert validator.history == []


def test_history_is_bounded():
    validator = StateMachineValidator(history_limit=3)
    for i in range(5):
        validator.validate_transition(
            f"item-{i}", ItemStatus.PENDING, ItemStatus.PROCESSING, actor=TransitionActor.ENGINE
        )

    assert [t.item_id for t in validator.history] == ["item-2", "item-3", "item-4"]


def test_recorded_transition_carries_reason():
    validator = StateMachineValidator()

    transition = validator.validate_transition(
        "item-1",
        ItemStatus.PROCESSING,
        ItemStatus.FAILED,
        actor=TransitionActor.ENGINE,
        reason="HTTP 503",
    )

    assert set(asdict(transition)) == {
        "item_id", "from_status", "to_status", "actor", "timestamp", "reason",
    }
    assert transition.reason == "HTTP 503"
    assert transition.timestamp.tzinfo is not None
