"""State machine validation for the queue item lifecycle.

``completed`` is terminal and realized as removal from the store, so a
transition "to completed" always means the item is deleted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Set

from .exceptions import InvalidStateTransitionError
from .models import ItemStatus, utcnow

logger = logging.getLogger(__name__)


class TransitionActor(str, Enum):
    """Who is allowed to perform a transition."""

    ENGINE = "engine"  # Sync pass
    OPERATOR = "operator"  # Explicit caller command
    RECOVERY = "recovery"  # Startup recovery of interrupted items


# Valid transitions and the actors permitted to perform them
VALID_TRANSITIONS: Dict[ItemStatus, Dict[ItemStatus, Set[TransitionActor]]] = {
    ItemStatus.PENDING: {
        ItemStatus.PROCESSING: {TransitionActor.ENGINE},  # Picked up by a pass
        ItemStatus.COMPLETED: {TransitionActor.OPERATOR},  # Deleted before delivery
    },
    ItemStatus.PROCESSING: {
        ItemStatus.COMPLETED: {TransitionActor.ENGINE},  # Delivered
        ItemStatus.FAILED: {TransitionActor.ENGINE},  # Submission failed
        ItemStatus.PENDING: {TransitionActor.RECOVERY},  # Interrupted by a crash
    },
    ItemStatus.FAILED: {
        ItemStatus.PROCESSING: {TransitionActor.ENGINE},  # Automatic retry within budget
        ItemStatus.PENDING: {TransitionActor.OPERATOR},  # Manual retry
        ItemStatus.COMPLETED: {TransitionActor.OPERATOR},  # Deleted / cleared
    },
    ItemStatus.COMPLETED: {},
}


@dataclass
class StateTransition:
    """Records a validated state transition."""

    item_id: str
    from_status: ItemStatus
    to_status: ItemStatus
    actor: TransitionActor
    timestamp: datetime = field(default_factory=utcnow)
    reason: Optional[str] = None

    def is_valid(self) -> bool:
        allowed = VALID_TRANSITIONS.get(self.from_status, {})
        return self.actor in allowed.get(self.to_status, set())

    def is_idempotent(self) -> bool:
        return self.from_status == self.to_status and self.from_status != ItemStatus.COMPLETED


class StateMachineValidator:
    """Validates item transitions and keeps a bounded history of them."""

    def __init__(self, history_limit: int = 1000) -> None:
        self._history_limit = history_limit
        self._transition_history: List[StateTransition] = []

    @property
    def history(self) -> List[StateTransition]:
        return list(self._transition_history)

    def can_transition(
        self,
        from_status: ItemStatus,
        to_status: ItemStatus,
        actor: TransitionActor,
    ) -> bool:
        transition = StateTransition(
            item_id="",
            from_status=from_status,
            to_status=to_status,
            actor=actor,
        )
        return transition.is_valid() or transition.is_idempotent()

    def validate_transition(
        self,
        item_id: str,
        from_status: ItemStatus,
        to_status: ItemStatus,
        *,
        actor: TransitionActor,
        reason: Optional[str] = None,
    ) -> StateTransition:
        """Validate a transition before it is persisted.

        Same-state transitions are idempotent and always allowed, except
        for ``completed`` which is never observed at rest.

        Args:
            item_id: Queue item identifier
            from_status: Current status
            to_status: Desired status
            actor: Who performs the transition
            reason: Optional free-text reason for the history

        Returns:
            The recorded StateTransition

        Raises:
            InvalidStateTransitionError: If the transition is not allowed
        """
        transition = StateTransition(
            item_id=item_id,
            from_status=from_status,
            to_status=to_status,
            actor=actor,
            reason=reason,
        )

        if not transition.is_valid() and not transition.is_idempotent():
            logger.error(
                "Invalid state transition",
                extra={
                    "item_id": item_id,
                    "from_status": from_status.value,
                    "to_status": to_status.value,
                    "actor": actor.value,
                },
            )
            raise InvalidStateTransitionError(
                f"Invalid transition for {actor.value}: "
                f"{from_status.value} -> {to_status.value}"
            )

        if transition.is_idempotent():
            logger.debug(
                "Idempotent state transition",
                extra={"item_id": item_id, "status": from_status.value},
            )

        self._transition_history.append(transition)
        if len(self._transition_history) > self._history_limit:
            del self._transition_history[: -self._history_limit]
        return transition


__all__ = [
    "StateMachineValidator",
    "StateTransition",
    "TransitionActor",
    "VALID_TRANSITIONS",
]
