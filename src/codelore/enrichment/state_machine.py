"""State machine validation and invariant checking for queue items.

Every status change made by the store goes through
``StateMachineValidator.validate_transition`` so an illegal move (for
example ``complete -> processing``) fails loudly instead of corrupting the
queue.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from .exceptions import InvalidStateTransitionError
from .models import QueueItem, QueueStatus, utc_now

logger = logging.getLogger(__name__)


VALID_TRANSITIONS: Dict[QueueStatus, Set[QueueStatus]] = {
    QueueStatus.PENDING: {
        QueueStatus.PROCESSING,  # Dispatch
        QueueStatus.PENDING,  # Priority bump (idempotent)
    },
    QueueStatus.PROCESSING: {
        QueueStatus.COMPLETE,  # Research persisted
        QueueStatus.PENDING,  # Retry scheduled, or crash recovery
        QueueStatus.FAILED,  # Retries exhausted
    },
    QueueStatus.COMPLETE: {
        QueueStatus.PENDING,  # Re-queued after invalidation
        QueueStatus.COMPLETE,
    },
    QueueStatus.FAILED: {
        QueueStatus.PENDING,  # Re-queued after the source changed
        QueueStatus.FAILED,
    },
}

TERMINAL_STATES: Set[QueueStatus] = {QueueStatus.COMPLETE, QueueStatus.FAILED}


@dataclass
class StateTransition:
    """Records a queue item state transition attempt."""

    item_id: int
    from_status: QueueStatus
    to_status: QueueStatus
    timestamp: datetime
    reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def is_valid(self) -> bool:
        return self.to_status in VALID_TRANSITIONS.get(self.from_status, set())

    def is_idempotent(self) -> bool:
        return self.from_status == self.to_status


class StateMachineValidator:
    """Validates queue item transitions and keeps a bounded history."""

    def __init__(self, history_limit: int = 1000) -> None:
        self._history_limit = history_limit
        self._transition_history: List[StateTransition] = []

    @property
    def history(self) -> List[StateTransition]:
        return list(self._transition_history)

    def validate_transition(
        self,
        item_id: int,
        from_status: QueueStatus,
        to_status: QueueStatus,
        *,
        reason: Optional[str] = None,
    ) -> StateTransition:
        """Validate a state transition before execution.

        Args:
            item_id: Queue item identifier
            from_status: Current status
            to_status: Desired status
            reason: Optional reason for the transition

        Returns:
            The recorded StateTransition

        Raises:
            InvalidStateTransitionError: If the transition is not allowed
        """
        transition = StateTransition(
            item_id=item_id,
            from_status=from_status,
            to_status=to_status,
            timestamp=utc_now(),
            reason=reason,
        )

        if not transition.is_valid():
            logger.error(
                "Invalid queue state transition",
                extra={
                    "queue_item_id": item_id,
                    "from_status": from_status.value,
                    "to_status": to_status.value,
                },
            )
            raise InvalidStateTransitionError(
                f"Invalid transition: {from_status.value} → {to_status.value}"
            )

        self._transition_history.append(transition)
        if len(self._transition_history) > self._history_limit:
            del self._transition_history[: -self._history_limit]
        return transition


class StateMachineInvariants:
    """Invariants that must hold for any snapshot of the queue."""

    @staticmethod
    def check_failed_items_exhausted(
        items: Iterable[QueueItem], max_retries: int
    ) -> List[str]:
        """FAILED items must have used up their retries."""
        return [
            f"item {item.id} is failed after only {item.attempts} attempts"
            for item in items
            if item.status == QueueStatus.FAILED and item.attempts < max_retries
        ]

    @staticmethod
    def check_open_items_have_budget(
        items: Iterable[QueueItem], max_retries: int
    ) -> List[str]:
        """PENDING/PROCESSING items must still have retries left."""
        return [
            f"item {item.id} is {item.status.value} with {item.attempts} attempts"
            for item in items
            if item.status in (QueueStatus.PENDING, QueueStatus.PROCESSING)
            and item.attempts >= max_retries
        ]

    @staticmethod
    def check_single_processing_per_chunk(items: Iterable[QueueItem]) -> List[str]:
        counts = Counter(
            item.chunk_id for item in items if item.status == QueueStatus.PROCESSING
        )
        return [
            f"chunk {chunk_id} has {count} processing items"
            for chunk_id, count in counts.items()
            if count > 1
        ]

    @classmethod
    def check_all(cls, items: Iterable[QueueItem], max_retries: int) -> List[str]:
        """Run every invariant and return violation descriptions (empty if all pass)."""
        snapshot = list(items)
        violations: List[str] = []
        violations.extend(cls.check_failed_items_exhausted(snapshot, max_retries))
        violations.extend(cls.check_open_items_have_budget(snapshot, max_retries))
        violations.extend(cls.check_single_processing_per_chunk(snapshot))
        return violations
