"""Delivery status state machine.

    sending   -> sent | failed
    sent      -> delivered | read | failed
    delivered -> read
    failed    -> sending   (explicit retry)
    read      -> terminal
"""

from __future__ import annotations

import logging

from app.models import DeliveryStatus
from app.services.errors import InvalidTransition

logger = logging.getLogger(__name__)

TRANSITIONS: dict[DeliveryStatus, frozenset[DeliveryStatus]] = {
    DeliveryStatus.SENDING: frozenset({DeliveryStatus.SENT, DeliveryStatus.FAILED}),
    DeliveryStatus.SENT: frozenset(
        {DeliveryStatus.DELIVERED, DeliveryStatus.READ, DeliveryStatus.FAILED}
    ),
    DeliveryStatus.DELIVERED: frozenset({DeliveryStatus.READ}),
    DeliveryStatus.FAILED: frozenset({DeliveryStatus.SENDING}),
    DeliveryStatus.READ: frozenset(),
}

_PROGRESS_RANK: dict[DeliveryStatus, int] = {
    DeliveryStatus.SENT: 1,
    DeliveryStatus.DELIVERED: 2,
    DeliveryStatus.READ: 3,
}


def can_transition(current: DeliveryStatus, target: DeliveryStatus) -> bool:
    return DeliveryStatus(target) in TRANSITIONS[DeliveryStatus(current)]


def transition(current: DeliveryStatus, target: DeliveryStatus) -> DeliveryStatus:
    """Return *target* if the edge exists, otherwise raise :class:`InvalidTransition`."""

    if not can_transition(current, target):
        raise InvalidTransition(
            f"Cannot move message from '{DeliveryStatus(current).value}' to '{DeliveryStatus(target).value}'"
        )
    return DeliveryStatus(target)


def advance(current: DeliveryStatus, target: DeliveryStatus) -> DeliveryStatus:
    """Move along sent < delivered < read without ever regressing.

    Receipts may arrive late or out of order; a receipt that would move the
    status backwards, or that targets a message not yet committed, leaves the
    status unchanged.
    """

    current = DeliveryStatus(current)
    target = DeliveryStatus(target)
    if current not in _PROGRESS_RANK or target not in _PROGRESS_RANK:
        if current != target:
            logger.debug("Ignoring receipt %s for message in state %s", target.value, current.value)
        return current
    if _PROGRESS_RANK[target] <= _PROGRESS_RANK[current]:
        return current
    return target


def is_terminal(status: DeliveryStatus) -> bool:
    return not TRANSITIONS[DeliveryStatus(status)]
