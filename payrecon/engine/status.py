"""Payment status state machine shared by the matcher and manual workflow."""

from enum import Enum
from typing import Dict, FrozenSet, Set, Tuple

from payrecon.engine.errors import InvalidTransition
from payrecon.engine.models import ManualStatus, Payment, PaymentStatus


class Trigger(Enum):
    """Operation requesting a status change."""
    AUTO = "auto"
    ASSIGN = "assign"
    APPROVE = "approve"
    REJECT = "reject"
    UNMATCH = "unmatch"
    RESET = "reset"


AUTOMATIC_STATUSES: FrozenSet[PaymentStatus] = frozenset({
    PaymentStatus.UNMATCHED,
    PaymentStatus.NEEDS_REVIEW,
    PaymentStatus.MATCHED,
})

# Statuses a reconciliation pass may re-score
RESCORABLE_STATUSES: FrozenSet[PaymentStatus] = frozenset({
    PaymentStatus.UNMATCHED,
    PaymentStatus.NEEDS_REVIEW,
})

_ANY = frozenset(PaymentStatus)
_NOT_APPROVED = _ANY - {PaymentStatus.APPROVED}

# trigger -> (allowed source statuses, allowed target statuses)
TRANSITIONS: Dict[Trigger, Tuple[FrozenSet[PaymentStatus], FrozenSet[PaymentStatus]]] = {
    Trigger.AUTO: (AUTOMATIC_STATUSES, AUTOMATIC_STATUSES),
    Trigger.ASSIGN: (_ANY, frozenset({PaymentStatus.APPROVED})),
    Trigger.APPROVE: (
        frozenset({PaymentStatus.MATCHED, PaymentStatus.NEEDS_REVIEW}),
        frozenset({PaymentStatus.APPROVED}),
    ),
    Trigger.REJECT: (_NOT_APPROVED, frozenset({PaymentStatus.REJECTED})),
    Trigger.UNMATCH: (_ANY, AUTOMATIC_STATUSES),
    Trigger.RESET: (
        frozenset({PaymentStatus.MATCHED, PaymentStatus.NEEDS_REVIEW, PaymentStatus.UNMATCHED}),
        frozenset({PaymentStatus.UNMATCHED, PaymentStatus.NEEDS_REVIEW}),
    ),
}


def can_transition(current: PaymentStatus, target: PaymentStatus, trigger: Trigger) -> bool:
    sources, targets = TRANSITIONS[trigger]
    return current in sources and target in targets


def check_transition(payment: Payment, target: PaymentStatus, trigger: Trigger) -> None:
    """
    Validate a status change for a payment.

    Raises:
        InvalidTransition: If the trigger cannot move the payment to target.
    """
    if not can_transition(payment.status, target, trigger):
        raise InvalidTransition(
            f"Cannot {trigger.value} payment {payment.id}: "
            f"{payment.status.value} -> {target.value} is not allowed",
            entity_id=payment.id,
        )


def is_rescorable(payment: Payment) -> bool:
    """Approved and rejected payments are skipped by automatic passes."""
    return (
        payment.manual_status == ManualStatus.NONE
        and payment.status in RESCORABLE_STATUSES
        and payment.is_matchable
    )


def reachable_from(current: PaymentStatus) -> Set[PaymentStatus]:
    """All statuses any trigger can move the given status to."""
    result: Set[PaymentStatus] = set()
    for sources, targets in TRANSITIONS.values():
        if current in sources:
            result |= targets
    return result
