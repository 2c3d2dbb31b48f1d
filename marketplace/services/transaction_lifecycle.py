"""
Transaction lifecycle state machine

The transition table is a pure function of (status, refund_status, event) so it
can be tested without a database. TransactionLifecycle executes the listing and
offer side effects a plan asks for; callers run it inside the same unit of work
as the status write.

    PENDING   --complete-->        COMPLETED   listing sold, offer completed
    PENDING   --fail-->            FAILED      listing available, offer rejected
    COMPLETED --request_refund-->  COMPLETED   refund processing
    COMPLETED --complete_refund--> REFUNDED    refund completed
    COMPLETED --fail_refund-->     COMPLETED   refund failed (may be requested again)

Re-applying complete to COMPLETED or fail to FAILED is a logged no-op.
FAILED and REFUNDED never return to PENDING; a retry opens a new transaction.
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from marketplace.core.exceptions import ConflictError
from marketplace.models.listing import ListingStatus
from marketplace.models.offer import OfferStatus
from marketplace.models.transaction import RefundStatus, Transaction, TransactionStatus
from marketplace.services.repositories import ListingRepository, OfferRepository

logger = logging.getLogger(__name__)


class LifecycleEvent(str, enum.Enum):
    COMPLETE = "complete"
    FAIL = "fail"
    REQUEST_REFUND = "request_refund"
    COMPLETE_REFUND = "complete_refund"
    FAIL_REFUND = "fail_refund"


class SideEffectTarget(str, enum.Enum):
    LISTING = "listing"
    OFFER = "offer"


@dataclass(frozen=True)
class SideEffect:
    target: SideEffectTarget
    status: str


@dataclass
class TransitionPlan:
    """Outcome of applying an event to a transaction state"""
    status: TransactionStatus
    refund_status: RefundStatus
    side_effects: List[SideEffect] = field(default_factory=list)
    changed: bool = True


_PAYMENT_OUTCOMES = {
    LifecycleEvent.COMPLETE: (
        TransactionStatus.COMPLETED,
        [SideEffect(SideEffectTarget.LISTING, ListingStatus.SOLD.value),
         SideEffect(SideEffectTarget.OFFER, OfferStatus.COMPLETED.value)],
    ),
    LifecycleEvent.FAIL: (
        TransactionStatus.FAILED,
        [SideEffect(SideEffectTarget.LISTING, ListingStatus.AVAILABLE.value),
         SideEffect(SideEffectTarget.OFFER, OfferStatus.REJECTED.value)],
    ),
}

# (event) -> (allowed refund states, next status, next refund status)
_REFUND_TRANSITIONS = {
    LifecycleEvent.REQUEST_REFUND: (
        {RefundStatus.NONE, RefundStatus.FAILED},
        TransactionStatus.COMPLETED,
        RefundStatus.PROCESSING,
    ),
    LifecycleEvent.COMPLETE_REFUND: (
        {RefundStatus.PROCESSING},
        TransactionStatus.REFUNDED,
        RefundStatus.COMPLETED,
    ),
    LifecycleEvent.FAIL_REFUND: (
        {RefundStatus.PROCESSING},
        TransactionStatus.COMPLETED,
        RefundStatus.FAILED,
    ),
}

STATUS_EVENTS = {
    TransactionStatus.COMPLETED: LifecycleEvent.COMPLETE,
    TransactionStatus.FAILED: LifecycleEvent.FAIL,
}


def apply(
    status: TransactionStatus,
    refund_status: RefundStatus,
    event: LifecycleEvent,
    has_offer: bool = True,
) -> TransitionPlan:
    """
    Decide the next state for a transaction. Raises ConflictError for
    transitions the ledger does not allow.
    """
    refund_status = refund_status or RefundStatus.NONE

    if event in _PAYMENT_OUTCOMES:
        target, effects = _PAYMENT_OUTCOMES[event]
        if status == target:
            return TransitionPlan(status=status, refund_status=refund_status, changed=False)
        if status != TransactionStatus.PENDING:
            raise ConflictError(
                f"Cannot {event.value} a transaction in status {status.value}",
                details={"status": status.value, "event": event.value},
            )
        if not has_offer:
            effects = [e for e in effects if e.target != SideEffectTarget.OFFER]
        return TransitionPlan(status=target, refund_status=refund_status, side_effects=list(effects))

    allowed, next_status, next_refund = _REFUND_TRANSITIONS[event]
    if status != TransactionStatus.COMPLETED or refund_status not in allowed:
        raise ConflictError(
            f"Cannot {event.value} a transaction in status {status.value} with refund status {refund_status.value}",
            details={"status": status.value, "refund_status": refund_status.value, "event": event.value},
        )
    # Refunds are a financial reversal; listing and offer stay as they are
    return TransitionPlan(status=next_status, refund_status=next_refund)


def event_for_status(status: TransactionStatus) -> LifecycleEvent:
    """Map a requested target status onto the lifecycle event that reaches it"""
    try:
        return STATUS_EVENTS[status]
    except KeyError:
        if status == TransactionStatus.REFUNDED:
            return LifecycleEvent.COMPLETE_REFUND
        raise ConflictError(
            f"Transactions cannot be moved to {status.value}; open a new payment attempt instead",
            details={"status": status.value},
        )


class TransactionLifecycle:
    """Executes the side effects of a transition plan"""

    def __init__(self, listings: ListingRepository, offers: OfferRepository):
        self.listings = listings
        self.offers = offers

    def plan(self, transaction: Transaction, event: LifecycleEvent) -> TransitionPlan:
        plan = apply(
            transaction.status,
            transaction.refund_status,
            event,
            has_offer=transaction.offer_id is not None,
        )
        if not plan.changed:
            logger.info(
                f"Transaction {transaction.id} already {transaction.status.value}; "
                f"ignoring repeated {event.value}"
            )
        return plan

    async def apply_side_effects(self, transaction: Transaction, plan: TransitionPlan) -> List[Tuple[str, str]]:
        applied = []
        for effect in plan.side_effects:
            if effect.target == SideEffectTarget.LISTING:
                await self.listings.set_status(transaction.listing_id, ListingStatus(effect.status))
                applied.append((effect.target.value, effect.status))
            elif effect.target == SideEffectTarget.OFFER and transaction.offer_id is not None:
                await self.offers.set_status(transaction.offer_id, OfferStatus(effect.status))
                applied.append((effect.target.value, effect.status))
        return applied

    async def on_created(self, transaction: Transaction):
        """A new payment attempt reserves the listing and binds the offer"""
        await self.listings.set_status(transaction.listing_id, ListingStatus.PENDING)
        if transaction.offer_id is not None:
            await self.offers.set_status(transaction.offer_id, OfferStatus.ACCEPTED)


def describe(plan: TransitionPlan) -> Optional[str]:
    if not plan.side_effects:
        return None
    return ", ".join(f"{e.target.value}={e.status}" for e in plan.side_effects)
