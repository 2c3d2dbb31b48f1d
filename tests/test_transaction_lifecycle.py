"""
Unit tests for the transaction state machine (no database)
"""

import pytest

from marketplace.core.exceptions import ConflictError
from marketplace.models.listing import ListingStatus
from marketplace.models.offer import OfferStatus
from marketplace.models.transaction import RefundStatus, TransactionStatus
from marketplace.services.transaction_lifecycle import (
    LifecycleEvent,
    SideEffect,
    SideEffectTarget,
    apply,
    describe,
    event_for_status,
)


@pytest.mark.unit
class TestPaymentOutcomes:
    """PENDING -> COMPLETED / FAILED"""

    def test_complete_from_pending(self):
        plan = apply(TransactionStatus.PENDING, RefundStatus.NONE, LifecycleEvent.COMPLETE)

        assert plan.changed is True
        assert plan.status == TransactionStatus.COMPLETED
        assert plan.refund_status == RefundStatus.NONE
        assert plan.side_effects == [
            SideEffect(SideEffectTarget.LISTING, ListingStatus.SOLD.value),
            SideEffect(SideEffectTarget.OFFER, OfferStatus.COMPLETED.value),
        ]

    def test_fail_from_pending(self):
        plan = apply(TransactionStatus.PENDING, RefundStatus.NONE, LifecycleEvent.FAIL)

        assert plan.status == TransactionStatus.FAILED
        assert plan.side_effects == [
            SideEffect(SideEffectTarget.LISTING, ListingStatus.AVAILABLE.value),
            SideEffect(SideEffectTarget.OFFER, OfferStatus.REJECTED.value),
        ]

    def test_offer_effect_dropped_without_offer(self):
        plan = apply(TransactionStatus.PENDING, RefundStatus.NONE, LifecycleEvent.COMPLETE, has_offer=False)

        assert [e.target for e in plan.side_effects] == [SideEffectTarget.LISTING]

    def test_repeated_complete_is_noop(self):
        plan = apply(TransactionStatus.COMPLETED, RefundStatus.NONE, LifecycleEvent.COMPLETE)

        assert plan.changed is False
        assert plan.status == TransactionStatus.COMPLETED
        assert plan.side_effects == []

    def test_repeated_fail_is_noop(self):
        plan = apply(TransactionStatus.FAILED, RefundStatus.NONE, LifecycleEvent.FAIL)

        assert plan.changed is False
        assert plan.side_effects == []

    @pytest.mark.parametrize("status,event", [
        (TransactionStatus.FAILED, LifecycleEvent.COMPLETE),
        (TransactionStatus.COMPLETED, LifecycleEvent.FAIL),
        (TransactionStatus.REFUNDED, LifecycleEvent.COMPLETE),
        (TransactionStatus.REFUNDED, LifecycleEvent.FAIL),
    ])
    def test_terminal_states_reject_other_outcomes(self, status, event):
        with pytest.raises(ConflictError):
            apply(status, RefundStatus.NONE, event)


@pytest.mark.unit
class TestRefundTransitions:
    """Refunds are staged on COMPLETED transactions"""

    def test_request_refund(self):
        plan = apply(TransactionStatus.COMPLETED, RefundStatus.NONE, LifecycleEvent.REQUEST_REFUND)

        assert plan.status == TransactionStatus.COMPLETED
        assert plan.refund_status == RefundStatus.PROCESSING
        assert plan.side_effects == []

    def test_request_refund_again_after_failure(self):
        plan = apply(TransactionStatus.COMPLETED, RefundStatus.FAILED, LifecycleEvent.REQUEST_REFUND)

        assert plan.refund_status == RefundStatus.PROCESSING

    def test_complete_refund(self):
        plan = apply(TransactionStatus.COMPLETED, RefundStatus.PROCESSING, LifecycleEvent.COMPLETE_REFUND)

        assert plan.status == TransactionStatus.REFUNDED
        assert plan.refund_status == RefundStatus.COMPLETED
        # Refunds never touch the listing or offer
        assert plan.side_effects == []

    def test_fail_refund(self):
        plan = apply(TransactionStatus.COMPLETED, RefundStatus.PROCESSING, LifecycleEvent.FAIL_REFUND)

        assert plan.status == TransactionStatus.COMPLETED
        assert plan.refund_status == RefundStatus.FAILED

    def test_complete_refund_without_request_conflicts(self):
        with pytest.raises(ConflictError):
            apply(TransactionStatus.COMPLETED, RefundStatus.NONE, LifecycleEvent.COMPLETE_REFUND)

    def test_double_refund_request_conflicts(self):
        with pytest.raises(ConflictError):
            apply(TransactionStatus.COMPLETED, RefundStatus.PROCESSING, LifecycleEvent.REQUEST_REFUND)

    @pytest.mark.parametrize("status", [
        TransactionStatus.PENDING,
        TransactionStatus.FAILED,
        TransactionStatus.REFUNDED,
    ])
    def test_refund_requires_completed(self, status):
        with pytest.raises(ConflictError):
            apply(status, RefundStatus.NONE, LifecycleEvent.REQUEST_REFUND)


@pytest.mark.unit
class TestStatusEvents:

    def test_status_to_event(self):
        assert event_for_status(TransactionStatus.COMPLETED) == LifecycleEvent.COMPLETE
        assert event_for_status(TransactionStatus.FAILED) == LifecycleEvent.FAIL
        assert event_for_status(TransactionStatus.REFUNDED) == LifecycleEvent.COMPLETE_REFUND

    def test_back_to_pending_is_not_a_transition(self):
        with pytest.raises(ConflictError):
            event_for_status(TransactionStatus.PENDING)

    def test_describe(self):
        plan = apply(TransactionStatus.PENDING, RefundStatus.NONE, LifecycleEvent.FAIL)
        assert describe(plan) == "listing=available, offer=rejected"
        assert describe(apply(TransactionStatus.FAILED, RefundStatus.NONE, LifecycleEvent.FAIL)) is None
