"""
Payment orchestration

Ties the ledger to the payment providers: opens hosted checkouts for listings
and accepted offers, reconciles provider webhooks into lifecycle transitions,
and stages refunds.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.config import settings
from marketplace.core.database import unit_of_work
from marketplace.core.exceptions import (
    ConflictError,
    GatewayError,
    MissingSignatureError,
    NotFoundError,
    ValidationError,
)
from marketplace.core.logging import LoggerAdapter
from marketplace.core.metrics import record_checkout, record_webhook
from marketplace.models.transaction import Transaction, TransactionStatus
from marketplace.schemas.transaction import FailureReason, RefundReason, TransactionFilter
from marketplace.services.gateway import (
    CheckoutSession,
    EventOutcome,
    GatewayEvent,
    GatewayRegistry,
    to_minor_units,
)
from marketplace.services.transaction_lifecycle import LifecycleEvent
from marketplace.services.transaction_store import TransactionStore
from marketplace.services.webhook_audit_log import WebhookAuditLog

logger = logging.getLogger(__name__)


@dataclass
class PaymentInitiation:
    transaction_id: int
    redirect_url: Optional[str]
    status: TransactionStatus
    reused: bool = False
    already_paid: bool = False


@dataclass
class WebhookResult:
    status: str
    event_id: Optional[str] = None
    transaction_id: Optional[int] = None


class PaymentOrchestrator:
    """Payment flows for one request-scoped database session"""

    def __init__(
        self,
        session: AsyncSession,
        gateways: GatewayRegistry,
        frontend_url: Optional[str] = None,
        default_provider: Optional[str] = None,
    ):
        self.session = session
        self.gateways = gateways
        self.frontend_url = (frontend_url or settings.FRONTEND_URL).rstrip("/")
        self.default_provider = default_provider or settings.DEFAULT_PAYMENT_PROVIDER
        self.store = TransactionStore(session)
        self.audit_log = WebhookAuditLog(session)

    # Initiation

    async def initiate_payment(
        self,
        listing_id: int,
        buyer_id: int,
        seller_id: Optional[int],
        price: Decimal,
        quantity: Decimal,
        currency: str,
        product_label: str,
        offer_id: Optional[int] = None,
        provider: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> PaymentInitiation:
        """
        Open (or reuse) a hosted checkout for a listing purchase.

        With an offer, the offer's existing transaction decides what happens:
        a COMPLETED one is reported as already paid, a PENDING one with a
        still-open checkout is returned as is, and a PENDING one whose checkout
        is gone gets a fresh checkout under the same transaction id. FAILED or
        REFUNDED attempts are left alone and a new transaction is created.
        An existing transaction is only returned to its own buyer for the same
        listing and currency (ConflictError otherwise).

        The attempt is one unit of work: if the provider call fails or times
        out, the row created for this attempt is rolled back.
        """
        provider = provider or self.default_provider
        gateway = self.gateways.get(provider)
        currency = (currency or "").upper()
        if len(currency) != 3:
            raise ValidationError("Currency must be a 3-letter ISO code", field="currency")
        price = Decimal(price)
        quantity = Decimal(quantity)
        if price <= 0 or quantity <= 0:
            raise ValidationError("Price and quantity must be positive", field="final_price")

        transaction_id = None
        try:
            async with unit_of_work(self.session):
                transaction = None
                if offer_id is not None:
                    transaction = await self.store.find_by_offer_id(offer_id, for_update=True)
                    if transaction is not None and transaction.status in (
                        TransactionStatus.PENDING,
                        TransactionStatus.COMPLETED,
                    ):
                        self._check_same_purchase(transaction, listing_id, buyer_id, currency, price, quantity)

                if transaction is not None and transaction.status == TransactionStatus.COMPLETED:
                    logger.info(f"Offer {offer_id} already paid by transaction {transaction.id}")
                    record_checkout(provider, "already_paid")
                    return PaymentInitiation(
                        transaction_id=transaction.id,
                        redirect_url=None,
                        status=transaction.status,
                        reused=True,
                        already_paid=True,
                    )

                reused = transaction is not None and transaction.status == TransactionStatus.PENDING
                if reused:
                    existing = await self._retrieve_open_checkout(transaction)
                    if existing is not None:
                        logger.info(
                            f"Reusing checkout {existing.session_id} for transaction {transaction.id} (offer {offer_id})"
                        )
                        record_checkout(transaction.payment_provider or provider, "reused")
                        return PaymentInitiation(
                            transaction_id=transaction.id,
                            redirect_url=existing.redirect_url,
                            status=transaction.status,
                            reused=True,
                        )
                else:
                    transaction = await self.store.create({
                        "listing_id": listing_id,
                        "buyer_id": buyer_id,
                        "seller_id": seller_id,
                        "offer_id": offer_id,
                        "final_price": price,
                        "final_quantity": quantity,
                        "currency": currency,
                        "payment_provider": provider,
                    })

                transaction_id = transaction.id
                checkout = await gateway.create_checkout(
                    # The charge always uses the ledger row's recorded terms
                    amount_minor_units=to_minor_units(transaction.total_amount, transaction.currency),
                    currency=transaction.currency,
                    line_item_label=product_label,
                    metadata=self._checkout_metadata(transaction),
                    success_url=f"{self.frontend_url}/payment/success?transaction_id={transaction_id}",
                    cancel_url=f"{self.frontend_url}/payment/cancel?transaction_id={transaction_id}",
                    customer_email=customer_email,
                )

                await self.store.update(transaction_id, {
                    "payment_gateway_id": checkout.session_id,
                    "payment_provider": provider,
                })
                status = transaction.status
        except GatewayError:
            record_checkout(provider, "error")
            logger.error(f"Payment initiation rolled back for transaction {transaction_id} (offer {offer_id})")
            raise

        record_checkout(provider, "created")
        logger.info(f"Checkout {checkout.session_id} opened with {provider} for transaction {transaction_id}")
        return PaymentInitiation(
            transaction_id=transaction_id,
            redirect_url=checkout.redirect_url,
            status=status,
            reused=reused,
        )

    async def _retrieve_open_checkout(self, transaction: Transaction) -> Optional[CheckoutSession]:
        """The stored checkout if the provider still reports it open"""
        if not transaction.payment_gateway_id:
            return None
        stored_provider = transaction.payment_provider or self.default_provider
        if stored_provider not in self.gateways:
            return None
        try:
            checkout = await self.gateways.get(stored_provider).retrieve_checkout(transaction.payment_gateway_id)
        except GatewayError as e:
            logger.warning(
                f"Checkout {transaction.payment_gateway_id} for transaction {transaction.id} "
                f"could not be retrieved, opening a new one: {e.message}"
            )
            return None
        return checkout if checkout.is_open else None

    @staticmethod
    def _check_same_purchase(
        transaction: Transaction,
        listing_id: int,
        buyer_id: int,
        currency: str,
        price: Decimal,
        quantity: Decimal,
    ):
        """An offer's existing transaction is only handed back to the buyer it was opened for"""
        mismatched = [
            name
            for name, stored, requested in (
                ("buyer_id", transaction.buyer_id, buyer_id),
                ("listing_id", transaction.listing_id, listing_id),
                ("currency", transaction.currency, currency),
            )
            if stored != requested
        ]
        if mismatched:
            raise ConflictError(
                f"Offer {transaction.offer_id} is already being paid under transaction {transaction.id}",
                {"transaction_id": transaction.id, "fields": mismatched},
            )
        if Decimal(transaction.final_price) != price or Decimal(transaction.final_quantity) != quantity:
            logger.warning(
                f"Initiation for transaction {transaction.id} requested {price} x {quantity}; "
                f"keeping recorded terms {transaction.final_price} x {transaction.final_quantity}"
            )

    @staticmethod
    def _checkout_metadata(transaction: Transaction) -> Dict[str, str]:
        def _str(value):
            return "" if value is None else str(value)

        return {
            "transaction_id": _str(transaction.id),
            "listing_id": _str(transaction.listing_id),
            "buyer_id": _str(transaction.buyer_id),
            "seller_id": _str(transaction.seller_id),
            "offer_id": _str(transaction.offer_id),
        }

    # Webhooks

    async def handle_webhook(self, raw_body: Optional[bytes], signature: Optional[str], provider: str) -> WebhookResult:
        """
        Verify, record and apply one provider webhook delivery.

        The audit row is committed before the ledger is touched. If applying the
        event fails, the row keeps the error and the exception propagates so the
        caller answers with a 4xx and the provider redelivers.

        A failure reported for a checkout the transaction no longer points at
        (an expired session replaced on reuse) is recorded as processed and
        reported as "stale" without a transition. Successes are always applied;
        one arriving through a replaced checkout repoints the transaction at it.
        """
        if not raw_body or not signature:
            raise MissingSignatureError()

        gateway = self.gateways.get(provider)
        event = await gateway.verify_webhook_signature(raw_body, signature, self.gateways.webhook_secret(provider))

        audit = await self.audit_log.record(provider, event)
        audit_id = audit.id
        log = LoggerAdapter(logger, {"provider": provider, "event_id": event.event_id, "audit_id": audit_id})

        if event.outcome == EventOutcome.IGNORED:
            await self.audit_log.mark_processed(audit_id)
            record_webhook(provider, "ignored")
            log.debug(f"Ignoring {provider} event type {event.event_type}")
            return WebhookResult(status="ignored", event_id=event.event_id)

        transaction_id = await self._resolve_transaction_id(provider, event)
        if transaction_id is None:
            await self.audit_log.mark_failed(audit_id, "No transaction id in event metadata")
            record_webhook(provider, "unresolved")
            log.warning(
                f"{provider} event {event.event_id} ({event.event_type}) carries no resolvable "
                f"transaction id; left for reconciliation"
            )
            return WebhookResult(status="unresolved", event_id=event.event_id)

        stale = False
        try:
            async with unit_of_work(self.session):
                if event.outcome == EventOutcome.SUCCEEDED:
                    current = await self.store.find_by_id(transaction_id, for_update=True)
                    paid_through = None
                    if current is not None and self._is_superseded(provider, event, current):
                        paid_through = {"payment_gateway_id": event.gateway_reference, "payment_provider": provider}
                    transaction = await self.store.apply_event(
                        transaction_id, LifecycleEvent.COMPLETE, extra_fields=paid_through
                    )
                else:
                    transaction = await self.store.find_by_id(transaction_id, for_update=True)
                    stale = transaction is not None and self._is_superseded(provider, event, transaction)
                    if transaction is not None and not stale:
                        failure = FailureReason(
                            code=event.failure_code or "payment_failed",
                            message=event.failure_message or "",
                        )
                        transaction = await self.store.apply_event(transaction_id, LifecycleEvent.FAIL, failure=failure)

                if transaction is not None:
                    status = "stale" if stale else transaction.status.value
                    await self.audit_log.mark_processed(audit_id, transaction_id)
        except Exception as e:
            await self.audit_log.mark_failed(audit_id, f"{type(e).__name__}: {e}")
            record_webhook(provider, "error")
            raise

        if transaction is None:
            await self.audit_log.mark_failed(audit_id, f"Transaction {transaction_id} not found")
            record_webhook(provider, "unresolved")
            return WebhookResult(status="unresolved", event_id=event.event_id)

        if stale:
            record_webhook(provider, "stale")
            log.info(
                f"{event.event_type} for replaced checkout {event.gateway_reference} left transaction "
                f"{transaction_id} unchanged (current checkout {transaction.payment_gateway_id})"
            )
            return WebhookResult(status="stale", event_id=event.event_id, transaction_id=transaction_id)

        record_webhook(provider, event.outcome.value)
        return WebhookResult(status=status, event_id=event.event_id, transaction_id=transaction_id)

    def _is_superseded(self, provider: str, event: GatewayEvent, transaction: Transaction) -> bool:
        """The event names a checkout that the transaction has since replaced"""
        if not event.gateway_reference or not transaction.payment_gateway_id:
            return False
        current_provider = transaction.payment_provider or self.default_provider
        return (current_provider, transaction.payment_gateway_id) != (provider, event.gateway_reference)

    async def _resolve_transaction_id(self, provider: str, event: GatewayEvent) -> Optional[int]:
        if event.transaction_id is not None:
            return event.transaction_id
        if event.gateway_reference:
            transaction = await self.store.find_by_gateway_id(provider, event.gateway_reference)
            if transaction is not None:
                logger.info(
                    f"Resolved {provider} event {event.event_id} to transaction {transaction.id} "
                    f"by gateway reference"
                )
                return transaction.id
        return None

    # Queries

    async def get_transaction(self, transaction_id: int) -> Optional[Transaction]:
        return await self.store.find_by_id(transaction_id)

    async def get_user_transactions(self, user_id: int) -> List[Transaction]:
        return await self.store.find_by_user(user_id)

    async def list_transactions(self, filters: TransactionFilter) -> Tuple[List[Transaction], int]:
        items = await self.store.find_with_filters(filters)
        total = await self.store.count_with_filters(filters)
        return items, total

    async def get_statistics(self, filters: TransactionFilter) -> Dict[str, Any]:
        return await self.store.statistics(filters)

    # Manual status changes and refunds

    async def update_status(
        self,
        transaction_id: int,
        status: TransactionStatus,
        reason: Optional[str] = None,
        payment_gateway_id: Optional[str] = None,
    ) -> Transaction:
        async with unit_of_work(self.session):
            transaction = await self.store.update_status(transaction_id, status, reason)
            if transaction is None:
                raise NotFoundError("Transaction", transaction_id)
            if payment_gateway_id:
                transaction = await self.store.update(transaction_id, {"payment_gateway_id": payment_gateway_id})
        return transaction

    async def request_refund(self, transaction_id: int, amount: Decimal, reason: Optional[str] = None) -> Transaction:
        """Stage a refund on a COMPLETED transaction; no money moves here"""
        transaction = await self._get_or_404(transaction_id)
        amount = Decimal(amount)
        if amount <= 0:
            raise ValidationError("Refund amount must be positive", field="amount")
        if amount > transaction.total_amount:
            raise ValidationError(
                f"Refund amount {amount} exceeds transaction total {transaction.total_amount}",
                field="amount",
            )

        refund_reason = RefundReason(text=reason) if reason else None
        transaction = await self.store.apply_event(
            transaction_id,
            LifecycleEvent.REQUEST_REFUND,
            refund_amount=amount,
            refund_reason=refund_reason,
        )
        if transaction is None:
            raise NotFoundError("Transaction", transaction_id)
        return transaction

    async def complete_refund(self, transaction_id: int) -> Transaction:
        await self._get_or_404(transaction_id)
        transaction = await self.store.apply_event(transaction_id, LifecycleEvent.COMPLETE_REFUND)
        if transaction is None:
            raise NotFoundError("Transaction", transaction_id)
        return transaction

    async def fail_refund(self, transaction_id: int, reason: str) -> Transaction:
        await self._get_or_404(transaction_id)
        transaction = await self.store.apply_event(
            transaction_id,
            LifecycleEvent.FAIL_REFUND,
            failure=FailureReason(code="refund_failed", message=reason),
        )
        if transaction is None:
            raise NotFoundError("Transaction", transaction_id)
        return transaction

    async def _get_or_404(self, transaction_id: int) -> Transaction:
        transaction = await self.store.find_by_id(transaction_id)
        if transaction is None:
            raise NotFoundError("Transaction", transaction_id)
        return transaction
