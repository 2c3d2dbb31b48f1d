"""
Transaction ledger store

CRUD and filtered queries over the transactions table. Every write runs in a
unit of work: standalone calls own BEGIN/COMMIT/ROLLBACK, calls made inside an
orchestrator flow join the caller's database transaction.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.database import unit_of_work
from marketplace.core.exceptions import ConstraintError, NoFieldsError, ValidationError
from marketplace.core.metrics import record_transition
from marketplace.models.transaction import RefundStatus, Transaction, TransactionStatus
from marketplace.schemas.transaction import FailureReason, RefundReason, TransactionFilter
from marketplace.services.repositories import ListingRepository, OfferRepository, UserRepository
from marketplace.services.transaction_lifecycle import (
    LifecycleEvent,
    TransactionLifecycle,
    describe,
    event_for_status,
)

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("listing_id", "buyer_id", "final_price", "final_quantity", "currency")

UPDATABLE_FIELDS = frozenset({
    "seller_id",
    "offer_id",
    "final_price",
    "final_quantity",
    "status",
    "payment_provider",
    "payment_gateway_id",
    "refund_amount",
    "refund_status",
    "metadata",
    "completed_at",
})

IMMUTABLE_FIELDS = frozenset({"id", "listing_id", "buyer_id", "currency", "created_at"})

# Columns update() may not clear with None
REQUIRED_VALUE_FIELDS = frozenset({"final_price", "final_quantity", "status", "refund_status", "metadata"})


class TransactionStore:
    """Ledger access for one database session"""

    def __init__(self, session: AsyncSession, lifecycle: Optional[TransactionLifecycle] = None):
        self.session = session
        self.users = UserRepository(session)
        self.listings = ListingRepository(session)
        self.offers = OfferRepository(session)
        self.lifecycle = lifecycle or TransactionLifecycle(self.listings, self.offers)

    # Reads

    async def find_by_id(self, transaction_id: int, for_update: bool = False) -> Optional[Transaction]:
        stmt = select(Transaction).where(Transaction.id == transaction_id)
        return await self._one(stmt, for_update)

    async def find_by_offer_id(self, offer_id: int, for_update: bool = False) -> Optional[Transaction]:
        """
        The in-flight (PENDING) transaction for an offer if there is one,
        otherwise the most recent terminal one.
        """
        pending_first = case((Transaction.status == TransactionStatus.PENDING, 0), else_=1)
        stmt = (
            select(Transaction)
            .where(Transaction.offer_id == offer_id)
            .order_by(pending_first, Transaction.created_at.desc(), Transaction.id.desc())
            .limit(1)
        )
        return await self._one(stmt, for_update)

    async def find_by_gateway_id(self, provider: str, payment_gateway_id: str) -> Optional[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.payment_provider == provider,
                Transaction.payment_gateway_id == payment_gateway_id,
            )
            .order_by(Transaction.id.desc())
            .limit(1)
        )
        return await self._one(stmt, False)

    async def find_by_user(self, user_id: int) -> List[Transaction]:
        """Transactions where the user is the buyer or the seller, newest first"""
        result = await self.session.execute(
            select(Transaction)
            .where(or_(Transaction.buyer_id == user_id, Transaction.seller_id == user_id))
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        )
        return list(result.scalars().all())

    async def find_with_filters(self, filters: TransactionFilter) -> List[Transaction]:
        sort_column = getattr(Transaction, filters.sort_by)
        order = sort_column.asc() if filters.sort_direction == "asc" else sort_column.desc()
        stmt = (
            select(Transaction)
            .where(*self._filter_conditions(filters))
            .order_by(order, Transaction.id.desc())
            .limit(filters.limit)
            .offset((filters.page - 1) * filters.limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_with_filters(self, filters: TransactionFilter) -> int:
        stmt = select(func.count(Transaction.id)).where(*self._filter_conditions(filters))
        result = await self.session.execute(stmt)
        return result.scalar_one()

    async def statistics(self, filters: TransactionFilter) -> Dict[str, Any]:
        """
        Counts by status and amounts per currency for the filtered transactions.
        Paging and sorting fields of the filter are ignored.
        """
        amount = Transaction.final_price * Transaction.final_quantity

        def count_of(status: TransactionStatus):
            return func.count(case((Transaction.status == status, 1)))

        stmt = (
            select(
                Transaction.currency,
                func.count(Transaction.id),
                func.coalesce(func.sum(amount), 0),
                func.coalesce(func.sum(case((Transaction.status == TransactionStatus.COMPLETED, amount), else_=0)), 0),
                func.coalesce(func.avg(amount), 0),
                count_of(TransactionStatus.COMPLETED),
                count_of(TransactionStatus.PENDING),
                count_of(TransactionStatus.FAILED),
                count_of(TransactionStatus.REFUNDED),
            )
            .where(*self._filter_conditions(filters))
            .group_by(Transaction.currency)
            .order_by(Transaction.currency)
        )
        rows = (await self.session.execute(stmt)).all()

        stats: Dict[str, Any] = {
            "total_transactions": 0,
            "completed_transactions": 0,
            "pending_transactions": 0,
            "failed_transactions": 0,
            "refunded_transactions": 0,
            "by_currency": [],
        }
        for currency, total, total_amount, completed_amount, average, completed, pending, failed, refunded in rows:
            stats["total_transactions"] += total
            stats["completed_transactions"] += completed
            stats["pending_transactions"] += pending
            stats["failed_transactions"] += failed
            stats["refunded_transactions"] += refunded
            stats["by_currency"].append({
                "currency": currency,
                "total_transactions": total,
                "total_amount": Decimal(str(total_amount)),
                "completed_amount": Decimal(str(completed_amount)),
                "average_transaction_amount": Decimal(str(average)),
            })
        return stats

    # Writes

    async def create(self, data: Dict[str, Any]) -> Transaction:
        """
        Insert a PENDING transaction, reserve the listing and bind the offer.
        """
        missing = [name for name in REQUIRED_FIELDS if data.get(name) in (None, "")]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}", field=missing[0])
        if Decimal(data["final_price"]) <= 0 or Decimal(data["final_quantity"]) <= 0:
            raise ValidationError("Price and quantity must be positive", field="final_price")

        offer_id = data.get("offer_id")
        seller_id = data.get("seller_id")

        async with unit_of_work(self.session):
            if not await self.listings.exists(data["listing_id"]):
                raise ConstraintError(f"Listing {data['listing_id']} does not exist", {"field": "listing_id"})
            if not await self.users.exists(data["buyer_id"]):
                raise ConstraintError(f"Buyer {data['buyer_id']} does not exist", {"field": "buyer_id"})
            if seller_id is not None and not await self.users.exists(seller_id):
                raise ConstraintError(f"Seller {seller_id} does not exist", {"field": "seller_id"})
            if offer_id is not None:
                if not await self.offers.exists(offer_id):
                    raise ConstraintError(f"Offer {offer_id} does not exist", {"field": "offer_id"})
                pending = await self.session.execute(
                    select(Transaction.id).where(
                        Transaction.offer_id == offer_id,
                        Transaction.status == TransactionStatus.PENDING,
                    )
                )
                if pending.first() is not None:
                    raise ConstraintError(
                        f"Offer {offer_id} already has a pending transaction",
                        {"field": "offer_id"},
                    )

            transaction = Transaction(
                listing_id=data["listing_id"],
                buyer_id=data["buyer_id"],
                seller_id=seller_id,
                offer_id=offer_id,
                final_price=Decimal(data["final_price"]),
                final_quantity=Decimal(data["final_quantity"]),
                currency=data["currency"].upper(),
                status=TransactionStatus.PENDING,
                payment_provider=data.get("payment_provider"),
                payment_gateway_id=data.get("payment_gateway_id"),
                refund_status=RefundStatus.NONE,
                meta=dict(data.get("metadata") or {}),
            )
            self.session.add(transaction)
            await self.session.flush()

            await self.lifecycle.on_created(transaction)

        logger.info(
            f"Transaction {transaction.id} created for listing {transaction.listing_id} "
            f"(offer {transaction.offer_id}, buyer {transaction.buyer_id})"
        )
        return transaction

    async def update(self, transaction_id: int, fields: Dict[str, Any]) -> Optional[Transaction]:
        """
        Partial update of the given keys. A None value clears a nullable column
        (payment_gateway_id, refund_amount, ...). Returns None when no row matched.
        """
        if not fields:
            raise NoFieldsError()

        immutable = IMMUTABLE_FIELDS.intersection(fields)
        if immutable:
            raise ValidationError(f"Fields cannot be changed: {', '.join(sorted(immutable))}", field=sorted(immutable)[0])
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}", field=sorted(unknown)[0])
        cleared = sorted(key for key, value in fields.items() if value is None and key in REQUIRED_VALUE_FIELDS)
        if cleared:
            raise ValidationError(f"Fields cannot be cleared: {', '.join(cleared)}", field=cleared[0])

        async with unit_of_work(self.session):
            transaction = await self.find_by_id(transaction_id, for_update=True)
            if transaction is None:
                return None

            for key, value in fields.items():
                if key == "metadata":
                    transaction.meta = {**(transaction.meta or {}), **value}
                else:
                    setattr(transaction, key, value)

        return transaction

    async def update_status(
        self,
        transaction_id: int,
        new_status: TransactionStatus,
        reason: Optional[str] = None,
    ) -> Optional[Transaction]:
        """
        Move a transaction to COMPLETED / FAILED (or REFUNDED after a refund was
        requested), stamping completed_at or the failure reason.
        """
        event = event_for_status(new_status)
        failure = FailureReason(code="manual", message=reason) if reason else None
        return await self.apply_event(transaction_id, event, failure=failure)

    async def apply_event(
        self,
        transaction_id: int,
        event: LifecycleEvent,
        failure: Optional[FailureReason] = None,
        refund_amount: Optional[Decimal] = None,
        refund_reason: Optional[RefundReason] = None,
        extra_fields: Optional[Dict[str, Any]] = None,
    ) -> Optional[Transaction]:
        """
        Row-lock the transaction, run it through the lifecycle table and write
        the new state together with its listing/offer side effects.
        Returns None if the transaction does not exist.
        """
        async with unit_of_work(self.session):
            transaction = await self.find_by_id(transaction_id, for_update=True)
            if transaction is None:
                logger.warning(f"Transaction {transaction_id} not found for {event.value}")
                return None

            plan = self.lifecycle.plan(transaction, event)
            if not plan.changed:
                return transaction

            previous = transaction.status
            fields: Dict[str, Any] = dict(extra_fields or {})
            fields["status"] = plan.status
            fields["refund_status"] = plan.refund_status

            metadata: Dict[str, Any] = {}
            if plan.status == TransactionStatus.COMPLETED and previous == TransactionStatus.PENDING:
                fields["completed_at"] = datetime.now(timezone.utc)
            if plan.status == TransactionStatus.FAILED:
                metadata["failure_reason"] = (failure or FailureReason()).model_dump()
            if event == LifecycleEvent.REQUEST_REFUND:
                fields["refund_amount"] = refund_amount
                if refund_reason is not None:
                    metadata["refund_reason"] = refund_reason.model_dump()
            if event == LifecycleEvent.FAIL_REFUND and failure is not None:
                metadata["refund_failure"] = failure.model_dump()
            if metadata:
                fields["metadata"] = metadata

            await self.update(transaction_id, fields)
            await self.lifecycle.apply_side_effects(transaction, plan)

        record_transition(previous.value, plan.status.value)
        logger.info(
            f"Transaction {transaction_id}: {previous.value} -> {plan.status.value} "
            f"(refund {plan.refund_status.value}) via {event.value}"
            + (f"; {describe(plan)}" if plan.side_effects else "")
        )
        return transaction

    # Helpers

    async def _one(self, stmt, for_update: bool) -> Optional[Transaction]:
        if for_update:
            stmt = stmt.with_for_update()
        # Always refresh from the row so a locked read sees the committed state
        stmt = stmt.execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalars().first()

    @staticmethod
    def _filter_conditions(filters: TransactionFilter) -> list:
        conditions = []
        if filters.buyer_id is not None:
            conditions.append(Transaction.buyer_id == filters.buyer_id)
        if filters.seller_id is not None:
            conditions.append(Transaction.seller_id == filters.seller_id)
        if filters.listing_id is not None:
            conditions.append(Transaction.listing_id == filters.listing_id)
        if filters.offer_id is not None:
            conditions.append(Transaction.offer_id == filters.offer_id)
        if filters.status is not None:
            conditions.append(Transaction.status == TransactionStatus(filters.status))
        if filters.payment_provider:
            conditions.append(Transaction.payment_provider == filters.payment_provider)
        if filters.currency:
            conditions.append(Transaction.currency == filters.currency.upper())
        if filters.min_amount is not None:
            conditions.append(Transaction.final_price * Transaction.final_quantity >= filters.min_amount)
        if filters.max_amount is not None:
            conditions.append(Transaction.final_price * Transaction.final_quantity <= filters.max_amount)
        if filters.date_from is not None:
            conditions.append(Transaction.created_at >= filters.date_from)
        if filters.date_to is not None:
            conditions.append(Transaction.created_at <= filters.date_to)
        return conditions
