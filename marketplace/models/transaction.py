"""
Transaction model - the payment ledger entry
"""

from sqlalchemy import Column, String, ForeignKey, Enum, Numeric, DateTime, Integer, Index, JSON, text
import enum

from marketplace.models.base import BaseModel


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class RefundStatus(str, enum.Enum):
    NONE = "none"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({
    TransactionStatus.COMPLETED,
    TransactionStatus.FAILED,
    TransactionStatus.REFUNDED,
})

# SQLAlchemy persists enum names
_PENDING_ONLY = text("status = 'PENDING'")


class Transaction(BaseModel):
    """
    One payment attempt for a listing (directly or through an accepted offer).
    Rows are updated through the lifecycle rules only and never deleted.
    """
    __tablename__ = "transactions"
    __table_args__ = (
        # At most one in-flight payment attempt per offer
        Index(
            "uq_transactions_offer_pending",
            "offer_id",
            unique=True,
            postgresql_where=_PENDING_ONLY,
            sqlite_where=_PENDING_ONLY,
        ),
        Index("ix_transactions_gateway", "payment_provider", "payment_gateway_id"),
    )

    listing_id = Column(Integer, ForeignKey("listings.id"), nullable=False, index=True)
    buyer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    seller_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    offer_id = Column(Integer, ForeignKey("offers.id"), nullable=True, index=True)

    final_price = Column(Numeric(18, 8), nullable=False)
    final_quantity = Column(Numeric(18, 8), nullable=False)
    currency = Column(String(3), nullable=False)

    status = Column(
        Enum(TransactionStatus),
        default=TransactionStatus.PENDING,
        nullable=False,
        index=True
    )
    payment_provider = Column(String(32))
    payment_gateway_id = Column(String(255))
    refund_amount = Column(Numeric(18, 8))
    refund_status = Column(
        Enum(RefundStatus),
        default=RefundStatus.NONE,
        nullable=False
    )
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, default=dict, nullable=False)
    completed_at = Column(DateTime(timezone=True))

    @property
    def total_amount(self):
        return self.final_price * self.final_quantity

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self):
        return f"<Transaction(id={self.id}, listing_id={self.listing_id}, offer_id={self.offer_id}, status={self.status})>"
