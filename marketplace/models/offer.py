"""
Offer model
"""

from sqlalchemy import Column, String, ForeignKey, Enum, Numeric, Integer, Text
import enum

from marketplace.models.base import BaseModel


class OfferStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    COMPLETED = "completed"


class Offer(BaseModel):
    """
    Buyer's negotiated bid on a listing. Payments only write `status`.
    """
    __tablename__ = "offers"

    listing_id = Column(Integer, ForeignKey("listings.id"), nullable=False, index=True)
    buyer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    offer_price = Column(Numeric(18, 8), nullable=False)
    quantity = Column(Numeric(18, 8), nullable=False)
    currency = Column(String(3), default="USD", nullable=False)
    message = Column(Text)
    status = Column(
        Enum(OfferStatus),
        default=OfferStatus.PENDING,
        nullable=False,
        index=True
    )

    def __repr__(self):
        return f"<Offer(id={self.id}, listing_id={self.listing_id}, status={self.status})>"
