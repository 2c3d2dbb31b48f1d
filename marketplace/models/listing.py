"""
Mineral listing model
"""

from sqlalchemy import Column, String, ForeignKey, Enum, Numeric, Integer
import enum

from marketplace.models.base import BaseModel


class ListingStatus(str, enum.Enum):
    AVAILABLE = "available"
    PENDING = "pending"
    SOLD = "sold"


class Listing(BaseModel):
    """
    Listing offered by a seller. Payments only write `status`.
    """
    __tablename__ = "listings"

    seller_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    mineral_type = Column(String(100), nullable=False)
    unit_price = Column(Numeric(18, 8), nullable=False)
    quantity = Column(Numeric(18, 8), nullable=False)
    currency = Column(String(3), default="USD", nullable=False)
    status = Column(
        Enum(ListingStatus),
        default=ListingStatus.AVAILABLE,
        nullable=False,
        index=True
    )

    def __repr__(self):
        return f"<Listing(id={self.id}, mineral_type={self.mineral_type}, status={self.status})>"
