"""
Database models
"""

from marketplace.models.user import User, UserRole
from marketplace.models.listing import Listing, ListingStatus
from marketplace.models.offer import Offer, OfferStatus
from marketplace.models.transaction import Transaction, TransactionStatus, RefundStatus
from marketplace.models.webhook_event import WebhookEvent

__all__ = [
    "User",
    "UserRole",
    "Listing",
    "ListingStatus",
    "Offer",
    "OfferStatus",
    "Transaction",
    "TransactionStatus",
    "RefundStatus",
    "WebhookEvent"
]
