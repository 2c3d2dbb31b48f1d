"""
Narrow access to entities the payment ledger references but does not own.

Only existence checks and status setters live here; listing/offer CRUD is
handled elsewhere in the marketplace.
"""

import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.models.listing import Listing, ListingStatus
from marketplace.models.offer import Offer, OfferStatus
from marketplace.models.user import User

logger = logging.getLogger(__name__)


class ListingRepository:

    def __init__(self, session: AsyncSession):
        self.session = session

    async def exists(self, listing_id: int) -> bool:
        result = await self.session.execute(select(Listing.id).where(Listing.id == listing_id))
        return result.scalar_one_or_none() is not None

    async def get_status(self, listing_id: int) -> Optional[ListingStatus]:
        result = await self.session.execute(select(Listing.status).where(Listing.id == listing_id))
        return result.scalar_one_or_none()

    async def set_status(self, listing_id: int, status: ListingStatus) -> bool:
        result = await self.session.execute(
            update(Listing)
            .where(Listing.id == listing_id)
            .values(status=status)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount == 0:
            logger.warning(f"Listing {listing_id} not found while setting status {status.value}")
            return False
        logger.info(f"Listing {listing_id} status -> {status.value}")
        return True


class OfferRepository:

    def __init__(self, session: AsyncSession):
        self.session = session

    async def exists(self, offer_id: int) -> bool:
        result = await self.session.execute(select(Offer.id).where(Offer.id == offer_id))
        return result.scalar_one_or_none() is not None

    async def get_status(self, offer_id: int) -> Optional[OfferStatus]:
        result = await self.session.execute(select(Offer.status).where(Offer.id == offer_id))
        return result.scalar_one_or_none()

    async def set_status(self, offer_id: int, status: OfferStatus) -> bool:
        result = await self.session.execute(
            update(Offer)
            .where(Offer.id == offer_id)
            .values(status=status)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount == 0:
            logger.warning(f"Offer {offer_id} not found while setting status {status.value}")
            return False
        logger.info(f"Offer {offer_id} status -> {status.value}")
        return True


class UserRepository:

    def __init__(self, session: AsyncSession):
        self.session = session

    async def exists(self, user_id: int) -> bool:
        result = await self.session.execute(select(User.id).where(User.id == user_id))
        return result.scalar_one_or_none() is not None
