"""
Write-ahead audit log for provider webhooks
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.database import unit_of_work
from marketplace.models.webhook_event import WebhookEvent
from marketplace.services.gateway import GatewayEvent

logger = logging.getLogger(__name__)


class WebhookAuditLog:
    """
    Every verified delivery is stored before the ledger acts on it, so a
    failed processing attempt still leaves the raw event behind for
    reconciliation. Redeliveries of one provider event are separate rows
    numbered by delivery_attempt.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record(self, provider: str, event: GatewayEvent) -> WebhookEvent:
        async with unit_of_work(self.session):
            result = await self.session.execute(
                select(func.count(WebhookEvent.id)).where(
                    WebhookEvent.provider == provider,
                    WebhookEvent.event_id == event.event_id,
                )
            )
            previous = result.scalar_one()

            entry = WebhookEvent(
                provider=provider,
                event_id=event.event_id,
                event_type=event.event_type,
                payload=event.payload,
                delivery_attempt=previous + 1,
                processed=False,
            )
            self.session.add(entry)
            await self.session.flush()

        if previous:
            logger.info(f"Redelivery #{previous + 1} of {provider} event {event.event_id}")
        else:
            logger.info(f"Recorded {provider} event {event.event_id} ({event.event_type})")
        return entry

    async def get(self, audit_id: int) -> Optional[WebhookEvent]:
        result = await self.session.execute(
            select(WebhookEvent)
            .where(WebhookEvent.id == audit_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def mark_processed(self, audit_id: int, transaction_id: Optional[int] = None) -> Optional[WebhookEvent]:
        async with unit_of_work(self.session):
            entry = await self.get(audit_id)
            if entry is None:
                return None
            entry.processed = True
            entry.processed_at = datetime.now(timezone.utc)
            entry.processing_error = None
            if transaction_id is not None:
                entry.transaction_id = transaction_id
        return entry

    async def mark_failed(self, audit_id: int, error: str, transaction_id: Optional[int] = None) -> Optional[WebhookEvent]:
        """Keep the row unprocessed and note why"""
        async with unit_of_work(self.session):
            entry = await self.get(audit_id)
            if entry is None:
                return None
            entry.processed = False
            entry.processing_error = error[:2000]
            if transaction_id is not None:
                entry.transaction_id = transaction_id
        logger.warning(f"Webhook audit entry {audit_id} left unprocessed: {error}")
        return entry

    async def list_for_event(self, provider: str, event_id: str) -> List[WebhookEvent]:
        result = await self.session.execute(
            select(WebhookEvent)
            .where(WebhookEvent.provider == provider, WebhookEvent.event_id == event_id)
            .order_by(WebhookEvent.delivery_attempt)
        )
        return list(result.scalars().all())

    async def list_unprocessed(self, provider: Optional[str] = None, limit: int = 100) -> List[WebhookEvent]:
        stmt = select(WebhookEvent).where(WebhookEvent.processed.is_(False))
        if provider:
            stmt = stmt.where(WebhookEvent.provider == provider)
        result = await self.session.execute(stmt.order_by(WebhookEvent.created_at, WebhookEvent.id).limit(limit))
        return list(result.scalars().all())
