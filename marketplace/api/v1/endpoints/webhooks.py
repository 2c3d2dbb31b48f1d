"""
Payment provider webhooks
Public endpoints; authenticity comes from the provider signature
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import JSONResponse

from marketplace.api.v1.dependencies import get_orchestrator
from marketplace.core.exceptions import MarketplaceException
from marketplace.schemas.response import ErrorDetail, ErrorResponse
from marketplace.schemas.transaction import WebhookAck
from marketplace.services.gateway import PaymentProvider
from marketplace.services.payment_orchestrator import PaymentOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhook/{provider}", response_model=WebhookAck)
async def receive_webhook(
    provider: str,
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    verif_hash: Optional[str] = Header(None, alias="verif-hash"),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """
    Verify and apply one webhook delivery.

    Any failure answers 400 so the provider keeps the event queued and
    redelivers it; the raw event is already in the audit log by then.
    """
    raw_body = await request.body()
    signature = stripe_signature if provider == PaymentProvider.STRIPE.value else verif_hash

    try:
        result = await orchestrator.handle_webhook(raw_body, signature, provider)
    except MarketplaceException as e:
        logger.warning(f"{provider} webhook rejected: {e.code} {e.message}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=ErrorResponse(
                error=ErrorDetail(code=e.code, message=e.message, details=e.details)
            ).model_dump(mode="json"),
        )

    return WebhookAck(
        status=result.status,
        event_id=result.event_id,
        transaction_id=result.transaction_id,
    )
