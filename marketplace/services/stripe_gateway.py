"""
Stripe Checkout client (card rail)
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import stripe

from marketplace.core.exceptions import GatewayError, InvalidSignatureError, ValidationError
from marketplace.services.gateway import (
    CheckoutSession,
    EventOutcome,
    GatewayClient,
    GatewayEvent,
    PaymentProvider,
    parse_transaction_id,
)

logger = logging.getLogger(__name__)

SUCCESS_EVENTS = {
    "checkout.session.async_payment_succeeded",
    "payment_intent.succeeded",
    "charge.succeeded",
}

FAILURE_EVENTS = {
    "checkout.session.async_payment_failed": "async_payment_failed",
    "checkout.session.expired": "checkout_expired",
    "payment_intent.payment_failed": "payment_failed",
    "charge.failed": "charge_failed",
}


def normalize_stripe_event(payload: Dict[str, Any]) -> GatewayEvent:
    """
    Map a Stripe event document onto the ledger's success / failure / ignored outcomes
    """
    event_type = payload.get("type", "")
    obj = (payload.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}

    outcome = EventOutcome.IGNORED
    failure_code = None
    failure_message = None

    if event_type == "checkout.session.completed":
        # Delayed payment methods complete the session before the money arrives
        if obj.get("payment_status") in ("paid", "no_payment_required"):
            outcome = EventOutcome.SUCCEEDED
    elif event_type in SUCCESS_EVENTS:
        outcome = EventOutcome.SUCCEEDED
    elif event_type in FAILURE_EVENTS:
        outcome = EventOutcome.FAILED
        failure_code = FAILURE_EVENTS[event_type]
        error = obj.get("last_payment_error") or {}
        failure_code = error.get("code") or obj.get("failure_code") or failure_code
        failure_message = (
            error.get("message")
            or obj.get("failure_message")
            or f"Stripe reported {event_type}"
        )

    gateway_reference = obj.get("id") if event_type.startswith("checkout.session.") else None

    return GatewayEvent(
        event_id=payload.get("id", ""),
        event_type=event_type,
        outcome=outcome,
        payload=payload,
        transaction_id=parse_transaction_id(metadata.get("transaction_id")),
        gateway_reference=gateway_reference,
        failure_code=failure_code,
        failure_message=failure_message,
        metadata=dict(metadata),
    )


class StripeGateway(GatewayClient):
    """
    Card payments through Stripe hosted Checkout.

    The Stripe SDK is synchronous; calls run in a worker thread and are bounded
    by the gateway timeout.
    """

    provider = PaymentProvider.STRIPE.value

    def __init__(self, api_key: str, timeout: float = 15.0, max_network_retries: int = 2):
        super().__init__(timeout=timeout)
        self._api_key = api_key
        stripe.max_network_retries = max_network_retries

    async def create_checkout(
        self,
        amount_minor_units: int,
        currency: str,
        line_item_label: str,
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        params: Dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [{
                "price_data": {
                    "currency": currency.lower(),
                    "unit_amount": amount_minor_units,
                    "product_data": {"name": line_item_label},
                },
                "quantity": 1,
            }],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            # Copy metadata onto the PaymentIntent so payment_intent.* events resolve too
            "payment_intent_data": {"metadata": metadata},
        }
        if metadata.get("transaction_id"):
            params["client_reference_id"] = metadata["transaction_id"]
        if customer_email:
            params["customer_email"] = customer_email

        try:
            session = await self._bounded(
                asyncio.to_thread(stripe.checkout.Session.create, api_key=self._api_key, **params),
                "create_checkout",
            )
        except stripe.StripeError as e:
            error_code = getattr(e, "code", None)
            logger.error(f"Stripe checkout session creation failed: {e} (code: {error_code})")
            raise GatewayError(self.provider, f"Failed to create checkout session: {e}", error_code) from e

        logger.info(f"Stripe checkout session {session.id} created for transaction {metadata.get('transaction_id')}")
        return CheckoutSession(session_id=session.id, redirect_url=session.url, status=session.status or "open")

    async def retrieve_checkout(self, session_id: str) -> CheckoutSession:
        try:
            session = await self._bounded(
                asyncio.to_thread(stripe.checkout.Session.retrieve, session_id, api_key=self._api_key),
                "retrieve_checkout",
            )
        except stripe.StripeError as e:
            logger.warning(f"Stripe checkout session {session_id} could not be retrieved: {e}")
            raise GatewayError(self.provider, f"Failed to retrieve checkout session: {e}", getattr(e, "code", None)) from e

        return CheckoutSession(session_id=session.id, redirect_url=session.url, status=session.status or "open")

    async def verify_webhook_signature(self, raw_body: bytes, signature: str, secret: str) -> GatewayEvent:
        try:
            stripe.Webhook.construct_event(raw_body, signature, secret)
        except stripe.SignatureVerificationError as e:
            logger.error(f"Invalid Stripe webhook signature: {e}")
            raise InvalidSignatureError() from e
        except ValueError as e:
            raise ValidationError(f"Malformed Stripe webhook payload: {e}") from e

        payload = json.loads(raw_body)
        return normalize_stripe_event(payload)
