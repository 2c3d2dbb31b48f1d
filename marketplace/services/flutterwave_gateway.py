"""
Flutterwave hosted payments client (mobile-money rail)
"""

import hmac
import json
import logging
import re
import uuid
from typing import Any, Dict, Optional

import httpx

from marketplace.core.exceptions import GatewayError, InvalidSignatureError, ValidationError
from marketplace.services.gateway import (
    CheckoutSession,
    EventOutcome,
    GatewayClient,
    GatewayEvent,
    PaymentProvider,
    from_minor_units,
    parse_transaction_id,
)

logger = logging.getLogger(__name__)

# tx_ref layout: mkt-<transaction id>-<nonce>; one tx_ref per checkout attempt
TX_REF_PATTERN = re.compile(r"^mkt-(\d+)-[0-9a-f]+$")


def build_tx_ref(transaction_id: Any) -> str:
    return f"mkt-{transaction_id}-{uuid.uuid4().hex[:12]}"


def transaction_id_from_tx_ref(tx_ref: Optional[str]) -> Optional[int]:
    if not tx_ref:
        return None
    match = TX_REF_PATTERN.match(tx_ref)
    return int(match.group(1)) if match else None


def normalize_flutterwave_event(payload: Dict[str, Any]) -> GatewayEvent:
    """
    Map a Flutterwave webhook body onto success / failure / ignored outcomes
    """
    event_type = payload.get("event") or payload.get("event.type") or ""
    data = payload.get("data") or {}
    metadata = payload.get("meta_data") or data.get("meta") or {}
    tx_ref = data.get("tx_ref")
    charge_status = (data.get("status") or "").lower()

    outcome = EventOutcome.IGNORED
    failure_code = None
    failure_message = None

    if event_type == "charge.completed":
        if charge_status == "successful":
            outcome = EventOutcome.SUCCEEDED
        elif charge_status == "failed":
            outcome = EventOutcome.FAILED
            failure_code = "charge_failed"
            failure_message = data.get("processor_response") or "Flutterwave reported a failed charge"

    transaction_id = parse_transaction_id(metadata.get("transaction_id"))
    if transaction_id is None:
        transaction_id = transaction_id_from_tx_ref(tx_ref)

    return GatewayEvent(
        event_id=f"{event_type}:{data.get('id', tx_ref)}",
        event_type=event_type,
        outcome=outcome,
        payload=payload,
        transaction_id=transaction_id,
        gateway_reference=tx_ref,
        failure_code=failure_code,
        failure_message=failure_message,
        metadata=dict(metadata),
    )


class FlutterwaveGateway(GatewayClient):
    """
    Mobile-money and card payments through Flutterwave Standard (v3 REST API).

    Flutterwave signs webhooks with a static secret hash sent in the
    `verif-hash` header; hosted payment links cannot be fetched again, so a
    retrieved checkout is never reusable and the caller opens a new one.
    """

    provider = PaymentProvider.FLUTTERWAVE.value

    def __init__(
        self,
        secret_key: str,
        base_url: str = "https://api.flutterwave.com/v3",
        payment_options: str = "card,mobilemoneyghana,mobilemoneyuganda,mpesa",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(timeout=timeout)
        self._payment_options = payment_options
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={"Authorization": f"Bearer {secret_key}"},
        )

    async def close(self):
        await self._client.aclose()

    async def _request(self, method: str, url: str, operation: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self._bounded(self._client.request(method, url, **kwargs), operation)
        except httpx.HTTPError as e:
            logger.error(f"Flutterwave {operation} failed: {e}")
            raise GatewayError(self.provider, f"Flutterwave {operation} failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400 or body.get("status") != "success":
            message = body.get("message") or f"HTTP {response.status_code}"
            logger.error(f"Flutterwave {operation} rejected: {message}")
            raise GatewayError(self.provider, f"Flutterwave {operation} rejected: {message}", str(response.status_code))

        return body

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
        if not customer_email:
            raise ValidationError("Customer email is required for Flutterwave payments", field="customer_email")

        tx_ref = build_tx_ref(metadata.get("transaction_id", "0"))
        payload = {
            "tx_ref": tx_ref,
            "amount": str(from_minor_units(amount_minor_units, currency)),
            "currency": currency.upper(),
            "redirect_url": success_url,
            "payment_options": self._payment_options,
            "customer": {"email": customer_email},
            "customizations": {
                "title": "Mineral Marketplace Payment",
                "description": line_item_label,
            },
            "meta": metadata,
        }

        body = await self._request("POST", "/payments", "create_checkout", json=payload)
        link = (body.get("data") or {}).get("link")
        if not link:
            raise GatewayError(self.provider, "Flutterwave did not return a payment link")

        logger.info(f"Flutterwave payment link created: {tx_ref}")
        return CheckoutSession(session_id=tx_ref, redirect_url=link, status="open")

    async def retrieve_checkout(self, session_id: str) -> CheckoutSession:
        body = await self._request(
            "GET",
            "/transactions/verify_by_reference",
            "retrieve_checkout",
            params={"tx_ref": session_id},
        )
        charge_status = ((body.get("data") or {}).get("status") or "").lower()
        status = {"successful": "complete", "failed": "expired"}.get(charge_status, "pending")
        return CheckoutSession(session_id=session_id, redirect_url=None, status=status)

    async def verify_webhook_signature(self, raw_body: bytes, signature: str, secret: str) -> GatewayEvent:
        if not secret or not hmac.compare_digest(signature.encode(), secret.encode()):
            logger.error("Invalid Flutterwave webhook signature")
            raise InvalidSignatureError()

        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            raise ValidationError(f"Malformed Flutterwave webhook payload: {e}") from e

        return normalize_flutterwave_event(payload)
