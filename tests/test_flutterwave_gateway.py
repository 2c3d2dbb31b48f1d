"""
Flutterwave mobile-money rail tests over a mocked HTTP transport
"""

import json
import pytest
import httpx

from marketplace.core.exceptions import GatewayError, InvalidSignatureError, ValidationError
from marketplace.services.gateway import EventOutcome
from marketplace.services.flutterwave_gateway import (
    FlutterwaveGateway,
    TX_REF_PATTERN,
    build_tx_ref,
    normalize_flutterwave_event,
    transaction_id_from_tx_ref,
)

SECRET_HASH = "flw-secret-hash"


def make_gateway(handler):
    return FlutterwaveGateway(
        secret_key="FLWSECK_TEST-123",
        base_url="https://api.flutterwave.test/v3",
        payment_options="mobilemoneyuganda",
        timeout=5,
        transport=httpx.MockTransport(handler),
    )


def charge_completed(status="successful", tx_ref="mkt-42-0123456789ab", meta=None, charge_id=987):
    payload = {
        "event": "charge.completed",
        "data": {
            "id": charge_id,
            "tx_ref": tx_ref,
            "status": status,
            "amount": 450000,
            "currency": "UGX",
            "processor_response": "Declined by mobile operator" if status == "failed" else "Approved",
        },
    }
    if meta is not None:
        payload["meta_data"] = meta
    return payload


@pytest.mark.unit
class TestTxRef:

    def test_round_trip(self):
        tx_ref = build_tx_ref(42)

        assert TX_REF_PATTERN.match(tx_ref)
        assert transaction_id_from_tx_ref(tx_ref) == 42

    def test_refs_are_unique_per_attempt(self):
        assert build_tx_ref(42) != build_tx_ref(42)

    @pytest.mark.parametrize("tx_ref", [None, "", "order-42", "mkt-abc-123"])
    def test_foreign_refs(self, tx_ref):
        assert transaction_id_from_tx_ref(tx_ref) is None


@pytest.mark.unit
class TestNormalizeFlutterwaveEvent:

    def test_successful_charge(self):
        event = normalize_flutterwave_event(charge_completed())

        assert event.outcome == EventOutcome.SUCCEEDED
        assert event.event_id == "charge.completed:987"
        assert event.transaction_id == 42
        assert event.gateway_reference == "mkt-42-0123456789ab"

    def test_metadata_wins_over_tx_ref(self):
        event = normalize_flutterwave_event(charge_completed(meta={"transaction_id": "7"}))

        assert event.transaction_id == 7

    def test_failed_charge(self):
        event = normalize_flutterwave_event(charge_completed(status="failed"))

        assert event.outcome == EventOutcome.FAILED
        assert event.failure_code == "charge_failed"
        assert event.failure_message == "Declined by mobile operator"

    def test_pending_charge_ignored(self):
        event = normalize_flutterwave_event(charge_completed(status="pending"))

        assert event.outcome == EventOutcome.IGNORED

    def test_other_event_ignored(self):
        event = normalize_flutterwave_event({"event": "transfer.completed", "data": {"id": 1}})

        assert event.outcome == EventOutcome.IGNORED
        assert event.transaction_id is None


@pytest.mark.unit
@pytest.mark.asyncio
class TestFlutterwaveGateway:

    async def test_create_checkout(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["path"] = request.url.path
            captured["auth"] = request.headers["Authorization"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "status": "success",
                "message": "Hosted Link",
                "data": {"link": "https://checkout.flutterwave.test/pay/abc"},
            })

        gateway = make_gateway(handler)
        session = await gateway.create_checkout(
            amount_minor_units=450000,
            currency="UGX",
            line_item_label="Coltan x 3",
            metadata={"transaction_id": "42"},
            success_url="https://market.test/payment/success?transaction_id=42",
            cancel_url="https://market.test/payment/cancel?transaction_id=42",
            customer_email="buyer@example.com",
        )
        await gateway.close()

        assert captured["path"] == "/v3/payments"
        assert captured["auth"] == "Bearer FLWSECK_TEST-123"
        body = captured["body"]
        assert body["amount"] == "450000"
        assert body["currency"] == "UGX"
        assert body["payment_options"] == "mobilemoneyuganda"
        assert body["customer"] == {"email": "buyer@example.com"}
        assert body["meta"] == {"transaction_id": "42"}
        assert transaction_id_from_tx_ref(body["tx_ref"]) == 42

        assert session.session_id == body["tx_ref"]
        assert session.redirect_url == "https://checkout.flutterwave.test/pay/abc"
        assert session.is_open

    async def test_create_checkout_requires_email(self):
        gateway = make_gateway(lambda request: httpx.Response(500))

        with pytest.raises(ValidationError):
            await gateway.create_checkout(100, "UGX", "Gold", {"transaction_id": "1"}, "s", "c")
        await gateway.close()

    async def test_rejected_request(self):
        gateway = make_gateway(lambda request: httpx.Response(
            400, json={"status": "error", "message": "Invalid currency", "data": None}
        ))

        with pytest.raises(GatewayError) as exc_info:
            await gateway.create_checkout(100, "XYZ", "Gold", {"transaction_id": "1"}, "s", "c", "b@example.com")
        await gateway.close()

        assert exc_info.value.provider == "flutterwave"
        assert exc_info.value.details["provider_code"] == "400"
        assert "Invalid currency" in exc_info.value.message

    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        gateway = make_gateway(handler)

        with pytest.raises(GatewayError):
            await gateway.create_checkout(100, "UGX", "Gold", {"transaction_id": "1"}, "s", "c", "b@example.com")
        await gateway.close()

    async def test_retrieve_checkout_is_never_reusable(self):
        def handler(request):
            assert request.url.params["tx_ref"] == "mkt-42-0123456789ab"
            return httpx.Response(200, json={"status": "success", "data": {"status": "pending"}})

        gateway = make_gateway(handler)
        session = await gateway.retrieve_checkout("mkt-42-0123456789ab")
        await gateway.close()

        assert session.status == "pending"
        assert session.is_open is False

    async def test_verify_webhook_signature(self):
        gateway = make_gateway(lambda request: httpx.Response(500))
        body = json.dumps(charge_completed()).encode()

        event = await gateway.verify_webhook_signature(body, SECRET_HASH, SECRET_HASH)
        await gateway.close()

        assert event.outcome == EventOutcome.SUCCEEDED
        assert event.transaction_id == 42

    async def test_wrong_secret_hash(self):
        gateway = make_gateway(lambda request: httpx.Response(500))

        with pytest.raises(InvalidSignatureError):
            await gateway.verify_webhook_signature(b"{}", "guess", SECRET_HASH)
        with pytest.raises(InvalidSignatureError):
            await gateway.verify_webhook_signature(b"{}", "anything", "")
        await gateway.close()

    async def test_malformed_body(self):
        gateway = make_gateway(lambda request: httpx.Response(500))

        with pytest.raises(ValidationError):
            await gateway.verify_webhook_signature(b"{not json", SECRET_HASH, SECRET_HASH)
        await gateway.close()
