"""
Payment gateway abstraction

A gateway client wraps one payment provider (a "rail") behind three async calls:
create a hosted checkout, retrieve it again, and verify + normalize a webhook.
"""

import abc
import asyncio
import enum
import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Awaitable, Dict, Optional

from marketplace.core.exceptions import GatewayError, ValidationError

logger = logging.getLogger(__name__)

# ISO 4217 currencies without a minor unit
ZERO_DECIMAL_CURRENCIES = frozenset({
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
})


class PaymentProvider(str, enum.Enum):
    STRIPE = "stripe"
    FLUTTERWAVE = "flutterwave"


class EventOutcome(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    IGNORED = "ignored"


@dataclass
class CheckoutSession:
    """Hosted checkout reference returned by a provider"""
    session_id: str
    redirect_url: Optional[str]
    status: str = "open"

    @property
    def is_open(self) -> bool:
        return self.status == "open" and bool(self.redirect_url)


@dataclass
class GatewayEvent:
    """Provider webhook normalized to what the ledger acts on"""
    event_id: str
    event_type: str
    outcome: EventOutcome
    payload: Dict[str, Any]
    transaction_id: Optional[int] = None
    gateway_reference: Optional[str] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Convert a major-unit amount to the provider's integer minor units"""
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        exponent = Decimal("1")
    else:
        exponent = Decimal("100")
    return int((Decimal(amount) * exponent).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int, currency: str) -> Decimal:
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return Decimal(amount)
    return (Decimal(amount) / Decimal("100")).quantize(Decimal("0.01"))


def parse_transaction_id(value: Any) -> Optional[int]:
    """Metadata values arrive as strings; anything non-numeric is treated as absent"""
    if value is None or value == "":
        return None
    try:
        return int(str(value))
    except ValueError:
        logger.warning(f"Ignoring non-numeric transaction_id in webhook metadata: {value!r}")
        return None


class GatewayClient(abc.ABC):
    """Interface every payment provider client implements"""

    provider: str = ""

    def __init__(self, timeout: float = 15.0):
        self.timeout = timeout

    @abc.abstractmethod
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
        """Open a hosted checkout for the given total amount"""

    @abc.abstractmethod
    async def retrieve_checkout(self, session_id: str) -> CheckoutSession:
        """Look up a previously created checkout"""

    @abc.abstractmethod
    async def verify_webhook_signature(
        self,
        raw_body: bytes,
        signature: str,
        secret: str,
    ) -> GatewayEvent:
        """Verify a webhook and return it normalized; raises InvalidSignatureError"""

    async def _bounded(self, call: Awaitable, operation: str):
        """Await a provider call with the configured timeout"""
        try:
            return await asyncio.wait_for(call, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"{self.provider} {operation} timed out after {self.timeout}s")
            raise GatewayError(
                self.provider,
                f"{self.provider} {operation} timed out after {self.timeout}s",
                provider_code="timeout",
            ) from e


class GatewayRegistry:
    """Provider name -> (client, webhook secret)"""

    def __init__(self):
        self._clients: Dict[str, GatewayClient] = {}
        self._secrets: Dict[str, str] = {}

    def register(self, provider: str, client: GatewayClient, webhook_secret: str = ""):
        self._clients[provider] = client
        self._secrets[provider] = webhook_secret

    def get(self, provider: str) -> GatewayClient:
        try:
            return self._clients[provider]
        except KeyError:
            raise ValidationError(f"Unsupported payment provider: {provider}", field="provider")

    def webhook_secret(self, provider: str) -> str:
        self.get(provider)
        return self._secrets.get(provider, "")

    def __contains__(self, provider: str) -> bool:
        return provider in self._clients

    @property
    def providers(self):
        return list(self._clients)
