"""
Request dependencies for the payment endpoints
"""

from functools import lru_cache

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.config import settings
from marketplace.core.database import get_session
from marketplace.services.flutterwave_gateway import FlutterwaveGateway
from marketplace.services.gateway import GatewayRegistry, PaymentProvider
from marketplace.services.payment_orchestrator import PaymentOrchestrator
from marketplace.services.stripe_gateway import StripeGateway


@lru_cache()
def get_gateway_registry() -> GatewayRegistry:
    """
    Gateway clients for every provider with credentials configured
    """
    registry = GatewayRegistry()
    if settings.STRIPE_SECRET_KEY:
        registry.register(
            PaymentProvider.STRIPE.value,
            StripeGateway(
                api_key=settings.STRIPE_SECRET_KEY,
                timeout=settings.GATEWAY_TIMEOUT_SECONDS,
                max_network_retries=settings.STRIPE_MAX_NETWORK_RETRIES,
            ),
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
        )
    if settings.FLUTTERWAVE_SECRET_KEY:
        registry.register(
            PaymentProvider.FLUTTERWAVE.value,
            FlutterwaveGateway(
                secret_key=settings.FLUTTERWAVE_SECRET_KEY,
                base_url=settings.FLUTTERWAVE_BASE_URL,
                payment_options=settings.FLUTTERWAVE_PAYMENT_OPTIONS,
                timeout=settings.GATEWAY_TIMEOUT_SECONDS,
            ),
            webhook_secret=settings.FLUTTERWAVE_SECRET_HASH,
        )
    return registry


async def get_orchestrator(
    db: AsyncSession = Depends(get_session),
    gateways: GatewayRegistry = Depends(get_gateway_registry),
) -> PaymentOrchestrator:
    return PaymentOrchestrator(db, gateways)
