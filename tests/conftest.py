"""
Test configuration and fixtures
Async SQLite database per test, fake payment gateway, HTTP client with dependency overrides
"""

import json
import os
from decimal import Decimal
from typing import AsyncGenerator, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool
from httpx import AsyncClient, ASGITransport

# Set test environment before the settings object is built
os.environ["APP_ENV"] = "testing"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SECRET_KEY"] = "test-secret-key-that-is-long-enough-0123456789"
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret-key-that-is-long-enough-0123"
os.environ["LOG_FILE"] = ""
os.environ["LOG_FORMAT"] = "text"
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ["FLUTTERWAVE_SECRET_KEY"] = ""

# Import all models BEFORE creating fixtures (create_all needs every table)
from marketplace.core.database import Base
from marketplace.core.exceptions import GatewayError, InvalidSignatureError
from marketplace.models.user import User, UserRole
from marketplace.models.listing import Listing, ListingStatus
from marketplace.models.offer import Offer, OfferStatus
from marketplace.models.transaction import Transaction
from marketplace.models.webhook_event import WebhookEvent
from marketplace.core.security import create_access_token
from marketplace.services.gateway import CheckoutSession, GatewayClient, GatewayEvent, GatewayRegistry
from marketplace.services.stripe_gateway import normalize_stripe_event

WEBHOOK_SECRET = "whsec_test"


class FakeGateway(GatewayClient):
    """
    In-memory provider: numbered sessions sess_1, sess_2, ...; webhooks are
    Stripe-shaped JSON signed by sending the secret itself as the signature.
    """

    provider = "stripe"

    def __init__(self):
        super().__init__(timeout=1.0)
        self.sessions: Dict[str, CheckoutSession] = {}
        self.created: List[dict] = []
        self.fail_create: Optional[Exception] = None
        self.fail_retrieve: Optional[Exception] = None

    async def create_checkout(self, amount_minor_units, currency, line_item_label, metadata,
                              success_url, cancel_url, customer_email=None):
        if self.fail_create is not None:
            raise self.fail_create
        session_id = f"sess_{len(self.created) + 1}"
        self.created.append({
            "session_id": session_id,
            "amount_minor_units": amount_minor_units,
            "currency": currency,
            "label": line_item_label,
            "metadata": metadata,
            "success_url": success_url,
            "cancel_url": cancel_url,
        })
        session = CheckoutSession(session_id=session_id, redirect_url=f"https://pay.test/{session_id}")
        self.sessions[session_id] = session
        return session

    async def retrieve_checkout(self, session_id):
        if self.fail_retrieve is not None:
            raise self.fail_retrieve
        if session_id not in self.sessions:
            raise GatewayError(self.provider, f"No such checkout session: {session_id}")
        return self.sessions[session_id]

    async def verify_webhook_signature(self, raw_body, signature, secret) -> GatewayEvent:
        if signature != secret:
            raise InvalidSignatureError()
        return normalize_stripe_event(json.loads(raw_body))

    def expire(self, session_id: str):
        self.sessions[session_id] = CheckoutSession(session_id=session_id, redirect_url=None, status="expired")


def stripe_event(event_id: str, event_type: str, obj: dict) -> bytes:
    """Raw Stripe-style webhook body"""
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode()


def checkout_completed(event_id: str, session_id: str, transaction_id=None) -> bytes:
    metadata = {"transaction_id": str(transaction_id)} if transaction_id is not None else {}
    return stripe_event(event_id, "checkout.session.completed", {
        "id": session_id,
        "object": "checkout.session",
        "payment_status": "paid",
        "metadata": metadata,
    })


def checkout_expired(event_id: str, session_id: str, transaction_id) -> bytes:
    return stripe_event(event_id, "checkout.session.expired", {
        "id": session_id,
        "object": "checkout.session",
        "status": "expired",
        "metadata": {"transaction_id": str(transaction_id)},
    })


def payment_failed(event_id: str, transaction_id, message: str = "Your card was declined.") -> bytes:
    return stripe_event(event_id, "payment_intent.payment_failed", {
        "id": "pi_123",
        "object": "payment_intent",
        "metadata": {"transaction_id": str(transaction_id)},
        "last_payment_error": {"code": "card_declined", "message": message},
    })


@pytest_asyncio.fixture(scope="function")
async def test_db():
    """Fresh in-memory database per test"""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(test_db) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async_session_maker = async_sessionmaker(
        test_db,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with async_session_maker() as session:
        try:
            yield session
        finally:
            if session.in_transaction():
                await session.rollback()


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def gateway_registry(fake_gateway):
    registry = GatewayRegistry()
    registry.register("stripe", fake_gateway, webhook_secret=WEBHOOK_SECRET)
    return registry


@pytest_asyncio.fixture
async def client(db_session, gateway_registry):
    """Create test client with dependency override"""
    from marketplace.main import app
    from marketplace.core.database import get_session
    from marketplace.api.v1.dependencies import get_gateway_registry

    async def override_get_session():
        yield db_session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_gateway_registry] = lambda: gateway_registry

    try:
        transport = ASGITransport(app=app, raise_app_exceptions=False)
        async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
            yield ac
    finally:
        app.dependency_overrides.clear()


async def _create_user(db_session, email: str, role: UserRole) -> User:
    user = User(email=email, full_name=email.split("@")[0].title(), role=role, is_active=True)
    db_session.add(user)
    await db_session.commit()
    return user


@pytest_asyncio.fixture
async def buyer(db_session):
    return await _create_user(db_session, "buyer@example.com", UserRole.BUYER)


@pytest_asyncio.fixture
async def seller(db_session):
    return await _create_user(db_session, "seller@example.com", UserRole.SELLER)


@pytest_asyncio.fixture
async def admin(db_session):
    return await _create_user(db_session, "admin@example.com", UserRole.ADMIN)


@pytest_asyncio.fixture
async def listing(db_session, seller):
    listing = Listing(
        id=10,
        seller_id=seller.id,
        mineral_type="Cobalt",
        unit_price=Decimal("100"),
        quantity=Decimal("5"),
        currency="USD",
        status=ListingStatus.AVAILABLE,
    )
    db_session.add(listing)
    await db_session.commit()
    return listing


@pytest_asyncio.fixture
async def offer(db_session, listing, buyer):
    offer = Offer(
        id=5,
        listing_id=listing.id,
        buyer_id=buyer.id,
        offer_price=Decimal("100"),
        quantity=Decimal("2"),
        currency="USD",
        status=OfferStatus.PENDING,
    )
    db_session.add(offer)
    await db_session.commit()
    return offer


def auth_headers(user: User) -> Dict[str, str]:
    token = create_access_token({"sub": str(user.id), "role": user.role.value})
    return {"Authorization": f"Bearer {token}"}
