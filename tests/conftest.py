"""
Pytest configuration and fixtures.

Tests run against an in-memory SQLite database through aiosqlite; the
payment gateway and Redis are replaced by in-process fakes.
"""
import os
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncGenerator, Dict, List, Optional
from unittest.mock import AsyncMock

os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_fake_key_for_testing")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")
os.environ.setdefault("APP_ENV", "test")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from gavel.config import Settings, get_settings
from gavel.core import bidders, catalog
from gavel.core.checkout import CheckoutManager
from gavel.core.context import RequestContext
from gavel.core.idempotency import ChargeReplayCache
from gavel.database.connection import build_engine, init_db, make_session_factory
from gavel.database.models import AuctionItem, Bidder, Event
from gavel.integrations.gateway import (
    ChargeLookup,
    ChargeResult,
    PaymentGateway,
    RefundResult,
)

get_settings.cache_clear()

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"


class FakeGateway(PaymentGateway):
    """
    Scriptable gateway.

    Set charge_result/refund_result/lookup_result to control answers, or
    charge_error/refund_error/lookup_error to raise instead. Every call is
    recorded.
    """

    def __init__(self) -> None:
        self.charge_result = ChargeResult(
            success=True,
            external_payment_id="pi_test_123",
            receipt_url="https://pay.example/receipts/pi_test_123",
            details={"status": "succeeded"},
        )
        self.refund_result = RefundResult(success=True, refund_id="re_test_123", status="succeeded")
        self.lookup_result = ChargeLookup(found=False)
        self.charge_error: Optional[Exception] = None
        self.refund_error: Optional[Exception] = None
        self.lookup_error: Optional[Exception] = None
        self.healthy = True
        self.charges: List[Dict[str, Any]] = []
        self.refunds: List[Dict[str, Any]] = []
        self.lookups: List[str] = []

    async def charge(
        self,
        amount_minor: int,
        currency: str,
        source_token: str,
        reference_id: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ChargeResult:
        self.charges.append(
            {
                "amount_minor": amount_minor,
                "currency": currency,
                "source_token": source_token,
                "reference_id": reference_id,
                "metadata": metadata,
            }
        )
        if self.charge_error is not None:
            raise self.charge_error
        return self.charge_result

    async def refund(
        self,
        external_payment_id: str,
        amount_minor: int,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> RefundResult:
        self.refunds.append(
            {
                "external_payment_id": external_payment_id,
                "amount_minor": amount_minor,
                "reason": reason,
                "idempotency_key": idempotency_key,
            }
        )
        if self.refund_error is not None:
            raise self.refund_error
        return self.refund_result

    async def lookup_charge(self, reference_id: str) -> ChargeLookup:
        self.lookups.append(reference_id)
        if self.lookup_error is not None:
            raise self.lookup_error
        return self.lookup_result

    async def health_check(self) -> bool:
        return self.healthy


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        stripe_secret_key="sk_test_fake_key_for_testing",
        database_url="sqlite+aiosqlite://",
        redis_url="redis://localhost:6379/1",
        app_name="gavel-test",
        app_env="test",
        log_level="DEBUG",
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """In-memory database shared by every connection of one test."""
    engine = build_engine("sqlite+aiosqlite://", settings=test_settings)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def ctx() -> RequestContext:
    return RequestContext(tenant_id=TENANT, actor_id="staff-1")


@pytest.fixture
def other_ctx() -> RequestContext:
    return RequestContext(tenant_id=OTHER_TENANT, actor_id="staff-9")


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def redis_client() -> AsyncMock:
    """Redis stand-in that always misses."""
    client = AsyncMock()
    client.get.return_value = None
    client.setex.return_value = True
    client.ping.return_value = True
    return client


@pytest.fixture
def replay_cache(redis_client: AsyncMock, test_settings: Settings) -> ChargeReplayCache:
    return ChargeReplayCache(redis_client=redis_client, settings=test_settings)


@pytest.fixture
def checkout(
    gateway: FakeGateway, replay_cache: ChargeReplayCache, test_settings: Settings
) -> CheckoutManager:
    return CheckoutManager(gateway=gateway, replay_cache=replay_cache, settings=test_settings)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_event(db: AsyncSession, ctx: RequestContext, test_settings: Settings) -> Any:
    async def _make(
        name: str = "Spring Gala",
        fee_percentage: Any = Decimal("2.5"),
        fixed_fee: Any = Decimal("0.30"),
        context: Optional[RequestContext] = None,
    ) -> Event:
        return await catalog.create_event(
            db,
            context or ctx,
            name,
            fee_percentage=fee_percentage,
            fixed_fee=fixed_fee,
            settings=test_settings,
        )

    return _make


@pytest.fixture
def make_item(db: AsyncSession, ctx: RequestContext) -> Any:
    async def _make(
        event_id: uuid.UUID,
        name: str = "Weekend at the lake house",
        starting_price: Any = Decimal("100"),
        bid_increment: Any = Decimal("10"),
        buy_now_price: Any = None,
        bidding_starts_at: Optional[datetime] = None,
        bidding_ends_at: Optional[datetime] = None,
        active: bool = True,
        context: Optional[RequestContext] = None,
    ) -> AuctionItem:
        return await catalog.add_item(
            db,
            context or ctx,
            event_id,
            name,
            starting_price=starting_price,
            bid_increment=bid_increment,
            buy_now_price=buy_now_price,
            bidding_starts_at=bidding_starts_at,
            bidding_ends_at=bidding_ends_at,
            active=active,
        )

    return _make


@pytest.fixture
def make_bidder(db: AsyncSession, ctx: RequestContext) -> Any:
    async def _make(
        event_id: uuid.UUID,
        first_name: str = "Ada",
        last_name: str = "Lovelace",
        context: Optional[RequestContext] = None,
    ) -> Bidder:
        return await bidders.register_bidder(
            db, context or ctx, event_id, first_name, last_name, email="ada@example.org"
        )

    return _make
