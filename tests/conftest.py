"""
Pytest configuration and fixtures.

Every test gets a fresh in-memory SQLite database; gateway clients are
replaced with mocks and Redis with an in-process fake.
"""
import os

os.environ.update(
    {
        "RAZORPAY_KEY_ID": "rzp_test_ridepaykey",
        "RAZORPAY_KEY_SECRET": "test_key_secret",
        "RAZORPAY_WEBHOOK_SECRET": "test_payment_webhook_secret",
        "RAZORPAYX_KEY_ID": "rzp_test_ridepayx",
        "RAZORPAYX_KEY_SECRET": "test_payout_key_secret",
        "RAZORPAYX_ACCOUNT_NUMBER": "2323230000000000",
        "RAZORPAYX_WEBHOOK_SECRET": "test_payout_webhook_secret",
        "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
        "REDIS_URL": "redis://localhost:6379/15",
        "ADMIN_API_KEY": "test-admin-key",
        "APP_ENV": "test",
        "LOG_LEVEL": "INFO",
    }
)

import uuid
from decimal import Decimal
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from ridepay.config import Settings, get_settings
from ridepay.core.commission import calculate_commission_breakdown
from ridepay.database.models import (
    Base,
    Booking,
    DriverPayoutAccount,
    Payout,
    Ride,
    Transaction,
    User,
)
from ridepay.integrations.razorpay_client import RazorpayClient
from ridepay.integrations.razorpayx_client import RazorpayXClient

get_settings.cache_clear()


class FakeRedis:
    """Just enough of redis.asyncio.Redis for event deduplication and health checks."""

    def __init__(self) -> None:
        self.store: Dict[str, str] = {}

    async def exists(self, key: str) -> int:
        return int(key in self.store)

    async def setex(self, key: str, ttl: int, value: str) -> None:
        self.store[key] = value

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        pass


@pytest.fixture
def test_settings() -> Settings:
    """Settings built from the test environment."""
    return get_settings()


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """Session factory bound to a fresh in-memory database."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def passenger(test_db: AsyncSession) -> User:
    user = User(id=uuid.uuid4(), name="Asha Rao", email="asha@example.com", phone="9876500001")
    test_db.add(user)
    await test_db.commit()
    return user


@pytest_asyncio.fixture
async def driver(test_db: AsyncSession) -> User:
    user = User(id=uuid.uuid4(), name="Vikram Singh", email="vikram@example.com", phone="9876500002")
    test_db.add(user)
    await test_db.commit()
    return user


@pytest_asyncio.fixture
async def ride(test_db: AsyncSession, driver: User) -> Ride:
    ride = Ride(id=uuid.uuid4(), driver_id=driver.id)
    test_db.add(ride)
    await test_db.commit()
    return ride


@pytest_asyncio.fixture
async def booking(test_db: AsyncSession, ride: Ride, passenger: User) -> Booking:
    booking = Booking(
        id=uuid.uuid4(),
        ride_id=ride.id,
        passenger_id=passenger.id,
        total_fare=Decimal("500.00"),
        seats_booked=1,
    )
    test_db.add(booking)
    await test_db.commit()
    return booking


@pytest_asyncio.fixture
async def other_booking(test_db: AsyncSession, ride: Ride, passenger: User) -> Booking:
    """A second booking on the same ride, for tests needing two active transactions."""
    booking = Booking(
        id=uuid.uuid4(),
        ride_id=ride.id,
        passenger_id=passenger.id,
        total_fare=Decimal("500.00"),
        seats_booked=1,
    )
    test_db.add(booking)
    await test_db.commit()
    return booking


@pytest.fixture
def make_transaction(
    test_db: AsyncSession, booking: Booking, driver: User, test_settings: Settings
) -> Callable[..., Awaitable[Transaction]]:
    """Factory persisting a Transaction for the booking fixture."""

    async def _make(
        payment_status: str = "captured",
        payout_status: str = "pending",
        order_id: Optional[str] = None,
        **overrides: Any,
    ) -> Transaction:
        breakdown = calculate_commission_breakdown(
            booking.total_fare,
            test_settings.platform_commission_percent,
            test_settings.gst_percent,
        )
        values: Dict[str, Any] = dict(
            id=uuid.uuid4(),
            booking_id=booking.id,
            ride_id=booking.ride_id,
            passenger_id=booking.passenger_id,
            driver_id=driver.id,
            gateway_order_id=order_id or f"order_{uuid.uuid4().hex[:14]}",
            currency="INR",
            total_amount=breakdown.total_paise,
            base_commission_amount=breakdown.base_commission_paise,
            commission_percent=breakdown.commission_percent,
            gst_amount=breakdown.gst_paise,
            gst_percent=breakdown.gst_percent,
            platform_total=breakdown.platform_total_paise,
            driver_net_amount=breakdown.driver_net_paise,
            payment_status=payment_status,
            payout_status=payout_status,
        )
        if payment_status == "captured":
            values["gateway_payment_id"] = f"pay_{uuid.uuid4().hex[:14]}"
        values.update(overrides)
        transaction = Transaction(**values)
        test_db.add(transaction)
        await test_db.commit()
        return transaction

    return _make


@pytest_asyncio.fixture
async def driver_account(test_db: AsyncSession, driver: User) -> DriverPayoutAccount:
    """A fully provisioned payout account."""
    account = DriverPayoutAccount(
        id=uuid.uuid4(),
        driver_id=driver.id,
        account_holder_name="Vikram Singh",
        account_number="123456789012",
        ifsc_code="HDFC0001234",
        gateway_contact_id="cont_test_1",
        gateway_fund_account_id="fa_test_1",
        is_verified=True,
        verification_method="fund_account",
    )
    test_db.add(account)
    await test_db.commit()
    return account


@pytest.fixture
def make_payout(test_db: AsyncSession) -> Callable[..., Awaitable[Payout]]:
    """Factory persisting a Payout for a transaction."""

    async def _make(
        transaction: Transaction,
        status: str = "processing",
        gateway_payout_id: Optional[str] = None,
        retry_count: int = 0,
        **overrides: Any,
    ) -> Payout:
        values: Dict[str, Any] = dict(
            id=uuid.uuid4(),
            transaction_id=transaction.id,
            driver_id=transaction.driver_id,
            booking_id=transaction.booking_id,
            amount=transaction.driver_net_amount,
            currency="INR",
            gateway_payout_id=gateway_payout_id or f"pout_{uuid.uuid4().hex[:14]}",
            gateway_fund_account_id="fa_test_1",
            gateway_contact_id="cont_test_1",
            idempotency_key=f"payout_{transaction.id}_{retry_count}",
            status=status,
            mode="IMPS",
            retry_count=retry_count,
            max_retries=3,
        )
        values.update(overrides)
        payout = Payout(**values)
        test_db.add(payout)
        await test_db.commit()
        return payout

    return _make


@pytest.fixture
def razorpay_sdk() -> MagicMock:
    """Stand-in for the synchronous razorpay.Client."""
    sdk = MagicMock()
    sdk.order.create.return_value = {
        "id": "order_test_123",
        "entity": "order",
        "amount": 50000,
        "currency": "INR",
        "status": "created",
    }
    sdk.payment.fetch.return_value = {
        "id": "pay_test_123",
        "entity": "payment",
        "order_id": "order_test_123",
        "status": "captured",
        "method": "upi",
        "amount": 50000,
    }
    sdk.order.all.return_value = {"items": [], "count": 0}
    return sdk


@pytest.fixture
def razorpay_client(razorpay_sdk: MagicMock, test_settings: Settings) -> RazorpayClient:
    """Real client wrapper around the mocked SDK."""
    return RazorpayClient(test_settings, client=razorpay_sdk)


@pytest.fixture
def razorpayx_client() -> AsyncMock:
    client = AsyncMock(spec=RazorpayXClient)
    client.create_contact.return_value = {"id": "cont_test_1", "entity": "contact"}
    client.create_fund_account.return_value = {"id": "fa_test_1", "entity": "fund_account"}
    client.create_payout.return_value = {
        "id": "pout_test_1",
        "entity": "payout",
        "status": "processing",
        "amount": 45000,
        "currency": "INR",
        "mode": "IMPS",
    }
    return client


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def mock_redlock() -> MagicMock:
    """Redlock that always grants the lock."""
    redlock = MagicMock()
    redlock.lock.return_value = MagicMock(resource="payout:lock", key="test-lock")
    return redlock
