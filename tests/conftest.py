"""
Pytest configuration and fixtures.

Tests run against a throwaway SQLite database and an in-process fake
gateway; no Stripe account or PostgreSQL server is needed.
"""
import itertools
import os
import uuid
from collections import defaultdict, deque
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, Deque, Dict, List, Optional, Tuple

os.environ["STRIPE_SECRET_KEY"] = "sk_test_fake_key_for_testing"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["APP_ENV"] = "test"

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from payment_systems.api.dependencies import get_services
from payment_systems.api.main import app
from payment_systems.bootstrap import Services, build_services
from payment_systems.config import Settings
from payment_systems.core.enums import BillingInterval, PaymentMethodKind
from payment_systems.core.types import (
    CreatePlanRequest,
    CreateSubscriptionRequest,
    MandateRequest,
    PaymentInstrument,
    PaymentRequest,
)
from payment_systems.database.connection import build_session_factory, get_db
from payment_systems.database.models import Base, SubscriptionPlan
from payment_systems.integrations.gateway import GatewayResult, MandateResult

CUSTOMER_ID = "cus_test_123"
INSTRUMENT_ID = "pm_card_visa"


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests without external services")
    config.addinivalue_line("markers", "integration: tests spanning several components")
    config.addinivalue_line("markers", "race: concurrent writers on the same key")


class FakeClock:
    """Settable time source."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeGateway:
    """
    Gateway double that records every call.

    Outcomes are scripted per operation with ``script``; an exception
    instance in the script is raised instead of returned. Unscripted calls
    succeed.
    """

    def __init__(self) -> None:
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self._scripted: Dict[str, Deque[Any]] = defaultdict(deque)
        self._ids = itertools.count(1)

    def script(self, operation: str, *outcomes: Any) -> None:
        self._scripted[operation].extend(outcomes)

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    def _next(self, operation: str, default: Any) -> Any:
        queue = self._scripted[operation]
        outcome = queue.popleft() if queue else default
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def _ok(self, prefix: str, status: str, **payload: Any) -> GatewayResult:
        ref = f"{prefix}_{next(self._ids)}"
        return GatewayResult(
            success=True,
            gateway_ref=ref,
            auth_code=f"ch_{ref}",
            raw_payload={"id": ref, "status": status, **payload},
        )

    async def purchase(
        self,
        amount: Decimal,
        currency: str,
        instrument: PaymentInstrument,
        reference: str,
        order_ref: Optional[str] = None,
        description: Optional[str] = None,
    ) -> GatewayResult:
        self.calls.append(("purchase", {"amount": amount, "currency": currency, "reference": reference}))
        return self._next(
            "purchase", self._ok("pi", "succeeded", instrument_hint=instrument.last_four)
        )

    async def authorize(
        self,
        amount: Decimal,
        currency: str,
        instrument: PaymentInstrument,
        reference: str,
        order_ref: Optional[str] = None,
        description: Optional[str] = None,
    ) -> GatewayResult:
        self.calls.append(("authorize", {"amount": amount, "currency": currency, "reference": reference}))
        return self._next(
            "authorize", self._ok("pi", "requires_capture", instrument_hint=instrument.last_four)
        )

    async def capture(
        self, gateway_ref: str, amount: Decimal, currency: str, reference: str
    ) -> GatewayResult:
        self.calls.append(("capture", {"gateway_ref": gateway_ref, "amount": amount}))
        return self._next("capture", self._ok("pi", "succeeded"))

    async def refund(
        self,
        gateway_ref: str,
        amount: Decimal,
        currency: str,
        reference: str,
        instrument_hint: Optional[str] = None,
    ) -> GatewayResult:
        self.calls.append(
            ("refund", {"gateway_ref": gateway_ref, "amount": amount, "instrument_hint": instrument_hint})
        )
        return self._next("refund", self._ok("re", "succeeded"))

    async def void(self, gateway_ref: str, reference: str) -> GatewayResult:
        self.calls.append(("void", {"gateway_ref": gateway_ref}))
        return self._next("void", self._ok("pi", "canceled"))

    async def create_recurring_mandate(self, request: MandateRequest) -> MandateResult:
        self.calls.append(("create_mandate", {"request": request}))
        return self._next(
            "create_mandate",
            MandateResult(success=True, mandate_ref=f"sub_gw_{next(self._ids)}"),
        )

    async def cancel_recurring_mandate(self, mandate_ref: str) -> MandateResult:
        self.calls.append(("cancel_mandate", {"mandate_ref": mandate_ref}))
        return self._next(
            "cancel_mandate",
            MandateResult(success=True, mandate_ref=mandate_ref, raw_payload={"status": "canceled"}),
        )


def decline(message: str = "Your card was declined.") -> GatewayResult:
    return GatewayResult(
        success=False,
        message=message,
        raw_payload={"error": {"type": "CardError", "code": "card_declined"}},
    )


class InMemoryInstruments:
    """Instrument directory backed by a dict."""

    def __init__(self, *instruments: PaymentInstrument) -> None:
        self.instruments: Dict[str, PaymentInstrument] = {i.id: i for i in instruments}

    async def get_instrument(self, instrument_id: str) -> Optional[PaymentInstrument]:
        return self.instruments.get(instrument_id)

    def add(self, instrument: PaymentInstrument) -> None:
        self.instruments[instrument.id] = instrument

    def deactivate(self, instrument_id: str) -> None:
        self.instruments[instrument_id] = replace(
            self.instruments[instrument_id], is_active=False
        )


def make_instrument(
    instrument_id: str = INSTRUMENT_ID,
    customer_id: str = CUSTOMER_ID,
    is_active: bool = True,
) -> PaymentInstrument:
    return PaymentInstrument(
        id=instrument_id,
        customer_id=customer_id,
        kind=PaymentMethodKind.CREDIT_CARD,
        token=instrument_id,
        last_four="4242",
        is_active=is_active,
    )


def payment_request(
    idempotency_key: str,
    amount: str = "100.00",
    currency: str = "USD",
    instrument: Optional[PaymentInstrument] = None,
) -> PaymentRequest:
    instrument = instrument or make_instrument()
    return PaymentRequest(
        idempotency_key=idempotency_key,
        amount=Decimal(amount),
        currency=currency,
        instrument=instrument,
        customer_id=instrument.customer_id,
        order_id="order_123",
    )


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        stripe_secret_key="sk_test_fake_key_for_testing",
        database_url="sqlite+aiosqlite:///:memory:",
        app_name="payment-systems-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def instruments() -> InMemoryInstruments:
    return InMemoryInstruments(make_instrument())


@pytest_asyncio.fixture
async def test_engine(tmp_path: Any) -> AsyncGenerator[AsyncEngine, Any]:
    """File-backed SQLite database so every session gets its own connection."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(test_engine)


@pytest_asyncio.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def services(
    test_settings: Settings,
    gateway: FakeGateway,
    instruments: InMemoryInstruments,
    session_factory: async_sessionmaker[AsyncSession],
    clock: FakeClock,
) -> Services:
    return build_services(
        settings=test_settings,
        gateway=gateway,
        instruments=instruments,
        session_factory=session_factory,
        clock=clock,
    )


@pytest_asyncio.fixture
async def monthly_plan(services: Services, test_db: AsyncSession) -> SubscriptionPlan:
    return await services.plans.create_plan(
        CreatePlanRequest(
            name="Pro Monthly",
            amount=Decimal("29.99"),
            currency="USD",
            billing_interval=BillingInterval.MONTHLY,
        ),
        test_db,
    )


def subscription_request(plan_id: Any, **overrides: Any) -> CreateSubscriptionRequest:
    fields: Dict[str, Any] = {
        "idempotency_key": f"sub-{uuid.uuid4().hex}",
        "customer_id": CUSTOMER_ID,
        "plan_id": plan_id,
        "instrument_id": INSTRUMENT_ID,
    }
    fields.update(overrides)
    return CreateSubscriptionRequest(**fields)


@pytest_asyncio.fixture
async def client(
    services: Services, session_factory: async_sessionmaker[AsyncSession]
) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client wired to the test services and database."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, Any]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_services] = lambda: services
    app.dependency_overrides[get_db] = override_get_db
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
    finally:
        app.dependency_overrides.clear()
