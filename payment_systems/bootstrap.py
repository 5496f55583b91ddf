"""
Composition root.

Every service receives its collaborators and configuration through its
constructor; this is the one place they are wired together.
"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_systems.config import Settings, get_settings
from payment_systems.core.billing_engine import BillingConfig, SubscriptionBillingEngine
from payment_systems.core.clock import Clock, utcnow
from payment_systems.core.ledger import TransactionLedger
from payment_systems.core.plans import PlanRegistry
from payment_systems.core.retry_policy import RetryPolicy
from payment_systems.core.subscriptions import SubscriptionManager
from payment_systems.database.connection import get_session_factory
from payment_systems.integrations.gateway import InstrumentDirectory, PaymentGateway
from payment_systems.integrations.stripe_gateway import StripeGateway


@dataclass
class Services:
    settings: Settings
    gateway: PaymentGateway
    ledger: TransactionLedger
    plans: PlanRegistry
    subscriptions: SubscriptionManager
    billing_engine: SubscriptionBillingEngine


def build_services(
    settings: Optional[Settings] = None,
    gateway: Optional[PaymentGateway] = None,
    instruments: Optional[InstrumentDirectory] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    clock: Clock = utcnow,
) -> Services:
    """
    Wire the ledger, plan registry, subscription manager and billing engine.

    Args:
        settings: Settings (defaults to the cached environment settings)
        gateway: Gateway adapter (defaults to Stripe)
        instruments: Instrument lookup (defaults to the gateway when it provides one)
        session_factory: Session factory for the billing engine's per-item sessions
        clock: Source of the current time shared by all services

    Returns:
        Services: The wired services
    """
    settings = settings or get_settings()
    if gateway is None:
        gateway = StripeGateway(settings)
    if instruments is None:
        instruments = gateway  # type: ignore[assignment]

    plans = PlanRegistry()
    ledger = TransactionLedger(gateway, clock=clock)
    subscriptions = SubscriptionManager(gateway, instruments, plans=plans, clock=clock)
    billing_engine = SubscriptionBillingEngine(
        session_factory=session_factory or get_session_factory(),
        ledger=ledger,
        subscriptions=subscriptions,
        retry_policy=RetryPolicy(
            base_delay_seconds=settings.billing_retry_base_delay_seconds,
            max_delay_seconds=settings.billing_retry_max_delay_seconds,
        ),
        config=BillingConfig.from_settings(settings),
        clock=clock,
    )
    return Services(
        settings=settings,
        gateway=gateway,
        ledger=ledger,
        plans=plans,
        subscriptions=subscriptions,
        billing_engine=billing_engine,
    )
