"""FastAPI dependencies resolving the wired services."""
from functools import lru_cache

from fastapi import Depends

from payment_systems.bootstrap import Services, build_services
from payment_systems.core.billing_engine import SubscriptionBillingEngine
from payment_systems.core.ledger import TransactionLedger
from payment_systems.core.plans import PlanRegistry
from payment_systems.core.subscriptions import SubscriptionManager
from payment_systems.monitoring.health import HealthCheck


@lru_cache()
def get_services() -> Services:
    """Services are built once per process."""
    return build_services()


def get_ledger(services: Services = Depends(get_services)) -> TransactionLedger:
    return services.ledger


def get_plan_registry(services: Services = Depends(get_services)) -> PlanRegistry:
    return services.plans


def get_subscription_manager(services: Services = Depends(get_services)) -> SubscriptionManager:
    return services.subscriptions


def get_billing_engine(services: Services = Depends(get_services)) -> SubscriptionBillingEngine:
    return services.billing_engine


def get_health_check(services: Services = Depends(get_services)) -> HealthCheck:
    return HealthCheck(
        session_factory=services.billing_engine.session_factory,
        gateway=services.gateway,
    )
