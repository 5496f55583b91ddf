"""Database models and session management."""
from .connection import close_db, get_db, get_engine, get_session_factory, init_db
from .models import Base, Subscription, SubscriptionPayment, SubscriptionPlan, Transaction

__all__ = [
    "Base",
    "Transaction",
    "SubscriptionPlan",
    "Subscription",
    "SubscriptionPayment",
    "get_db",
    "get_engine",
    "get_session_factory",
    "init_db",
    "close_db",
]
