"""Card payment ledger and subscription billing on top of Stripe."""

__version__ = "1.0.0"
