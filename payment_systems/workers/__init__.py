"""Background workers for scheduled billing."""
from .billing_worker import run_billing_cycle, start_billing_worker

__all__ = ["run_billing_cycle", "start_billing_worker"]
