"""
Subscription billing background worker.

Runs the recurring billing sweep followed by the failed payment retry
sweep every billing interval.
"""
import argparse
import asyncio
import signal
from typing import Any, Dict, Optional

import structlog

from payment_systems.bootstrap import build_services
from payment_systems.config import get_settings
from payment_systems.core.billing_engine import SubscriptionBillingEngine
from payment_systems.database.connection import close_db, init_db
from payment_systems.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_billing_cycle(engine: SubscriptionBillingEngine) -> Dict[str, Dict[str, Any]]:
    """
    Run one recurring sweep and one retry sweep.

    A failing sweep is logged and does not prevent the other from running.

    Returns:
        dict: Sweep counters keyed by sweep name
    """
    logger.info("billing_cycle_started")
    results: Dict[str, Dict[str, Any]] = {}

    for name, sweep in (
        ("recurring", engine.process_recurring_billing),
        ("retry", engine.process_failed_payment_retries),
    ):
        try:
            results[name] = (await sweep()).as_dict()
        except Exception as e:
            logger.error("billing_sweep_execution_error", sweep=name, error=str(e))

    logger.info("billing_cycle_completed", results=results)
    return results


async def start_billing_worker(
    interval_seconds: Optional[int] = None, run_once: bool = False
) -> None:
    """
    Start the billing worker.

    Args:
        interval_seconds: Seconds between cycles (defaults to settings)
        run_once: Run a single cycle and exit
    """
    setup_logging()
    settings = get_settings()
    interval = interval_seconds or settings.billing_interval_seconds

    logger.info("billing_worker_starting", interval_seconds=interval, run_once=run_once)

    await init_db()
    engine = build_services(settings).billing_engine

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("billing_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            await run_billing_cycle(engine)
            if run_once:
                break

            # Sleep in short steps so a shutdown signal is noticed promptly
            remaining = float(interval)
            while remaining > 0 and running:
                step = min(remaining, 5.0)
                await asyncio.sleep(step)
                remaining -= step

    except Exception as e:
        logger.error("billing_worker_error", error=str(e))
        raise
    finally:
        await close_db()
        logger.info("billing_worker_stopped")


def main() -> None:
    parser = argparse.ArgumentParser(description="Subscription billing worker")
    parser.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Seconds between billing cycles (default: BILLING_INTERVAL_SECONDS)",
    )
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    args = parser.parse_args()

    asyncio.run(start_billing_worker(interval_seconds=args.interval, run_once=args.once))


if __name__ == "__main__":
    main()
