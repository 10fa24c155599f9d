"""
Reconciliation background worker.

Sweeps every tenant with sessions stuck in processing on a fixed interval.
"""
import asyncio
import signal
from typing import Any, Optional

import structlog

from gavel.config import get_settings
from gavel.core.reconciliation import ReconciliationEngine
from gavel.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_reconciliation_sweep(engine: Optional[ReconciliationEngine] = None) -> int:
    """
    Run one sweep across all tenants.

    Returns:
        int: Total discrepancies found
    """
    logger.info("reconciliation_sweep_started")
    engine = engine or ReconciliationEngine()

    results = await engine.reconcile_all()
    total = sum(result["discrepancy_count"] for result in results)

    logger.info(
        "reconciliation_sweep_completed",
        tenants=len(results),
        discrepancy_count=total,
    )
    if total:
        logger.warning("reconciliation_discrepancies_pending", discrepancy_count=total)
    return total


async def start_reconciliation_worker(interval_seconds: Optional[int] = None) -> None:
    """
    Start the reconciliation worker.

    Args:
        interval_seconds: Seconds between sweeps (settings value if not given)
    """
    setup_logging()
    interval = interval_seconds or get_settings().reconciliation_interval_seconds

    logger.info("reconciliation_worker_starting", interval_seconds=interval)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    engine = ReconciliationEngine()
    try:
        while running:
            try:
                await run_reconciliation_sweep(engine)
            except Exception as e:
                # Keep sweeping; the next interval may succeed
                logger.error("reconciliation_execution_error", error=str(e))

            remaining = interval
            while remaining > 0 and running:
                sleep_time = min(remaining, 5)
                await asyncio.sleep(sleep_time)
                remaining -= sleep_time
    finally:
        logger.info("reconciliation_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Reconciliation worker")
    parser.add_argument(
        "--interval", type=int, default=None, help="Seconds between sweeps"
    )
    args = parser.parse_args()

    asyncio.run(start_reconciliation_worker(interval_seconds=args.interval))


if __name__ == "__main__":
    main()
