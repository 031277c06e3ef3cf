"""
Payout sweep worker.

Run by the external scheduler (or as a long-lived loop) to:
- create payouts for captured transactions still waiting for one
- retry failed payouts whose ``next_retry_at`` has passed
- reconcile payouts whose webhook never arrived
"""
import asyncio
import signal
import time
from typing import Any, Dict, Optional

import structlog

from ridepay.config import Settings, get_settings
from ridepay.core.payout_dispatcher import PayoutDispatcher
from ridepay.core.reconciliation import PayoutReconciler
from ridepay.database.connection import close_db, get_session_factory
from ridepay.integrations.razorpayx_client import RazorpayXClient
from ridepay.monitoring.logging import setup_logging
from ridepay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


async def run_payout_sweep(
    dispatcher: PayoutDispatcher,
    reconciler: PayoutReconciler,
    batch_size: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Run one sweep pass.

    Each stage gets its own session, so a failing stage does not stop the
    next one.

    Returns:
        Dict[str, Any]: Per-stage counts of ``attempted`` and ``succeeded``,
        or the ``error`` of a stage that failed outright
    """
    start = time.monotonic()
    logger.info("payout_sweep_started")

    session_factory = get_session_factory()
    stages = (
        ("pending", dispatcher.process_pending_payouts),
        ("retries", dispatcher.retry_due_payouts),
        ("reconciliation", reconciler.reconcile_stale),
    )

    summary: Dict[str, Any] = {}
    for name, stage in stages:
        try:
            async with session_factory() as db:
                results = await stage(db, limit=batch_size)
            summary[name] = {
                "attempted": len(results),
                "succeeded": sum(1 for r in results if r.get("success", "error" not in r)),
            }
        except Exception as e:
            logger.error("payout_sweep_stage_failed", stage=name, error=str(e), exc_info=True)
            summary[name] = {"error": str(e)}

    duration = time.monotonic() - start
    metrics.record_payout_sweep(duration)
    logger.info("payout_sweep_completed", duration_seconds=round(duration, 3), **summary)
    return summary


async def start_payout_sweeper(
    interval_seconds: Optional[int] = None,
    once: bool = False,
    settings: Optional[Settings] = None,
) -> None:
    """
    Start the payout sweeper.

    Args:
        interval_seconds: Pause between sweeps (defaults to the configured interval)
        once: Run a single sweep and exit
        settings: Optional settings (defaults to the cached settings)
    """
    setup_logging()
    settings = settings or get_settings()
    interval = interval_seconds or settings.payout_sweep_interval_seconds

    logger.info("payout_sweeper_starting", interval_seconds=interval, once=once)

    razorpayx_client = RazorpayXClient(settings)
    dispatcher = PayoutDispatcher(razorpayx_client, settings)
    reconciler = PayoutReconciler(razorpayx_client, settings)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("payout_sweeper_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            await run_payout_sweep(dispatcher, reconciler, settings.payout_sweep_batch_size)
            if once:
                break

            # Wait for the next sweep, checking for the shutdown signal every second
            remaining = float(interval)
            while remaining > 0 and running:
                sleep_time = min(remaining, 1.0)
                await asyncio.sleep(sleep_time)
                remaining -= sleep_time
    finally:
        await razorpayx_client.close()
        await close_db()
        logger.info("payout_sweeper_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Payout sweep worker")
    parser.add_argument(
        "--interval", type=int, default=None, help="Seconds between sweeps"
    )
    parser.add_argument("--once", action="store_true", help="Run one sweep and exit")
    args = parser.parse_args()

    asyncio.run(start_payout_sweeper(interval_seconds=args.interval, once=args.once))


if __name__ == "__main__":
    main()
