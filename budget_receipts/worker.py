"""
Background worker entry point.

Run with:
    budget-receipts-worker

Creates missing tables, re-queues receipts orphaned by a previous crash, and
processes pending receipts until SIGINT or SIGTERM.
"""

import asyncio
import logging
import signal

import structlog

from budget_receipts.config import get_settings, validate_all_settings
from budget_receipts.orchestrator import create_app_components

logger = structlog.get_logger(__name__)


async def run_worker() -> None:
    settings = get_settings()
    _, supervisor, database = create_app_components(settings)
    await database.create_tables()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    runner = asyncio.create_task(supervisor.run(), name="supervisor")
    stopper = asyncio.create_task(stop.wait(), name="stop-signal")
    try:
        await asyncio.wait({runner, stopper}, return_when=asyncio.FIRST_COMPLETED)
        if runner.done():
            # The loop only ends on its own when something went badly wrong
            runner.result()
        logger.info("worker_stopping")
    finally:
        await supervisor.shutdown()
        for task in (runner, stopper):
            task.cancel()
        await asyncio.gather(runner, stopper, return_exceptions=True)
        await database.dispose()


def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=logging.DEBUG if settings.app.debug_mode else logging.INFO,
        format="%(message)s",
    )

    results = validate_all_settings()
    missing = [name for name, ok in results.items() if ok is False]
    if missing:
        for name in missing:
            logger.error("settings_invalid", section=name, error=results.get(f"{name}_error"))
        raise SystemExit(1)

    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
