"""
tasks/reminder_worker.py
Standalone process running the reminder scheduler.

Started with:
    python -m tasks.reminder_worker

Run exactly one of these per deployment (or enable REMINDER_SCHEDULER_ENABLED
on a single API instance); the ledger is process-local.
"""

import asyncio
import logging
import signal

from config.database import close_db
from config.logging_config import configure_logging
from services.notification.sink import FcmNotificationSink
from services.reminder.scheduler import ReminderScheduler

logger = logging.getLogger(__name__)


async def run() -> None:
    scheduler = ReminderScheduler(FcmNotificationSink())
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    scheduler.start()
    logger.info("Reminder worker running")
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down reminder worker, waiting for in-flight sends")
        await scheduler.stop()
        await close_db()


def main() -> None:
    configure_logging()
    asyncio.run(run())


if __name__ == "__main__":
    main()
