"""
Calendar Sync Scheduler Runner
Runs the periodic calendar sync jobs in their own process: python run_sync_worker.py
Use with SYNC_SCHEDULER_MODE=worker so the API process does not run them too.
"""

import asyncio
import logging
import signal
import sys

import httpx

from homesync import models, models_calendar_sync  # noqa: F401
from homesync.config import PROVIDER_REQUEST_TIMEOUT_SECONDS
from homesync.database import Base, engine
from homesync.domain.calendar_sync.bootstrap import build_sync_scheduler

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("apscheduler").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


async def run_sync_worker():
    Base.metadata.create_all(bind=engine, checkfirst=True)

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    async with httpx.AsyncClient(timeout=PROVIDER_REQUEST_TIMEOUT_SECONDS) as http_client:
        scheduler = build_sync_scheduler(http_client=http_client)
        scheduler.start()
        try:
            await stop_requested.wait()
        finally:
            await scheduler.stop()


if __name__ == "__main__":
    logger.info("🚀 Starting Calendar Sync Worker...")
    try:
        asyncio.run(run_sync_worker())
        logger.info("👋 Calendar sync worker stopped")
    except Exception as e:
        logger.error(f"❌ Calendar sync worker crashed: {e}")
        sys.exit(1)
