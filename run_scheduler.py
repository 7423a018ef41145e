#!/usr/bin/env python
"""
Standalone scheduler entry point.

Runs the agent scheduler outside the API process. Set
SCHEDULER_ENABLED=false on the API when using this, since only one
scheduler may claim runs per database.

Usage:
    python run_scheduler.py

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    SCHEDULER_POLL_SECONDS: Seconds between ticks (default: 15)
    SCHEDULER_MAX_CONCURRENT_RUNS: Runs executed at once (default: 4)
    LOG_LEVEL: Logging level (default: INFO)
"""

import asyncio
import logging
import os
import signal
import sys

from scanagents.core.config import get_settings
from scanagents.core.logging_config import configure_logging
from scanagents.db.database import close_db
from scanagents.workers.scheduler import get_agent_scheduler

logger = logging.getLogger("scanagents.scheduler")


async def run() -> None:
    """Tick until SIGINT or SIGTERM, then drain and close the pool."""
    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    scheduler = get_agent_scheduler()
    await scheduler.start()
    try:
        await stop_requested.wait()
        logger.info("Stop requested")
    finally:
        await scheduler.stop()
        await close_db()


def main() -> int:
    settings = get_settings()
    configure_logging(settings, os.environ.get("LOG_LEVEL"))
    logger.info(
        f"Scheduler process starting ({settings.environment}, "
        f"poll={settings.scheduler_poll_seconds}s)"
    )

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except Exception as e:
        logger.exception(f"Scheduler process failed: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
