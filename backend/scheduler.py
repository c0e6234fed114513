"""
Background Scheduler for the database watchdog

Uses APScheduler for reliable scheduled task execution.
"""
import logging
from datetime import datetime
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

import database
from services.event_bus import kds_event_bus, ORDERS_CHANGED

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()

WATCHDOG_INTERVAL_SECONDS = 30

_database_up = True


async def run_database_watchdog():
    """
    Check the connection pool. While the database is down, try to rebuild
    the pool from the saved connection descriptor. When it comes back,
    tell the displays to refresh.
    """
    global _database_up

    up = await database.check_connection()

    if not up:
        config = database.load_connection_config()
        if all(config.get(k) for k in database.CONNECTION_FIELDS):
            try:
                await database.connect_database(config)
                up = True
                logger.info("Database watchdog: reconnected from saved config")
            except Exception as e:
                logger.error(f"Database watchdog: reconnect failed: {e}")

    if up and not _database_up:
        logger.info("Database watchdog: database is reachable again")
        await kds_event_bus.publish({
            "type": ORDERS_CHANGED,
            "reason": "database_reconnected",
            "timestamp": datetime.now().isoformat(),
        })
    elif not up and _database_up:
        logger.error("Database watchdog: database is unreachable")

    _database_up = up
    return up


def start_scheduler():
    """Initialize and start the scheduler"""
    scheduler.add_job(
        run_database_watchdog,
        IntervalTrigger(seconds=WATCHDOG_INTERVAL_SECONDS),
        id="database_watchdog",
        name="Database Connection Watchdog",
        replace_existing=True
    )

    scheduler.start()
    logger.info(f"Scheduler started - database watchdog every {WATCHDOG_INTERVAL_SECONDS}s")


def stop_scheduler():
    """Shutdown the scheduler"""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
