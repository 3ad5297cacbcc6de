"""APScheduler — purges expired events from the log."""

import asyncio
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from drip_engine.config import PURGE_INTERVAL_HOURS
from drip_engine.services.attribution import purge_expired_events

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


@scheduler.scheduled_job("interval", hours=PURGE_INTERVAL_HOURS, id="purge_events")
async def purge_events():
    """Delete events past their retention window."""
    try:
        deleted = await asyncio.to_thread(purge_expired_events)
        if deleted:
            logger.info("Event retention: %d events purged", deleted)
    except Exception as e:
        logger.error("Event purge failed: %s", e)
