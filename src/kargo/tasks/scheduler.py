import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from kargo.services.context import ShippingContext

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


async def shipment_refresh_job(shipping: ShippingContext):
    """Job to refresh barcodes, status and COD documents for active shipments."""
    logger.info("Starting shipment refresh job")
    try:
        result = await shipping.tracker.update_all_shipments()
        logger.info(f"Shipment refresh complete: {result}")
    except Exception as e:
        logger.error(f"Shipment refresh failed: {e}")


def start_scheduler(shipping: ShippingContext):
    """Start the background scheduler."""
    scheduler.add_job(
        shipment_refresh_job,
        trigger=IntervalTrigger(minutes=shipping.settings.refresh_interval_minutes),
        args=[shipping],
        id="shipment_refresh",
        name="Refresh active carrier shipments",
        replace_existing=True,
    )
    scheduler.start()
    logger.info("Scheduler started")


def shutdown_scheduler():
    """Shutdown the scheduler."""
    scheduler.shutdown(wait=False)
    logger.info("Scheduler shutdown")
