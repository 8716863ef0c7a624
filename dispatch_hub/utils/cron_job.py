from dispatch_hub.database.database import async_session
from dispatch_hub.services import courier_sync_service
from dispatch_hub.utils.logger_config import CRON_LOGGER, setup_logger

logger = setup_logger(CRON_LOGGER)


async def retry_failed_bookings(session_factory=async_session) -> int:
    """
    Re-attempt courier bookings that failed and whose backoff has elapsed
    """
    async with session_factory() as session:
        booked = await courier_sync_service.retry_failed_bookings(session)
    logger.info(f"Booking retry job finished: {booked} booked")
    return booked


async def poll_tracking(session_factory=async_session) -> int:
    """
    Pull tracking for orders still with a courier, for providers whose
    webhooks were missed
    """
    async with session_factory() as session:
        moved = await courier_sync_service.poll_tracking(session)
    logger.info(f"Tracking poll job finished: {moved} order(s) moved")
    return moved
