"""
services/scheduling/dependencies.py
Wiring of the scheduling core into FastAPI request scope.
"""

import logging

from fastapi import Depends
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache
from services.calendar.google_meet import get_meeting_link_provider
from services.notification.dispatch import get_notification_dispatcher
from services.scheduling.booking import BookingService
from services.scheduling.storage import SqlAlchemyBookingStorage

logger = logging.getLogger(__name__)


def get_booking_service(
    db: AsyncSession = Depends(get_db),
    meeting_links=Depends(get_meeting_link_provider),
    notifications=Depends(get_notification_dispatcher),
) -> BookingService:
    return BookingService(SqlAlchemyBookingStorage(db), meeting_links, notifications)


async def invalidate_availability_cache(redis, therapist_id) -> None:
    """Drop cached slot lists for a therapist. Cache errors are logged, not raised."""
    try:
        await RedisCache(redis).invalidate_availability(str(therapist_id))
    except RedisError as e:
        logger.warning(f"Availability cache invalidation failed for {therapist_id}: {e}")
