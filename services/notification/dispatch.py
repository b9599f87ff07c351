"""
services/notification/dispatch.py
Fire-and-forget notification dispatch.

A confirmation counts as dispatched once its Celery task is on the broker;
delivery and retries happen in the worker. Enqueue failures (broker down,
circuit open) are logged and reported as False, never raised.
"""

import logging
from typing import Optional

from fastapi.concurrency import run_in_threadpool
from pybreaker import CircuitBreakerError

from shared.utils.resilience import circuit_breaker_manager

logger = logging.getLogger(__name__)

BROKER_SERVICE = "celery-broker"


class CeleryNotificationDispatcher:
    """NotificationDispatcher that enqueues tasks/notification_tasks.py jobs."""

    def __init__(self, breaker=None):
        self.breaker = breaker or circuit_breaker_manager.get_breaker(BROKER_SERVICE)

    async def _enqueue(self, task, booking, recipient_role: str) -> bool:
        booking_id = str(booking.id)
        try:
            await run_in_threadpool(
                self.breaker.call, task.delay, booking_id=booking_id, recipient_role=recipient_role
            )
        except CircuitBreakerError:
            logger.error(f"Broker circuit open; {task.name} for booking {booking_id} not queued")
            return False
        except Exception as e:
            logger.error(f"Failed to queue {task.name} for booking {booking_id}: {str(e)}")
            return False
        return True

    async def send_booking_confirmation(
        self, recipient_role: str, booking, therapist, session_type: Optional[object] = None
    ) -> bool:
        from tasks.notification_tasks import send_booking_confirmation

        return await self._enqueue(send_booking_confirmation, booking, recipient_role)

    async def send_booking_cancellation(
        self, recipient_role: str, booking, therapist, session_type: Optional[object] = None
    ) -> bool:
        from tasks.notification_tasks import send_booking_cancellation

        return await self._enqueue(send_booking_cancellation, booking, recipient_role)


def get_notification_dispatcher() -> CeleryNotificationDispatcher:
    """FastAPI dependency."""
    return CeleryNotificationDispatcher()
