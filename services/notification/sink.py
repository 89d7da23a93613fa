"""
services/notification/sink.py
The delivery port used by the reminder scheduler and the booking tasks.

A sink reports success as a bool and never raises for delivery problems:
callers decide what a failed send means (the scheduler simply leaves the
window un-notified so a later scan can pick it up).
"""

import asyncio
import logging
from typing import List, Optional, Protocol
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.database import AsyncSessionLocal
from services.notification.fcm import is_configured, push_to_tokens
from shared.models.models import DeviceToken, Notification, NotificationType

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    async def send(
        self,
        recipient_id: UUID,
        title: str,
        body: str,
        type: NotificationType,
        metadata: Optional[dict] = None,
    ) -> bool:
        ...


class FcmNotificationSink:
    """
    Writes the in-app notification row, then pushes to every device the
    recipient registered. A send counts as delivered when the in-app row is
    stored and either no push was attempted or at least one push landed.
    """

    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal):
        self.session_factory = session_factory

    async def _device_tokens(self, db: AsyncSession, recipient_id: UUID) -> List[str]:
        result = await db.execute(
            select(DeviceToken.token).where(DeviceToken.user_id == recipient_id)
        )
        return list(result.scalars().all())

    async def _record_push(
        self, db: AsyncSession, notification: Notification, delivered: int, stale: List[str]
    ) -> None:
        """
        Flag the in-app row and drop dead tokens. Runs after the push went out,
        so errors are logged and do not turn the send into a failure.
        """
        try:
            if stale:
                await db.execute(delete(DeviceToken).where(DeviceToken.token.in_(stale)))
                logger.info(f"Removed {len(stale)} unregistered device tokens")
            notification.sent_push = delivered > 0
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.warning(f"Push bookkeeping for notification {notification.id} failed: {e}")

    async def send(
        self,
        recipient_id: UUID,
        title: str,
        body: str,
        type: NotificationType,
        metadata: Optional[dict] = None,
    ) -> bool:
        data = {"type": type.value, **(metadata or {})}
        try:
            async with self.session_factory() as db:
                tokens = await self._device_tokens(db, recipient_id)
                notification = Notification(
                    user_id=recipient_id,
                    type=type,
                    title=title,
                    body=body,
                    data=data,
                )
                db.add(notification)
                await db.commit()

                delivered = failed = 0
                if tokens and is_configured():
                    delivered, stale, failed = await asyncio.to_thread(
                        push_to_tokens, tokens, title, body, data
                    )
                    await self._record_push(db, notification, delivered, stale)
        except Exception as e:
            logger.warning(f"Notification to {recipient_id} could not be recorded: {e}")
            return False

        if failed and not delivered:
            return False
        return True
