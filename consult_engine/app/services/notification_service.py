"""
Notification Service.

Writes in-app notifications for patients and providers. Dispatch after a
billing or subscription event is fire-and-forget: it runs in its own short
transaction, behind a circuit breaker, and any failure is logged and
swallowed so it can never undo the event it reports on.
"""

import logging
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional, Dict, Any

from consult_engine.app.models.notification import Notification, NotificationType
from consult_engine.app.core.reliability import notification_circuit_breaker, CircuitOpenError

logger = logging.getLogger(__name__)


class NotificationService:

    @staticmethod
    async def create_notification(
        db: AsyncSession,
        user_id: int,
        title: str,
        message: str,
        type: NotificationType = NotificationType.INFO,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Notification:
        """Create a single notification."""
        notif = Notification(
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            metadata_payload=metadata
        )
        db.add(notif)
        await db.flush()  # Caller commits
        return notif

    @staticmethod
    async def _deliver(
        db: AsyncSession,
        user_id: int,
        title: str,
        message: str,
        type: NotificationType,
        metadata: Optional[Dict[str, Any]]
    ) -> None:
        async with AsyncSession(bind=db.bind, expire_on_commit=False) as notify_db:
            await NotificationService.create_notification(
                notify_db, user_id, title, message, type=type, metadata=metadata
            )
            await notify_db.commit()

    @staticmethod
    async def notify_safely(
        db: AsyncSession,
        user_id: int,
        title: str,
        message: str,
        type: NotificationType = NotificationType.INFO,
        metadata: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Best-effort dispatch. Returns True when the notification was stored.

        db is only used for its engine binding; the notification is written
        through a separate session.
        """
        try:
            await notification_circuit_breaker.call(
                NotificationService._deliver, db, user_id, title, message, type, metadata
            )
            return True
        except CircuitOpenError:
            logger.warning(
                "Notification skipped, circuit open",
                extra={"user_id": user_id, "title": title}
            )
            return False
        except Exception as exc:
            logger.warning(
                "Notification dispatch failed",
                exc_info=exc,
                extra={"user_id": user_id, "title": title, "error": str(exc)}
            )
            return False
