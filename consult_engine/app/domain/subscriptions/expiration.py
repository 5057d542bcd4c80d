"""
Subscription Expiration / Rollover Processor.

A periodic, idempotent sweep over active subscriptions whose end_date has
passed. A standard 30-day plan gets one 7-day grace extension, counted from
its original end date; everything else expires. Rows are never deleted and
start_date is never touched.

Rollover detection uses the payment_metadata flag first. For legacy rows
without the flag, an end_date at least rollover_detection_tolerance_days past
the original end date is taken to mean the extension already happened.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from consult_engine.app.core.clock import Clock
from consult_engine.app.core.config import settings
from consult_engine.app.models.subscription import Subscription
from consult_engine.app.models.notification import NotificationType
from consult_engine.app.models.consultation_enums import SubscriptionStatus
from consult_engine.app.schemas.ops import ExpirationStats
from consult_engine.app.services.audit import log_event, AuditAction
from consult_engine.app.services.notification_service import NotificationService
from consult_engine.app.services.row_locking import entity_locks, subscription_key, select_for_update

logger = logging.getLogger(__name__)

EXPIRED = "expired"
ROLLED_OVER = "rolled_over"
SKIPPED = "skipped"


def _parse_datetime(value) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Unparseable date in subscription metadata", extra={"value": str(value)})
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def plan_duration_days(subscription: Subscription) -> int:
    """
    Plan length in days: the recorded plan duration, else inferred from
    start and end dates (28-32 days counts as a standard plan).
    """
    if subscription.plan_duration_days:
        return int(subscription.plan_duration_days)

    if subscription.start_date and subscription.end_date:
        days = (subscription.end_date - subscription.start_date).days
        if 28 <= days <= 32:
            return settings.standard_plan_days
        return days

    return 0


def original_end_date(subscription: Subscription) -> datetime:
    """
    End date the current term was sold with, before any rollover.

    Args:
        subscription: Subscription row

    Returns:
        Recorded original_end_date from metadata, else start_date plus the
        plan duration, else the current end_date
    """
    metadata = subscription.payment_metadata or {}
    recorded = _parse_datetime(metadata.get("original_end_date"))
    if recorded:
        return recorded

    duration = plan_duration_days(subscription)
    if subscription.start_date and duration > 0:
        return subscription.start_date + timedelta(days=duration)

    return subscription.end_date


def rollover_already_applied(subscription: Subscription, original_end: datetime) -> bool:
    """
    The rollover_applied flag decides; rows without it fall back to
    comparing end_date with original_end.
    """
    metadata = subscription.payment_metadata or {}
    if metadata.get("rollover_applied") is True:
        return True

    # Legacy fallback
    return (subscription.end_date - original_end).days >= settings.rollover_detection_tolerance_days


def is_eligible_for_rollover(subscription: Subscription, original_end: datetime, now: datetime) -> bool:
    if plan_duration_days(subscription) != settings.standard_plan_days:
        return False
    if rollover_already_applied(subscription, original_end):
        return False
    return now <= original_end + timedelta(days=settings.rollover_grace_days)


async def process_subscription(db: AsyncSession, subscription_id: int, clock: Clock) -> str:
    """
    Expire or roll over one subscription under its lock.

    Args:
        db: Database session (committed here)
        subscription_id: Subscription to examine
        clock: Time source

    Returns:
        "expired", "rolled_over" or "skipped"
    """
    user_id = await db.scalar(select(Subscription.user_id).where(Subscription.id == subscription_id))
    if user_id is None:
        return SKIPPED

    async with entity_locks.hold(subscription_key(user_id)):
        try:
            subscription = await select_for_update(db, Subscription, subscription_id)
            now = clock.now()

            if (
                subscription is None
                or subscription.status != SubscriptionStatus.ACTIVE
                or not subscription.is_active
            ):
                await db.commit()
                return SKIPPED

            if subscription.end_date is None:
                logger.warning("Subscription missing end_date", extra={"subscription_id": subscription_id})
                await db.commit()
                return SKIPPED

            if now <= subscription.end_date:
                await db.commit()
                return SKIPPED

            original_end = original_end_date(subscription)
            if is_eligible_for_rollover(subscription, original_end, now):
                new_end = original_end + timedelta(days=settings.rollover_grace_days)
                metadata = dict(subscription.payment_metadata or {})
                metadata.update({
                    "rollover_applied": True,
                    "rollover_applied_at": now.isoformat(),
                    "original_end_date": original_end.isoformat(),
                    "new_end_date": new_end.isoformat(),
                })
                subscription.end_date = new_end
                subscription.payment_metadata = metadata
                outcome = ROLLED_OVER
                action = AuditAction.SUBSCRIPTION_ROLLED_OVER
            else:
                subscription.status = SubscriptionStatus.EXPIRED
                subscription.is_active = False
                outcome = EXPIRED
                action = AuditAction.SUBSCRIPTION_EXPIRED

            await log_event(
                db, action,
                target_type="subscription", target_id=subscription_id,
                metadata={
                    "user_id": user_id,
                    "original_end_date": original_end.isoformat(),
                    "end_date": subscription.end_date.isoformat(),
                },
            )
            end_date = subscription.end_date
            await db.commit()
        except SQLAlchemyError as exc:
            await db.rollback()
            logger.error("Subscription transition failed", exc_info=exc, extra={"subscription_id": subscription_id})
            raise
        except Exception:
            await db.rollback()
            raise

    logger.info(
        "Subscription rolled over" if outcome == ROLLED_OVER else "Subscription expired",
        extra={
            "subscription_id": subscription_id,
            "user_id": user_id,
            "original_end_date": original_end.isoformat(),
            "end_date": end_date.isoformat(),
        }
    )

    if outcome == ROLLED_OVER:
        await NotificationService.notify_safely(
            db, user_id,
            title="Subscription Extended",
            message=f"Your {settings.standard_plan_days}-day subscription has been extended by {settings.rollover_grace_days} days.",
            type=NotificationType.SUBSCRIPTION,
            metadata={"subscription_id": subscription_id, "new_end_date": end_date.isoformat()},
        )
    else:
        await NotificationService.notify_safely(
            db, user_id,
            title="Subscription Expired",
            message="Your subscription has expired. Please renew to continue using our services.",
            type=NotificationType.SUBSCRIPTION,
            metadata={"subscription_id": subscription_id, "end_date": end_date.isoformat()},
        )
    return outcome


async def process_expirations(db: AsyncSession, clock: Clock) -> ExpirationStats:
    """
    Expire or roll over every active subscription past its end date.

    Safe to re-run; a failure on one row is counted and skipped.

    Args:
        db: Database session
        clock: Time source

    Returns:
        ExpirationStats with per-outcome counts
    """
    stats = ExpirationStats()
    result = await db.execute(
        select(Subscription.id).where(
            Subscription.status == SubscriptionStatus.ACTIVE,
            Subscription.is_active == True,
            Subscription.end_date.isnot(None),
            Subscription.end_date < clock.now(),
        ).order_by(Subscription.id)
    )
    subscription_ids = result.scalars().all()
    logger.info("Processing subscription expirations", extra={"total_due": len(subscription_ids)})

    for subscription_id in subscription_ids:
        stats.processed += 1
        try:
            outcome = await process_subscription(db, subscription_id, clock)
        except Exception as exc:
            stats.errors += 1
            logger.error(
                "Error processing subscription expiration",
                exc_info=exc,
                extra={"subscription_id": subscription_id}
            )
            continue
        setattr(stats, outcome, getattr(stats, outcome) + 1)

    logger.info("Subscription expiration processing completed", extra=stats.model_dump())
    return stats
