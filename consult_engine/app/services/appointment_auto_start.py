"""
Appointment auto-start.

Batch job that turns due, confirmed appointments into live sessions. Each
appointment is re-read under lock and converted in its own transaction:
create the session, link it to the appointment, commit. A run that finds
another run in progress skips.

Failure categories (recorded as metrics):
    missing_patient_or_provider, conflict_existing_session,
    no_active_subscription, validation_failed, db_update_failed, unknown_error
"""

import logging
import time
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from consult_engine.app.core.clock import Clock
from consult_engine.app.core.config import settings
from consult_engine.app.core.exceptions import (
    ResourceNotFoundError, DuplicateActiveSessionError, SubscriptionNotFoundError, InsufficientQuotaError
)
from consult_engine.app.domain.sessions.creation import (
    require_participants, insert_text_session, insert_call_session, notify_session_created
)
from consult_engine.app.models.appointment import Appointment
from consult_engine.app.models.notification import NotificationType
from consult_engine.app.models.consultation_enums import (
    AppointmentStatus, CallType, ConsultationType, SessionSource, SessionType
)
from consult_engine.app.schemas.ops import AutoStartRunSummary, AutoStartFailure
from consult_engine.app.services.metrics import AppointmentSessionMetrics
from consult_engine.app.services.notification_service import NotificationService
from consult_engine.app.services.row_locking import (
    entity_locks, appointment_key, subscription_key, select_for_update
)

logger = logging.getLogger(__name__)

RUN_LOCK_KEY = ("job", "appointment_auto_start")

CREATED = "created"
SKIPPED = "skipped"


def classify_failure(exc: Exception) -> str:
    if isinstance(exc, ResourceNotFoundError):
        return "missing_patient_or_provider"
    if isinstance(exc, DuplicateActiveSessionError):
        return "conflict_existing_session"
    if isinstance(exc, (SubscriptionNotFoundError, InsufficientQuotaError)):
        return "no_active_subscription"
    if isinstance(exc, ValueError):
        return "validation_failed"
    if isinstance(exc, SQLAlchemyError):
        return "db_update_failed"
    return "unknown_error"


async def _convert(db: AsyncSession, appointment_id: int, clock: Clock):
    """
    Convert one appointment. Returns (CREATED, session) or (SKIPPED, reason).
    Raises on failure after rolling back.
    """
    async with entity_locks.hold(appointment_key(appointment_id)):
        try:
            appointment = await select_for_update(db, Appointment, appointment_id)
            if appointment is None:
                await db.commit()
                return SKIPPED, "appointment_missing"
            if appointment.session_id is not None:
                await db.commit()
                return SKIPPED, "session_id_already_set"
            if appointment.status != AppointmentStatus.CONFIRMED:
                await db.commit()
                return SKIPPED, "status_changed"

            await require_participants(db, appointment.patient_id, appointment.provider_id)
            now = clock.now()

            async with entity_locks.hold(subscription_key(appointment.patient_id)):
                if appointment.consultation_type == ConsultationType.TEXT:
                    session = await insert_text_session(
                        db, appointment.patient_id, appointment.provider_id, now,
                        source=SessionSource.APPOINTMENT, appointment_id=appointment_id,
                    )
                    appointment.session_type = SessionType.TEXT
                else:
                    session = await insert_call_session(
                        db, appointment.patient_id, appointment.provider_id,
                        CallType(appointment.consultation_type.value), now,
                        source=SessionSource.APPOINTMENT, appointment_id=appointment_id,
                    )
                    appointment.session_type = SessionType.CALL
                    appointment.status = AppointmentStatus.IN_PROGRESS

                appointment.session_id = session.id
                await db.commit()
        except Exception:
            await db.rollback()
            raise

    return CREATED, session


async def run_auto_start(
    db: AsyncSession,
    metrics: AppointmentSessionMetrics,
    clock: Clock,
    limit: Optional[int] = None
) -> AutoStartRunSummary:
    summary = AutoStartRunSummary()
    run_lock = entity_locks.lock_for(RUN_LOCK_KEY)
    if run_lock.locked():
        logger.info("Auto-start already running, skipping")
        return summary

    async with run_lock:
        run_id = str(uuid.uuid4())
        start_time = time.time()
        result = await db.execute(
            select(Appointment.id).where(
                Appointment.status == AppointmentStatus.CONFIRMED,
                Appointment.session_id.is_(None),
                Appointment.scheduled_at_utc <= clock.now(),
            ).order_by(Appointment.scheduled_at_utc.asc()).limit(limit or settings.auto_start_batch_limit)
        )
        appointment_ids = result.scalars().all()

        for appointment_id in appointment_ids:
            summary.considered += 1
            try:
                action, detail = await _convert(db, appointment_id, clock)
            except Exception as exc:
                reason = classify_failure(exc)
                summary.failed += 1
                summary.failures.append(
                    AutoStartFailure(appointment_id=appointment_id, reason=reason, error_message=str(exc))
                )
                await metrics.record_conversion_failed(appointment_id, reason, str(exc))
                logger.error(
                    "appointment_session_conversion",
                    exc_info=exc,
                    extra={
                        "appointment_id": appointment_id,
                        "result": "failed",
                        "failure_reason": reason,
                        "job_run_id": run_id,
                    }
                )
                continue

            if action == SKIPPED:
                summary.skipped += 1
                logger.info(
                    "appointment_session_conversion",
                    extra={"appointment_id": appointment_id, "result": SKIPPED, "failure_reason": detail, "job_run_id": run_id}
                )
                continue

            session = detail
            summary.created += 1
            modality = "text" if session.session_type == SessionType.TEXT else session.call_type.value
            await metrics.record_session_created(appointment_id, session.id, modality)
            logger.info(
                "appointment_session_conversion",
                extra={
                    "appointment_id": appointment_id,
                    "result": CREATED,
                    "session_id": session.id,
                    "modality": modality,
                    "job_run_id": run_id,
                }
            )
            await notify_session_created(db, session)
            await NotificationService.notify_safely(
                db, session.patient_id,
                title="Your appointment has started",
                message="Your scheduled consultation is ready.",
                type=NotificationType.SESSION_UPDATE,
                metadata={"appointment_id": appointment_id, "session": session.reference},
            )

        logger.info(
            "appointment_auto_start_run",
            extra={
                "run_id": run_id,
                "attempted_count": summary.considered,
                "created_count": summary.created,
                "skipped_count": summary.skipped,
                "failed_count": summary.failed,
                "runtime_ms": round((time.time() - start_time) * 1000, 2),
            }
        )
    return summary
