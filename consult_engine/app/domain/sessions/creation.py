"""
Session creation.

Creates text and call sessions for the Talk-Now flow and for appointment
auto-start. Creation is serialized per patient so two concurrent requests
cannot both pass the duplicate check.

insert_* functions only flush; the caller holds the patient lock and
commits. create_* wrap them in their own lock and transaction.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from consult_engine.app.core.clock import Clock
from consult_engine.app.core.exceptions import (
    ResourceNotFoundError, DuplicateActiveSessionError, SubscriptionNotFoundError, InsufficientQuotaError
)
from consult_engine.app.domain.billing.ledger import quota_remaining, has_quota
from consult_engine.app.models.call_session import CallSession
from consult_engine.app.models.text_session import TextSession
from consult_engine.app.models.user import User
from consult_engine.app.models.enums import UserRole
from consult_engine.app.models.notification import NotificationType
from consult_engine.app.models.consultation_enums import (
    CallType, ConsultationType, SessionSource, SessionType,
    TextSessionStatus, CallSessionStatus, TEXT_LIVE_STATUSES, CALL_LIVE_STATUSES,
)
from consult_engine.app.services.audit import log_event, AuditAction
from consult_engine.app.services.notification_service import NotificationService
from consult_engine.app.services.row_locking import entity_locks, subscription_key, select_active_subscription

logger = logging.getLogger(__name__)


async def require_participants(db: AsyncSession, patient_id: Optional[int], provider_id: Optional[int]) -> None:
    """
    Check both participants exist with the right roles.

    Raises:
        ResourceNotFoundError: patient or provider is missing or has the wrong role
    """
    patient = await db.get(User, patient_id) if patient_id is not None else None
    if patient is None or patient.role != UserRole.PATIENT:
        raise ResourceNotFoundError("Patient", patient_id)
    provider = await db.get(User, provider_id) if provider_id is not None else None
    if provider is None or provider.role != UserRole.PROVIDER:
        raise ResourceNotFoundError("Provider", provider_id)


async def _require_quota(db: AsyncSession, patient_id: int, consultation_type: ConsultationType) -> int:
    """Locked read of the patient's subscription; returns the quota snapshot."""
    subscription = await select_active_subscription(db, patient_id, for_update=True)
    if subscription is None:
        raise SubscriptionNotFoundError(patient_id)
    if not has_quota(subscription, consultation_type):
        raise InsufficientQuotaError(
            consultation_type.value, requested=1,
            available=max(quota_remaining(subscription, consultation_type), 0)
        )
    return quota_remaining(subscription, consultation_type)


async def _find_live(db: AsyncSession, model, live_statuses, patient_id: int, provider_id: int):
    result = await db.execute(
        select(model).where(
            model.patient_id == patient_id,
            model.provider_id == provider_id,
            model.status.in_(live_statuses),
        ).limit(1)
    )
    return result.scalar_one_or_none()


async def insert_text_session(
    db: AsyncSession,
    patient_id: int,
    provider_id: int,
    now: datetime,
    reason: Optional[str] = None,
    source: SessionSource = SessionSource.INSTANT,
    appointment_id: Optional[int] = None,
) -> TextSession:
    """
    Insert a waiting text session without committing.

    The caller holds the subscription lock and owns the transaction.

    Args:
        db: Database session
        patient_id: Patient opening the session
        provider_id: Provider being consulted
        now: Creation time
        reason: Free-text reason for the consultation
        source: Instant request or appointment auto-start
        appointment_id: Appointment this session fulfils, if any

    Returns:
        Flushed TextSession with its quota snapshot
    """
    snapshot = await _require_quota(db, patient_id, ConsultationType.TEXT)

    existing = await _find_live(db, TextSession, TEXT_LIVE_STATUSES, patient_id, provider_id)
    if existing:
        raise DuplicateActiveSessionError(SessionType.TEXT.value, existing.id)

    session = TextSession(
        patient_id=patient_id,
        provider_id=provider_id,
        status=TextSessionStatus.WAITING_FOR_PROVIDER,
        reason=reason,
        started_at=now,
        last_activity_at=now,
        sessions_used=0,
        auto_deductions_processed=0,
        sessions_remaining_before_start=snapshot,
        appointment_id=appointment_id,
    )
    db.add(session)
    await db.flush()

    await log_event(
        db, AuditAction.SESSION_CREATED,
        target_type=SessionType.TEXT.value, target_id=session.id, actor_id=patient_id,
        metadata={"source": source.value, "provider_id": provider_id, "appointment_id": appointment_id},
    )
    return session


async def insert_call_session(
    db: AsyncSession,
    patient_id: int,
    provider_id: int,
    call_type: CallType,
    now: datetime,
    reason: Optional[str] = None,
    source: SessionSource = SessionSource.INSTANT,
    appointment_id: Optional[int] = None,
) -> CallSession:
    """Insert a ringing call session without committing. Same contract as insert_text_session."""
    snapshot = await _require_quota(db, patient_id, ConsultationType.for_call(call_type))

    existing = await _find_live(db, CallSession, CALL_LIVE_STATUSES, patient_id, provider_id)
    if existing:
        raise DuplicateActiveSessionError(SessionType.CALL.value, existing.id)

    session = CallSession(
        patient_id=patient_id,
        provider_id=provider_id,
        call_type=call_type,
        status=CallSessionStatus.CONNECTING,
        reason=reason,
        started_at=now,
        last_activity_at=now,
        sessions_used=0,
        auto_deductions_processed=0,
        sessions_remaining_before_start=snapshot,
        call_duration_seconds=0,
        appointment_id=appointment_id,
    )
    db.add(session)
    await db.flush()

    await log_event(
        db, AuditAction.SESSION_CREATED,
        target_type=SessionType.CALL.value, target_id=session.id, actor_id=patient_id,
        metadata={"source": source.value, "call_type": call_type.value, "appointment_id": appointment_id},
    )
    return session


async def notify_session_created(db: AsyncSession, session) -> None:
    if session.session_type == SessionType.TEXT:
        title = "New text session"
        message = "A patient is waiting for you to accept a text session."
    else:
        title = f"Incoming {session.call_type.value} call"
        message = "A patient is calling you."
    await NotificationService.notify_safely(
        db, session.provider_id,
        title=title,
        message=message,
        type=NotificationType.SESSION_UPDATE,
        metadata={"session": session.reference, "appointment_id": session.appointment_id},
    )


async def create_text_session(
    db: AsyncSession,
    patient_id: int,
    provider_id: int,
    clock: Clock,
    reason: Optional[str] = None,
    source: SessionSource = SessionSource.INSTANT,
    appointment_id: Optional[int] = None,
) -> TextSession:
    """
    Open a text session waiting for the provider.

    Args:
        db: Database session
        patient_id: Patient opening the session
        provider_id: Provider being consulted
        clock: Time source
        reason: Free-text reason for the consultation
        source: Instant request or appointment auto-start
        appointment_id: Appointment this session fulfils, if any

    Returns:
        Committed TextSession

    Raises:
        ResourceNotFoundError: unknown patient or provider
        SubscriptionNotFoundError: no active subscription
        InsufficientQuotaError: no text quota left
        DuplicateActiveSessionError: a live text session already exists for the pair
    """
    await require_participants(db, patient_id, provider_id)

    async with entity_locks.hold(subscription_key(patient_id)):
        try:
            session = await insert_text_session(
                db, patient_id, provider_id, clock.now(),
                reason=reason, source=source, appointment_id=appointment_id,
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    logger.info(
        "Text session created",
        extra={
            "session_id": session.id,
            "patient_id": patient_id,
            "provider_id": provider_id,
            "source": source.value,
            "appointment_id": appointment_id,
        }
    )
    await notify_session_created(db, session)
    return session


async def create_call_session(
    db: AsyncSession,
    patient_id: int,
    provider_id: int,
    call_type: CallType,
    clock: Clock,
    reason: Optional[str] = None,
    source: SessionSource = SessionSource.INSTANT,
    appointment_id: Optional[int] = None,
) -> CallSession:
    """Open a ringing voice or video call. Same errors as create_text_session."""
    call_type = CallType(call_type)
    await require_participants(db, patient_id, provider_id)

    async with entity_locks.hold(subscription_key(patient_id)):
        try:
            session = await insert_call_session(
                db, patient_id, provider_id, call_type, clock.now(),
                reason=reason, source=source, appointment_id=appointment_id,
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    logger.info(
        "Call session created",
        extra={
            "session_id": session.id,
            "patient_id": patient_id,
            "provider_id": provider_id,
            "call_type": call_type.value,
            "source": source.value,
        }
    )
    await notify_session_created(db, session)
    return session
