"""
Session-End Settlement.

Reconciles the total units a finished session owes against the units the
metering engine already billed, and settles the difference. Ending a
session is never blocked by a billing shortfall: the deduction is capped at
the quota that remains and the gap is logged for reconciliation.

Partial-unit policy:
- MANUAL: the current partial unit is billable (ceil)
- TIMEOUT, INSUFFICIENT_QUOTA: only whole units are billed (floor)
"""

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from consult_engine.app.core.clock import Clock
from consult_engine.app.core.exceptions import (
    SessionNotActiveError, ResourceNotFoundError, InvalidSessionContextError, SubscriptionNotFoundError,
    AppointmentNotBillableError,
)
from consult_engine.app.domain.billing.ledger import (
    Ledger, RateResolver, deduct_quota, settlement_key, appointment_payment_key
)
from consult_engine.app.domain.billing.metering import (
    SESSION_MODELS, elapsed_seconds, unit_seconds, raise_for_denial, reload_session
)
from consult_engine.app.domain.sessions.context_guard import (
    require_for_chat, check_appointment_billing_guardrail, Identifier
)
from consult_engine.app.domain.sessions.lifecycle import mark_ended
from consult_engine.app.models.appointment import Appointment
from consult_engine.app.models.notification import NotificationType
from consult_engine.app.models.consultation_enums import (
    SessionType, EndType, TransactionCategory, AppointmentStatus,
    TextSessionStatus, CallSessionStatus,
)
from consult_engine.app.schemas.billing import SettlementResult, AppointmentSettlementResult
from consult_engine.app.services.audit import log_event, AuditAction
from consult_engine.app.services.notification_service import NotificationService
from consult_engine.app.services.row_locking import (
    entity_locks, session_key, subscription_key, wallet_key, appointment_key,
    select_for_update, select_active_subscription,
)

logger = logging.getLogger(__name__)

BILLABLE_APPOINTMENT_STATUSES = frozenset({
    AppointmentStatus.CONFIRMED,
    AppointmentStatus.IN_PROGRESS,
    AppointmentStatus.COMPLETED,
})


def total_units_owed(elapsed: int, end_type: EndType, unit_minutes: Optional[int] = None) -> int:
    """Units owed for `elapsed` seconds of billable time under end_type."""
    size = unit_seconds(unit_minutes)
    if end_type == EndType.MANUAL:
        return -(-elapsed // size)
    return elapsed // size


def final_status(session, end_type: EndType):
    """Terminal status a live session moves to when ended with end_type."""
    if session.session_type == SessionType.TEXT:
        if end_type == EndType.TIMEOUT and session.status == TextSessionStatus.ACTIVE:
            return TextSessionStatus.EXPIRED
        return TextSessionStatus.ENDED

    if session.connected_at is None and session.status in (
        CallSessionStatus.CONNECTING, CallSessionStatus.WAITING_FOR_PROVIDER
    ):
        return CallSessionStatus.MISSED
    return CallSessionStatus.ENDED


async def end_session(
    db: AsyncSession,
    identifier: Identifier,
    end_type: EndType,
    clock: Clock,
    ended_by: Optional[str] = None,
    unit_minutes: Optional[int] = None
) -> SettlementResult:
    """
    End a live session and settle what it still owes.

    Sessions that never went live (text never accepted, call never
    connected) end with nothing billed.

    Raises:
        SessionNotActiveError: the session is already terminal; the wallet
            is never touched on a repeated end
        InvalidSessionContextError: the identifier is not a session context
    """
    end_type = EndType(end_type)
    decision = await require_for_chat(db, identifier, "end_session")
    if not decision.allowed:
        raise_for_denial(decision, identifier)

    session_type = decision.context.session_type
    session_id = decision.context.session_id
    session = await reload_session(db, session_type, session_id)
    patient_id = session.patient_id
    provider_id = session.provider_id
    consultation_type = session.consultation_type

    async with entity_locks.hold(
        session_key(session_type, session_id),
        subscription_key(patient_id),
        wallet_key(provider_id),
    ):
        try:
            session = await select_for_update(db, SESSION_MODELS[session_type], session_id)
            if session.is_terminal:
                raise SessionNotActiveError(session_type.value, session_id, session.status)

            now = clock.now()
            target = final_status(session, end_type)
            elapsed = elapsed_seconds(session.billing_started_at, now)
            already = session.auto_deductions_processed
            owed = total_units_owed(elapsed, end_type, unit_minutes) if session.billing_started_at else 0
            remaining = max(owed - already, 0)
            deducted = 0
            amount = 0.0
            currency = None

            if remaining > 0:
                subscription = await select_active_subscription(db, patient_id, for_update=True)
                if subscription is not None:
                    deducted = deduct_quota(subscription, consultation_type, remaining, allow_partial=True)

                if deducted > 0:
                    rate = await RateResolver.resolve(db, provider_id, consultation_type)
                    amount = rate.amount * deducted
                    currency = rate.currency
                    await Ledger.credit(
                        db,
                        provider_id=provider_id,
                        amount=amount,
                        category=TransactionCategory.SETTLEMENT,
                        reference_id=session_id,
                        reference_type=session_type.value,
                        idempotency_key=settlement_key(session_type, session_id),
                        currency=rate.currency,
                        metadata=Ledger.payment_metadata(
                            subscription,
                            consultation_type=consultation_type.value,
                            end_type=end_type.value,
                            units=deducted,
                            total_units_owed=owed,
                            already_metered=already,
                            unit_rate=rate.amount,
                        ),
                        description=f"Settlement for {session.reference} ({end_type.value} end)",
                    )
                    session.sessions_used = (session.sessions_used or 0) + deducted

            shortfall = remaining - deducted
            if shortfall > 0:
                logger.warning(
                    "Settlement shortfall, session ended under-settled",
                    extra={
                        "session_type": session_type.value,
                        "session_id": session_id,
                        "patient_id": patient_id,
                        "remaining_to_settle": remaining,
                        "units_deducted": deducted,
                        "shortfall": shortfall,
                    }
                )
                await log_event(
                    db, AuditAction.SETTLEMENT_SHORTFALL,
                    target_type=session_type.value, target_id=session_id,
                    metadata={"remaining_to_settle": remaining, "units_deducted": deducted, "shortfall": shortfall},
                )

            mark_ended(session, target, now, end_reason=end_type.value, ended_by=ended_by)
            await log_event(
                db, AuditAction.SESSION_SETTLED,
                target_type=session_type.value, target_id=session_id,
                actor_role=ended_by,
                metadata={
                    "end_type": end_type.value,
                    "final_status": target.value,
                    "elapsed_seconds": elapsed,
                    "total_units_owed": owed,
                    "already_metered": already,
                    "units_deducted": deducted,
                    "amount": amount,
                },
            )
            await db.commit()
        except SQLAlchemyError as exc:
            await db.rollback()
            logger.error(
                "Session settlement failed",
                exc_info=exc,
                extra={"session_type": session_type.value, "session_id": session_id, "end_type": end_type.value}
            )
            raise
        except Exception:
            await db.rollback()
            raise

    result = SettlementResult(
        session_type=session_type,
        session_id=session_id,
        end_type=end_type,
        final_status=target.value,
        elapsed_seconds=elapsed,
        total_units_owed=owed,
        already_metered=already,
        remaining_to_settle=remaining,
        units_deducted=deducted,
        shortfall=shortfall,
        amount_credited=amount,
        currency=currency,
        billed=deducted > 0,
    )
    logger.info("Session ended", extra=result.model_dump(mode="json"))

    if deducted > 0:
        await NotificationService.notify_safely(
            db, provider_id,
            title="Payment received",
            message=f"You earned {amount:g} {currency} for a completed consultation.",
            type=NotificationType.PAYMENT,
            metadata={"session": session.reference, "units": deducted},
        )
    await NotificationService.notify_safely(
        db, patient_id,
        title="Session ended",
        message="Your consultation has ended.",
        type=NotificationType.SESSION_UPDATE,
        metadata={"session": session.reference, "final_status": target.value},
    )
    return result


async def settle_appointment(
    db: AsyncSession,
    appointment_id: int,
    clock: Clock,
    strict: bool = False
) -> AppointmentSettlementResult:
    """
    Legacy per-appointment billing: one unit from the patient, one unit's
    rate to the provider.

    The appointment's own markers make this one-shot: sessions_deducted
    guards the quota, earnings_awarded guards the payout. Markers already set
    are reported as success. A patient out of quota does not block the
    payout; the unit is left unmarked and logged.

    Raises:
        ResourceNotFoundError: no such appointment
        AppointmentNotBillableError: the appointment is pending or cancelled
        SubscriptionNotFoundError: a unit is still owed and the patient has
            no active subscription
    """
    appointment = await db.get(Appointment, appointment_id)
    if appointment is None:
        raise ResourceNotFoundError("Appointment", appointment_id)

    guardrail = check_appointment_billing_guardrail(appointment, "settle_appointment", strict=strict)
    if not guardrail.should_proceed:
        raise InvalidSessionContextError(guardrail.warning, f"appointment:{appointment_id}", "settle_appointment")

    patient_id = appointment.patient_id
    provider_id = appointment.provider_id

    async with entity_locks.hold(
        appointment_key(appointment_id),
        subscription_key(patient_id),
        wallet_key(provider_id),
    ):
        try:
            appointment = await select_for_update(db, Appointment, appointment_id)
            if appointment.status not in BILLABLE_APPOINTMENT_STATUSES:
                raise AppointmentNotBillableError(appointment_id, appointment.status)
            consultation_type = appointment.consultation_type
            deducted_now = False
            earned_now = False
            amount = 0.0
            currency = None
            subscription = await select_active_subscription(db, patient_id, for_update=True)

            if appointment.sessions_deducted == 0:
                if subscription is None:
                    raise SubscriptionNotFoundError(patient_id)
                if deduct_quota(subscription, consultation_type, 1, allow_partial=True):
                    appointment.sessions_deducted = 1
                    deducted_now = True
                else:
                    logger.warning(
                        "Appointment unit not deducted, quota exhausted",
                        extra={"appointment_id": appointment_id, "patient_id": patient_id}
                    )

            if not appointment.earnings_awarded:
                rate = await RateResolver.resolve(db, provider_id, consultation_type)
                transaction = await Ledger.credit(
                    db,
                    provider_id=provider_id,
                    amount=rate.amount,
                    category=TransactionCategory.APPOINTMENT_PAYMENT,
                    reference_id=appointment_id,
                    reference_type="appointment",
                    idempotency_key=appointment_payment_key(appointment_id),
                    currency=rate.currency,
                    metadata=Ledger.payment_metadata(
                        subscription,
                        consultation_type=consultation_type.value,
                        appointment_id=appointment_id,
                    ),
                    description=f"Payment for appointment {appointment_id}",
                )
                appointment.earnings_awarded = transaction.amount
                amount = transaction.amount
                currency = transaction.currency
                earned_now = True

            already_settled = not (deducted_now or earned_now)
            if appointment.status in (AppointmentStatus.CONFIRMED, AppointmentStatus.IN_PROGRESS):
                appointment.status = AppointmentStatus.COMPLETED

            if not already_settled:
                await log_event(
                    db, AuditAction.APPOINTMENT_SETTLED,
                    target_type="appointment", target_id=appointment_id,
                    metadata={
                        "session_deducted": deducted_now,
                        "earnings_awarded": earned_now,
                        "amount": amount,
                        "warning": guardrail.warning,
                    },
                )
            await db.commit()
        except SQLAlchemyError as exc:
            await db.rollback()
            logger.error("Appointment settlement failed", exc_info=exc, extra={"appointment_id": appointment_id})
            raise
        except Exception:
            await db.rollback()
            raise

    logger.info(
        "Appointment settled",
        extra={
            "appointment_id": appointment_id,
            "session_deducted": deducted_now,
            "earnings_awarded": earned_now,
            "already_settled": already_settled,
        }
    )

    if earned_now:
        await NotificationService.notify_safely(
            db, provider_id,
            title="Payment received",
            message=f"You earned {amount:g} {currency} for appointment {appointment_id}.",
            type=NotificationType.PAYMENT,
            metadata={"appointment_id": appointment_id},
        )

    return AppointmentSettlementResult(
        appointment_id=appointment_id,
        session_deducted_now=deducted_now,
        earnings_awarded_now=earned_now,
        already_settled=already_settled,
        amount=amount,
        currency=currency,
        warning=guardrail.warning,
    )
