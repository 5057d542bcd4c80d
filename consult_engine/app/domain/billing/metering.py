"""
Metering / Auto-Deduction Engine.

Turns connected time into billable units, one unit per
settings.billing_unit_minutes, exactly once per unit. Two ticks racing on
the same session are serialized by the per-entity locks; the loser re-reads
the advanced counter and finds nothing left to bill.

Flow:
1. Billing guard on the identifier
2. Fast path: compare eligible units against the persisted counter
3. Lock session + patient subscription + provider wallet, re-read rows
4. Recompute, check quota, then decrement quota, credit wallet and advance
   the counter in one commit
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from consult_engine.app.core.clock import Clock
from consult_engine.app.core.config import settings
from consult_engine.app.core.exceptions import SessionNotActiveError, InvalidSessionContextError
from consult_engine.app.domain.billing.ledger import (
    Ledger, RateResolver, deduct_quota, has_quota, quota_remaining, auto_deduction_key
)
from consult_engine.app.domain.sessions.context_guard import require_for_billing, Identifier
from consult_engine.app.models.call_session import CallSession
from consult_engine.app.models.text_session import TextSession
from consult_engine.app.models.consultation_enums import SessionType, MeteringOutcome, TransactionCategory
from consult_engine.app.schemas.billing import MeteringResult
from consult_engine.app.schemas.session import GuardDecision
from consult_engine.app.services.audit import log_event, AuditAction
from consult_engine.app.services.row_locking import (
    entity_locks, session_key, subscription_key, wallet_key, select_for_update, select_active_subscription
)

logger = logging.getLogger(__name__)

SESSION_MODELS = {SessionType.TEXT: TextSession, SessionType.CALL: CallSession}


def unit_seconds(unit_minutes: Optional[int] = None) -> int:
    return (unit_minutes or settings.billing_unit_minutes) * 60


def elapsed_seconds(started_at: Optional[datetime], now: datetime) -> int:
    if started_at is None:
        return 0
    return max(int((now - started_at).total_seconds()), 0)


def eligible_units(started_at: Optional[datetime], now: datetime, unit_minutes: Optional[int] = None) -> int:
    """Whole units completed since billing started."""
    return elapsed_seconds(started_at, now) // unit_seconds(unit_minutes)


def raise_for_denial(decision: GuardDecision, identifier: Identifier) -> None:
    """Map a guard denial onto the error taxonomy."""
    context = decision.context
    if decision.reason and decision.reason.endswith("_not_active"):
        raise SessionNotActiveError(context.session_type.value, context.session_id, context.current_status)
    raise InvalidSessionContextError(decision.reason, identifier, decision.operation)


async def reload_session(db: AsyncSession, session_type: SessionType, session_id: int):
    """Unlocked read that bypasses any stale identity-map copy."""
    model = SESSION_MODELS[session_type]
    result = await db.execute(
        select(model).where(model.id == session_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


def _result(session, outcome: MeteringOutcome, eligible: int, **kwargs) -> MeteringResult:
    return MeteringResult(
        session_type=session.session_type,
        session_id=session.id,
        outcome=outcome,
        eligible_units=eligible,
        auto_deductions_processed=session.auto_deductions_processed,
        **kwargs
    )


async def process_tick(
    db: AsyncSession,
    identifier: Identifier,
    clock: Clock,
    unit_minutes: Optional[int] = None
) -> MeteringResult:
    """
    Meter one session.

    Returns a MeteringResult whose outcome is no_op, deducted or
    insufficient_quota. Insufficient quota changes nothing and is reported,
    not raised; the caller decides whether to end the session.

    Raises:
        SessionNotActiveError: the session is terminal
        InvalidSessionContextError: the identifier is not a billable session
    """
    decision = await require_for_billing(db, identifier, "auto_deduction")
    if not decision.allowed:
        raise_for_denial(decision, identifier)

    session_type = decision.context.session_type
    session_id = decision.context.session_id
    now = clock.now()

    # Fast path on the persisted counter
    session = await reload_session(db, session_type, session_id)
    eligible = eligible_units(session.billing_started_at, now, unit_minutes)
    if eligible - session.auto_deductions_processed <= 0:
        return _result(session, MeteringOutcome.NO_OP, eligible)

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

            eligible = eligible_units(session.billing_started_at, now, unit_minutes)
            already = session.auto_deductions_processed
            new_units = eligible - already
            if new_units <= 0:
                await db.commit()
                return _result(session, MeteringOutcome.NO_OP, eligible)

            subscription = await select_active_subscription(db, patient_id, for_update=True)
            if subscription is None or not has_quota(subscription, consultation_type, new_units):
                available = quota_remaining(subscription, consultation_type) if subscription else 0
                await db.commit()
                logger.warning(
                    "Auto-deduction blocked, insufficient quota",
                    extra={
                        "session_type": session_type.value,
                        "session_id": session_id,
                        "requested_units": new_units,
                        "available_units": available,
                    }
                )
                return _result(
                    session, MeteringOutcome.INSUFFICIENT_QUOTA, eligible,
                    quota_remaining=available,
                )

            deduct_quota(subscription, consultation_type, new_units)
            rate = await RateResolver.resolve(db, provider_id, consultation_type)
            amount = rate.amount * new_units

            await Ledger.credit(
                db,
                provider_id=provider_id,
                amount=amount,
                category=TransactionCategory.AUTO_DEDUCTION,
                reference_id=session_id,
                reference_type=session_type.value,
                idempotency_key=auto_deduction_key(session_type, session_id, eligible),
                currency=rate.currency,
                metadata=Ledger.payment_metadata(
                    subscription,
                    consultation_type=consultation_type.value,
                    units=new_units,
                    from_unit=already + 1,
                    to_unit=eligible,
                    unit_rate=rate.amount,
                ),
                description=f"Auto-deduction for {session.reference} (units {already + 1}-{eligible})",
            )

            session.auto_deductions_processed = eligible
            session.sessions_used = (session.sessions_used or 0) + new_units

            await log_event(
                db, AuditAction.AUTO_DEDUCTION,
                target_type=session_type.value, target_id=session_id,
                metadata={
                    "units": new_units,
                    "auto_deductions_processed": eligible,
                    "amount": amount,
                    "currency": rate.currency,
                },
            )
            remaining_after = quota_remaining(subscription, consultation_type)
            await db.commit()
        except SQLAlchemyError as exc:
            await db.rollback()
            logger.error(
                "Auto-deduction failed",
                exc_info=exc,
                extra={"session_type": session_type.value, "session_id": session_id}
            )
            raise
        except Exception:
            await db.rollback()
            raise

    logger.info(
        "Auto-deduction applied",
        extra={
            "session_type": session_type.value,
            "session_id": session_id,
            "units": new_units,
            "auto_deductions_processed": eligible,
            "amount": amount,
            "currency": rate.currency,
        }
    )
    return _result(
        session, MeteringOutcome.DEDUCTED, eligible,
        units_deducted=new_units,
        quota_remaining=remaining_after,
        amount_credited=amount,
        currency=rate.currency,
    )
