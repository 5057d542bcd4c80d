"""
Session Context Guard.

The single gate for chat and billing operations. An identifier is only a
session context if it resolves to a live text or call session; a plain
number that merely matches an appointment id is always rejected.

Accepted forms:
    text_session_<id> | text_session:<id>
    call_session_<id> | call_session:<id>
    <id>  (untagged; call sessions are tried first, then text sessions)
"""

import logging
import re
from typing import Optional, Tuple, Union

from sqlalchemy.ext.asyncio import AsyncSession

from consult_engine.app.models.appointment import Appointment
from consult_engine.app.models.call_session import CallSession
from consult_engine.app.models.text_session import TextSession
from consult_engine.app.models.consultation_enums import (
    SessionType, TEXT_LIVE_STATUSES, CALL_LIVE_STATUSES
)
from consult_engine.app.schemas.session import SessionContext, GuardDecision, AppointmentGuardrail

logger = logging.getLogger(__name__)

Identifier = Union[str, int]

_TAGGED = re.compile(r"^(text_session|call_session)[_:](.+)$")
_NUMERIC = re.compile(r"^\d+$")

CHAT_OPERATIONS = frozenset({"send_message", "activate_session", "end_session"})

SESSION_MODELS = {
    SessionType.TEXT: (TextSession, TEXT_LIVE_STATUSES),
    SessionType.CALL: (CallSession, CALL_LIVE_STATUSES),
}

LEGACY_APPOINTMENT_BILLING_WARNING = "appointment_has_session_id_use_session_billing"


def parse_identifier(identifier: Identifier) -> Tuple[Optional[SessionType], Optional[int], Optional[str]]:
    """
    Split an identifier into (session_type, session_id, error_reason).

    session_type is None for an untagged numeric id.
    """
    if isinstance(identifier, bool):
        return None, None, "unknown_identifier_format"
    if isinstance(identifier, int):
        return None, identifier, None

    text = str(identifier).strip()
    match = _TAGGED.match(text)
    if match:
        prefix, suffix = match.groups()
        if not _NUMERIC.match(suffix):
            return None, None, "unknown_identifier_format"
        return SessionType(prefix), int(suffix), None

    if _NUMERIC.match(text):
        return None, int(text), None

    return None, None, "unknown_identifier_format"


def _context_for(session_type: SessionType, session, live_statuses) -> SessionContext:
    if session.status not in live_statuses:
        return SessionContext(
            valid=False,
            session_type=session_type,
            session_id=session.id,
            reason=f"{session_type.value}_not_active",
            current_status=session.status.value,
        )
    return SessionContext(
        valid=True,
        session_type=session_type,
        session_id=session.id,
        current_status=session.status.value,
    )


async def resolve(db: AsyncSession, identifier: Identifier) -> Tuple[SessionContext, Optional[object]]:
    """Classify identifier and return the loaded session alongside the context."""
    session_type, session_id, error = parse_identifier(identifier)
    if error:
        return SessionContext(valid=False, reason=error), None

    if session_type is not None:
        model, live_statuses = SESSION_MODELS[session_type]
        session = await db.get(model, session_id)
        if session is None:
            return SessionContext(
                valid=False,
                session_type=session_type,
                session_id=session_id,
                reason=f"{session_type.value}_not_found",
            ), None
        return _context_for(session_type, session, live_statuses), session

    # Untagged: call session, then text session, then reject
    for candidate in (SessionType.CALL, SessionType.TEXT):
        model, live_statuses = SESSION_MODELS[candidate]
        session = await db.get(model, session_id)
        if session is not None:
            return _context_for(candidate, session, live_statuses), session

    logger.warning(
        "Plain numeric id is not a session context",
        extra={"identifier": str(identifier), "reason": "appointment_id_not_valid_session_context"}
    )
    return SessionContext(
        valid=False,
        session_id=session_id,
        reason="appointment_id_not_valid_session_context",
    ), None


async def classify(db: AsyncSession, identifier: Identifier) -> SessionContext:
    context, _ = await resolve(db, identifier)
    return context


async def require_for_chat(db: AsyncSession, identifier: Identifier, operation: str = "send_message") -> GuardDecision:
    """Gate for message send, session activation and end signalling."""
    context = await classify(db, identifier)
    if not context.valid:
        reason = context.reason or "invalid_session_context"
        logger.warning(
            "Chat operation blocked",
            extra={
                "identifier": str(identifier),
                "operation": operation,
                "reason": reason,
                "current_status": context.current_status,
            }
        )
        return GuardDecision(allowed=False, operation=operation, reason=reason, context=context)

    return GuardDecision(allowed=True, operation=operation, context=context)


async def require_for_billing(db: AsyncSession, identifier: Identifier, operation: str = "deduct") -> GuardDecision:
    """
    Gate for every money movement.

    Call sessions must also have connected_at set: a call that never
    connected is never billable.
    """
    context, session = await resolve(db, identifier)
    reason = None
    if not context.valid:
        reason = context.reason or "invalid_session_context"
    elif context.session_type == SessionType.CALL and session.connected_at is None:
        reason = "call_session_not_connected"

    if reason:
        logger.warning(
            "Billing operation blocked",
            extra={
                "identifier": str(identifier),
                "operation": operation,
                "reason": reason,
                "session_type": context.session_type.value if context.session_type else None,
                "session_id": context.session_id,
                "current_status": context.current_status,
            }
        )
        return GuardDecision(allowed=False, operation=operation, reason=reason, context=context)

    return GuardDecision(allowed=True, operation=operation, context=context)


def check_appointment_billing_guardrail(
    appointment: Appointment,
    endpoint_name: str,
    strict: bool = False
) -> AppointmentGuardrail:
    """
    Inspect an appointment before legacy per-appointment billing.

    An appointment linked to a live session should be billed through that
    session. Legacy billing is still let through with a warning unless
    strict is set, in which case it is denied.
    """
    if appointment.session_id is None:
        return AppointmentGuardrail(should_proceed=True)

    logger.warning(
        "Legacy appointment billing on appointment linked to a session",
        extra={
            "appointment_id": appointment.id,
            "session_type": appointment.session_type.value if appointment.session_type else None,
            "session_id": appointment.session_id,
            "endpoint": endpoint_name,
            "strict": strict,
        }
    )
    return AppointmentGuardrail(
        should_proceed=not strict,
        warning=LEGACY_APPOINTMENT_BILLING_WARNING,
        session_type=appointment.session_type,
        session_id=appointment.session_id,
    )
