"""
Session lifecycle state machines.

Transition tables are keyed by every status member, so a status without an
entry is a bug caught at import time rather than a silent default. Terminal
states have no outgoing edges and are never re-entered.
"""

import logging
from datetime import datetime
from typing import Dict, FrozenSet, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from consult_engine.app.core.clock import Clock
from consult_engine.app.core.exceptions import SessionNotActiveError, InvalidTransitionError, ResourceNotFoundError
from consult_engine.app.models.call_session import CallSession
from consult_engine.app.models.text_session import TextSession
from consult_engine.app.models.consultation_enums import (
    TextSessionStatus, CallSessionStatus, SessionType,
    TEXT_TERMINAL_STATUSES, CALL_TERMINAL_STATUSES,
)
from consult_engine.app.services.audit import log_event, AuditAction
from consult_engine.app.services.row_locking import entity_locks, session_key, select_for_update

logger = logging.getLogger(__name__)


TEXT_TRANSITIONS: Dict[TextSessionStatus, FrozenSet[TextSessionStatus]] = {
    TextSessionStatus.WAITING_FOR_PROVIDER: frozenset({TextSessionStatus.ACTIVE, TextSessionStatus.ENDED}),
    TextSessionStatus.ACTIVE: frozenset({TextSessionStatus.ENDED, TextSessionStatus.EXPIRED}),
    TextSessionStatus.ENDED: frozenset(),
    TextSessionStatus.EXPIRED: frozenset(),
}

CALL_TRANSITIONS: Dict[CallSessionStatus, FrozenSet[CallSessionStatus]] = {
    CallSessionStatus.CONNECTING: frozenset({
        CallSessionStatus.WAITING_FOR_PROVIDER,
        CallSessionStatus.ANSWERED,
        CallSessionStatus.ACTIVE,
        CallSessionStatus.ENDED,
        CallSessionStatus.MISSED,
        CallSessionStatus.DECLINED,
    }),
    CallSessionStatus.WAITING_FOR_PROVIDER: frozenset({
        CallSessionStatus.ANSWERED,
        CallSessionStatus.ACTIVE,
        CallSessionStatus.ENDED,
        CallSessionStatus.MISSED,
        CallSessionStatus.DECLINED,
    }),
    CallSessionStatus.ANSWERED: frozenset({CallSessionStatus.ACTIVE, CallSessionStatus.ENDED}),
    CallSessionStatus.ACTIVE: frozenset({CallSessionStatus.ENDED}),
    CallSessionStatus.ENDED: frozenset(),
    CallSessionStatus.MISSED: frozenset(),
    CallSessionStatus.DECLINED: frozenset(),
}

_TABLES = {
    SessionType.TEXT: (TEXT_TRANSITIONS, TEXT_TERMINAL_STATUSES),
    SessionType.CALL: (CALL_TRANSITIONS, CALL_TERMINAL_STATUSES),
}

SESSION_MODELS = {SessionType.TEXT: TextSession, SessionType.CALL: CallSession}


def can_transition(session, target) -> bool:
    table, _ = _TABLES[session.session_type]
    return target in table[session.status]


def transition(session, target) -> None:
    """
    Move session to target in memory.

    Raises SessionNotActiveError if the session is already terminal and
    InvalidTransitionError for any other edge missing from the table.
    """
    table, terminal = _TABLES[session.session_type]
    if session.status in terminal:
        raise SessionNotActiveError(session.session_type.value, session.id, session.status)
    if target not in table[session.status]:
        raise InvalidTransitionError(session.session_type.value, session.id, session.status, target)
    session.status = target


def mark_ended(session, target, now: datetime, end_reason: str, ended_by: Optional[str] = None) -> None:
    transition(session, target)
    session.ended_at = now
    session.end_reason = end_reason
    session.ended_by = ended_by
    if session.session_type == SessionType.CALL and session.connected_at is not None:
        session.call_duration_seconds = max(int((now - session.connected_at).total_seconds()), 0)


async def _locked_session(db: AsyncSession, session_type: SessionType, session_id: int):
    session = await select_for_update(db, SESSION_MODELS[session_type], session_id)
    if session is None:
        raise ResourceNotFoundError(session_type.value, session_id)
    return session


async def _apply(db: AsyncSession, session_type: SessionType, session_id: int, mutate, audit_action: Optional[str] = None):
    """Run mutate(session) on a locked re-read and commit."""
    async with entity_locks.hold(session_key(session_type, session_id)):
        try:
            session = await _locked_session(db, session_type, session_id)
            mutate(session)
            if audit_action:
                await log_event(
                    db, audit_action,
                    target_type=session_type.value, target_id=session_id,
                    metadata={"status": session.status.value},
                )
            await db.commit()
        except Exception:
            await db.rollback()
            raise
    return session


async def accept_text_session(db: AsyncSession, session_id: int, clock: Clock) -> TextSession:
    """Provider accepts; metering starts counting from activated_at."""
    now = clock.now()

    def mutate(session: TextSession):
        transition(session, TextSessionStatus.ACTIVE)
        session.activated_at = now
        session.last_activity_at = now

    session = await _apply(db, SessionType.TEXT, session_id, mutate, AuditAction.SESSION_ACTIVATED)
    logger.info("Text session activated", extra={"session_id": session_id})
    return session


async def touch_activity(db: AsyncSession, session_type: SessionType, session_id: int, clock: Clock):
    """Record participant activity; used by the inactivity timeout."""
    now = clock.now()
    _, terminal = _TABLES[session_type]

    def mutate(session):
        if session.status in terminal:
            raise SessionNotActiveError(session_type.value, session.id, session.status)
        session.last_activity_at = now

    return await _apply(db, session_type, session_id, mutate)


async def answer_call(db: AsyncSession, session_id: int, clock: Clock) -> CallSession:
    now = clock.now()

    def mutate(session: CallSession):
        transition(session, CallSessionStatus.ANSWERED)
        session.answered_at = now
        session.last_activity_at = now

    return await _apply(db, SessionType.CALL, session_id, mutate)


async def mark_call_connected(db: AsyncSession, session_id: int, clock: Clock) -> CallSession:
    """
    Media is flowing. connected_at is set once and never moved; repeated
    connect signals on an active call are ignored.
    """
    now = clock.now()

    def mutate(session: CallSession):
        if session.status == CallSessionStatus.ACTIVE and session.connected_at is not None:
            return
        transition(session, CallSessionStatus.ACTIVE)
        if session.answered_at is None:
            session.answered_at = now
        session.connected_at = now
        session.last_activity_at = now

    session = await _apply(db, SessionType.CALL, session_id, mutate, AuditAction.SESSION_CONNECTED)
    logger.info("Call connected", extra={"session_id": session_id, "connected_at": session.connected_at.isoformat()})
    return session


async def decline_call(db: AsyncSession, session_id: int, clock: Clock, ended_by: Optional[str] = "provider") -> CallSession:
    now = clock.now()

    def mutate(session: CallSession):
        mark_ended(session, CallSessionStatus.DECLINED, now, end_reason="declined", ended_by=ended_by)

    return await _apply(db, SessionType.CALL, session_id, mutate, AuditAction.SESSION_ENDED)
