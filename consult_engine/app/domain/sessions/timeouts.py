"""
Session timeout sweep.

Run by the batch scheduler. Each session is ended through settlement on its
own; a failure on one session is logged and counted without stopping the
sweep.
"""

import logging
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from consult_engine.app.core.clock import Clock
from consult_engine.app.core.config import settings
from consult_engine.app.core.exceptions import SessionNotActiveError
from consult_engine.app.domain.billing.settlement import end_session
from consult_engine.app.models.call_session import CallSession
from consult_engine.app.models.text_session import TextSession
from consult_engine.app.models.subscription import UNLIMITED
from consult_engine.app.models.consultation_enums import (
    SessionType, EndType, TextSessionStatus, CallSessionStatus
)
from consult_engine.app.schemas.ops import TimeoutSweepStats

logger = logging.getLogger(__name__)


def allowance_used_up(session: TextSession, now, unit_minutes: int) -> bool:
    """True once an active text session has used every unit it started with."""
    snapshot = session.sessions_remaining_before_start
    if snapshot == UNLIMITED or session.activated_at is None:
        return False
    return now - session.activated_at >= timedelta(minutes=snapshot * unit_minutes)


async def _end(db: AsyncSession, session_type: SessionType, session_id: int, clock: Clock) -> bool:
    """End one session on timeout; False if another trigger ended it first."""
    identifier = f"{session_type.value}_{session_id}"
    try:
        await end_session(db, identifier, EndType.TIMEOUT, clock, ended_by="system")
        return True
    except SessionNotActiveError:
        return False


async def _sweep(db: AsyncSession, session_type: SessionType, session_ids, clock: Clock) -> tuple[int, int]:
    ended = errors = 0
    for session_id in session_ids:
        try:
            if await _end(db, session_type, session_id, clock):
                ended += 1
        except Exception as exc:
            errors += 1
            logger.error(
                "Timeout sweep failed for session",
                exc_info=exc,
                extra={"session_type": session_type.value, "session_id": session_id}
            )
    return ended, errors


async def process_session_timeouts(db: AsyncSession, clock: Clock) -> TimeoutSweepStats:
    """
    End sessions that timed out:

    - text sessions still waiting after the response window (abandoned, not billed)
    - active text sessions that went quiet or used up their starting allowance
    - calls still ringing after the response window (missed, not billed)
    """
    stats = TimeoutSweepStats()
    now = clock.now()
    response_cutoff = now - timedelta(seconds=settings.text_session_response_window_seconds)
    inactivity_cutoff = now - timedelta(minutes=settings.session_inactivity_timeout_minutes)

    result = await db.execute(
        select(TextSession.id).where(
            TextSession.status == TextSessionStatus.WAITING_FOR_PROVIDER,
            TextSession.started_at <= response_cutoff,
        )
    )
    stats.abandoned, errors = await _sweep(db, SessionType.TEXT, result.scalars().all(), clock)
    stats.errors += errors

    result = await db.execute(
        select(TextSession).where(TextSession.status == TextSessionStatus.ACTIVE)
    )
    candidates = [
        session.id for session in result.scalars().all()
        if allowance_used_up(session, now, settings.billing_unit_minutes)
        or (session.last_activity_at is not None and session.last_activity_at <= inactivity_cutoff)
    ]
    stats.expired, errors = await _sweep(db, SessionType.TEXT, candidates, clock)
    stats.errors += errors

    result = await db.execute(
        select(CallSession.id).where(
            CallSession.status.in_([CallSessionStatus.CONNECTING, CallSessionStatus.WAITING_FOR_PROVIDER]),
            CallSession.started_at <= response_cutoff,
        )
    )
    stats.missed, errors = await _sweep(db, SessionType.CALL, result.scalars().all(), clock)
    stats.errors += errors

    logger.info("Session timeout sweep completed", extra=stats.model_dump())
    return stats
