"""
Session API Endpoints.

Collaborator-facing surface: context guard checks, session creation,
lifecycle signals, metering ticks and session end.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status, Path, Body
from sqlalchemy.ext.asyncio import AsyncSession

from consult_engine.app.db.session import get_db
from consult_engine.app.core.clock import Clock, get_clock
from consult_engine.app.core.exceptions import InvalidSessionContextError
from consult_engine.app.domain.billing.heartbeat import HeartbeatService
from consult_engine.app.domain.billing.metering import raise_for_denial
from consult_engine.app.domain.billing.settlement import end_session
from consult_engine.app.domain.sessions import context_guard, lifecycle
from consult_engine.app.domain.sessions.creation import create_text_session, create_call_session
from consult_engine.app.models.consultation_enums import SessionType
from consult_engine.app.schemas.billing import MeteringResult, SettlementResult
from consult_engine.app.schemas.session import (
    GuardRequest, GuardDecision, TextSessionCreate, CallSessionCreate,
    EndSessionRequest, TickRequest, SessionResponse,
)

router = APIRouter(prefix="/sessions", tags=["Sessions"])


async def _require_live(db: AsyncSession, identifier: str, operation: str, expected: SessionType = None):
    """Chat-gate the identifier and check it names the expected kind of session."""
    decision = await context_guard.require_for_chat(db, identifier, operation)
    if not decision.allowed:
        raise_for_denial(decision, identifier)
    if expected is not None and decision.context.session_type != expected:
        raise InvalidSessionContextError(f"{expected.value}_required", identifier, operation)
    return decision.context


@router.post("/guard/chat", response_model=GuardDecision)
async def guard_chat(request: GuardRequest, db: AsyncSession = Depends(get_db)):
    """Allow/deny a chat operation (send_message, activate_session, end_session)."""
    if request.operation not in context_guard.CHAT_OPERATIONS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported chat operation '{request.operation}'"
        )
    return await context_guard.require_for_chat(db, request.identifier, request.operation)


@router.post("/guard/billing", response_model=GuardDecision)
async def guard_billing(request: GuardRequest, db: AsyncSession = Depends(get_db)):
    return await context_guard.require_for_billing(db, request.identifier, request.operation)


@router.post("/text", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def start_text_session(
    payload: TextSessionCreate,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock)
):
    session = await create_text_session(
        db, payload.patient_id, payload.provider_id, clock,
        reason=payload.reason, appointment_id=payload.appointment_id,
    )
    return SessionResponse.from_session(session)


@router.post("/call", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def start_call_session(
    payload: CallSessionCreate,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock)
):
    session = await create_call_session(
        db, payload.patient_id, payload.provider_id, payload.call_type, clock,
        reason=payload.reason, appointment_id=payload.appointment_id,
    )
    return SessionResponse.from_session(session)


@router.get("/{identifier}", response_model=SessionResponse)
async def get_session(
    identifier: str = Path(..., description="Tagged session reference, e.g. text_session_12"),
    db: AsyncSession = Depends(get_db)
):
    """Read a session, live or terminal."""
    context, session = await context_guard.resolve(db, identifier)
    if session is None:
        raise InvalidSessionContextError(context.reason, identifier, "read")
    return SessionResponse.from_session(session)


@router.post("/{identifier}/accept", response_model=SessionResponse)
async def accept_session(
    identifier: str = Path(...),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock)
):
    """Provider accepts a waiting text session."""
    context = await _require_live(db, identifier, "activate_session", SessionType.TEXT)
    session = await lifecycle.accept_text_session(db, context.session_id, clock)
    return SessionResponse.from_session(session)


@router.post("/{identifier}/answer", response_model=SessionResponse)
async def answer_call(
    identifier: str = Path(...),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock)
):
    context = await _require_live(db, identifier, "activate_session", SessionType.CALL)
    session = await lifecycle.answer_call(db, context.session_id, clock)
    return SessionResponse.from_session(session)


@router.post("/{identifier}/connect", response_model=SessionResponse)
async def connect_call(
    identifier: str = Path(...),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock)
):
    """Media connected; billing for the call starts now."""
    context = await _require_live(db, identifier, "activate_session", SessionType.CALL)
    session = await lifecycle.mark_call_connected(db, context.session_id, clock)
    return SessionResponse.from_session(session)


@router.post("/{identifier}/decline", response_model=SessionResponse)
async def decline_call(
    identifier: str = Path(...),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock)
):
    context = await _require_live(db, identifier, "end_session", SessionType.CALL)
    session = await lifecycle.decline_call(db, context.session_id, clock)
    return SessionResponse.from_session(session)


@router.post("/{identifier}/activity", response_model=SessionResponse)
async def record_activity(
    identifier: str = Path(...),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock)
):
    context = await _require_live(db, identifier, "send_message")
    session = await lifecycle.touch_activity(db, context.session_type, context.session_id, clock)
    return SessionResponse.from_session(session)


@router.post("/{identifier}/tick", response_model=MeteringResult)
async def tick_session(
    identifier: str = Path(...),
    payload: Optional[TickRequest] = Body(None),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock)
):
    """Heartbeat: meter the session and end it if quota ran out."""
    payload = payload or TickRequest()
    return await HeartbeatService.tick(
        db, identifier, clock, end_on_insufficient_quota=payload.end_on_insufficient_quota
    )


@router.post("/{identifier}/end", response_model=SettlementResult)
async def end_session_endpoint(
    identifier: str = Path(...),
    payload: Optional[EndSessionRequest] = Body(None),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock)
):
    payload = payload or EndSessionRequest()
    return await end_session(db, identifier, payload.end_type, clock, ended_by=payload.ended_by)
