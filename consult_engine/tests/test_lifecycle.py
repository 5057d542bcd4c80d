"""
Session lifecycle and creation tests.
"""

import pytest

from consult_engine.app.core.exceptions import (
    SessionNotActiveError, InvalidTransitionError, DuplicateActiveSessionError,
    SubscriptionNotFoundError, InsufficientQuotaError, ResourceNotFoundError,
)
from consult_engine.app.domain.sessions import lifecycle
from consult_engine.app.domain.sessions.creation import create_text_session, create_call_session
from consult_engine.app.models.consultation_enums import (
    TextSessionStatus, CallSessionStatus, CallType, SessionType,
)
from consult_engine.app.models.subscription import UNLIMITED
from consult_engine.app.services.audit import AuditAction


def test_transition_tables_cover_every_status():
    assert set(lifecycle.TEXT_TRANSITIONS) == set(TextSessionStatus)
    assert set(lifecycle.CALL_TRANSITIONS) == set(CallSessionStatus)
    for terminal in (TextSessionStatus.ENDED, TextSessionStatus.EXPIRED):
        assert lifecycle.TEXT_TRANSITIONS[terminal] == frozenset()
    for terminal in (CallSessionStatus.ENDED, CallSessionStatus.MISSED, CallSessionStatus.DECLINED):
        assert lifecycle.CALL_TRANSITIONS[terminal] == frozenset()


@pytest.mark.asyncio
async def test_accept_text_session_starts_metering_clock(make, clock):
    patient = await make.patient()
    provider = await make.provider()
    session = await make.text_session(patient.id, provider.id, status=TextSessionStatus.WAITING_FOR_PROVIDER)
    assert session.billing_started_at is None

    clock.advance(minutes=2)
    session = await lifecycle.accept_text_session(make.db, session.id, clock)

    assert session.status == TextSessionStatus.ACTIVE
    assert session.activated_at == clock.now()
    assert session.billing_started_at == clock.now()
    assert AuditAction.SESSION_ACTIVATED in await make.audit_actions("text_session", session.id)


@pytest.mark.asyncio
async def test_accept_twice_is_an_invalid_transition(make, clock):
    patient = await make.patient()
    provider = await make.provider()
    session = await make.text_session(patient.id, provider.id)

    with pytest.raises(InvalidTransitionError):
        await lifecycle.accept_text_session(make.db, session.id, clock)


@pytest.mark.asyncio
async def test_terminal_session_is_never_reentered(make, clock):
    patient = await make.patient()
    provider = await make.provider()
    session = await make.text_session(patient.id, provider.id, status=TextSessionStatus.EXPIRED)

    assert not lifecycle.can_transition(session, TextSessionStatus.ACTIVE)
    with pytest.raises(SessionNotActiveError):
        lifecycle.transition(session, TextSessionStatus.ACTIVE)
    with pytest.raises(SessionNotActiveError):
        await lifecycle.touch_activity(make.db, SessionType.TEXT, session.id, clock)


@pytest.mark.asyncio
async def test_call_answer_then_connect(make, clock):
    patient = await make.patient()
    provider = await make.provider()
    call = await make.call_session(patient.id, provider.id, status=CallSessionStatus.CONNECTING)

    clock.advance(seconds=20)
    call = await lifecycle.answer_call(make.db, call.id, clock)
    assert call.status == CallSessionStatus.ANSWERED
    assert call.connected_at is None

    clock.advance(seconds=5)
    connected_at = clock.now()
    call = await lifecycle.mark_call_connected(make.db, call.id, clock)
    assert call.status == CallSessionStatus.ACTIVE
    assert call.connected_at == connected_at

    # A repeated connect signal never moves the billing start
    clock.advance(minutes=3)
    call = await lifecycle.mark_call_connected(make.db, call.id, clock)
    assert call.connected_at == connected_at


@pytest.mark.asyncio
async def test_decline_call(make, clock):
    patient = await make.patient()
    provider = await make.provider()
    call = await make.call_session(patient.id, provider.id, status=CallSessionStatus.CONNECTING)

    call = await lifecycle.decline_call(make.db, call.id, clock)

    assert call.status == CallSessionStatus.DECLINED
    assert call.ended_at == clock.now()
    assert call.end_reason == "declined"
    assert call.is_terminal


@pytest.mark.asyncio
async def test_mark_ended_records_call_duration(make, clock):
    patient = await make.patient()
    provider = await make.provider()
    call = await make.call_session(patient.id, provider.id)

    clock.advance(minutes=4, seconds=30)
    lifecycle.mark_ended(call, CallSessionStatus.ENDED, clock.now(), end_reason="manual")

    assert call.call_duration_seconds == 270
    assert call.ended_at == clock.now()


@pytest.mark.asyncio
async def test_touch_activity(make, clock):
    patient = await make.patient()
    provider = await make.provider()
    session = await make.text_session(patient.id, provider.id)

    clock.advance(minutes=7)
    session = await lifecycle.touch_activity(make.db, SessionType.TEXT, session.id, clock)

    assert session.last_activity_at == clock.now()


@pytest.mark.asyncio
async def test_create_text_session_snapshots_quota(make, clock):
    patient = await make.patient()
    provider = await make.provider()
    await make.subscription(patient.id, text=4)

    session = await create_text_session(make.db, patient.id, provider.id, clock, reason="Headache")

    assert session.status == TextSessionStatus.WAITING_FOR_PROVIDER
    assert session.sessions_remaining_before_start == 4
    assert session.auto_deductions_processed == 0
    assert session.started_at == clock.now()

    notifications = await make.notifications(provider.id)
    assert [n.title for n in notifications] == ["New text session"]


@pytest.mark.asyncio
async def test_create_call_session_with_unlimited_plan(make, clock):
    patient = await make.patient()
    provider = await make.provider()
    await make.subscription(patient.id, video=UNLIMITED)

    call = await create_call_session(make.db, patient.id, provider.id, CallType.VIDEO, clock)

    assert call.status == CallSessionStatus.CONNECTING
    assert call.call_type == CallType.VIDEO
    assert call.sessions_remaining_before_start == UNLIMITED


@pytest.mark.asyncio
async def test_create_rejects_duplicate_live_session(make, clock):
    patient = await make.patient()
    provider = await make.provider()
    await make.subscription(patient.id)

    patient_id, provider_id = patient.id, provider.id
    first = await create_text_session(make.db, patient_id, provider_id, clock)
    first_id = first.id
    with pytest.raises(DuplicateActiveSessionError) as exc:
        await create_text_session(make.db, patient_id, provider_id, clock)

    assert exc.value.details["existing_session_id"] == first_id


@pytest.mark.asyncio
async def test_create_requires_subscription_and_quota(make, clock):
    patient_id = (await make.patient()).id
    provider_id = (await make.provider()).id

    with pytest.raises(SubscriptionNotFoundError):
        await create_text_session(make.db, patient_id, provider_id, clock)

    # Failed creation rolls back, so only ids are reused
    await make.subscription(patient_id, voice=0)
    with pytest.raises(InsufficientQuotaError):
        await create_call_session(make.db, patient_id, provider_id, CallType.VOICE, clock)


@pytest.mark.asyncio
async def test_create_requires_real_participants(make, clock):
    patient = await make.patient()
    other_patient = await make.patient()
    await make.subscription(patient.id)

    with pytest.raises(ResourceNotFoundError):
        await create_text_session(make.db, patient.id, other_patient.id, clock)
    with pytest.raises(ResourceNotFoundError):
        await create_text_session(make.db, patient.id, 999, clock)
