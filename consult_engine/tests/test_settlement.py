"""
Session-end settlement and legacy appointment settlement tests.
"""

import pytest

from consult_engine.app.core.exceptions import (
    SessionNotActiveError, InvalidSessionContextError, SubscriptionNotFoundError,
    AppointmentNotBillableError,
)
from consult_engine.app.domain.billing.settlement import (
    end_session, settle_appointment, total_units_owed, final_status
)
from consult_engine.app.models.appointment import Appointment
from consult_engine.app.models.call_session import CallSession
from consult_engine.app.models.consultation_enums import (
    EndType, TextSessionStatus, CallSessionStatus, CallType, ConsultationType,
    AppointmentStatus, SessionType, TransactionCategory,
)
from consult_engine.app.models.subscription import Subscription
from consult_engine.app.models.text_session import TextSession
from consult_engine.app.services.audit import AuditAction


def test_total_units_owed_partial_unit_policy():
    assert total_units_owed(0, EndType.MANUAL) == 0
    assert total_units_owed(1, EndType.MANUAL) == 1
    assert total_units_owed(25 * 60, EndType.MANUAL) == 3
    assert total_units_owed(20 * 60, EndType.MANUAL) == 2
    assert total_units_owed(25 * 60, EndType.TIMEOUT) == 2
    assert total_units_owed(25 * 60, EndType.INSUFFICIENT_QUOTA) == 2
    assert total_units_owed(9 * 60, EndType.TIMEOUT) == 0


@pytest.mark.asyncio
async def test_final_status_rules(make):
    patient = await make.patient()
    provider = await make.provider()
    active_text = await make.text_session(patient.id, provider.id)
    waiting_text = await make.text_session(
        patient.id, provider.id, status=TextSessionStatus.WAITING_FOR_PROVIDER
    )
    ringing = await make.call_session(patient.id, provider.id, status=CallSessionStatus.CONNECTING)
    answered = await make.call_session(patient.id, provider.id, status=CallSessionStatus.ANSWERED)

    assert final_status(active_text, EndType.TIMEOUT) == TextSessionStatus.EXPIRED
    assert final_status(active_text, EndType.MANUAL) == TextSessionStatus.ENDED
    assert final_status(waiting_text, EndType.TIMEOUT) == TextSessionStatus.ENDED
    assert final_status(ringing, EndType.MANUAL) == CallSessionStatus.MISSED
    assert final_status(answered, EndType.MANUAL) == CallSessionStatus.ENDED


async def _active_text(make, text=10, processed=0):
    patient = await make.patient()
    provider = await make.provider()
    subscription = await make.subscription(patient.id, text=text)
    session = await make.text_session(patient.id, provider.id, processed=processed)
    return patient, provider, subscription, session


@pytest.mark.asyncio
async def test_manual_end_bills_partial_unit(make, clock):
    _, provider, subscription, session = await _active_text(make, processed=2)
    clock.advance(minutes=25)

    result = await end_session(make.db, f"text_session_{session.id}", EndType.MANUAL, clock, ended_by="patient")

    assert result.final_status == "ended"
    assert result.total_units_owed == 3
    assert result.already_metered == 2
    assert result.remaining_to_settle == 1
    assert result.units_deducted == 1
    assert result.billed is True
    assert result.amount_credited == 4.0

    subscription = await make.reload(Subscription, subscription.id)
    assert subscription.text_sessions_remaining == 9
    transactions = await make.transactions(provider.id)
    assert [t.category for t in transactions] == [TransactionCategory.SETTLEMENT]
    assert transactions[0].idempotency_key == f"text_session:{session.id}:settlement"

    session = await make.reload(TextSession, session.id)
    assert session.status == TextSessionStatus.ENDED
    assert session.ended_at == clock.now()
    assert session.ended_by == "patient"
    assert session.sessions_used == 3


@pytest.mark.asyncio
async def test_timeout_end_bills_only_whole_units(make, clock):
    _, provider, subscription, session = await _active_text(make, processed=2)
    clock.advance(minutes=25)

    result = await end_session(make.db, f"text_session_{session.id}", EndType.TIMEOUT, clock)

    assert result.final_status == "expired"
    assert result.total_units_owed == 2
    assert result.remaining_to_settle == 0
    assert result.billed is False
    assert await make.transactions(provider.id) == []


@pytest.mark.asyncio
async def test_manual_end_on_exact_unit_boundary(make, clock):
    _, provider, _, session = await _active_text(make, processed=2)
    clock.advance(minutes=20)

    result = await end_session(make.db, f"text_session_{session.id}", EndType.MANUAL, clock)

    assert result.total_units_owed == 2
    assert result.billed is False


@pytest.mark.asyncio
async def test_zero_elapsed_owes_nothing(make, clock):
    _, provider, _, session = await _active_text(make)

    result = await end_session(make.db, f"text_session_{session.id}", EndType.MANUAL, clock)

    assert result.elapsed_seconds == 0
    assert result.total_units_owed == 0
    assert await make.wallet(provider.id) is None


@pytest.mark.asyncio
async def test_settlement_is_capped_at_available_quota(make, clock):
    _, provider, subscription, session = await _active_text(make, text=1)
    clock.advance(minutes=35)

    result = await end_session(make.db, f"text_session_{session.id}", EndType.MANUAL, clock)

    assert result.total_units_owed == 4
    assert result.units_deducted == 1
    assert result.shortfall == 3
    assert result.final_status == "ended"

    subscription = await make.reload(Subscription, subscription.id)
    assert subscription.text_sessions_remaining == 0
    assert (await make.wallet(provider.id)).balance == 4.0
    actions = await make.audit_actions("text_session", session.id)
    assert AuditAction.SETTLEMENT_SHORTFALL in actions
    assert AuditAction.SESSION_SETTLED in actions


@pytest.mark.asyncio
async def test_session_ends_without_any_subscription(make, clock):
    patient = await make.patient()
    provider = await make.provider()
    session = await make.text_session(patient.id, provider.id)
    clock.advance(minutes=15)

    result = await end_session(make.db, f"text_session_{session.id}", EndType.MANUAL, clock)

    assert result.units_deducted == 0
    assert result.shortfall == 2
    session = await make.reload(TextSession, session.id)
    assert session.is_terminal


@pytest.mark.asyncio
async def test_repeated_end_never_touches_the_wallet(make, clock):
    _, provider, _, session = await _active_text(make)
    provider_id, session_id = provider.id, session.id
    clock.advance(minutes=15)
    identifier = f"text_session_{session_id}"

    await end_session(make.db, identifier, EndType.MANUAL, clock)
    balance = (await make.wallet(provider_id)).balance

    clock.advance(minutes=30)
    with pytest.raises(SessionNotActiveError):
        await end_session(make.db, identifier, EndType.MANUAL, clock)

    assert (await make.wallet(provider_id)).balance == balance == 8.0
    assert len(await make.transactions(provider_id)) == 1


@pytest.mark.asyncio
async def test_waiting_text_session_ends_unbilled(make, clock):
    patient = await make.patient()
    provider = await make.provider()
    await make.subscription(patient.id)
    session = await make.text_session(patient.id, provider.id, status=TextSessionStatus.WAITING_FOR_PROVIDER)
    clock.advance(minutes=15)

    result = await end_session(make.db, f"text_session_{session.id}", EndType.MANUAL, clock)

    assert result.final_status == "ended"
    assert result.total_units_owed == 0
    assert result.billed is False


@pytest.mark.asyncio
async def test_unconnected_call_ends_as_missed(make, clock):
    patient = await make.patient()
    provider = await make.provider()
    await make.subscription(patient.id)
    call = await make.call_session(patient.id, provider.id, status=CallSessionStatus.CONNECTING)
    clock.advance(minutes=2)

    result = await end_session(make.db, f"call_session_{call.id}", EndType.MANUAL, clock)

    assert result.final_status == "missed"
    assert result.billed is False
    assert await make.wallet(provider.id) is None


@pytest.mark.asyncio
async def test_connected_call_end_records_duration(make, clock):
    patient = await make.patient()
    provider = await make.provider()
    subscription = await make.subscription(patient.id, voice=3)
    call = await make.call_session(patient.id, provider.id, call_type=CallType.VOICE)
    clock.advance(minutes=5)

    result = await end_session(make.db, f"call_session_{call.id}", EndType.MANUAL, clock)

    assert result.units_deducted == 1
    assert result.amount_credited == 5.0
    call = await make.reload(CallSession, call.id)
    assert call.status == CallSessionStatus.ENDED
    assert call.call_duration_seconds == 300
    subscription = await make.reload(Subscription, subscription.id)
    assert subscription.voice_calls_remaining == 2


@pytest.mark.asyncio
async def test_end_notifies_both_participants(make, clock):
    patient, provider, _, session = await _active_text(make)
    clock.advance(minutes=5)

    await end_session(make.db, f"text_session_{session.id}", EndType.MANUAL, clock)

    assert [n.title for n in await make.notifications(provider.id)] == ["Payment received"]
    assert [n.title for n in await make.notifications(patient.id)] == ["Session ended"]


@pytest.mark.asyncio
async def test_appointment_settlement_is_one_shot(make, clock):
    patient = await make.patient()
    provider = await make.provider()
    subscription = await make.subscription(patient.id, voice=2)
    appointment = await make.appointment(patient.id, provider.id, consultation_type=ConsultationType.VOICE)

    first = await settle_appointment(make.db, appointment.id, clock)
    second = await settle_appointment(make.db, appointment.id, clock)

    assert first.session_deducted_now is True
    assert first.earnings_awarded_now is True
    assert first.amount == 5.0
    assert second.already_settled is True
    assert second.session_deducted_now is False
    assert second.earnings_awarded_now is False

    appointment = await make.reload(Appointment, appointment.id)
    assert appointment.sessions_deducted == 1
    assert appointment.earnings_awarded == 5.0
    assert appointment.status == AppointmentStatus.COMPLETED
    subscription = await make.reload(Subscription, subscription.id)
    assert subscription.voice_calls_remaining == 1
    transactions = await make.transactions(provider.id)
    assert len(transactions) == 1
    assert transactions[0].idempotency_key == f"appointment:{appointment.id}:appointment_payment"


@pytest.mark.asyncio
async def test_appointment_settlement_finishes_half_applied_markers(make, clock):
    patient = await make.patient()
    provider = await make.provider()
    subscription = await make.subscription(patient.id, text=3)
    appointment = await make.appointment(patient.id, provider.id, sessions_deducted=1)

    result = await settle_appointment(make.db, appointment.id, clock)

    assert result.session_deducted_now is False
    assert result.earnings_awarded_now is True
    subscription = await make.reload(Subscription, subscription.id)
    assert subscription.text_sessions_remaining == 3


@pytest.mark.asyncio
async def test_appointment_linked_to_session(make, clock):
    patient = await make.patient()
    provider = await make.provider()
    await make.subscription(patient.id)
    appointment = await make.appointment(
        patient.id, provider.id, session_type=SessionType.TEXT, session_id=11
    )
    appointment_id = appointment.id

    with pytest.raises(InvalidSessionContextError):
        await settle_appointment(make.db, appointment_id, clock, strict=True)

    result = await settle_appointment(make.db, appointment_id, clock)
    assert result.warning == "appointment_has_session_id_use_session_billing"
    assert result.earnings_awarded_now is True


@pytest.mark.asyncio
async def test_appointment_settlement_without_subscription(make, clock):
    patient = await make.patient()
    provider = await make.provider()
    appointment = await make.appointment(patient.id, provider.id)
    appointment_id, provider_id = appointment.id, provider.id

    with pytest.raises(SubscriptionNotFoundError):
        await settle_appointment(make.db, appointment_id, clock)

    appointment = await make.reload(Appointment, appointment_id)
    assert appointment.sessions_deducted == 0
    assert appointment.earnings_awarded == 0
    assert await make.wallet(provider_id) is None


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [AppointmentStatus.CANCELLED, AppointmentStatus.PENDING])
async def test_unbillable_appointment_moves_no_money(make, clock, status):
    patient = await make.patient()
    provider = await make.provider()
    subscription = await make.subscription(patient.id, text=3)
    appointment = await make.appointment(patient.id, provider.id, status=status)
    appointment_id, subscription_id, provider_id = appointment.id, subscription.id, provider.id

    with pytest.raises(AppointmentNotBillableError) as exc:
        await settle_appointment(make.db, appointment_id, clock)

    assert exc.value.status_code == 409
    assert exc.value.error_code == "appointment_not_billable"
    assert await make.wallet(provider_id) is None
    subscription = await make.reload(Subscription, subscription_id)
    assert subscription.text_sessions_remaining == 3
    appointment = await make.reload(Appointment, appointment_id)
    assert appointment.sessions_deducted == 0
    assert appointment.earnings_awarded == 0
    assert appointment.status == status


@pytest.mark.asyncio
async def test_completed_appointment_can_still_be_settled(make, clock):
    patient = await make.patient()
    provider = await make.provider()
    await make.subscription(patient.id, text=3)
    appointment = await make.appointment(patient.id, provider.id, status=AppointmentStatus.COMPLETED)

    result = await settle_appointment(make.db, appointment.id, clock)

    assert result.session_deducted_now is True
    assert result.earnings_awarded_now is True


@pytest.mark.asyncio
async def test_exhausted_quota_does_not_block_appointment_payout(make, clock):
    patient = await make.patient()
    provider = await make.provider()
    subscription = await make.subscription(patient.id, text=0)
    appointment = await make.appointment(patient.id, provider.id)

    result = await settle_appointment(make.db, appointment.id, clock)

    assert result.session_deducted_now is False
    assert result.earnings_awarded_now is True
    assert result.amount == 4.0
    assert (await make.wallet(provider.id)).balance == 4.0
    appointment = await make.reload(Appointment, appointment.id)
    assert appointment.sessions_deducted == 0
    assert appointment.earnings_awarded == 4.0
    subscription = await make.reload(Subscription, subscription.id)
    assert subscription.text_sessions_remaining == 0
