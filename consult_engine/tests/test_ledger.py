"""
Billing ledger primitives: quota arithmetic, rates and idempotent credits.
"""

import inspect

import pytest
from pydantic import BaseModel

from consult_engine.app.core.exceptions import InsufficientQuotaError
from consult_engine.app.domain.billing.ledger import (
    Ledger, RateResolver, deduct_quota, has_quota, quota_remaining,
    auto_deduction_key, settlement_key, appointment_payment_key,
)
from consult_engine.app.models.consultation_enums import ConsultationType, SessionType, TransactionCategory
from consult_engine.app.models.subscription import Subscription, UNLIMITED
from consult_engine.app.schemas import billing as billing_schemas


def _subscription(text=0, voice=0, video=0):
    return Subscription(text_sessions_remaining=text, voice_calls_remaining=voice, video_calls_remaining=video)


def test_idempotency_keys():
    assert auto_deduction_key(SessionType.TEXT, 4, 3) == "text_session:4:auto_deduction:3"
    assert auto_deduction_key("call_session", 9, 1) == "call_session:9:auto_deduction:1"
    assert settlement_key(SessionType.CALL, 9) == "call_session:9:settlement"
    assert appointment_payment_key(12) == "appointment:12:appointment_payment"


def test_deduct_quota_strict():
    subscription = _subscription(text=3)

    assert deduct_quota(subscription, ConsultationType.TEXT, 2) == 2
    assert subscription.text_sessions_remaining == 1

    with pytest.raises(InsufficientQuotaError) as exc:
        deduct_quota(subscription, ConsultationType.TEXT, 2)
    assert exc.value.available == 1
    assert subscription.text_sessions_remaining == 1


def test_deduct_quota_partial_never_goes_negative():
    subscription = _subscription(voice=1)

    assert deduct_quota(subscription, ConsultationType.VOICE, 4, allow_partial=True) == 1
    assert subscription.voice_calls_remaining == 0
    assert deduct_quota(subscription, ConsultationType.VOICE, 4, allow_partial=True) == 0
    assert subscription.voice_calls_remaining == 0


def test_deduct_quota_unlimited_and_zero():
    subscription = _subscription(video=UNLIMITED)

    assert deduct_quota(subscription, ConsultationType.VIDEO, 50) == 50
    assert subscription.video_calls_remaining == UNLIMITED
    assert deduct_quota(subscription, ConsultationType.TEXT, 0) == 0
    assert has_quota(subscription, ConsultationType.VIDEO, 1000)
    assert not has_quota(subscription, ConsultationType.TEXT)
    assert quota_remaining(subscription, ConsultationType.VIDEO) == UNLIMITED


def test_rates_by_country():
    international = RateResolver.resolve_for_country("Kenya", ConsultationType.VOICE)
    assert (international.amount, international.currency) == (5.0, "USD")

    local = RateResolver.resolve_for_country(" malawi ", ConsultationType.VIDEO)
    assert (local.amount, local.currency) == (6000.0, "MWK")

    unknown = RateResolver.resolve_for_country(None, ConsultationType.TEXT)
    assert (unknown.amount, unknown.currency) == (4.0, "USD")


@pytest.mark.asyncio
async def test_credit_is_idempotent(make):
    provider = await make.provider()

    first = await Ledger.credit(
        make.db, provider.id, 4.0, TransactionCategory.AUTO_DEDUCTION,
        reference_id=1, reference_type="text_session",
        idempotency_key="text_session:1:auto_deduction:1", currency="USD",
    )
    await make.db.commit()
    replay = await Ledger.credit(
        make.db, provider.id, 4.0, TransactionCategory.AUTO_DEDUCTION,
        reference_id=1, reference_type="text_session",
        idempotency_key="text_session:1:auto_deduction:1", currency="USD",
    )
    await make.db.commit()

    assert replay.id == first.id
    assert len(await make.transactions(provider.id)) == 1
    assert (await make.wallet(provider.id)).balance == 4.0


@pytest.mark.asyncio
async def test_balance_is_sum_of_transactions(make):
    provider = await make.provider()

    for unit, amount in enumerate((4.0, 4.0, 5.0), start=1):
        await Ledger.credit(
            make.db, provider.id, amount, TransactionCategory.AUTO_DEDUCTION,
            reference_id=1, reference_type="text_session",
            idempotency_key=f"text_session:1:auto_deduction:{unit}", currency="USD",
        )
    await make.db.commit()

    transactions = await make.transactions(provider.id)
    wallet = await make.wallet(provider.id)
    assert wallet.balance == sum(t.amount for t in transactions) == 13.0
    assert wallet.currency == "USD"


@pytest.mark.asyncio
async def test_payment_metadata_carries_gateway_facts(make):
    patient = await make.patient()
    subscription = await make.subscription(patient.id)

    payload = Ledger.payment_metadata(subscription, units=2)

    assert payload == {
        "subscription_id": subscription.id,
        "payment_transaction_id": subscription.payment_transaction_id,
        "payment_gateway": "paychangu",
        "units": 2,
    }
    assert Ledger.payment_metadata(None, units=1) == {"units": 1}


def test_billing_schemas_use_v2_configuration():
    models = [
        obj for obj in vars(billing_schemas).values()
        if isinstance(obj, type) and issubclass(obj, BaseModel) and obj.__module__ == billing_schemas.__name__
    ]

    assert models
    for model in models:
        assert "class Config" not in inspect.getsource(model)
