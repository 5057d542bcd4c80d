"""
Billing Ledger (Domain Logic).

Primitives shared by metering and settlement:

- Provider wallets: append-only credits keyed by an idempotency key.
- Patient quota: guarded decrement that honours the unlimited sentinel and
  never goes below zero.
- Rates: per-unit provider payout by consultation type and provider country.

Nothing here commits. Callers hold the entity locks and own the transaction.
"""

import logging
from typing import Optional, Dict, Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from consult_engine.app.core.config import settings
from consult_engine.app.core.exceptions import InsufficientQuotaError
from consult_engine.app.models.consultation_enums import ConsultationType, TransactionCategory
from consult_engine.app.models.subscription import Subscription, UNLIMITED
from consult_engine.app.models.user import User
from consult_engine.app.models.wallet import ProviderWallet, WalletTransaction
from consult_engine.app.schemas.billing import Rate

logger = logging.getLogger(__name__)


def auto_deduction_key(session_type, session_id: int, unit: int) -> str:
    """Key for the wallet credit paying for metered unit number `unit`."""
    return f"{getattr(session_type, 'value', session_type)}:{session_id}:auto_deduction:{unit}"


def settlement_key(session_type, session_id: int) -> str:
    return f"{getattr(session_type, 'value', session_type)}:{session_id}:settlement"


def appointment_payment_key(appointment_id: int) -> str:
    return f"appointment:{appointment_id}:appointment_payment"


def is_unlimited(value: int) -> bool:
    return value == UNLIMITED


def quota_remaining(subscription: Subscription, consultation_type: ConsultationType) -> int:
    """Remaining units for the bucket; UNLIMITED (-1) when uncapped."""
    return getattr(subscription, Subscription.QUOTA_FIELDS[consultation_type])


def has_quota(subscription: Subscription, consultation_type: ConsultationType, units: int = 1) -> bool:
    remaining = quota_remaining(subscription, consultation_type)
    return is_unlimited(remaining) or remaining >= units


def deduct_quota(
    subscription: Subscription,
    consultation_type: ConsultationType,
    units: int,
    allow_partial: bool = False
) -> int:
    """
    Decrement a quota counter on an already locked subscription.

    Args:
        subscription: Subscription row, locked by the caller
        consultation_type: Quota bucket to draw from
        units: Units to take
        allow_partial: Cap the deduction at what remains instead of failing

    Returns:
        Units actually deducted (all of them on an unlimited plan)

    Raises:
        InsufficientQuotaError: quota is short and allow_partial is False;
            the counter is left untouched
    """
    if units <= 0:
        return 0

    field = Subscription.QUOTA_FIELDS[consultation_type]
    remaining = getattr(subscription, field)

    # Unlimited plans are never decremented
    if is_unlimited(remaining):
        return units

    remaining = max(remaining, 0)
    if remaining < units and not allow_partial:
        raise InsufficientQuotaError(consultation_type.value, requested=units, available=remaining)

    deducted = min(units, remaining)
    setattr(subscription, field, remaining - deducted)
    return deducted


class RateResolver:
    """
    Provider payout per billed unit.

    Providers in the local country are paid from the local rate table in the
    local currency; everyone else from the international table.
    """

    @staticmethod
    def resolve_for_country(country: Optional[str], consultation_type: ConsultationType) -> Rate:
        if country and country.strip().lower() == settings.local_country.lower():
            table, currency = settings.local_payment_rates, settings.local_currency
        else:
            table, currency = settings.international_payment_rates, settings.default_currency
        amount = table.get(consultation_type.value, table[ConsultationType.TEXT.value])
        return Rate(amount=amount, currency=currency)

    @staticmethod
    async def resolve(db: AsyncSession, provider_id: int, consultation_type: ConsultationType) -> Rate:
        """
        Rate for one unit of consultation_type paid to provider_id.

        Args:
            db: Database session
            provider_id: Provider being paid
            consultation_type: Unit being billed

        Returns:
            Rate with amount and currency; unknown providers get international rates
        """
        provider = await db.get(User, provider_id)
        return RateResolver.resolve_for_country(provider.country if provider else None, consultation_type)


class Ledger:

    @staticmethod
    async def get_or_create_wallet(db: AsyncSession, provider_id: int, currency: str) -> ProviderWallet:
        """
        Locked read of the provider's wallet, created empty on first use.

        Args:
            db: Database session
            provider_id: Wallet owner
            currency: Currency for a newly created wallet

        Returns:
            ProviderWallet row, flushed but not committed
        """
        result = await db.execute(
            select(ProviderWallet)
            .where(ProviderWallet.provider_id == provider_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        wallet = result.scalar_one_or_none()
        if wallet is None:
            wallet = ProviderWallet(provider_id=provider_id, balance=0.0, currency=currency)
            db.add(wallet)
            await db.flush()
        return wallet

    @staticmethod
    async def find_transaction(db: AsyncSession, idempotency_key: str) -> Optional[WalletTransaction]:
        result = await db.execute(
            select(WalletTransaction).where(WalletTransaction.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def credit(
        db: AsyncSession,
        provider_id: int,
        amount: float,
        category: TransactionCategory,
        reference_id: int,
        reference_type: str,
        idempotency_key: str,
        currency: str,
        metadata: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None
    ) -> WalletTransaction:
        """
        Append a credit to the provider's wallet and raise its balance.

        Idempotent: if a transaction already carries idempotency_key it is
        returned unchanged and the balance is not touched.

        Args:
            db: Database session (caller commits)
            provider_id: Provider being paid
            amount: Amount to credit
            category: Auto-deduction, settlement or appointment payment
            reference_id: Id of the session or appointment paid for
            reference_type: Kind of the referenced record
            idempotency_key: Unique key for this money movement
            currency: Currency of amount
            metadata: Extra facts stored on the transaction
            description: Human readable line for statements

        Returns:
            The new WalletTransaction, or the existing one on replay
        """
        existing = await Ledger.find_transaction(db, idempotency_key)
        if existing:
            logger.info(
                "Wallet credit replay ignored",
                extra={"idempotency_key": idempotency_key, "transaction_id": existing.id}
            )
            return existing

        wallet = await Ledger.get_or_create_wallet(db, provider_id, currency)

        transaction = WalletTransaction(
            wallet_id=wallet.id,
            amount=amount,
            currency=currency,
            category=category,
            reference_type=reference_type,
            reference_id=reference_id,
            idempotency_key=idempotency_key,
            description=description,
            metadata_payload=metadata,
        )
        db.add(transaction)
        wallet.balance = (wallet.balance or 0.0) + amount
        await db.flush()

        logger.info(
            "Wallet credited",
            extra={
                "provider_id": provider_id,
                "amount": amount,
                "currency": currency,
                "category": category.value,
                "reference_type": reference_type,
                "reference_id": reference_id,
            }
        )
        return transaction

    @staticmethod
    def payment_metadata(subscription: Optional[Subscription], **extra) -> Dict[str, Any]:
        """Wallet metadata with the gateway facts of the paying subscription."""
        payload: Dict[str, Any] = {}
        if subscription is not None:
            payload["subscription_id"] = subscription.id
            payload["payment_transaction_id"] = subscription.payment_transaction_id
            payload["payment_gateway"] = subscription.payment_gateway
        payload.update(extra)
        return payload
