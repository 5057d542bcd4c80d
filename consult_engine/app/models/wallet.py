"""
Provider wallet and wallet transaction models.

Transactions are append-only. Every credit carries an idempotency key so a
replayed tick or settlement can never pay a provider twice.
"""

from sqlalchemy import Column, Integer, Float, String, ForeignKey, DateTime, Enum, JSON
from sqlalchemy.sql import func
from consult_engine.app.db.session import Base
from consult_engine.app.models.consultation_enums import TransactionCategory


class ProviderWallet(Base):
    """One wallet per provider; balance equals the sum of its transactions."""
    __tablename__ = "provider_wallets"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    provider_id = Column(Integer, ForeignKey('users.id'), nullable=False, unique=True, index=True)
    balance = Column(Float, default=0.0, nullable=False)
    currency = Column(String(3), nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<ProviderWallet(id={self.id}, provider={self.provider_id}, balance={self.balance} {self.currency})>"


class WalletTransaction(Base):
    """
    Wallet Transaction model.

    Immutable record of a provider payout. NO updates or deletions allowed.
    """
    __tablename__ = "wallet_transactions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    wallet_id = Column(Integer, ForeignKey('provider_wallets.id'), nullable=False, index=True)

    amount = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False)
    category = Column(Enum(TransactionCategory), nullable=False, index=True)

    # What was paid for
    reference_type = Column(String(50), nullable=False)
    reference_id = Column(Integer, nullable=False, index=True)
    idempotency_key = Column(String(200), nullable=False, unique=True)

    description = Column(String(255), nullable=True)
    metadata_payload = Column(JSON, nullable=True)

    # Timestamps (Immutable - no updated_at)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<WalletTransaction(id={self.id}, category='{self.category.value}', amount={self.amount})>"
