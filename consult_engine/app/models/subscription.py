"""
Subscription database model.

Per-patient quota for text, voice and video consultations. A counter of -1
means unlimited; no counter ever goes below zero otherwise.
"""

from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, DateTime, Enum, JSON, CheckConstraint
from sqlalchemy.sql import func
from consult_engine.app.db.session import Base
from consult_engine.app.models.consultation_enums import SubscriptionStatus, ConsultationType

UNLIMITED = -1


class Subscription(Base):
    """
    Subscription model.

    payment_metadata carries rollover bookkeeping (rollover_applied,
    rollover_applied_at, original_end_date, new_end_date).
    """
    __tablename__ = "subscriptions"
    __table_args__ = (
        CheckConstraint("text_sessions_remaining >= -1", name="ck_subscriptions_text_remaining"),
        CheckConstraint("voice_calls_remaining >= -1", name="ck_subscriptions_voice_remaining"),
        CheckConstraint("video_calls_remaining >= -1", name="ck_subscriptions_video_remaining"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)

    plan_name = Column(String(100), nullable=False)
    plan_duration_days = Column(Integer, nullable=True)

    # Quotas (UNLIMITED = -1)
    text_sessions_remaining = Column(Integer, default=0, nullable=False)
    voice_calls_remaining = Column(Integer, default=0, nullable=False)
    video_calls_remaining = Column(Integer, default=0, nullable=False)

    is_active = Column(Boolean, default=True, nullable=False, index=True)
    status = Column(Enum(SubscriptionStatus), default=SubscriptionStatus.ACTIVE, nullable=False, index=True)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=True, index=True)

    # Payment provenance, copied onto provider payouts
    payment_transaction_id = Column(String(100), nullable=True)
    payment_gateway = Column(String(50), nullable=True)
    payment_metadata = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    QUOTA_FIELDS = {
        ConsultationType.TEXT: "text_sessions_remaining",
        ConsultationType.VOICE: "voice_calls_remaining",
        ConsultationType.VIDEO: "video_calls_remaining",
    }

    def __repr__(self):
        return (
            f"<Subscription(id={self.id}, user={self.user_id}, status='{self.status.value}', "
            f"text={self.text_sessions_remaining}, voice={self.voice_calls_remaining}, video={self.video_calls_remaining})>"
        )
