"""
Text Session database model.

Canonical record of a text consultation. Rows are never deleted; they are
marked terminal.
"""

from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Enum, CheckConstraint
from sqlalchemy.sql import func
from consult_engine.app.db.session import Base
from consult_engine.app.models.consultation_enums import (
    TextSessionStatus, TEXT_TERMINAL_STATUSES, SessionType, ConsultationType
)


class TextSession(Base):
    """
    Text Session model.

    Metering runs from activated_at (provider accept). auto_deductions_processed
    counts units already metered and never decreases.
    """
    __tablename__ = "text_sessions"
    __table_args__ = (
        CheckConstraint("auto_deductions_processed >= 0", name="ck_text_sessions_auto_deductions_non_negative"),
        CheckConstraint("sessions_used >= 0", name="ck_text_sessions_sessions_used_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Participants
    patient_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    provider_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)

    status = Column(Enum(TextSessionStatus), default=TextSessionStatus.WAITING_FOR_PROVIDER, nullable=False, index=True)
    reason = Column(String(255), nullable=True)

    # Lifecycle timestamps (naive UTC)
    started_at = Column(DateTime, nullable=False)
    activated_at = Column(DateTime, nullable=True)
    last_activity_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)
    end_reason = Column(String(50), nullable=True)
    ended_by = Column(String(50), nullable=True)

    # Usage counters
    sessions_used = Column(Integer, default=0, nullable=False)
    auto_deductions_processed = Column(Integer, default=0, nullable=False)
    sessions_remaining_before_start = Column(Integer, default=0, nullable=False)

    # Originating appointment (auto-start flow)
    appointment_id = Column(Integer, ForeignKey('appointments.id'), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    session_type = SessionType.TEXT

    @property
    def consultation_type(self) -> ConsultationType:
        return ConsultationType.TEXT

    @property
    def is_terminal(self) -> bool:
        return self.status in TEXT_TERMINAL_STATUSES

    @property
    def billing_started_at(self):
        """Point metering counts from; None until the provider accepts."""
        return self.activated_at

    @property
    def reference(self) -> str:
        return f"{SessionType.TEXT.value}_{self.id}"

    def __repr__(self):
        return f"<TextSession(id={self.id}, status='{self.status.value}', units={self.auto_deductions_processed})>"
