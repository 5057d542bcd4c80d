"""
Call Session database model.

Voice and video consultations. Billing only ever counts from connected_at;
a call that never connected is never billed.
"""

from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Enum, CheckConstraint
from sqlalchemy.sql import func
from consult_engine.app.db.session import Base
from consult_engine.app.models.consultation_enums import (
    CallSessionStatus, CALL_TERMINAL_STATUSES, CallType, SessionType, ConsultationType
)


class CallSession(Base):
    """Call Session model."""
    __tablename__ = "call_sessions"
    __table_args__ = (
        CheckConstraint("auto_deductions_processed >= 0", name="ck_call_sessions_auto_deductions_non_negative"),
        CheckConstraint("sessions_used >= 0", name="ck_call_sessions_sessions_used_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    patient_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    provider_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    call_type = Column(Enum(CallType), nullable=False)

    status = Column(Enum(CallSessionStatus), default=CallSessionStatus.CONNECTING, nullable=False, index=True)
    reason = Column(String(255), nullable=True)

    started_at = Column(DateTime, nullable=False)
    answered_at = Column(DateTime, nullable=True)
    connected_at = Column(DateTime, nullable=True)
    last_activity_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)
    end_reason = Column(String(50), nullable=True)
    ended_by = Column(String(50), nullable=True)
    call_duration_seconds = Column(Integer, default=0, nullable=False)

    sessions_used = Column(Integer, default=0, nullable=False)
    auto_deductions_processed = Column(Integer, default=0, nullable=False)
    sessions_remaining_before_start = Column(Integer, default=0, nullable=False)

    appointment_id = Column(Integer, ForeignKey('appointments.id'), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    session_type = SessionType.CALL

    @property
    def consultation_type(self) -> ConsultationType:
        return ConsultationType.for_call(self.call_type)

    @property
    def is_terminal(self) -> bool:
        return self.status in CALL_TERMINAL_STATUSES

    @property
    def billing_started_at(self):
        return self.connected_at

    @property
    def reference(self) -> str:
        return f"{SessionType.CALL.value}_{self.id}"

    def __repr__(self):
        return f"<CallSession(id={self.id}, type='{self.call_type.value}', status='{self.status.value}')>"
