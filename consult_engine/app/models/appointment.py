"""
Appointment database model.

A scheduled consultation. Once a live session is created for it the
appointment is linked by (session_type, session_id) and billed through that
session; earnings_awarded and sessions_deducted are one-shot markers for the
legacy per-appointment billing path.
"""

from sqlalchemy import Column, Integer, Float, ForeignKey, DateTime, Enum
from sqlalchemy.sql import func
from consult_engine.app.db.session import Base
from consult_engine.app.models.consultation_enums import AppointmentStatus, ConsultationType, SessionType


class Appointment(Base):
    """Appointment model."""
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    patient_id = Column(Integer, ForeignKey('users.id'), nullable=True, index=True)
    provider_id = Column(Integer, ForeignKey('users.id'), nullable=True, index=True)
    consultation_type = Column(Enum(ConsultationType), nullable=False)

    status = Column(Enum(AppointmentStatus), default=AppointmentStatus.PENDING, nullable=False, index=True)
    scheduled_at_utc = Column(DateTime, nullable=False, index=True)

    # Linked live session (set by auto-start)
    session_type = Column(Enum(SessionType), nullable=True)
    session_id = Column(Integer, nullable=True, index=True)

    # One-shot billing markers
    earnings_awarded = Column(Float, default=0.0, nullable=False)
    sessions_deducted = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<Appointment(id={self.id}, status='{self.status.value}', session={self.session_type}:{self.session_id})>"
