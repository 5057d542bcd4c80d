"""
Session Schemas.

Guard decisions, creation requests and session views.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, Union
from consult_engine.app.models.consultation_enums import SessionType, CallType, EndType


class SessionContext(BaseModel):
    """Result of classifying an opaque identifier."""
    valid: bool
    session_type: Optional[SessionType] = None
    session_id: Optional[int] = None
    reason: Optional[str] = None
    current_status: Optional[str] = None


class GuardDecision(BaseModel):
    """Allow/deny answer from the chat or billing gate."""
    allowed: bool
    operation: str
    reason: Optional[str] = None
    context: SessionContext


class AppointmentGuardrail(BaseModel):
    should_proceed: bool
    warning: Optional[str] = None
    session_type: Optional[SessionType] = None
    session_id: Optional[int] = None


class GuardRequest(BaseModel):
    identifier: Union[str, int]
    operation: str = Field(..., min_length=1, max_length=50)


class TextSessionCreate(BaseModel):
    patient_id: int
    provider_id: int
    reason: Optional[str] = Field(None, max_length=255)
    appointment_id: Optional[int] = None


class CallSessionCreate(BaseModel):
    patient_id: int
    provider_id: int
    call_type: CallType
    reason: Optional[str] = Field(None, max_length=255)
    appointment_id: Optional[int] = None


class EndSessionRequest(BaseModel):
    end_type: EndType = EndType.MANUAL
    ended_by: Optional[str] = Field(None, max_length=50)


class TickRequest(BaseModel):
    end_on_insufficient_quota: bool = True


class SessionResponse(BaseModel):
    """View of a text or call session."""
    id: int
    session_type: SessionType
    reference: str
    status: str
    patient_id: int
    provider_id: int
    call_type: Optional[CallType] = None
    started_at: datetime
    billing_started_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    end_reason: Optional[str] = None
    sessions_used: int
    auto_deductions_processed: int
    sessions_remaining_before_start: int
    appointment_id: Optional[int] = None

    @classmethod
    def from_session(cls, session) -> "SessionResponse":
        return cls(
            id=session.id,
            session_type=session.session_type,
            reference=session.reference,
            status=session.status.value,
            patient_id=session.patient_id,
            provider_id=session.provider_id,
            call_type=getattr(session, "call_type", None),
            started_at=session.started_at,
            billing_started_at=session.billing_started_at,
            last_activity_at=session.last_activity_at,
            ended_at=session.ended_at,
            end_reason=session.end_reason,
            sessions_used=session.sessions_used,
            auto_deductions_processed=session.auto_deductions_processed,
            sessions_remaining_before_start=session.sessions_remaining_before_start,
            appointment_id=session.appointment_id,
        )
