"""
Billing Schemas.

Results of metering ticks, session-end settlement and appointment
settlement.
"""

from pydantic import BaseModel
from typing import Optional
from consult_engine.app.models.consultation_enums import (
    SessionType, EndType, MeteringOutcome
)


class Rate(BaseModel):
    amount: float
    currency: str


class SettlementResult(BaseModel):
    """Outcome of ending a session."""
    session_type: SessionType
    session_id: int
    end_type: EndType
    final_status: str
    elapsed_seconds: int
    total_units_owed: int
    already_metered: int
    remaining_to_settle: int
    units_deducted: int
    shortfall: int = 0
    amount_credited: float = 0.0
    currency: Optional[str] = None
    billed: bool


class MeteringResult(BaseModel):
    """Outcome of a single metering tick."""
    session_type: SessionType
    session_id: int
    outcome: MeteringOutcome
    eligible_units: int
    units_deducted: int = 0
    auto_deductions_processed: int
    quota_remaining: Optional[int] = None
    amount_credited: float = 0.0
    currency: Optional[str] = None
    session_ended: bool = False
    settlement: Optional[SettlementResult] = None


class AppointmentSettlementResult(BaseModel):
    appointment_id: int
    session_deducted_now: bool
    earnings_awarded_now: bool
    already_settled: bool
    amount: float = 0.0
    currency: Optional[str] = None
    warning: Optional[str] = None
