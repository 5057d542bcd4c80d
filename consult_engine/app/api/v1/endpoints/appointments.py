"""
Appointment API Endpoints.

Legacy per-appointment billing. Appointments linked to a live session are
still settled here during the compatibility phase, with a warning.
"""

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession

from consult_engine.app.db.session import get_db
from consult_engine.app.core.clock import Clock, get_clock
from consult_engine.app.domain.billing.settlement import settle_appointment
from consult_engine.app.schemas.billing import AppointmentSettlementResult

router = APIRouter(prefix="/appointments", tags=["Appointments"])


@router.post("/{appointment_id}/settle", response_model=AppointmentSettlementResult)
async def settle(
    appointment_id: int = Path(..., description="Appointment ID"),
    strict: bool = Query(False, description="Deny billing for appointments linked to a session"),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock)
):
    """
    Deduct one unit from the patient and pay the provider once.

    Safe to repeat: already-applied markers are reported as success.
    """
    return await settle_appointment(db, appointment_id, clock, strict=strict)
