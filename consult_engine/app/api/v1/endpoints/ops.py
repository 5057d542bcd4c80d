"""
Operations API Endpoints.

Batch triggers for the scheduler and read-only metrics for dashboards and
alert evaluators.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from consult_engine.app.db.session import get_db
from consult_engine.app.core.clock import Clock, get_clock
from consult_engine.app.core.redis_client import get_redis
from consult_engine.app.domain.sessions.timeouts import process_session_timeouts
from consult_engine.app.domain.subscriptions.expiration import process_expirations
from consult_engine.app.schemas.ops import (
    ExpirationStats, TimeoutSweepStats, AutoStartRunSummary, MetricsSnapshot, AlertStatus
)
from consult_engine.app.services.appointment_auto_start import run_auto_start
from consult_engine.app.services.metrics import AppointmentSessionMetrics

router = APIRouter(prefix="/ops", tags=["Ops"])


async def get_metrics(redis=Depends(get_redis), clock: Clock = Depends(get_clock)) -> AppointmentSessionMetrics:
    return AppointmentSessionMetrics(redis, clock)


@router.post("/subscriptions/expire", response_model=ExpirationStats)
async def expire_subscriptions(db: AsyncSession = Depends(get_db), clock: Clock = Depends(get_clock)):
    """Run the expiration / rollover sweep (hourly)."""
    return await process_expirations(db, clock)


@router.post("/sessions/timeouts", response_model=TimeoutSweepStats)
async def sweep_session_timeouts(db: AsyncSession = Depends(get_db), clock: Clock = Depends(get_clock)):
    return await process_session_timeouts(db, clock)


@router.post("/appointments/auto-start", response_model=AutoStartRunSummary)
async def auto_start_appointments(
    limit: Optional[int] = Query(None, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    metrics: AppointmentSessionMetrics = Depends(get_metrics)
):
    return await run_auto_start(db, metrics, clock, limit=limit)


@router.get("/metrics", response_model=MetricsSnapshot)
async def metrics_snapshot(
    db: AsyncSession = Depends(get_db),
    metrics: AppointmentSessionMetrics = Depends(get_metrics)
):
    return await metrics.snapshot(db)


@router.get("/alerts", response_model=List[AlertStatus])
async def alerts(
    db: AsyncSession = Depends(get_db),
    metrics: AppointmentSessionMetrics = Depends(get_metrics)
):
    """Backlog and conversion error-rate alerts at the configured thresholds."""
    return [
        await metrics.check_backlog_alert(db),
        await metrics.check_error_rate_alert(),
    ]
