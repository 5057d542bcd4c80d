"""
Operational Schemas.

Batch sweep statistics, metrics snapshots and alert evaluations.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, Dict, List


class ExpirationStats(BaseModel):
    processed: int = 0
    expired: int = 0
    rolled_over: int = 0
    skipped: int = 0
    errors: int = 0


class TimeoutSweepStats(BaseModel):
    abandoned: int = 0
    expired: int = 0
    missed: int = 0
    errors: int = 0


class AlertStatus(BaseModel):
    """Evaluation of one alert rule; level is ok, warning or critical."""
    alert: str
    level: str
    value: float
    warning_threshold: float
    critical_threshold: float
    message: str


class MetricsSnapshot(BaseModel):
    due_appointments: int
    sessions_created_total: int
    conversion_failed_total: int
    failures_by_reason: Dict[str, int] = Field(default_factory=dict)
    created_in_window: int
    failed_in_window: int
    error_rate: float
    generated_at: datetime


class AutoStartFailure(BaseModel):
    appointment_id: int
    reason: str
    error_message: Optional[str] = None


class AutoStartRunSummary(BaseModel):
    considered: int = 0
    created: int = 0
    skipped: int = 0
    failed: int = 0
    failures: List[AutoStartFailure] = Field(default_factory=list)
