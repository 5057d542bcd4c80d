"""
Appointment-to-session conversion metrics.

Counters live in an injected counter store (Redis in production):

- metrics:appointment_sessions_created_total
- metrics:appointment_session_conversion_failed_total
- metrics:appointment_session_conversion_failed_total:reason:<reason>
- per-minute buckets ...:minute:YYYY-mm-dd-HH-MM with a short TTL, summed
  over a rolling window for the error rate

Recording is fire-and-forget: a store failure is logged and swallowed.
Alert evaluation is a pure function of the counters.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Tuple

from redis.exceptions import RedisError
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from consult_engine.app.core.clock import Clock
from consult_engine.app.core.config import settings
from consult_engine.app.models.appointment import Appointment
from consult_engine.app.models.consultation_enums import AppointmentStatus
from consult_engine.app.schemas.ops import AlertStatus, MetricsSnapshot

logger = logging.getLogger(__name__)

CREATED_TOTAL_KEY = "metrics:appointment_sessions_created_total"
FAILED_TOTAL_KEY = "metrics:appointment_session_conversion_failed_total"
CREATED_MINUTE_PREFIX = "metrics:appointment_sessions_created:minute:"
FAILED_MINUTE_PREFIX = "metrics:appointment_session_conversion_failed:minute:"

# Failure categories recorded by appointment auto-start
CONVERSION_FAILURE_REASONS = (
    "missing_patient_or_provider",
    "conflict_existing_session",
    "no_active_subscription",
    "validation_failed",
    "db_update_failed",
    "unknown_error",
)

OK = "ok"
WARNING = "warning"
CRITICAL = "critical"


def failed_reason_key(reason: str) -> str:
    return f"{FAILED_TOTAL_KEY}:reason:{reason}"


def minute_bucket(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%d-%H-%M")


def _level(value: float, warning: float, critical: float) -> str:
    if value >= critical:
        return CRITICAL
    if value >= warning:
        return WARNING
    return OK


def evaluate_backlog(count: int, warning: int, critical: int) -> AlertStatus:
    """Alert level for the number of due, unconverted appointments."""
    level = _level(count, warning, critical)
    return AlertStatus(
        alert="appointment_backlog",
        level=level,
        value=count,
        warning_threshold=warning,
        critical_threshold=critical,
        message=f"{count} confirmed appointments are due without a session",
    )


def evaluate_error_rate(created: int, failed: int, warning: float, critical: float) -> AlertStatus:
    """
    Alert level for failed / (created + failed) over a window.
    No attempts means no errors.
    """
    attempted = created + failed
    rate = failed / attempted if attempted else 0.0
    level = _level(rate, warning, critical) if attempted else OK
    return AlertStatus(
        alert="appointment_conversion_error_rate",
        level=level,
        value=rate,
        warning_threshold=warning,
        critical_threshold=critical,
        message=f"{failed} of {attempted} conversions failed",
    )


class AppointmentSessionMetrics:

    def __init__(self, store, clock: Clock):
        self.store = store
        self.clock = clock

    @property
    def bucket_ttl_seconds(self) -> int:
        # Buckets must outlive the error-rate window
        return settings.error_rate_window_minutes * 60 + settings.metrics_bucket_ttl_seconds

    async def due_appointments_count(self, db: AsyncSession) -> int:
        """Confirmed appointments whose time has come but which have no session yet."""
        result = await db.execute(
            select(func.count(Appointment.id)).where(
                Appointment.status == AppointmentStatus.CONFIRMED,
                Appointment.session_id.is_(None),
                Appointment.scheduled_at_utc <= self.clock.now(),
            )
        )
        return result.scalar() or 0

    async def _bump_bucket(self, prefix: str) -> None:
        key = prefix + minute_bucket(self.clock.now())
        await self.store.incr(key)
        await self.store.expire(key, self.bucket_ttl_seconds)

    async def record_session_created(self, appointment_id: int, session_id: int, modality: str) -> None:
        try:
            await self.store.incr(CREATED_TOTAL_KEY)
            await self._bump_bucket(CREATED_MINUTE_PREFIX)
        except (RedisError, OSError) as exc:
            logger.warning("Metric recording failed", extra={"metric": CREATED_TOTAL_KEY, "error": str(exc)})
            return

        logger.info(
            "appointment_session_created",
            extra={
                "metric": "appointment_sessions_created_total",
                "appointment_id": appointment_id,
                "session_id": session_id,
                "modality": modality,
            }
        )

    async def record_conversion_failed(self, appointment_id: int, reason: str, error_message: Optional[str] = None) -> None:
        try:
            await self.store.incr(failed_reason_key(reason))
            await self.store.incr(FAILED_TOTAL_KEY)
            await self._bump_bucket(FAILED_MINUTE_PREFIX)
        except (RedisError, OSError) as exc:
            logger.warning("Metric recording failed", extra={"metric": FAILED_TOTAL_KEY, "error": str(exc)})
            return

        logger.warning(
            "appointment_session_conversion_failed",
            extra={
                "metric": "appointment_session_conversion_failed_total",
                "appointment_id": appointment_id,
                "reason": reason,
                "error_message": error_message,
            }
        )

    async def _read_int(self, key: str) -> int:
        value = await self.store.get(key)
        return int(value) if value is not None else 0

    async def window_counts(self, window_minutes: Optional[int] = None) -> Tuple[int, int]:
        """(created, failed) summed over the last window_minutes minute buckets."""
        window = window_minutes or settings.error_rate_window_minutes
        now = self.clock.now()
        created = failed = 0
        for offset in range(window):
            bucket = minute_bucket(now - timedelta(minutes=offset))
            created += await self._read_int(CREATED_MINUTE_PREFIX + bucket)
            failed += await self._read_int(FAILED_MINUTE_PREFIX + bucket)
        return created, failed

    async def snapshot(self, db: AsyncSession) -> MetricsSnapshot:
        created, failed = await self.window_counts()
        by_reason = {}
        for reason in CONVERSION_FAILURE_REASONS:
            count = await self._read_int(failed_reason_key(reason))
            if count:
                by_reason[reason] = count

        return MetricsSnapshot(
            due_appointments=await self.due_appointments_count(db),
            sessions_created_total=await self._read_int(CREATED_TOTAL_KEY),
            conversion_failed_total=await self._read_int(FAILED_TOTAL_KEY),
            failures_by_reason=by_reason,
            created_in_window=created,
            failed_in_window=failed,
            error_rate=evaluate_error_rate(
                created, failed,
                settings.error_rate_warning_threshold, settings.error_rate_critical_threshold
            ).value,
            generated_at=self.clock.now(),
        )

    async def check_backlog_alert(
        self,
        db: AsyncSession,
        warning: Optional[int] = None,
        critical: Optional[int] = None
    ) -> AlertStatus:
        return evaluate_backlog(
            await self.due_appointments_count(db),
            warning if warning is not None else settings.backlog_warning_threshold,
            critical if critical is not None else settings.backlog_critical_threshold,
        )

    async def check_error_rate_alert(
        self,
        warning: Optional[float] = None,
        critical: Optional[float] = None,
        window_minutes: Optional[int] = None
    ) -> AlertStatus:
        created, failed = await self.window_counts(window_minutes)
        return evaluate_error_rate(
            created, failed,
            warning if warning is not None else settings.error_rate_warning_threshold,
            critical if critical is not None else settings.error_rate_critical_threshold,
        )
