"""
Heartbeat entry point for the ticker collaborator.

Runs a metering tick and, when the patient has run out of quota, ends the
session through settlement instead of leaving it running unbilled.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from consult_engine.app.core.clock import Clock
from consult_engine.app.core.exceptions import SessionNotActiveError
from consult_engine.app.domain.billing.metering import process_tick
from consult_engine.app.domain.billing.settlement import end_session
from consult_engine.app.domain.sessions.context_guard import Identifier
from consult_engine.app.models.consultation_enums import EndType, MeteringOutcome
from consult_engine.app.schemas.billing import MeteringResult

logger = logging.getLogger(__name__)


class HeartbeatService:

    @staticmethod
    async def tick(
        db: AsyncSession,
        identifier: Identifier,
        clock: Clock,
        end_on_insufficient_quota: bool = True,
        unit_minutes: Optional[int] = None
    ) -> MeteringResult:
        result = await process_tick(db, identifier, clock, unit_minutes=unit_minutes)
        if result.outcome != MeteringOutcome.INSUFFICIENT_QUOTA or not end_on_insufficient_quota:
            return result

        logger.info(
            "Ending session, quota exhausted",
            extra={"session_type": result.session_type.value, "session_id": result.session_id}
        )
        try:
            settlement = await end_session(
                db, identifier, EndType.INSUFFICIENT_QUOTA, clock,
                ended_by="system", unit_minutes=unit_minutes
            )
        except SessionNotActiveError:
            # Ended concurrently by another trigger
            return result

        return result.model_copy(update={"session_ended": True, "settlement": settlement})
