"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from consult_engine.app.api.v1.endpoints import sessions, appointments, ops

router = APIRouter()

# Session guard, lifecycle, metering and settlement
router.include_router(sessions.router)

# Legacy appointment billing
router.include_router(appointments.router)

# Batch triggers and metrics
router.include_router(ops.router)
