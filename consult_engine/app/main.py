"""
FastAPI Application Entry Point.

This is the main application file for the Consultation Billing Engine.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from consult_engine.app.core.config import settings
from consult_engine.app.core.observability import configure_logging, ObservabilityMiddleware
from consult_engine.app.core.redis_client import ping_redis, close_redis
from consult_engine.app.api.v1.router import router as api_v1_router
from consult_engine.app.db.session import engine, init_models
from consult_engine.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)

# Import models to ensure they are registered with Base
from consult_engine.app.models.user import User  # noqa: F401
from consult_engine.app.models.audit_log import AuditLog  # noqa: F401
from consult_engine.app.models.subscription import Subscription  # noqa: F401
from consult_engine.app.models.wallet import ProviderWallet, WalletTransaction  # noqa: F401
from consult_engine.app.models.appointment import Appointment  # noqa: F401
from consult_engine.app.models.text_session import TextSession  # noqa: F401
from consult_engine.app.models.call_session import CallSession  # noqa: F401
from consult_engine.app.models.notification import Notification  # noqa: F401


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Configures package logging.
    2. Creates database tables on startup.
    3. Releases the counter store and connection pool on shutdown.
    """
    configure_logging()
    await init_models()
    yield
    await close_redis()
    await engine.dispose()


# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Session-gated billing and consultation lifecycle engine",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Redis only backs metrics, so an unreachable Redis degrades rather
    than fails the service.
    """
    redis_ok = await ping_redis()
    return {
        "status": "healthy" if redis_ok else "degraded",
        "app_name": settings.app_name,
        "version": settings.api_version,
        "redis": "ok" if redis_ok else "unavailable",
    }


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")


@app.get("/", tags=["Root"])
async def root():
    return {
        "message": "Welcome to the Consultation Billing Engine API",
        "docs": "/docs",
        "health": "/health",
    }
