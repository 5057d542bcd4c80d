"""
Custom exceptions and error handlers for consistent error responses.

Error codes follow the billing taxonomy: validation, state, resource.
Idempotency guards are not errors; storage failures propagate.
"""

import logging

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class ResourceNotFoundError(AppException):
    """Raised when requested resource is not found."""

    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        if resource_id is not None:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(
            message=message,
            error_code="not_found",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "id": resource_id}
        )


class InvalidSessionContextError(AppException):
    """Raised when an identifier does not resolve to a usable session context."""

    def __init__(self, reason: str, identifier: Any = None, operation: Optional[str] = None):
        status_code = status.HTTP_404_NOT_FOUND if reason.endswith("_not_found") else status.HTTP_400_BAD_REQUEST
        super().__init__(
            message=f"Identifier {identifier!r} is not a valid session context ({reason})",
            error_code=reason,
            status_code=status_code,
            details={"identifier": str(identifier), "operation": operation}
        )


class SessionNotActiveError(AppException):
    """Raised when an operation targets a session that is already terminal."""

    def __init__(self, session_type: str, session_id: int, current_status: Any):
        current = getattr(current_status, "value", current_status)
        super().__init__(
            message=f"{session_type} {session_id} is not active (status: {current})",
            error_code="session_not_active",
            status_code=status.HTTP_409_CONFLICT,
            details={"session_type": session_type, "session_id": session_id, "current_status": current}
        )


class InvalidTransitionError(AppException):
    """Raised for a lifecycle edge that is not allowed from a live state."""

    def __init__(self, session_type: str, session_id: int, current_status: Any, target_status: Any):
        current = getattr(current_status, "value", current_status)
        target = getattr(target_status, "value", target_status)
        super().__init__(
            message=f"Cannot move {session_type} {session_id} from {current} to {target}",
            error_code="invalid_transition",
            status_code=status.HTTP_409_CONFLICT,
            details={"session_type": session_type, "session_id": session_id, "current_status": current, "target_status": target}
        )


class AppointmentNotBillableError(AppException):
    """Raised when an appointment's status rules out billing (never confirmed, or cancelled)."""

    def __init__(self, appointment_id: int, current_status: Any):
        current = getattr(current_status, "value", current_status)
        super().__init__(
            message=f"Appointment {appointment_id} cannot be billed (status: {current})",
            error_code="appointment_not_billable",
            status_code=status.HTTP_409_CONFLICT,
            details={"appointment_id": appointment_id, "current_status": current}
        )


class DuplicateActiveSessionError(AppException):
    """Raised when a live session already exists between the same patient and provider."""

    def __init__(self, session_type: str, existing_session_id: int):
        super().__init__(
            message=f"An active {session_type} already exists with this provider",
            error_code="duplicate_active_session",
            status_code=status.HTTP_409_CONFLICT,
            details={"session_type": session_type, "existing_session_id": existing_session_id}
        )


class InsufficientQuotaError(AppException):
    """Raised when a subscription cannot cover the requested units."""

    def __init__(self, consultation_type: str, requested: int, available: int):
        self.requested = requested
        self.available = available
        super().__init__(
            message=f"Insufficient {consultation_type} quota: requested {requested}, available {available}",
            error_code="insufficient_quota",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details={"consultation_type": consultation_type, "requested": requested, "available": available}
        )


class SubscriptionNotFoundError(AppException):
    """Raised when a patient has no active subscription to bill against."""

    def __init__(self, patient_id: int):
        super().__init__(
            message=f"No active subscription found for patient {patient_id}",
            error_code="subscription_not_found",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details={"patient_id": patient_id}
        )


# Global Exception Handlers

async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handler for custom application exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for FastAPI HTTPException with standardized format."""
    error_code_map = {
        400: "bad_request",
        404: "not_found",
        409: "conflict",
        500: "internal_server_error"
    }

    error_code = error_code_map.get(exc.status_code, "unknown")

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": error_code,
            "message": exc.detail,
            "details": {}
        }
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handler for Pydantic validation errors."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error_code": "validation_error",
            "message": "Validation error",
            "details": {
                "errors": exc.errors()
            }
        }
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.error(
        "Unhandled exception",
        exc_info=exc,
        extra={"path": request.url.path, "exception_type": type(exc).__name__}
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "internal_server_error",
            "message": "An internal server error occurred",
            "details": {}
        }
    )
