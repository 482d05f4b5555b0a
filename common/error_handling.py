"""
Error taxonomy for the ledger engine and the standardized HTTP responses
rendered from it.
"""
from typing import Optional, Dict, Any
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel
import logging
import traceback
import time

logger = logging.getLogger(__name__)

class ErrorDetail(BaseModel):
    """Detailed error information"""
    code: str
    message: str
    field: Optional[str] = None
    context: Optional[Dict[str, Any]] = None

class StandardErrorResponse(BaseModel):
    """Standard error response format"""
    success: bool = False
    error: ErrorDetail
    timestamp: float
    request_id: Optional[str] = None

class ErrorCodes:
    """Standard error codes"""
    # Authentication & Authorization
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    INVALID_TOKEN = "INVALID_TOKEN"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"

    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_METHOD = "INVALID_METHOD"
    AMOUNT_TOO_SMALL = "AMOUNT_TOO_SMALL"
    LINK_UNAVAILABLE = "LINK_UNAVAILABLE"

    # Business Logic
    NOT_FOUND = "NOT_FOUND"
    STATE_CONFLICT = "STATE_CONFLICT"
    TOO_MANY_PENDING = "TOO_MANY_PENDING"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    DUPLICATE_ACTION = "DUPLICATE_ACTION"

    # System Errors
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    DATABASE_ERROR = "DATABASE_ERROR"
    CIRCUIT_BREAKER_OPEN = "CIRCUIT_BREAKER_OPEN"

    # External Service Errors
    PROVIDER_ERROR = "PROVIDER_ERROR"
    WEBHOOK_DELIVERY_FAILED = "WEBHOOK_DELIVERY_FAILED"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"

class BusinessLogicError(Exception):
    """Caller-facing error raised before (or instead of) any state change"""
    code = ErrorCodes.VALIDATION_ERROR

    def __init__(self, message: str, field: str = None, context: Dict[str, Any] = None, code: str = None):
        self.code = code or self.code
        self.message = message
        self.field = field
        self.context = context or {}
        super().__init__(message)

class ServiceError(Exception):
    """Infrastructure error from a collaborator outside the ledger"""
    code = ErrorCodes.SERVICE_UNAVAILABLE

    def __init__(self, message: str, original_error: Exception = None, code: str = None):
        self.code = code or self.code
        self.message = message
        self.original_error = original_error
        super().__init__(message)

class ValidationError(BusinessLogicError):
    code = ErrorCodes.VALIDATION_ERROR

class InvalidMethodError(ValidationError):
    code = ErrorCodes.INVALID_METHOD

class AmountTooSmallError(ValidationError):
    code = ErrorCodes.AMOUNT_TOO_SMALL

class PaymentLinkUnavailableError(ValidationError):
    code = ErrorCodes.LINK_UNAVAILABLE

class NotFoundError(BusinessLogicError):
    code = ErrorCodes.NOT_FOUND

class StateConflictError(BusinessLogicError):
    code = ErrorCodes.STATE_CONFLICT

class TooManyPendingError(StateConflictError):
    code = ErrorCodes.TOO_MANY_PENDING

class DuplicateActionError(StateConflictError):
    """Reconciliation of a transaction that already reached a terminal state.
    Swallowed by the engine; callers never see it."""
    code = ErrorCodes.DUPLICATE_ACTION

class InsufficientBalanceError(BusinessLogicError):
    code = ErrorCodes.INSUFFICIENT_BALANCE

class InvalidSignatureError(BusinessLogicError):
    code = ErrorCodes.INVALID_SIGNATURE

class ProviderError(ServiceError):
    code = ErrorCodes.PROVIDER_ERROR

class WebhookDeliveryError(ServiceError):
    code = ErrorCodes.WEBHOOK_DELIVERY_FAILED

    def __init__(self, message: str, status_code: Optional[int] = None, original_error: Exception = None):
        self.status_code = status_code
        super().__init__(message, original_error=original_error)

def create_error_response(
    error_code: str,
    message: str,
    status_code: int = 500,
    field: str = None,
    context: Dict[str, Any] = None,
    request_id: str = None
) -> JSONResponse:
    """Create standardized error response"""

    error_detail = ErrorDetail(
        code=error_code,
        message=message,
        field=field,
        context=context
    )

    error_response = StandardErrorResponse(
        error=error_detail,
        timestamp=time.time(),
        request_id=request_id
    )

    return JSONResponse(
        status_code=status_code,
        content=error_response.model_dump()
    )

BUSINESS_STATUS_CODES = {
    ErrorCodes.VALIDATION_ERROR: 400,
    ErrorCodes.INVALID_METHOD: 400,
    ErrorCodes.AMOUNT_TOO_SMALL: 400,
    ErrorCodes.LINK_UNAVAILABLE: 400,
    ErrorCodes.INSUFFICIENT_BALANCE: 400,
    ErrorCodes.INVALID_SIGNATURE: 401,
    ErrorCodes.NOT_FOUND: 404,
    ErrorCodes.STATE_CONFLICT: 409,
    ErrorCodes.TOO_MANY_PENDING: 409,
    ErrorCodes.DUPLICATE_ACTION: 409,
}

SERVICE_STATUS_CODES = {
    ErrorCodes.SERVICE_UNAVAILABLE: 503,
    ErrorCodes.DATABASE_ERROR: 503,
    ErrorCodes.CIRCUIT_BREAKER_OPEN: 503,
    ErrorCodes.PROVIDER_ERROR: 502,
    ErrorCodes.WEBHOOK_DELIVERY_FAILED: 502,
    ErrorCodes.TIMEOUT_ERROR: 504,
}

async def business_logic_exception_handler(request: Request, exc: BusinessLogicError):
    """Handle business logic exceptions"""
    status_code = BUSINESS_STATUS_CODES.get(exc.code, 400)
    request_id = getattr(request.state, 'request_id', None)

    logger.warning(f"Business logic error: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "request_id": request_id,
        "field": exc.field,
        "context": exc.context
    })

    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=status_code,
        field=exc.field,
        context=exc.context,
        request_id=request_id
    )

async def service_exception_handler(request: Request, exc: ServiceError):
    """Handle service-level exceptions"""
    status_code = SERVICE_STATUS_CODES.get(exc.code, 500)
    request_id = getattr(request.state, 'request_id', None)

    logger.error(f"Service error: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "request_id": request_id,
        "original_error": str(exc.original_error) if exc.original_error else None
    })

    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=status_code,
        request_id=request_id
    )

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle request body validation exceptions"""
    request_id = getattr(request.state, 'request_id', None)

    first_error = exc.errors()[0]
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    message = first_error.get("msg", "Validation error")

    logger.warning(f"Validation error: {message} on field {field}", extra={
        "request_id": request_id,
    })

    return create_error_response(
        error_code=ErrorCodes.VALIDATION_ERROR,
        message=f"Validation error on field '{field}': {message}",
        status_code=400,
        field=field,
        request_id=request_id
    )

async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle FastAPI HTTP exceptions"""
    request_id = getattr(request.state, 'request_id', None)

    status_to_code = {
        401: ErrorCodes.UNAUTHORIZED,
        403: ErrorCodes.FORBIDDEN,
        404: ErrorCodes.NOT_FOUND,
        409: ErrorCodes.STATE_CONFLICT,
        503: ErrorCodes.SERVICE_UNAVAILABLE,
    }

    error_code = status_to_code.get(exc.status_code, ErrorCodes.INTERNAL_SERVER_ERROR)

    logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}", extra={
        "status_code": exc.status_code,
        "request_id": request_id
    })

    return create_error_response(
        error_code=error_code,
        message=str(exc.detail),
        status_code=exc.status_code,
        request_id=request_id
    )

async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
    request_id = getattr(request.state, 'request_id', None)

    logger.error(f"Unexpected error: {str(exc)}", extra={
        "request_id": request_id,
        "traceback": traceback.format_exc()
    })

    # Don't expose internal error details in production
    return create_error_response(
        error_code=ErrorCodes.INTERNAL_SERVER_ERROR,
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
        request_id=request_id
    )

def add_error_handlers(app):
    """Add all error handlers to FastAPI app"""
    app.add_exception_handler(BusinessLogicError, business_logic_exception_handler)
    app.add_exception_handler(ServiceError, service_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
