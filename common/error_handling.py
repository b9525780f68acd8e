"""
Error taxonomy and standardized error responses
"""
from typing import Optional, Dict, Any
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
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
    trace_id: Optional[str] = None

class ErrorCodes:
    """Standard error codes"""
    # Authentication & Authorization
    UNAUTHORIZED = "UNAUTHORIZED"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"

    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_AMOUNT = "INVALID_AMOUNT"

    # Business Logic
    ITEM_NOT_FOUND = "ITEM_NOT_FOUND"
    ITEM_IMMUTABLE = "ITEM_IMMUTABLE"
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    PAYOUT_UNAVAILABLE = "PAYOUT_UNAVAILABLE"

    # System Errors
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    STORAGE_UNAVAILABLE = "STORAGE_UNAVAILABLE"
    CIRCUIT_BREAKER_OPEN = "CIRCUIT_BREAKER_OPEN"

    # External Service Errors
    GATEWAY_UNAVAILABLE = "GATEWAY_UNAVAILABLE"

class BusinessLogicError(Exception):
    """Terminal business-rule failure, surfaced to the caller verbatim"""
    code = ErrorCodes.VALIDATION_ERROR
    status_code = 400

    def __init__(self, message: str, field: str = None, context: Dict[str, Any] = None):
        self.message = message
        self.field = field
        self.context = context or {}
        super().__init__(message)

class ItemNotFound(BusinessLogicError):
    code = ErrorCodes.ITEM_NOT_FOUND
    status_code = 404

class AccountNotFound(BusinessLogicError):
    code = ErrorCodes.ACCOUNT_NOT_FOUND
    status_code = 404

class InsufficientFunds(BusinessLogicError):
    code = ErrorCodes.INSUFFICIENT_FUNDS
    status_code = 400

class PayoutUnavailable(BusinessLogicError):
    code = ErrorCodes.PAYOUT_UNAVAILABLE
    status_code = 409

class SignatureInvalid(BusinessLogicError):
    """Webhook authenticity check failed. Never retried by the engine."""
    code = ErrorCodes.SIGNATURE_INVALID
    status_code = 400

class InvalidAmount(BusinessLogicError):
    code = ErrorCodes.INVALID_AMOUNT
    status_code = 400

class ItemImmutable(BusinessLogicError):
    """Published decks never change owner, price or title"""
    code = ErrorCodes.ITEM_IMMUTABLE
    status_code = 409

class MalformedEvent(BusinessLogicError):
    """Authentic webhook whose body is not a usable event envelope"""
    code = ErrorCodes.VALIDATION_ERROR
    status_code = 400

class ServiceError(Exception):
    """Transient failure; the caller owning the timeout retries with backoff"""
    code = ErrorCodes.INTERNAL_SERVER_ERROR
    status_code = 500

    def __init__(self, message: str, original_error: Exception = None):
        self.message = message
        self.original_error = original_error
        super().__init__(message)

class StorageUnavailable(ServiceError):
    code = ErrorCodes.STORAGE_UNAVAILABLE
    status_code = 503

class GatewayUnavailable(ServiceError):
    code = ErrorCodes.GATEWAY_UNAVAILABLE
    status_code = 502

class CircuitOpen(GatewayUnavailable):
    code = ErrorCodes.CIRCUIT_BREAKER_OPEN
    status_code = 503

def create_error_response(
    error_code: str,
    message: str,
    status_code: int = 500,
    field: str = None,
    context: Dict[str, Any] = None,
    trace_id: str = None,
) -> JSONResponse:
    """Create standardized error response"""

    error_response = StandardErrorResponse(
        error=ErrorDetail(code=error_code, message=message, field=field, context=context),
        timestamp=time.time(),
        trace_id=trace_id,
    )

    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(error_response),
    )

async def business_logic_exception_handler(request: Request, exc: BusinessLogicError):
    trace_id = getattr(request.state, 'trace_id', None)

    logger.warning(f"Business logic error: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "trace_id": trace_id,
        "field": exc.field,
    })

    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=exc.status_code,
        field=exc.field,
        context=exc.context,
        trace_id=trace_id,
    )

async def service_exception_handler(request: Request, exc: ServiceError):
    trace_id = getattr(request.state, 'trace_id', None)

    logger.error(f"Service error: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "trace_id": trace_id,
        "original_error": str(exc.original_error) if exc.original_error else None
    })

    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=exc.status_code,
        trace_id=trace_id,
    )

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    trace_id = getattr(request.state, 'trace_id', None)

    first_error = exc.errors()[0]
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    message = first_error.get("msg", "Validation error")

    logger.warning(f"Validation error: {message} on field {field}", extra={"trace_id": trace_id})

    return create_error_response(
        error_code=ErrorCodes.VALIDATION_ERROR,
        message=f"Validation error on field '{field}': {message}",
        status_code=422,
        field=field,
        trace_id=trace_id,
    )

async def http_exception_handler(request: Request, exc: HTTPException):
    trace_id = getattr(request.state, 'trace_id', None)

    status_to_code = {
        401: ErrorCodes.UNAUTHORIZED,
        404: ErrorCodes.ITEM_NOT_FOUND,
        503: ErrorCodes.STORAGE_UNAVAILABLE,
    }
    error_code = status_to_code.get(exc.status_code, ErrorCodes.INTERNAL_SERVER_ERROR)

    logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}", extra={"trace_id": trace_id})

    return create_error_response(
        error_code=error_code,
        message=str(exc.detail),
        status_code=exc.status_code,
        trace_id=trace_id,
    )

async def general_exception_handler(request: Request, exc: Exception):
    trace_id = getattr(request.state, 'trace_id', None)

    logger.error(f"Unexpected error: {str(exc)}", extra={
        "trace_id": trace_id,
        "traceback": traceback.format_exc()
    })

    # Don't expose internal error details
    return create_error_response(
        error_code=ErrorCodes.INTERNAL_SERVER_ERROR,
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
        trace_id=trace_id,
    )

def add_error_handlers(app):
    """Add all error handlers to FastAPI app"""
    app.add_exception_handler(BusinessLogicError, business_logic_exception_handler)
    app.add_exception_handler(ServiceError, service_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
