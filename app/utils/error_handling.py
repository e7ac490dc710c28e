"""
Error Handling Module for the Payroll Engine

This module provides centralized error handling with:
- Custom exception hierarchy for payroll runs, loans and filings
- Standardized error responses
- Error logging
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union
from uuid import UUID
import logging

from fastapi import FastAPI, Request, HTTPException, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError, IntegrityError, OperationalError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger("payroll.errors")


class ErrorCode(str, Enum):
    """Standardized error codes for the application"""

    # Validation Errors (4xx)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_PERIOD = "INVALID_PERIOD"
    INVALID_SALARY_STRUCTURE = "INVALID_SALARY_STRUCTURE"
    INVALID_LOAN_TERMS = "INVALID_LOAN_TERMS"
    INVALID_POLICY = "INVALID_POLICY"

    # Resource Errors (404/409)
    NOT_FOUND = "NOT_FOUND"
    RESOURCE_CONFLICT = "RESOURCE_CONFLICT"
    DUPLICATE_ENTRY = "DUPLICATE_ENTRY"

    # Payroll run errors
    RUN_INTEGRITY_VIOLATION = "RUN_INTEGRITY_VIOLATION"
    ATTENDANCE_NOT_LOCKED = "ATTENDANCE_NOT_LOCKED"
    DUPLICATE_RUN = "DUPLICATE_RUN"
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"
    RECORD_IMMUTABLE = "RECORD_IMMUTABLE"
    EMPLOYEE_CALCULATION_FAILED = "EMPLOYEE_CALCULATION_FAILED"

    # Business Logic Errors (422)
    BUSINESS_RULE_VIOLATION = "BUSINESS_RULE_VIOLATION"

    # Storage Errors (5xx)
    TRANSIENT_STORAGE_ERROR = "TRANSIENT_STORAGE_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    DATA_INTEGRITY_ERROR = "DATA_INTEGRITY_ERROR"

    # Internal Errors (500)
    INTERNAL_ERROR = "INTERNAL_ERROR"


class AppException(Exception):
    """Base exception for all application exceptions"""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
        field: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.field = field
        self.original_error = original_error
        self.timestamp = datetime.now(timezone.utc)
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON response"""
        result = {
            "code": self.code.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.field:
            result["field"] = self.field
        if self.details:
            result["details"] = self.details
        return result


# ============================================================================
# Validation Exceptions
# ============================================================================

class PayrollValidationError(AppException):
    """Bad input detected before any processing starts."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details,
            field=field,
        )


class InvalidPeriodException(PayrollValidationError):
    """Month or year outside the accepted range"""

    def __init__(self, month: Any, year: Any):
        super().__init__(
            message=f"Invalid payroll period: {month}/{year}. Month must be 1-12.",
            field="month",
            code=ErrorCode.INVALID_PERIOD,
            details={"month": month, "year": year},
        )


# ============================================================================
# Resource Exceptions
# ============================================================================

class NotFoundException(AppException):
    """Resource not found exception"""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[Union[str, UUID]] = None,
        message: Optional[str] = None,
    ):
        if message is None:
            if resource_id:
                message = f"{resource_type} with ID '{resource_id}' not found"
            else:
                message = f"{resource_type} not found"
        super().__init__(
            code=ErrorCode.NOT_FOUND,
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource_type": resource_type, "resource_id": str(resource_id) if resource_id else None},
        )


class ConflictException(AppException):
    """Resource conflict exception"""

    def __init__(
        self,
        message: str,
        resource_type: Optional[str] = None,
        code: ErrorCode = ErrorCode.RESOURCE_CONFLICT,
        details: Optional[Dict[str, Any]] = None,
    ):
        _details = details or {}
        if resource_type:
            _details["resource_type"] = resource_type
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details=_details,
        )


# ============================================================================
# Payroll Run Exceptions
# ============================================================================

class RunIntegrityError(ConflictException):
    """
    A run-level precondition does not hold: the period is not locked, a run
    already exists, or the requested state transition is illegal. No records
    are written when this is raised.
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.RUN_INTEGRITY_VIOLATION,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, code=code, details=details)


class AttendanceNotLockedError(RunIntegrityError):
    def __init__(self, month: int, year: int):
        super().__init__(
            message=f"Attendance for {month:02d}/{year} is not locked",
            code=ErrorCode.ATTENDANCE_NOT_LOCKED,
            details={"month": month, "year": year},
        )


class DuplicateRunError(RunIntegrityError):
    def __init__(self, month: int, year: int, existing_run_id: Union[str, UUID]):
        super().__init__(
            message=f"A payroll run already exists for {month:02d}/{year}",
            code=ErrorCode.DUPLICATE_RUN,
            details={"month": month, "year": year, "existing_run_id": str(existing_run_id)},
        )


class InvalidStateTransitionError(RunIntegrityError):
    def __init__(self, resource_type: str, current: str, target: str):
        super().__init__(
            message=f"{resource_type} cannot move from {current} to {target}",
            code=ErrorCode.INVALID_STATE_TRANSITION,
            details={"resource_type": resource_type, "current": current, "target": target},
        )


class PerEmployeeCalculationError(AppException):
    """
    A single employee's unit failed. The orchestrator records the message on
    that employee's record and keeps going.
    """

    def __init__(
        self,
        message: str,
        employee_id: Optional[Union[str, UUID]] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            code=ErrorCode.EMPLOYEE_CALCULATION_FAILED,
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"employee_id": str(employee_id)} if employee_id else None,
            original_error=original_error,
        )


class BusinessRuleException(AppException):
    """Business rule violation exception"""

    def __init__(
        self,
        message: str,
        rule: Optional[str] = None,
        code: ErrorCode = ErrorCode.BUSINESS_RULE_VIOLATION,
        details: Optional[Dict[str, Any]] = None,
    ):
        _details = details or {}
        if rule:
            _details["violated_rule"] = rule
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=_details,
        )


class RecordImmutableError(BusinessRuleException):
    def __init__(self, record_id: Union[str, UUID], status_value: str):
        super().__init__(
            message=f"Payroll record {record_id} is {status_value} and can only change through a run reversal",
            rule="VERIFIED_RECORDS_ARE_IMMUTABLE",
            code=ErrorCode.RECORD_IMMUTABLE,
            details={"record_id": str(record_id), "status": status_value},
        )


# ============================================================================
# Storage Exceptions
# ============================================================================

class TransientStorageError(AppException):
    """A persistence call failed in a way worth retrying."""

    def __init__(self, message: str = "Storage temporarily unavailable", original_error: Optional[Exception] = None):
        super().__init__(
            code=ErrorCode.TRANSIENT_STORAGE_ERROR,
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            original_error=original_error,
        )


# ============================================================================
# Exception Handlers
# ============================================================================

def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_error_response(
    code: ErrorCode,
    message: str,
    status_code: int,
    details: Optional[Dict[str, Any]] = None,
    field: Optional[str] = None,
) -> JSONResponse:
    """Every error body has the same shape: {"detail": {code, message, timestamp, field?, details?}}"""
    detail: Dict[str, Any] = {
        "code": code.value,
        "message": message,
        "timestamp": _timestamp(),
    }
    if field:
        detail["field"] = field
    if details:
        detail["details"] = details
    return JSONResponse(status_code=status_code, content={"detail": detail})


def _request_context(request: Request) -> Dict[str, Any]:
    return {"path": request.url.path, "method": request.method}


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """
    Domain errors. Rejected requests (4xx) log at WARNING; storage and
    internal failures log at ERROR with the underlying exception attached.
    """
    context = {**_request_context(request), "code": exc.code.value, "details": exc.details}
    if exc.status_code < status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.warning(f"{exc.code.value}: {exc.message}", extra=context)
    else:
        logger.error(f"{exc.code.value}: {exc.message}", extra=context, exc_info=exc.original_error)

    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Framework-raised HTTP errors (unknown routes, wrong methods)"""
    code_map = {
        400: ErrorCode.INVALID_INPUT,
        404: ErrorCode.NOT_FOUND,
        409: ErrorCode.RESOURCE_CONFLICT,
        422: ErrorCode.VALIDATION_ERROR,
        503: ErrorCode.TRANSIENT_STORAGE_ERROR,
    }
    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    logger.warning(f"HTTP {exc.status_code}: {message}", extra=_request_context(request))

    return create_error_response(
        code=code_map.get(exc.status_code, ErrorCode.INVALID_INPUT if exc.status_code < 500 else ErrorCode.INTERNAL_ERROR),
        message=message,
        status_code=exc.status_code,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request bodies and query parameters that fail schema validation"""
    errors = []
    for error in exc.errors():
        # Drop the leading "body"/"query" segment so fields read like the payload keys
        location = [str(loc) for loc in error["loc"]]
        if len(location) > 1 and location[0] in ("body", "query", "path"):
            location = location[1:]
        errors.append({
            "field": ".".join(location),
            "message": error["msg"],
            "type": error["type"],
        })

    logger.warning(f"Request validation failed with {len(errors)} errors", extra=_request_context(request))

    return create_error_response(
        code=ErrorCode.VALIDATION_ERROR,
        message="Request validation failed",
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        details={"errors": errors},
        field=errors[0]["field"] if len(errors) == 1 else None,
    )


async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Database errors that escaped the repository"""
    error_message = "A database error occurred"
    error_code = ErrorCode.DATABASE_ERROR
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    if isinstance(exc, IntegrityError):
        error_str = str(exc.orig).lower() if exc.orig else ""
        if "unique" in error_str or "duplicate" in error_str:
            error_message = "A record for this period or key already exists"
            error_code = ErrorCode.DUPLICATE_ENTRY
            status_code = status.HTTP_409_CONFLICT
        else:
            error_message = "Data integrity constraint violated"
            error_code = ErrorCode.DATA_INTEGRITY_ERROR
    elif isinstance(exc, OperationalError):
        error_message = "Database temporarily unavailable"
        error_code = ErrorCode.TRANSIENT_STORAGE_ERROR
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    logger.error(f"{type(exc).__name__}: {exc}", extra=_request_context(request), exc_info=True)

    return create_error_response(code=error_code, message=error_message, status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.critical(f"Unhandled {type(exc).__name__}: {exc}", extra=_request_context(request), exc_info=True)

    return create_error_response(
        code=ErrorCode.INTERNAL_ERROR,
        message="An unexpected error occurred. Please try again later.",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI application"""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
