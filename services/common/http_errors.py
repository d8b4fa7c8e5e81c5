"""
Shared HTTP error classes and utilities for QConnect services.

Provides:
- Base exception class for backend API errors
- Common subclasses (Unavailable, Response, NotFound, Malformed, SessionBusy)
- Shared error response model
- Utility to pull a human-readable detail out of an error response
- Utility to convert exceptions to error responses

Common Usage Patterns:
=====================

Transport failure:
>>> from services.common.http_errors import BackendUnavailableError
>>>
>>> error = BackendUnavailableError("Connection refused", url="http://localhost:8000/api/v1/query")

Non-2xx response:
>>> from services.common.http_errors import BackendResponseError
>>>
>>> error = BackendResponseError(status_code=422, detail="Unknown directive @FOO")
>>> print(error.message)
Backend returned 422: Unknown directive @FOO

Resource not found:
>>> from services.common.http_errors import NotFoundError
>>>
>>> error = NotFoundError("Conversation", "c0ffee")
>>> print(error.message)
Conversation c0ffee not found

Error Response Conversion:
>>> from services.common.http_errors import exception_to_response
>>>
>>> try:
...     risky_operation()
... except Exception as e:
...     error_response = exception_to_response(e)
...     print(error_response.model_dump())

Error Code Taxonomy:
===================
- NOT_FOUND : Resource not found (404)
- BACKEND_* : Errors talking to the query-generation backend
- SESSION_* : Client-side session state errors
- INTERNAL_ERROR : Anything else
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel

UNKNOWN_ERROR = "Unknown error"


class ErrorCode(str, Enum):
    """
    Standardized error codes for QConnect.

    Categories:
        - General: Common errors
        - Backend: Errors talking to the query-generation backend
        - Session: Client-side session state errors
    """

    # ==========================================
    # GENERAL ERRORS
    # ==========================================
    VALIDATION_FAILED = "VALIDATION_FAILED"  # Input validation failed
    NOT_FOUND = "NOT_FOUND"  # HTTP 404 - Resource not found
    INTERNAL_ERROR = "INTERNAL_ERROR"  # Generic internal error

    # ==========================================
    # BACKEND ERRORS
    # ==========================================
    BACKEND_UNAVAILABLE = "BACKEND_UNAVAILABLE"  # Network unreachable or timeout
    BACKEND_ERROR = "BACKEND_ERROR"  # Non-2xx response
    BACKEND_MALFORMED_RESPONSE = "BACKEND_MALFORMED_RESPONSE"  # Unparseable body

    # ==========================================
    # SESSION ERRORS
    # ==========================================
    SESSION_BUSY = "SESSION_BUSY"  # An operation is already in flight


class ErrorResponse(BaseModel):
    """
    Standardized error response model.

    Attributes:
        type: Error type categorization (e.g., "backend_error", "not_found")
        message: Human-readable error message for end users
        details: Optional dictionary containing additional error context
        timestamp: ISO 8601 timestamp of when the error occurred
    """

    type: str
    message: str
    details: Optional[Dict[str, Any]] = None
    timestamp: str


class QConnectAPIException(Exception):
    """
    Base exception class for all QConnect errors.

    Attributes:
        message: Human-readable error message
        details: Dictionary containing additional error context
        error_type: Categorization of the error (backend_error, not_found, etc.)
        error_code: Specific error code from the ErrorCode enum
        status_code: HTTP status code associated with the error, if any
        timestamp: ISO 8601 timestamp when error occurred
    """

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_type: str = "internal_error",
        error_code: Optional[ErrorCode] = None,
        status_code: Optional[int] = None,
    ):
        self.message = message
        self.details = details or {}
        self.error_type = error_type
        self.error_code = error_code
        self.status_code = status_code
        self.timestamp = datetime.now(timezone.utc).isoformat()
        super().__init__(self.message)

    def to_error_response(self) -> ErrorResponse:
        """Convert exception to ErrorResponse Pydantic model."""
        details = {
            **self.details,
            **({"code": self.error_code.value} if self.error_code else {}),
        }
        if self.status_code is not None:
            details["status_code"] = self.status_code
        return ErrorResponse(
            type=self.error_type,
            message=self.message,
            details=details if details else None,
            timestamp=self.timestamp,
        )


class BackendUnavailableError(QConnectAPIException):
    """
    Transport failure: the backend could not be reached or timed out.

    Always recoverable locally; callers surface it as a degraded
    in-conversation message rather than raising it further.
    """

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        transport_details = {**(details or {})}
        if url:
            transport_details["url"] = url
        super().__init__(
            message=message,
            details=transport_details,
            error_type="backend_unavailable",
            error_code=ErrorCode.BACKEND_UNAVAILABLE,
        )
        self.url = url


class BackendResponseError(QConnectAPIException):
    """
    Non-2xx response from the backend.

    Attributes:
        detail: Human-readable detail extracted from the response body

    Examples:
        >>> error = BackendResponseError(status_code=500, detail="Unknown error")
        >>> error.message
        'Backend returned 500: Unknown error'
    """

    def __init__(
        self,
        status_code: int,
        detail: str = UNKNOWN_ERROR,
        details: Optional[Dict[str, Any]] = None,
        error_type: str = "backend_error",
        error_code: ErrorCode = ErrorCode.BACKEND_ERROR,
        message: Optional[str] = None,
    ):
        super().__init__(
            message=message or f"Backend returned {status_code}: {detail}",
            details={**(details or {}), "detail": detail},
            error_type=error_type,
            error_code=error_code,
            status_code=status_code,
        )
        self.detail = detail


class NotFoundError(BackendResponseError):
    """
    Exception for resource not found errors (HTTP 404).

    Examples:
        >>> error = NotFoundError("Conversation", "abc-123")
        >>> print(error.message)
        Conversation abc-123 not found
    """

    def __init__(
        self,
        resource: str,
        identifier: Optional[str] = None,
        detail: str = UNKNOWN_ERROR,
    ):
        if identifier:
            message = f"{resource} {identifier} not found"
        else:
            message = f"{resource} not found"
        super().__init__(
            status_code=404,
            detail=detail,
            details={"resource": resource, "identifier": identifier},
            error_type="not_found",
            error_code=ErrorCode.NOT_FOUND,
            message=message,
        )
        self.resource = resource
        self.identifier = identifier


class MalformedResponseError(QConnectAPIException):
    """A 2xx response whose body could not be interpreted."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            details=details,
            error_type="malformed_response",
            error_code=ErrorCode.BACKEND_MALFORMED_RESPONSE,
        )


class SessionBusyError(QConnectAPIException):
    """Raised when send/retry is invoked while another operation is in flight."""

    def __init__(self, operation: str):
        super().__init__(
            message=f"Cannot start {operation}: another request is still in progress",
            details={"operation": operation},
            error_type="session_busy",
            error_code=ErrorCode.SESSION_BUSY,
        )
        self.operation = operation


def extract_error_detail(response: httpx.Response) -> str:
    """
    Pull a human-readable detail out of an error response.

    Structured bodies are searched for a ``detail`` field; anything else falls
    back to the raw response text, and an empty body to ``"Unknown error"``.
    """
    text = response.text or ""
    try:
        body = response.json()
    except (json.JSONDecodeError, ValueError):
        return text.strip() or UNKNOWN_ERROR

    if isinstance(body, dict):
        detail = body.get("detail") or body.get("message") or body.get("error")
        if isinstance(detail, str) and detail:
            return detail
        if isinstance(detail, dict):
            nested = detail.get("message") or detail.get("msg")
            if isinstance(nested, str) and nested:
                return nested
            return json.dumps(detail)
        if isinstance(detail, list) and detail:
            # FastAPI validation errors: [{"loc": [...], "msg": "...", ...}]
            messages = [
                item.get("msg", str(item)) if isinstance(item, dict) else str(item)
                for item in detail
            ]
            return "; ".join(messages)
    return text.strip() or UNKNOWN_ERROR


def exception_to_response(exc: Exception) -> ErrorResponse:
    """
    Convert any exception to a standardized ErrorResponse.

    QConnect exceptions keep their own type and details; anything else is
    reported as an internal error carrying the exception text.
    """
    if isinstance(exc, QConnectAPIException):
        return exc.to_error_response()

    return ErrorResponse(
        type="internal_error",
        message=str(exc) or exc.__class__.__name__,
        details={
            "code": ErrorCode.INTERNAL_ERROR.value,
            "exception_type": exc.__class__.__name__,
        },
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
