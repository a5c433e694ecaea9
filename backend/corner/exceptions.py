"""Custom exception hierarchy for the publish service."""

from enum import Enum
from typing import Optional, Dict, Any


class ErrorCode(str, Enum):
    """Standardized error codes for API responses."""

    # Page errors
    PAGE_NOT_FOUND = "PAGE_NOT_FOUND"
    USER_NOT_FOUND = "USER_NOT_FOUND"

    # Validation errors
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # Concurrency errors
    CONFLICT = "CONFLICT"

    # Storage errors
    STORAGE_UNAVAILABLE = "STORAGE_UNAVAILABLE"

    # Database errors
    DATABASE_ERROR = "DATABASE_ERROR"

    # Auth & rate limiting
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    RATE_LIMITED = "RATE_LIMITED"

    # Generic errors
    INTERNAL_ERROR = "INTERNAL_ERROR"


class CornerException(Exception):
    """
    Base exception for all publish-service errors.

    Provides structured error responses with:
    - Human-readable message
    - Machine-readable error code
    - HTTP status code
    - Optional additional details and response headers
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize exception.

        Args:
            message: Human-readable error message
            error_code: Machine-readable error code
            status_code: HTTP status code to return
            details: Optional additional context/details
            headers: Optional HTTP headers to attach to the response
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        self.headers = headers or {}

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert exception to dictionary for JSON response.

        Returns:
            Dictionary with success, error, message, and details fields
        """
        return {
            "success": False,
            "error": self.error_code.value,
            "message": self.message,
            "details": self.details
        }


class PageNotFoundError(CornerException):
    """Page not found in database."""

    def __init__(self, page_id: str):
        super().__init__(
            f"Page not found: {page_id}",
            ErrorCode.PAGE_NOT_FOUND,
            status_code=404,
            details={"page_id": page_id}
        )


class UserNotFoundError(CornerException):
    """User not found in database."""

    def __init__(self, user_id: str):
        super().__init__(
            f"User not found: {user_id}",
            ErrorCode.USER_NOT_FOUND,
            status_code=404,
            details={"user_id": user_id}
        )


class ValidationError(CornerException):
    """Document or request failed validation. Raised before any side effect."""

    def __init__(self, message: str, field: Optional[str] = None):
        details = {"field": field} if field else {}
        super().__init__(
            message,
            ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )


class ConflictError(CornerException):
    """The page's server revision moved on; the caller must refetch and resubmit."""

    def __init__(
        self,
        page_id: str,
        current_revision: Optional[int] = None,
        message: str = "Page was modified concurrently, refetch and retry",
    ):
        super().__init__(
            message,
            ErrorCode.CONFLICT,
            status_code=409,
            details={"page_id": page_id, "current_revision": current_revision}
        )
        self.page_id = page_id
        self.current_revision = current_revision

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["conflict"] = True
        body["current_revision"] = self.current_revision
        return body


class StorageUnavailableError(CornerException):
    """Artifact upload failed or storage is required but unconfigured.

    No database mutation has happened when this is raised.
    """

    def __init__(self, message: str = "Storage unavailable", missing: Optional[list[str]] = None):
        details: Dict[str, Any] = {}
        if missing:
            details["missing"] = missing
        super().__init__(
            message,
            ErrorCode.STORAGE_UNAVAILABLE,
            status_code=503,
            details=details
        )


class AuthenticationError(CornerException):
    """Request lacks valid authentication credentials."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(
            message,
            ErrorCode.UNAUTHORIZED,
            status_code=401,
        )


class ForbiddenError(CornerException):
    """Caller does not own the page it is trying to change."""

    def __init__(self, message: str = "You do not have permission to perform this action"):
        super().__init__(
            message,
            ErrorCode.FORBIDDEN,
            status_code=403,
        )


class RateLimitedError(CornerException):
    """Admission controller rejected the request before it reached the service."""

    def __init__(self, operation: str, retry_after: int, limit: int):
        retry_after = max(1, int(retry_after))
        super().__init__(
            "Too many requests. Please try again later.",
            ErrorCode.RATE_LIMITED,
            status_code=429,
            details={"operation": operation, "retry_after": retry_after, "remaining": 0},
            headers={
                "Retry-After": str(retry_after),
                "X-RateLimit-Limit": str(limit),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(retry_after),
            },
        )
        self.retry_after = retry_after


class DatabaseError(CornerException):
    """Database operation failed."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        details = {}
        if original_error:
            details["original_error"] = str(original_error)

        super().__init__(
            message,
            ErrorCode.DATABASE_ERROR,
            status_code=500,
            details=details
        )
