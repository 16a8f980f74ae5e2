"""
Custom Exception Classes for the Livestream Engagement API.

This module defines the exception hierarchy used by the ranking, moderation and
statistics services. Services raise these exceptions and never swallow them;
the HTTP boundary converts them into JSON error responses.

Key Components:
- `LivestreamAPIException`: The base exception class from which all other custom
  exceptions in this module inherit. It carries a message, an error code, and
  optional structured details.
- Specific Exception Classes: `NotFoundError`, `PermissionDeniedError`,
  `ValidationError`, `SpamRejectedError`, `StorageError`,
  `StorageTimeoutError`, `InternalError` and `AuthenticationError`. Each maps
  to one failure kind so handlers can treat them differently.
- `to_http_exception`: Maps a `LivestreamAPIException` to FastAPI's
  `HTTPException` using the error code.

Architectural Design:
- Hierarchy of Exceptions: `StorageTimeoutError` is a `StorageError`, so callers
  that only care about "storage failed" can catch the parent.
- Rich Error Information: Each exception carries a unique `error_code` and a
  `details` dictionary that is safe to expose to clients.
- Centralized Error Mapping: Status codes live in one table instead of being
  scattered across endpoints.
"""

from typing import Optional, Dict, Any
from fastapi import HTTPException


class LivestreamAPIException(Exception):
    """Base exception class for the Livestream Engagement API"""

    status_code = 500

    def __init__(
        self,
        message: str,
        error_code: str = "LIVESTREAM_API_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class NotFoundError(LivestreamAPIException):
    """Raised when a user, livestream or livecomment does not exist"""

    status_code = 404

    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            f"{resource} not found: {identifier}",
            "NOT_FOUND",
            {"resource": resource, "identifier": str(identifier)},
        )


class PermissionDeniedError(LivestreamAPIException):
    """Raised when a user acts on a livestream they do not own"""

    status_code = 403

    def __init__(self, user_id: int, livestream_id: int, action: str = "moderate"):
        super().__init__(
            f"User {user_id} can't {action} livestream {livestream_id} owned by another streamer",
            "PERMISSION_DENIED",
            {"user_id": user_id, "livestream_id": livestream_id, "action": action},
        )


class ValidationError(LivestreamAPIException):
    """Raised when input validation fails"""

    status_code = 400

    def __init__(self, field: str, value: Any, reason: str):
        super().__init__(
            f"Validation failed for field '{field}': {reason}",
            "VALIDATION_ERROR",
            {"field": field, "value": str(value), "reason": reason},
        )


class SpamRejectedError(LivestreamAPIException):
    """Raised when a livecomment matches a banned word of its livestream"""

    status_code = 400

    def __init__(self, livestream_id: int):
        super().__init__(
            "This comment was judged to be spam",
            "SPAM_REJECTED",
            {"livestream_id": livestream_id},
        )


class StorageError(LivestreamAPIException):
    """Raised when a storage query or transaction fails"""

    status_code = 500

    def __init__(self, operation: str, reason: str, error_code: str = "STORAGE_ERROR"):
        super().__init__(
            f"Storage operation '{operation}' failed: {reason}",
            error_code,
            {"operation": operation, "reason": reason},
        )


class StorageTimeoutError(StorageError):
    """Raised when a storage operation exceeds its deadline"""

    status_code = 504

    def __init__(self, operation: str, timeout: float):
        super().__init__(
            operation,
            f"deadline of {timeout:.3f}s exceeded",
            error_code="STORAGE_TIMEOUT",
        )
        self.details["timeout"] = timeout


class InternalError(LivestreamAPIException):
    """Raised when an internal invariant is violated"""

    status_code = 500

    def __init__(self, reason: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(f"Internal error: {reason}", "INTERNAL_ERROR", details)


class AuthenticationError(LivestreamAPIException):
    """Raised when the caller identity is missing or malformed"""

    status_code = 401

    def __init__(self, reason: str):
        super().__init__(
            f"Authentication failed: {reason}",
            "AUTHENTICATION_ERROR",
            {"reason": reason},
        )


STATUS_CODE_MAP = {
    "NOT_FOUND": 404,
    "PERMISSION_DENIED": 403,
    "VALIDATION_ERROR": 400,
    "SPAM_REJECTED": 400,
    "AUTHENTICATION_ERROR": 401,
    "STORAGE_ERROR": 500,
    "STORAGE_TIMEOUT": 504,
    "INTERNAL_ERROR": 500,
}


def to_http_exception(exc: LivestreamAPIException) -> HTTPException:
    """Convert LivestreamAPIException to FastAPI HTTPException"""

    status_code = STATUS_CODE_MAP.get(exc.error_code, exc.status_code)

    return HTTPException(
        status_code=status_code,
        detail={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details,
        },
    )
