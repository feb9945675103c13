"""
Shared exception hierarchy.

Every failure the routing engine can report carries a stable ``code`` and the
HTTP status used on the asynchronous webhook path. Call-control routes never
surface these as HTTP errors; they are rendered as say-and-hangup documents.
"""

from __future__ import annotations

from typing import Any


class AppException(Exception):
    """Base application exception."""

    code: str = "APP_ERROR"
    status_code: int = 500

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": "error",
            "code": self.code,
            "message": self.message,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class BadRequest(AppException):
    """Malformed webhook payload."""

    code = "BAD_REQUEST"
    status_code = 400


class Unauthorized(AppException):
    """Missing or invalid credential, signature or source address."""

    code = "UNAUTHORIZED"
    status_code = 401


class StaleRequest(AppException):
    """Signed timestamp outside the accepted tolerance window."""

    code = "STALE_REQUEST"
    status_code = 401


class RateLimited(AppException):
    """Request rate above the configured limit for the tenant or source."""

    code = "RATE_LIMITED"
    status_code = 429

    def __init__(
        self,
        message: str,
        limit: int,
        retry_after: int,
        reset_at: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.limit = limit
        self.retry_after = retry_after
        self.reset_at = reset_at

    def headers(self) -> dict[str, str]:
        return {
            "Retry-After": str(self.retry_after),
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(self.reset_at),
        }


class RoutingError(AppException):
    """Base class for failures while resolving a call destination."""


class NotFound(RoutingError):
    """Dialed identifier or referenced entity does not exist for the tenant."""

    code = "NOT_FOUND"
    status_code = 404


class Unavailable(RoutingError):
    """Target exists but cannot currently receive the call."""

    code = "UNAVAILABLE"
    status_code = 503


class ConfigurationError(RoutingError):
    """Routing configuration is malformed, cyclic or crosses tenants."""

    code = "CONFIGURATION_ERROR"
    status_code = 500


class LockTimeout(AppException):
    """Ring-group or call lock could not be acquired in time."""

    code = "LOCK_TIMEOUT"
    status_code = 409


__all__ = [
    "AppException",
    "BadRequest",
    "ConfigurationError",
    "LockTimeout",
    "NotFound",
    "RateLimited",
    "RoutingError",
    "StaleRequest",
    "Unauthorized",
    "Unavailable",
]
