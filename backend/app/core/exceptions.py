"""Custom exception classes for the application"""

import math
from typing import Optional, Dict, Any


class BaseAPIException(Exception):
    """Base exception for all API errors"""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.headers = headers or {}
        super().__init__(self.message)


# Authentication Errors
class AuthenticationError(BaseAPIException):
    """Base authentication error (unauthorized)"""
    def __init__(self, message: str = "Authentication failed"):
        super().__init__(message, status_code=401)


class InvalidCredentialsError(AuthenticationError):
    """Wrong password or unknown account - deliberately indistinguishable"""
    def __init__(self):
        super().__init__("Invalid email or password")


class TokenExpiredError(AuthenticationError):
    """Token or session has expired"""
    def __init__(self, message: str = "Token has expired"):
        super().__init__(message)


class TokenInvalidError(AuthenticationError):
    """Token is malformed, unsigned or unknown"""
    def __init__(self, message: str = "Invalid token"):
        super().__init__(message)


class TokenReusedError(AuthenticationError):
    """A consumed refresh token was presented again; the token family is revoked"""
    def __init__(self):
        super().__init__("Session is no longer valid. Please sign in again.")


class AccountLockedError(AuthenticationError):
    """Account is locked due to failed login attempts"""
    def __init__(self, remaining_ms: int):
        remaining_seconds = max(1, math.ceil(remaining_ms / 1000))
        super().__init__(
            f"Account is temporarily locked. Try again in {remaining_seconds} seconds."
        )
        self.status_code = 423
        self.remaining_ms = remaining_ms
        self.details = {"remaining_seconds": remaining_seconds}


# Authorization Errors
class AuthorizationError(BaseAPIException):
    """Insufficient permissions"""
    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(message, status_code=403)


class CSRFRejectedError(AuthorizationError):
    """CSRF double-submit check failed"""
    def __init__(self):
        super().__init__("Invalid CSRF token")


# Resource Errors
class ResourceNotFoundError(BaseAPIException):
    """Resource not found"""
    def __init__(self, resource: str):
        super().__init__(f"{resource} not found", status_code=404)


class ResourceAlreadyExistsError(BaseAPIException):
    """Resource already exists"""
    def __init__(self, resource: str):
        super().__init__(f"{resource} already exists", status_code=409)


# Validation Errors
class ValidationError(BaseAPIException):
    """Validation error"""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=422, details=details)


class RateLimitExceededError(BaseAPIException):
    """Rate limit exceeded"""
    def __init__(self, retry_after: int, message: Optional[str] = None):
        retry_after = max(1, int(retry_after))
        super().__init__(
            message or f"Too many attempts. Try again in {retry_after} seconds",
            status_code=429,
            details={"retry_after": retry_after},
            headers={"Retry-After": str(retry_after)},
        )
        self.retry_after = retry_after


class SecurityCheckUnavailableError(BaseAPIException):
    """A throttling or lockout check could not be completed; the request is rejected"""
    def __init__(self, message: str = "Service temporarily unavailable. Please try again later."):
        super().__init__(message, status_code=503)
