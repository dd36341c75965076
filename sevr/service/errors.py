from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries a default HTTP ``status_code`` and a stable
    ``error_code`` string that clients may switch on:

    - validation_error (400)
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Malformed input, rejected before touching the store (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Missing or invalid credentials (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    """Per-client request budget exhausted; carries a Retry-After hint."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "Too many requests, please try again later.",
        *,
        retry_after: int = 1,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = max(1, int(retry_after))
        self.headers = {"Retry-After": str(self.retry_after)}


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


class NotFoundOrExpired(AuthenticationError):
    """No live OTP or refresh-token row matched.

    The message never says which half (lookup or expiry) failed.
    """
    error_code = "not_found_or_expired"


class CodeNotFound(NotFoundOrExpired):
    error_code = "code_not_found"

    def __init__(self, message: str = "Invalid or expired code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TooManyAttempts(AuthenticationError):
    """Attempt cap hit for the current code; the client must request a new one."""
    error_code = "too_many_attempts"

    def __init__(
        self, message: str = "Too many attempts. Please request a new code.", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class CodeMismatch(AuthenticationError):
    error_code = "code_mismatch"

    def __init__(self, message: str = "Invalid code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidToken(AuthenticationError):
    error_code = "invalid_token"

    def __init__(self, message: str = "Invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AlreadySetUp(ValidationError):
    error_code = "already_set_up"

    def __init__(self, message: str = "Encryption already set up", **kwargs) -> None:
        super().__init__(message, **kwargs)


class PayloadTooLargeError(ServiceError):
    status_code = 413
    error_code = "payload_too_large"


__all__ = [
    "AlreadySetUp",
    "AuthenticationError",
    "CodeMismatch",
    "CodeNotFound",
    "InvalidToken",
    "NotFoundError",
    "NotFoundOrExpired",
    "PayloadTooLargeError",
    "RateLimitedError",
    "ServerError",
    "ServiceError",
    "TooManyAttempts",
    "ValidationError",
]
