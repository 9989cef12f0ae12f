from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for auth-service failures that map onto an HTTP reply.

    ``message`` is safe to show the client; anything diagnostic belongs in
    the log call that precedes the raise, not here.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(self, message: str, *, detail: Optional[dict] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Malformed input or a one-time token that cannot be redeemed (400)."""


class AuthenticationError(ServiceError):
    """No usable session or bad credentials (401).

    ``clear_cookie`` asks the HTTP layer to blank the session cookie the
    client presented.
    """

    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str, *, clear_cookie: bool = False, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.clear_cookie = clear_cookie


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


class AccountStateError(ForbiddenError):
    """The credentials are right but the account may not sign in (403)."""

    def __init__(self, message: str, *, account_status: str) -> None:
        super().__init__(message, detail={"status": account_status})
        self.account_status = account_status


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Too many attempts in the current window (429).

    ``retry_after`` is the number of whole seconds until the window resets.
    """

    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int = 0) -> None:
        super().__init__(message)
        self.retry_after = max(0, int(retry_after))


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


__all__ = [
    "AccountStateError",
    "AuthenticationError",
    "ConflictError",
    "ForbiddenError",
    "NotFoundError",
    "RateLimitedError",
    "ServerError",
    "ServiceError",
    "ValidationError",
]
