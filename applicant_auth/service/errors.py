from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the response envelope:
    - unauthorized (401)
    - forbidden (403)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)

    Domain errors additionally carry a ``reason`` so clients can tell, for
    example, an expired token from a revoked one without parsing messages.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    reason: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        if reason is not None:
            self.reason = reason
        self.detail = dict(detail or {})
        if self.reason and "reason" not in self.detail:
            self.detail["reason"] = self.reason


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


# Domain taxonomy


class InvalidCredentials(AuthenticationError):
    reason = "invalid_credentials"

    def __init__(self, message: str = "invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenInvalid(AuthenticationError):
    reason = "token_invalid"

    def __init__(self, message: str = "token is invalid", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpired(AuthenticationError):
    reason = "token_expired"

    def __init__(self, message: str = "token has expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenRevoked(AuthenticationError):
    reason = "token_revoked"

    def __init__(self, message: str = "token has been revoked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountNotActivated(ForbiddenError):
    reason = "account_not_activated"

    def __init__(
        self,
        message: str = "account not activated; check your email for the activation link",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)


class AccountDisabled(ForbiddenError):
    reason = "account_disabled"

    def __init__(
        self, message: str = "account is disabled; contact support", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class ForbiddenForSsoUser(ForbiddenError):
    """Password-based operation attempted on an external-identity account."""

    reason = "sso_account"

    def __init__(
        self,
        message: str = "this account is registered with Google sign-in; sign in with Google",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)


class NotSsoUser(ForbiddenError):
    """SSO-only operation attempted on a local account."""

    reason = "not_sso_account"

    def __init__(
        self, message: str = "operation is only available for Google sign-in accounts", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class EmailAlreadyInUse(ConflictError):
    reason = "email_in_use"

    def __init__(self, message: str = "email is already in use", **kwargs) -> None:
        super().__init__(message, **kwargs)


class EmailMismatch(ValidationError):
    reason = "email_mismatch"

    def __init__(
        self, message: str = "verified email does not match the expected address", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class RateLimited(RateLimitedError):
    reason = "rate_limited"

    def __init__(
        self, retry_after: int, message: str = "too many requests; try again later", **kwargs
    ) -> None:
        self.retry_after = max(1, int(retry_after))
        detail = dict(kwargs.pop("detail", None) or {})
        detail.setdefault("retry_after", self.retry_after)
        super().__init__(message, detail=detail, **kwargs)


class DependencyUnavailable(ServerError):
    reason = "dependency_unavailable"

    def __init__(
        self, message: str = "a required dependency is unavailable", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "InvalidCredentials",
    "TokenInvalid",
    "TokenExpired",
    "TokenRevoked",
    "AccountNotActivated",
    "AccountDisabled",
    "ForbiddenForSsoUser",
    "NotSsoUser",
    "EmailAlreadyInUse",
    "EmailMismatch",
    "RateLimited",
    "DependencyUnavailable",
]
