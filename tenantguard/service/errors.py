from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code`` that
    clients can branch on. The message is safe to show to the caller.
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
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class UnauthenticatedError(AuthenticationError):
    """No bearer credential was presented."""
    pass


class InvalidCredentialsError(AuthenticationError):
    error_code = "invalid_credentials"


class InvalidTokenError(AuthenticationError):
    error_code = "invalid_token"


class TokenExpiredError(AuthenticationError):
    error_code = "token_expired"


class MFAIncompleteError(AuthenticationError):
    """An MFA step token was presented where a full access token is required."""
    error_code = "mfa_incomplete"


class InvalidMFACodeError(AuthenticationError):
    error_code = "invalid_mfa_code"


class InvalidRecoveryCodeError(AuthenticationError):
    error_code = "invalid_recovery_code"


class InvalidRefreshTokenError(AuthenticationError):
    error_code = "invalid_refresh_token"


class SessionRevokedError(AuthenticationError):
    """Token was retired by logout or its generation no longer matches."""
    error_code = "session_revoked"


class SessionHijackSuspectedError(AuthenticationError):
    """A refresh token that was already rotated away was presented again."""
    error_code = "session_hijack_suspected"


class IncorrectPasswordError(AuthenticationError):
    error_code = "incorrect_password"


class UserGoneError(AuthenticationError):
    """The token subject no longer exists."""
    error_code = "user_gone"


class PasswordChangedError(AuthenticationError):
    """The password changed after the token was issued."""
    error_code = "password_changed"


class NoActiveSessionError(ServiceError):
    status_code = 400
    error_code = "no_active_session"


class InvalidOrExpiredResetTokenError(ServiceError):
    status_code = 400
    error_code = "invalid_reset_token"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountDeactivatedError(ForbiddenError):
    error_code = "account_deactivated"


class TenantInactiveError(ForbiddenError):
    error_code = "tenant_inactive"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class UserNotFoundError(NotFoundError):
    error_code = "user_not_found"


class SessionNotFoundError(NotFoundError):
    error_code = "session_not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class DeliveryError(ServiceError):
    """Outbound email could not be handed to the mail server (502)."""
    status_code = 502
    error_code = "delivery_failed"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "UnauthenticatedError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "TokenExpiredError",
    "MFAIncompleteError",
    "InvalidMFACodeError",
    "InvalidRecoveryCodeError",
    "InvalidRefreshTokenError",
    "SessionRevokedError",
    "SessionHijackSuspectedError",
    "IncorrectPasswordError",
    "UserGoneError",
    "PasswordChangedError",
    "NoActiveSessionError",
    "InvalidOrExpiredResetTokenError",
    "ForbiddenError",
    "AccountDeactivatedError",
    "TenantInactiveError",
    "NotFoundError",
    "UserNotFoundError",
    "SessionNotFoundError",
    "ConflictError",
    "DeliveryError",
    "ServerError",
]
