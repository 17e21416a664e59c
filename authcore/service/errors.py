from __future__ import annotations

import contextlib
from typing import Any, Iterator, Optional

from authcore.logging import get_logger

logger = get_logger(__name__)


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each exception class defines an HTTP-style ``status_code``, a stable
    family ``error_code`` and a ``kind`` naming the specific failure:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500, 502)

    Leaf classes carry a short default message suitable for end users, so
    callers can raise them without arguments.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    kind: str = "validation_error"
    default_message: str = "Request could not be processed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class InitializationError(Exception):
    """Raised when a service cannot be constructed from its configuration."""


# Families


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"
    kind = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    kind = "unauthorized"
    default_message = "Authentication required"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"
    kind = "forbidden"
    default_message = "Access denied"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    kind = "not_found"
    default_message = "Resource not found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"
    kind = "conflict"
    default_message = "Resource already exists"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"
    kind = "rate_limited"
    default_message = "Too many requests, try again later"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    kind = "server_error"
    default_message = "Internal server error"


class UpstreamError(ServerError):
    """An outbound collaborator (identity provider, mail) failed (502)."""
    status_code = 502
    kind = "upstream_error"
    default_message = "An upstream service failed, try again later"


# Validation


class InvalidEmailError(ValidationError):
    kind = "invalid_email"
    default_message = "Email address format is invalid"


class InvalidEmailDomainError(ValidationError):
    kind = "invalid_email_domain"
    default_message = "This email address cannot be used to sign up"


class OTPExpiredError(ValidationError):
    kind = "otp_expired"
    default_message = "The verification code has expired"


class OTPMismatchError(ValidationError):
    kind = "otp_mismatch"
    default_message = "The verification code is incorrect, try again"


class WeakPasswordError(ValidationError):
    kind = "weak_password"
    default_message = "Password must be between 8 and 128 characters"


class InvalidResetTokenError(ValidationError):
    kind = "invalid_reset_token"
    default_message = "The password reset token is invalid or has expired"


# Authentication


class InvalidCredentialsError(AuthenticationError):
    kind = "invalid_credentials"
    default_message = "Invalid email or password"


class InvalidRefreshTokenError(AuthenticationError):
    kind = "invalid_refresh_token"
    default_message = "Refresh token is invalid or has expired"


class InvalidAccessTokenError(AuthenticationError):
    kind = "invalid_access_token"
    default_message = "Access token is invalid or has expired"


# Forbidden


class AccountNotActivatedError(ForbiddenError):
    kind = "account_not_activated"
    default_message = "This account has not been activated"


class EmailNotConfirmedError(ForbiddenError):
    kind = "email_not_confirmed"
    default_message = (
        "Email address is not confirmed yet. A new confirmation email has been sent"
    )


# Not found


class UserNotFoundError(NotFoundError):
    kind = "user_not_found"
    default_message = "No account exists for this email address"


class RoleNotConfiguredError(NotFoundError):
    kind = "role_not_configured"
    default_message = "Role is not available, contact an administrator"


class NoActiveOTPError(NotFoundError):
    kind = "no_active_otp"
    default_message = "The verification code is invalid or has expired"


# Conflict


class EmailAlreadyRegisteredError(ConflictError):
    kind = "email_already_registered"
    default_message = "This email address is already registered"


class EmailAlreadyRegisteredUpstreamError(ConflictError):
    kind = "email_already_registered_upstream"
    default_message = "This email address is already registered with the identity provider"


# Rate limiting


class TooManyAttemptsError(RateLimitedError):
    kind = "too_many_attempts"
    default_message = "Maximum number of verification attempts reached"


class ResendThrottledError(RateLimitedError):
    kind = "resend_throttled"
    default_message = "Please wait a moment before requesting a new code"


# Upstream and internal


class DeliveryFailedError(UpstreamError):
    kind = "delivery_failed"
    default_message = "The verification code could not be sent to your email"


class IdentityProviderUnavailableError(UpstreamError):
    kind = "identity_provider_unavailable"
    default_message = "The identity provider is unavailable, try again later"


class InternalError(ServerError):
    kind = "internal_error"


@contextlib.contextmanager
def store_errors(operation: str, **context: Any) -> Iterator[None]:
    """Translate unexpected collaborator failures into ``InternalError``.

    Service errors pass through untouched; anything else is logged with its
    type and re-raised as ``InternalError`` chained to the original.
    """
    try:
        yield
    except ServiceError:
        raise
    except Exception as exc:
        logger.error(
            "store_operation_failed",
            operation=operation,
            error_type=type(exc).__name__,
            error=str(exc),
            **context,
        )
        raise InternalError(f"failed to {operation}") from exc


__all__ = [
    "ServiceError",
    "InitializationError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "UpstreamError",
    "InvalidEmailError",
    "InvalidEmailDomainError",
    "OTPExpiredError",
    "OTPMismatchError",
    "WeakPasswordError",
    "InvalidResetTokenError",
    "InvalidCredentialsError",
    "InvalidRefreshTokenError",
    "InvalidAccessTokenError",
    "AccountNotActivatedError",
    "EmailNotConfirmedError",
    "UserNotFoundError",
    "RoleNotConfiguredError",
    "NoActiveOTPError",
    "EmailAlreadyRegisteredError",
    "EmailAlreadyRegisteredUpstreamError",
    "TooManyAttemptsError",
    "ResendThrottledError",
    "DeliveryFailedError",
    "IdentityProviderUnavailableError",
    "InternalError",
    "store_errors",
]
