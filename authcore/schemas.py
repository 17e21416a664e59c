from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from authcore.logging import sanitize_error_message
from authcore.service.errors import ServerError, ServiceError

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "rate_limited",
    "server_error",
})


class OTPResponse(BaseModel):
    """Acknowledgement that a code was sent; never carries the code."""

    message: str
    expires_in: int = Field(..., ge=0, description="Code lifetime in seconds")


class AuthUserResponse(BaseModel):
    id: str
    email: str
    name: str
    role: str = ""
    is_active: bool = True
    created_at: Optional[datetime] = None


class OTPVerification(BaseModel):
    message: str
    email: str
    purpose: str
    # Registration: the account created from the pending sign-up
    user: Optional[AuthUserResponse] = None
    # Password reset: single-use token for confirm_password_reset
    reset_token: Optional[str] = None
    reset_token_expires_in: Optional[int] = None


class AuthResponse(BaseModel):
    user: AuthUserResponse
    access_token: str = ""
    token_type: str = "bearer"
    expires_in: int = 0
    expires_at: Optional[int] = None
    needs_confirmation: bool = False


class RefreshTokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    expires_at: Optional[int] = None


class ErrorBody(BaseModel):
    """User-visible failure: stable family code, specific kind, short message."""

    code: str
    kind: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


def error_body(exc: Exception) -> ErrorBody:
    """Render any exception as a caller-safe ``ErrorBody``.

    Service errors keep their message (server-side ones are sanitized) and
    only whitelisted detail keys; anything else becomes a generic server error.
    """
    if not isinstance(exc, ServiceError):
        return ErrorBody(
            code="server_error",
            kind="internal_error",
            message=ServerError.default_message,
        )
    message = exc.message
    if isinstance(exc, ServerError):
        message = sanitize_error_message(message)
    details = {
        key: value
        for key, value in exc.detail.items()
        if key in {"retry_after_seconds", "remaining_attempts", "field"}
    }
    return ErrorBody(
        code=exc.error_code,
        kind=exc.kind,
        message=message,
        details=details or None,
    )
