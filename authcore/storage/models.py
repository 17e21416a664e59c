from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OTPPurpose(str, Enum):
    """Which flow an OTP record belongs to; scopes the one-active-record rule."""

    REGISTRATION = "register"
    PASSWORD_RESET = "reset_password"


@dataclass
class Role:
    id: int
    name: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class User:
    id: str
    email: str
    name: str
    password_hash: Optional[str] = None
    role_id: Optional[int] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class OTPRecord:
    id: int
    email: str
    purpose: OTPPurpose
    code_hash: str
    expires_at: datetime
    max_attempts: int
    attempts: int = 0
    is_used: bool = False
    # Registration only: captured at initiation, applied when the code verifies
    pending_name: str = ""
    pending_password_hash: str = ""
    resend_count: int = 0
    last_resend_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    @property
    def remaining_attempts(self) -> int:
        return max(self.max_attempts - self.attempts, 0)


@dataclass
class RefreshToken:
    id: int
    user_id: str
    token_hash: str
    expires_at: datetime
    is_revoked: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        return not self.is_revoked and (now or utcnow()) < self.expires_at


@dataclass
class PasswordResetToken:
    id: int
    email: str
    token_hash: str
    expires_at: datetime
    is_used: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        return not self.is_used and (now or utcnow()) < self.expires_at
