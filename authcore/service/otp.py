from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Mapping, Optional, Protocol

from authcore.config import Settings
from authcore.logging import email_hash, get_logger
from authcore.schemas import AuthUserResponse, OTPResponse, OTPVerification
from authcore.service.email_policy import EmailDomainPolicy, normalize_email
from authcore.service.errors import (
    DeliveryFailedError,
    EmailAlreadyRegisteredError,
    InvalidResetTokenError,
    NoActiveOTPError,
    OTPExpiredError,
    OTPMismatchError,
    ResendThrottledError,
    RoleNotConfiguredError,
    TooManyAttemptsError,
    UserNotFoundError,
    WeakPasswordError,
    store_errors,
)
from authcore.service.hashing import (
    CredentialHasher,
    TokenHasher,
    generate_numeric_code,
    generate_token,
)
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    OTPPurpose,
    OTPRecord,
    PasswordResetToken,
    Role,
    User,
)

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128


class UserStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_user(
        self,
        email: str,
        name: str,
        *,
        user_id: Optional[str] = None,
        password_hash: Optional[str] = None,
        role_id: Optional[int] = None,
        is_active: bool = True,
    ) -> User: ...

    def save_user(self, user: User) -> User: ...

    def update_password(self, email: str, password_hash: str) -> bool: ...

    def delete_user(self, user_id: str) -> bool: ...


class RoleStore(Protocol):
    def get_role_by_name(self, name: str) -> Optional[Role]: ...

    def get_role(self, role_id: int) -> Optional[Role]: ...


class OTPStore(Protocol):
    def create_otp(
        self,
        email: str,
        purpose: OTPPurpose,
        code_hash: str,
        expires_at: datetime,
        max_attempts: int,
        *,
        pending_name: str = "",
        pending_password_hash: str = "",
    ) -> OTPRecord: ...

    def get_active_otp(self, email: str, purpose: OTPPurpose) -> Optional[OTPRecord]: ...

    def mark_otp_used(self, otp_id: int) -> bool: ...

    def increment_otp_attempts(self, otp_id: int) -> int: ...

    def update_otp_resend_info(
        self, otp_id: int, resend_count: int, last_resend_at: datetime
    ) -> bool: ...

    def delete_otps(
        self, email: str, purpose: OTPPurpose, *, keep_id: Optional[int] = None
    ) -> int: ...

    def purge_expired_otps(self, now: Optional[datetime] = None) -> int: ...


class PasswordResetTokenStore(Protocol):
    def create_reset_token(
        self, email: str, token_hash: str, expires_at: datetime
    ) -> PasswordResetToken: ...

    def get_reset_token_by_hash(self, token_hash: str) -> Optional[PasswordResetToken]: ...

    def mark_reset_token_used(self, token_id: int) -> bool: ...

    def purge_expired_reset_tokens(self, now: Optional[datetime] = None) -> int: ...


class SessionRevoker(Protocol):
    def revoke_user_refresh_tokens(self, user_id: str) -> int: ...


class MailSender(Protocol):
    def send_otp_email(self, email: str, code: str, template_id: str) -> bool: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _code_context(purpose: OTPPurpose, email: str) -> str:
    # Binds a stored digest to the session it was issued for
    return f"{purpose.value}:{email}"


def _session_ended_message(purpose: OTPPurpose) -> str:
    if purpose == OTPPurpose.REGISTRATION:
        return "Your sign-up session has ended, please register again"
    return "Your reset session has ended, please start again"


class ResendRateLimiter:
    """Allows a resend when under the count ceiling and past the cooldown."""

    def __init__(self, max_resends: int, cooldown_seconds: int) -> None:
        self.max_resends = max_resends
        self.cooldown = timedelta(seconds=cooldown_seconds)

    def can_resend(
        self,
        resend_count: int,
        last_resend_at: Optional[datetime],
        now: Optional[datetime] = None,
    ) -> tuple[bool, int]:
        """Return ``(allowed, retry_after_seconds)``.

        ``retry_after_seconds`` is 0 when allowed or when the count ceiling
        is reached (waiting does not help then).
        """
        if resend_count >= self.max_resends:
            return False, 0
        if last_resend_at is None:
            return True, 0
        elapsed = (now or _utcnow()) - last_resend_at
        # Exactly at the cooldown boundary is allowed
        if elapsed >= self.cooldown:
            return True, 0
        return False, max(1, math.ceil((self.cooldown - elapsed).total_seconds()))


class OTPValidator:
    """Usability checks run before any hash comparison."""

    def __init__(self, max_attempts: int, expiry_minutes: int) -> None:
        self.max_attempts = max_attempts
        self.expiry_minutes = expiry_minutes

    @staticmethod
    def is_usable(attempts: int, max_attempts: int) -> bool:
        return attempts < max_attempts

    def check(self, record: OTPRecord, now: Optional[datetime] = None) -> None:
        # Ceiling first so exhausted records never reach the hash comparison
        if not self.is_usable(record.attempts, record.max_attempts):
            raise TooManyAttemptsError(detail={"remaining_attempts": 0})
        if record.is_expired(now):
            raise OTPExpiredError()

    def expires_at(self, now: datetime) -> datetime:
        return now + timedelta(minutes=self.expiry_minutes)


def validate_password(password: Optional[str]) -> str:
    if not password or len(password) < MIN_PASSWORD_LENGTH or len(password) > MAX_PASSWORD_LENGTH:
        raise WeakPasswordError()
    return password


class OTPService:
    """Generate, persist, deliver, verify and consume one-time codes.

    Serves two flows keyed by ``OTPPurpose``: registration (the code proves
    ownership of the address before the local account is created) and
    password reset (the code is exchanged for a single-use reset token).
    Atomicity of individual record operations is delegated to the store.
    """

    def __init__(
        self,
        users: UserStore,
        roles: RoleStore,
        otps: OTPStore,
        reset_tokens: PasswordResetTokenStore,
        mailer: MailSender,
        settings: Settings,
        *,
        hasher: CredentialHasher,
        token_hasher: Optional[TokenHasher] = None,
        policy: Optional[EmailDomainPolicy] = None,
        sessions: Optional[SessionRevoker] = None,
        template_ids: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.users = users
        self.roles = roles
        self.otps = otps
        self.reset_tokens = reset_tokens
        self.mailer = mailer
        self.settings = settings
        self.hasher = hasher
        self.token_hasher = token_hasher or TokenHasher()
        self.policy = policy or EmailDomainPolicy(
            settings.email_domain,
            settings.email_role_map,
            self_registration_roles=settings.self_registration_roles,
        )
        self.sessions = sessions
        self.template_ids = dict(template_ids or settings.otp_template_ids)

        otp_settings = settings.otp_settings
        self.code_length = otp_settings["length"]
        self.validator = OTPValidator(
            otp_settings["max_attempts"], otp_settings["expiry_minutes"]
        )
        self.rate_limiter = ResendRateLimiter(
            otp_settings["resend_max_times"], otp_settings["resend_cooldown_seconds"]
        )
        self.reset_token_ttl = timedelta(minutes=settings.password_reset_token_ttl_minutes)
        self.logger = logger

    def _now(self) -> datetime:
        return _utcnow()

    @property
    def expires_in(self) -> int:
        return self.validator.expiry_minutes * 60

    def initiate(
        self,
        purpose: OTPPurpose,
        email: str,
        name: Optional[str] = None,
        password: Optional[str] = None,
    ) -> OTPResponse:
        purpose = OTPPurpose(purpose)
        email = normalize_email(email)
        pending_name = ""
        pending_password_hash = ""

        if purpose == OTPPurpose.REGISTRATION:
            self.policy.self_registration_role(email)
            with store_errors("look up user", email_hash=email_hash(email)):
                existing = self.users.get_user_by_email(email)
            if existing is not None:
                raise EmailAlreadyRegisteredError()
            pending_name = (name or "").strip()
            if password is not None:
                pending_password_hash = self.hasher.hash_password(validate_password(password))
        else:
            with store_errors("look up user", email_hash=email_hash(email)):
                existing = self.users.get_user_by_email(email)
            if existing is None:
                raise UserNotFoundError()

        record = self._issue_code(
            purpose,
            email,
            pending_name=pending_name,
            pending_password_hash=pending_password_hash,
        )
        self.logger.info(
            "otp_initiated",
            purpose=purpose.value,
            email_hash=email_hash(email),
            record_id=record.id,
        )
        if purpose == OTPPurpose.REGISTRATION:
            message = "A verification code has been sent to your email"
        else:
            message = "A password reset code has been sent to your email"
        return OTPResponse(message=message, expires_in=self.expires_in)

    def verify(self, purpose: OTPPurpose, email: str, code: str) -> OTPVerification:
        purpose = OTPPurpose(purpose)
        email = normalize_email(email)
        with store_errors("load verification code", email_hash=email_hash(email)):
            record = self.otps.get_active_otp(email, purpose)
        if record is None:
            raise NoActiveOTPError()

        now = self._now()
        self.validator.check(record, now)

        submitted = (code or "").strip()
        if not self.hasher.verify_code(
            record.code_hash, submitted, context=_code_context(purpose, email)
        ):
            with store_errors("record failed attempt", record_id=record.id):
                record.attempts = self.otps.increment_otp_attempts(record.id)
            self.logger.info(
                "otp_mismatch",
                purpose=purpose.value,
                email_hash=email_hash(email),
                attempts=record.attempts,
            )
            raise OTPMismatchError(detail={"remaining_attempts": record.remaining_attempts})

        with store_errors("consume verification code", record_id=record.id):
            consumed = self.otps.mark_otp_used(record.id)
        if not consumed:
            # Lost a race with a concurrent verify or a resend
            raise NoActiveOTPError()

        try:
            if purpose == OTPPurpose.REGISTRATION:
                user = self._materialize_user(email, record)
                result = OTPVerification(
                    message="Email verified, your account has been created",
                    email=email,
                    purpose=purpose.value,
                    user=user,
                )
            else:
                token, ttl = self._issue_reset_token(email, now)
                result = OTPVerification(
                    message="Code verified, please choose a new password",
                    email=email,
                    purpose=purpose.value,
                    reset_token=token,
                    reset_token_expires_in=ttl,
                )
        finally:
            self._cleanup(email, purpose)

        self.logger.info(
            "otp_verified", purpose=purpose.value, email_hash=email_hash(email)
        )
        return result

    def resend(self, purpose: OTPPurpose, email: str) -> OTPResponse:
        purpose = OTPPurpose(purpose)
        email = normalize_email(email)
        with store_errors("load verification code", email_hash=email_hash(email)):
            previous = self.otps.get_active_otp(email, purpose)
        now = self._now()
        if previous is None or previous.is_expired(now):
            raise NoActiveOTPError(_session_ended_message(purpose))

        allowed, retry_after = self.rate_limiter.can_resend(
            previous.resend_count, previous.last_resend_at, now
        )
        if not allowed:
            self.logger.info(
                "otp_resend_throttled",
                purpose=purpose.value,
                email_hash=email_hash(email),
                resend_count=previous.resend_count,
                retry_after_seconds=retry_after,
            )
            if retry_after:
                raise ResendThrottledError(detail={"retry_after_seconds": retry_after})
            raise ResendThrottledError(
                "Resend limit reached, please start again", detail={}
            )

        record = self._issue_code(
            purpose,
            email,
            pending_name=previous.pending_name,
            pending_password_hash=previous.pending_password_hash,
        )
        with store_errors("update resend bookkeeping", record_id=record.id):
            self.otps.delete_otps(email, purpose, keep_id=record.id)
            self.otps.update_otp_resend_info(record.id, previous.resend_count + 1, now)
        self.logger.info(
            "otp_resent",
            purpose=purpose.value,
            email_hash=email_hash(email),
            resend_count=previous.resend_count + 1,
        )
        return OTPResponse(
            message="A new verification code has been sent to your email",
            expires_in=self.expires_in,
        )

    def confirm_password_reset(self, reset_token: str, new_password: str) -> None:
        """Exchange a reset token from ``verify`` for a new password."""
        validate_password(new_password)
        if not reset_token:
            raise InvalidResetTokenError()
        token_hash = self.token_hasher.digest(reset_token)
        with store_errors("load reset token"):
            stored = self.reset_tokens.get_reset_token_by_hash(token_hash)
        if stored is None or not stored.is_usable(self._now()):
            self.logger.warning("password_reset_invalid_token")
            raise InvalidResetTokenError()
        with store_errors("consume reset token", token_id=stored.id):
            consumed = self.reset_tokens.mark_reset_token_used(stored.id)
        if not consumed:
            raise InvalidResetTokenError()

        with store_errors("look up user", email_hash=email_hash(stored.email)):
            user = self.users.get_user_by_email(stored.email)
        if user is None:
            self.logger.warning(
                "password_reset_user_missing", email_hash=email_hash(stored.email)
            )
            raise UserNotFoundError()

        password_hash = self.hasher.hash_password(new_password)
        with store_errors("update password", user_id=user.id):
            updated = self.users.update_password(user.email, password_hash)
        if not updated:
            raise UserNotFoundError()

        if self.sessions is not None:
            try:
                revoked = self.sessions.revoke_user_refresh_tokens(user.id)
            except Exception as exc:
                self.logger.warning(
                    "revoke_sessions_failed", user_id=user.id, error=str(exc)
                )
            else:
                self.logger.info(
                    "sessions_revoked_after_reset", user_id=user.id, revoked=revoked
                )
        self._cleanup(user.email, OTPPurpose.PASSWORD_RESET)
        self.logger.info("password_reset_completed", user_id=user.id)

    def purge_expired(self) -> int:
        now = self._now()
        with store_errors("purge expired records"):
            removed = self.otps.purge_expired_otps(now)
            removed += self.reset_tokens.purge_expired_reset_tokens(now)
        if removed:
            self.logger.info("otp_records_purged", removed=removed)
        return removed

    def _issue_code(
        self,
        purpose: OTPPurpose,
        email: str,
        *,
        pending_name: str,
        pending_password_hash: str,
    ) -> OTPRecord:
        code = generate_numeric_code(self.code_length)
        now = self._now()
        with store_errors("store verification code", email_hash=email_hash(email)):
            record = self.otps.create_otp(
                email,
                purpose,
                self.hasher.digest_code(code, context=_code_context(purpose, email)),
                self.validator.expires_at(now),
                self.validator.max_attempts,
                pending_name=pending_name,
                pending_password_hash=pending_password_hash,
            )

        template_id = self.template_ids.get(purpose.value, purpose.value)
        try:
            delivered = self.mailer.send_otp_email(email, code, template_id)
        except Exception as exc:
            self.logger.error(
                "otp_delivery_error",
                purpose=purpose.value,
                email_hash=email_hash(email),
                error_type=type(exc).__name__,
            )
            delivered = False
        if not delivered:
            # Fail closed: an undelivered code must never be checkable
            try:
                self.otps.mark_otp_used(record.id)
            except Exception as exc:
                self.logger.error(
                    "otp_invalidate_failed", record_id=record.id, error=str(exc)
                )
            self.logger.warning(
                "otp_delivery_failed", purpose=purpose.value, email_hash=email_hash(email)
            )
            raise DeliveryFailedError()
        return record

    def _materialize_user(self, email: str, record: OTPRecord) -> AuthUserResponse:
        role_name = self.policy.role_for(email)
        with store_errors("look up role", role=role_name):
            role = self.roles.get_role_by_name(role_name)
        if role is None:
            raise RoleNotConfiguredError()

        name = record.pending_name or email
        with store_errors("create user", email_hash=email_hash(email)):
            try:
                user = self.users.create_user(
                    email,
                    name,
                    password_hash=record.pending_password_hash or None,
                    role_id=role.id,
                    is_active=True,
                )
            except ConstraintViolation as exc:
                raise EmailAlreadyRegisteredError() from exc
        self.logger.info(
            "user_registered_via_otp", user_id=user.id, role=role.name
        )
        return AuthUserResponse(
            id=user.id,
            email=user.email,
            name=user.name,
            role=role.name,
            is_active=user.is_active,
            created_at=user.created_at,
        )

    def _issue_reset_token(self, email: str, now: datetime) -> tuple[str, int]:
        token = generate_token()
        with store_errors("store reset token", email_hash=email_hash(email)):
            self.reset_tokens.create_reset_token(
                email, self.token_hasher.digest(token), now + self.reset_token_ttl
            )
        return token, int(self.reset_token_ttl.total_seconds())

    def _cleanup(self, email: str, purpose: OTPPurpose) -> None:
        try:
            self.otps.delete_otps(email, purpose)
        except Exception as exc:
            self.logger.warning(
                "otp_cleanup_failed",
                purpose=purpose.value,
                email_hash=email_hash(email),
                error=str(exc),
            )


__all__ = [
    "MailSender",
    "OTPService",
    "OTPStore",
    "OTPValidator",
    "PasswordResetTokenStore",
    "ResendRateLimiter",
    "RoleStore",
    "SessionRevoker",
    "UserStore",
    "validate_password",
]
