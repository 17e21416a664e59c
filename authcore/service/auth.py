from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from authcore.config import Settings
from authcore.logging import email_hash, get_logger
from authcore.schemas import AuthResponse, AuthUserResponse, RefreshTokenResponse
from authcore.service.email_policy import EmailDomainPolicy, normalize_email
from authcore.service.errors import (
    AccountNotActivatedError,
    EmailAlreadyRegisteredError,
    EmailAlreadyRegisteredUpstreamError,
    EmailNotConfirmedError,
    IdentityProviderUnavailableError,
    InternalError,
    InvalidAccessTokenError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    RoleNotConfiguredError,
    ServiceError,
    store_errors,
)
from authcore.service.hashing import CredentialHasher, TokenHasher, generate_token
from authcore.service.identity import IdentityDelegate, IdentityProviderError
from authcore.service.otp import OTPService, RoleStore, UserStore, validate_password
from authcore.service.tokens import AccessTokenSigner
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import OTPPurpose, RefreshToken, Role, User

logger = get_logger(__name__)

# Provider classifications meaning "this refresh token will never work again"
_DEAD_REFRESH_CODES = frozenset({"invalid_token", "refresh_token_expired", "invalid_credentials"})


@dataclass
class AuthContext:
    user_id: str
    email: str
    role: str


class RefreshTokenStore(Protocol):
    def create_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshToken: ...

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]: ...

    def revoke_refresh_token(self, token_id: int) -> bool: ...

    def revoke_user_refresh_tokens(self, user_id: str) -> int: ...


class AuthSessionEngine(Protocol):
    """Session capability shared by the delegated and local variants.

    Token-issuing operations return ``(refresh_token, payload)``; the refresh
    token plaintext is handed out once and never logged.
    """

    def register(self, name: str, email: str, password: str) -> tuple[str, AuthResponse]: ...

    def login(self, email: str, password: str) -> tuple[str, AuthResponse]: ...

    def refresh(self, refresh_token: str) -> tuple[str, RefreshTokenResponse]: ...

    def logout(self, access_token: str) -> None: ...

    def request_password_reset(self, email: str) -> None: ...

    def authenticate(self, access_token: str) -> AuthContext: ...


class _SessionEngineBase:
    def __init__(
        self,
        users: UserStore,
        roles: RoleStore,
        settings: Settings,
        *,
        policy: Optional[EmailDomainPolicy] = None,
    ) -> None:
        self.users = users
        self.roles = roles
        self.settings = settings
        self.policy = policy or EmailDomainPolicy(
            settings.email_domain,
            settings.email_role_map,
            self_registration_roles=settings.self_registration_roles,
        )
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _ensure_new_email(self, email: str) -> None:
        with store_errors("look up user", email_hash=email_hash(email)):
            existing = self.users.get_user_by_email(email)
        if existing is not None:
            raise EmailAlreadyRegisteredError()

    def _require_role(self, role_name: str) -> Role:
        with store_errors("look up role", role=role_name):
            role = self.roles.get_role_by_name(role_name)
        if role is None:
            raise RoleNotConfiguredError()
        return role

    def _role_label(self, user: User) -> str:
        """Best-effort role name for response payloads; empty on any failure."""
        if user.role_id is None:
            return ""
        try:
            role = self.roles.get_role(user.role_id)
        except Exception as exc:
            self.logger.warning(
                "role_lookup_failed",
                user_id=user.id,
                role_id=user.role_id,
                error_type=type(exc).__name__,
            )
            return ""
        return role.name if role else ""

    @staticmethod
    def _user_payload(user: User, role_name: str) -> AuthUserResponse:
        return AuthUserResponse(
            id=user.id,
            email=user.email,
            name=user.name,
            role=role_name,
            is_active=user.is_active,
            created_at=user.created_at,
        )


class DelegatedAuthService(_SessionEngineBase):
    """Sessions owned by an external identity provider.

    Credentials and tokens live with the provider; this service keeps the
    local profile row in sync and compensates when a multi-system write
    fails halfway.
    """

    def __init__(
        self,
        users: UserStore,
        roles: RoleStore,
        identity: IdentityDelegate,
        settings: Settings,
        *,
        policy: Optional[EmailDomainPolicy] = None,
    ) -> None:
        super().__init__(users, roles, settings, policy=policy)
        self.identity = identity

    def register(self, name: str, email: str, password: str) -> tuple[str, AuthResponse]:
        email = normalize_email(email)
        role_name = self.policy.self_registration_role(email)
        validate_password(password)
        self._ensure_new_email(email)
        role = self._require_role(role_name)
        name = (name or "").strip() or email

        try:
            session = self.identity.register(email, password, name)
        except IdentityProviderError as exc:
            if exc.code == "email_taken":
                raise EmailAlreadyRegisteredUpstreamError() from exc
            self.logger.error(
                "identity_register_failed",
                email_hash=email_hash(email),
                classification=exc.code,
            )
            raise InternalError("failed to create identity") from exc

        external_id = session.user.id
        try:
            user = self.users.save_user(
                User(id=external_id, email=email, name=name, role_id=role.id, is_active=True)
            )
        except Exception as exc:
            self.logger.error(
                "local_user_create_failed",
                external_user_id=external_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            try:
                self.identity.delete_user(external_id)
            except Exception as delete_exc:
                self.logger.error(
                    "identity_rollback_failed",
                    external_user_id=external_id,
                    error_type=type(delete_exc).__name__,
                )
            else:
                self.logger.info("identity_rolled_back", external_user_id=external_id)
            raise InternalError("failed to create local user") from exc

        self.logger.info(
            "user_registered",
            user_id=user.id,
            role=role.name,
            needs_confirmation=not session.has_tokens,
        )
        return session.refresh_token, self._auth_response(
            user, role.name, session.access_token, session.token_type, session.expires_in
        )

    def login(self, email: str, password: str) -> tuple[str, AuthResponse]:
        email = normalize_email(email)
        try:
            session = self.identity.login(email, password)
        except IdentityProviderError as exc:
            if exc.code == "email_not_confirmed":
                try:
                    self.identity.resend_confirmation(email)
                except Exception as resend_exc:
                    self.logger.warning(
                        "confirmation_resend_failed",
                        email_hash=email_hash(email),
                        error_type=type(resend_exc).__name__,
                    )
                raise EmailNotConfirmedError() from exc
            if exc.code == "transport":
                raise IdentityProviderUnavailableError() from exc
            self.logger.info(
                "login_rejected", email_hash=email_hash(email), classification=exc.code
            )
            raise InvalidCredentialsError() from exc

        with store_errors("look up user", email_hash=email_hash(email)):
            user = self.users.get_user_by_email(email)

        role_name: Optional[str] = None
        if user is None:
            user, role_name = self._sync_user(email, session.user.id, session.user.name)

        if not user.is_active:
            self.logger.info("login_inactive_account", user_id=user.id)
            raise AccountNotActivatedError()

        if role_name is None:
            role_name = self._role_label(user)
        self.logger.info("login_succeeded", user_id=user.id)
        return session.refresh_token, self._auth_response(
            user, role_name, session.access_token, session.token_type, session.expires_in
        )

    def refresh(self, refresh_token: str) -> tuple[str, RefreshTokenResponse]:
        if not refresh_token:
            raise InvalidRefreshTokenError()
        try:
            session = self.identity.refresh(refresh_token)
        except IdentityProviderError as exc:
            if exc.code in _DEAD_REFRESH_CODES:
                raise InvalidRefreshTokenError() from exc
            self.logger.error("identity_refresh_failed", classification=exc.code)
            raise InternalError("failed to refresh session") from exc
        return session.refresh_token, RefreshTokenResponse(
            access_token=session.access_token,
            token_type=session.token_type,
            expires_in=session.expires_in,
            expires_at=self._expires_at(session.expires_in),
        )

    def logout(self, access_token: str) -> None:
        try:
            self.identity.logout(access_token)
        except IdentityProviderError as exc:
            self.logger.error("identity_logout_failed", classification=exc.code)
            raise InternalError("failed to log out") from exc

    def request_password_reset(self, email: str) -> None:
        email = normalize_email(email)
        try:
            self.identity.request_password_reset(email, self.settings.password_reset_redirect)
        except IdentityProviderError as exc:
            self.logger.error(
                "identity_password_reset_failed",
                email_hash=email_hash(email),
                classification=exc.code,
            )
            raise InternalError("failed to request password reset") from exc
        self.logger.info("password_reset_requested", email_hash=email_hash(email))

    def delete_user(self, user_id: str) -> bool:
        """Administrative delete: provider identity first, then the local row."""
        try:
            self.identity.delete_user(user_id)
        except IdentityProviderError as exc:
            self.logger.error(
                "identity_delete_failed", user_id=user_id, classification=exc.code
            )
            raise InternalError("failed to delete identity") from exc
        with store_errors("delete user", user_id=user_id):
            deleted = self.users.delete_user(user_id)
        self.logger.info("user_deleted", user_id=user_id, local_row=deleted)
        return deleted

    def authenticate(self, access_token: str) -> AuthContext:
        if not access_token:
            raise InvalidAccessTokenError()
        try:
            identity_user = self.identity.verify_token(access_token)
        except IdentityProviderError as exc:
            if exc.code == "transport":
                raise IdentityProviderUnavailableError() from exc
            raise InvalidAccessTokenError() from exc
        with store_errors("look up user", user_id=identity_user.id):
            user = self.users.get_user(identity_user.id)
        if user is None:
            raise InvalidAccessTokenError()
        if not user.is_active:
            raise AccountNotActivatedError()
        return AuthContext(user_id=user.id, email=user.email, role=self._role_label(user))

    def _sync_user(self, email: str, external_id: str, provider_name: str) -> tuple[User, str]:
        """Create the missing local row for an identity that exists upstream."""
        try:
            role = self._require_role(self.policy.role_for(email))
            with store_errors("sync user", email_hash=email_hash(email)):
                user = self.users.save_user(
                    User(
                        id=external_id,
                        email=email,
                        name=provider_name or email,
                        role_id=role.id,
                        is_active=True,
                    )
                )
        except InternalError:
            raise
        except ServiceError as exc:
            self.logger.error(
                "user_sync_failed", email_hash=email_hash(email), kind=exc.kind
            )
            raise InternalError("failed to sync user") from exc
        self.logger.info("user_synced_from_identity", user_id=user.id, role=role.name)
        return user, role.name

    def _expires_at(self, expires_in: int) -> Optional[int]:
        if not expires_in:
            return None
        return int((self._now() + timedelta(seconds=expires_in)).timestamp())

    def _auth_response(
        self,
        user: User,
        role_name: str,
        access_token: str,
        token_type: str,
        expires_in: int,
    ) -> AuthResponse:
        return AuthResponse(
            user=self._user_payload(user, role_name),
            access_token=access_token,
            token_type=token_type or "bearer",
            expires_in=expires_in,
            expires_at=self._expires_at(expires_in),
            needs_confirmation=not access_token,
        )


class LocalAuthService(_SessionEngineBase):
    """Sessions issued here: argon2id passwords, HS256 access tokens, rotated refresh tokens.

    Refresh tokens are 256-bit random values stored only as SHA-256 digests.
    Every refresh revokes the presented token before minting a replacement;
    the store's revoke reports whether this call flipped the flag, so two
    concurrent refreshes with the same token cannot both succeed.
    """

    def __init__(
        self,
        users: UserStore,
        roles: RoleStore,
        refresh_tokens: RefreshTokenStore,
        signer: AccessTokenSigner,
        settings: Settings,
        *,
        hasher: CredentialHasher,
        token_hasher: Optional[TokenHasher] = None,
        otp_service: Optional[OTPService] = None,
        policy: Optional[EmailDomainPolicy] = None,
    ) -> None:
        super().__init__(users, roles, settings, policy=policy)
        self.refresh_tokens = refresh_tokens
        self.signer = signer
        self.hasher = hasher
        self.token_hasher = token_hasher or TokenHasher()
        self.otp_service = otp_service
        self.refresh_ttl = timedelta(minutes=settings.refresh_token_ttl_minutes)

    def register(self, name: str, email: str, password: str) -> tuple[str, AuthResponse]:
        email = normalize_email(email)
        role_name = self.policy.self_registration_role(email)
        validate_password(password)
        self._ensure_new_email(email)
        role = self._require_role(role_name)

        with store_errors("create user", email_hash=email_hash(email)):
            try:
                user = self.users.create_user(
                    email,
                    (name or "").strip() or email,
                    password_hash=self.hasher.hash_password(password),
                    role_id=role.id,
                    is_active=True,
                )
            except ConstraintViolation as exc:
                raise EmailAlreadyRegisteredError() from exc
        self.logger.info("user_registered", user_id=user.id, role=role.name)
        return self._issue_session(user, role.name)

    def login(self, email: str, password: str) -> tuple[str, AuthResponse]:
        email = normalize_email(email)
        with store_errors("look up user", email_hash=email_hash(email)):
            user = self.users.get_user_by_email(email)
        # Same failure for unknown email, missing hash and wrong password
        if user is None or not self.hasher.verify_password(user.password_hash, password):
            self.logger.info("login_rejected", email_hash=email_hash(email))
            raise InvalidCredentialsError()
        if not user.is_active:
            self.logger.info("login_inactive_account", user_id=user.id)
            raise AccountNotActivatedError()
        self.logger.info("login_succeeded", user_id=user.id)
        return self._issue_session(user, self._role_label(user))

    def refresh(self, refresh_token: str) -> tuple[str, RefreshTokenResponse]:
        if not refresh_token:
            raise InvalidRefreshTokenError()
        token_hash = self.token_hasher.digest(refresh_token)
        with store_errors("load refresh token"):
            stored = self.refresh_tokens.get_refresh_token_by_hash(token_hash)
        if stored is None or not stored.is_usable(self._now()):
            raise InvalidRefreshTokenError()
        with store_errors("revoke refresh token", token_id=stored.id):
            revoked = self.refresh_tokens.revoke_refresh_token(stored.id)
        if not revoked:
            self.logger.warning(
                "refresh_token_reuse", user_id=stored.user_id, token_id=stored.id
            )
            raise InvalidRefreshTokenError()

        with store_errors("look up user", user_id=stored.user_id):
            user = self.users.get_user(stored.user_id)
        if user is None:
            raise InvalidRefreshTokenError()
        if not user.is_active:
            raise AccountNotActivatedError()

        new_refresh, response = self._issue_session(user, self._role_label(user))
        self.logger.info("refresh_token_rotated", user_id=user.id)
        return new_refresh, RefreshTokenResponse(
            access_token=response.access_token,
            token_type=response.token_type,
            expires_in=response.expires_in,
            expires_at=response.expires_at,
        )

    def logout(self, access_token: str) -> None:
        claims = self.signer.decode(access_token)
        if claims is None:
            raise InvalidAccessTokenError()
        with store_errors("revoke sessions", user_id=claims["sub"]):
            revoked = self.refresh_tokens.revoke_user_refresh_tokens(claims["sub"])
        self.logger.info("logout", user_id=claims["sub"], revoked=revoked)

    def request_password_reset(self, email: str) -> None:
        if self.otp_service is None:
            raise InternalError("password reset is not configured")
        self.otp_service.initiate(OTPPurpose.PASSWORD_RESET, email)

    def authenticate(self, access_token: str) -> AuthContext:
        claims = self.signer.decode(access_token)
        if claims is None:
            raise InvalidAccessTokenError()
        with store_errors("look up user", user_id=claims["sub"]):
            user = self.users.get_user(claims["sub"])
        if user is None:
            raise InvalidAccessTokenError()
        if not user.is_active:
            raise AccountNotActivatedError()
        return AuthContext(user_id=user.id, email=user.email, role=str(claims.get("role") or ""))

    def _issue_session(self, user: User, role_name: str) -> tuple[str, AuthResponse]:
        refresh_token = generate_token()
        with store_errors("store refresh token", user_id=user.id):
            self.refresh_tokens.create_refresh_token(
                user.id,
                self.token_hasher.digest(refresh_token),
                self._now() + self.refresh_ttl,
            )
        access_token, exp = self.signer.issue(
            user_id=user.id, email=user.email, role=role_name
        )
        return refresh_token, AuthResponse(
            user=self._user_payload(user, role_name),
            access_token=access_token,
            token_type="bearer",
            expires_in=self.signer.expires_in,
            expires_at=exp,
        )
