from __future__ import annotations

from typing import Optional

from authcore.config import AuthBackend, MailProvider, Settings, get_settings
from authcore.logging import get_logger
from authcore.service.auth import AuthSessionEngine, DelegatedAuthService, LocalAuthService
from authcore.service.email import EmailService, MailtrapSender
from authcore.service.email_policy import EmailDomainPolicy
from authcore.service.errors import InitializationError
from authcore.service.hashing import CredentialHasher, TokenHasher
from authcore.service.identity import IdentityDelegate, SupabaseIdentityDelegate
from authcore.service.otp import MailSender, OTPService
from authcore.service.tokens import AccessTokenSigner
from authcore.storage.errors import StorageError
from authcore.storage.memory import MemoryStore

logger = get_logger(__name__)


class Runtime:
    """Builds every collaborator once and wires them into the two engines.

    Nothing here is global: callers construct a ``Runtime`` at process
    start and pass its services where they are needed. Any invalid
    configuration surfaces as ``InitializationError``.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[MemoryStore] = None,
        mailer: Optional[MailSender] = None,
        identity: Optional[IdentityDelegate] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            auth_backend=self.settings.auth_backend.value,
            mail_provider=self.settings.mail_provider.value,
        )

        try:
            self.store = store or MemoryStore(
                self.settings.state_path, roles=self.settings.seed_roles
            )
        except StorageError as exc:
            logger.error("runtime_store_init_failed", error=str(exc))
            raise InitializationError(f"store initialization failed: {exc}") from exc

        if not self.settings.token_pepper:
            raise InitializationError("TOKEN_PEPPER must be set")
        self.hasher = CredentialHasher(self.settings.token_pepper)
        self.token_hasher = TokenHasher()
        self.policy = EmailDomainPolicy(
            self.settings.email_domain,
            self.settings.email_role_map,
            self_registration_roles=self.settings.self_registration_roles,
        )
        self.mailer = mailer or self._build_mailer()

        self.otp = OTPService(
            self.store,
            self.store,
            self.store,
            self.store,
            self.mailer,
            self.settings,
            hasher=self.hasher,
            token_hasher=self.token_hasher,
            policy=self.policy,
            sessions=self.store,
        )

        self.identity: Optional[IdentityDelegate] = None
        self.signer: Optional[AccessTokenSigner] = None
        self.auth: AuthSessionEngine
        if self.settings.auth_backend == AuthBackend.DELEGATED:
            self.identity = identity or self._build_identity()
            self.auth = DelegatedAuthService(
                self.store, self.store, self.identity, self.settings, policy=self.policy
            )
        else:
            self.signer = AccessTokenSigner(
                self.settings.jwt_secret,
                issuer=self.settings.jwt_issuer,
                audience=self.settings.jwt_audience,
                ttl_minutes=self.settings.access_token_ttl_minutes,
            )
            self.auth = LocalAuthService(
                self.store,
                self.store,
                self.store,
                self.signer,
                self.settings,
                hasher=self.hasher,
                token_hasher=self.token_hasher,
                otp_service=self.otp,
                policy=self.policy,
            )
        logger.info("runtime_init_completed", auth_backend=self.settings.auth_backend.value)

    def _build_mailer(self) -> MailSender:
        settings = self.settings
        if settings.mail_provider == MailProvider.MAILTRAP:
            if not settings.mailtrap_api_token or not settings.email_from_address:
                raise InitializationError(
                    "MAILTRAP_API_TOKEN and EMAIL_FROM_ADDRESS are required for the mailtrap provider"
                )
            return MailtrapSender(
                settings.mailtrap_api_token,
                from_email=settings.email_from_address,
                from_name=settings.email_from_name,
            )
        service = EmailService(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            expiry_minutes=settings.otp_settings["expiry_minutes"],
            template_purposes={
                template_id: purpose
                for purpose, template_id in settings.otp_template_ids.items()
            },
        )
        if not service.is_configured:
            logger.warning("email_not_configured", smtp_host_set=bool(settings.smtp_host))
        return service

    def _build_identity(self) -> IdentityDelegate:
        if not self.settings.supabase_url or not self.settings.supabase_service_key:
            raise InitializationError(
                "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required for the delegated backend"
            )
        return SupabaseIdentityDelegate(
            self.settings.supabase_url,
            self.settings.supabase_service_key,
            timeout=self.settings.identity_timeout_seconds,
        )
