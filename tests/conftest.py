import os
import sys
import uuid
from pathlib import Path

os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authcore.config import Settings  # noqa: E402
from authcore.service.auth import DelegatedAuthService, LocalAuthService  # noqa: E402
from authcore.service.hashing import CredentialHasher  # noqa: E402
from authcore.service.identity import (  # noqa: E402
    IdentityProviderError,
    IdentitySession,
    IdentityUser,
)
from authcore.service.otp import OTPService  # noqa: E402
from authcore.service.tokens import AccessTokenSigner  # noqa: E402
from authcore.storage.memory import MemoryStore  # noqa: E402

TEST_PEPPER = "test-pepper-for-otp-codes"
TEST_JWT_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
STUDENT_EMAIL = "new@student.example.edu"
LECTURER_EMAIL = "lecturer@teacher.example.edu"


class FakeMailSender:
    """Captures every code handed to delivery so tests can replay it."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []
        self.fail = False

    def send_otp_email(self, email: str, code: str, template_id: str) -> bool:
        if self.fail:
            return False
        self.sent.append((email, code, template_id))
        return True

    def last_code(self, email: str) -> str:
        for sent_email, code, _ in reversed(self.sent):
            if sent_email == email:
                return code
        raise AssertionError(f"no code sent to {email}")


class FakeIdentityDelegate:
    """In-process stand-in for the identity provider that records calls."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple]] = []
        self.errors: dict[str, Exception] = {}
        self.accounts: dict[str, dict] = {}
        self.refresh_tokens: dict[str, str] = {}
        self.access_tokens: dict[str, str] = {}
        self.confirm_on_signup = True

    def _record(self, method: str, *args) -> None:
        self.calls.append((method, args))
        error = self.errors.get(method)
        if error is not None:
            raise error

    def called(self, method: str) -> list[tuple]:
        return [args for name, args in self.calls if name == method]

    def add_account(self, email: str, password: str, *, name: str = "", user_id: str = None) -> str:
        user_id = user_id or f"ext-{uuid.uuid4().hex[:8]}"
        self.accounts[email] = {"id": user_id, "password": password, "name": name}
        return user_id

    def _session(self, email: str) -> IdentitySession:
        account = self.accounts[email]
        refresh = f"refresh-{uuid.uuid4().hex}"
        access = f"access-{uuid.uuid4().hex}"
        self.refresh_tokens[refresh] = email
        self.access_tokens[access] = email
        return IdentitySession(
            user=IdentityUser(id=account["id"], email=email, name=account["name"]),
            access_token=access,
            refresh_token=refresh,
            token_type="bearer",
            expires_in=3600,
        )

    def register(self, email, password, name):
        self._record("register", email, name)
        if email in self.accounts:
            raise IdentityProviderError("email_taken", "User already registered", 422)
        user_id = self.add_account(email, password, name=name)
        if not self.confirm_on_signup:
            return IdentitySession(user=IdentityUser(id=user_id, email=email, name=name))
        return self._session(email)

    def login(self, email, password):
        self._record("login", email)
        account = self.accounts.get(email)
        if account is None or account["password"] != password:
            raise IdentityProviderError("invalid_credentials", "Invalid login credentials", 400)
        return self._session(email)

    def refresh(self, refresh_token):
        self._record("refresh", refresh_token)
        email = self.refresh_tokens.pop(refresh_token, None)
        if email is None:
            raise IdentityProviderError("refresh_token_expired", "Refresh token not found", 400)
        return self._session(email)

    def logout(self, access_token):
        self._record("logout", access_token)
        self.access_tokens.pop(access_token, None)

    def request_password_reset(self, email, redirect_to):
        self._record("request_password_reset", email, redirect_to)

    def delete_user(self, user_id):
        self._record("delete_user", user_id)
        for email, account in list(self.accounts.items()):
            if account["id"] == user_id:
                self.accounts.pop(email)

    def verify_token(self, access_token):
        self._record("verify_token", access_token)
        email = self.access_tokens.get(access_token)
        if email is None:
            raise IdentityProviderError("invalid_token", "invalid JWT", 401)
        account = self.accounts[email]
        return IdentityUser(id=account["id"], email=email, name=account["name"])

    def resend_confirmation(self, email):
        self._record("resend_confirmation", email)


def wrong_code(code: str) -> str:
    """A code of the same length guaranteed to differ in every digit."""
    return "".join(str((int(digit) + 1) % 10) for digit in code)


@pytest.fixture
def settings():
    return Settings(
        token_pepper=TEST_PEPPER,
        jwt_secret=TEST_JWT_SECRET,
        email_domain="example.edu",
        otp_length=6,
        otp_expiry_minutes=10,
        otp_max_attempts=5,
        otp_resend_max_times=5,
        otp_resend_cooldown_seconds=60,
    )


@pytest.fixture
def memory_store():
    return MemoryStore(roles=["mahasiswa", "dosen", "admin"])


@pytest.fixture
def hasher():
    # Cheapest valid argon2id parameters to keep the suite fast
    fast = PasswordHasher(type=Type.ID, time_cost=1, memory_cost=8, parallelism=1)
    return CredentialHasher(TEST_PEPPER, password_hasher=fast)


@pytest.fixture
def mailer():
    return FakeMailSender()


@pytest.fixture
def identity():
    return FakeIdentityDelegate()


@pytest.fixture
def otp_service(memory_store, mailer, settings, hasher):
    return OTPService(
        memory_store,
        memory_store,
        memory_store,
        memory_store,
        mailer,
        settings,
        hasher=hasher,
        sessions=memory_store,
    )


@pytest.fixture
def delegated_auth(memory_store, identity, settings):
    return DelegatedAuthService(memory_store, memory_store, identity, settings)


@pytest.fixture
def signer(settings):
    return AccessTokenSigner(
        settings.jwt_secret,
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
        ttl_minutes=15,
    )


@pytest.fixture
def local_auth(memory_store, signer, settings, hasher, otp_service):
    return LocalAuthService(
        memory_store,
        memory_store,
        memory_store,
        signer,
        settings,
        hasher=hasher,
        otp_service=otp_service,
    )
