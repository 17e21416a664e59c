from __future__ import annotations

import hashlib
import hmac
import secrets
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authcore.logging import get_logger

logger = get_logger(__name__)


def generate_numeric_code(length: int) -> str:
    """Return ``length`` decimal digits drawn from the OS CSPRNG."""
    if length <= 0:
        raise ValueError("code length must be positive")
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


def generate_token(nbytes: int = 32) -> str:
    """Random URL-safe token; 32 bytes gives 256 bits of entropy."""
    return secrets.token_urlsafe(nbytes)


class CredentialHasher:
    """One-way hashing for passwords and OTP codes.

    Passwords use argon2id (salted, slow). OTP codes are short-lived and
    low-entropy, so they are keyed with HMAC-SHA256 under a server-side
    pepper instead; this keeps verification deterministic and lets the
    comparison be done with ``hmac.compare_digest``. A ``context`` (the
    purpose and address a code was issued for) is folded into the HMAC
    input so equal codes never share a stored digest across sessions.
    """

    def __init__(self, pepper: str, *, password_hasher: Optional[PasswordHasher] = None) -> None:
        if not pepper:
            raise ValueError("pepper must not be empty")
        self._pepper = pepper.encode()
        self._pwd_hasher = password_hasher or PasswordHasher(type=Type.ID)

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, password_hash: Optional[str], password: str) -> bool:
        if not password_hash:
            return False
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False
        except VerificationError:
            logger.warning("password_verification_error")
            return False

    def digest_code(self, code: str, *, context: str = "") -> str:
        message = f"{context}:{code}" if context else code
        return hmac.new(self._pepper, message.encode(), hashlib.sha256).hexdigest()

    def verify_code(self, stored_hash: str, code: str, *, context: str = "") -> bool:
        # SECURITY: constant-time comparison of the two digests
        return hmac.compare_digest(self.digest_code(code, context=context), stored_hash or "")


class TokenHasher:
    """Deterministic SHA-256 digest for high-entropy bearer tokens.

    Refresh and password-reset tokens are random 256-bit values, so an
    unkeyed digest is enough to make a leaked table useless while still
    allowing lookup by hash.
    """

    def digest(self, token: str) -> str:
        return hashlib.sha256(token.encode()).hexdigest()

    def matches(self, stored_hash: str, token: str) -> bool:
        return hmac.compare_digest(self.digest(token), stored_hash or "")
