from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from datetime import timedelta
from typing import Any, Optional

from authcore.logging import get_logger
from authcore.service.errors import InitializationError

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32


class AccessTokenSigner:
    """HS256 access tokens for the locally-issued session variant.

    Construction fails with ``InitializationError`` on a missing or short
    secret so a misconfigured process stops at bootstrap instead of at the
    first login.
    """

    def __init__(
        self,
        secret: Optional[str],
        *,
        issuer: str,
        audience: str,
        ttl_minutes: int = 60,
        leeway_seconds: int = 120,
    ) -> None:
        if not secret or len(secret) < MIN_SECRET_LENGTH:
            raise InitializationError(
                f"JWT secret must be at least {MIN_SECRET_LENGTH} characters"
            )
        if ttl_minutes <= 0:
            raise InitializationError("access token TTL must be positive")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.ttl = timedelta(minutes=ttl_minutes)
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=leeway_seconds)

    @property
    def expires_in(self) -> int:
        return int(self.ttl.total_seconds())

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(self, *, user_id: str, email: str, role: str) -> tuple[str, int]:
        """Return ``(token, exp)`` where ``exp`` is a unix timestamp."""
        exp = int(time.time() + self.ttl.total_seconds())
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user_id,
            "email": email,
            "role": role,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": int(time.time()),
            "exp": exp,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}", exp

    def decode(self, token: str) -> Optional[dict[str, Any]]:
        """Return the claims of a valid access token, else ``None``."""
        try:
            header_b64, payload_b64, sig_b64 = (token or "").split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        if payload.get("token_type") != "access" or not payload.get("sub"):
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload
