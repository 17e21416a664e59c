from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol

import httpx

from authcore.logging import email_hash, get_logger

logger = get_logger(__name__)


@dataclass
class IdentityUser:
    id: str
    email: str = ""
    name: str = ""


@dataclass
class IdentitySession:
    """Tokens minted by the provider; empty when confirmation is pending."""

    user: IdentityUser
    access_token: str = ""
    refresh_token: str = ""
    token_type: str = "bearer"
    expires_in: int = 0

    @property
    def has_tokens(self) -> bool:
        return bool(self.access_token)


class IdentityProviderError(Exception):
    """Failure reported by (or while talking to) the identity provider.

    ``code`` is one of the stable classifications produced by
    ``classify_provider_error`` plus ``transport`` for network failures and
    ``unknown`` for anything unrecognized.
    """

    def __init__(self, code: str, message: str = "", status_code: Optional[int] = None) -> None:
        super().__init__(message or code)
        self.code = code
        self.message = message or code
        self.status_code = status_code


class IdentityDelegate(Protocol):
    def register(self, email: str, password: str, name: str) -> IdentitySession: ...

    def login(self, email: str, password: str) -> IdentitySession: ...

    def refresh(self, refresh_token: str) -> IdentitySession: ...

    def logout(self, access_token: str) -> None: ...

    def request_password_reset(self, email: str, redirect_to: str) -> None: ...

    def delete_user(self, user_id: str) -> None: ...

    def verify_token(self, access_token: str) -> IdentityUser: ...

    def resend_confirmation(self, email: str) -> None: ...


# (code, error_code values, message fragments); first match wins
_ERROR_RULES: list[tuple[str, frozenset[str], tuple[str, ...]]] = [
    (
        "email_taken",
        frozenset({"user_already_exists", "email_exists"}),
        ("user already registered", "email already exists"),
    ),
    (
        "invalid_credentials",
        frozenset({"invalid_credentials", "invalid_grant"}),
        ("invalid login credentials", "invalid password"),
    ),
    ("user_not_found", frozenset({"user_not_found"}), ("user not found",)),
    (
        "invalid_token",
        frozenset({"invalid_token", "bad_jwt", "token_expired"}),
        ("invalid token", "jwt expired", "token has expired"),
    ),
    (
        "refresh_token_expired",
        frozenset({"refresh_token_expired", "refresh_token_not_found"}),
        ("refresh token",),
    ),
    (
        "weak_password",
        frozenset({"weak_password"}),
        ("weak password", "password should be"),
    ),
    (
        "rate_limited",
        frozenset({"over_request_limit", "over_email_send_rate_limit"}),
        ("rate limit", "too many requests"),
    ),
    ("already_confirmed", frozenset({"user_already_confirmed"}), ("already confirmed",)),
    (
        "email_not_confirmed",
        frozenset({"email_not_confirmed"}),
        ("email not confirmed", "confirm your email"),
    ),
]


def classify_provider_error(payload: Any, status_code: Optional[int] = None) -> str:
    """Map a provider error body onto a stable classification code."""
    if not isinstance(payload, dict):
        payload = {}
    error_code = str(payload.get("error_code") or "").lower()
    error = str(payload.get("error") or "").lower()
    text = " ".join(
        str(payload.get(key) or "").lower() for key in ("msg", "message", "error_description")
    )
    for code, codes, fragments in _ERROR_RULES:
        if code == "rate_limited" and status_code == 429:
            return code
        if error_code in codes or (code == "invalid_credentials" and error == "invalid_grant"):
            return code
        if any(fragment in text for fragment in fragments):
            return code
    return "unknown"


class SupabaseIdentityDelegate:
    """Identity delegate for a Supabase (GoTrue) auth endpoint."""

    def __init__(
        self,
        base_url: str,
        service_key: str,
        *,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.auth_url = base_url.rstrip("/") + "/auth/v1"
        self.service_key = service_key
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout))

    def close(self) -> None:
        self._client.close()

    def _headers(self, bearer: Optional[str] = None) -> dict[str, str]:
        headers = {"apikey": self.service_key, "Content-Type": "application/json"}
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        return headers

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
        bearer: Optional[str] = None,
    ) -> Any:
        try:
            response = self._client.request(
                method,
                f"{self.auth_url}{path}",
                json=json,
                params=params,
                headers=self._headers(bearer),
            )
        except httpx.TimeoutException as exc:
            logger.error("identity_provider_timeout", path=path, error=str(exc))
            raise IdentityProviderError("transport", "identity provider timed out") from exc
        except httpx.HTTPError as exc:
            logger.error(
                "identity_provider_transport_error",
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise IdentityProviderError("transport", "identity provider unreachable") from exc

        if response.status_code < 200 or response.status_code >= 300:
            try:
                payload = response.json()
            except ValueError:
                payload = {}
            code = classify_provider_error(payload, response.status_code)
            logger.warning(
                "identity_provider_error",
                path=path,
                status_code=response.status_code,
                classification=code,
            )
            message = ""
            if isinstance(payload, dict):
                message = str(
                    payload.get("msg")
                    or payload.get("error_description")
                    or payload.get("message")
                    or ""
                )
            raise IdentityProviderError(code, message, response.status_code)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise IdentityProviderError(
                "unknown", "identity provider returned malformed JSON", response.status_code
            ) from exc

    @staticmethod
    def _parse_user(data: Any) -> IdentityUser:
        if not isinstance(data, dict) or not data.get("id"):
            raise IdentityProviderError("unknown", "identity provider returned no user")
        metadata = data.get("user_metadata") or {}
        name = metadata.get("name") if isinstance(metadata, dict) else None
        return IdentityUser(
            id=str(data["id"]),
            email=str(data.get("email") or ""),
            name=name if isinstance(name, str) else "",
        )

    def _parse_session(self, data: Any, *, fallback_name: str = "") -> IdentitySession:
        if not isinstance(data, dict):
            raise IdentityProviderError("unknown", "identity provider returned no session")
        # Sign-up pending confirmation returns the bare user object
        user_data = data.get("user") if "access_token" in data else data
        user = self._parse_user(user_data)
        if not user.name:
            user.name = fallback_name
        try:
            expires_in = int(data.get("expires_in") or 0)
        except (TypeError, ValueError):
            expires_in = 0
        return IdentitySession(
            user=user,
            access_token=str(data.get("access_token") or ""),
            refresh_token=str(data.get("refresh_token") or ""),
            token_type=str(data.get("token_type") or "bearer"),
            expires_in=expires_in,
        )

    def register(self, email: str, password: str, name: str) -> IdentitySession:
        data = self._request(
            "POST",
            "/signup",
            json={
                "email": email,
                "password": password,
                "email_confirm": True,
                "data": {"name": name},
            },
        )
        session = self._parse_session(data, fallback_name=name)
        logger.info(
            "identity_user_registered",
            email_hash=email_hash(email),
            confirmed=session.has_tokens,
        )
        return session

    def login(self, email: str, password: str) -> IdentitySession:
        data = self._request(
            "POST",
            "/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        return self._parse_session(data)

    def refresh(self, refresh_token: str) -> IdentitySession:
        data = self._request(
            "POST",
            "/token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": refresh_token},
        )
        return self._parse_session(data)

    def logout(self, access_token: str) -> None:
        self._request("POST", "/logout", bearer=access_token)

    def request_password_reset(self, email: str, redirect_to: str) -> None:
        self._request("POST", "/recover", json={"email": email, "redirect_to": redirect_to})

    def delete_user(self, user_id: str) -> None:
        self._request("DELETE", f"/admin/users/{user_id}", bearer=self.service_key)
        logger.info("identity_user_deleted", user_id=user_id)

    def verify_token(self, access_token: str) -> IdentityUser:
        data = self._request("GET", "/user", bearer=access_token)
        return self._parse_user(data)

    def resend_confirmation(self, email: str) -> None:
        self._request("POST", "/resend", json={"type": "signup", "email": email})
