from __future__ import annotations

import json
import threading
import uuid
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation, StorageError
from authcore.storage.models import (
    OTPPurpose,
    OTPRecord,
    PasswordResetToken,
    RefreshToken,
    Role,
    User,
    utcnow,
)


class MemoryStore:
    """In-memory backing store implementing every repository contract.

    Records handed out are copies, so callers observe a snapshot the way
    they would with a database row. All operations hold one re-entrant
    lock, which makes each individual operation atomic; ``mark_otp_used``,
    ``revoke_refresh_token`` and ``mark_reset_token_used`` report whether
    this call performed the transition.

    When ``state_path`` is given the full state is written as JSON after
    every mutation and reloaded on construction.
    """

    def __init__(
        self,
        state_path: str | Path | None = None,
        *,
        roles: Optional[Iterable[str]] = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.roles: Dict[int, Role] = {}
        self.otps: Dict[int, OTPRecord] = {}
        self.refresh_tokens: Dict[int, RefreshToken] = {}
        self.reset_tokens: Dict[int, PasswordResetToken] = {}
        self._seq: Dict[str, int] = {"role": 1, "otp": 1, "refresh": 1, "reset": 1}
        # RLock so composite operations can call other locked methods
        self._data_lock = threading.RLock()
        self.state_path = Path(state_path) if state_path else None

        self._load_state()
        for name in roles or ():
            if self.get_role_by_name(name) is None:
                self.create_role(name)

    def _next_id(self, kind: str) -> int:
        with self._data_lock:
            value = self._seq[kind]
            self._seq[kind] = value + 1
            return value

    # Users

    def create_user(
        self,
        email: str,
        name: str,
        *,
        user_id: Optional[str] = None,
        password_hash: Optional[str] = None,
        role_id: Optional[int] = None,
        is_active: bool = True,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            uid = user_id or str(uuid.uuid4())
            if uid in self.users:
                raise ConstraintViolation("user id already exists", {"field": "id"})
            user = User(
                id=uid,
                email=email,
                name=name,
                password_hash=password_hash,
                role_id=role_id,
                is_active=is_active,
            )
            self.users[uid] = user
            self._persist_state()
            return replace(user)

    def save_user(self, user: User) -> User:
        """Insert or update a user keyed by id."""
        with self._data_lock:
            for existing in self.users.values():
                if existing.email == user.email and existing.id != user.id:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            stored = replace(user, updated_at=utcnow())
            current = self.users.get(user.id)
            if current is not None:
                stored.created_at = current.created_at
            self.users[user.id] = stored
            self._persist_state()
            return replace(stored)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def update_password(self, email: str, password_hash: str) -> bool:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            if not user:
                return False
            user.password_hash = password_hash
            user.updated_at = utcnow()
            self._persist_state()
            return True

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            for token_id, token in list(self.refresh_tokens.items()):
                if token.user_id == user_id:
                    self.refresh_tokens.pop(token_id, None)
            self._persist_state()
            return True

    # Roles

    def create_role(self, name: str) -> Role:
        with self._data_lock:
            if any(role.name == name for role in self.roles.values()):
                raise ConstraintViolation("role already exists", {"field": "name"})
            role = Role(id=self._next_id("role"), name=name)
            self.roles[role.id] = role
            self._persist_state()
            return replace(role)

    def get_role(self, role_id: int) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            return replace(role) if role else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            role = next((r for r in self.roles.values() if r.name == name), None)
            return replace(role) if role else None

    # OTP records

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
    ) -> OTPRecord:
        """Create a record and supersede any earlier unused one for (email, purpose)."""
        with self._data_lock:
            for existing in self.otps.values():
                if (
                    existing.email == email
                    and existing.purpose == purpose
                    and not existing.is_used
                ):
                    existing.is_used = True
            record = OTPRecord(
                id=self._next_id("otp"),
                email=email,
                purpose=purpose,
                code_hash=code_hash,
                expires_at=expires_at,
                max_attempts=max_attempts,
                pending_name=pending_name,
                pending_password_hash=pending_password_hash,
            )
            self.otps[record.id] = record
            self._persist_state()
            return replace(record)

    def get_active_otp(self, email: str, purpose: OTPPurpose) -> Optional[OTPRecord]:
        """Newest unused record for (email, purpose); expiry is left to the caller."""
        with self._data_lock:
            candidates = [
                r
                for r in self.otps.values()
                if r.email == email and r.purpose == purpose and not r.is_used
            ]
            if not candidates:
                return None
            newest = max(candidates, key=lambda r: (r.created_at, r.id))
            return replace(newest)

    def mark_otp_used(self, otp_id: int) -> bool:
        with self._data_lock:
            record = self.otps.get(otp_id)
            if not record or record.is_used:
                return False
            record.is_used = True
            self._persist_state()
            return True

    def increment_otp_attempts(self, otp_id: int) -> int:
        with self._data_lock:
            record = self.otps.get(otp_id)
            if not record:
                raise StorageError("otp record not found", {"otp_id": otp_id})
            record.attempts += 1
            self._persist_state()
            return record.attempts

    def update_otp_resend_info(
        self, otp_id: int, resend_count: int, last_resend_at: datetime
    ) -> bool:
        with self._data_lock:
            record = self.otps.get(otp_id)
            if not record:
                return False
            record.resend_count = resend_count
            record.last_resend_at = last_resend_at
            self._persist_state()
            return True

    def delete_otps(
        self, email: str, purpose: OTPPurpose, *, keep_id: Optional[int] = None
    ) -> int:
        with self._data_lock:
            doomed = [
                otp_id
                for otp_id, r in self.otps.items()
                if r.email == email and r.purpose == purpose and otp_id != keep_id
            ]
            for otp_id in doomed:
                self.otps.pop(otp_id, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    def purge_expired_otps(self, now: Optional[datetime] = None) -> int:
        current = now or utcnow()
        with self._data_lock:
            doomed = [
                otp_id
                for otp_id, r in self.otps.items()
                if r.is_used or r.is_expired(current)
            ]
            for otp_id in doomed:
                self.otps.pop(otp_id, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    # Refresh tokens

    def create_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshToken:
        with self._data_lock:
            if any(t.token_hash == token_hash for t in self.refresh_tokens.values()):
                raise ConstraintViolation("refresh token already exists", {"field": "token_hash"})
            token = RefreshToken(
                id=self._next_id("refresh"),
                user_id=user_id,
                token_hash=token_hash,
                expires_at=expires_at,
            )
            self.refresh_tokens[token.id] = token
            self._persist_state()
            return replace(token)

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token = next(
                (t for t in self.refresh_tokens.values() if t.token_hash == token_hash),
                None,
            )
            return replace(token) if token else None

    def revoke_refresh_token(self, token_id: int) -> bool:
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            if not token or token.is_revoked:
                return False
            token.is_revoked = True
            self._persist_state()
            return True

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            revoked = 0
            for token in self.refresh_tokens.values():
                if token.user_id == user_id and not token.is_revoked:
                    token.is_revoked = True
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    # Password reset tokens

    def create_reset_token(
        self, email: str, token_hash: str, expires_at: datetime
    ) -> PasswordResetToken:
        with self._data_lock:
            token = PasswordResetToken(
                id=self._next_id("reset"),
                email=email,
                token_hash=token_hash,
                expires_at=expires_at,
            )
            self.reset_tokens[token.id] = token
            self._persist_state()
            return replace(token)

    def get_reset_token_by_hash(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            token = next(
                (t for t in self.reset_tokens.values() if t.token_hash == token_hash),
                None,
            )
            return replace(token) if token else None

    def mark_reset_token_used(self, token_id: int) -> bool:
        with self._data_lock:
            token = self.reset_tokens.get(token_id)
            if not token or token.is_used:
                return False
            token.is_used = True
            self._persist_state()
            return True

    def purge_expired_reset_tokens(self, now: Optional[datetime] = None) -> int:
        current = now or utcnow()
        with self._data_lock:
            doomed = [
                token_id
                for token_id, t in self.reset_tokens.items()
                if not t.is_usable(current)
            ]
            for token_id in doomed:
                self.reset_tokens.pop(token_id, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    # Persistence

    @staticmethod
    def _serialize(record: Any) -> dict:
        data = asdict(record)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
            elif isinstance(value, OTPPurpose):
                data[key] = value.value
        return data

    @staticmethod
    def _parse_datetimes(data: dict, *keys: str) -> dict:
        parsed = dict(data)
        for key in keys:
            raw = parsed.get(key)
            if isinstance(raw, str):
                parsed[key] = datetime.fromisoformat(raw)
        return parsed

    def _persist_state(self) -> None:
        if self.state_path is None:
            return
        state = {
            "seq": self._seq,
            "users": [self._serialize(u) for u in self.users.values()],
            "roles": [self._serialize(r) for r in self.roles.values()],
            "otps": [self._serialize(o) for o in self.otps.values()],
            "refresh_tokens": [self._serialize(t) for t in self.refresh_tokens.values()],
            "reset_tokens": [self._serialize(t) for t in self.reset_tokens.values()],
        }
        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            self.state_path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StorageError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        if self.state_path is None:
            return False
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(self.state_path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            raise StorageError(f"failed to load in-memory state: {exc}") from exc

        self.users = {
            u["id"]: User(**self._parse_datetimes(u, "created_at", "updated_at"))
            for u in data.get("users", [])
        }
        self.roles = {
            r["id"]: Role(**self._parse_datetimes(r, "created_at"))
            for r in data.get("roles", [])
        }
        self.otps = {}
        for raw in data.get("otps", []):
            parsed = self._parse_datetimes(
                raw, "expires_at", "last_resend_at", "created_at"
            )
            parsed["purpose"] = OTPPurpose(parsed["purpose"])
            self.otps[parsed["id"]] = OTPRecord(**parsed)
        self.refresh_tokens = {
            t["id"]: RefreshToken(**self._parse_datetimes(t, "expires_at", "created_at"))
            for t in data.get("refresh_tokens", [])
        }
        self.reset_tokens = {
            t["id"]: PasswordResetToken(
                **self._parse_datetimes(t, "expires_at", "created_at")
            )
            for t in data.get("reset_tokens", [])
        }
        self._seq.update(data.get("seq", {}))
        self.logger.debug(
            "memory_store_state_loaded",
            users=len(self.users),
            roles=len(self.roles),
            otps=len(self.otps),
        )
        return True
