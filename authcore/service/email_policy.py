from __future__ import annotations

import re
from typing import Iterable, Mapping, Optional

from authcore.service.errors import InvalidEmailDomainError, InvalidEmailError

# Pragmatic syntax check; delivery is the real proof of ownership
_EMAIL_RE = re.compile(r"^[^@\s]+@[A-Za-z0-9](?:[A-Za-z0-9-]*[A-Za-z0-9])?(?:\.[A-Za-z0-9-]+)+$")


def normalize_email(email: str) -> str:
    """Strip and lower-case an address, raising ``InvalidEmailError`` if malformed."""
    normalized = (email or "").strip().lower()
    if len(normalized) > 254 or not _EMAIL_RE.match(normalized):
        raise InvalidEmailError()
    return normalized


class EmailDomainPolicy:
    """Derives a role name from an institutional address.

    An address qualifies when its domain is ``<subdomain>.<base_domain>`` and
    the subdomain appears in ``role_map``; e.g. with base ``example.edu``
    the address ``a@student.example.edu`` maps to ``role_map["student"]``.
    """

    def __init__(
        self,
        base_domain: str,
        role_map: Mapping[str, str],
        *,
        self_registration_roles: Optional[Iterable[str]] = None,
    ) -> None:
        self.base_domain = base_domain.strip().lower().lstrip(".")
        self.role_map = {key.lower(): value for key, value in role_map.items()}
        self.self_registration_roles = set(self_registration_roles or ())

    def role_for(self, email: str) -> str:
        """Return the role name for ``email`` or raise ``InvalidEmailDomainError``."""
        normalized = normalize_email(email)
        domain = normalized.rsplit("@", 1)[1]
        suffix = "." + self.base_domain
        if not domain.endswith(suffix):
            raise InvalidEmailDomainError()
        subdomain = domain[: -len(suffix)]
        role = self.role_map.get(subdomain)
        if role is None:
            raise InvalidEmailDomainError()
        return role

    def self_registration_role(self, email: str) -> str:
        """Like ``role_for`` but only for roles that may sign themselves up."""
        role = self.role_for(email)
        if role not in self.self_registration_roles:
            raise InvalidEmailDomainError(
                "This email address cannot be used to register, ask an administrator"
            )
        return role
