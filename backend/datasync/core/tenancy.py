"""Session identity and the tenant-scoped keys derived from it."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


NO_ORG = "no-org"
NO_USER = "no-user"


@dataclass(frozen=True)
class SessionIdentity:
    """Who is using a store instance: an (organization, user) pair plus profile."""

    org_id: Optional[str] = None
    user_id: Optional[str] = None
    role: Optional[str] = None
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    session_id: Optional[str] = None

    @property
    def authenticated(self) -> bool:
        return bool(self.user_id)

    @property
    def tenant_key(self) -> tuple:
        return (self.org_id or NO_ORG, self.user_id or NO_USER)

    def display_name(self) -> str:
        name = " ".join(part for part in (self.first_name, self.last_name) if part).strip()
        return name or self.email

    def actor(self) -> Optional[Dict[str, Any]]:
        """Actor stamp for history and audit records; None when signed out."""
        if not self.authenticated:
            return None
        return {"id": self.user_id, "role": self.role, "name": self.display_name() or None}


ANONYMOUS = SessionIdentity()


def storage_key(base: str, identity: Optional[SessionIdentity]) -> Optional[str]:
    """Persistence key for a tenant, or None when no user is signed in."""
    if identity is None or not identity.authenticated:
        return None
    org, user = identity.tenant_key
    return f"{base}:{org}:{user}"


def channel_name(prefix: str, org_id: Optional[str]) -> str:
    return f"{prefix}:{org_id or NO_ORG}"
