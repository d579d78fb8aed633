"""Session identity resolution for API routes."""
from __future__ import annotations

from typing import Dict

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from datasync.core.config import get_settings
from datasync.core.logging import logger
from datasync.core.tenancy import SessionIdentity


security = HTTPBearer(auto_error=False)


SUPPORTED_ROLES = {"admin", "ops_manager", "dispatcher", "finance", "sales", "viewer"}


def _normalize_role(value: str | None, default: str = "admin") -> str:
    role = (value or "").strip().lower()
    if not role:
        return default
    if role not in SUPPORTED_ROLES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported role '{value}'. Expected one of: {sorted(SUPPORTED_ROLES)}",
        )
    return role


def _parse_session_tokens(raw: str) -> Dict[str, tuple]:
    """Parse `token:org:user:role` comma-separated values from env."""
    mapping: Dict[str, tuple] = {}
    if not raw.strip():
        return mapping

    for segment in raw.split(","):
        item = segment.strip()
        if not item:
            continue
        parts = [part.strip() for part in item.split(":")]
        if len(parts) < 3 or not parts[0] or not parts[2]:
            logger.warning("Ignoring malformed session token mapping entry", entry=item)
            continue
        token, org_id, user_id = parts[0], parts[1], parts[2]
        role = parts[3] if len(parts) > 3 else ""
        mapping[token] = (org_id, user_id, role)
    return mapping


def get_session_identity(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    x_org_id: str | None = Header(default=None, alias="X-Org-ID"),
    x_user_id: str | None = Header(default=None, alias="X-User-ID"),
    x_actor_role: str | None = Header(default=None, alias="X-Actor-Role"),
    x_user_email: str | None = Header(default=None, alias="X-User-Email"),
    x_user_first_name: str | None = Header(default=None, alias="X-User-First-Name"),
    x_user_last_name: str | None = Header(default=None, alias="X-User-Last-Name"),
) -> SessionIdentity:
    """Resolve the session identity from bearer token or identity headers."""
    settings = get_settings()
    profile = {
        "email": (x_user_email or "").strip(),
        "first_name": (x_user_first_name or "").strip(),
        "last_name": (x_user_last_name or "").strip(),
    }

    if not settings.auth_enabled:
        org_id = (x_org_id or settings.default_org_id or "").strip() or None
        user_id = (x_user_id or settings.default_user_id or "").strip() or None
        return SessionIdentity(
            org_id=org_id,
            user_id=user_id,
            role=_normalize_role(x_actor_role, settings.default_role) if user_id else None,
            **profile,
        )

    if not credentials or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Bearer token required",
        )

    token = credentials.credentials.strip()
    resolved = _parse_session_tokens(settings.session_tokens).get(token)
    if not resolved:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid bearer token",
        )

    org_id, user_id, role = resolved
    if x_org_id and x_org_id.strip() and x_org_id.strip() != org_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token organization mismatch",
        )

    return SessionIdentity(
        org_id=org_id or None,
        user_id=user_id,
        role=_normalize_role(role or x_actor_role, settings.default_role),
        session_id=token,
        **profile,
    )
