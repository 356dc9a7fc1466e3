"""Signed session tokens carrying the caller's identity, organization and role.

Identity is issued upstream; this service only trusts the claims it signed
(or that were signed with the shared ``JWT_SECRET``).
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings
from models.enums import Role


SESSION_TOKEN_TYPE = "ledger_session"


@dataclass(frozen=True)
class SessionClaims:
    user_id: str
    role: Role
    organization_id: Optional[str] = None
    email: Optional[str] = None


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    expires_hours: Optional[int] = None,
    *,
    organization_id: Optional[str] = None,
    role: Optional[str] = None,
) -> Dict[str, Any]:
    now = datetime.now(timezone.utc)
    ttl_hours = max(int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24), 1)
    expires_at = now + timedelta(hours=ttl_hours)
    claims: Dict[str, Any] = {
        "sub": user_id,
        "type": SESSION_TOKEN_TYPE,
        "role": Role(str(role or Role.INDIVIDUAL.value).upper()).value,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if organization_id:
        claims["org"] = organization_id
    if email:
        claims["email"] = email

    return {
        "token": jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM),
        "expires_at": claims["exp"],
    }


def decode_session_token(token: str) -> SessionClaims:
    """Validate signature, expiry and shape; raise ValueError on anything off."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if str(payload.get("type", "")).strip() != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")

    subject = str(payload.get("sub", "")).strip()
    if not subject:
        raise ValueError("Session token missing subject.")

    raw_role = str(payload.get("role") or Role.INDIVIDUAL.value).strip().upper()
    try:
        role = Role(raw_role)
    except ValueError as exc:
        raise ValueError("Session token carries an unknown role.") from exc

    return SessionClaims(
        user_id=subject,
        role=role,
        organization_id=str(payload.get("org") or "").strip() or None,
        email=str(payload.get("email") or "").strip() or None,
    )
