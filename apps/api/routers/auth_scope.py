"""Authentication dependencies for API user and organization scoping."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from models.enums import OwnerType, Role
from services.directory import get_member
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    role: Role = Role.INDIVIDUAL
    organization_id: Optional[str] = None
    email: Optional[str] = None


def require_roles(auth: AuthContext, *roles: Role) -> None:
    if auth.role not in roles:
        allowed = ", ".join(role.value for role in roles)
        raise HTTPException(status_code=403, detail=f"This action requires one of: {allowed}.")


def ensure_organization_scope(auth: AuthContext, organization_id: Optional[str]) -> str:
    """Resolve the organization an HR/admin caller may act on."""
    if auth.role == Role.ADMIN:
        resolved = organization_id or auth.organization_id
        if not resolved:
            raise HTTPException(status_code=422, detail="organization_id is required.")
        return resolved
    require_roles(auth, Role.HR)
    if not auth.organization_id:
        raise HTTPException(status_code=403, detail="Session is not bound to an organization.")
    if organization_id and organization_id != auth.organization_id:
        raise HTTPException(status_code=403, detail="organization_id does not match authenticated session.")
    return auth.organization_id


async def ensure_wallet_access(
    auth: AuthContext,
    owner_type: OwnerType,
    owner_id: str,
    db: AsyncSession,
    *,
    grant: bool = False,
) -> None:
    """Reject callers that may not read (or, with ``grant``, credit) a wallet.

    Users read their own wallets. HR reads its organization wallet and credits
    or reads wallets of its own members. Admins may do anything.
    """
    if auth.role == Role.ADMIN:
        return
    if owner_type == OwnerType.USER and owner_id == auth.user_id and not grant:
        return
    if auth.role == Role.HR and auth.organization_id:
        if owner_type == OwnerType.ORG and owner_id == auth.organization_id and not grant:
            return
        if owner_type == OwnerType.USER:
            member = await get_member(db, auth.organization_id, owner_id)
            if member is not None:
                return
    raise HTTPException(status_code=403, detail="Not allowed to access this wallet.")


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve authenticated user, organization and role from Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        claims = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(
        user_id=claims.user_id,
        role=claims.role,
        organization_id=claims.organization_id,
        email=claims.email,
    )
