"""Admin onboarding for organizations and their members."""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.enums import OrganizationStatus, Role
from routers.auth_scope import AuthContext, get_auth_context, require_roles
from routers.errors import ledger_http_error
from services.directory import add_member, create_organization, member_payload, organization_payload, set_organization_status
from services.errors import LedgerError

router = APIRouter()


class CreateOrganizationRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    plan_type: Optional[str] = None
    organization_id: Optional[str] = None


class AddMemberRequest(BaseModel):
    user_id: str = Field(min_length=1)
    role: Role = Role.EMPLOYEE
    email: Optional[str] = None


class OrganizationStatusRequest(BaseModel):
    status: OrganizationStatus


@router.post("/organizations")
async def create_organization_endpoint(
    request: CreateOrganizationRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    require_roles(auth, Role.ADMIN)
    try:
        organization = await create_organization(
            db,
            name=request.name,
            plan_type=request.plan_type,
            organization_id=request.organization_id,
        )
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return organization_payload(organization)


@router.post("/organizations/{organization_id}/status")
async def update_organization_status(
    organization_id: str,
    request: OrganizationStatusRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    require_roles(auth, Role.ADMIN)
    try:
        organization = await set_organization_status(db, organization_id, request.status)
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return organization_payload(organization)


@router.post("/organizations/{organization_id}/members")
async def add_organization_member(
    organization_id: str,
    request: AddMemberRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    require_roles(auth, Role.ADMIN)
    try:
        member = await add_member(
            db,
            organization_id=organization_id,
            user_id=request.user_id,
            role=request.role,
            email=request.email,
        )
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return member_payload(member)
