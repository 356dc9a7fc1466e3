"""Organization directory lookups used by allocation runs and reports."""

from __future__ import annotations

import uuid
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.enums import OrganizationStatus, Role
from models.organization import Organization, OrganizationMember
from services.errors import NotFound, ValidationError
from services.validation import parse_choice, require_identifier


def organization_payload(organization: Organization) -> Dict[str, Any]:
    return {
        "id": organization.id,
        "name": organization.name,
        "plan_type": organization.plan_type,
        "status": organization.status,
    }


def member_payload(member: OrganizationMember) -> Dict[str, Any]:
    return {
        "id": member.id,
        "organization_id": member.organization_id,
        "user_id": member.user_id,
        "email": member.email,
        "role": member.role,
        "is_active": bool(member.is_active),
    }


async def get_organization(db: AsyncSession, organization_id: str) -> Optional[Organization]:
    result = await db.execute(select(Organization).where(Organization.id == organization_id))
    return result.scalar_one_or_none()


async def require_organization(db: AsyncSession, organization_id: Any) -> Organization:
    org_id = require_identifier(organization_id, "organization_id")
    organization = await get_organization(db, org_id)
    if organization is None:
        raise NotFound(f"Organization {org_id} not found.", details={"organization_id": org_id})
    return organization


def is_active_organization(organization: Optional[Organization]) -> bool:
    return organization is not None and organization.status == OrganizationStatus.ACTIVE.value


async def create_organization(
    db: AsyncSession,
    *,
    name: Any,
    plan_type: Optional[str] = None,
    organization_id: Optional[str] = None,
) -> Organization:
    organization = Organization(
        id=organization_id or str(uuid.uuid4()),
        name=require_identifier(name, "name"),
        plan_type=plan_type,
        status=OrganizationStatus.ACTIVE.value,
    )
    db.add(organization)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise ValidationError("Organization already exists.", details={"organization_id": organization.id}) from exc
    return organization


async def set_organization_status(db: AsyncSession, organization_id: Any, status: Any) -> Organization:
    organization = await require_organization(db, organization_id)
    organization.status = parse_choice(OrganizationStatus, status, "status").value
    await db.commit()
    return organization


async def add_member(
    db: AsyncSession,
    *,
    organization_id: Any,
    user_id: Any,
    role: Any,
    email: Optional[str] = None,
) -> OrganizationMember:
    organization = await require_organization(db, organization_id)
    org_id = organization.id
    member_user_id = require_identifier(user_id, "user_id")
    member = OrganizationMember(
        id=str(uuid.uuid4()),
        organization_id=org_id,
        user_id=member_user_id,
        role=parse_choice(Role, role, "role").value,
        email=email,
        is_active=True,
    )
    db.add(member)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise ValidationError(
            "User is already a member of this organization.",
            details={"organization_id": org_id, "user_id": member_user_id},
        ) from exc
    return member


async def get_member(db: AsyncSession, organization_id: str, user_id: str) -> Optional[OrganizationMember]:
    result = await db.execute(
        select(OrganizationMember).where(
            OrganizationMember.organization_id == organization_id,
            OrganizationMember.user_id == user_id,
        )
    )
    return result.scalar_one_or_none()


async def list_active_members(
    db: AsyncSession,
    organization_id: str,
    roles: Optional[Iterable[Role]] = None,
) -> List[OrganizationMember]:
    """Active members of an organization, optionally filtered by role."""
    query = select(OrganizationMember).where(
        OrganizationMember.organization_id == organization_id,
        OrganizationMember.is_active.is_(True),
    )
    if roles is not None:
        query = query.where(OrganizationMember.role.in_([role.value for role in roles]))
    result = await db.execute(query.order_by(OrganizationMember.created_at, OrganizationMember.user_id))
    return list(result.scalars().all())
