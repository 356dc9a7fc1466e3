import pytest

from services.directory import add_member, create_organization, get_member, list_active_members, set_organization_status
from services.errors import NotFound, ValidationError


@pytest.mark.asyncio
async def test_duplicate_member_is_a_validation_error(sqlite_session_maker):
    async with sqlite_session_maker() as session:
        await create_organization(session, name="Acme", organization_id="org-a")
        await add_member(session, organization_id="org-a", user_id="u1", role="employee")

        with pytest.raises(ValidationError) as excinfo:
            await add_member(session, organization_id="org-a", user_id="u1", role="HR")
        assert excinfo.value.details == {"organization_id": "org-a", "user_id": "u1"}

        member = await get_member(session, "org-a", "u1")
        assert member.role == "EMPLOYEE"


@pytest.mark.asyncio
async def test_duplicate_organization_is_a_validation_error(sqlite_session_maker):
    async with sqlite_session_maker() as session:
        await create_organization(session, name="Acme", organization_id="org-a")
        with pytest.raises(ValidationError):
            await create_organization(session, name="Acme again", organization_id="org-a")


@pytest.mark.asyncio
async def test_member_listing_filters_by_role_and_status(sqlite_session_maker):
    async with sqlite_session_maker() as session:
        await create_organization(session, name="Acme", organization_id="org-a")
        await add_member(session, organization_id="org-a", user_id="emp", role="EMPLOYEE")
        await add_member(session, organization_id="org-a", user_id="hr", role="HR")

        everyone = await list_active_members(session, "org-a")
        assert sorted(member.user_id for member in everyone) == ["emp", "hr"]

        suspended = await set_organization_status(session, "org-a", "suspended")
        assert suspended.status == "SUSPENDED"

        with pytest.raises(NotFound):
            await add_member(session, organization_id="org-missing", user_id="u1", role="EMPLOYEE")
