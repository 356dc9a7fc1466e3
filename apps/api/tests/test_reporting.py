from datetime import timedelta

import pytest
import pytest_asyncio

from models.enums import Role
from models.organization import Organization, OrganizationMember
from services.allocations import create_rule, run_due
from services.dashboard import DASHBOARD_HANDLERS, build_dashboard
from services.errors import NotFound
from services.ledger import credit, debit, expire_wallets, utcnow
from services.reporting import low_balance_members, organization_wallets, usage_report


ORG_ID = "org-reports"


@pytest_asyncio.fixture
async def report_db(sqlite_session_maker):
    async with sqlite_session_maker() as session:
        session.add(Organization(id=ORG_ID, name="Reports Inc", status="ACTIVE"))
        session.add(Organization(id="org-other", name="Other", status="ACTIVE"))
        session.add_all(
            [
                OrganizationMember(organization_id=ORG_ID, user_id="emp-a", role="EMPLOYEE", email="a@example.com"),
                OrganizationMember(organization_id=ORG_ID, user_id="emp-b", role="EMPLOYEE", email="b@example.com"),
                OrganizationMember(organization_id=ORG_ID, user_id="hr-a", role="HR"),
                OrganizationMember(organization_id="org-other", user_id="outsider", role="EMPLOYEE"),
            ]
        )
        await session.commit()

    return sqlite_session_maker


@pytest.mark.asyncio
async def test_usage_report_splits_allocated_consumed_and_expired(report_db):
    now = utcnow()
    async with report_db() as session:
        await credit(session, owner_type="ORG", owner_id=ORG_ID, credit_type="WEBINAR", amount=20, reason="issuance")
        await debit(session, owner_type="ORG", owner_id=ORG_ID, credit_type="WEBINAR", amount=4, reason="webinar")
        await create_rule(
            session,
            organization_id=ORG_ID,
            credit_type="SESSION_1_1",
            amount=6,
            frequency="MONTHLY",
            target_role="EMPLOYEE",
        )
        await credit(session, owner_type="USER", owner_id="outsider", credit_type="SESSION_1_1", amount=50, reason="grant")

    await run_due(now)

    async with report_db() as session:
        await debit(session, owner_type="USER", owner_id="emp-a", credit_type="SESSION_1_1", amount=2, reason="booking")
        await credit(
            session,
            owner_type="USER",
            owner_id="hr-a",
            credit_type="SESSION_1_1",
            amount=3,
            reason="manual",
            expires_at=now - timedelta(minutes=1),
        )
        await expire_wallets(session)
        report = await usage_report(session, organization_id=ORG_ID, now=now)

    assert report["frequency"] == "MONTHLY"
    assert report["totals"]["WEBINAR"] == {"allocated": 20, "consumed": 4, "expired": 0}
    assert report["totals"]["SESSION_1_1"] == {"allocated": 15, "consumed": 2, "expired": 3}
    assert report["by_role"]["ORGANIZATION"]["WEBINAR"]["allocated"] == 20
    assert report["by_role"]["EMPLOYEE"]["SESSION_1_1"] == {"allocated": 12, "consumed": 2, "expired": 0}
    assert report["by_role"]["HR"]["SESSION_1_1"]["expired"] == 3


@pytest.mark.asyncio
async def test_low_balance_members_flags_employees_at_threshold(report_db):
    async with report_db() as session:
        await credit(session, owner_type="USER", owner_id="emp-a", credit_type="SESSION_1_1", amount=10, reason="grant")
        await credit(session, owner_type="USER", owner_id="emp-a", credit_type="WEBINAR", amount=10, reason="grant")
        await credit(session, owner_type="USER", owner_id="emp-b", credit_type="SESSION_1_1", amount=10, reason="grant")
        await credit(session, owner_type="USER", owner_id="emp-b", credit_type="WEBINAR", amount=5, reason="grant")

        result = await low_balance_members(session, organization_id=ORG_ID)

    assert result["threshold"] == 5
    assert [row["user_id"] for row in result["members"]] == ["emp-b"]
    assert result["members"][0]["low_credit_types"] == ["WEBINAR"]
    assert result["members"][0]["email"] == "b@example.com"


@pytest.mark.asyncio
async def test_organization_wallets_lists_org_and_member_balances(report_db):
    async with report_db() as session:
        await credit(session, owner_type="ORG", owner_id=ORG_ID, credit_type="SESSION_1_1", amount=9, reason="issuance")
        await credit(session, owner_type="USER", owner_id="hr-a", credit_type="WEBINAR", amount=1, reason="grant")
        snapshot = await organization_wallets(session, organization_id=ORG_ID)

    org_balances = {row["credit_type"]: row["balance"] for row in snapshot["organization_balances"]}
    assert org_balances == {"SESSION_1_1": 9, "WEBINAR": 0}
    members = {row["user_id"]: row["balances"] for row in snapshot["members"]}
    assert set(members) == {"emp-a", "emp-b", "hr-a"}
    assert members["hr-a"] == {"SESSION_1_1": 0, "WEBINAR": 1}


@pytest.mark.asyncio
async def test_reports_for_unknown_organization_are_not_found(report_db):
    async with report_db() as session:
        with pytest.raises(NotFound):
            await usage_report(session, organization_id="org-missing")
        with pytest.raises(NotFound):
            await low_balance_members(session, organization_id="org-missing")


def test_every_role_has_a_dashboard_handler():
    assert set(DASHBOARD_HANDLERS) == set(Role)


@pytest.mark.asyncio
async def test_member_dashboard_shows_balances_and_recent_entries(report_db):
    async with report_db() as session:
        await credit(session, owner_type="USER", owner_id="emp-a", credit_type="SESSION_1_1", amount=4, reason="grant")
        await credit(session, owner_type="USER", owner_id="emp-a", credit_type="WEBINAR", amount=2, reason="grant")
        await debit(session, owner_type="USER", owner_id="emp-a", credit_type="WEBINAR", amount=1, reason="webinar")
        payload = await build_dashboard(session, user_id="emp-a", role=Role.EMPLOYEE, organization_id=ORG_ID)

    assert payload["role"] == "EMPLOYEE"
    balances = {row["credit_type"]: row["balance"] for row in payload["balances"]}
    assert balances == {"SESSION_1_1": 4, "WEBINAR": 1}
    assert len(payload["recent_transactions"]) == 3
    assert payload["recent_transactions"][0]["delta"] == -1
