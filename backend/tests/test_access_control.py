# tests/test_access_control.py — Dual-identity access gate
from datetime import timedelta

import pytest
from sqlalchemy import delete

from access_control import (
    ARCHIVED, FORBIDDEN, MEMBERSHIP_REVOKED, NOT_FOUND, NOT_READY, UNAUTHENTICATED,
    Denied, StaffHandle, StakeholderHandle, check_space_accessibility, resolve_access,
)
from models import SpaceMember, SpaceStatus, utcnow
from portal_auth import create_portal_session
from tests.conftest import current_user, make_space


@pytest.mark.asyncio
class TestResolveAccess:
    async def test_stakeholder_with_membership(self, db_session, test_space, stakeholder):
        token = create_portal_session(test_space.id, "client@customer.com")
        access = await resolve_access(db_session, test_space.id, token, None)

        assert isinstance(access, StakeholderHandle)
        assert access.email == "client@customer.com"
        assert access.organisation_id == test_space.organisation_id
        assert access.elevated is True

    async def test_revoked_membership_denied_with_valid_cookie(self, db_session, test_space, stakeholder):
        token = create_portal_session(test_space.id, "client@customer.com")
        await db_session.execute(delete(SpaceMember).where(SpaceMember.id == stakeholder.id))
        await db_session.commit()

        access = await resolve_access(db_session, test_space.id, token, None)
        assert access == Denied(MEMBERSHIP_REVOKED)

    async def test_session_for_another_space_is_ignored(self, db_session, test_org, test_space, stakeholder):
        other = await make_space(db_session, test_org, name="Other")
        token = create_portal_session(other.id, "client@customer.com")

        access = await resolve_access(db_session, test_space.id, token, None)
        assert access == Denied(UNAUTHENTICATED)

    async def test_expired_session_is_unauthenticated(self, db_session, test_space, stakeholder):
        token = create_portal_session(test_space.id, "client@customer.com", expires_delta=timedelta(seconds=-5))
        access = await resolve_access(db_session, test_space.id, token, None)
        assert access == Denied(UNAUTHENTICATED)

    async def test_staff_of_owning_org(self, db_session, test_space, test_user):
        access = await resolve_access(db_session, test_space.id, None, current_user(test_user))

        assert isinstance(access, StaffHandle)
        assert access.user_id == test_user.id
        assert access.elevated is False

    async def test_staff_of_other_org_forbidden(self, db_session, test_space, outsider):
        access = await resolve_access(db_session, test_space.id, None, current_user(outsider))
        assert access == Denied(FORBIDDEN)

    async def test_portal_session_wins_over_staff(self, db_session, test_space, stakeholder, test_user):
        token = create_portal_session(test_space.id, "client@customer.com")
        access = await resolve_access(db_session, test_space.id, token, current_user(test_user))
        assert isinstance(access, StakeholderHandle)

    async def test_unknown_space(self, db_session, test_user):
        access = await resolve_access(db_session, "00000000-0000-0000-0000-000000000000", None, current_user(test_user))
        assert access == Denied(NOT_FOUND)

    async def test_no_credentials(self, db_session, test_space):
        access = await resolve_access(db_session, test_space.id, None, None)
        assert access == Denied(UNAUTHENTICATED)
        assert access.message == "Not authenticated"


@pytest.mark.asyncio
class TestAccessibility:
    @pytest.mark.parametrize("status,allowed,read_only,reason", [
        (SpaceStatus.DRAFT, False, False, NOT_READY),
        (SpaceStatus.ACTIVE, True, False, None),
        (SpaceStatus.COMPLETED, True, True, None),
        (SpaceStatus.ARCHIVED, False, False, ARCHIVED),
    ])
    async def test_lifecycle_matrix(self, db_session, test_org, status, allowed, read_only, reason):
        space = await make_space(db_session, test_org, status=status)
        gate = await check_space_accessibility(db_session, space.id)
        assert (gate.allowed, gate.read_only, gate.reason) == (allowed, read_only, reason)

    async def test_missing_and_soft_deleted(self, db_session, test_org):
        space = await make_space(db_session, test_org, deleted_at=utcnow())
        assert (await check_space_accessibility(db_session, space.id)).reason == NOT_FOUND
        assert (await check_space_accessibility(db_session, "missing")).reason == NOT_FOUND

    async def test_reads_current_status(self, db_session, test_space):
        assert (await check_space_accessibility(db_session, test_space.id)).read_only is False
        test_space.status = SpaceStatus.COMPLETED
        await db_session.commit()
        assert (await check_space_accessibility(db_session, test_space.id)).read_only is True
