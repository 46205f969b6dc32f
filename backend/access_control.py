# access_control.py - Dual-identity access gate for spaces
# Two credential planes reach the same space:
# - staff: platform JWT, authorized through an organisation_members row
# - stakeholder: signed portal session cookie, authorized through a
#   space_members row that is re-read on every call
# resolve_access takes both credentials explicitly and returns one of
# Denied | StaffHandle | StakeholderHandle. The lifecycle gate
# (check_space_accessibility) is composed after it and never cached.

import logging
from dataclasses import dataclass, field
from typing import Optional, Union

from fastapi import Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser, get_optional_user
from database import get_db_session
from models import OrganisationMember, Space, SpaceMember, SpaceStatus
from portal_auth import cookie_name, verify_portal_session

logger = logging.getLogger("launchpad.access")

READ_ONLY_MESSAGE = "This project is finished and read-only."

# Denial / lifecycle reasons
UNAUTHENTICATED = "unauthenticated"
MEMBERSHIP_REVOKED = "membership_revoked"
FORBIDDEN = "forbidden"
NOT_FOUND = "not_found"
NOT_READY = "not_ready"
ARCHIVED = "archived"

REASON_MESSAGES = {
    UNAUTHENTICATED: "Not authenticated",
    MEMBERSHIP_REVOKED: "Your access to this project has been revoked.",
    FORBIDDEN: "You do not have access to this project.",
    NOT_FOUND: "Project not found",
    NOT_READY: "This project is not available yet.",
    ARCHIVED: "This project has been archived.",
}

REASON_STATUS_CODES = {
    UNAUTHENTICATED: 401,
    MEMBERSHIP_REVOKED: 403,
    FORBIDDEN: 403,
    NOT_FOUND: 404,
    NOT_READY: 403,
    ARCHIVED: 403,
}


# ============================================================
# RESULT TYPES
# ============================================================

@dataclass(frozen=True)
class Denied:
    reason: str

    @property
    def message(self) -> str:
        return REASON_MESSAGES.get(self.reason, REASON_MESSAGES[FORBIDDEN])


@dataclass(frozen=True)
class StaffHandle:
    """Staff access, still bound to ordinary organisation scoping."""
    space_id: str
    organisation_id: str
    user_id: str
    email: str
    elevated: bool = field(default=False, init=False)

    @property
    def actor_email(self) -> str:
        return self.email


@dataclass(frozen=True)
class StakeholderHandle:
    """Stakeholder access, elevated because membership was re-checked explicitly."""
    space_id: str
    organisation_id: str
    email: str
    elevated: bool = field(default=True, init=False)

    @property
    def actor_email(self) -> str:
        return self.email


AccessResult = Union[Denied, StaffHandle, StakeholderHandle]
Handle = Union[StaffHandle, StakeholderHandle]


@dataclass(frozen=True)
class Accessibility:
    allowed: bool
    read_only: bool = False
    reason: Optional[str] = None

    @property
    def message(self) -> Optional[str]:
        return REASON_MESSAGES.get(self.reason) if self.reason else None


# ============================================================
# RESOLUTION
# ============================================================

async def _live_space(db: AsyncSession, space_id: str) -> Optional[Space]:
    result = await db.execute(
        select(Space).where(Space.id == space_id, Space.deleted_at.is_(None))
    )
    return result.scalar_one_or_none()


async def resolve_access(
    db: AsyncSession,
    space_id: str,
    portal_token: Optional[str],
    staff: Optional[CurrentUser],
) -> AccessResult:
    """Resolve the caller into a scoped handle for one space.

    A valid portal session wins over a staff identity. The session proves the
    email only; authorization comes from the space_members row looked up
    here, so deleting that row locks the stakeholder out on the next call
    even while the cookie is still valid.
    """
    session = verify_portal_session(space_id, portal_token)
    if session is not None:
        result = await db.execute(
            select(SpaceMember).where(
                SpaceMember.space_id == space_id,
                SpaceMember.invited_email == session.email,
            )
        )
        if result.scalar_one_or_none() is None:
            logger.warning(f"Portal session for revoked member on space {space_id[:8]}")
            return Denied(MEMBERSHIP_REVOKED)
        space = await _live_space(db, space_id)
        if space is None:
            return Denied(NOT_FOUND)
        return StakeholderHandle(space_id=space.id, organisation_id=space.organisation_id, email=session.email)

    if staff is not None:
        space = await _live_space(db, space_id)
        if space is None:
            return Denied(NOT_FOUND)
        result = await db.execute(
            select(OrganisationMember.id).where(
                OrganisationMember.user_id == staff.id,
                OrganisationMember.organisation_id == space.organisation_id,
            )
        )
        if result.scalar_one_or_none() is None:
            logger.warning(f"Staff user {staff.id[:8]} denied on space {space_id[:8]}: not an org member")
            return Denied(FORBIDDEN)
        return StaffHandle(
            space_id=space.id,
            organisation_id=space.organisation_id,
            user_id=staff.id,
            email=staff.email,
        )

    return Denied(UNAUTHENTICATED)


async def check_space_accessibility(db: AsyncSession, space_id: str) -> Accessibility:
    """Lifecycle gate. Always reads the current status."""
    space = await _live_space(db, space_id)
    if space is None:
        return Accessibility(allowed=False, reason=NOT_FOUND)

    status = SpaceStatus(space.status)
    if status == SpaceStatus.DRAFT:
        return Accessibility(allowed=False, reason=NOT_READY)
    if status == SpaceStatus.ARCHIVED:
        return Accessibility(allowed=False, reason=ARCHIVED)
    return Accessibility(allowed=True, read_only=status == SpaceStatus.COMPLETED)


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

def raise_for_reason(reason: str, detail: Optional[str] = None) -> None:
    raise HTTPException(
        status_code=REASON_STATUS_CODES.get(reason, 403),
        detail=detail or REASON_MESSAGES.get(reason, REASON_MESSAGES[FORBIDDEN]),
    )


def portal_token_from(request: Request, space_id: str) -> Optional[str]:
    return request.cookies.get(cookie_name(space_id))


async def get_space_access(
    space_id: str,
    request: Request,
    staff: Optional[CurrentUser] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db_session),
) -> Handle:
    """Resolve access for ``space_id`` from the path, raising on denial.

    Stakeholders additionally pass the lifecycle gate for reads; staff may
    read draft and archived spaces of their own organisation.
    """
    access = await resolve_access(db, space_id, portal_token_from(request, space_id), staff)
    if isinstance(access, Denied):
        raise_for_reason(access.reason)

    if isinstance(access, StakeholderHandle):
        gate = await check_space_accessibility(db, space_id)
        if not gate.allowed:
            raise_for_reason(gate.reason)
    return access
