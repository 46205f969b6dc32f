# routers/spaces.py — Staff workspace management, progress and stakeholders
from typing import Optional
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from access_control import Denied, StaffHandle, raise_for_reason, resolve_access
from actions import change_space_status
from activity import activity_out, list_activity, log_activity
from auth import CurrentUser, get_current_user, require_org_member, require_permission
from database import get_db_session
from models import ActivityAction, Space, SpaceMember, SpaceStatus, utcnow
from progress_engine import (
    compute_progress_per_page, compute_space_progress, list_org_tasks,
    list_overdue_tasks, list_upcoming_tasks, load_snapshot, space_stats_from_snapshot,
)

router = APIRouter(prefix="/api/v1/spaces", tags=["Spaces"])


# --- Schemas ---

class SpaceCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    client_name: str = Field(default="", max_length=200)
    target_go_live_date: Optional[date] = None


class SpaceOut(BaseModel):
    id: str
    name: str
    client_name: str
    status: str
    target_go_live_date: Optional[str] = None
    engagement_score: Optional[int] = None
    engagement_level: Optional[str] = None
    progress_percentage: Optional[int] = None
    created_at: Optional[str] = None


class StatusChange(BaseModel):
    status: str = Field(..., pattern=r'^(draft|active|completed|archived)$')


class StakeholderInvite(BaseModel):
    email: EmailStr


def _ts(dt) -> Optional[str]:
    return dt.isoformat() if dt else None


def _space_out(space: Space, progress: Optional[int] = None) -> dict:
    return SpaceOut(
        id=space.id,
        name=space.name,
        client_name=space.client_name or "",
        status=space.status.value if hasattr(space.status, "value") else str(space.status),
        target_go_live_date=_ts(space.target_go_live_date),
        engagement_score=space.engagement_score,
        engagement_level=space.engagement_level,
        progress_percentage=progress,
        created_at=_ts(space.created_at),
    ).model_dump()


def _member_out(m: SpaceMember) -> dict:
    return {
        "id": m.id,
        "email": m.invited_email,
        "role": m.role.value if hasattr(m.role, "value") else str(m.role),
        "invited_at": _ts(m.invited_at),
        "joined_at": _ts(m.joined_at),
    }


async def _staff_access(db: AsyncSession, space_id: str, user: CurrentUser) -> StaffHandle:
    access = await resolve_access(db, space_id, None, user)
    if isinstance(access, Denied):
        raise_for_reason(access.reason)
    return access


# ============================================================
# ORGANISATION-WIDE
# ============================================================

@router.get("")
async def list_spaces(
    status: Optional[str] = Query(default=None, pattern=r'^(draft|active|completed|archived)$'),
    user: CurrentUser = Depends(require_org_member("spaces:read")),
    db: AsyncSession = Depends(get_db_session),
):
    stmt = select(Space).where(
        Space.organisation_id == user.organisation_id,
        Space.deleted_at.is_(None),
    )
    if status:
        stmt = stmt.where(Space.status == SpaceStatus(status))
    result = await db.execute(stmt.order_by(Space.created_at.desc()))
    spaces = result.scalars().all()

    progress = space_stats_from_snapshot(await load_snapshot(db, [s.id for s in spaces]))
    return [
        _space_out(s, progress[s.id].progress_percentage if s.id in progress else 0)
        for s in spaces
    ]


@router.post("", status_code=201)
async def create_space(
    data: SpaceCreate,
    user: CurrentUser = Depends(require_org_member("spaces:write")),
    db: AsyncSession = Depends(get_db_session),
):
    space = Space(
        organisation_id=user.organisation_id,
        name=data.name,
        client_name=data.client_name,
        status=SpaceStatus.DRAFT,
        target_go_live_date=data.target_go_live_date,
        created_by=user.id,
    )
    db.add(space)
    await db.commit()
    await db.refresh(space)
    return _space_out(space, 0)


@router.get("/tasks")
async def org_task_board(
    user: CurrentUser = Depends(require_org_member("spaces:read")),
    db: AsyncSession = Depends(get_db_session),
):
    """Open tasks across the organisation grouped into overdue / upcoming / no due date"""
    grouped = await list_org_tasks(db, user.organisation_id)
    return {group: [t.to_dict() for t in tasks] for group, tasks in grouped.items()}


# ============================================================
# SINGLE SPACE
# ============================================================

@router.get("/{space_id}")
async def get_space(
    space_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await _staff_access(db, space_id, user)
    space = await db.get(Space, space_id)
    stats = await compute_space_progress(db, space_id)
    return {**_space_out(space, stats.progress_percentage), "progress": stats.to_dict()}


@router.patch("/{space_id}/status")
async def update_status(
    space_id: str,
    data: StatusChange,
    user: CurrentUser = Depends(require_permission("spaces:status")),
    db: AsyncSession = Depends(get_db_session),
):
    result = await change_space_status(db, space_id, data.status, user)
    return result.unwrap()


@router.delete("/{space_id}")
async def delete_space(
    space_id: str,
    user: CurrentUser = Depends(require_permission("spaces:delete")),
    db: AsyncSession = Depends(get_db_session),
):
    """Soft-delete an archived space"""
    await _staff_access(db, space_id, user)
    space = await db.get(Space, space_id)
    if space.status != SpaceStatus.ARCHIVED:
        raise HTTPException(400, "Only archived spaces can be deleted")
    space.deleted_at = utcnow()
    await db.commit()
    return {"status": "deleted", "id": space_id}


@router.get("/{space_id}/progress")
async def space_progress(
    space_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await _staff_access(db, space_id, user)
    return (await compute_space_progress(db, space_id)).to_dict()


@router.get("/{space_id}/progress/pages")
async def space_page_progress(
    space_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await _staff_access(db, space_id, user)
    return [p.to_dict() for p in await compute_progress_per_page(db, space_id)]


@router.get("/{space_id}/tasks/upcoming")
async def upcoming_tasks(
    space_id: str,
    limit: int = Query(default=5, ge=1, le=50),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await _staff_access(db, space_id, user)
    return [t.to_dict() for t in await list_upcoming_tasks(db, space_id, limit=limit)]


@router.get("/{space_id}/tasks/overdue")
async def overdue_tasks(
    space_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await _staff_access(db, space_id, user)
    return [t.to_dict() for t in await list_overdue_tasks(db, space_id)]


@router.get("/{space_id}/activity")
async def space_activity(
    space_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    action: Optional[str] = Query(default=None),
    user: CurrentUser = Depends(require_permission("activity:read")),
    db: AsyncSession = Depends(get_db_session),
):
    await _staff_access(db, space_id, user)
    return [activity_out(e) for e in await list_activity(db, space_id, limit=limit, action=action)]


# ============================================================
# STAKEHOLDERS
# ============================================================

@router.get("/{space_id}/stakeholders")
async def list_stakeholders(
    space_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await _staff_access(db, space_id, user)
    result = await db.execute(
        select(SpaceMember).where(SpaceMember.space_id == space_id).order_by(SpaceMember.invited_at)
    )
    return [_member_out(m) for m in result.scalars().all()]


@router.post("/{space_id}/stakeholders", status_code=201)
async def invite_stakeholder(
    space_id: str,
    data: StakeholderInvite,
    user: CurrentUser = Depends(require_permission("stakeholders:invite")),
    db: AsyncSession = Depends(get_db_session),
):
    handle = await _staff_access(db, space_id, user)
    member = SpaceMember(space_id=space_id, invited_email=data.email.lower(), invited_by=user.id)
    db.add(member)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(409, "Stakeholder already invited")
    await db.refresh(member)

    await log_activity(
        db, space_id, handle.actor_email, ActivityAction.STAKEHOLDER_INVITED,
        resource_type="space_member", resource_id=member.id,
        metadata={"email": member.invited_email},
    )
    return _member_out(member)


@router.delete("/{space_id}/stakeholders/{member_id}")
async def remove_stakeholder(
    space_id: str,
    member_id: str,
    user: CurrentUser = Depends(require_permission("stakeholders:remove")),
    db: AsyncSession = Depends(get_db_session),
):
    """Revoke a stakeholder. Their portal session stops working on the next request."""
    handle = await _staff_access(db, space_id, user)
    result = await db.execute(
        select(SpaceMember).where(SpaceMember.id == member_id, SpaceMember.space_id == space_id)
    )
    member = result.scalar_one_or_none()
    if not member:
        raise HTTPException(404, "Stakeholder not found")
    email = member.invited_email
    await db.delete(member)
    await db.commit()

    await log_activity(
        db, space_id, handle.actor_email, ActivityAction.STAKEHOLDER_REMOVED,
        resource_type="space_member", resource_id=member_id,
        metadata={"email": email},
    )
    return {"status": "removed", "id": member_id}
