# routers/portal.py — Customer portal endpoints (stakeholder cookie or staff bearer)
import os
import secrets
import logging
from datetime import timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from access_control import (
    MEMBERSHIP_REVOKED, Denied, Handle, StakeholderHandle, check_space_accessibility, get_space_access,
    portal_token_from, raise_for_reason, resolve_access,
)
from actions import (
    delete_file_record, get_download_url, save_response, toggle_task, upload_file_record,
)
from activity import log_activity, log_portal_visit
from auth import CurrentUser, get_optional_user
from database import get_db_session
from models import (
    ActivityAction, Block, FileRecord, Page, PortalAccessToken, Response as BlockResponse,
    Space, SpaceMember, utcnow,
)
from portal_auth import clear_session_cookie, create_portal_session, set_session_cookie
from progress_engine import (
    block_completion, compute_progress_per_page, compute_space_progress, list_upcoming_tasks,
)

logger = logging.getLogger("launchpad.portal")

router = APIRouter(prefix="/api/v1/portal", tags=["Portal"])

PORTAL_TOKEN_TTL_DAYS = int(os.getenv("PORTAL_TOKEN_TTL_DAYS", "7"))
APP_URL = os.getenv("APP_URL", "http://localhost:3000").rstrip("/")


# --- Schemas ---

class AccessRequest(BaseModel):
    email: EmailStr


class RedeemRequest(BaseModel):
    token: str = Field(..., min_length=16, max_length=256)


class ResponseSave(BaseModel):
    value: Dict[str, Any]


class FileRecordCreate(BaseModel):
    file_name: str = Field(..., min_length=1, max_length=255)
    file_size: int = Field(..., ge=0)
    mime_type: Optional[str] = Field(default=None, max_length=255)
    storage_path: Optional[str] = Field(default=None, max_length=1024)


def _ts(dt) -> Optional[str]:
    return dt.isoformat() if dt else None


def _as_utc(dt):
    return dt if dt is None or dt.tzinfo else dt.replace(tzinfo=timezone.utc)


async def _visible_page(db: AsyncSession, handle: Handle, slug: str) -> Page:
    stmt = select(Page).where(
        Page.space_id == handle.space_id,
        Page.slug == slug,
        Page.deleted_at.is_(None),
    )
    if isinstance(handle, StakeholderHandle):
        stmt = stmt.where(Page.is_visible.is_(True))
    result = await db.execute(stmt)
    page = result.scalar_one_or_none()
    if not page:
        raise HTTPException(404, "Page not found")
    return page


# ============================================================
# MAGIC LINK SESSIONS
# ============================================================

@router.post("/{space_id}/access-request", status_code=202)
async def request_portal_access(
    space_id: str,
    data: AccessRequest,
    db: AsyncSession = Depends(get_db_session),
):
    """Issue a one-time magic link for an invited stakeholder.

    The response is identical whether or not the email is invited.
    """
    email = data.email.lower()
    result = await db.execute(
        select(SpaceMember).where(SpaceMember.space_id == space_id, SpaceMember.invited_email == email)
    )
    body = {"status": "sent"}
    if result.scalar_one_or_none() is None:
        logger.info(f"Portal access requested for uninvited email on space {space_id[:8]}")
        return body

    token = PortalAccessToken(
        space_id=space_id,
        email=email,
        token=secrets.token_urlsafe(32),
        expires_at=utcnow() + timedelta(days=PORTAL_TOKEN_TTL_DAYS),
    )
    db.add(token)
    await db.commit()
    logger.info(f"Magic link issued for space {space_id[:8]}")
    if os.getenv("ENVIRONMENT", "development") == "development":
        body["magic_link"] = f"{APP_URL}/portal/{space_id}/access?token={token.token}"
    return body


@router.post("/{space_id}/session")
async def redeem_portal_access(
    space_id: str,
    data: RedeemRequest,
    response: Response,
    db: AsyncSession = Depends(get_db_session),
):
    """Exchange a magic link token for the portal session cookie"""
    result = await db.execute(
        select(PortalAccessToken).where(
            PortalAccessToken.token == data.token,
            PortalAccessToken.space_id == space_id,
        )
    )
    token = result.scalar_one_or_none()
    if not token or token.used_at is not None or _as_utc(token.expires_at) < utcnow():
        raise HTTPException(401, "This access link is invalid or has expired")

    gate = await check_space_accessibility(db, space_id)
    if not gate.allowed:
        raise_for_reason(gate.reason)

    result = await db.execute(
        select(SpaceMember).where(SpaceMember.space_id == space_id, SpaceMember.invited_email == token.email)
    )
    member = result.scalar_one_or_none()
    if member is None:
        raise_for_reason(MEMBERSHIP_REVOKED)

    token.used_at = utcnow()
    if member.joined_at is None:
        member.joined_at = utcnow()
    await db.commit()

    set_session_cookie(response, space_id, create_portal_session(space_id, token.email))
    return {"email": token.email, "space_id": space_id}


@router.post("/{space_id}/logout")
async def portal_logout(space_id: str, response: Response):
    clear_session_cookie(response, space_id)
    return {"status": "logged_out"}


@router.get("/{space_id}/accessibility")
async def space_accessibility(
    space_id: str,
    request: Request,
    staff: Optional[CurrentUser] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db_session),
):
    access = await resolve_access(db, space_id, portal_token_from(request, space_id), staff)
    if isinstance(access, Denied):
        raise_for_reason(access.reason)
    gate = await check_space_accessibility(db, space_id)
    return {"allowed": gate.allowed, "read_only": gate.read_only, "reason": gate.reason}


# ============================================================
# READS
# ============================================================

@router.get("/{space_id}")
async def get_portal_space(
    space_id: str,
    handle: Handle = Depends(get_space_access),
    db: AsyncSession = Depends(get_db_session),
):
    space = await db.get(Space, space_id)
    gate = await check_space_accessibility(db, space_id)
    stats = await compute_space_progress(db, space_id)
    return {
        "id": space.id,
        "name": space.name,
        "client_name": space.client_name or "",
        "status": space.status.value,
        "target_go_live_date": _ts(space.target_go_live_date),
        "read_only": gate.read_only,
        "viewer": {"email": handle.actor_email, "stakeholder": isinstance(handle, StakeholderHandle)},
        "progress": stats.to_dict(),
    }


@router.get("/{space_id}/pages")
async def list_portal_pages(
    space_id: str,
    handle: Handle = Depends(get_space_access),
    db: AsyncSession = Depends(get_db_session),
):
    stmt = select(Page).where(Page.space_id == space_id, Page.deleted_at.is_(None))
    if isinstance(handle, StakeholderHandle):
        stmt = stmt.where(Page.is_visible.is_(True))
    result = await db.execute(stmt.order_by(Page.sort_order, Page.created_at))
    pages = result.scalars().all()
    progress = {p.page_id: p for p in await compute_progress_per_page(db, space_id)}
    return [
        {
            "id": p.id,
            "title": p.title,
            "slug": p.slug,
            "sort_order": p.sort_order,
            "progress_percentage": progress[p.id].progress_percentage if p.id in progress else 100,
        }
        for p in pages
    ]


@router.get("/{space_id}/pages/{slug}")
async def get_portal_page(
    space_id: str,
    slug: str,
    handle: Handle = Depends(get_space_access),
    db: AsyncSession = Depends(get_db_session),
):
    """Page with its blocks, each block's stored response and attached files"""
    page = await _visible_page(db, handle, slug)
    result = await db.execute(
        select(Block)
        .where(Block.page_id == page.id, Block.deleted_at.is_(None))
        .order_by(Block.sort_order, Block.created_at)
    )
    blocks = result.scalars().all()
    block_ids = [b.id for b in blocks]

    responses, files = {}, {}
    if block_ids:
        result = await db.execute(
            select(BlockResponse.block_id, BlockResponse.value).where(BlockResponse.block_id.in_(block_ids))
        )
        responses = {row.block_id: row.value for row in result}
        result = await db.execute(
            select(FileRecord)
            .where(FileRecord.block_id.in_(block_ids), FileRecord.deleted_at.is_(None))
            .order_by(FileRecord.created_at)
        )
        for f in result.scalars().all():
            files.setdefault(f.block_id, []).append({
                "id": f.id,
                "name": f.original_name,
                "mime_type": f.mime_type,
                "size": f.file_size_bytes,
                "uploaded_by": f.uploaded_by,
                "created_at": _ts(f.created_at),
            })

    return {
        "id": page.id,
        "title": page.title,
        "slug": page.slug,
        "blocks": [
            {
                "id": b.id,
                "type": b.type,
                "content": b.content,
                "response": responses.get(b.id),
                "files": files.get(b.id, []),
                "completion": block_completion(b, responses.get(b.id), b.id in files),
            }
            for b in blocks
        ],
    }


@router.get("/{space_id}/progress")
async def portal_progress(
    space_id: str,
    handle: Handle = Depends(get_space_access),
    db: AsyncSession = Depends(get_db_session),
):
    return (await compute_space_progress(db, space_id)).to_dict()


@router.get("/{space_id}/progress/pages")
async def portal_page_progress(
    space_id: str,
    handle: Handle = Depends(get_space_access),
    db: AsyncSession = Depends(get_db_session),
):
    pages = await compute_progress_per_page(db, space_id, visible_only=isinstance(handle, StakeholderHandle))
    return [p.to_dict() for p in pages]


@router.get("/{space_id}/tasks/upcoming")
async def portal_upcoming_tasks(
    space_id: str,
    handle: Handle = Depends(get_space_access),
    db: AsyncSession = Depends(get_db_session),
):
    tasks = await list_upcoming_tasks(db, space_id, visible_only=isinstance(handle, StakeholderHandle))
    return [t.to_dict() for t in tasks]


# ============================================================
# VISIT TRACKING
# ============================================================

@router.post("/{space_id}/visit")
async def record_visit(
    space_id: str,
    handle: Handle = Depends(get_space_access),
    db: AsyncSession = Depends(get_db_session),
):
    """Log a stakeholder visit; staff previews are not counted"""
    if not isinstance(handle, StakeholderHandle):
        return {"logged": False, "first_visit": False}
    first = await log_portal_visit(db, space_id, handle.email)
    return {"logged": True, "first_visit": first}


@router.post("/{space_id}/pages/{slug}/view")
async def record_page_view(
    space_id: str,
    slug: str,
    handle: Handle = Depends(get_space_access),
    db: AsyncSession = Depends(get_db_session),
):
    page = await _visible_page(db, handle, slug)
    if not isinstance(handle, StakeholderHandle):
        return {"logged": False}
    await log_activity(
        db, space_id, handle.email, ActivityAction.PAGE_VIEWED,
        resource_type="page", resource_id=page.id,
        metadata={"pageTitle": page.title},
    )
    return {"logged": True}


# ============================================================
# MUTATIONS
# ============================================================

@router.post("/{space_id}/tasks/{task_id}/toggle")
async def portal_toggle_task(
    space_id: str,
    task_id: str,
    request: Request,
    staff: Optional[CurrentUser] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db_session),
):
    result = await toggle_task(db, space_id, task_id, portal_token_from(request, space_id), staff)
    return result.unwrap()


@router.put("/{space_id}/blocks/{block_id}/response")
async def portal_save_response(
    space_id: str,
    block_id: str,
    data: ResponseSave,
    request: Request,
    staff: Optional[CurrentUser] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db_session),
):
    result = await save_response(db, space_id, block_id, data.value, portal_token_from(request, space_id), staff)
    return result.unwrap()


@router.post("/{space_id}/blocks/{block_id}/files", status_code=201)
async def portal_upload_file(
    space_id: str,
    block_id: str,
    data: FileRecordCreate,
    request: Request,
    staff: Optional[CurrentUser] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db_session),
):
    result = await upload_file_record(
        db, space_id, block_id,
        file_name=data.file_name,
        file_size=data.file_size,
        mime_type=data.mime_type,
        storage_path=data.storage_path,
        portal_token=portal_token_from(request, space_id),
        staff=staff,
    )
    return result.unwrap()


@router.delete("/{space_id}/files/{file_id}")
async def portal_delete_file(
    space_id: str,
    file_id: str,
    request: Request,
    staff: Optional[CurrentUser] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db_session),
):
    result = await delete_file_record(db, space_id, file_id, portal_token_from(request, space_id), staff)
    return result.unwrap()


@router.get("/{space_id}/files/{file_id}/download")
async def portal_download_url(
    space_id: str,
    file_id: str,
    request: Request,
    staff: Optional[CurrentUser] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db_session),
):
    result = await get_download_url(db, space_id, file_id, portal_token_from(request, space_id), staff)
    return result.unwrap()
