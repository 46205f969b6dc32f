# actions.py - Mutating operations shared by the staff app and the portal
# Every action follows the same order:
#   1. resolve_access (identity -> scoped handle, or denial)
#   2. validate the target against current block content
#   3. check_space_accessibility, immediately before writing
#   4. write (responses are upserted on block_id, last writer wins)
#   5. log_activity (best-effort, schedules notifications)
# Failures come back as ActionResult errors. A caller without any identity
# gets a 401 instead.

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from fastapi import HTTPException
from sqlalchemy import select, func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from access_control import (
    READ_ONLY_MESSAGE, UNAUTHENTICATED, NOT_FOUND, FORBIDDEN,
    Denied, StaffHandle, StakeholderHandle, check_space_accessibility, resolve_access,
)
from activity import log_activity
from auth import CurrentUser
from block_content import (
    ActionPlanContent, ChecklistContent, FileUploadContent, FormContent,
    checked_items, form_answers, parse_block_content, task_refs, task_status, task_statuses,
)
from models import (
    ActivityAction, Block, BlockType, FileRecord, Page, Response, Space, SpaceStatus,
    new_uuid, utcnow,
)
from storage import InvalidStoragePath, build_storage_path, is_within_space, sign_download_url
from task_keys import InvalidTaskId, is_completed, split_external_task_id, toggled

logger = logging.getLogger("launchpad.actions")

# Error codes, mapped to HTTP statuses by the routers
VALIDATION = "validation"
READ_ONLY = "read_only"

STATUS_TRANSITIONS = {
    SpaceStatus.DRAFT: {SpaceStatus.ACTIVE, SpaceStatus.ARCHIVED},
    SpaceStatus.ACTIVE: {SpaceStatus.COMPLETED, SpaceStatus.ARCHIVED},
    SpaceStatus.COMPLETED: {SpaceStatus.ACTIVE, SpaceStatus.ARCHIVED},
    SpaceStatus.ARCHIVED: {SpaceStatus.DRAFT, SpaceStatus.ACTIVE},
}


@dataclass
class ActionResult:
    success: bool
    error: Optional[str] = None
    code: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, **data) -> "ActionResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, code: str = VALIDATION) -> "ActionResult":
        return cls(success=False, error=error, code=code)

    def unwrap(self) -> Dict[str, Any]:
        """Response body on success, HTTPException otherwise."""
        if self.success:
            return {"success": True, **self.data}
        raise HTTPException(status_code=ERROR_STATUS_CODES.get(self.code, 403), detail=self.error)


# Anything not listed (lifecycle, revoked membership, ...) is a 403
ERROR_STATUS_CODES = {VALIDATION: 400, NOT_FOUND: 404}


# ============================================================
# SHARED STEPS
# ============================================================

async def _authorize(db, space_id, portal_token, staff):
    """Handle, or an ActionResult describing the denial. No identity at all raises 401."""
    access = await resolve_access(db, space_id, portal_token, staff)
    if isinstance(access, Denied):
        if access.reason == UNAUTHENTICATED:
            raise HTTPException(status_code=401, detail="Not authenticated")
        return ActionResult.fail(access.message, access.reason)
    return access


async def _writable(db: AsyncSession, space_id: str) -> Optional[ActionResult]:
    """None if the space accepts writes right now, otherwise the rejection."""
    gate = await check_space_accessibility(db, space_id)
    if not gate.allowed:
        return ActionResult.fail(gate.message, gate.reason)
    if gate.read_only:
        return ActionResult.fail(READ_ONLY_MESSAGE, READ_ONLY)
    return None


def _scoped_to_visible_pages(stmt, handle):
    """Stakeholders only reach blocks and files on visible pages."""
    if isinstance(handle, StakeholderHandle):
        stmt = stmt.where(Page.is_visible.is_(True))
    return stmt


async def _load_block(db: AsyncSession, handle, block_id: str) -> Optional[Block]:
    stmt = (
        select(Block)
        .join(Page, Page.id == Block.page_id)
        .where(
            Block.id == block_id,
            Block.deleted_at.is_(None),
            Page.space_id == handle.space_id,
            Page.deleted_at.is_(None),
        )
    )
    result = await db.execute(_scoped_to_visible_pages(stmt, handle))
    return result.scalar_one_or_none()


async def _response_value(db: AsyncSession, block_id: str) -> Dict[str, Any]:
    result = await db.execute(select(Response.value).where(Response.block_id == block_id))
    value = result.scalar_one_or_none()
    return dict(value) if isinstance(value, dict) else {}


async def upsert_response(db: AsyncSession, block_id: str, value: Dict[str, Any], handle) -> None:
    """INSERT ... ON CONFLICT (block_id) DO UPDATE with the dialect's native upsert."""
    dialect = db.get_bind().dialect.name
    insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
    now = utcnow()
    stmt = insert(Response).values(
        id=new_uuid(),
        block_id=block_id,
        value=value,
        user_id=handle.user_id if isinstance(handle, StaffHandle) else None,
        customer_email=handle.email if isinstance(handle, StakeholderHandle) else None,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[Response.block_id],
        set_={
            "value": stmt.excluded.value,
            "user_id": stmt.excluded.user_id,
            "customer_email": stmt.excluded.customer_email,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    await db.execute(stmt)


# ============================================================
# TASKS
# ============================================================

async def toggle_task(
    db: AsyncSession,
    space_id: str,
    task_id: str,
    portal_token: Optional[str] = None,
    staff: Optional[CurrentUser] = None,
) -> ActionResult:
    """Flip a task between completed and pending. ``task_id`` is the external id."""
    handle = await _authorize(db, space_id, portal_token, staff)
    if isinstance(handle, ActionResult):
        return handle

    try:
        block_id, task_key = split_external_task_id(task_id)
    except InvalidTaskId:
        return ActionResult.fail("Invalid task id")

    block = await _load_block(db, handle, block_id)
    if block is None:
        return ActionResult.fail("Task not found", NOT_FOUND)
    ref = next((r for r in task_refs(block.type, block.content) if r.key == task_key), None)
    if ref is None:
        return ActionResult.fail("Task not found", NOT_FOUND)

    content = parse_block_content(block.type, block.content)
    if (
        isinstance(handle, StakeholderHandle)
        and isinstance(content, ActionPlanContent)
        and not content.customer_can_complete
    ):
        return ActionResult.fail("Only the project team can complete these tasks.", FORBIDDEN)

    rejected = await _writable(db, space_id)
    if rejected:
        return rejected

    value = await _response_value(db, block.id)
    statuses = task_statuses(value)
    new_status = toggled(task_status(statuses, task_key))
    statuses[task_key] = new_status
    value["tasks"] = statuses
    await upsert_response(db, block.id, value, handle)
    await db.commit()

    await log_activity(
        db, space_id, handle.actor_email,
        ActivityAction.TASK_COMPLETED if is_completed(new_status) else ActivityAction.TASK_REOPENED,
        resource_type="task",
        resource_id=task_id,
        metadata={"taskTitle": ref.title, "blockId": block.id},
    )
    return ActionResult.ok(task_id=task_id, status=new_status)


# ============================================================
# FORM & CHECKLIST RESPONSES
# ============================================================

def _form_value(content: FormContent, value: Dict[str, Any], existing: Dict[str, Any]) -> Dict[str, Any]:
    answers = form_answers(existing)
    known = {q.id for q in content.questions}
    for question_id, answer in form_answers(value).items():
        if question_id in known and isinstance(answer, dict):
            answers[question_id] = answer
    merged = dict(existing)
    merged["questions"] = answers
    return merged


def _checklist_value(content: ChecklistContent, value: Dict[str, Any], existing: Dict[str, Any]) -> Dict[str, Any]:
    checked = checked_items(value)
    merged = dict(existing)
    merged["checked_items"] = [item for item in content.item_ids if item in checked]
    return merged


async def save_response(
    db: AsyncSession,
    space_id: str,
    block_id: str,
    value: Dict[str, Any],
    portal_token: Optional[str] = None,
    staff: Optional[CurrentUser] = None,
) -> ActionResult:
    """Store form answers or checked checklist items for one block."""
    handle = await _authorize(db, space_id, portal_token, staff)
    if isinstance(handle, ActionResult):
        return handle
    if not isinstance(value, dict):
        return ActionResult.fail("Response value must be an object")

    block = await _load_block(db, handle, block_id)
    if block is None:
        return ActionResult.fail("Block not found", NOT_FOUND)
    content = parse_block_content(block.type, block.content)
    if not isinstance(content, (FormContent, ChecklistContent)):
        return ActionResult.fail("This block does not accept responses")

    rejected = await _writable(db, space_id)
    if rejected:
        return rejected

    existing = await _response_value(db, block.id)
    if isinstance(content, FormContent):
        stored = _form_value(content, value, existing)
        action = ActivityAction.FORM_SUBMITTED
        metadata = {"formTitle": content.title or "Form", "blockId": block.id}
    else:
        stored = _checklist_value(content, value, existing)
        action = ActivityAction.CHECKLIST_UPDATED
        metadata = {
            "checklistTitle": content.title or "Checklist",
            "checkedCount": len(stored["checked_items"]),
            "blockId": block.id,
        }

    await upsert_response(db, block.id, stored, handle)
    await db.commit()

    await log_activity(
        db, space_id, handle.actor_email, action,
        resource_type="block", resource_id=block.id, metadata=metadata,
    )
    return ActionResult.ok(block_id=block.id, value=stored)


# ============================================================
# FILES
# ============================================================

async def upload_file_record(
    db: AsyncSession,
    space_id: str,
    block_id: str,
    file_name: str,
    file_size: int,
    mime_type: Optional[str] = None,
    storage_path: Optional[str] = None,
    portal_token: Optional[str] = None,
    staff: Optional[CurrentUser] = None,
) -> ActionResult:
    """Record a file already placed in storage against a file-upload block."""
    handle = await _authorize(db, space_id, portal_token, staff)
    if isinstance(handle, ActionResult):
        return handle

    if not file_name or not file_name.strip():
        return ActionResult.fail("File name is required")
    if file_size is None or file_size < 0:
        return ActionResult.fail("Invalid file size")

    block = await _load_block(db, handle, block_id)
    if block is None:
        return ActionResult.fail("Block not found", NOT_FOUND)
    content = parse_block_content(block.type, block.content)
    if not isinstance(content, FileUploadContent):
        return ActionResult.fail("This block does not accept uploads")

    if storage_path:
        try:
            if not is_within_space(storage_path, space_id):
                return ActionResult.fail("Invalid storage path")
        except InvalidStoragePath as e:
            return ActionResult.fail(f"Invalid storage path: {e}")
    else:
        storage_path = build_storage_path(space_id, block.id, file_name)

    if content.max_files:
        count = await db.execute(
            select(func.count(FileRecord.id)).where(
                FileRecord.block_id == block.id, FileRecord.deleted_at.is_(None),
            )
        )
        if (count.scalar() or 0) >= content.max_files:
            return ActionResult.fail("Maximum number of files reached")

    rejected = await _writable(db, space_id)
    if rejected:
        return rejected

    record = FileRecord(
        block_id=block.id,
        space_id=space_id,
        original_name=file_name.strip(),
        mime_type=mime_type,
        file_size_bytes=file_size,
        storage_path=storage_path.strip("/"),
        uploaded_by=handle.actor_email,
    )
    db.add(record)
    await db.commit()
    await db.refresh(record)

    await log_activity(
        db, space_id, handle.actor_email, ActivityAction.FILE_UPLOADED,
        resource_type="file", resource_id=record.id,
        metadata={"fileName": record.original_name, "fileType": mime_type, "fileSize": file_size},
    )
    return ActionResult.ok(file_id=record.id, storage_path=record.storage_path)


async def _load_file(db: AsyncSession, handle, file_id: str) -> Optional[FileRecord]:
    stmt = (
        select(FileRecord)
        .join(Block, Block.id == FileRecord.block_id)
        .join(Page, Page.id == Block.page_id)
        .where(
            FileRecord.id == file_id,
            FileRecord.space_id == handle.space_id,
            FileRecord.deleted_at.is_(None),
        )
    )
    result = await db.execute(_scoped_to_visible_pages(stmt, handle))
    return result.scalar_one_or_none()


async def delete_file_record(
    db: AsyncSession,
    space_id: str,
    file_id: str,
    portal_token: Optional[str] = None,
    staff: Optional[CurrentUser] = None,
) -> ActionResult:
    """Soft-delete a file record."""
    handle = await _authorize(db, space_id, portal_token, staff)
    if isinstance(handle, ActionResult):
        return handle

    record = await _load_file(db, handle, file_id)
    if record is None:
        return ActionResult.fail("File not found", NOT_FOUND)

    rejected = await _writable(db, space_id)
    if rejected:
        return rejected

    record.deleted_at = utcnow()
    await db.commit()

    await log_activity(
        db, space_id, handle.actor_email, ActivityAction.FILE_DELETED,
        resource_type="file", resource_id=record.id,
        metadata={"fileName": record.original_name},
    )
    return ActionResult.ok(file_id=record.id)


async def get_download_url(
    db: AsyncSession,
    space_id: str,
    file_id: str,
    portal_token: Optional[str] = None,
    staff: Optional[CurrentUser] = None,
) -> ActionResult:
    handle = await _authorize(db, space_id, portal_token, staff)
    if isinstance(handle, ActionResult):
        return handle
    if isinstance(handle, StakeholderHandle):
        gate = await check_space_accessibility(db, space_id)
        if not gate.allowed:
            return ActionResult.fail(gate.message, gate.reason)

    record = await _load_file(db, handle, file_id)
    if record is None:
        return ActionResult.fail("File not found", NOT_FOUND)
    try:
        url = sign_download_url(record.storage_path)
    except InvalidStoragePath:
        logger.error(f"Stored path of file {record.id[:8]} failed validation")
        return ActionResult.fail("File not available", NOT_FOUND)

    await log_activity(
        db, space_id, handle.actor_email, ActivityAction.FILE_DOWNLOADED,
        resource_type="file", resource_id=record.id,
        metadata={"fileName": record.original_name},
    )
    return ActionResult.ok(url=url, file_name=record.original_name)


# ============================================================
# LIFECYCLE
# ============================================================

async def change_space_status(
    db: AsyncSession,
    space_id: str,
    new_status: str,
    staff: Optional[CurrentUser],
) -> ActionResult:
    """Staff-only status transition, recorded as project.status_changed {from, to}."""
    handle = await _authorize(db, space_id, None, staff)
    if isinstance(handle, ActionResult):
        return handle

    try:
        target = SpaceStatus(new_status)
    except ValueError:
        return ActionResult.fail(f"Unknown status: {new_status}")

    result = await db.execute(select(Space).where(Space.id == space_id, Space.deleted_at.is_(None)))
    space = result.scalar_one_or_none()
    if space is None:
        return ActionResult.fail("Project not found", NOT_FOUND)

    current = SpaceStatus(space.status)
    if target == current:
        return ActionResult.ok(status=current.value)
    if target not in STATUS_TRANSITIONS[current]:
        return ActionResult.fail(f"Cannot change status from {current.value} to {target.value}")

    space.status = target
    await db.commit()
    logger.info(f"Space {space_id[:8]} status {current.value} -> {target.value}")

    await log_activity(
        db, space_id, handle.actor_email, ActivityAction.PROJECT_STATUS_CHANGED,
        resource_type="space", resource_id=space_id,
        metadata={"from": current.value, "to": target.value},
    )
    return ActionResult.ok(status=target.value)
