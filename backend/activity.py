# activity.py - Append-only activity log
# Every successful mutation appends exactly one row. The append is
# best-effort: a failure is logged and the caller's action still stands.
# After a successful append the owning organisation's chat webhooks are
# scheduled without being awaited.

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from models import ActivityLog, ActivityAction, Organisation, Space
from notifications import NotificationContext, notify

logger = logging.getLogger("launchpad.activity")

VISIT_ACTIONS = (ActivityAction.PORTAL_FIRST_VISIT.value, ActivityAction.PORTAL_VISIT.value)


async def log_activity(
    db: AsyncSession,
    space_id: str,
    actor_email: str,
    action: str,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Optional[ActivityLog]:
    """Append one activity row. Returns None (after logging) when the write fails."""
    action = action.value if isinstance(action, ActivityAction) else action
    entry = ActivityLog(
        space_id=space_id,
        actor_email=actor_email,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        extra_data=metadata or {},
    )
    try:
        db.add(entry)
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Failed to log {action} for space {space_id[:8]}: {e}")
        return None

    await _schedule_notifications(db, space_id, actor_email, action, metadata or {})
    return entry


async def _schedule_notifications(
    db: AsyncSession, space_id: str, actor_email: str, action: str, metadata: Dict[str, Any],
) -> None:
    try:
        result = await db.execute(
            select(Space.name, Space.client_name, Organisation.id, Organisation.settings)
            .join(Organisation, Organisation.id == Space.organisation_id)
            .where(Space.id == space_id)
        )
        row = result.first()
    except SQLAlchemyError as e:
        logger.error(f"Organisation lookup for notifications failed on space {space_id[:8]}: {e}")
        return
    if row is None:
        return

    notify(
        NotificationContext(
            space_id=space_id,
            organisation_id=row[2],
            space_name=row[0],
            client_name=row[1] or "",
            actor_email=actor_email,
            action=action,
            metadata=metadata,
        ),
        row[3],
    )


async def is_first_visit(db: AsyncSession, space_id: str, email: str) -> bool:
    """True when no visit has ever been logged for (space, email).

    Lookup errors count as a first visit so visit logging never blocks the portal.
    """
    try:
        result = await db.execute(
            select(ActivityLog.id)
            .where(
                ActivityLog.space_id == space_id,
                ActivityLog.actor_email == email,
                ActivityLog.action.in_(VISIT_ACTIONS),
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is None
    except SQLAlchemyError as e:
        logger.warning(f"First-visit lookup failed for space {space_id[:8]}, assuming first visit: {e}")
        return True


async def log_portal_visit(db: AsyncSession, space_id: str, email: str) -> bool:
    """Record a portal visit and return whether it was the first one."""
    first = await is_first_visit(db, space_id, email)
    action = ActivityAction.PORTAL_FIRST_VISIT if first else ActivityAction.PORTAL_VISIT
    await log_activity(db, space_id, email, action, metadata={"firstVisit": first})
    return first


async def list_activity(
    db: AsyncSession, space_id: str, limit: int = 50, action: Optional[str] = None,
) -> List[ActivityLog]:
    """Most recent activity of a space, newest first."""
    stmt = select(ActivityLog).where(ActivityLog.space_id == space_id)
    if action:
        stmt = stmt.where(ActivityLog.action == action)
    result = await db.execute(stmt.order_by(ActivityLog.created_at.desc()).limit(limit))
    return list(result.scalars().all())


def activity_out(entry: ActivityLog) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "space_id": entry.space_id,
        "actor_email": entry.actor_email,
        "action": entry.action,
        "resource_type": entry.resource_type,
        "resource_id": entry.resource_id,
        "metadata": entry.extra_data or {},
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }
