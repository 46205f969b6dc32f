"""
Launchpad — Analytics Engine

Organisation-wide read-side aggregations over spaces, stakeholder
memberships, the content model and the activity log: portfolio stats for the
spaces list, the dashboard summary, and the insights page (KPIs, monthly
creation counts, status and engagement distributions, activation funnel,
time-to-first-access buckets, upcoming go-lives).

Nothing here writes. Every call reloads the rows it needs; the pure
``calculate_*`` helpers take plain rows and an explicit ``now`` so they can be
tested without a database.
"""

from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional, Any, Iterable
from datetime import date, datetime, timezone, timedelta
from collections import defaultdict
import logging
import statistics

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import ActivityLog, ActivityAction, EngagementLevel, Space, SpaceMember, SpaceStatus
from progress_engine import (
    is_at_risk, load_snapshot, round_half_up, space_stats_from_snapshot, task_counts_by_space,
)

logger = logging.getLogger("launchpad.analytics")

NEEDS_ATTENTION_PROGRESS = 30
TOP_PROJECTS_LIMIT = 5
UPCOMING_WINDOW_DAYS = 30
TRAILING_MONTHS = 12

STATUS_ORDER = [SpaceStatus.DRAFT, SpaceStatus.ACTIVE, SpaceStatus.COMPLETED, SpaceStatus.ARCHIVED]
ENGAGEMENT_LABELS = {
    EngagementLevel.HIGH.value: "High",
    EngagementLevel.MEDIUM.value: "Medium",
    EngagementLevel.LOW.value: "Low",
    EngagementLevel.NONE.value: "No Activity",
}
ACCESS_BUCKETS = ["Same day", "1-3 days", "4-7 days", "7+ days", "Not accessed"]
VISIT_ACTIONS = (ActivityAction.PORTAL_FIRST_VISIT.value, ActivityAction.PORTAL_VISIT.value)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes for timezone-aware columns
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _status(space: Space) -> str:
    return space.status.value if isinstance(space.status, SpaceStatus) else str(space.status)


def _days_between(start: datetime, end: datetime) -> int:
    """Whole days elapsed from start to end, clamped to zero."""
    return max(0, (_as_utc(end) - _as_utc(start)).days)


def _subtract_months(day: date, months: int) -> date:
    total = day.year * 12 + (day.month - 1) - months
    return date(total // 12, total % 12 + 1, 1)


# ============================================================
# RESULT TYPES
# ============================================================

@dataclass
class ProjectAttention:
    id: str
    name: str
    client_name: str
    progress: int
    overdue_tasks: int
    days_to_go_live: Optional[int]
    needs_attention: bool


@dataclass
class StatusTransitions:
    """First activation and first completion reconstructed from the activity log."""
    activated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def completion_days(self) -> Optional[int]:
        if self.activated_at is None or self.completed_at is None:
            return None
        if self.completed_at < self.activated_at:
            return None
        return (self.completed_at - self.activated_at).days


@dataclass
class InsightsData:
    kpis: Dict[str, Any] = field(default_factory=dict)
    projects_by_month: List[Dict[str, Any]] = field(default_factory=list)
    status_distribution: List[Dict[str, Any]] = field(default_factory=list)
    engagement_distribution: List[Dict[str, Any]] = field(default_factory=list)
    completion_funnel: List[Dict[str, Any]] = field(default_factory=list)
    time_to_access_distribution: List[Dict[str, Any]] = field(default_factory=list)
    upcoming_projects: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kpis": self.kpis,
            "projects_by_month": self.projects_by_month,
            "status_distribution": self.status_distribution,
            "engagement_distribution": self.engagement_distribution,
            "completion_funnel": self.completion_funnel,
            "time_to_access_distribution": self.time_to_access_distribution,
            "upcoming_projects": self.upcoming_projects,
        }


# ============================================================
# PURE CALCULATIONS
# ============================================================

def reconstruct_transitions(entries: Iterable[ActivityLog]) -> StatusTransitions:
    """Scan status-change rows oldest first for the first ``to: active`` and first ``to: completed``."""
    transitions = StatusTransitions()
    for entry in sorted(entries, key=lambda e: _as_utc(e.created_at)):
        target = (entry.extra_data or {}).get("to")
        if target == SpaceStatus.ACTIVE.value and transitions.activated_at is None:
            transitions.activated_at = _as_utc(entry.created_at)
        elif target == SpaceStatus.COMPLETED.value and transitions.completed_at is None:
            transitions.completed_at = _as_utc(entry.created_at)
    return transitions


def calculate_avg_completion_days(spaces: List[Space], status_changes: List[ActivityLog]) -> Optional[int]:
    by_space = defaultdict(list)
    for entry in status_changes:
        by_space[entry.space_id].append(entry)

    samples = []
    for space in spaces:
        if _status(space) != SpaceStatus.COMPLETED.value:
            continue
        days = reconstruct_transitions(by_space.get(space.id, [])).completion_days
        if days is not None:
            samples.append(days)
    if not samples:
        return None
    return round_half_up(statistics.mean(samples))


def first_visits(visits: Iterable[ActivityLog]) -> Dict[tuple, datetime]:
    """(space_id, email) -> earliest visit timestamp."""
    earliest: Dict[tuple, datetime] = {}
    for visit in visits:
        key = (visit.space_id, (visit.actor_email or "").lower())
        at = _as_utc(visit.created_at)
        if key not in earliest or at < earliest[key]:
            earliest[key] = at
    return earliest


def access_delays(members: List[SpaceMember], visits: List[ActivityLog]) -> List[Optional[int]]:
    """Invite-to-first-visit days per member; None for members who never visited."""
    earliest = first_visits(visits)
    delays = []
    for member in members:
        if member.invited_at is None or not member.invited_email:
            continue
        first = earliest.get((member.space_id, member.invited_email.lower()))
        delays.append(None if first is None else _days_between(member.invited_at, first))
    return delays


def calculate_avg_time_to_first_access(members: List[SpaceMember], visits: List[ActivityLog]) -> Optional[float]:
    samples = [d for d in access_delays(members, visits) if d is not None]
    if not samples:
        return None
    return round_half_up(statistics.mean(samples), 1)


def access_bucket(days: Optional[int]) -> str:
    if days is None:
        return "Not accessed"
    if days == 0:
        return "Same day"
    if days <= 3:
        return "1-3 days"
    if days <= 7:
        return "4-7 days"
    return "7+ days"


def calculate_time_to_access_distribution(members: List[SpaceMember], visits: List[ActivityLog]) -> List[Dict[str, Any]]:
    counts = {bucket: 0 for bucket in ACCESS_BUCKETS}
    for days in access_delays(members, visits):
        counts[access_bucket(days)] += 1
    return [{"bucket": bucket, "count": count} for bucket, count in counts.items() if count > 0]


def calculate_projects_by_month(spaces: List[Space], now: datetime) -> List[Dict[str, Any]]:
    """Creation counts for the trailing 12 calendar months, oldest first."""
    created = defaultdict(int)
    for space in spaces:
        if space.created_at is not None:
            at = _as_utc(space.created_at)
            created[(at.year, at.month)] += 1

    out = []
    for offset in range(TRAILING_MONTHS - 1, -1, -1):
        month = _subtract_months(now.date(), offset)
        out.append({"month": month.strftime("%b %Y"), "count": created.get((month.year, month.month), 0)})
    return out


def calculate_status_distribution(spaces: List[Space]) -> List[Dict[str, Any]]:
    counts = {status.value: 0 for status in STATUS_ORDER}
    for space in spaces:
        if _status(space) in counts:
            counts[_status(space)] += 1
    return [
        {"status": status.capitalize(), "count": count}
        for status, count in counts.items() if count > 0
    ]


def calculate_engagement_distribution(spaces: List[Space]) -> List[Dict[str, Any]]:
    counts = {level: 0 for level in ENGAGEMENT_LABELS}
    for space in spaces:
        level = space.engagement_level or EngagementLevel.NONE.value
        if level in counts:
            counts[level] += 1
    return [
        {"level": ENGAGEMENT_LABELS[level], "count": count}
        for level, count in counts.items() if count > 0
    ]


def calculate_completion_funnel(spaces: List[Space]) -> List[Dict[str, Any]]:
    statuses = [_status(s) for s in spaces]
    completed = statuses.count(SpaceStatus.COMPLETED.value)
    activated = statuses.count(SpaceStatus.ACTIVE.value) + completed
    return [
        {"name": "Total Created", "value": len(statuses)},
        {"name": "Activated", "value": activated},
        {"name": "Completed", "value": completed},
    ]


def select_upcoming_go_lives(spaces: List[Space], today: date) -> List[Space]:
    horizon = today + timedelta(days=UPCOMING_WINDOW_DAYS)
    upcoming = [
        s for s in spaces
        if s.target_go_live_date is not None
        and _status(s) not in (SpaceStatus.COMPLETED.value, SpaceStatus.ARCHIVED.value)
        and today <= s.target_go_live_date <= horizon
    ]
    upcoming.sort(key=lambda s: s.target_go_live_date)
    return upcoming[:TOP_PROJECTS_LIMIT]


def rank_needs_attention(projects: List[ProjectAttention], limit: int = TOP_PROJECTS_LIMIT) -> List[ProjectAttention]:
    """Needs attention first, then most overdue tasks, then lowest progress."""
    ranked = sorted(projects, key=lambda p: (not p.needs_attention, -p.overdue_tasks, p.progress))
    return ranked[:limit]


# ============================================================
# LOADERS
# ============================================================

async def _org_spaces(db: AsyncSession, organisation_id: str) -> List[Space]:
    result = await db.execute(
        select(Space)
        .where(Space.organisation_id == organisation_id, Space.deleted_at.is_(None))
        .order_by(Space.created_at)
    )
    return list(result.scalars().all())


async def _members(db: AsyncSession, space_ids: List[str]) -> List[SpaceMember]:
    if not space_ids:
        return []
    result = await db.execute(select(SpaceMember).where(SpaceMember.space_id.in_(space_ids)))
    return list(result.scalars().all())


async def _activity(db: AsyncSession, space_ids: List[str], actions) -> List[ActivityLog]:
    if not space_ids:
        return []
    result = await db.execute(
        select(ActivityLog)
        .where(ActivityLog.space_id.in_(space_ids), ActivityLog.action.in_(list(actions)))
        .order_by(ActivityLog.created_at)
    )
    return list(result.scalars().all())


# ============================================================
# PUBLIC OPERATIONS
# ============================================================

async def get_space_stats(db: AsyncSession, organisation_id: str, now: Optional[datetime] = None) -> Dict[str, int]:
    """Header figures for the spaces list, computed over active spaces."""
    today = (now or datetime.now(timezone.utc)).date()
    active = [s for s in await _org_spaces(db, organisation_id) if _status(s) == SpaceStatus.ACTIVE.value]

    low = [
        s for s in active
        if s.engagement_level in (EngagementLevel.LOW.value, EngagementLevel.NONE.value)
    ]
    scores = [s.engagement_score for s in active if s.engagement_score is not None]
    this_month = [
        s for s in active
        if s.target_go_live_date is not None
        and (s.target_go_live_date.year, s.target_go_live_date.month) == (today.year, today.month)
    ]
    return {
        "active_spaces": len(active),
        "low_engagement": len(low),
        "avg_engagement": round_half_up(statistics.mean(scores)) if scores else 0,
        "go_live_this_month": len(this_month),
    }


async def get_dashboard_stats(db: AsyncSession, organisation_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    today = now.date()
    spaces = [
        s for s in await _org_spaces(db, organisation_id)
        if _status(s) != SpaceStatus.ARCHIVED.value
    ]
    active = [s for s in spaces if _status(s) == SpaceStatus.ACTIVE.value]
    if not spaces:
        return {
            "active_projects": 0,
            "overdue_tasks": 0,
            "avg_days_to_go_live": 0,
            "projects_at_risk": 0,
            "top_projects": [],
        }

    snapshot = await load_snapshot(db, [s.id for s in spaces])
    task_counts = task_counts_by_space(snapshot, today.isoformat())
    progress = space_stats_from_snapshot(snapshot)

    overdue_total = sum(overdue for _, overdue in task_counts.values())
    at_risk = sum(1 for s in active if is_at_risk(*task_counts.get(s.id, (0, 0))))

    future = [s for s in active if s.target_go_live_date is not None and s.target_go_live_date > today]
    avg_days = (
        round_half_up(statistics.mean((s.target_go_live_date - today).days for s in future))
        if future else 0
    )

    candidates = []
    for space in active:
        stats = progress.get(space.id)
        pct = stats.progress_percentage if stats else 0
        overdue = task_counts.get(space.id, (0, 0))[1]
        candidates.append(ProjectAttention(
            id=space.id,
            name=space.name,
            client_name=space.client_name or "",
            progress=pct,
            overdue_tasks=overdue,
            days_to_go_live=(space.target_go_live_date - today).days if space.target_go_live_date else None,
            needs_attention=overdue > 0 or pct < NEEDS_ATTENTION_PROGRESS,
        ))

    return {
        "active_projects": len(active),
        "overdue_tasks": overdue_total,
        "avg_days_to_go_live": avg_days,
        "projects_at_risk": at_risk,
        "top_projects": [asdict(p) for p in rank_needs_attention(candidates)],
    }


async def get_insights_data(db: AsyncSession, organisation_id: str, now: Optional[datetime] = None) -> InsightsData:
    now = now or datetime.now(timezone.utc)
    spaces = await _org_spaces(db, organisation_id)
    space_ids = [s.id for s in spaces]

    members = await _members(db, space_ids)
    visits = await _activity(db, space_ids, VISIT_ACTIONS)
    status_changes = await _activity(db, space_ids, [ActivityAction.PROJECT_STATUS_CHANGED.value])

    upcoming = select_upcoming_go_lives(spaces, now.date())
    progress = space_stats_from_snapshot(await load_snapshot(db, [s.id for s in upcoming]))

    logger.debug(f"Insights for org {organisation_id[:8]}: {len(spaces)} spaces, {len(members)} members")
    return InsightsData(
        kpis={
            "total_projects": len(spaces),
            "active_projects": sum(1 for s in spaces if _status(s) == SpaceStatus.ACTIVE.value),
            "avg_completion_days": calculate_avg_completion_days(spaces, status_changes),
            "avg_time_to_first_access": calculate_avg_time_to_first_access(members, visits),
        },
        projects_by_month=calculate_projects_by_month(spaces, now),
        status_distribution=calculate_status_distribution(spaces),
        engagement_distribution=calculate_engagement_distribution(spaces),
        completion_funnel=calculate_completion_funnel(spaces),
        time_to_access_distribution=calculate_time_to_access_distribution(members, visits),
        upcoming_projects=[
            {
                "id": s.id,
                "name": s.name,
                "client_name": s.client_name or "",
                "target_date": s.target_go_live_date.isoformat(),
                "days_remaining": (s.target_go_live_date - now.date()).days,
                "progress": progress[s.id].progress_percentage if s.id in progress else 0,
            }
            for s in upcoming
        ],
    )
