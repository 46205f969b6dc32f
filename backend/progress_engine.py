"""
Launchpad - Progress Engine

Derives completion, overdue and at-risk metrics from the content model.
Every figure is recomputed from the current rows on each call; nothing is
cached. Loading is done in four batched queries (pages, blocks, responses,
files) and the counting itself is pure so it can be reused by the analytics
layer across many spaces at once.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from block_content import (
    ActionPlanContent, ChecklistContent, FileUploadContent, FormContent, TaskListContent,
    TASK_BLOCK_TYPES, checked_items, form_answers, is_answered, parse_block_content,
    task_refs, task_status, task_statuses,
)
from models import Block, BlockType, FileRecord, Page, Response, Space
from task_keys import PENDING, InvalidTaskId, external_task_id, is_completed

logger = logging.getLogger("launchpad.progress")

AT_RISK_OVERDUE_RATIO = 0.5
RESPONSE_BLOCK_TYPES = TASK_BLOCK_TYPES + (BlockType.FORM.value, BlockType.CHECKLIST.value)


def today_str() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def round_half_up(value, places: int = 0):
    """Round to ``places`` decimals with halves going up (2.5 -> 3, 0.25 -> 0.3).

    Goes through the decimal string so 0.25 is not first seen as 0.2499...
    """
    rounded = Decimal(str(value)).quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)
    return int(rounded) if places == 0 else float(rounded)


def percentage(completed: int, total: int, empty: int = 0) -> int:
    """Nearest whole percent of completed / total, ``empty`` when there is nothing to count."""
    if total <= 0:
        return empty
    return round_half_up(100 * completed / total)


# ============================================================
# RESULT TYPES
# ============================================================

@dataclass
class ProgressStats:
    total_tasks: int = 0
    completed_tasks: int = 0
    total_forms: int = 0
    answered_forms: int = 0
    total_files: int = 0
    uploaded_files: int = 0

    @property
    def total_items(self) -> int:
        return self.total_tasks + self.total_forms + self.total_files

    @property
    def completed_items(self) -> int:
        return self.completed_tasks + self.answered_forms + self.uploaded_files

    @property
    def progress_percentage(self) -> int:
        return percentage(self.completed_items, self.total_items, empty=0)

    def add(self, other: "ProgressStats") -> None:
        self.total_tasks += other.total_tasks
        self.completed_tasks += other.completed_tasks
        self.total_forms += other.total_forms
        self.answered_forms += other.answered_forms
        self.total_files += other.total_files
        self.uploaded_files += other.uploaded_files

    def to_dict(self) -> Dict[str, int]:
        data = asdict(self)
        data["progress_percentage"] = self.progress_percentage
        return data


@dataclass
class PageProgress:
    page_id: str
    title: str
    slug: str
    total_items: int
    completed_items: int

    @property
    def progress_percentage(self) -> int:
        # A page with nothing actionable counts as done
        return percentage(self.completed_items, self.total_items, empty=100)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "page_id": self.page_id,
            "title": self.title,
            "slug": self.slug,
            "total_items": self.total_items,
            "completed_items": self.completed_items,
            "progress_percentage": self.progress_percentage,
        }


@dataclass
class TaskView:
    id: str  # external id: {block_id}-{task_key}
    block_id: str
    page_id: str
    space_id: str
    task_key: str
    title: str
    status: str
    due_date: Optional[str] = None
    milestone_id: Optional[str] = None
    milestone_title: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ContentSnapshot:
    """Rows needed to compute progress for one or more spaces."""
    pages: List[Page] = field(default_factory=list)
    blocks: List[Block] = field(default_factory=list)
    responses: Dict[str, Any] = field(default_factory=dict)  # block_id -> value
    blocks_with_files: Set[str] = field(default_factory=set)

    @property
    def page_space(self) -> Dict[str, str]:
        return {p.id: p.space_id for p in self.pages}

    def blocks_for_page(self, page_id: str) -> List[Block]:
        return [b for b in self.blocks if b.page_id == page_id]


# ============================================================
# LOADING
# ============================================================

async def load_snapshot(
    db: AsyncSession, space_ids: Iterable[str], visible_only: bool = False,
) -> ContentSnapshot:
    """Rows of the given spaces. ``visible_only`` drops pages hidden from stakeholders."""
    space_ids = list(space_ids)
    snapshot = ContentSnapshot()
    if not space_ids:
        return snapshot

    stmt = select(Page).where(Page.space_id.in_(space_ids), Page.deleted_at.is_(None))
    if visible_only:
        stmt = stmt.where(Page.is_visible.is_(True))
    pages_result = await db.execute(stmt.order_by(Page.sort_order, Page.created_at))
    snapshot.pages = list(pages_result.scalars().all())
    if not snapshot.pages:
        return snapshot

    blocks_result = await db.execute(
        select(Block)
        .where(Block.page_id.in_([p.id for p in snapshot.pages]), Block.deleted_at.is_(None))
        .order_by(Block.sort_order, Block.created_at)
    )
    snapshot.blocks = list(blocks_result.scalars().all())

    response_block_ids = [b.id for b in snapshot.blocks if b.type in RESPONSE_BLOCK_TYPES]
    if response_block_ids:
        responses_result = await db.execute(
            select(Response.block_id, Response.value).where(Response.block_id.in_(response_block_ids))
        )
        snapshot.responses = {row.block_id: row.value for row in responses_result}

    upload_block_ids = [b.id for b in snapshot.blocks if b.type == BlockType.FILE_UPLOAD.value]
    if upload_block_ids:
        files_result = await db.execute(
            select(FileRecord.block_id)
            .where(FileRecord.block_id.in_(upload_block_ids), FileRecord.deleted_at.is_(None))
            .distinct()
        )
        snapshot.blocks_with_files = set(files_result.scalars().all())

    return snapshot


# ============================================================
# COUNTING
# ============================================================

def block_stats(block: Block, response_value: Any, has_file: bool) -> ProgressStats:
    """Countable items of a single block."""
    stats = ProgressStats()
    try:
        content = parse_block_content(block.type, block.content)
        if isinstance(content, (TaskListContent, ActionPlanContent)):
            statuses = task_statuses(response_value)
            for ref in content.task_refs():
                stats.total_tasks += 1
                if is_completed(task_status(statuses, ref.key)):
                    stats.completed_tasks += 1
        elif isinstance(content, FormContent):
            answers = form_answers(response_value)
            for question in content.questions:
                stats.total_forms += 1
                if is_answered(answers.get(question.id)):
                    stats.answered_forms += 1
        elif isinstance(content, FileUploadContent):
            stats.total_files = 1
            stats.uploaded_files = 1 if has_file else 0
    except (TypeError, ValueError, AttributeError) as e:
        logger.warning(f"Skipping malformed content in block {block.id}: {e}")
        return ProgressStats()
    return stats


def tally(blocks: Iterable[Block], snapshot: ContentSnapshot) -> ProgressStats:
    total = ProgressStats()
    for block in blocks:
        total.add(block_stats(
            block,
            snapshot.responses.get(block.id),
            block.id in snapshot.blocks_with_files,
        ))
    return total


def block_completion(block: Block, response_value: Any, has_file: bool) -> Optional[float]:
    """Completion ratio 0..1 of one interactive block, None for informational blocks.

    Checklists are shown per block in the portal but do not feed the space
    percentage.
    """
    content = parse_block_content(block.type, block.content)
    if isinstance(content, ChecklistContent):
        if not content.item_ids:
            return None
        checked = checked_items(response_value)
        return sum(1 for item in content.item_ids if item in checked) / len(content.item_ids)
    stats = block_stats(block, response_value, has_file)
    if stats.total_items == 0:
        return None
    return stats.completed_items / stats.total_items


def space_stats_from_snapshot(snapshot: ContentSnapshot) -> Dict[str, ProgressStats]:
    """Progress per space for every space present in the snapshot."""
    page_space = snapshot.page_space
    by_space: Dict[str, ProgressStats] = defaultdict(ProgressStats)
    for block in snapshot.blocks:
        space_id = page_space.get(block.page_id)
        if space_id is None:
            continue
        by_space[space_id].add(block_stats(
            block,
            snapshot.responses.get(block.id),
            block.id in snapshot.blocks_with_files,
        ))
    return dict(by_space)


def pages_progress_from_snapshot(snapshot: ContentSnapshot) -> List[PageProgress]:
    out = []
    for page in snapshot.pages:
        stats = tally(snapshot.blocks_for_page(page.id), snapshot)
        out.append(PageProgress(
            page_id=page.id,
            title=page.title,
            slug=page.slug,
            total_items=stats.total_items,
            completed_items=stats.completed_items,
        ))
    return out


# ============================================================
# TASKS, OVERDUE & RISK
# ============================================================

def is_overdue(status: str, due_date: Optional[str], today: str) -> bool:
    """Pending with a due date strictly before today (calendar date strings)."""
    return status == PENDING and bool(due_date) and due_date < today


def is_at_risk(total_tasks: int, overdue_tasks: int) -> bool:
    return total_tasks > 0 and overdue_tasks / total_tasks > AT_RISK_OVERDUE_RATIO


def collect_tasks(snapshot: ContentSnapshot) -> List[TaskView]:
    """Every task of every task/action plan block, with its current status."""
    page_space = snapshot.page_space
    out = []
    for block in snapshot.blocks:
        if block.type not in TASK_BLOCK_TYPES:
            continue
        space_id = page_space.get(block.page_id)
        if space_id is None:
            continue
        statuses = task_statuses(snapshot.responses.get(block.id))
        refs = task_refs(block.type, block.content)
        try:
            ids = [external_task_id(block.id, ref.key) for ref in refs]
        except InvalidTaskId as e:
            logger.warning(f"Skipping tasks of block {block.id}: {e}")
            continue
        for task_id, ref in zip(ids, refs):
            out.append(TaskView(
                id=task_id,
                block_id=block.id,
                page_id=block.page_id,
                space_id=space_id,
                task_key=ref.key,
                title=ref.title or "Untitled",
                status=task_status(statuses, ref.key),
                due_date=ref.due_date,
                milestone_id=ref.milestone_id,
                milestone_title=ref.milestone_title,
            ))
    return out


def task_counts_by_space(snapshot: ContentSnapshot, today: str) -> Dict[str, Tuple[int, int]]:
    """space_id -> (total tasks, overdue tasks)."""
    counts: Dict[str, List[int]] = defaultdict(lambda: [0, 0])
    for task in collect_tasks(snapshot):
        counts[task.space_id][0] += 1
        if is_overdue(task.status, task.due_date, today):
            counts[task.space_id][1] += 1
    return {space_id: (c[0], c[1]) for space_id, c in counts.items()}


def group_open_tasks(tasks: Iterable[TaskView], today: str) -> Dict[str, List[TaskView]]:
    """Split non-completed tasks into overdue / upcoming / no_due_date, each sorted by due date."""
    grouped: Dict[str, List[TaskView]] = {"overdue": [], "upcoming": [], "no_due_date": []}
    for task in tasks:
        if is_completed(task.status):
            continue
        if not task.due_date:
            grouped["no_due_date"].append(task)
        elif task.due_date < today:
            grouped["overdue"].append(task)
        else:
            grouped["upcoming"].append(task)
    grouped["overdue"].sort(key=lambda t: t.due_date)
    grouped["upcoming"].sort(key=lambda t: t.due_date)
    return grouped


# ============================================================
# PUBLIC OPERATIONS
# ============================================================

async def compute_space_progress(db: AsyncSession, space_id: str) -> ProgressStats:
    snapshot = await load_snapshot(db, [space_id])
    return tally(snapshot.blocks, snapshot)


async def compute_progress_per_page(
    db: AsyncSession, space_id: str, visible_only: bool = False,
) -> List[PageProgress]:
    snapshot = await load_snapshot(db, [space_id], visible_only)
    return pages_progress_from_snapshot(snapshot)


async def list_upcoming_tasks(
    db: AsyncSession, space_id: str, limit: int = 5, visible_only: bool = False,
) -> List[TaskView]:
    snapshot = await load_snapshot(db, [space_id], visible_only)
    pending = [t for t in collect_tasks(snapshot) if t.status == PENDING and t.due_date]
    pending.sort(key=lambda t: t.due_date)
    return pending[:limit]


async def list_overdue_tasks(
    db: AsyncSession, space_id: str, today: Optional[str] = None, visible_only: bool = False,
) -> List[TaskView]:
    today = today or today_str()
    snapshot = await load_snapshot(db, [space_id], visible_only)
    overdue = [t for t in collect_tasks(snapshot) if is_overdue(t.status, t.due_date, today)]
    overdue.sort(key=lambda t: t.due_date)
    return overdue


async def list_org_tasks(
    db: AsyncSession, organisation_id: str, today: Optional[str] = None,
) -> Dict[str, List[TaskView]]:
    """Open tasks across every live space of an organisation, grouped for the task board."""
    today = today or today_str()
    result = await db.execute(
        select(Space.id).where(Space.organisation_id == organisation_id, Space.deleted_at.is_(None))
    )
    snapshot = await load_snapshot(db, result.scalars().all())
    return group_open_tasks(collect_tasks(snapshot), today)
