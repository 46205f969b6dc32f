"""
Typed views over polymorphic block content and response values.

``Block.content`` and ``Response.value`` are free-form JSON whose shape is
decided by ``Block.type``. Everything that needs to read them goes through
``parse_block_content`` (one dataclass per countable type) and the narrow
response accessors below. Unknown types and malformed payloads degrade to
content with zero countable items; nothing here raises on bad data.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Set

from models import BlockType
from task_keys import PENDING, milestone_task_key


@dataclass
class TaskItem:
    id: str
    title: str
    due_date: Optional[str] = None
    description: Optional[str] = None


@dataclass
class Milestone:
    id: str
    title: str
    due_date: Optional[str] = None
    tasks: List[TaskItem] = field(default_factory=list)


@dataclass
class TaskRef:
    """A task addressed by its key inside the owning block's response."""
    key: str
    task_id: str
    title: str
    due_date: Optional[str] = None
    milestone_id: Optional[str] = None
    milestone_title: Optional[str] = None


@dataclass
class Question:
    id: str
    type: str = "text"
    label: str = ""


@dataclass
class TaskListContent:
    title: str = ""
    tasks: List[TaskItem] = field(default_factory=list)

    def task_refs(self) -> Iterator[TaskRef]:
        for task in self.tasks:
            yield TaskRef(key=task.id, task_id=task.id, title=task.title, due_date=task.due_date)


@dataclass
class ActionPlanContent:
    title: str = ""
    milestones: List[Milestone] = field(default_factory=list)
    customer_can_complete: bool = True

    def task_refs(self) -> Iterator[TaskRef]:
        for milestone in self.milestones:
            for task in milestone.tasks:
                yield TaskRef(
                    key=milestone_task_key(milestone.id, task.id),
                    task_id=task.id,
                    title=task.title,
                    due_date=task.due_date,
                    milestone_id=milestone.id,
                    milestone_title=milestone.title,
                )


@dataclass
class FormContent:
    title: str = ""
    questions: List[Question] = field(default_factory=list)


@dataclass
class FileUploadContent:
    label: str = ""
    max_files: Optional[int] = None


@dataclass
class ChecklistContent:
    title: str = ""
    item_ids: List[str] = field(default_factory=list)


@dataclass
class InformationalContent:
    """Text, embeds, contacts, downloads and any type this service does not know."""
    block_type: str = ""


TASK_BLOCK_TYPES = (BlockType.TASK.value, BlockType.ACTION_PLAN.value)


# ============================================================
# CONTENT PARSING
# ============================================================

def _as_dict(value) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_list(value) -> List[Any]:
    return value if isinstance(value, list) else []


def _as_id(value) -> Optional[str]:
    if isinstance(value, (str, int)) and not isinstance(value, bool) and str(value) != "":
        return str(value)
    return None


def _due_date(raw: Dict[str, Any]) -> Optional[str]:
    value = raw.get("dueDate", raw.get("due_date"))
    if isinstance(value, str) and value.strip():
        # Calendar date part only; due dates compare as YYYY-MM-DD strings
        return value.strip()[:10]
    return None


def _parse_task(raw) -> Optional[TaskItem]:
    raw = _as_dict(raw)
    task_id = _as_id(raw.get("id"))
    if task_id is None:
        return None
    title = raw.get("title")
    description = raw.get("description")
    return TaskItem(
        id=task_id,
        title=title if isinstance(title, str) else "",
        due_date=_due_date(raw),
        description=description if isinstance(description, str) else None,
    )


def _parse_tasks(raw_list) -> List[TaskItem]:
    return [t for t in (_parse_task(r) for r in _as_list(raw_list)) if t is not None]


def _parse_task_list(content: Dict[str, Any]) -> TaskListContent:
    return TaskListContent(title=str(content.get("title") or ""), tasks=_parse_tasks(content.get("tasks")))


def _parse_action_plan(content: Dict[str, Any]) -> ActionPlanContent:
    milestones = []
    for raw in _as_list(content.get("milestones")):
        raw = _as_dict(raw)
        milestone_id = _as_id(raw.get("id"))
        if milestone_id is None:
            continue
        milestones.append(Milestone(
            id=milestone_id,
            title=str(raw.get("title") or ""),
            due_date=_due_date(raw),
            tasks=_parse_tasks(raw.get("tasks")),
        ))
    permissions = _as_dict(content.get("permissions"))
    can_complete = permissions.get("customerCanComplete", permissions.get("stakeholderCanComplete", True))
    return ActionPlanContent(
        title=str(content.get("title") or ""),
        milestones=milestones,
        customer_can_complete=can_complete is not False,
    )


def _parse_form(content: Dict[str, Any]) -> FormContent:
    raw_questions = content.get("questions")
    if raw_questions is None:
        raw_questions = content.get("fields")
    questions = []
    for raw in _as_list(raw_questions):
        raw = _as_dict(raw)
        question_id = _as_id(raw.get("id"))
        if question_id is None:
            continue
        questions.append(Question(
            id=question_id,
            type=str(raw.get("type") or "text"),
            label=str(raw.get("label") or raw.get("question") or ""),
        ))
    return FormContent(title=str(content.get("title") or ""), questions=questions)


def _parse_file_upload(content: Dict[str, Any]) -> FileUploadContent:
    max_files = content.get("maxFiles")
    return FileUploadContent(
        label=str(content.get("label") or content.get("title") or ""),
        max_files=max_files if isinstance(max_files, int) and not isinstance(max_files, bool) else None,
    )


def _parse_checklist(content: Dict[str, Any]) -> ChecklistContent:
    item_ids = []
    for raw in _as_list(content.get("items")):
        item_id = _as_id(raw.get("id")) if isinstance(raw, dict) else _as_id(raw)
        if item_id is not None:
            item_ids.append(item_id)
    return ChecklistContent(title=str(content.get("title") or ""), item_ids=item_ids)


_PARSERS = {
    BlockType.TASK.value: _parse_task_list,
    BlockType.ACTION_PLAN.value: _parse_action_plan,
    BlockType.FORM.value: _parse_form,
    BlockType.FILE_UPLOAD.value: _parse_file_upload,
    BlockType.CHECKLIST.value: _parse_checklist,
}


def parse_block_content(block_type: str, content: Any):
    parser = _PARSERS.get(block_type)
    if parser is None:
        return InformationalContent(block_type=block_type or "")
    return parser(_as_dict(content))


def task_refs(block_type: str, content: Any) -> List[TaskRef]:
    """All addressable tasks of a task or action plan block, [] for anything else."""
    parsed = parse_block_content(block_type, content)
    if isinstance(parsed, (TaskListContent, ActionPlanContent)):
        return list(parsed.task_refs())
    return []


# ============================================================
# RESPONSE ACCESSORS
# ============================================================

def task_statuses(value: Any) -> Dict[str, str]:
    """Task key -> status map stored in a task or action plan response."""
    statuses = _as_dict(_as_dict(value).get("tasks"))
    return {str(k): v for k, v in statuses.items() if isinstance(v, str)}


def task_status(statuses: Dict[str, str], key: str) -> str:
    return statuses.get(key) or PENDING


def form_answers(value: Any) -> Dict[str, Any]:
    return _as_dict(_as_dict(value).get("questions"))


def checked_items(value: Any) -> Set[str]:
    raw = _as_dict(value).get("checked_items")
    return {str(item) for item in _as_list(raw) if _as_id(item) is not None}


def is_answered(answer: Any) -> bool:
    """True when a stored form answer carries a meaningful value.

    text: trimmed non-empty; selected: non-empty string or non-empty list;
    date: any value present. Empty shells such as ``{}`` or
    ``{"text": "  "}`` do not count.
    """
    if not isinstance(answer, dict):
        return False
    text = answer.get("text")
    if isinstance(text, str) and text.strip():
        return True
    selected = answer.get("selected")
    if isinstance(selected, list) and len(selected) > 0:
        return True
    if isinstance(selected, str) and selected != "":
        return True
    if answer.get("date"):
        return True
    return False
