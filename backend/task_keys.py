"""
Task addressing.

Completion state lives inside the owning block's single response row, under
``value["tasks"]``:

* plain task blocks key by task id (``t1``)
* action plan blocks key by ``{milestone_id}-{task_id}`` (``m1-t2``)

Outside the owning response (space-wide task lists, toggles from the task
board) the key is prefixed with the block id: ``{block_id}-{task_key}``.
Block ids are canonical 36 character UUIDs, so the external id is split by
width rather than by searching for ``-``; task and milestone ids may contain
the separator themselves.
"""

import uuid
from typing import Tuple

SEPARATOR = "-"
BLOCK_ID_LENGTH = 36

PENDING = "pending"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
TASK_STATUSES = (PENDING, IN_PROGRESS, COMPLETED)


class InvalidTaskId(ValueError):
    pass


def milestone_task_key(milestone_id: str, task_id: str) -> str:
    return f"{milestone_id}{SEPARATOR}{task_id}"


def external_task_id(block_id: str, task_key: str) -> str:
    """Prefix a response-scoped task key with its owning block id."""
    _check_block_id(block_id)
    if not task_key:
        raise InvalidTaskId("Task key must not be empty")
    return f"{block_id}{SEPARATOR}{task_key}"


def external_milestone_task_id(block_id: str, milestone_id: str, task_id: str) -> str:
    return external_task_id(block_id, milestone_task_key(milestone_id, task_id))


def split_external_task_id(external_id: str) -> Tuple[str, str]:
    """Split ``{block_id}-{task_key}`` back into ``(block_id, task_key)``."""
    if not isinstance(external_id, str) or len(external_id) < BLOCK_ID_LENGTH + 2:
        raise InvalidTaskId(f"Invalid task id: {external_id!r}")
    # Block ids are stored lower-case; UUIDs compare case-insensitively
    block_id = external_id[:BLOCK_ID_LENGTH].lower()
    if external_id[BLOCK_ID_LENGTH] != SEPARATOR:
        raise InvalidTaskId(f"Invalid task id: {external_id!r}")
    _check_block_id(block_id)
    return block_id, external_id[BLOCK_ID_LENGTH + 1:]


def split_milestone_task_key(task_key: str, milestone_id: str) -> str:
    """Strip a known milestone prefix from a composite key, returning the task id.

    The milestone id comes from block content, which avoids guessing where the
    milestone part ends when ids contain the separator.
    """
    prefix = f"{milestone_id}{SEPARATOR}"
    if not task_key.startswith(prefix) or len(task_key) == len(prefix):
        raise InvalidTaskId(f"Key {task_key!r} does not belong to milestone {milestone_id!r}")
    return task_key[len(prefix):]


def is_completed(status) -> bool:
    return status == COMPLETED


def toggled(status) -> str:
    return PENDING if status == COMPLETED else COMPLETED


def _check_block_id(block_id: str) -> None:
    try:
        parsed = uuid.UUID(block_id)
    except (ValueError, TypeError, AttributeError):
        raise InvalidTaskId(f"Invalid block id: {block_id!r}")
    if str(parsed) != block_id.lower() or len(block_id) != BLOCK_ID_LENGTH:
        raise InvalidTaskId(f"Block id is not a canonical UUID: {block_id!r}")
