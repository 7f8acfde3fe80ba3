"""Document engine for a markdown task backlog."""

from .backlog import Backlog, resolve_backlog_dir
from .cache import FileCache
from .changeset import (
    Intent,
    SetCriterion,
    SetItemAssignee,
    SetItemTitle,
    SetTaskAssignee,
    SetTaskDescription,
    SetTaskStatus,
    SetTaskTitle,
    build_changeset,
)
from .document import build_backlog, collect_sources, load_backlog
from .errors import BacklogError, ConflictError, NotFoundError, ValidationError
from .models import (
    AcceptanceCriterion,
    BacklogModel,
    Changeset,
    FilePatch,
    ItemStatus,
    ItemType,
    Task,
    TaskStatus,
    ValidationIssue,
    WorkItem,
)
from .parser import parse_item_index, parse_manifest, parse_task_file
from .queue import OperationQueue, queue_for_root
from .status import derive_status
from .writer import apply_changeset, apply_patches

__all__ = [
    "Backlog",
    "resolve_backlog_dir",
    "FileCache",
    "Intent",
    "SetCriterion",
    "SetItemAssignee",
    "SetItemTitle",
    "SetTaskAssignee",
    "SetTaskDescription",
    "SetTaskStatus",
    "SetTaskTitle",
    "build_changeset",
    "build_backlog",
    "collect_sources",
    "load_backlog",
    "BacklogError",
    "ConflictError",
    "NotFoundError",
    "ValidationError",
    "AcceptanceCriterion",
    "BacklogModel",
    "Changeset",
    "FilePatch",
    "ItemStatus",
    "ItemType",
    "Task",
    "TaskStatus",
    "ValidationIssue",
    "WorkItem",
    "parse_item_index",
    "parse_manifest",
    "parse_task_file",
    "OperationQueue",
    "queue_for_root",
    "derive_status",
    "apply_changeset",
    "apply_patches",
]
