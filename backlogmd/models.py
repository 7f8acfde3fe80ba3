"""Data models for the backlog document engine.

This module contains the parsed entities (work items, tasks, manifest
entries), the validation issues collected while parsing, and the patch and
changeset structures produced by the mutation planner.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import ValidationError
from .status import ItemStatus, TaskStatus, derive_status


PROTOCOL = "backlogmd/v4"


class ItemType(str, Enum):
    """Conventional Commits type carried in an item slug."""

    FEAT = "feat"
    FIX = "fix"
    REFACTOR = "refactor"
    CHORE = "chore"


@dataclass(slots=True)
class ValidationIssue:
    """A recoverable defect found while parsing."""

    code: str
    message: str
    source: Optional[str] = None
    severity: str = "error"

    @property
    def is_error(self) -> bool:
        return self.severity == "error"

    def to_dict(self) -> Dict[str, Optional[str]]:
        """Convert to dictionary representation."""
        return {"code": self.code, "message": self.message, "source": self.source}


@dataclass(slots=True)
class AcceptanceCriterion:
    """One checklist line of a task."""

    text: str
    checked: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"text": self.text, "checked": self.checked}

    @classmethod
    def from_dict(cls, data: Any) -> "AcceptanceCriterion":
        """Build a criterion from caller input; raises ValidationError on a bad shape."""
        if not isinstance(data, dict) or not isinstance(data.get("text"), str):
            raise ValidationError("Acceptance criterion must be an object with a 'text' string")
        checked = data.get("checked", False)
        if not isinstance(checked, bool):
            raise ValidationError(f"Acceptance criterion 'checked' must be a boolean, got {checked!r}")
        return cls(text=data["text"], checked=checked)


@dataclass(slots=True)
class TaskRef:
    """A task reference listed in an item index."""

    slug: str
    file_name: str

    def to_dict(self) -> Dict[str, str]:
        return {"slug": self.slug, "fileName": self.file_name}


@dataclass(slots=True)
class Task:
    """A task parsed from its markdown file."""

    id: str
    title: str
    status: TaskStatus
    source: str
    item_slug: str = ""
    description: str = ""
    acceptance_criteria: List[AcceptanceCriterion] = field(default_factory=list)
    assignee: Optional[str] = None
    priority: Optional[int] = None
    depends_on: List[str] = field(default_factory=list)
    requires_human_review: bool = False
    expires_at: Optional[str] = None
    invalid: bool = False

    @property
    def key(self) -> str:
        """Backlog-wide task address, ``<item-slug>/<id>``."""
        return f"{self.item_slug}/{self.id}"

    @property
    def file_name(self) -> str:
        return self.source.rsplit("/", 1)[-1]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the task DTO exposed to callers."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "acceptanceCriteria": [c.to_dict() for c in self.acceptance_criteria],
            "status": self.status.value,
            "assignee": self.assignee,
            "itemSlug": self.item_slug,
            "source": self.source,
            "priority": self.priority,
            "dependsOn": list(self.depends_on),
            "requiresHumanReview": self.requires_human_review,
            "expiresAt": self.expires_at,
            "invalid": self.invalid,
        }


@dataclass(slots=True)
class WorkItem:
    """A work item: the parsed index file plus its tasks."""

    slug: str
    type: Optional[ItemType]
    source: str
    title: str = ""
    assignee: Optional[str] = None
    description: str = ""
    task_refs: List[TaskRef] = field(default_factory=list)
    tasks: List[Task] = field(default_factory=list)
    invalid: bool = False

    @property
    def status(self) -> ItemStatus:
        """Status derived from the tasks; never stored in the item files."""
        return derive_status(task.status for task in self.tasks)

    @property
    def directory(self) -> str:
        return self.source.rsplit("/", 1)[0]

    def find_task(self, task_id: str) -> Optional[Task]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the work item DTO exposed to callers."""
        return {
            "slug": self.slug,
            "type": self.type.value if self.type else None,
            "title": self.title,
            "status": self.status.value,
            "assignee": self.assignee,
            "source": self.source,
            "invalid": self.invalid,
            "tasks": [task.to_dict() for task in self.tasks],
        }


@dataclass(slots=True)
class ManifestTask:
    """Task entry of the manifest."""

    tid: str
    file: str
    title: str = ""
    status: TaskStatus = TaskStatus.OPEN
    assignee: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tid": self.tid,
            "file": self.file,
            "title": self.title,
            "status": self.status.value,
            "assignee": self.assignee,
        }


@dataclass(slots=True)
class ManifestItem:
    """Work item entry of the manifest."""

    slug: str
    path: str
    status: ItemStatus = ItemStatus.OPEN
    tasks: List[ManifestTask] = field(default_factory=list)

    def find_task(self, file_name: str) -> Optional[ManifestTask]:
        for task in self.tasks:
            if task.file == file_name:
                return task
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slug": self.slug,
            "path": self.path,
            "status": self.status.value,
            "tasks": [task.to_dict() for task in self.tasks],
        }


@dataclass(slots=True)
class Manifest:
    """Denormalized summary of the backlog, stored as manifest.json."""

    spec_version: str
    updated_at: str
    items: List[ManifestItem] = field(default_factory=list)

    def find_item(self, slug: str) -> Optional[ManifestItem]:
        for item in self.items:
            if item.slug == slug:
                return item
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "specVersion": self.spec_version,
            "updatedAt": self.updated_at,
            "items": [item.to_dict() for item in self.items],
        }


@dataclass(slots=True)
class BacklogModel:
    """Parsed snapshot of one backlog root."""

    root_dir: str
    items: List[WorkItem] = field(default_factory=list)
    manifest: Optional[Manifest] = None
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)
    sources: List[str] = field(default_factory=list)

    @property
    def tasks(self) -> List[Task]:
        return [task for item in self.items for task in item.tasks]

    def find_item(self, ref: str) -> Optional[WorkItem]:
        """Find a work item by slug or by its numeric prefix."""
        for item in self.items:
            if item.slug == ref:
                return item
        for item in self.items:
            if item.slug.split("-", 1)[0] == ref:
                return item
        return None

    def find_task(self, ref: str) -> Optional[Task]:
        """Find a task by ``<item>/<id>``, ``<item>/<file>`` or source path."""
        ref = ref.strip().strip("/")
        for task in self.tasks:
            if ref in (task.source, task.key, f"{task.item_slug}/{task.file_name}"):
                return task
        if ref.endswith(".md"):
            return None
        for task in self.tasks:
            if task.source == f"{ref}.md":
                return task
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the BacklogOutput DTO."""
        return {
            "protocol": PROTOCOL,
            "rootDir": self.root_dir,
            "work": [item.to_dict() for item in self.items],
            "validation": {
                "errors": [issue.to_dict() for issue in self.errors],
                "warnings": [issue.to_dict() for issue in self.warnings],
            },
        }


@dataclass(slots=True)
class FilePatch:
    """One exact-match text substitution in one file."""

    file_path: str
    original: str
    replacement: str
    description: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "filePath": self.file_path,
            "original": self.original,
            "replacement": self.replacement,
            "description": self.description,
        }


@dataclass(slots=True)
class Changeset:
    """Planned file edits for one logical mutation plus model snapshots."""

    patches: List[FilePatch]
    model_before: BacklogModel
    model_after: BacklogModel

    @property
    def is_empty(self) -> bool:
        return not self.patches

    @property
    def touched_files(self) -> List[str]:
        seen: List[str] = []
        for patch in self.patches:
            if patch.file_path not in seen:
                seen.append(patch.file_path)
        return seen

    def to_dict(self) -> Dict[str, Any]:
        return {
            "patches": [patch.to_dict() for patch in self.patches],
            "touchedFiles": self.touched_files,
            "modelAfter": self.model_after.to_dict(),
        }
