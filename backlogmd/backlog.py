"""Backlog facade: one object per backlog root.

Reads go straight to the file cache and parser. Every mutation is wrapped
in a queued operation that re-parses the current cache contents, plans the
change, writes it and stores the resulting model, so writes against one root
never interleave.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar, Union

from .backlog_logging import (
    log_changeset_applied,
    log_error_with_context,
    log_operation,
    log_performance,
    log_structure_change,
    observability_hooks,
)
from .cache import FileCache
from .changeset import (
    Intent,
    SetCriterion,
    SetItemAssignee,
    SetTaskAssignee,
    SetTaskDescription,
    SetTaskStatus,
    SetTaskTitle,
    build_changeset,
)
from .document import load_backlog
from .errors import NotFoundError, ValidationError
from .models import (
    AcceptanceCriterion,
    BacklogModel,
    Changeset,
    ItemStatus,
    ItemType,
    Task,
    TaskStatus,
    WorkItem,
)
from .parser import MANIFEST_PATH
from .queue import OperationQueue, queue_for_root
from .writer import (
    apply_changeset,
    create_task,
    create_work_item,
    remove_task,
    overwrite_file,
    remove_work_item,
    write_manifest,
)

logger = logging.getLogger("backlogmd.backlog")

T = TypeVar("T")

BACKLOG_DIR_ENV = "BACKLOGMD_DIR_NAME"
DEFAULT_BACKLOG_DIR = ".backlogmd"


def backlog_dir_name() -> str:
    return os.getenv(BACKLOG_DIR_ENV) or DEFAULT_BACKLOG_DIR


def resolve_backlog_dir(path: Union[Path, str]) -> Path:
    """Accept a project root or the backlog directory itself."""
    resolved = Path(path).expanduser().resolve()
    dir_name = backlog_dir_name()
    if resolved.name == dir_name:
        return resolved
    if (resolved / dir_name).is_dir():
        return resolved / dir_name
    if (resolved / "work").is_dir():
        return resolved
    return resolved / dir_name


class Backlog:
    """Read and mutate the backlog stored under one root directory."""

    def __init__(
        self,
        root: Union[Path, str],
        cache: Optional[FileCache] = None,
        queue: Optional[OperationQueue] = None,
    ):
        self.root = resolve_backlog_dir(root)
        self.cache = cache if cache is not None else FileCache(self.root)
        self.queue = queue if queue is not None else queue_for_root(self.root)
        self._model: Optional[BacklogModel] = None
        logger.info(f"Backlog opened at {self.root}")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def model(self) -> BacklogModel:
        if self._model is None:
            self._model = load_backlog(self.cache)
        return self._model

    def document(self) -> Dict[str, Any]:
        """Current backlog as the BacklogOutput DTO."""
        return self.model.to_dict()

    def work(self) -> List[Dict[str, Any]]:
        return [item.to_dict() for item in self.model.items]

    def pending_work(self) -> List[Dict[str, Any]]:
        """Work items whose derived status is still ``open``."""
        return [item.to_dict() for item in self.model.items if item.status is ItemStatus.OPEN]

    def get_item(self, ref: str) -> WorkItem:
        item = self.model.find_item(ref)
        if item is None:
            raise NotFoundError(f"Work item '{ref}' not found", source=ref)
        return item

    def get_task(self, ref: str) -> Task:
        task = self.model.find_task(ref)
        if task is None:
            raise NotFoundError(f"Task '{ref}' not found", source=ref)
        return task

    def get_task_content(self, ref: str) -> Dict[str, Any]:
        task = self.get_task(ref)
        return {
            "title": task.title,
            "description": task.description,
            "acceptanceCriteria": [c.to_dict() for c in task.acceptance_criteria],
        }

    def get_file_content(self, path: str) -> str:
        """Raw content of a backlog file, as currently cached."""
        return self.cache.get(path)

    def plan(self, intent: Intent) -> Changeset:
        """Dry run: the changeset ``intent`` would apply, without writing."""
        return build_changeset(intent, self.model, self.cache)

    def refresh(self) -> BacklogModel:
        """Drop every cached file and re-read the backlog from disk."""
        self.cache.invalidate()
        self._model = load_backlog(self.cache)
        return self._model

    def invalidate(self, path: Optional[str] = None) -> None:
        """Watcher hook: forget a changed file (or everything) and the model."""
        self.cache.invalidate(path)
        self._model = None
        observability_hooks.log_backlog_event("file_invalidated", root=str(self.root), path=path)

    # ------------------------------------------------------------------
    # Queued mutations
    # ------------------------------------------------------------------

    async def _run(self, name: str, operation: Callable[[], T], **fields: Any) -> T:
        def guarded() -> T:
            with log_operation(name, root=str(self.root), **fields):
                try:
                    return operation()
                except Exception as e:
                    log_error_with_context(e, {"operation": name, "root": str(self.root), **fields})
                    raise

        return await self.queue.enqueue(guarded)

    def _commit(self, operation: str, intent: Intent) -> Changeset:
        model = load_backlog(self.cache)
        changeset = build_changeset(intent, model, self.cache)
        if not changeset.is_empty:
            files = apply_changeset(changeset, self.cache)
            log_changeset_applied(
                str(self.root),
                operation,
                [patch.description for patch in changeset.patches],
                files,
            )
        self._model = changeset.model_after
        return changeset

    def _after_structure_change(self) -> None:
        model = load_backlog(self.cache)
        if self.cache.exists(MANIFEST_PATH):
            write_manifest(self.cache, model)
            model = load_backlog(self.cache)
        self._model = model

    @log_performance("backlog_apply")
    async def apply(self, intent: Intent) -> Changeset:
        """Plan and write one intent."""
        name = type(intent).__name__
        return await self._run(name, lambda: self._commit(name, intent))

    async def set_task_status(self, ref: str, status: Union[TaskStatus, str]) -> Changeset:
        return await self.apply(SetTaskStatus(ref, status))

    async def start_task(self, ref: str) -> Changeset:
        """Move a task to ``review`` when it requires human review, else ``in-progress``."""

        def operation() -> Changeset:
            task = load_backlog(self.cache).find_task(ref)
            if task is None:
                raise NotFoundError(f"Task '{ref}' not found", source=ref)
            status = TaskStatus.REVIEW if task.requires_human_review else TaskStatus.IN_PROGRESS
            return self._commit("start_task", SetTaskStatus(ref, status))

        return await self._run("start_task", operation, task=ref)

    async def close_task(self, ref: str) -> Changeset:
        return await self.apply(SetTaskStatus(ref, TaskStatus.DONE))

    async def assign_task(self, ref: str, assignee: Optional[str]) -> Changeset:
        return await self.apply(SetTaskAssignee(ref, assignee))

    async def assign_item(self, ref: str, assignee: Optional[str]) -> Changeset:
        return await self.apply(SetItemAssignee(ref, assignee))

    async def toggle_criterion(self, ref: str, index: int, checked: Optional[bool] = None) -> Changeset:
        """Set criterion ``index`` to ``checked``, or flip it when ``checked`` is None."""

        def operation() -> Changeset:
            value = checked
            if value is None:
                task = load_backlog(self.cache).find_task(ref)
                if task is None:
                    raise NotFoundError(f"Task '{ref}' not found", source=ref)
                if not 0 <= index < len(task.acceptance_criteria):
                    raise ValidationError(f"Criterion index {index} out of range for '{ref}'", source=task.source)
                value = not task.acceptance_criteria[index].checked
            return self._commit("toggle_criterion", SetCriterion(ref, index, value))

        return await self._run("toggle_criterion", operation, task=ref, index=index)

    async def update_task_content(
        self,
        ref: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        acceptance_criteria: Optional[Sequence[Union[AcceptanceCriterion, Dict[str, Any]]]] = None,
    ) -> List[Changeset]:
        """Update title, description and criterion check marks of one task.

        Criterion text is fixed; ``acceptance_criteria`` must list the same
        criteria in the same order and may only change ``checked``.
        """

        def operation() -> List[Changeset]:
            task = load_backlog(self.cache).find_task(ref)
            if task is None:
                raise NotFoundError(f"Task '{ref}' not found", source=ref)

            intents: List[Intent] = []
            if title is not None:
                intents.append(SetTaskTitle(ref, title))
            if description is not None:
                intents.append(SetTaskDescription(ref, description))
            if acceptance_criteria is not None:
                wanted = [
                    c if isinstance(c, AcceptanceCriterion) else AcceptanceCriterion.from_dict(c)
                    for c in acceptance_criteria
                ]
                current = task.acceptance_criteria
                if [c.text for c in wanted] != [c.text for c in current]:
                    raise ValidationError(
                        "Acceptance criteria text cannot be changed; only checked state", source=task.source
                    )
                for index, (new, old) in enumerate(zip(wanted, current)):
                    if new.checked != old.checked:
                        intents.append(SetCriterion(ref, index, new.checked))

            return [self._commit("update_task_content", intent) for intent in intents]

        return await self._run("update_task_content", operation, task=ref)

    async def reset_item_tasks(self, ref: str) -> List[Changeset]:
        """Set every task of an item that is not done back to ``open``."""

        def operation() -> List[Changeset]:
            item = load_backlog(self.cache).find_item(ref)
            if item is None:
                raise NotFoundError(f"Work item '{ref}' not found", source=ref)
            return [
                self._commit("reset_item_tasks", SetTaskStatus(task.source, TaskStatus.OPEN))
                for task in item.tasks
                if task.status is not TaskStatus.DONE
            ]

        return await self._run("reset_item_tasks", operation, item=ref)

    async def add_item(
        self,
        title: str,
        item_type: Union[ItemType, str, None] = None,
        description: str = "",
        assignee: Optional[str] = None,
    ) -> str:
        """Create a work item and return its slug."""

        def operation() -> str:
            slug = create_work_item(self.cache, title, item_type, description, assignee)
            self._after_structure_change()
            log_structure_change("item_created", str(self.root), slug)
            return slug

        return await self._run("add_item", operation, title=title)

    async def add_task(
        self,
        item_ref: str,
        title: str,
        status: Union[TaskStatus, str] = TaskStatus.OPEN,
        description: str = "",
        acceptance_criteria: Optional[List[str]] = None,
        assignee: Optional[str] = None,
        requires_human_review: bool = False,
    ) -> str:
        """Create a task under an item and return its source path."""

        def operation() -> str:
            source = create_task(
                self.cache,
                load_backlog(self.cache),
                item_ref,
                title,
                status=status,
                description=description,
                criteria=acceptance_criteria,
                assignee=assignee,
                requires_human_review=requires_human_review,
            )
            self._after_structure_change()
            log_structure_change("task_created", str(self.root), source)
            return source

        return await self._run("add_task", operation, item=item_ref, title=title)

    async def remove_task(self, ref: str) -> str:
        def operation() -> str:
            source = remove_task(self.cache, load_backlog(self.cache), ref)
            self._after_structure_change()
            log_structure_change("task_removed", str(self.root), source)
            return source

        return await self._run("remove_task", operation, task=ref)

    async def remove_item(self, ref: str) -> str:
        def operation() -> str:
            slug = remove_work_item(self.cache, load_backlog(self.cache), ref)
            self._after_structure_change()
            log_structure_change("item_removed", str(self.root), slug)
            return slug

        return await self._run("remove_item", operation, item=ref)

    async def update_file_content(self, ref: str, content: str) -> str:
        """Overwrite a task file or item index with ``content``.

        The file is replaced as given; the backlog is re-parsed afterwards, so
        a malformed file shows up as validation issues rather than an error.
        """

        def operation() -> str:
            path = overwrite_file(self.cache, load_backlog(self.cache), ref, content)
            self._after_structure_change()
            log_structure_change("file_overwritten", str(self.root), path)
            return path

        return await self._run("update_file_content", operation, ref=ref)

    async def sync_manifest(self, updated_at: Optional[str] = None) -> str:
        """Regenerate ``manifest.json`` from the task files."""

        def operation() -> str:
            content = write_manifest(self.cache, load_backlog(self.cache), updated_at)
            self._model = load_backlog(self.cache)
            log_structure_change("manifest_synced", str(self.root), MANIFEST_PATH)
            return content

        return await self._run("sync_manifest", operation)
