"""Mutation planning: turn an intent into exact-match file patches.

``build_changeset`` never writes to disk. It reads the current content of
each affected file through the cache, checks that the value it is about to
replace still matches the model the caller holds, and emits one
``FilePatch`` per edit. Each patch's ``original`` is the smallest run of whole
lines around the edited value that occurs exactly once in the file, so the
writer can apply it with a verbatim search and replace.

Patches are computed one after another against a working copy of each file;
re-parsing that working copy gives ``model_after``.
"""

from __future__ import annotations

import copy
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import yaml

from .cache import FileCache
from .document import UNREADABLE_FILE, build_backlog
from .errors import ConflictError, NotFoundError, ValidationError
from .models import BacklogModel, Changeset, FilePatch, Task, WorkItem
from .parser import (
    MANIFEST_PATH,
    criteria_spans,
    metadata_body_span,
    metadata_line_span,
    parse_item_index,
    parse_task_file,
    section_span,
)
from .status import SETTABLE_STATUSES, ItemStatus, TaskStatus, derive_status

logger = logging.getLogger("backlogmd.changeset")


# ----------------------------------------------------------------------
# Intents
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class SetTaskStatus:
    task: str
    status: Union[TaskStatus, str]


@dataclass(frozen=True)
class SetTaskAssignee:
    task: str
    assignee: Optional[str]


@dataclass(frozen=True)
class SetTaskTitle:
    task: str
    title: str


@dataclass(frozen=True)
class SetTaskDescription:
    task: str
    description: str


@dataclass(frozen=True)
class SetCriterion:
    """Check or uncheck the ``index``-th (zero based) acceptance criterion."""

    task: str
    index: int
    checked: bool


@dataclass(frozen=True)
class SetItemAssignee:
    item: str
    assignee: Optional[str]


@dataclass(frozen=True)
class SetItemTitle:
    item: str
    title: str


Intent = Union[
    SetTaskStatus,
    SetTaskAssignee,
    SetTaskTitle,
    SetTaskDescription,
    SetCriterion,
    SetItemAssignee,
    SetItemTitle,
]


# ----------------------------------------------------------------------
# Text helpers
# ----------------------------------------------------------------------


def count_occurrences(content: str, needle: str, limit: int = 2) -> int:
    """Count possibly overlapping occurrences of ``needle``, up to ``limit``."""
    if not needle:
        return limit
    count = 0
    position = content.find(needle)
    while position != -1:
        count += 1
        if count >= limit:
            break
        position = content.find(needle, position + 1)
    return count


def unique_window(content: str, start: int, end: int) -> Tuple[int, int]:
    """Widen ``[start, end)`` to whole lines until the text occurs once.

    Lines are added alternately above and below the window.
    """
    window_start = content.rfind("\n", 0, start) + 1
    window_end = content.find("\n", end)
    if window_end == -1:
        window_end = len(content)

    grow_up = True
    while count_occurrences(content, content[window_start:window_end]) != 1:
        can_grow_up = window_start > 0
        can_grow_down = window_end < len(content)
        if not can_grow_up and not can_grow_down:
            break
        if (grow_up and can_grow_up) or not can_grow_down:
            window_start = content.rfind("\n", 0, window_start - 1) + 1
        else:
            next_break = content.find("\n", window_end + 1)
            window_end = len(content) if next_break == -1 else next_break
        grow_up = not grow_up
    return window_start, window_end


def render_metadata_line(key: str, value: Any, indent: str = "") -> str:
    """Render one ``key: value`` YAML line."""
    dumped = yaml.safe_dump(
        {key: value},
        default_flow_style=False,
        allow_unicode=True,
        width=10**6,
        sort_keys=False,
    ).rstrip("\n")
    return indent + dumped


def _display(value: Any) -> str:
    if value is None or value == "":
        return "(none)"
    if isinstance(value, TaskStatus) or isinstance(value, ItemStatus):
        return value.value
    return str(value)


_JSON_STRING = r'"(?:[^"\\]|\\.)*"'


# ----------------------------------------------------------------------
# Planner
# ----------------------------------------------------------------------


class _Planner:
    """Accumulates patches against per-file working copies."""

    def __init__(self, model: BacklogModel, cache: FileCache):
        self.model = model
        self.cache = cache
        self.working: Dict[str, str] = {}
        self.patches: List[FilePatch] = []

    def read(self, path: str) -> str:
        if path in self.working:
            return self.working[path]
        try:
            content = self.cache.get(path)
        except NotFoundError:
            raise ConflictError(
                f"File '{path}' no longer exists; reload the backlog", source=path
            ) from None
        self.working[path] = content
        return content

    def replace(self, path: str, start: int, end: int, text: str, description: str) -> None:
        content = self.read(path)
        window_start, window_end = unique_window(content, start, end)
        original = content[window_start:window_end]
        replacement = content[window_start:start] + text + content[end:window_end]
        if original == replacement:
            return
        self.working[path] = content[:window_start] + replacement + content[window_end:]
        self.patches.append(
            FilePatch(file_path=path, original=original, replacement=replacement, description=description)
        )

    def set_metadata_field(self, path: str, key: str, value: Any, description: str) -> None:
        content = self.read(path)
        line = metadata_line_span(content, key)
        if line is not None:
            current = content[line[0]:line[1]]
            indent = current[: len(current) - len(current.lstrip(" \t"))]
            self.replace(path, line[0], line[1], render_metadata_line(key, value, indent), description)
            return

        body = metadata_body_span(content)
        if body is None:
            raise ValidationError(f"'{path}' has no metadata block to update", source=path)
        insert_at = body[1]
        prefix = "" if insert_at == body[0] or content[insert_at - 1] == "\n" else "\n"
        self.replace(path, insert_at, insert_at, f"{prefix}{render_metadata_line(key, value)}\n", description)

    def sources(self) -> Dict[str, str]:
        contents: Dict[str, str] = {}
        for path in self.model.sources:
            if path in self.working:
                contents[path] = self.working[path]
            else:
                contents[path] = self.cache.get(path)
        return contents

    def finish(self) -> Changeset:
        before = copy.deepcopy(self.model)
        if not self.patches:
            return Changeset(patches=[], model_before=before, model_after=copy.deepcopy(self.model))
        read_issues = [issue for issue in self.model.errors if issue.code == UNREADABLE_FILE]
        after = build_backlog(self.sources(), self.model.root_dir, read_issues)
        return Changeset(patches=list(self.patches), model_before=before, model_after=after)


# ----------------------------------------------------------------------
# Resolution and verification
# ----------------------------------------------------------------------


def _resolve_task(model: BacklogModel, ref: str) -> Task:
    task = model.find_task(ref)
    if task is None:
        raise NotFoundError(f"Task '{ref}' not found", source=ref)
    return task


def _resolve_item(model: BacklogModel, ref: str) -> WorkItem:
    item = model.find_item(ref)
    if item is None:
        raise NotFoundError(f"Work item '{ref}' not found", source=ref)
    return item


def _current_task(planner: _Planner, task: Task) -> Task:
    current, _ = parse_task_file(planner.read(task.source), task.source, task.item_slug)
    return current


def _current_item(planner: _Planner, item: WorkItem) -> WorkItem:
    current, _, _ = parse_item_index(planner.read(item.source), item.slug, item.source)
    return current


def _verify(expected: Any, actual: Any, what: str, source: str) -> None:
    if expected != actual:
        raise ConflictError(
            f"{what} in '{source}' is '{_display(actual)}' on disk but '{_display(expected)}' in the model; reload and retry",
            source=source,
        )


def _validate_status(value: Union[TaskStatus, str]) -> TaskStatus:
    status = TaskStatus.parse(value)
    if status is None or status is TaskStatus.UNKNOWN:
        valid = ", ".join(s.value for s in SETTABLE_STATUSES)
        raise ValidationError(f"Invalid status '{value}'. Must be one of: {valid}")
    return status


def _validate_title(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("Title must be a non-empty string")
    if "\n" in value or "\r" in value:
        raise ValidationError("Title must be a single line")
    return value.strip()


def _validate_assignee(value: Optional[str]) -> str:
    if value is None:
        return ""
    if not isinstance(value, str) or "\n" in value or "\r" in value:
        raise ValidationError("Assignee must be a single-line string")
    return value.strip()


# ----------------------------------------------------------------------
# Manifest locating
# ----------------------------------------------------------------------


def _manifest_item_region(content: str, slug: str) -> Optional[Tuple[int, int, int]]:
    """Return ``(start, tasks_start, end)`` of the manifest entry for ``slug``."""
    slug_pattern = re.compile(r'"slug"\s*:\s*' + re.escape(json.dumps(slug)))
    match = slug_pattern.search(content)
    if not match:
        return None
    start = content.rfind("{", 0, match.start())
    next_item = re.compile(r'"slug"\s*:').search(content, match.end())
    end = next_item.start() if next_item else len(content)
    tasks = re.compile(r'"tasks"\s*:').search(content, match.end(), end)
    tasks_start = tasks.start() if tasks else end
    return max(start, 0), tasks_start, end


def _json_field_span(content: str, key: str, start: int, end: int) -> Optional[Tuple[int, int, Any]]:
    pattern = re.compile(rf'"{re.escape(key)}"\s*:\s*(?P<value>{_JSON_STRING}|null)')
    match = pattern.search(content, start, end)
    if not match:
        return None
    return match.start("value"), match.end("value"), json.loads(match.group("value"))


def _manifest_task_region(content: str, region: Tuple[int, int, int], file_name: str) -> Optional[Tuple[int, int]]:
    _, tasks_start, end = region
    bracket = content.find("[", tasks_start, end)
    if bracket == -1:
        return None

    # Decode element by element so strings holding braces do not end the object early
    decoder = json.JSONDecoder()
    position = bracket + 1
    while True:
        while position < end and content[position] in " \t\r\n,":
            position += 1
        if position >= end or content[position] == "]":
            return None
        try:
            value, element_end = decoder.raw_decode(content, position)
        except json.JSONDecodeError:
            return None
        if isinstance(value, dict) and value.get("file") == file_name:
            return position, element_end
        position = element_end


def _patch_manifest_task(
    planner: _Planner, task: Task, field_name: str, expected: str, value: str, description: str
) -> None:
    manifest = planner.model.manifest
    if manifest is None or MANIFEST_PATH not in planner.model.sources:
        return
    entry = manifest.find_item(task.item_slug)
    manifest_task = entry.find_task(task.file_name) if entry else None
    if manifest_task is None:
        return
    if expected == value:
        return

    content = planner.read(MANIFEST_PATH)
    region = _manifest_item_region(content, task.item_slug)
    task_region = _manifest_task_region(content, region, task.file_name) if region else None
    field_span = _json_field_span(content, field_name, *task_region) if task_region else None
    if field_span is None:
        raise ConflictError(
            f"Manifest entry for '{task.key}' changed since the backlog was read", source=MANIFEST_PATH
        )
    _verify(expected, field_span[2] or "", f"Manifest {field_name} of '{task.key}'", MANIFEST_PATH)
    planner.replace(MANIFEST_PATH, field_span[0], field_span[1], json.dumps(value, ensure_ascii=False), description)


def _patch_manifest_item_status(planner: _Planner, item: WorkItem, status: ItemStatus) -> None:
    manifest = planner.model.manifest
    if manifest is None or MANIFEST_PATH not in planner.model.sources:
        return
    entry = manifest.find_item(item.slug)
    if entry is None or entry.status == status:
        return

    content = planner.read(MANIFEST_PATH)
    region = _manifest_item_region(content, item.slug)
    field_span = _json_field_span(content, "status", region[0], region[1]) if region else None
    if field_span is None:
        raise ConflictError(
            f"Manifest entry for '{item.slug}' changed since the backlog was read", source=MANIFEST_PATH
        )
    _verify(entry.status.value, field_span[2], f"Manifest status of '{item.slug}'", MANIFEST_PATH)
    planner.replace(
        MANIFEST_PATH,
        field_span[0],
        field_span[1],
        json.dumps(status.value),
        f"item status: {entry.status.value} -> {status.value}",
    )


# ----------------------------------------------------------------------
# Intent handlers
# ----------------------------------------------------------------------


def _set_task_status(planner: _Planner, intent: SetTaskStatus) -> None:
    status = _validate_status(intent.status)
    task = _resolve_task(planner.model, intent.task)
    _verify(task.status, _current_task(planner, task).status, "Task status", task.source)
    if task.status == status:
        return

    description = f"task status: {task.status.value} -> {status.value}"
    planner.set_metadata_field(task.source, "status", status.value, description)

    manifest = planner.model.manifest
    entry = manifest.find_item(task.item_slug) if manifest else None
    manifest_task = entry.find_task(task.file_name) if entry else None
    if manifest_task is not None:
        _patch_manifest_task(planner, task, "status", manifest_task.status.value, status.value, description)

    item = _resolve_item(planner.model, task.item_slug)
    derived = derive_status(status if t is task else t.status for t in item.tasks)
    _patch_manifest_item_status(planner, item, derived)


def _set_task_assignee(planner: _Planner, intent: SetTaskAssignee) -> None:
    assignee = _validate_assignee(intent.assignee)
    task = _resolve_task(planner.model, intent.task)
    _verify(task.assignee, _current_task(planner, task).assignee, "Task assignee", task.source)
    if (task.assignee or "") == assignee:
        return

    description = f"task assignee: {_display(task.assignee)} -> {_display(assignee)}"
    planner.set_metadata_field(task.source, "assignee", assignee, description)

    manifest = planner.model.manifest
    entry = manifest.find_item(task.item_slug) if manifest else None
    manifest_task = entry.find_task(task.file_name) if entry else None
    if manifest_task is not None:
        _patch_manifest_task(planner, task, "assignee", manifest_task.assignee, assignee, description)


def _set_task_title(planner: _Planner, intent: SetTaskTitle) -> None:
    title = _validate_title(intent.title)
    task = _resolve_task(planner.model, intent.task)
    _verify(task.title, _current_task(planner, task).title, "Task title", task.source)
    if task.title == title:
        return

    description = f"task title: {task.title} -> {title}"
    planner.set_metadata_field(task.source, "task", title, description)

    manifest = planner.model.manifest
    entry = manifest.find_item(task.item_slug) if manifest else None
    manifest_task = entry.find_task(task.file_name) if entry else None
    if manifest_task is not None:
        _patch_manifest_task(planner, task, "title", manifest_task.title, title, description)


def _set_task_description(planner: _Planner, intent: SetTaskDescription) -> None:
    if not isinstance(intent.description, str):
        raise ValidationError("Description must be a string")
    if "<!--" in intent.description:
        raise ValidationError("Description may not contain section markers")
    text = intent.description.strip()

    task = _resolve_task(planner.model, intent.task)
    _verify(task.description, _current_task(planner, task).description, "Task description", task.source)
    if task.description == text:
        return

    content = planner.read(task.source)
    span = section_span(content, "DESCRIPTION")
    if span is None:
        raise ValidationError(f"'{task.source}' has no DESCRIPTION section", source=task.source)
    heading = "## Description\n\n" if "## Description" in content[span[0]:span[1]] else ""
    body = f"\n\n{heading}{text}\n\n" if text else f"\n\n{heading}"
    planner.replace(task.source, span[0], span[1], body, "task description updated")


def _set_criterion(planner: _Planner, intent: SetCriterion) -> None:
    task = _resolve_task(planner.model, intent.task)
    if not isinstance(intent.index, int) or isinstance(intent.index, bool):
        raise ValidationError("Criterion index must be an integer")
    if not 0 <= intent.index < len(task.acceptance_criteria):
        raise ValidationError(
            f"Criterion index {intent.index} out of range for '{task.key}' "
            f"({len(task.acceptance_criteria)} criteria)",
            source=task.source,
        )

    content = planner.read(task.source)
    spans = criteria_spans(content)
    expected = task.acceptance_criteria[intent.index]
    if intent.index >= len(spans):
        raise ConflictError(f"Acceptance criteria of '{task.source}' changed; reload and retry", source=task.source)
    found = spans[intent.index]
    _verify((expected.text, expected.checked), (found.text, found.checked), "Acceptance criterion", task.source)
    if found.checked == intent.checked:
        return

    mark = "x" if intent.checked else " "
    state = "checked" if intent.checked else "unchecked"
    planner.replace(
        task.source,
        found.mark_start,
        found.mark_start + 1,
        mark,
        f"criterion {intent.index + 1} {state}: {found.text}",
    )


def _set_item_assignee(planner: _Planner, intent: SetItemAssignee) -> None:
    assignee = _validate_assignee(intent.assignee)
    item = _resolve_item(planner.model, intent.item)
    _verify(item.assignee, _current_item(planner, item).assignee, "Item assignee", item.source)
    if (item.assignee or "") == assignee:
        return
    planner.set_metadata_field(
        item.source,
        "assignee",
        assignee,
        f"item assignee: {_display(item.assignee)} -> {_display(assignee)}",
    )


def _set_item_title(planner: _Planner, intent: SetItemTitle) -> None:
    title = _validate_title(intent.title)
    item = _resolve_item(planner.model, intent.item)
    _verify(item.title, _current_item(planner, item).title, "Item title", item.source)
    if item.title == title:
        return
    planner.set_metadata_field(item.source, "work", title, f"item title: {item.title} -> {title}")


_HANDLERS: Dict[type, Callable[[_Planner, Any], None]] = {
    SetTaskStatus: _set_task_status,
    SetTaskAssignee: _set_task_assignee,
    SetTaskTitle: _set_task_title,
    SetTaskDescription: _set_task_description,
    SetCriterion: _set_criterion,
    SetItemAssignee: _set_item_assignee,
    SetItemTitle: _set_item_title,
}


def build_changeset(intent: Intent, model: BacklogModel, cache: FileCache) -> Changeset:
    """Plan the patches for ``intent`` against ``model`` and the cached files.

    Raises NotFoundError when the target is absent from ``model``,
    ValidationError for a malformed intent and ConflictError when the cached
    text no longer matches ``model``. A no-op intent yields an empty changeset.
    """
    handler = _HANDLERS.get(type(intent))
    if handler is None:
        raise ValidationError(f"Unsupported intent {type(intent).__name__}")

    planner = _Planner(model, cache)
    handler(planner, intent)
    changeset = planner.finish()
    logger.debug(
        "Planned %s: %d patch(es) across %s",
        type(intent).__name__, len(changeset.patches), changeset.touched_files,
    )
    return changeset

