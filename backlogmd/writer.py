"""Write planned changes to disk and keep the file cache in step.

``apply_changeset`` is the only way a changeset reaches disk. Structural
edits (new or removed items and tasks) write whole files directly, but any
edit to an existing index goes through ``apply_patches`` so it gets the same
exactly-once check as a changeset.
"""

from __future__ import annotations

import json
import logging
import re
import shutil
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Union

from .cache import FileCache
from .changeset import count_occurrences, render_metadata_line, unique_window
from .document import INDEX_FILE, WORK_DIR, index_path, item_dir, task_path
from .errors import ConflictError, NotFoundError, ValidationError
from .models import (
    BacklogModel,
    Changeset,
    FilePatch,
    ItemType,
    Task,
    TaskStatus,
    WorkItem,
)
from .parser import MANIFEST_PATH, section_span

logger = logging.getLogger("backlogmd.writer")

MANIFEST_SPEC_VERSION = "4.0.0"

_NUMERIC_PREFIX = re.compile(r"^(\d+)")
_LINK_LINE = re.compile(r"^[ \t]*[-*+][ \t]+\[[^\]]*\]\((?P<url>[^)\s]+)\).*$", re.MULTILINE)


def apply_patches(content: str, patches: Iterable[FilePatch]) -> str:
    """Apply ``patches`` in order. Each original must occur exactly once."""
    for patch in patches:
        occurrences = count_occurrences(content, patch.original)
        if occurrences == 0:
            raise ConflictError(
                f"Original text for '{patch.description}' not found in {patch.file_path}",
                source=patch.file_path,
            )
        if occurrences > 1:
            raise ConflictError(
                f"Original text for '{patch.description}' is ambiguous in {patch.file_path}",
                source=patch.file_path,
            )
        content = content.replace(patch.original, patch.replacement, 1)
    return content


def _write(cache: FileCache, path: str, content: str) -> None:
    target = cache.absolute(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")
    cache.set(path, content)


def apply_changeset(changeset: Changeset, cache: FileCache) -> List[str]:
    """Write every patch of ``changeset`` through ``cache``.

    All files are patched in memory first, so a conflict in any file leaves
    every file untouched. Returns the written paths in patch order.
    """
    grouped: Dict[str, List[FilePatch]] = {}
    for patch in changeset.patches:
        grouped.setdefault(patch.file_path, []).append(patch)

    updated: Dict[str, str] = {}
    for path, patches in grouped.items():
        try:
            content = cache.get(path)
        except NotFoundError:
            raise ConflictError(f"File '{path}' disappeared before the changeset was applied", source=path) from None
        updated[path] = apply_patches(content, patches)

    for path, content in updated.items():
        _write(cache, path, content)
        logger.debug("Wrote %s (%d patch(es))", path, len(grouped[path]))
    return list(updated)


# ----------------------------------------------------------------------
# Structural edits
# ----------------------------------------------------------------------


def to_kebab_case(text: str) -> str:
    """``"Add Login_Page"`` -> ``"add-login-page"``."""
    spaced = re.sub(r"([a-z0-9])([A-Z])", r"\1-\2", text)
    return re.sub(r"[^a-z0-9]+", "-", spaced.lower()).strip("-")


def _next_number(names: Iterable[str]) -> str:
    highest = 0
    for name in names:
        match = _NUMERIC_PREFIX.match(name)
        if match:
            highest = max(highest, int(match.group(1)))
    return str(highest + 1).zfill(3)


def render_item_index(title: str, description: str = "", assignee: Optional[str] = None) -> str:
    return (
        "<!-- METADATA -->\n\n"
        "```yaml\n"
        f"{render_metadata_line('work', title)}\n"
        f"{render_metadata_line('assignee', assignee or '')}\n"
        "```\n\n"
        "<!-- /METADATA -->\n\n"
        "<!-- DESCRIPTION -->\n\n"
        f"{description.strip() or '(no description)'}\n\n"
        "<!-- TASKS -->\n\n"
    )


def render_task_file(
    title: str,
    status: TaskStatus = TaskStatus.OPEN,
    priority: int = 1,
    description: str = "",
    criteria: Optional[List[str]] = None,
    depends_on: Optional[List[str]] = None,
    assignee: Optional[str] = None,
    requires_human_review: bool = False,
    expires_at: Optional[str] = None,
) -> str:
    fields = [
        ("task", title),
        ("status", status.value),
        ("priority", priority),
        ("dep", list(depends_on or [])),
        ("assignee", assignee or ""),
        ("requiresHumanReview", requires_human_review),
        ("expiresAt", expires_at),
    ]
    metadata = "\n".join(render_metadata_line(key, value) for key, value in fields)
    checklist = "\n".join(f"- [ ] {text.strip()}" for text in criteria or [] if text.strip()) or "- [ ] "
    body = description.strip()
    return (
        "<!-- METADATA -->\n\n"
        f"```yaml\n{metadata}\n```\n\n"
        "<!-- /METADATA -->\n\n"
        "<!-- DESCRIPTION -->\n\n"
        "## Description\n\n"
        f"{body}\n\n"
        "<!-- ACCEPTANCE -->\n\n"
        "## Acceptance criteria\n\n"
        f"{checklist}\n"
    )


def create_work_item(
    cache: FileCache,
    title: str,
    item_type: Union[ItemType, str, None] = None,
    description: str = "",
    assignee: Optional[str] = None,
) -> str:
    """Create ``work/<NNN>-<type>-<title>/index.md`` and return the new slug."""
    if not isinstance(title, str) or not title.strip() or "\n" in title:
        raise ValidationError("Work item title must be a non-empty single line")
    if item_type is not None:
        try:
            item_type = ItemType(item_type)
        except ValueError:
            valid = ", ".join(t.value for t in ItemType)
            raise ValidationError(f"Invalid item type '{item_type}'. Must be one of: {valid}") from None
    name = to_kebab_case(title)
    if not name:
        raise ValidationError(f"Title '{title}' does not produce a usable slug")
    if "<!--" in description:
        raise ValidationError("Description may not contain section markers")

    number = _next_number(cache.list_dir(WORK_DIR))
    slug = f"{number}-{item_type.value}-{name}" if item_type else f"{number}-{name}"
    if cache.is_dir(item_dir(slug)):
        raise ConflictError(f"Work item directory '{slug}' already exists", source=item_dir(slug))

    _write(cache, index_path(slug), render_item_index(title.strip(), description, assignee))
    logger.info(f"Created work item {slug}")
    return slug


def _resolve_item(model: BacklogModel, ref: str) -> WorkItem:
    item = model.find_item(ref)
    if item is None:
        raise NotFoundError(f"Work item '{ref}' not found", source=ref)
    return item


def _resolve_task(model: BacklogModel, ref: str) -> Task:
    task = model.find_task(ref)
    if task is None:
        raise NotFoundError(f"Task '{ref}' not found", source=ref)
    return task


def _span_patch(content: str, source: str, start: int, end: int, text: str, description: str) -> FilePatch:
    window_start, window_end = unique_window(content, start, end)
    original = content[window_start:window_end]
    replacement = content[window_start:start] + text + content[end:window_end]
    return FilePatch(file_path=source, original=original, replacement=replacement, description=description)


def _task_ref_patch(content: str, source: str, line: str) -> FilePatch:
    """Patch adding a task reference line at the end of the TASKS section."""
    description = f"add task reference {line}"
    span = section_span(content, "TASKS")
    if span is None:
        separator = "\n" if content and not content.endswith("\n") else ""
        end = len(content)
        return _span_patch(content, source, end, end, f"{separator}\n<!-- TASKS -->\n\n{line}\n", description)

    links = list(_LINK_LINE.finditer(content, span[0], span[1]))
    if links:
        end = links[-1].end()
        return _span_patch(content, source, end, end, f"\n{line}", description)

    trailer = "\n" if span[1] < len(content) else ""
    return _span_patch(content, source, span[0], span[1], f"\n\n{line}\n{trailer}", description)


def _references(url: str, file_name: str) -> bool:
    if url.startswith("./"):
        url = url[2:]
    return url == file_name


def create_task(
    cache: FileCache,
    model: BacklogModel,
    item_ref: str,
    title: str,
    status: Union[TaskStatus, str] = TaskStatus.OPEN,
    description: str = "",
    criteria: Optional[List[str]] = None,
    assignee: Optional[str] = None,
    requires_human_review: bool = False,
) -> str:
    """Create the next task file of an item and reference it from the index.

    Returns the new task's source path.
    """
    item = _resolve_item(model, item_ref)
    if not isinstance(title, str) or not title.strip() or "\n" in title:
        raise ValidationError("Task title must be a non-empty single line")
    parsed_status = TaskStatus.parse(status)
    if parsed_status is None or parsed_status is TaskStatus.UNKNOWN:
        raise ValidationError(f"Invalid status '{status}'")
    if "<!--" in description:
        raise ValidationError("Description may not contain section markers")
    name = to_kebab_case(title)
    if not name:
        raise ValidationError(f"Title '{title}' does not produce a usable slug")

    existing = [n for n in cache.list_dir(item.directory) if n != INDEX_FILE]
    tid = _next_number(existing + [t.file_name for t in item.tasks])
    file_name = f"{tid}-{name}.md"
    source = task_path(item.slug, file_name)
    if cache.exists(source):
        raise ConflictError(f"Task file '{source}' already exists", source=source)

    try:
        index_content = cache.get(item.source)
    except NotFoundError:
        raise ConflictError(f"Index '{item.source}' disappeared; reload the backlog", source=item.source) from None
    patch = _task_ref_patch(index_content, item.source, f"- [{tid}-{name}]({file_name})")
    new_index = apply_patches(index_content, [patch])

    content = render_task_file(
        title.strip(),
        status=parsed_status,
        priority=len(item.tasks) + 1,
        description=description,
        criteria=criteria,
        assignee=assignee,
        requires_human_review=requires_human_review,
    )
    _write(cache, source, content)
    _write(cache, item.source, new_index)
    logger.info(f"Created task {source}")
    return source


def remove_task(cache: FileCache, model: BacklogModel, task_ref: str) -> str:
    """Delete a task file and drop its reference from the item index."""
    task = _resolve_task(model, task_ref)
    item = _resolve_item(model, task.item_slug)

    index_content = cache.get(item.source)
    patches: List[FilePatch] = []
    working = index_content
    while True:
        match = next(
            (m for m in _LINK_LINE.finditer(working) if _references(m.group("url"), task.file_name)),
            None,
        )
        if match is None:
            break
        end = match.end() + 1 if working.startswith("\n", match.end()) else match.end()
        patch = _span_patch(
            working, item.source, match.start(), end, "", f"remove task reference {task.file_name}"
        )
        patches.append(patch)
        working = apply_patches(working, [patch])

    target = cache.absolute(task.source)
    if target.exists():
        target.unlink()
    cache.invalidate(task.source)
    if patches:
        _write(cache, item.source, apply_patches(index_content, patches))
    logger.info(f"Removed task {task.source}")
    return task.source


def remove_work_item(cache: FileCache, model: BacklogModel, item_ref: str) -> str:
    """Delete a work item directory and every file in it."""
    item = _resolve_item(model, item_ref)
    directory = cache.absolute(item.directory)
    if directory.exists():
        shutil.rmtree(directory)
    for path in cache.cached_paths():
        if path.startswith(f"{item.directory}/"):
            cache.invalidate(path)
    logger.info(f"Removed work item {item.slug}")
    return item.slug


def overwrite_file(cache: FileCache, model: BacklogModel, ref: str, content: str) -> str:
    """Replace the whole content of a task file or item index.

    ``ref`` is any task address, or an item slug or prefix for the item's
    ``index.md``. Returns the written path.
    """
    task = model.find_task(ref)
    if task is not None:
        path = task.source
    else:
        key = ref.strip().strip("/")
        item = model.find_item(key) or next((i for i in model.items if i.source == key), None)
        if item is None:
            raise NotFoundError(f"No task or work item matches '{ref}'", source=ref)
        path = item.source
    if not isinstance(content, str):
        raise ValidationError("File content must be a string", source=path)

    _write(cache, path, content)
    logger.info(f"Overwrote {path} ({len(content)} chars)")
    return path


# ----------------------------------------------------------------------
# Manifest
# ----------------------------------------------------------------------


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def render_manifest(model: BacklogModel, updated_at: Optional[str] = None) -> str:
    """Serialize the manifest for ``model`` as pretty-printed JSON."""
    data = {
        "specVersion": MANIFEST_SPEC_VERSION,
        "updatedAt": updated_at or _utc_timestamp(),
        "items": [
            {
                "slug": item.slug,
                "path": item.directory,
                "status": item.status.value,
                "tasks": [
                    {
                        "tid": task.id,
                        "file": task.file_name,
                        "title": task.title,
                        "status": task.status.value,
                        "assignee": task.assignee or "",
                    }
                    for task in item.tasks
                ],
            }
            for item in model.items
        ],
    }
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


def write_manifest(cache: FileCache, model: BacklogModel, updated_at: Optional[str] = None) -> str:
    """Regenerate ``manifest.json`` from ``model``."""
    content = render_manifest(model, updated_at)
    _write(cache, MANIFEST_PATH, content)
    logger.info(f"Wrote manifest for {len(model.items)} item(s)")
    return content
