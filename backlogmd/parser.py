"""Text parsers for backlog files.

Turns raw item index, task file and manifest content into typed entities and
a list of validation issues. The parsers never raise on malformed input: a
bad field becomes a ``ValidationIssue`` and a default value.

The section and checkbox scanners are also used by the changeset engine so
that parsing and patching agree on where every value lives in the text.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .models import (
    AcceptanceCriterion,
    ItemStatus,
    ItemType,
    Manifest,
    ManifestItem,
    ManifestTask,
    Task,
    TaskRef,
    TaskStatus,
    ValidationIssue,
    WorkItem,
)

logger = logging.getLogger("backlogmd.parser")

MANIFEST_PATH = "manifest.json"

_MARKER_PATTERN = re.compile(r"<!--\s*(?P<close>/?)\s*(?P<name>[A-Z][A-Z ]*?)\s*-->")
_FENCE_PATTERN = re.compile(r"```(?:ya?ml)?[ \t]*\n(?P<body>.*?)```", re.DOTALL)
_CHECKBOX_PATTERN = re.compile(
    r"^[ \t]*[-*+][ \t]+\[(?P<mark>[ xX])\][ \t]*(?P<text>.*?)[ \t]*$", re.MULTILINE
)
_LINK_BULLET_PATTERN = re.compile(
    r"^[ \t]*[-*+][ \t]+\[(?P<text>[^\]]+)\]\((?P<url>[^)\s]+)\)", re.MULTILINE
)
_DESCRIPTION_HEADING_PATTERN = re.compile(r"^##\s+description\s*$", re.IGNORECASE)
_SLUG_TYPE_PATTERN = re.compile(r"^\d+-(feat|fix|refactor|chore)-.+$")
_SLUG_PREFIX_PATTERN = re.compile(r"^\d+-(?:(?:feat|fix|refactor|chore)-)?")
_TASK_FILE_PATTERN = re.compile(r"^(?P<tid>\d+)-(?P<slug>.+)\.md$")

ACCEPTANCE_SECTIONS = ("ACCEPTANCE", "ACCEPTANCE CRITERIA")


# ----------------------------------------------------------------------
# Scanning helpers
# ----------------------------------------------------------------------


def section_span(content: str, *names: str) -> Optional[Tuple[int, int]]:
    """Return the body span of the first section found among ``names``.

    A section starts after its ``<!-- NAME -->`` marker and ends at the next
    marker of any kind (opening or closing), or at the end of the content.
    """
    markers = list(_MARKER_PATTERN.finditer(content))
    for name in names:
        for index, marker in enumerate(markers):
            if marker.group("name") != name or marker.group("close"):
                continue
            start = marker.end()
            end = markers[index + 1].start() if index + 1 < len(markers) else len(content)
            return start, end
    return None


def metadata_body_span(content: str) -> Optional[Tuple[int, int]]:
    """Return the span of the yaml body inside the METADATA fenced block."""
    span = section_span(content, "METADATA")
    if span is None:
        return None
    match = _FENCE_PATTERN.search(content, span[0], span[1])
    if not match:
        return None
    return match.start("body"), match.end("body")


def metadata_line_span(content: str, key: str) -> Optional[Tuple[int, int]]:
    """Return the span of the ``key: value`` line inside the metadata block."""
    body = metadata_body_span(content)
    if body is None:
        return None
    pattern = re.compile(rf"^[ \t]*{re.escape(key)}[ \t]*:.*$", re.MULTILINE)
    match = pattern.search(content, body[0], body[1])
    if not match:
        return None
    return match.start(), match.end()


@dataclass(slots=True)
class CriterionSpan:
    """Location of one acceptance criterion in a task file."""

    line_start: int
    line_end: int
    mark_start: int
    text: str
    checked: bool


def criteria_spans(content: str) -> List[CriterionSpan]:
    """Scan the acceptance section for checkbox lines, in file order.

    Blank criteria (a template ``- [ ]`` with no text) are skipped.
    """
    span = section_span(content, *ACCEPTANCE_SECTIONS)
    if span is None:
        return []
    spans: List[CriterionSpan] = []
    for match in _CHECKBOX_PATTERN.finditer(content, span[0], span[1]):
        text = match.group("text").strip()
        if not text:
            continue
        spans.append(
            CriterionSpan(
                line_start=match.start(),
                line_end=match.end(),
                mark_start=match.start("mark"),
                text=text,
                checked=match.group("mark").lower() == "x",
            )
        )
    return spans


def clean_description(raw: str) -> str:
    """Drop the ``## Description`` heading and surrounding blank lines."""
    lines = [line for line in raw.splitlines() if not _DESCRIPTION_HEADING_PATTERN.match(line)]
    return "\n".join(lines).strip()


def _load_metadata(
    content: str, source: str, code_prefix: str, issues: List[ValidationIssue]
) -> Optional[Dict[str, Any]]:
    body = metadata_body_span(content)
    if body is None:
        return None
    try:
        data = yaml.safe_load(content[body[0]:body[1]])
    except yaml.YAMLError as e:
        issues.append(
            ValidationIssue(
                code=f"{code_prefix}_METADATA_INVALID",
                message=f"Invalid YAML in metadata block: {e}",
                source=source,
            )
        )
        return {}
    if data is None:
        return {}
    if not isinstance(data, dict):
        issues.append(
            ValidationIssue(
                code=f"{code_prefix}_METADATA_INVALID",
                message="Metadata block is not a YAML mapping",
                source=source,
            )
        )
        return {}
    return data


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _timestamp_text(value: Any) -> Optional[str]:
    if isinstance(value, datetime):
        return value.isoformat().replace("+00:00", "Z")
    if isinstance(value, date):
        return value.isoformat()
    return _optional_text(value)


# ----------------------------------------------------------------------
# Slugs
# ----------------------------------------------------------------------


def parse_slug_type(slug: str) -> Optional[ItemType]:
    """Extract the item type from a slug such as ``001-feat-user-auth``."""
    match = _SLUG_TYPE_PATTERN.match(slug)
    return ItemType(match.group(1)) if match else None


def title_from_slug(slug: str) -> str:
    """Display title for an item whose index carries no ``work`` field."""
    cleaned = _SLUG_PREFIX_PATTERN.sub("", slug, count=1) or slug
    return " ".join(word.capitalize() for word in cleaned.split("-") if word)


def split_task_file_name(file_name: str) -> Tuple[Optional[str], str]:
    """Split ``002-add-login.md`` into ``("002", "add-login")``."""
    match = _TASK_FILE_PATTERN.match(file_name)
    if match:
        return match.group("tid"), match.group("slug")
    stem = file_name[:-3] if file_name.endswith(".md") else file_name
    return None, stem


# ----------------------------------------------------------------------
# Item index
# ----------------------------------------------------------------------


def parse_item_index(
    content: str, slug: str, source: str
) -> Tuple[WorkItem, List[TaskRef], List[ValidationIssue]]:
    """Parse a work item ``index.md``.

    Returns the work item (without tasks), its ordered task references and
    any validation issues.
    """
    issues: List[ValidationIssue] = []

    item_type = parse_slug_type(slug)
    if item_type is None:
        issues.append(
            ValidationIssue(
                code="ITEM_SLUG_NO_TYPE",
                message=f"Slug '{slug}' does not match <number>-<feat|fix|refactor|chore>-<name>",
                source=source,
                severity="warning",
            )
        )

    metadata = _load_metadata(content, source, "ITEM", issues)
    title = _optional_text((metadata or {}).get("work")) or title_from_slug(slug)
    assignee = _optional_text((metadata or {}).get("assignee"))

    description_span = section_span(content, "DESCRIPTION")
    description = clean_description(content[description_span[0]:description_span[1]]) if description_span else ""

    tasks_span = section_span(content, "TASKS")
    if tasks_span is not None:
        region = (tasks_span[0], tasks_span[1])
    else:
        metadata_span = section_span(content, "METADATA")
        region = (metadata_span[1] if metadata_span else 0, len(content))

    refs: List[TaskRef] = []
    for match in _LINK_BULLET_PATTERN.finditer(content, *region):
        text = match.group("text").strip()
        url = match.group("url").strip()
        if text and url:
            refs.append(TaskRef(slug=text, file_name=url))

    if not refs:
        issues.append(
            ValidationIssue(
                code="ITEM_NO_TASK_REFS",
                message=f"Item '{slug}' lists no task references",
                source=source,
                severity="warning",
            )
        )

    item = WorkItem(
        slug=slug,
        type=item_type,
        source=source,
        title=title,
        assignee=assignee,
        description=description,
        task_refs=list(refs),
        invalid=any(issue.is_error for issue in issues),
    )
    return item, refs, issues


# ----------------------------------------------------------------------
# Task file
# ----------------------------------------------------------------------


def parse_task_file(
    content: str, source: str, item_slug: Optional[str] = None
) -> Tuple[Task, List[ValidationIssue]]:
    """Parse a task file.

    ``item_slug`` defaults to the name of the directory holding ``source``.
    """
    issues: List[ValidationIssue] = []
    parts = source.split("/")
    file_name = parts[-1]
    if item_slug is None:
        item_slug = parts[-2] if len(parts) > 1 else ""

    tid, file_slug = split_task_file_name(file_name)
    if tid is None:
        issues.append(
            ValidationIssue(
                code="TASK_ID_MISSING",
                message=f"Task file name '{file_name}' has no numeric prefix",
                source=source,
                severity="warning",
            )
        )
        tid = file_slug

    metadata = _load_metadata(content, source, "TASK", issues)
    if metadata is None:
        issues.append(
            ValidationIssue(
                code="TASK_METADATA_MISSING",
                message="Metadata YAML code block not found",
                source=source,
            )
        )
        metadata = {}
        missing_block = True
    else:
        missing_block = False

    title = _optional_text(metadata.get("task"))
    if title is None:
        if not missing_block:
            issues.append(
                ValidationIssue(
                    code="TASK_TITLE_MISSING",
                    message="Task file missing 'task' (title) field in metadata",
                    source=source,
                )
            )
        title = title_from_slug(file_slug)

    raw_status = metadata.get("status")
    status = TaskStatus.parse(raw_status)
    if raw_status is None or (isinstance(raw_status, str) and not raw_status.strip()):
        if not missing_block:
            issues.append(
                ValidationIssue(
                    code="TASK_STATUS_MISSING",
                    message="Task file missing 'status' field in metadata",
                    source=source,
                )
            )
        status = TaskStatus.UNKNOWN
    elif status is None or status is TaskStatus.UNKNOWN:
        valid = ", ".join(s.value for s in TaskStatus if s is not TaskStatus.UNKNOWN)
        issues.append(
            ValidationIssue(
                code="TASK_STATUS_INVALID",
                message=f"Invalid task status '{raw_status}'. Must be one of: {valid}",
                source=source,
            )
        )
        status = TaskStatus.UNKNOWN

    priority: Optional[int] = None
    raw_priority = metadata.get("priority")
    if raw_priority is not None:
        if isinstance(raw_priority, int) and not isinstance(raw_priority, bool):
            priority = raw_priority
        elif isinstance(raw_priority, str) and raw_priority.strip().isdigit():
            priority = int(raw_priority.strip())
        else:
            issues.append(
                ValidationIssue(
                    code="TASK_PRIORITY_INVALID",
                    message=f"Priority must be an integer, got '{raw_priority}'",
                    source=source,
                    severity="warning",
                )
            )

    raw_dep = metadata.get("dep")
    depends_on = [str(d) for d in raw_dep] if isinstance(raw_dep, list) else []

    description_span = section_span(content, "DESCRIPTION")
    description = clean_description(content[description_span[0]:description_span[1]]) if description_span else ""

    criteria = [AcceptanceCriterion(text=s.text, checked=s.checked) for s in criteria_spans(content)]

    task = Task(
        id=tid,
        title=title,
        status=status,
        source=source,
        item_slug=item_slug,
        description=description,
        acceptance_criteria=criteria,
        assignee=_optional_text(metadata.get("assignee")),
        priority=priority,
        depends_on=depends_on,
        requires_human_review=metadata.get("requiresHumanReview") is True,
        expires_at=_timestamp_text(metadata.get("expiresAt")),
        invalid=any(issue.is_error for issue in issues),
    )
    if issues:
        logger.debug("Parsed %s with %d issue(s)", source, len(issues))
    return task, issues


# ----------------------------------------------------------------------
# Manifest
# ----------------------------------------------------------------------


def parse_manifest(
    content: str, source: str = MANIFEST_PATH
) -> Tuple[Optional[Manifest], List[ValidationIssue]]:
    """Parse ``manifest.json``. Returns ``None`` when it is not a JSON object."""
    issues: List[ValidationIssue] = []
    try:
        raw = json.loads(content)
    except json.JSONDecodeError as e:
        issues.append(
            ValidationIssue(code="MANIFEST_INVALID_JSON", message=f"Invalid JSON: {e}", source=source)
        )
        return None, issues

    if not isinstance(raw, dict):
        issues.append(
            ValidationIssue(code="MANIFEST_INVALID_JSON", message="Manifest must be a JSON object", source=source)
        )
        return None, issues

    raw_items = raw.get("items")
    if not isinstance(raw_items, list):
        issues.append(
            ValidationIssue(code="MANIFEST_INVALID_JSON", message="Manifest missing 'items' array", source=source)
        )
        raw_items = []

    items: List[ManifestItem] = []
    for index, raw_item in enumerate(raw_items):
        item = _parse_manifest_item(raw_item, index, source, issues)
        if item is not None:
            items.append(item)

    manifest = Manifest(
        spec_version=str(raw.get("specVersion") or ""),
        updated_at=str(raw.get("updatedAt") or ""),
        items=items,
    )
    return manifest, issues


def _parse_manifest_item(
    raw: Any, index: int, source: str, issues: List[ValidationIssue]
) -> Optional[ManifestItem]:
    if not isinstance(raw, dict) or not isinstance(raw.get("slug"), str) or not raw["slug"]:
        issues.append(
            ValidationIssue(
                code="MANIFEST_INVALID_ITEM",
                message=f"items[{index}] is not an object with a 'slug'",
                source=source,
                severity="warning",
            )
        )
        return None

    status = ItemStatus.OPEN
    raw_status = raw.get("status")
    try:
        status = ItemStatus(raw_status)
    except ValueError:
        issues.append(
            ValidationIssue(
                code="MANIFEST_INVALID_STATUS",
                message=f"items[{index}] has invalid status '{raw_status}'",
                source=source,
                severity="warning",
            )
        )

    raw_tasks = raw.get("tasks")
    if raw_tasks is None:
        raw_tasks = []
    elif not isinstance(raw_tasks, list):
        issues.append(
            ValidationIssue(
                code="MANIFEST_INVALID_ITEM",
                message=f"items[{index}].tasks is not an array",
                source=source,
                severity="warning",
            )
        )
        raw_tasks = []

    tasks: List[ManifestTask] = []
    for task_index, raw_task in enumerate(raw_tasks):
        if not isinstance(raw_task, dict) or not isinstance(raw_task.get("file"), str):
            issues.append(
                ValidationIssue(
                    code="MANIFEST_INVALID_TASK",
                    message=f"items[{index}].tasks[{task_index}] is not an object with a 'file'",
                    source=source,
                    severity="warning",
                )
            )
            continue
        task_status = TaskStatus.parse(raw_task.get("status"))
        if task_status is None:
            issues.append(
                ValidationIssue(
                    code="MANIFEST_INVALID_STATUS",
                    message=f"items[{index}].tasks[{task_index}] has invalid status '{raw_task.get('status')}'",
                    source=source,
                    severity="warning",
                )
            )
            task_status = TaskStatus.UNKNOWN
        tasks.append(
            ManifestTask(
                tid=str(raw_task.get("tid") or ""),
                file=raw_task["file"],
                title=str(raw_task.get("title") or ""),
                status=task_status,
                assignee=str(raw_task.get("assignee") or ""),
            )
        )

    return ManifestItem(
        slug=raw["slug"],
        path=str(raw.get("path") or ""),
        status=status,
        tasks=tasks,
    )
