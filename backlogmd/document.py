"""Assemble a ``BacklogModel`` from the files of one backlog root.

``build_backlog`` is pure: it takes a mapping of relative path to content and
never touches disk, which is what lets the changeset engine re-parse a
hypothetically patched tree. ``collect_sources`` is the only function here
that consults the file cache.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from .backlog_logging import log_performance
from .cache import FileCache
from .errors import ValidationError
from .models import BacklogModel, Manifest, ValidationIssue, WorkItem
from .parser import MANIFEST_PATH, parse_item_index, parse_manifest, parse_task_file

logger = logging.getLogger("backlogmd.document")

WORK_DIR = "work"
INDEX_FILE = "index.md"

# Issue code for files that exist but cannot be decoded.
UNREADABLE_FILE = "FILE_ENCODING_INVALID"


def item_dir(slug: str) -> str:
    return f"{WORK_DIR}/{slug}"


def index_path(slug: str) -> str:
    return f"{WORK_DIR}/{slug}/{INDEX_FILE}"


def task_path(slug: str, file_name: str) -> str:
    if file_name.startswith("./"):
        file_name = file_name[2:]
    return f"{WORK_DIR}/{slug}/{file_name}"


def collect_sources(cache: FileCache, issues: Optional[List[ValidationIssue]] = None) -> Dict[str, str]:
    """Read every backlog file through ``cache``.

    Returns a mapping of relative path to content for the manifest, each
    item index and every markdown file beside it. Files that cannot be
    decoded are left out and reported into ``issues``.
    """
    sources: Dict[str, str] = {}

    def read(path: str) -> None:
        try:
            sources[path] = cache.get(path)
        except ValidationError as e:
            logger.warning("Skipping unreadable backlog file %s: %s", path, e)
            if issues is not None:
                issues.append(ValidationIssue(code=UNREADABLE_FILE, message=str(e), source=path))

    if cache.exists(MANIFEST_PATH):
        read(MANIFEST_PATH)

    for slug in cache.list_dir(WORK_DIR):
        directory = item_dir(slug)
        if not cache.is_dir(directory):
            continue
        for name in cache.list_dir(directory):
            if not name.endswith(".md"):
                continue
            path = f"{directory}/{name}"
            if cache.exists(path):
                read(path)
    return sources


def build_backlog(
    sources: Mapping[str, str], root_dir: str, read_issues: Sequence[ValidationIssue] = ()
) -> BacklogModel:
    """Parse ``sources`` into a model. Deterministic for equal input.

    ``read_issues`` are the issues ``collect_sources`` reported for files it
    could not read; those files count as invalid rather than missing.
    """
    errors: List[ValidationIssue] = []
    warnings: List[ValidationIssue] = []

    def collect(issues: Iterable[ValidationIssue]) -> None:
        for issue in issues:
            (errors if issue.is_error else warnings).append(issue)

    collect(read_issues)
    unreadable = {issue.source for issue in read_issues}

    directories: Dict[str, List[str]] = {}
    for path in sorted(set(sources) | unreadable):
        parts = str(path).split("/")
        if len(parts) == 3 and parts[0] == WORK_DIR:
            directories.setdefault(parts[1], []).append(parts[2])

    items: List[WorkItem] = []
    for slug in sorted(directories):
        names = directories[slug]
        if index_path(slug) in unreadable:
            continue
        if INDEX_FILE not in names:
            collect([
                ValidationIssue(
                    code="ITEM_INDEX_MISSING",
                    message=f"Work item directory '{slug}' has no {INDEX_FILE}",
                    source=item_dir(slug),
                )
            ])
            continue

        source = index_path(slug)
        item, refs, issues = parse_item_index(sources[source], slug, source)
        collect(issues)

        referenced = set()
        for ref in refs:
            path = task_path(slug, ref.file_name)
            if path in referenced:
                continue
            referenced.add(path)
            if path in unreadable:
                item.invalid = True
                continue
            if path not in sources:
                collect([
                    ValidationIssue(
                        code="TASK_FILE_MISSING",
                        message=f"Task file '{ref.file_name}' referenced by index not found",
                        source=source,
                    )
                ])
                item.invalid = True
                continue

            task, task_issues = parse_task_file(sources[path], path, slug)
            collect(task_issues)
            if item.find_task(task.id) is not None:
                collect([
                    ValidationIssue(
                        code="TASK_DUPLICATE_ID",
                        message=f"Duplicate task id '{task.id}' in item '{slug}'",
                        source=path,
                    )
                ])
                task.invalid = True
                item.invalid = True
            item.tasks.append(task)

        for name in names:
            if name == INDEX_FILE or task_path(slug, name) in referenced:
                continue
            collect([
                ValidationIssue(
                    code="TASK_NOT_IN_INDEX",
                    message=f"Task file '{name}' is not referenced by {INDEX_FILE}",
                    source=task_path(slug, name),
                    severity="warning",
                )
            ])

        items.append(item)

    manifest = None
    if MANIFEST_PATH in sources:
        manifest, issues = parse_manifest(sources[MANIFEST_PATH], MANIFEST_PATH)
        collect(issues)
        if manifest is not None:
            collect(manifest_drift(manifest, items))

    return BacklogModel(
        root_dir=root_dir,
        items=items,
        manifest=manifest,
        errors=errors,
        warnings=warnings,
        sources=sorted(sources),
    )


def manifest_drift(manifest: Manifest, items: List[WorkItem]) -> List[ValidationIssue]:
    """Report manifest statuses that disagree with the parsed files."""
    issues: List[ValidationIssue] = []
    for item in items:
        entry = manifest.find_item(item.slug)
        if entry is None:
            continue
        if entry.status != item.status:
            issues.append(
                ValidationIssue(
                    code="MANIFEST_DRIFT",
                    message=f"Manifest status '{entry.status.value}' for '{item.slug}' differs from derived '{item.status.value}'",
                    source=MANIFEST_PATH,
                    severity="warning",
                )
            )
        for task in item.tasks:
            manifest_task = entry.find_task(task.file_name)
            if manifest_task is not None and manifest_task.status != task.status:
                issues.append(
                    ValidationIssue(
                        code="MANIFEST_DRIFT",
                        message=f"Manifest status '{manifest_task.status.value}' for '{task.key}' differs from file '{task.status.value}'",
                        source=MANIFEST_PATH,
                        severity="warning",
                    )
                )
    return issues


@log_performance("load_backlog")
def load_backlog(cache: FileCache) -> BacklogModel:
    """Read the backlog through ``cache`` and parse it."""
    read_issues: List[ValidationIssue] = []
    sources = collect_sources(cache, read_issues)
    model = build_backlog(sources, str(cache.root), read_issues)
    logger.debug(
        "Loaded backlog %s: %d item(s), %d error(s), %d warning(s)",
        cache.root, len(model.items), len(model.errors), len(model.warnings),
    )
    return model
