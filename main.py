"""MCP server exposing backlog read and mutation tools."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from mcp.server.fastmcp import FastMCP

from backlogmd import (
    Backlog,
    BacklogError,
    Changeset,
    resolve_backlog_dir,
)
from backlogmd.backlog import backlog_dir_name
from backlogmd.backlog_logging import log_error_with_context, setup_logging

mcp = FastMCP("backlogmd")

T = TypeVar("T")

SERVER_ROOT = Path(__file__).resolve().parent

ERROR_SUGGESTIONS = {
    "not_found": "Call get_backlog to list the available work items and task references.",
    "conflict": "The files changed since they were read. Call refresh_backlog and retry the request.",
    "validation": "Check the arguments against the tool description and try again.",
}

_backlogs: Dict[Path, Backlog] = {}


def _candidate_bases() -> List[Path]:
    cwd = Path.cwd().resolve()
    bases: List[Path] = [cwd]
    bases.extend(cwd.parents)
    if SERVER_ROOT not in bases:
        bases.append(SERVER_ROOT)
    return bases


def _locate_backlog_root() -> Optional[Path]:
    marker = backlog_dir_name()
    for base in _candidate_bases():
        if (base / marker).is_dir():
            return base / marker
    return None


def _resolve_root(root: Optional[str]) -> Path:
    if root:
        resolved = Path(root).expanduser().resolve()
        if not resolved.exists():
            raise ValueError(f"Provided root '{root}' does not exist.")
        return resolve_backlog_dir(resolved)

    env_root = os.getenv("BACKLOGMD_ROOT")
    if env_root:
        env_path = Path(env_root).expanduser().resolve()
        if not env_path.exists():
            raise ValueError(
                f"Environment variable BACKLOGMD_ROOT points to '{env_root}', which does not exist."
            )
        return resolve_backlog_dir(env_path)

    detected_root = _locate_backlog_root()
    if detected_root:
        return detected_root

    raise ValueError(
        "Unable to locate a backlog directory. Provide the 'root' argument when calling the tool "
        "or set the BACKLOGMD_ROOT environment variable."
    )


def _backlog(root: Optional[str]) -> Backlog:
    resolved = _resolve_root(root)
    backlog = _backlogs.get(resolved)
    if backlog is None:
        backlog = Backlog(resolved)
        _backlogs[resolved] = backlog
    return backlog


def _error_payload(error: Exception, tool: str) -> Dict[str, Any]:
    if isinstance(error, BacklogError):
        payload = {
            "error": error.message,
            "kind": error.kind,
            "suggestion": ERROR_SUGGESTIONS.get(error.kind, "Inspect the backlog files and try again."),
        }
        if error.source:
            payload["source"] = error.source
        return payload
    log_error_with_context(error, {"operation": tool})
    return {
        "error": str(error),
        "kind": "invalid_root",
        "suggestion": "Pass the project directory (or its .backlogmd directory) as 'root'.",
    }


def _serialize_changeset(changeset: Changeset) -> Dict[str, Any]:
    return {
        "applied": not changeset.is_empty,
        "patches": [patch.to_dict() for patch in changeset.patches],
        "touched_files": changeset.touched_files,
        "validation": changeset.model_after.to_dict()["validation"],
    }


def _read(tool: str, root: Optional[str], fn: Callable[[Backlog], Dict[str, Any]]) -> Dict[str, Any]:
    try:
        return fn(_backlog(root))
    except (BacklogError, ValueError) as e:
        return _error_payload(e, tool)


async def _mutate(
    tool: str, root: Optional[str], fn: Callable[[Backlog], Awaitable[T]], serialize: Callable[[T], Dict[str, Any]]
) -> Dict[str, Any]:
    try:
        backlog = _backlog(root)
        result = await fn(backlog)
    except (BacklogError, ValueError) as e:
        return _error_payload(e, tool)
    payload = serialize(result)
    payload["work"] = backlog.work()
    return payload


# ----------------------------------------------------------------------
# Read tools
# ----------------------------------------------------------------------


@mcp.tool()
def get_backlog(root: Optional[str] = None) -> Dict[str, Any]:
    """Return every work item with its tasks, derived statuses and validation issues."""

    return _read("get_backlog", root, lambda backlog: backlog.document())


@mcp.tool()
def list_pending_work(root: Optional[str] = None) -> Dict[str, Any]:
    """Return the work items whose tasks have not been started yet."""

    return _read("list_pending_work", root, lambda backlog: {"work": backlog.pending_work()})


@mcp.tool()
def get_item(item: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Return one work item by slug or numeric prefix, with the raw index content."""

    def read(backlog: Backlog) -> Dict[str, Any]:
        work_item = backlog.get_item(item)
        return {
            "item": work_item.to_dict(),
            "description": work_item.description,
            "content": backlog.get_file_content(work_item.source),
        }

    return _read("get_item", root, read)


@mcp.tool()
def get_task(task: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Return one task addressed as '<item-slug>/<id>' or by its source path."""

    return _read("get_task", root, lambda backlog: {"task": backlog.get_task(task).to_dict()})


@mcp.tool()
def get_task_content(task: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Return the title, description and acceptance criteria of a task."""

    return _read("get_task_content", root, lambda backlog: backlog.get_task_content(task))


@mcp.tool()
def get_file_content(path: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Return the raw markdown or JSON of a backlog file, relative to the backlog directory."""

    return _read("get_file_content", root, lambda backlog: {"path": path, "content": backlog.get_file_content(path)})


@mcp.tool()
def refresh_backlog(root: Optional[str] = None) -> Dict[str, Any]:
    """Drop cached file contents and re-read the backlog from disk."""

    def read(backlog: Backlog) -> Dict[str, Any]:
        backlog.refresh()
        return backlog.document()

    return _read("refresh_backlog", root, read)


# ----------------------------------------------------------------------
# Mutation tools
# ----------------------------------------------------------------------


@mcp.tool()
async def set_task_status(task: str, status: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Set a task status: plan, open, in-progress, review, ready-to-test, block or done."""

    return await _mutate("set_task_status", root, lambda b: b.set_task_status(task, status), _serialize_changeset)


@mcp.tool()
async def start_task(task: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Start a task: 'review' when it requires human review, otherwise 'in-progress'."""

    return await _mutate("start_task", root, lambda b: b.start_task(task), _serialize_changeset)


@mcp.tool()
async def close_task(task: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Mark a task done."""

    return await _mutate("close_task", root, lambda b: b.close_task(task), _serialize_changeset)


@mcp.tool()
async def assign_task(task: str, assignee: Optional[str] = None, root: Optional[str] = None) -> Dict[str, Any]:
    """Set or clear the assignee of a task."""

    return await _mutate("assign_task", root, lambda b: b.assign_task(task, assignee), _serialize_changeset)


@mcp.tool()
async def assign_item(item: str, assignee: Optional[str] = None, root: Optional[str] = None) -> Dict[str, Any]:
    """Set or clear the assignee of a work item."""

    return await _mutate("assign_item", root, lambda b: b.assign_item(item, assignee), _serialize_changeset)


@mcp.tool()
async def toggle_criterion(
    task: str, index: int, checked: Optional[bool] = None, root: Optional[str] = None
) -> Dict[str, Any]:
    """Check or uncheck an acceptance criterion (zero-based index); flips it when 'checked' is omitted."""

    return await _mutate(
        "toggle_criterion", root, lambda b: b.toggle_criterion(task, index, checked), _serialize_changeset
    )


@mcp.tool()
async def update_task_content(
    task: str,
    title: Optional[str] = None,
    description: Optional[str] = None,
    acceptance_criteria: Optional[List[Dict[str, Any]]] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Update a task's title, description and criterion check marks in one queued operation."""

    def serialize(changesets: List[Changeset]) -> Dict[str, Any]:
        return {"changesets": [_serialize_changeset(c) for c in changesets]}

    return await _mutate(
        "update_task_content",
        root,
        lambda b: b.update_task_content(task, title, description, acceptance_criteria),
        serialize,
    )


@mcp.tool()
async def reset_item_tasks(item: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Move every task of a work item that is not done back to 'open'."""

    def serialize(changesets: List[Changeset]) -> Dict[str, Any]:
        return {"reset": len(changesets), "changesets": [_serialize_changeset(c) for c in changesets]}

    return await _mutate("reset_item_tasks", root, lambda b: b.reset_item_tasks(item), serialize)


@mcp.tool()
async def add_item(
    title: str,
    item_type: Optional[str] = None,
    description: str = "",
    assignee: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a work item. 'item_type' is one of feat, fix, refactor, chore."""

    return await _mutate(
        "add_item",
        root,
        lambda b: b.add_item(title, item_type, description, assignee),
        lambda slug: {"slug": slug},
    )


@mcp.tool()
async def add_task(
    item: str,
    title: str,
    status: str = "open",
    description: str = "",
    acceptance_criteria: Optional[List[str]] = None,
    assignee: Optional[str] = None,
    requires_human_review: bool = False,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Create the next task of a work item and add it to the item index."""

    return await _mutate(
        "add_task",
        root,
        lambda b: b.add_task(
            item,
            title,
            status=status,
            description=description,
            acceptance_criteria=acceptance_criteria,
            assignee=assignee,
            requires_human_review=requires_human_review,
        ),
        lambda source: {"source": source},
    )


@mcp.tool()
async def remove_task(task: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Delete a task file and its index reference."""

    return await _mutate("remove_task", root, lambda b: b.remove_task(task), lambda source: {"removed": source})


@mcp.tool()
async def remove_item(item: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Delete a work item directory with all of its tasks."""

    return await _mutate("remove_item", root, lambda b: b.remove_item(item), lambda slug: {"removed": slug})


@mcp.tool()
async def update_file_content(target: str, content: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Overwrite a task file, or a work item's index.md when 'target' names an item, with 'content'."""

    def serialize(path: str) -> Dict[str, Any]:
        backlog = _backlog(root)
        return {"updated": path, "validation": backlog.model.to_dict()["validation"]}

    return await _mutate("update_file_content", root, lambda b: b.update_file_content(target, content), serialize)


@mcp.tool()
async def sync_manifest(root: Optional[str] = None) -> Dict[str, Any]:
    """Regenerate manifest.json from the task files."""

    return await _mutate("sync_manifest", root, lambda b: b.sync_manifest(), lambda content: {"manifest": content})


if __name__ == "__main__":
    log_file = os.getenv("BACKLOGMD_LOG_FILE")
    setup_logging(
        log_level=os.getenv("BACKLOGMD_LOG_LEVEL", "INFO").upper(),
        log_file=Path(log_file) if log_file else None,
    )
    mcp.run(transport="stdio")
