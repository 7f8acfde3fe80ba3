"""Task and work item statuses.

The single place where a work item's status is computed from its tasks.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Iterable, Optional, Union


class TaskStatus(str, Enum):
    """Valid task statuses, plus the ``unknown`` parse sentinel."""

    PLAN = "plan"
    OPEN = "open"
    IN_PROGRESS = "in-progress"
    REVIEW = "review"
    READY_TO_TEST = "ready-to-test"
    BLOCK = "block"
    DONE = "done"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> Optional["TaskStatus"]:
        """Return the status for a raw value, or None when it is not recognised."""
        if isinstance(value, TaskStatus):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


# Statuses a caller may write to a task file.
SETTABLE_STATUSES = tuple(s for s in TaskStatus if s is not TaskStatus.UNKNOWN)


class ItemStatus(str, Enum):
    """Work item status, always derived from its tasks."""

    OPEN = "open"
    IN_PROGRESS = "in-progress"
    DONE = "done"


# Incomplete statuses that do not count as work under way.
IDLE_STATUSES = frozenset({TaskStatus.OPEN, TaskStatus.PLAN, TaskStatus.UNKNOWN})


def derive_status(statuses: Iterable[Union[TaskStatus, str]]) -> ItemStatus:
    """Derive a work item status from its task statuses.

    - no tasks -> open
    - every task done -> done
    - every task open, plan or unknown -> open
    - anything else -> in-progress

    Order does not matter. Unrecognised raw strings count as ``unknown``.
    """
    seen = {TaskStatus.parse(s) or TaskStatus.UNKNOWN for s in statuses}
    if not seen:
        return ItemStatus.OPEN
    if seen == {TaskStatus.DONE}:
        return ItemStatus.DONE
    if seen <= IDLE_STATUSES:
        return ItemStatus.OPEN
    return ItemStatus.IN_PROGRESS
