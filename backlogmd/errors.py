"""Error types raised by the backlog engine.

Every error carries a ``kind`` discriminant so transports (MCP tools, an HTTP
layer) can map failures without inspecting message text.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class BacklogError(Exception):
    """Base class for engine errors."""

    kind = "error"

    def __init__(self, message: str, *, source: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.source = source

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {"kind": self.kind, "message": self.message, "source": self.source}


class NotFoundError(BacklogError):
    """A referenced task, work item or file does not exist."""

    kind = "not_found"


class ConflictError(BacklogError):
    """Expected original text is absent or ambiguous in the current content.

    Signals a stale model or an external edit; the caller should reload and
    may retry.
    """

    kind = "conflict"


class ValidationError(BacklogError):
    """A mutation intent is structurally invalid."""

    kind = "validation"
