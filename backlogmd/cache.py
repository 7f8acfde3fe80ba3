"""In-memory cache of backlog file contents.

The cache is the only view of "current disk state" the mutation layer
trusts. Entries are read from disk on first access, overwritten after a
successful write, and dropped when the external watcher reports a change.
"""

from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional

from .errors import NotFoundError, ValidationError

logger = logging.getLogger("backlogmd.cache")


class FileCache:
    """Keyed store of relative path -> raw text for one backlog root."""

    def __init__(self, root: Path | str):
        self.root = Path(root).resolve()
        self._entries: Dict[str, str] = {}

    def __contains__(self, path: str) -> bool:
        return self.normalize(path) in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def normalize(self, path: str) -> str:
        """Return the canonical relative form of ``path``.

        Raises ValidationError for absolute paths or paths escaping the root.
        """
        pure = PurePosixPath(str(path).replace("\\", "/"))
        if pure.is_absolute() or ".." in pure.parts or not pure.parts:
            raise ValidationError(f"Invalid backlog path '{path}'", source=str(path))
        return pure.as_posix()

    def absolute(self, path: str) -> Path:
        return self.root / self.normalize(path)

    def get(self, path: str) -> str:
        """Return the content of ``path``, reading it from disk on a miss."""
        key = self.normalize(path)
        cached = self._entries.get(key)
        if cached is not None:
            return cached
        absolute = self.root / key
        try:
            content = absolute.read_text(encoding="utf-8")
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            raise NotFoundError(f"File '{key}' not found in backlog", source=key) from None
        except UnicodeDecodeError as e:
            raise ValidationError(f"File '{key}' is not valid UTF-8: {e.reason}", source=key) from None
        self._entries[key] = content
        logger.debug("Cache miss: loaded %s (%d bytes)", key, len(content))
        return content

    def peek(self, path: str) -> Optional[str]:
        """Return the cached content without touching disk."""
        return self._entries.get(self.normalize(path))

    def set(self, path: str, content: str) -> None:
        """Record ``content`` as the current state of ``path``."""
        self._entries[self.normalize(path)] = content

    def invalidate(self, path: Optional[str] = None) -> None:
        """Drop one entry, or every entry when ``path`` is None."""
        if path is None:
            self._entries.clear()
            logger.debug("Cache cleared for %s", self.root)
            return
        self._entries.pop(self.normalize(path), None)

    def exists(self, path: str) -> bool:
        key = self.normalize(path)
        return key in self._entries or (self.root / key).is_file()

    def cached_paths(self) -> List[str]:
        return sorted(self._entries)

    def list_dir(self, path: str = "") -> List[str]:
        """List entry names of a directory under the root, sorted.

        Directory listings always come from disk; only file contents are
        cached.
        """
        directory = self.root / self.normalize(path) if path else self.root
        if not directory.is_dir():
            return []
        return sorted(entry.name for entry in directory.iterdir())

    def is_dir(self, path: str) -> bool:
        return (self.root / self.normalize(path)).is_dir()
