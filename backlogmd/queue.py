"""FIFO serialization of mutating operations.

One ``OperationQueue`` guards one backlog root. Operations run one at a time
in the order ``enqueue`` was called; each caller gets its own result or
exception, and a failed operation does not stop the ones queued behind it.
There is no retry and no cancellation: once enqueued an operation runs even
if its caller stops waiting. An operation that raises ``CancelledError``
cancels only its own caller; only cancelling the worker itself cancels the
operations still waiting.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from pathlib import Path
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Tuple, TypeVar, Union

logger = logging.getLogger("backlogmd.queue")

T = TypeVar("T")

Operation = Callable[[], Union[T, Awaitable[T]]]


class OperationQueue:
    """Explicit FIFO drained by a single worker task."""

    def __init__(self, name: str = "backlog"):
        self.name = name
        self._pending: Deque[Tuple[Operation, asyncio.Future]] = deque()
        self._worker: Optional[asyncio.Task] = None
        self._in_flight = False

    def __len__(self) -> int:
        return len(self._pending) + (1 if self._in_flight else 0)

    @property
    def idle(self) -> bool:
        return not self._pending and not self._in_flight

    async def enqueue(self, operation: Operation) -> Any:
        """Queue ``operation`` and wait for its own result."""
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._pending.append((operation, future))
        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._drain())
        # Shielded so a caller giving up does not cancel the operation
        return await asyncio.shield(future)

    async def _drain(self) -> None:
        while self._pending:
            operation, future = self._pending.popleft()
            self._in_flight = True
            try:
                result = operation()
                if inspect.isawaitable(result):
                    result = await result
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                worker = asyncio.current_task()
                if worker is not None and worker.cancelling():
                    self._cancel_pending()
                    raise
                logger.debug("Queued operation on %s was cancelled", self.name)
            except Exception as e:
                logger.debug("Queued operation failed on %s: %s", self.name, e)
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(result)
            finally:
                self._in_flight = False

    def _cancel_pending(self) -> None:
        while self._pending:
            _, future = self._pending.popleft()
            future.cancel()

    async def join(self) -> None:
        """Wait until every operation queued so far has settled."""
        while self._worker is not None and not self._worker.done():
            await asyncio.shield(self._worker)


_queues: Dict[str, OperationQueue] = {}


def queue_for_root(root: Union[Path, str]) -> OperationQueue:
    """Return the process-wide queue for a backlog root."""
    key = str(Path(root).resolve())
    queue = _queues.get(key)
    if queue is None:
        queue = OperationQueue(name=key)
        _queues[key] = queue
    return queue
