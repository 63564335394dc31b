"""Single-flight operation queue.

Install, upgrade, remove and asset operations all mutate the same device,
so they run one at a time in submission order.  A failing operation rejects
only its own caller; the next one still runs.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[Any]]


class SingleFlightQueue:
    """FIFO queue that runs at most one operation at a time.

    ``await queue.submit(op)`` resolves with ``op``'s result (or raises its
    exception) once every earlier submission has settled.
    """

    def __init__(self) -> None:
        self._pending: deque[tuple[Operation, asyncio.Future, str]] = deque()
        self._worker: asyncio.Task | None = None
        self._running: str | None = None
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def running(self) -> str | None:
        """Label of the operation in flight, if any."""
        return self._running

    @property
    def busy(self) -> bool:
        return self._running is not None or bool(self._pending)

    def submit(self, op: Operation, label: str = "") -> asyncio.Future:
        if self._closed:
            raise RuntimeError("Operation queue is closed")
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._pending.append((op, future, label or getattr(op, "__name__", "operation")))
        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._drain())
        return future

    async def _drain(self) -> None:
        while self._pending:
            op, future, label = self._pending.popleft()
            if future.cancelled():
                logger.debug("Skipping cancelled operation %s", label)
                continue
            self._running = label
            logger.debug("Running queued operation %s (%d waiting)", label, len(self._pending))
            try:
                result = await op()
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                raise
            except Exception as exc:
                logger.debug("Queued operation %s failed: %s", label, exc)
                if not future.done():
                    future.set_exception(exc)
            else:
                if not future.done():
                    future.set_result(result)
            finally:
                self._running = None

    async def close(self) -> None:
        """Cancel waiting operations and the worker."""
        self._closed = True
        while self._pending:
            _, future, _ = self._pending.popleft()
            future.cancel()
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
