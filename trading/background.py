"""Bounded fire-and-forget task runner with an error channel."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackgroundError:
    name: str
    error: str
    error_type: str
    ts: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class BackgroundDispatcher:
    """Runs side-effect coroutines off the decision path.

    At most ``max_concurrency`` jobs execute at once; the rest wait on the
    semaphore. Failures never propagate to the submitter. They are logged,
    kept in ``errors`` and forwarded to ``on_error`` listeners.
    """

    def __init__(
        self,
        max_concurrency: int = 8,
        *,
        error_history: int = 200,
        on_error: Optional[Callable[[BackgroundError], None]] = None,
    ) -> None:
        self.max_concurrency = max(1, int(max_concurrency))
        self._semaphore: asyncio.Semaphore | None = None
        self._tasks: set[asyncio.Task] = set()
        self.errors: deque[BackgroundError] = deque(maxlen=max(1, int(error_history)))
        self._listeners: list[Callable[[BackgroundError], None]] = []
        if on_error is not None:
            self._listeners.append(on_error)
        self.completed = 0

    def add_error_listener(self, listener: Callable[[BackgroundError], None]) -> None:
        self._listeners.append(listener)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, name: str, factory: Callable[[], Awaitable[object]]) -> asyncio.Task:
        """Schedule ``factory()`` on the running loop and return immediately."""
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_concurrency)
        task = asyncio.create_task(self._run(name, factory, self._semaphore), name=f"bg:{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, name: str, factory: Callable[[], Awaitable[object]], semaphore: asyncio.Semaphore) -> None:
        async with semaphore:
            try:
                await factory()
                self.completed += 1
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._report(name, exc)

    def _report(self, name: str, exc: Exception) -> None:
        logger.warning("BACKGROUND failed task=%s error_type=%s error=%s", name, type(exc).__name__, exc)
        err = BackgroundError(name=name, error=str(exc), error_type=type(exc).__name__)
        self.errors.append(err)
        for listener in list(self._listeners):
            try:
                listener(err)
            except Exception:
                logger.exception("BACKGROUND error listener failed task=%s", name)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for every submitted job, including jobs submitted while waiting."""
        while self._tasks:
            pending = list(self._tasks)
            done, not_done = await asyncio.wait(pending, timeout=timeout)
            if not_done:
                logger.warning("BACKGROUND drain timeout pending=%s", len(not_done))
                return

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
