"""Debounce utility for coalescing bursts of change events."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


class CallDebouncer:
    """
    Runs a callback once after a burst of calls settles.

    Every `call()` restarts a `delay_ms` timer on the running event loop. When
    it expires the callback runs; coroutine callbacks are awaited in a task
    that `flush()` and `cancel()` also account for. A delay of 0 still defers
    to the next loop iteration.
    """

    def __init__(self, callback: Callable[[], Any], delay_ms: int = 50) -> None:
        self._callback = callback
        self._delay_ms = delay_ms
        self._handle: asyncio.TimerHandle | None = None
        self._task: asyncio.Task[None] | None = None
        self._pending = False

    def call(self) -> None:
        """Request a call to the callback (debounced)."""
        self._pending = True
        if self._handle is not None:
            self._handle.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self._delay_ms / 1000.0, self._on_timer)

    def _on_timer(self) -> None:
        self._handle = None
        if not self._pending:
            return
        self._pending = False
        self._task = asyncio.ensure_future(self._run())

    async def _run(self) -> None:
        try:
            result = self._callback()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Debounced callback failed")

    async def flush(self) -> None:
        """Run now if a call is pending, and wait for any running callback."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if self._pending:
            self._pending = False
            await self._run()
        if self._task is not None and not self._task.done():
            await self._task

    async def cancel(self) -> None:
        """Drop any pending call and stop a running one."""
        self._pending = False
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    @property
    def is_pending(self) -> bool:
        """Check if a call is waiting for its timer or still running."""
        return self._pending or (self._task is not None and not self._task.done())
