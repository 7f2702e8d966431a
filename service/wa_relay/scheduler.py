"""Cancellable delayed callbacks on the running event loop."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Optional, Protocol

logger = logging.getLogger(__name__)

Callback = Callable[[], Awaitable[None]]


class ScheduledCall(Protocol):
    name: str

    def cancel(self) -> None: ...

    def done(self) -> bool: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callback, *, name: str) -> ScheduledCall: ...


class _TaskCall:
    def __init__(self, name: str, task: asyncio.Task[None]) -> None:
        self.name = name
        self._task = task

    def cancel(self) -> None:
        if not self._task.done():
            self._task.cancel()

    def done(self) -> bool:
        return self._task.done()

    def __repr__(self) -> str:
        return f"<ScheduledCall {self.name} done={self.done()}>"


class AsyncioScheduler:
    """Runs each callback in its own task after ``delay`` seconds."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[None]] = set()

    def call_later(self, delay: float, callback: Callback, *, name: str) -> ScheduledCall:
        task = asyncio.create_task(self._run(max(0.0, delay), callback, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return _TaskCall(name, task)

    async def _run(self, delay: float, callback: Callback, name: str) -> None:
        try:
            await asyncio.sleep(delay)
            await callback()
        except asyncio.CancelledError:
            logger.debug("Scheduled call %s cancelled", name)
            raise
        except Exception as exc:
            logger.exception("Scheduled call %s failed: %s", name, exc)

    async def aclose(self) -> None:
        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        for task in pending:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()


def cancel_quietly(call: Optional[ScheduledCall]) -> None:
    if call is not None and not call.done():
        call.cancel()


__all__ = ["AsyncioScheduler", "Callback", "ScheduledCall", "Scheduler", "cancel_quietly"]
