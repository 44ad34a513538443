"""Cooperative scheduling capability.

Everything in the cache layer runs on one event loop. Long computations are
split into small steps separated by ``yield_now()`` so the host stays responsive;
background work is started with ``spawn()``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Coroutine
from typing import Any, Protocol

_logger = logging.getLogger(__name__)


class Scheduler(Protocol):
    def yield_now(self) -> Awaitable[None]: ...

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task[Any]: ...


class AsyncioScheduler:
    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def yield_now(self) -> Awaitable[None]:
        return asyncio.sleep(0)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        # イベントループは弱参照しか持たないので、完了まで保持する。
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    @property
    def pending_count(self) -> int:
        return len(self._tasks)

    async def wait_idle(self) -> None:
        """Wait until every spawned task, including ones spawned meanwhile, has finished."""
        while self._tasks:
            pending = [task for task in self._tasks if not task.done()]
            if pending:
                await asyncio.wait(pending)
            else:
                await asyncio.sleep(0)

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            _logger.error("background task %s failed", task.get_name(), exc_info=error)
