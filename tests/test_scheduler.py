from __future__ import annotations

import asyncio
import logging

import pytest

from batview.scheduler import AsyncioScheduler


def test_wait_idle_includes_tasks_spawned_meanwhile() -> None:
    scheduler = AsyncioScheduler()
    order: list[str] = []

    async def child() -> None:
        await scheduler.yield_now()
        order.append("child")

    async def parent() -> None:
        await scheduler.yield_now()
        scheduler.spawn(child(), name="child")
        order.append("parent")

    async def scenario() -> int:
        scheduler.spawn(parent(), name="parent")
        await scheduler.wait_idle()
        return scheduler.pending_count

    assert asyncio.run(scenario()) == 0
    assert order == ["parent", "child"]


def test_failed_task_is_logged(caplog: pytest.LogCaptureFixture) -> None:
    scheduler = AsyncioScheduler()

    async def broken() -> None:
        raise RuntimeError("boom")

    async def scenario() -> None:
        scheduler.spawn(broken(), name="broken")
        await scheduler.wait_idle()

    with caplog.at_level(logging.ERROR, logger="batview.scheduler"):
        asyncio.run(scenario())

    assert "background task broken failed" in caplog.text
