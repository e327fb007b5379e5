"""Tests for background.py"""

import asyncio
import logging

import pytest

from pants.core.background import TaskLimitError, TaskSupervisor


async def _wait(event: asyncio.Event) -> str:
    await event.wait()
    return "done"


@pytest.mark.asyncio
async def test_submit_and_finish():
    supervisor = TaskSupervisor(max_tasks=2)
    release = asyncio.Event()

    task = supervisor.submit("import-1", _wait(release))
    assert supervisor.is_running("import-1")
    assert supervisor.active == 1

    release.set()
    assert await task == "done"
    await asyncio.sleep(0)
    assert supervisor.active == 0


@pytest.mark.asyncio
async def test_limit():
    supervisor = TaskSupervisor(max_tasks=1)
    release = asyncio.Event()
    supervisor.submit("a", _wait(release))

    with pytest.raises(TaskLimitError):
        supervisor.submit("b", _wait(release))

    release.set()
    assert await supervisor.drain(1.0) is True


@pytest.mark.asyncio
async def test_duplicate_name():
    supervisor = TaskSupervisor()
    release = asyncio.Event()
    supervisor.submit("a", _wait(release))

    with pytest.raises(ValueError, match="already running"):
        supervisor.submit("a", _wait(release))

    release.set()
    await supervisor.drain()


@pytest.mark.asyncio
async def test_failure_is_logged(caplog):
    supervisor = TaskSupervisor()

    async def boom():
        raise RuntimeError("extractor crashed")

    with caplog.at_level(logging.ERROR, logger="pants.core.background"):
        supervisor.submit("import-x", boom())
        await supervisor.drain(1.0)
        await asyncio.sleep(0)

    assert "Background task import-x failed" in caplog.text
    assert supervisor.active == 0


@pytest.mark.asyncio
async def test_shutdown_cancels_stragglers():
    supervisor = TaskSupervisor()
    never = asyncio.Event()
    task = supervisor.submit("stuck", _wait(never))

    await supervisor.shutdown(timeout=0.01)

    assert task.cancelled()
    assert supervisor.active == 0


def test_invalid_limit():
    with pytest.raises(ValueError):
        TaskSupervisor(max_tasks=0)
