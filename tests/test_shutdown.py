import asyncio

import pytest

from mevrelay.infrastructure.shutdown import ShutdownSignal


@pytest.mark.asyncio
async def test_shutdown_signal():
    shutdown = ShutdownSignal()
    waiter = asyncio.create_task(shutdown.wait())

    await asyncio.sleep(0.01)
    assert not waiter.done()

    shutdown.shutdown()
    await asyncio.wait_for(waiter, timeout=5)
    assert waiter.done()
    assert shutdown.is_set() is True


@pytest.mark.asyncio
async def test_many_waiters_released():
    shutdown = ShutdownSignal()
    waiters = [asyncio.create_task(shutdown.wait()) for _ in range(5)]
    await asyncio.sleep(0)
    shutdown.shutdown()
    await asyncio.wait_for(asyncio.gather(*waiters), timeout=5)
    assert all(task.done() for task in waiters)


@pytest.mark.asyncio
async def test_wait_after_shutdown_returns_immediately():
    shutdown = ShutdownSignal()
    shutdown.shutdown()
    result = await asyncio.wait_for(shutdown.wait(), timeout=1)
    assert result is None
    assert shutdown.is_set()


def test_not_set_initially():
    assert ShutdownSignal().is_set() is False


@pytest.mark.asyncio
async def test_subscribe_before_shutdown():
    shutdown = ShutdownSignal()
    subscription = shutdown.subscribe()
    assert not subscription.is_set()
    shutdown.shutdown()
    assert subscription.is_set()


@pytest.mark.asyncio
async def test_subscribe_after_shutdown_is_already_set():
    shutdown = ShutdownSignal()
    shutdown.shutdown()
    assert shutdown.subscribe().is_set()


@pytest.mark.asyncio
async def test_shutdown_is_idempotent():
    shutdown = ShutdownSignal()
    shutdown.shutdown()
    shutdown.shutdown()
    assert shutdown.is_set() is True
    await asyncio.wait_for(shutdown.wait(), timeout=1)
    assert shutdown.subscribe().is_set()