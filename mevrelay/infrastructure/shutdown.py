"""Process-wide shutdown notification for asyncio tasks."""

from __future__ import annotations

import asyncio
import logging

logger = logging.getLogger(__name__)


class ShutdownSignal:
    """A one-shot signal that any number of tasks can wait on.

    Share the same instance between tasks; once ``shutdown`` is called every
    current and future waiter is released.
    """

    def __init__(self) -> None:
        self._triggered = False
        self._event = asyncio.Event()
        self._subscribers: list[asyncio.Event] = []

    async def wait(self) -> None:
        """Block until shutdown is requested."""
        await self._event.wait()
        logger.info("Shutdown signal received")

    def shutdown(self) -> None:
        """Request shutdown and release every waiter."""
        if self._triggered:
            return
        self._triggered = True
        self._event.set()
        for subscriber in self._subscribers:
            subscriber.set()

    def subscribe(self) -> asyncio.Event:
        """Return a fresh event that is set when shutdown is requested."""
        subscriber = asyncio.Event()
        if self._triggered:
            subscriber.set()
        else:
            self._subscribers.append(subscriber)
        return subscriber

    def is_set(self) -> bool:
        return self._triggered