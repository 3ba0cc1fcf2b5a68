"""Service that drains a stream of swap events and publishes them."""

from __future__ import annotations

import copy
import logging
import time
from collections.abc import AsyncIterable
from typing import Protocol

from mevrelay.infrastructure.config import Config
from mevrelay.messaging.domain import (
    PublisherStats,
    SwapEvent,
    event_protocol,
    event_source,
)
from mevrelay.messaging.redis_broker import RedisPublisher

logger = logging.getLogger(__name__)


class _SwapEventSink(Protocol):
    async def publish_event(self, event: SwapEvent) -> None: ...


class EventPublisherService:
    """Publishes every event from ``events`` and keeps publishing statistics.

    ``events`` is any async iterable; the service stops when it is exhausted.
    Without an explicit publisher, a Redis publisher is connected on start.
    """

    def __init__(
        self,
        config: Config,
        events: AsyncIterable[SwapEvent],
        publisher: _SwapEventSink | None = None,
    ) -> None:
        self.config = config
        self._events = events
        self._publisher = publisher
        self._stats = PublisherStats()
        self._running = False

    async def start(self) -> None:
        """Publish events until the source is exhausted."""
        if self._running:
            logger.warning("Event publisher service is already running")
            return
        logger.info("Starting event publisher service")
        self._running = True
        try:
            if self._publisher is None:
                self._publisher = await RedisPublisher.connect(self.config)
            await self._run_event_loop()
        finally:
            self._running = False

    async def _run_event_loop(self) -> None:
        logger.info("Event publisher service started, waiting for events...")
        async for event in self._events:
            started = time.monotonic()
            try:
                await self._process_event(event)
            except (ValueError, ConnectionError, OSError) as exc:
                self._stats.increment_error_count()
                logger.error("Failed to publish event: %s", exc)
                continue
            source = event_source(event)
            protocol = event_protocol(event)
            self._stats.increment_events_published(1)
            self._stats.increment_source_count(source)
            self._stats.increment_protocol_count(protocol)
            self._stats.update_average_latency(time.monotonic() - started)
            logger.info(
                "Event published successfully - Source: %s, Protocol: %s", source, protocol
            )
        logger.info("Event receiver closed, stopping publisher service")

    async def _process_event(self, event: SwapEvent) -> None:
        try:
            event_source(event)
            event_protocol(event)
        except (KeyError, TypeError) as exc:
            raise ValueError(f"Event validation failed: {exc}") from exc
        assert self._publisher is not None
        await self._publisher.publish_event(event)

    async def get_stats(self) -> PublisherStats:
        return copy.deepcopy(self._stats)

    async def is_running(self) -> bool:
        return self._running