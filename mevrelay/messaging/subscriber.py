"""Swap event subscription on top of a message broker."""

from __future__ import annotations

import copy
import logging
import time

from mevrelay.infrastructure.config import Config
from mevrelay.messaging.domain import (
    EventReceiver,
    EventSubscriber,
    MessageBroker,
    MessageReceiver,
    SubscriberStats,
    SwapEvent,
    deserialize_event,
    event_protocol,
    event_source,
)

logger = logging.getLogger(__name__)


class EventReceiverImpl(EventReceiver):
    """Decodes swap events from a message source and records statistics.

    Without a source the receiver never yields events.
    """

    def __init__(
        self,
        config: Config,
        stats: SubscriberStats,
        source: MessageReceiver | None = None,
    ) -> None:
        self.config = config
        self._stats = stats
        self._source = source
        self._active = True

    async def receive_event(self) -> SwapEvent | None:
        """Return the next event, or None when inactive or nothing is waiting.

        Raises ValueError when a message is not a valid event.
        """
        if not self._active or self._source is None:
            return None
        started = time.monotonic()
        message = await self._source.receive()
        if message is None:
            return None
        try:
            event = deserialize_event(message)
            event_source(event)
            event_protocol(event)
        except ValueError:
            self.record_error()
            raise
        self.record_received(event, time.monotonic() - started)
        return event

    def is_active(self) -> bool:
        return self._active

    def close(self) -> None:
        self._active = False

    def record_received(self, event: SwapEvent, duration: float) -> None:
        self._stats.increment_events_received(1)
        self._stats.increment_source_count(event_source(event))
        self._stats.increment_protocol_count(event_protocol(event))
        self._stats.update_average_processing_latency(duration)

    def record_error(self) -> None:
        self._stats.increment_error_count()


class EventSubscriberService(EventSubscriber):
    """Hands out event receivers for the configured Redis channel."""

    def __init__(self, config: Config, broker: MessageBroker | None = None) -> None:
        self.config = config
        self._broker = broker
        self._stats = SubscriberStats()

    async def subscribe(self) -> EventReceiverImpl:
        channel = self.config.redis.channel
        source = await self._broker.subscribe(channel) if self._broker is not None else None
        logger.info("Event subscriber created for channel: %s", channel)
        return EventReceiverImpl(self.config, self._stats, source)

    async def get_stats(self) -> SubscriberStats:
        """Return a snapshot of the statistics shared by all receivers."""
        return copy.deepcopy(self._stats)