"""Filtering, backpressure and buffering of swap events on top of Redis buffers."""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from mevrelay.messaging.buffer import BufferError, BufferManager, RedisBuffer
from mevrelay.messaging.domain import SwapEvent

logger = logging.getLogger(__name__)

DEFAULT_BUFFER = "default"
HEALTH_CHECK_INTERVAL = 30.0


class _EventFilter(Protocol):
    def filter_events(self, events: Sequence[SwapEvent]) -> list[SwapEvent]: ...


@dataclass
class BufferedProcessorConfig:
    processing_interval: float = 0.1
    batch_size: int = 100
    max_workers: int = 4
    backpressure_threshold: int = 1000
    enable_filtering: bool = True
    enable_caching: bool = True
    cache_ttl_seconds: int = 3600


@dataclass
class ProcessorStats:
    events_received: int = 0
    events_processed: int = 0
    events_filtered: int = 0
    events_cached: int = 0
    events_dropped: int = 0
    errors: int = 0
    processing_time: float = 0.0
    worker_count: int = 0

    def increment_events_received(self, count: int) -> None:
        self.events_received += count

    def increment_events_processed(self, count: int) -> None:
        self.events_processed += count

    def increment_events_filtered(self, count: int) -> None:
        self.events_filtered += count

    def increment_events_cached(self, count: int) -> None:
        self.events_cached += count

    def increment_events_dropped(self, count: int) -> None:
        self.events_dropped += count

    def increment_errors(self) -> None:
        self.errors += 1

    def update_processing_time(self, elapsed: float) -> None:
        """Add processing time, in seconds."""
        self.processing_time += elapsed


def _transaction_hash(event: SwapEvent) -> str:
    try:
        return str(event["transaction"]["hash"])
    except (KeyError, TypeError) as exc:
        raise ValueError(f"Event has no transaction hash: {exc}") from exc


class BufferedEventProcessor:
    """Filters incoming events and stores them in the ``default`` buffer."""

    def __init__(
        self,
        config: BufferedProcessorConfig,
        buffer_manager: BufferManager,
        event_filter: _EventFilter | None = None,
    ) -> None:
        self.config = config
        self.buffer_manager = buffer_manager
        self._filter = event_filter
        self._stats = ProcessorStats()
        self._running = False
        self._workers: dict[str, asyncio.Task[None]] = {}

    async def start(self) -> None:
        """Start the processing loop and the buffer health monitor."""
        if self._running:
            logger.warning("Processor is already running")
            return
        self._running = True
        logger.info("Starting buffered event processor")
        self._workers["processing"] = asyncio.create_task(self._processing_loop())
        self._workers["health"] = asyncio.create_task(self._health_monitor())
        logger.info("Buffered event processor started with %d workers", len(self._workers))

    async def stop(self) -> None:
        """Cancel the background workers and wait for them to finish."""
        if not self._running:
            logger.warning("Processor is not running")
            return
        self._running = False
        logger.info("Stopping buffered event processor")
        workers, self._workers = self._workers, {}
        for name, task in workers.items():
            logger.info("Cancelling worker: %s", name)
            task.cancel()
        results = await asyncio.gather(*workers.values(), return_exceptions=True)
        for name, result in zip(workers, results):
            if isinstance(result, asyncio.CancelledError):
                logger.debug("Worker %s was cancelled", name)
            elif isinstance(result, BaseException):
                logger.error("Worker %s failed: %s", name, result)
            else:
                logger.debug("Worker %s finished gracefully", name)
        logger.info("Buffered event processor stopped")

    def _apply_filter(self, events: Sequence[SwapEvent]) -> list[SwapEvent]:
        if not self.config.enable_filtering or self._filter is None:
            return list(events)
        return list(self._filter.filter_events(events))

    def _default_buffer(self) -> RedisBuffer:
        buffer = self.buffer_manager.get_buffer(DEFAULT_BUFFER)
        if buffer is None:
            logger.error("Default buffer not found")
            raise LookupError("Default buffer not found")
        return buffer

    async def _should_apply_backpressure(self) -> bool:
        buffer = self.buffer_manager.get_buffer(DEFAULT_BUFFER)
        if buffer is None:
            return False
        return await buffer.get_queue_size() >= self.config.backpressure_threshold

    async def _store(self, buffer: RedisBuffer, event: SwapEvent) -> None:
        if self.config.enable_caching:
            await buffer.cache_event(
                f"event:{_transaction_hash(event)}", event, self.config.cache_ttl_seconds
            )

    async def process_event(self, event: SwapEvent) -> None:
        """Filter, check backpressure and buffer one event.

        Raises LookupError when there is no default buffer.
        """
        started = time.monotonic()
        self._stats.increment_events_received(1)

        if not self._apply_filter([event]):
            self._stats.increment_events_filtered(1)
            return

        if await self._should_apply_backpressure():
            self._stats.increment_events_dropped(1)
            logger.warning("Backpressure applied, dropping event")
            return

        buffer = self._default_buffer()
        await buffer.buffer_event(event)
        await self._store(buffer, event)
        await buffer.add_to_stream(event)

        self._stats.increment_events_processed(1)
        self._stats.update_processing_time(time.monotonic() - started)
        logger.debug("Event processed successfully")

    async def process_events(self, events: Sequence[SwapEvent]) -> None:
        """Filter, check backpressure and buffer a batch of events."""
        if not events:
            return
        started = time.monotonic()
        self._stats.increment_events_received(len(events))

        to_process = self._apply_filter(events)
        if self.config.enable_filtering and self._filter is not None:
            self._stats.increment_events_filtered(len(events) - len(to_process))
        if not to_process:
            return

        if await self._should_apply_backpressure():
            self._stats.increment_events_dropped(len(to_process))
            logger.warning("Backpressure applied, dropping %d events", len(to_process))
            return

        buffer = self._default_buffer()
        await buffer.buffer_events(to_process)
        for event in to_process:
            await self._store(buffer, event)
        for event in to_process:
            await buffer.add_to_stream(event)

        self._stats.increment_events_processed(len(to_process))
        self._stats.update_processing_time(time.monotonic() - started)
        logger.info("Processed %d events successfully", len(to_process))

    async def get_stats(self) -> ProcessorStats:
        stats = copy.deepcopy(self._stats)
        stats.worker_count = len(self._workers)
        return stats

    async def is_running(self) -> bool:
        return self._running

    async def _processing_loop(self) -> None:
        while self._running:
            buffer = self.buffer_manager.get_buffer(DEFAULT_BUFFER)
            if buffer is not None:
                try:
                    events = await buffer.process_events(self.config.batch_size)
                except BufferError as exc:
                    logger.error("Failed to process events from buffer: %s", exc)
                    self._stats.increment_errors()
                else:
                    if events:
                        logger.debug("Processed %d events from buffer", len(events))
                        self._stats.increment_events_processed(len(events))
            await asyncio.sleep(self.config.processing_interval)

    async def _health_monitor(self) -> None:
        while self._running:
            try:
                await self.buffer_manager.health_check_all()
            except BufferError as exc:
                logger.error("Buffer health check failed: %s", exc)
            await asyncio.sleep(HEALTH_CHECK_INTERVAL)