"""Redis-backed event buffering: a FIFO queue, a capped stream and a TTL cache."""

from __future__ import annotations

import copy
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

import redis.asyncio as aioredis
import redis.exceptions

from mevrelay.messaging.domain import SwapEvent, deserialize_event, serialize_event

logger = logging.getLogger(__name__)

_FAILURES = (redis.exceptions.RedisError, OSError)


class BufferError(Exception):
    """Raised when a buffer operation against Redis fails."""


@dataclass
class BufferConfig:
    max_queue_size: int = 10000
    batch_size: int = 100
    stream_max_len: int = 1000
    cache_ttl_seconds: int = 3600
    retry_attempts: int = 3
    retry_delay_ms: int = 100


@dataclass
class BufferStats:
    events_buffered: int = 0
    events_processed: int = 0
    events_dropped: int = 0
    events_cached: int = 0
    events_retrieved: int = 0
    errors: int = 0
    total_latency: float = 0.0
    batch_count: int = 0

    def increment_events_buffered(self, count: int) -> None:
        self.events_buffered += count

    def increment_events_processed(self, count: int) -> None:
        self.events_processed += count

    def increment_events_dropped(self, count: int) -> None:
        self.events_dropped += count

    def increment_events_cached(self, count: int) -> None:
        self.events_cached += count

    def increment_events_retrieved(self, count: int) -> None:
        self.events_retrieved += count

    def increment_errors(self) -> None:
        self.errors += 1

    def update_latency(self, latency: float) -> None:
        """Add a buffering latency, in seconds."""
        self.total_latency += latency

    def increment_batch_count(self) -> None:
        self.batch_count += 1

    def average_latency(self) -> float:
        """Mean latency in seconds per buffered event, or 0.0 if none were buffered."""
        if self.events_buffered > 0:
            return self.total_latency / self.events_buffered
        return 0.0


def _decode(data: Any) -> str:
    if isinstance(data, bytes):
        return data.decode("utf-8")
    return str(data)


def _ttl_seconds(ttl: float | timedelta) -> int:
    if isinstance(ttl, timedelta):
        return int(ttl.total_seconds())
    return int(ttl)


class RedisBuffer:
    """Buffers swap events in a Redis list, stream and key cache."""

    def __init__(self, queue_name: str, client: Any, config: BufferConfig | None = None) -> None:
        self.config = config if config is not None else BufferConfig()
        self.queue_name = queue_name
        self.stream_name = f"{queue_name}:stream"
        self.cache_prefix = f"{queue_name}:cache"
        self._client = client
        self._stats = BufferStats()

    @classmethod
    async def connect(
        cls, redis_url: str, queue_name: str, config: BufferConfig | None = None
    ) -> RedisBuffer:
        """Open a Redis client for ``redis_url`` and verify that it responds."""
        try:
            client = aioredis.Redis.from_url(redis_url)
        except (ValueError, redis.exceptions.RedisError) as exc:
            raise BufferError(f"Failed to create Redis client: {exc}") from exc
        try:
            await client.ping()
        except _FAILURES as exc:
            await client.aclose()
            raise BufferError(f"Failed to create Redis connection manager: {exc}") from exc
        return cls(queue_name, client, config)

    async def buffer_event(self, event: SwapEvent) -> bool:
        """Push one event onto the queue; returns False if the queue was full."""
        started = time.monotonic()
        if await self.get_queue_size() >= self.config.max_queue_size:
            logger.debug("Event dropped due to queue size limit")
            return False
        payload = serialize_event(event)
        try:
            await self._client.lpush(self.queue_name, payload)
        except _FAILURES as exc:
            self._stats.increment_errors()
            logger.error("Failed to buffer event: %s", exc)
            raise BufferError(f"Redis buffer failed: {exc}") from exc
        self._stats.increment_events_buffered(1)
        self._stats.update_latency(time.monotonic() - started)
        logger.debug("Event buffered in queue: %s", self.queue_name)
        return True

    async def buffer_events(self, events: Sequence[SwapEvent]) -> int:
        """Push as many events as fit in one pipeline; returns how many were queued."""
        if not events:
            return 0
        started = time.monotonic()
        queue_size = await self.get_queue_size()
        available = max(self.config.max_queue_size - queue_size, 0)
        to_buffer = min(len(events), available)
        if to_buffer < len(events):
            dropped = len(events) - to_buffer
            logger.warning("Queue full, dropping %d events", dropped)
            self._stats.increment_events_dropped(dropped)

        payloads = [serialize_event(event) for event in events[:to_buffer]]
        pipe = self._client.pipeline(transaction=False)
        for payload in payloads:
            pipe.lpush(self.queue_name, payload)
        try:
            await pipe.execute()
        except _FAILURES as exc:
            self._stats.increment_errors()
            logger.error("Failed to buffer events batch: %s", exc)
            raise BufferError(f"Redis batch buffer failed: {exc}") from exc
        self._stats.increment_events_buffered(to_buffer)
        self._stats.update_latency(time.monotonic() - started)
        self._stats.increment_batch_count()
        logger.info("Buffered %d events in queue: %s", to_buffer, self.queue_name)
        return to_buffer

    async def process_events(self, batch_size: int | None = None) -> list[dict[str, Any]]:
        """Pop up to ``batch_size`` events, oldest first.

        Undecodable entries are counted as errors and skipped; a Redis failure
        ends the batch early.
        """
        limit = self.config.batch_size if batch_size is None else batch_size
        events: list[dict[str, Any]] = []
        for _ in range(limit):
            try:
                raw = await self._client.rpop(self.queue_name)
            except _FAILURES as exc:
                logger.error("Failed to pop event from queue: %s", exc)
                self._stats.increment_errors()
                break
            if raw is None:
                break
            try:
                event = deserialize_event(_decode(raw))
            except ValueError as exc:
                logger.error("Failed to deserialize event: %s", exc)
                self._stats.increment_errors()
                continue
            events.append(event)
            self._stats.increment_events_processed(1)
        return events

    async def add_to_stream(self, event: SwapEvent) -> str:
        """Append the event to the capped stream and return the entry id."""
        payload = serialize_event(event)
        fields = {"event": payload, "timestamp": str(int(time.time() * 1000))}
        try:
            entry_id = await self._client.xadd(
                self.stream_name,
                fields,
                id="*",
                maxlen=self.config.stream_max_len,
                approximate=False,
            )
        except _FAILURES as exc:
            logger.error("Failed to add event to stream: %s", exc)
            raise BufferError(f"Redis stream failed: {exc}") from exc
        logger.debug("Event added to stream: %s", self.stream_name)
        return _decode(entry_id)

    def _cache_key(self, key: str) -> str:
        return f"{self.cache_prefix}:{key}"

    async def cache_event(self, key: str, event: SwapEvent, ttl: float | timedelta) -> None:
        """Store the event under ``key`` for ``ttl`` (seconds or a timedelta)."""
        payload = serialize_event(event)
        cache_key = self._cache_key(key)
        pipe = self._client.pipeline(transaction=False)
        pipe.set(cache_key, payload)
        pipe.expire(cache_key, _ttl_seconds(ttl))
        try:
            await pipe.execute()
        except _FAILURES as exc:
            logger.error("Failed to cache event: %s", exc)
            raise BufferError(f"Redis cache failed: {exc}") from exc
        self._stats.increment_events_cached(1)
        logger.debug("Event cached: %s", cache_key)

    async def get_cached_event(self, key: str) -> dict[str, Any] | None:
        """Return the cached event for ``key``, or None if absent or expired."""
        cache_key = self._cache_key(key)
        try:
            raw = await self._client.get(cache_key)
        except _FAILURES as exc:
            logger.error("Failed to retrieve cached event: %s", exc)
            raise BufferError(f"Redis cache retrieval failed: {exc}") from exc
        if raw is None:
            return None
        try:
            event = deserialize_event(_decode(raw))
        except ValueError as exc:
            logger.error("Failed to deserialize cached event: %s", exc)
            raise BufferError(f"Failed to deserialize cached event: {exc}") from exc
        self._stats.increment_events_retrieved(1)
        return event

    async def get_queue_size(self) -> int:
        try:
            return int(await self._client.llen(self.queue_name))
        except _FAILURES as exc:
            logger.error("Failed to get queue size: %s", exc)
            raise BufferError(f"Redis queue size failed: {exc}") from exc

    async def clear_queue(self) -> None:
        try:
            await self._client.delete(self.queue_name)
        except _FAILURES as exc:
            logger.error("Failed to clear queue: %s", exc)
            raise BufferError(f"Redis queue clear failed: {exc}") from exc
        logger.info("Queue cleared: %s", self.queue_name)

    async def health_check(self) -> None:
        """Raise BufferError if Redis cannot report the queue size."""
        await self.get_queue_size()

    async def get_stats(self) -> BufferStats:
        return copy.deepcopy(self._stats)


@dataclass
class BufferManager:
    """Holds named buffers that share one configuration."""

    config: BufferConfig = field(default_factory=BufferConfig)
    buffers: dict[str, RedisBuffer] = field(default_factory=dict)

    async def add_buffer(self, name: str, redis_url: str) -> RedisBuffer:
        buffer = await RedisBuffer.connect(redis_url, name, copy.copy(self.config))
        self.buffers[name] = buffer
        return buffer

    def get_buffer(self, name: str) -> RedisBuffer | None:
        return self.buffers.get(name)

    def remove_buffer(self, name: str) -> RedisBuffer | None:
        return self.buffers.pop(name, None)

    def buffer_names(self) -> list[str]:
        return list(self.buffers)

    async def health_check_all(self) -> None:
        """Check every buffer, raising the first failure."""
        for name, buffer in self.buffers.items():
            try:
                await buffer.health_check()
            except BufferError as exc:
                logger.error("Buffer '%s' health check failed: %s", name, exc)
                raise