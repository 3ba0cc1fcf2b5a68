"""Redis pub/sub message broker for swap events."""

from __future__ import annotations

import copy
import logging
import time
from collections.abc import Sequence
from typing import Any

import redis.asyncio as aioredis
import redis.exceptions

from mevrelay.infrastructure.config import Config
from mevrelay.messaging.domain import (
    BrokerStats,
    ConnectionStatus,
    MessageBroker,
    MessageReceiver,
    SwapEvent,
    serialize_event,
)

logger = logging.getLogger(__name__)

_FAILURES = (redis.exceptions.RedisError, OSError)


def _decode(data: Any) -> str:
    if isinstance(data, bytes):
        return data.decode("utf-8")
    return str(data)


class RedisMessageReceiver(MessageReceiver):
    """Receives messages published on one Redis channel."""

    def __init__(self, client: Any, channel: str, timeout: float = 1.0) -> None:
        self._client = client
        self.channel = channel
        self.timeout = timeout
        self._pubsub: Any = None
        self._active = True

    async def _ensure_subscribed(self) -> Any:
        if self._pubsub is None:
            pubsub = self._client.pubsub()
            await pubsub.subscribe(self.channel)
            self._pubsub = pubsub
        return self._pubsub

    async def receive(self) -> str | None:
        """Return the next message, or None if none arrives within the timeout."""
        if not self._active:
            return None
        pubsub = await self._ensure_subscribed()
        message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=self.timeout)
        if message is None:
            return None
        return _decode(message["data"])

    def is_active(self) -> bool:
        return self._active

    async def close(self) -> None:
        """Unsubscribe and stop delivering messages."""
        self._active = False
        if self._pubsub is not None:
            pubsub, self._pubsub = self._pubsub, None
            try:
                await pubsub.unsubscribe(self.channel)
            finally:
                await pubsub.aclose()


class RedisPublisher(MessageBroker):
    """Publishes swap events and raw messages to Redis channels."""

    def __init__(self, config: Config, client: Any) -> None:
        self.config = config
        self._client = client
        self._stats = BrokerStats()

    @classmethod
    async def connect(cls, config: Config) -> RedisPublisher:
        """Open a Redis client for the configured URL and verify it responds."""
        redis_config = config.redis
        try:
            client = aioredis.Redis.from_url(
                redis_config.url,
                socket_connect_timeout=redis_config.connection_timeout / 1000,
                socket_timeout=redis_config.read_timeout / 1000,
            )
        except (ValueError, redis.exceptions.RedisError) as exc:
            raise ValueError(f"Failed to create Redis client: {exc}") from exc
        try:
            await client.ping()
        except _FAILURES as exc:
            await client.aclose()
            raise ConnectionError(f"Failed to create Redis connection manager: {exc}") from exc
        return cls(config, client)

    async def __aenter__(self) -> RedisPublisher:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self._client.aclose()

    async def publish_event(self, event: SwapEvent) -> None:
        """Publish one event as JSON on the configured channel."""
        started = time.monotonic()
        payload = serialize_event(event)
        channel = self.config.redis.channel
        try:
            await self._client.publish(channel, payload)
        except _FAILURES as exc:
            self._record_error()
            logger.error("Failed to publish event to Redis: %s", exc)
            raise ConnectionError(f"Redis publish failed: {exc}") from exc
        self._record_success(time.monotonic() - started)
        logger.info("Event published to Redis channel: %s", channel)

    async def publish_events(self, events: Sequence[SwapEvent]) -> None:
        """Publish several events in one pipeline."""
        if not events:
            return
        started = time.monotonic()
        payloads = [serialize_event(event) for event in events]
        channel = self.config.redis.channel
        await self._run_batch(channel, payloads)
        self._record_batch_success(len(payloads), time.monotonic() - started)
        logger.info("Published %d events to Redis channel: %s", len(payloads), channel)

    async def publish(self, channel: str, message: str) -> None:
        try:
            await self._client.publish(channel, message)
        except _FAILURES as exc:
            self._record_error()
            raise ConnectionError(f"Redis publish failed: {exc}") from exc
        self._record_success(0.0)

    async def publish_batch(self, channel: str, messages: Sequence[str]) -> None:
        if not messages:
            return
        await self._run_batch(channel, list(messages))
        self._record_batch_success(len(messages), 0.0)

    async def _run_batch(self, channel: str, payloads: list[str]) -> None:
        pipe = self._client.pipeline(transaction=False)
        for payload in payloads:
            pipe.publish(channel, payload)
        try:
            await pipe.execute()
        except _FAILURES as exc:
            self._record_error()
            logger.error("Failed to publish batch to Redis: %s", exc)
            raise ConnectionError(f"Redis batch publish failed: {exc}") from exc

    async def subscribe(self, channel: str) -> RedisMessageReceiver:
        return RedisMessageReceiver(self._client, channel, self.config.redis.read_timeout / 1000)

    async def health_check(self) -> bool:
        """Return whether Redis answers a simple command."""
        try:
            await self._client.llen("health_check")
        except _FAILURES as exc:
            self._stats.set_connection_status(ConnectionStatus.error("Health check failed"))
            logger.error("Redis health check failed: %s", exc)
            return False
        self._stats.set_connection_status(ConnectionStatus.connected())
        return True

    async def get_stats(self) -> BrokerStats:
        return copy.deepcopy(self._stats)

    def _record_success(self, duration: float) -> None:
        self._stats.increment_published()
        self._stats.update_performance_metric("last_publish_duration", duration)
        self._stats.set_connection_status(ConnectionStatus.connected())

    def _record_batch_success(self, count: int, duration: float) -> None:
        self._stats.increment_published()
        self._stats.update_performance_metric("last_batch_publish_duration", duration)
        self._stats.update_performance_metric("last_batch_size", float(count))
        self._stats.set_connection_status(ConnectionStatus.connected())

    def _record_error(self) -> None:
        self._stats.increment_error_count()
        self._stats.set_connection_status(ConnectionStatus.error("Publish failed"))