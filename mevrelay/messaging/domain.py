"""Messaging domain: broker interfaces, statistics and channel settings."""

from __future__ import annotations

import enum
import json
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

SwapEvent = Mapping[str, Any]


def _now() -> int:
    return int(time.time())


class ConnectionState(enum.Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    ERROR = "error"


@dataclass(frozen=True)
class ConnectionStatus:
    """Broker connection state, with a message when in the error state."""

    state: ConnectionState = ConnectionState.DISCONNECTED
    message: str | None = None

    @classmethod
    def connected(cls) -> ConnectionStatus:
        return cls(ConnectionState.CONNECTED)

    @classmethod
    def disconnected(cls) -> ConnectionStatus:
        return cls(ConnectionState.DISCONNECTED)

    @classmethod
    def connecting(cls) -> ConnectionStatus:
        return cls(ConnectionState.CONNECTING)

    @classmethod
    def error(cls, message: str) -> ConnectionStatus:
        return cls(ConnectionState.ERROR, message)


@dataclass
class BrokerStats:
    total_messages_published: int = 0
    total_messages_received: int = 0
    active_channels: int = 0
    connection_status: ConnectionStatus = field(default_factory=ConnectionStatus)
    last_activity: int | None = None
    error_count: int = 0
    performance_metrics: dict[str, float] = field(default_factory=dict)

    def increment_published(self) -> None:
        self.total_messages_published += 1
        self._touch()

    def increment_received(self) -> None:
        self.total_messages_received += 1
        self._touch()

    def set_connection_status(self, status: ConnectionStatus) -> None:
        self.connection_status = status
        self._touch()

    def increment_error_count(self) -> None:
        self.error_count += 1

    def update_performance_metric(self, key: str, value: float) -> None:
        self.performance_metrics[key] = value

    def _touch(self) -> None:
        self.last_activity = _now()


def _running_average(current: float, total: int, latency: float) -> float:
    if total > 0:
        return (current * (total - 1.0) + latency) / total
    return latency


@dataclass
class PublisherStats:
    total_events_published: int = 0
    events_by_source: dict[str, int] = field(default_factory=dict)
    events_by_protocol: dict[str, int] = field(default_factory=dict)
    last_published_at: int | None = None
    average_publish_latency: float = 0.0
    error_count: int = 0

    def increment_events_published(self, count: int) -> None:
        self.total_events_published += count
        self.last_published_at = _now()

    def increment_source_count(self, source: str) -> None:
        self.events_by_source[source] = self.events_by_source.get(source, 0) + 1

    def increment_protocol_count(self, protocol: str) -> None:
        self.events_by_protocol[protocol] = self.events_by_protocol.get(protocol, 0) + 1

    def update_average_latency(self, latency: float) -> None:
        """Fold a latency into the running mean over published events."""
        self.average_publish_latency = _running_average(
            self.average_publish_latency, self.total_events_published, latency
        )

    def increment_error_count(self) -> None:
        self.error_count += 1


@dataclass
class SubscriberStats:
    total_events_received: int = 0
    events_by_source: dict[str, int] = field(default_factory=dict)
    events_by_protocol: dict[str, int] = field(default_factory=dict)
    last_received_at: int | None = None
    average_processing_latency: float = 0.0
    error_count: int = 0

    def increment_events_received(self, count: int) -> None:
        self.total_events_received += count
        self.last_received_at = _now()

    def increment_source_count(self, source: str) -> None:
        self.events_by_source[source] = self.events_by_source.get(source, 0) + 1

    def increment_protocol_count(self, protocol: str) -> None:
        self.events_by_protocol[protocol] = self.events_by_protocol.get(protocol, 0) + 1

    def update_average_processing_latency(self, latency: float) -> None:
        """Fold a latency into the running mean over received events."""
        self.average_processing_latency = _running_average(
            self.average_processing_latency, self.total_events_received, latency
        )

    def increment_error_count(self) -> None:
        self.error_count += 1


class RetentionKind(enum.Enum):
    KEEP_ALL = "keep_all"
    KEEP_LAST = "keep_last"
    KEEP_FOR_DURATION = "keep_for_duration"
    DELETE_AFTER_READ = "delete_after_read"


@dataclass(frozen=True)
class RetentionPolicy:
    """How long messages on a channel are retained."""

    kind: RetentionKind
    count: int | None = None
    duration_seconds: float | None = None

    @classmethod
    def keep_all(cls) -> RetentionPolicy:
        return cls(RetentionKind.KEEP_ALL)

    @classmethod
    def keep_last(cls, count: int) -> RetentionPolicy:
        return cls(RetentionKind.KEEP_LAST, count=count)

    @classmethod
    def keep_for_duration(cls, seconds: float) -> RetentionPolicy:
        return cls(RetentionKind.KEEP_FOR_DURATION, duration_seconds=seconds)

    @classmethod
    def delete_after_read(cls) -> RetentionPolicy:
        return cls(RetentionKind.DELETE_AFTER_READ)


@dataclass
class ChannelConfig:
    name: str = "mev_swaps"
    max_message_size: int = 1024 * 1024
    retention_policy: RetentionPolicy = field(default_factory=lambda: RetentionPolicy.keep_last(1000))
    compression_enabled: bool = False


class MessageReceiver(ABC):
    """Consumes raw messages from a channel."""

    @abstractmethod
    async def receive(self) -> str | None:
        """Return the next message, or None when none is available."""

    @abstractmethod
    def is_active(self) -> bool:
        """Whether the receiver still delivers messages."""


class MessageBroker(ABC):
    """Publishes and subscribes to raw messages on named channels."""

    @abstractmethod
    async def publish(self, channel: str, message: str) -> None: ...

    @abstractmethod
    async def publish_batch(self, channel: str, messages: Sequence[str]) -> None: ...

    @abstractmethod
    async def subscribe(self, channel: str) -> MessageReceiver: ...

    @abstractmethod
    async def health_check(self) -> bool: ...

    @abstractmethod
    async def get_stats(self) -> BrokerStats: ...


class EventPublisher(ABC):
    """Publishes swap events."""

    @abstractmethod
    async def publish_event(self, event: SwapEvent) -> None: ...

    @abstractmethod
    async def publish_events(self, events: Sequence[SwapEvent]) -> None: ...

    @abstractmethod
    async def get_stats(self) -> PublisherStats: ...


class EventReceiver(ABC):
    """Consumes swap events."""

    @abstractmethod
    async def receive_event(self) -> SwapEvent | None: ...

    @abstractmethod
    def is_active(self) -> bool: ...


class EventSubscriber(ABC):
    """Creates receivers for swap events."""

    @abstractmethod
    async def subscribe(self) -> EventReceiver: ...

    @abstractmethod
    async def get_stats(self) -> SubscriberStats: ...


def serialize_event(event: SwapEvent) -> str:
    """Encode a swap event as compact JSON."""
    if not isinstance(event, Mapping):
        raise TypeError("swap event must be a mapping")
    return json.dumps(dict(event), separators=(",", ":"))


def deserialize_event(text: str | bytes) -> dict[str, Any]:
    """Decode a swap event from JSON; raises ValueError if it is not an object."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"invalid event JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError("event JSON must be an object")
    return data


def event_source(event: SwapEvent) -> str:
    """Return the name of the source that produced the event."""
    try:
        return str(event["source"])
    except KeyError as exc:
        raise ValueError("event has no source") from exc


def event_protocol(event: SwapEvent) -> str:
    """Return the name of the protocol the event belongs to."""
    protocol = event.get("protocol")
    if not isinstance(protocol, Mapping) or "name" not in protocol:
        raise ValueError("event has no protocol name")
    return str(protocol["name"])