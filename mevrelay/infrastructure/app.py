"""Application-wide statistics for the relay."""

from __future__ import annotations

import time
from dataclasses import dataclass, field


@dataclass
class AppStats:
    """Counters describing what the relay has done since it started."""

    total_events_processed: int = 0
    events_by_source: dict[str, int] = field(default_factory=dict)
    events_by_protocol: dict[str, int] = field(default_factory=dict)
    last_event_timestamp: int | None = None
    uptime_seconds: int = 0
    errors_count: int = 0
    monitoring_services_active: int = 0
    publisher_status: str = ""

    def increment_events_processed(self, count: int) -> None:
        """Add processed events and stamp the time of the latest one."""
        self.total_events_processed += count
        self.last_event_timestamp = int(time.time())

    def increment_source_count(self, source: str, count: int) -> None:
        self.events_by_source[source] = self.events_by_source.get(source, 0) + count

    def increment_protocol_count(self, protocol: str, count: int) -> None:
        self.events_by_protocol[protocol] = self.events_by_protocol.get(protocol, 0) + count

    def increment_errors(self) -> None:
        self.errors_count += 1

    def update_uptime(self, seconds: int) -> None:
        self.uptime_seconds = seconds

    def update_monitoring_services(self, count: int) -> None:
        self.monitoring_services_active = count

    def update_publisher_status(self, status: str) -> None:
        self.publisher_status = status