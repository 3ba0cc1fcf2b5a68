"""In-process metrics registry with a Prometheus text exporter."""

from __future__ import annotations

import ipaddress
import logging
import socket
import threading
from collections.abc import Mapping
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

from mevrelay.infrastructure.config import MetricsConfig

logger = logging.getLogger(__name__)

_LabelKey = tuple[tuple[str, str], ...]

_WEI_PER_GWEI = 1_000_000_000.0
_WEI_PER_ETH = 1_000_000_000_000_000_000.0


def _label_key(labels: Mapping[str, object] | None) -> _LabelKey:
    if not labels:
        return ()
    return tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _format_labels(key: _LabelKey) -> str:
    if not key:
        return ""
    inner = ",".join(f'{name}="{_escape(value)}"' for name, value in key)
    return "{" + inner + "}"


def _format_number(value: float) -> str:
    if isinstance(value, int):
        return str(value)
    return repr(float(value))


class MetricsRegistry:
    """Thread-safe store of counters, gauges and histograms keyed by name and labels."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, dict[_LabelKey, int]] = {}
        self._gauges: dict[str, dict[_LabelKey, float]] = {}
        self._histograms: dict[str, dict[_LabelKey, list[float]]] = {}

    def increment(self, name: str, value: int = 1, labels: Mapping[str, object] | None = None) -> None:
        """Add a non-negative amount to a counter, creating it at zero if needed."""
        if value < 0:
            raise ValueError(f"counter '{name}' cannot be decremented")
        key = _label_key(labels)
        with self._lock:
            series = self._counters.setdefault(name, {})
            series[key] = series.get(key, 0) + int(value)

    def set_gauge(self, name: str, value: float, labels: Mapping[str, object] | None = None) -> None:
        key = _label_key(labels)
        with self._lock:
            self._gauges.setdefault(name, {})[key] = float(value)

    def observe(self, name: str, value: float, labels: Mapping[str, object] | None = None) -> None:
        key = _label_key(labels)
        with self._lock:
            self._histograms.setdefault(name, {}).setdefault(key, []).append(float(value))

    def counter_value(self, name: str, labels: Mapping[str, object] | None = None) -> int | None:
        with self._lock:
            return self._counters.get(name, {}).get(_label_key(labels))

    def gauge_value(self, name: str, labels: Mapping[str, object] | None = None) -> float | None:
        with self._lock:
            return self._gauges.get(name, {}).get(_label_key(labels))

    def histogram_values(self, name: str, labels: Mapping[str, object] | None = None) -> list[float]:
        with self._lock:
            return list(self._histograms.get(name, {}).get(_label_key(labels), []))

    def render(self) -> str:
        """Render every metric in the Prometheus text exposition format."""
        with self._lock:
            counters = {n: dict(s) for n, s in self._counters.items()}
            gauges = {n: dict(s) for n, s in self._gauges.items()}
            histograms = {n: {k: list(v) for k, v in s.items()} for n, s in self._histograms.items()}

        lines: list[str] = []
        for name in sorted(counters):
            lines.append(f"# TYPE {name} counter")
            for key, value in sorted(counters[name].items()):
                lines.append(f"{name}{_format_labels(key)} {value}")
        for name in sorted(gauges):
            lines.append(f"# TYPE {name} gauge")
            for key, value in sorted(gauges[name].items()):
                lines.append(f"{name}{_format_labels(key)} {_format_number(value)}")
        for name in sorted(histograms):
            lines.append(f"# TYPE {name} summary")
            for key, values in sorted(histograms[name].items()):
                labels = _format_labels(key)
                lines.append(f"{name}_sum{labels} {_format_number(sum(values))}")
                lines.append(f"{name}_count{labels} {len(values)}")
        return "\n".join(lines) + ("\n" if lines else "")


_default_registry = MetricsRegistry()


def _registry(registry: MetricsRegistry | None) -> MetricsRegistry:
    return _default_registry if registry is None else registry


def _make_handler(registry: MetricsRegistry) -> type[BaseHTTPRequestHandler]:
    class _MetricsHandler(BaseHTTPRequestHandler):
        def do_GET(self) -> None:  # noqa: N802
            if self.path.split("?", 1)[0] not in ("/", "/metrics"):
                self.send_error(404)
                return
            body = registry.render().encode("utf-8")
            self.send_response(200)
            self.send_header("Content-Type", "text/plain; version=0.0.4")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format: str, *args: object) -> None:
            logger.debug("metrics http: " + format, *args)

    return _MetricsHandler


class _IPv6Server(ThreadingHTTPServer):
    address_family = socket.AF_INET6


class Metrics:
    """Relay metrics bound to a registry, optionally exported over HTTP."""

    def __init__(self, config: MetricsConfig | None = None, registry: MetricsRegistry | None = None) -> None:
        self.config = config if config is not None else MetricsConfig()
        self.registry = _registry(registry)
        self._server: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None

    @property
    def address(self) -> tuple[str, int] | None:
        """The bound host and port of the exporter, or None if not running."""
        if self._server is None:
            return None
        host, port = self._server.server_address[:2]
        return str(host), int(port)

    def install(self) -> tuple[str, int] | None:
        """Start the HTTP exporter and register default metrics.

        Returns the bound address, or None when metrics are disabled.
        """
        if not self.config.enabled:
            logger.info("Metrics collection disabled")
            return None
        logger.info("Initializing metrics collection on %s:%s", self.config.host, self.config.port)
        try:
            ip = ipaddress.ip_address(self.config.host)
        except ValueError as exc:
            raise ValueError(f"Invalid metrics address: {exc}") from exc
        if not 0 <= self.config.port <= 65535:
            raise ValueError(f"Invalid metrics address: port {self.config.port} out of range")

        server_cls = _IPv6Server if ip.version == 6 else ThreadingHTTPServer
        try:
            server = server_cls((str(ip), self.config.port), _make_handler(self.registry))
        except OSError as exc:
            raise OSError(f"Failed to install Prometheus metrics: {exc}") from exc
        self._server = server
        self._thread = threading.Thread(target=server.serve_forever, name="metrics-exporter", daemon=True)
        self._thread.start()
        logger.info("Metrics collection started successfully on %s", self.address)

        self._init_default_metrics()
        return self.address

    def stop(self) -> None:
        """Stop the HTTP exporter if it is running."""
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join()
        self._server = None
        self._thread = None

    def _init_default_metrics(self) -> None:
        r = self.registry
        for name in (
            "mev_relay_events_total",
            "mev_relay_events_mempool",
            "mev_relay_events_flashbots",
            "mev_relay_events_block",
            "mev_relay_errors_total",
            "mev_relay_redis_errors",
            "mev_relay_rpc_errors",
        ):
            r.increment(name, 0)
        for name in (
            "mev_relay_uptime_seconds",
            "mev_relay_active_connections",
            "mev_relay_pending_events",
        ):
            r.set_gauge(name, 0.0)
        for name in (
            "mev_relay_event_processing_duration_seconds",
            "mev_relay_redis_publish_duration_seconds",
            "mev_relay_rpc_request_duration_seconds",
        ):
            r.observe(name, 0.0)

    def increment_events_processed(self, source: str) -> None:
        self.registry.increment("mev_relay_events_total")
        per_source = {
            "Mempool": "mev_relay_events_mempool",
            "Flashbots": "mev_relay_events_flashbots",
            "Block": "mev_relay_events_block",
        }
        self.registry.increment(per_source.get(source, "mev_relay_events_unknown"))

    def increment_errors(self, error_type: str) -> None:
        self.registry.increment("mev_relay_errors_total")
        per_type = {"redis": "mev_relay_redis_errors", "rpc": "mev_relay_rpc_errors"}
        self.registry.increment(per_type.get(error_type, "mev_relay_errors_unknown"))

    def set_uptime(self, seconds: float) -> None:
        self.registry.set_gauge("mev_relay_uptime_seconds", seconds)

    def set_active_connections(self, count: float) -> None:
        self.registry.set_gauge("mev_relay_active_connections", count)

    def set_pending_events(self, count: float) -> None:
        self.registry.set_gauge("mev_relay_pending_events", count)

    def record_event_processing_duration(self, duration: float) -> None:
        self.registry.observe("mev_relay_event_processing_duration_seconds", duration)

    def record_redis_publish_duration(self, duration: float) -> None:
        self.registry.observe("mev_relay_redis_publish_duration_seconds", duration)

    def record_rpc_request_duration(self, duration: float) -> None:
        self.registry.observe("mev_relay_rpc_request_duration_seconds", duration)

    def record_gas_price(self, gas_price: int) -> None:
        """Record a gas price given in wei, converted to gwei."""
        self.registry.observe("mev_relay_gas_price_gwei", gas_price / _WEI_PER_GWEI)

    def record_transaction_value(self, value: int) -> None:
        """Record a transaction value given in wei, converted to ETH."""
        self.registry.observe("mev_relay_transaction_value_eth", value / _WEI_PER_ETH)

    def record_protocol_events(self, protocol: str, count: int) -> None:
        self.registry.increment("mev_relay_protocol_events_total", count, {"protocol": protocol})

    def record_pool_events(self, pool_address: str, count: int) -> None:
        self.registry.increment("mev_relay_pool_events_total", count, {"pool_address": pool_address})

    def record_block_processing_duration(self, block_number: int, duration: float) -> None:
        self.registry.observe(
            "mev_relay_block_processing_duration_seconds", duration, {"block_number": block_number}
        )

    def record_mempool_size(self, size: int) -> None:
        self.registry.set_gauge("mev_relay_mempool_size", float(size))

    def record_flashbots_bundle_size(self, bundle_size: int) -> None:
        self.registry.observe("mev_relay_flashbots_bundle_size", float(bundle_size))

    def record_redis_connection_pool_size(self, pool_size: int) -> None:
        self.registry.set_gauge("mev_relay_redis_connection_pool_size", float(pool_size))

    def record_redis_connection_pool_available(self, available: int) -> None:
        self.registry.set_gauge("mev_relay_redis_connection_pool_available", float(available))

    def record_redis_connection_pool_in_use(self, in_use: int) -> None:
        self.registry.set_gauge("mev_relay_redis_connection_pool_in_use", float(in_use))

    def record_ethereum_block_height(self, block_height: int) -> None:
        self.registry.set_gauge("mev_relay_ethereum_block_height", float(block_height))

    def record_ethereum_block_timestamp(self, timestamp: int) -> None:
        self.registry.set_gauge("mev_relay_ethereum_block_timestamp", float(timestamp))

    def record_ethereum_gas_price(self, gas_price: int) -> None:
        self.registry.set_gauge("mev_relay_ethereum_gas_price_gwei", gas_price / _WEI_PER_GWEI)

    def record_ethereum_pending_transactions(self, count: int) -> None:
        self.registry.set_gauge("mev_relay_ethereum_pending_transactions", float(count))

    def record_ethereum_queued_transactions(self, count: int) -> None:
        self.registry.set_gauge("mev_relay_ethereum_queued_transactions", float(count))


_INIT_COUNTERS = (
    "mev_relay_events_total",
    "mev_relay_events_by_source",
    "mev_relay_events_by_protocol",
    "mev_relay_redis_publish_total",
    "mev_relay_redis_publish_errors",
    "mev_relay_redis_subscribe_total",
    "mev_relay_redis_subscribe_errors",
    "mev_relay_mempool_blocks_processed",
    "mev_relay_flashbots_blocks_processed",
    "mev_relay_missed_blocks_total",
    "mev_relay_subgraph_cache_hits",
    "mev_relay_subgraph_cache_misses",
    "mev_relay_subgraph_refresh_total",
    "mev_relay_subgraph_errors",
)

_INIT_GAUGES = (
    "mev_relay_active_connections",
    "mev_relay_pending_events",
    "mev_relay_current_block_height",
    "mev_relay_current_gas_price",
    "mev_relay_subgraph_tokens_cached",
    "mev_relay_subgraph_pools_cached",
    "mev_relay_subgraph_last_refresh",
)

_INIT_HISTOGRAMS = (
    "mev_relay_event_processing_duration_seconds",
    "mev_relay_redis_publish_duration_seconds",
    "mev_relay_redis_subscribe_duration_seconds",
    "mev_relay_block_processing_duration_seconds",
    "mev_relay_subgraph_query_duration_seconds",
)


def init_metrics(registry: MetricsRegistry | None = None) -> None:
    """Register every relay metric at its zero value."""
    r = _registry(registry)
    logger.info("Initializing metrics")
    for name in _INIT_COUNTERS:
        r.increment(name, 0)
    for name in _INIT_GAUGES:
        r.set_gauge(name, 0.0)
    for name in _INIT_HISTOGRAMS:
        r.observe(name, 0.0)
    logger.info("Metrics initialized successfully")


def record_event_processed(
    source: str, protocol: str, duration: float, registry: MetricsRegistry | None = None
) -> None:
    r = _registry(registry)
    r.increment("mev_relay_events_total")
    r.increment("mev_relay_events_by_source", 1, {"source": source})
    r.increment("mev_relay_events_by_protocol", 1, {"protocol": protocol})
    r.observe("mev_relay_event_processing_duration_seconds", duration)


def record_redis_publish(duration: float, success: bool, registry: MetricsRegistry | None = None) -> None:
    r = _registry(registry)
    r.increment("mev_relay_redis_publish_total" if success else "mev_relay_redis_publish_errors")
    r.observe("mev_relay_redis_publish_duration_seconds", duration)


def record_redis_subscribe(duration: float, success: bool, registry: MetricsRegistry | None = None) -> None:
    r = _registry(registry)
    r.increment("mev_relay_redis_subscribe_total" if success else "mev_relay_redis_subscribe_errors")
    r.observe("mev_relay_redis_subscribe_duration_seconds", duration)


def record_mempool_block_processed(registry: MetricsRegistry | None = None) -> None:
    _registry(registry).increment("mev_relay_mempool_blocks_processed")


def record_flashbots_block_processed(registry: MetricsRegistry | None = None) -> None:
    _registry(registry).increment("mev_relay_flashbots_blocks_processed")


def record_missed_block(registry: MetricsRegistry | None = None) -> None:
    _registry(registry).increment("mev_relay_missed_blocks_total")


def record_active_connections(count: float, registry: MetricsRegistry | None = None) -> None:
    _registry(registry).set_gauge("mev_relay_active_connections", count)


def record_pending_events(count: float, registry: MetricsRegistry | None = None) -> None:
    _registry(registry).set_gauge("mev_relay_pending_events", count)


def record_block_height(height: float, registry: MetricsRegistry | None = None) -> None:
    _registry(registry).set_gauge("mev_relay_current_block_height", height)


def record_gas_price(price: float, registry: MetricsRegistry | None = None) -> None:
    _registry(registry).set_gauge("mev_relay_current_gas_price", price)


def record_subgraph_cache_hit(registry: MetricsRegistry | None = None) -> None:
    _registry(registry).increment("mev_relay_subgraph_cache_hits")


def record_subgraph_cache_miss(registry: MetricsRegistry | None = None) -> None:
    _registry(registry).increment("mev_relay_subgraph_cache_misses")


def record_subgraph_refresh(registry: MetricsRegistry | None = None) -> None:
    _registry(registry).increment("mev_relay_subgraph_refresh_total")


def record_subgraph_error(registry: MetricsRegistry | None = None) -> None:
    _registry(registry).increment("mev_relay_subgraph_errors")


def record_subgraph_tokens_cached(count: float, registry: MetricsRegistry | None = None) -> None:
    _registry(registry).set_gauge("mev_relay_subgraph_tokens_cached", count)


def record_subgraph_pools_cached(count: float, registry: MetricsRegistry | None = None) -> None:
    _registry(registry).set_gauge("mev_relay_subgraph_pools_cached", count)


def record_subgraph_last_refresh(timestamp: float, registry: MetricsRegistry | None = None) -> None:
    _registry(registry).set_gauge("mev_relay_subgraph_last_refresh", timestamp)


def record_subgraph_query_duration(duration: float, registry: MetricsRegistry | None = None) -> None:
    _registry(registry).observe("mev_relay_subgraph_query_duration_seconds", duration)