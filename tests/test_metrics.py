import urllib.request

import pytest

from mevrelay.infrastructure.config import MetricsConfig
from mevrelay.infrastructure.metrics import (
    Metrics,
    MetricsRegistry,
    init_metrics,
    record_event_processed,
    record_missed_block,
    record_redis_publish,
    record_redis_subscribe,
    record_subgraph_cache_hit,
    record_subgraph_tokens_cached,
)


@pytest.fixture
def registry():
    return MetricsRegistry()


def test_metrics_creation():
    metrics = Metrics(MetricsConfig(), MetricsRegistry())
    assert metrics.address is None


def test_metrics_functions(registry):
    metrics = Metrics(MetricsConfig(), registry)
    metrics.increment_events_processed("Mempool")
    metrics.increment_errors("redis")
    metrics.set_uptime(100.0)
    metrics.set_active_connections(5.0)
    metrics.record_event_processing_duration(0.1)
    metrics.record_gas_price(20_000_000_000)
    metrics.record_transaction_value(1_000_000_000_000_000_000)

    assert registry.counter_value("mev_relay_events_total") == 1
    assert registry.counter_value("mev_relay_events_mempool") == 1
    assert registry.counter_value("mev_relay_errors_total") == 1
    assert registry.counter_value("mev_relay_redis_errors") == 1
    assert registry.gauge_value("mev_relay_uptime_seconds") == 100.0
    assert registry.gauge_value("mev_relay_active_connections") == 5.0
    assert registry.histogram_values("mev_relay_event_processing_duration_seconds") == [0.1]
    assert registry.histogram_values("mev_relay_gas_price_gwei") == [20.0]
    assert registry.histogram_values("mev_relay_transaction_value_eth") == [1.0]


def test_unknown_source_and_error_type(registry):
    metrics = Metrics(MetricsConfig(), registry)
    metrics.increment_events_processed("Other")
    metrics.increment_errors("disk")
    assert registry.counter_value("mev_relay_events_unknown") == 1
    assert registry.counter_value("mev_relay_errors_unknown") == 1
    assert registry.counter_value("mev_relay_events_mempool") is None


def test_counter_labels_are_separate(registry):
    registry.increment("c", 2, {"protocol": "A"})
    registry.increment("c", 3, {"protocol": "B"})
    registry.increment("c", 1, {"protocol": "A"})
    assert registry.counter_value("c", {"protocol": "A"}) == 3
    assert registry.counter_value("c", {"protocol": "B"}) == 3
    assert registry.counter_value("c") is None


def test_counter_rejects_negative(registry):
    with pytest.raises(ValueError):
        registry.increment("c", -1)


def test_labelled_recorders(registry):
    metrics = Metrics(MetricsConfig(), registry)
    metrics.record_protocol_events("Uniswap V2", 4)
    metrics.record_pool_events("0xpool", 2)
    metrics.record_block_processing_duration(12345, 0.5)
    metrics.record_ethereum_gas_price(30_000_000_000)
    metrics.record_mempool_size(7)
    assert registry.counter_value("mev_relay_protocol_events_total", {"protocol": "Uniswap V2"}) == 4
    assert registry.counter_value("mev_relay_pool_events_total", {"pool_address": "0xpool"}) == 2
    assert registry.histogram_values(
        "mev_relay_block_processing_duration_seconds", {"block_number": "12345"}
    ) == [0.5]
    assert registry.gauge_value("mev_relay_ethereum_gas_price_gwei") == 30.0
    assert registry.gauge_value("mev_relay_mempool_size") == 7.0


def test_init_metrics_registers_zeroes(registry):
    init_metrics(registry)
    assert registry.counter_value("mev_relay_missed_blocks_total") == 0
    assert registry.gauge_value("mev_relay_current_gas_price") == 0.0
    assert registry.histogram_values("mev_relay_subgraph_query_duration_seconds") == [0.0]


def test_module_recorders(registry):
    record_event_processed("Mempool", "Uniswap V3", 0.25, registry)
    record_redis_publish(0.1, True, registry)
    record_redis_publish(0.2, False, registry)
    record_redis_subscribe(0.3, False, registry)
    record_missed_block(registry)
    record_missed_block(registry)
    record_subgraph_cache_hit(registry)
    record_subgraph_tokens_cached(42.0, registry)

    assert registry.counter_value("mev_relay_events_by_source", {"source": "Mempool"}) == 1
    assert registry.counter_value("mev_relay_events_by_protocol", {"protocol": "Uniswap V3"}) == 1
    assert registry.counter_value("mev_relay_redis_publish_total") == 1
    assert registry.counter_value("mev_relay_redis_publish_errors") == 1
    assert registry.histogram_values("mev_relay_redis_publish_duration_seconds") == [0.1, 0.2]
    assert registry.counter_value("mev_relay_redis_subscribe_errors") == 1
    assert registry.counter_value("mev_relay_missed_blocks_total") == 2
    assert registry.counter_value("mev_relay_subgraph_cache_hits") == 1
    assert registry.gauge_value("mev_relay_subgraph_tokens_cached") == 42.0


def test_render_format(registry):
    registry.increment("req_total", 3, {"source": 'a"b'})
    registry.set_gauge("temp", 1.5)
    registry.observe("latency", 1.0)
    registry.observe("latency", 2.0)
    text = registry.render()
    assert "# TYPE req_total counter" in text
    assert 'req_total{source="a\\"b"} 3' in text
    assert "temp 1.5" in text
    assert "latency_sum 3.0" in text
    assert "latency_count 2" in text


def test_install_disabled_returns_none(registry):
    metrics = Metrics(MetricsConfig(enabled=False), registry)
    assert metrics.install() is None
    assert registry.counter_value("mev_relay_events_total") is None


def test_install_invalid_host(registry):
    metrics = Metrics(MetricsConfig(host="not-an-ip", port=0), registry)
    with pytest.raises(ValueError):
        metrics.install()


def test_install_serves_metrics(registry):
    metrics = Metrics(MetricsConfig(host="127.0.0.1", port=0), registry)
    host, port = metrics.install()
    try:
        metrics.increment_events_processed("Flashbots")
        with urllib.request.urlopen(f"http://{host}:{port}/metrics", timeout=5) as response:
            body = response.read().decode()
        assert "mev_relay_events_flashbots 1" in body
        assert "mev_relay_events_total 1" in body
    finally:
        metrics.stop()
    assert metrics.address is None