import copy
import time

from mevrelay.infrastructure.app import AppStats


def test_app_stats():
    stats = AppStats()
    assert stats.total_events_processed == 0
    assert stats.errors_count == 0

    stats.increment_events_processed(5)
    stats.increment_source_count("Mempool", 3)
    stats.increment_protocol_count("Uniswap V2", 2)
    stats.increment_errors()

    assert stats.total_events_processed == 5
    assert stats.events_by_source["Mempool"] == 3
    assert stats.events_by_protocol["Uniswap V2"] == 2
    assert stats.errors_count == 1


def test_increment_events_sets_timestamp():
    stats = AppStats()
    assert stats.last_event_timestamp is None
    before = int(time.time())
    stats.increment_events_processed(1)
    assert before <= stats.last_event_timestamp <= int(time.time())


def test_counts_accumulate():
    stats = AppStats()
    stats.increment_source_count("Flashbots", 2)
    stats.increment_source_count("Flashbots", 4)
    stats.increment_protocol_count("SushiSwap", 1)
    stats.increment_protocol_count("SushiSwap", 1)
    assert stats.events_by_source == {"Flashbots": 6}
    assert stats.events_by_protocol == {"SushiSwap": 2}


def test_updates_replace_values():
    stats = AppStats()
    stats.update_uptime(60)
    stats.update_uptime(120)
    stats.update_monitoring_services(3)
    stats.update_publisher_status("disabled")
    assert stats.uptime_seconds == 120
    assert stats.monitoring_services_active == 3
    assert stats.publisher_status == "disabled"


def test_copy_is_independent():
    stats = AppStats()
    stats.increment_source_count("Mempool", 1)
    snapshot = copy.deepcopy(stats)
    stats.increment_source_count("Mempool", 1)
    assert snapshot.events_by_source["Mempool"] == 1
    assert stats.events_by_source["Mempool"] == 2