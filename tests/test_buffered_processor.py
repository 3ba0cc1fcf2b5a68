import asyncio

import pytest

from mevrelay.messaging.buffer import BufferConfig, BufferManager, RedisBuffer
from mevrelay.messaging.buffered_processor import (
    BufferedEventProcessor,
    BufferedProcessorConfig,
    ProcessorStats,
)
from mevrelay.messaging.domain import event_protocol


def make_event(n: int, protocol: str = "Uniswap V2") -> dict:
    return {
        "id": f"evt-{n}",
        "source": "Mempool",
        "protocol": {"name": protocol, "version": "2.0", "address": "0x" + "01" * 20},
        "transaction": {
            "hash": "0x" + f"{n:064x}",
            "from": "0x" + "03" * 20,
            "to": "0x" + "04" * 20,
            "gas_price": 20000000000,
            "gas_limit": 300000,
            "gas_used": 150000,
            "nonce": 5,
            "value": 0,
        },
        "swap_details": {
            "token_in": "0x" + "06" * 20,
            "token_out": "0x" + "07" * 20,
            "amount_in": 1000000000000000000,
            "amount_out": 2000000000000000000,
            "pool_address": "0x" + "08" * 20,
            "fee_tier": 3000,
        },
        "block_info": {"number": 12345, "timestamp": 1640995200, "hash": "0x" + "09" * 32},
        "metadata": {},
    }


class FakePipeline:
    def __init__(self, client):
        self._client = client
        self._ops = []

    def lpush(self, name, value):
        self._ops.append(("lpush", name, value))

    def set(self, name, value):
        self._ops.append(("set", name, value))

    def expire(self, name, seconds):
        self._ops.append(("expire", name, seconds))

    async def execute(self):
        results = []
        for op, name, value in self._ops:
            results.append(await getattr(self._client, op)(name, value))
        return results


class FakeRedis:
    def __init__(self):
        self.lists = {}
        self.values = {}
        self.ttls = {}
        self.streams = {}

    async def llen(self, name):
        return len(self.lists.get(name, []))

    async def lpush(self, name, value):
        self.lists.setdefault(name, []).insert(0, value)
        return len(self.lists[name])

    async def rpop(self, name):
        items = self.lists.get(name)
        return items.pop() if items else None

    async def set(self, name, value):
        self.values[name] = value
        return True

    async def expire(self, name, seconds):
        self.ttls[name] = seconds
        return True

    async def get(self, name):
        return self.values.get(name)

    async def delete(self, name):
        self.lists.pop(name, None)
        return 1

    async def xadd(self, name, fields, id="*", maxlen=None, approximate=True):
        entries = self.streams.setdefault(name, [])
        entries.append(dict(fields))
        if maxlen is not None:
            del entries[:-maxlen]
        return f"{len(entries)}-0".encode()

    def pipeline(self, transaction=True):
        return FakePipeline(self)


class ProtocolFilter:
    def __init__(self, allowed):
        self.allowed = set(allowed)

    def filter_events(self, events):
        return [e for e in events if event_protocol(e) in self.allowed]


def build(config=None, event_filter=None, with_buffer=True):
    client = FakeRedis()
    manager = BufferManager(BufferConfig())
    if with_buffer:
        manager.buffers["default"] = RedisBuffer("default", client, BufferConfig())
    processor = BufferedEventProcessor(
        config or BufferedProcessorConfig(), manager, event_filter
    )
    return processor, client, manager


def test_processor_config_default():
    config = BufferedProcessorConfig()
    assert config.processing_interval == 0.1
    assert config.batch_size == 100
    assert config.max_workers == 4
    assert config.backpressure_threshold == 1000
    assert config.enable_filtering is True
    assert config.enable_caching is True
    assert config.cache_ttl_seconds == 3600


def test_processor_stats():
    stats = ProcessorStats()
    stats.increment_events_received(10)
    stats.increment_events_processed(8)
    stats.increment_events_filtered(2)
    stats.increment_errors()
    stats.update_processing_time(0.5)
    assert stats.events_received == 10
    assert stats.events_processed == 8
    assert stats.events_filtered == 2
    assert stats.errors == 1
    assert stats.processing_time == 0.5


@pytest.mark.asyncio
async def test_processor_creation():
    processor, _, _ = build(event_filter=ProtocolFilter(["Uniswap V2"]))
    assert await processor.is_running() is False


@pytest.mark.asyncio
async def test_process_event_buffers_caches_and_streams():
    processor, client, manager = build(event_filter=ProtocolFilter(["Uniswap V2"]))
    event = make_event(1)
    await processor.process_event(event)

    buffer = manager.get_buffer("default")
    assert await buffer.get_queue_size() == 1
    cached = await buffer.get_cached_event(f"event:{event['transaction']['hash']}")
    assert cached["transaction"]["hash"] == event["transaction"]["hash"]
    assert client.ttls[f"default:cache:event:{event['transaction']['hash']}"] == 3600
    assert len(client.streams["default:stream"]) == 1

    stats = await processor.get_stats()
    assert stats.events_received == 1
    assert stats.events_processed == 1
    assert stats.events_filtered == 0


@pytest.mark.asyncio
async def test_caching_disabled_skips_cache():
    config = BufferedProcessorConfig(enable_caching=False)
    processor, client, _ = build(config=config)
    await processor.process_event(make_event(1))
    assert client.values == {}
    assert len(client.lists["default"]) == 1


@pytest.mark.asyncio
async def test_filtered_event_is_not_buffered():
    processor, client, _ = build(event_filter=ProtocolFilter(["Curve"]))
    await processor.process_event(make_event(1))
    stats = await processor.get_stats()
    assert stats.events_filtered == 1
    assert stats.events_processed == 0
    assert client.lists.get("default", []) == []


@pytest.mark.asyncio
async def test_backpressure_drops_event():
    config = BufferedProcessorConfig(backpressure_threshold=1)
    processor, client, _ = build(config=config)
    await processor.process_event(make_event(1))
    await processor.process_event(make_event(2))
    stats = await processor.get_stats()
    assert stats.events_dropped == 1
    assert stats.events_processed == 1
    assert len(client.lists["default"]) == 1


@pytest.mark.asyncio
async def test_missing_default_buffer_raises():
    processor, _, _ = build(with_buffer=False)
    with pytest.raises(LookupError):
        await processor.process_event(make_event(1))


@pytest.mark.asyncio
async def test_process_events_filters_batch():
    processor, client, _ = build(event_filter=ProtocolFilter(["Uniswap V2"]))
    events = [make_event(1), make_event(2, protocol="Curve"), make_event(3)]
    await processor.process_events(events)
    stats = await processor.get_stats()
    assert stats.events_received == 3
    assert stats.events_filtered == 1
    assert stats.events_processed == 2
    assert len(client.lists["default"]) == 2
    assert len(client.streams["default:stream"]) == 2


@pytest.mark.asyncio
async def test_process_events_empty_changes_nothing():
    processor, _, _ = build()
    await processor.process_events([])
    stats = await processor.get_stats()
    assert stats.events_received == 0


@pytest.mark.asyncio
async def test_process_events_backpressure_drops_all():
    config = BufferedProcessorConfig(backpressure_threshold=0)
    processor, _, _ = build(config=config)
    await processor.process_events([make_event(1), make_event(2)])
    stats = await processor.get_stats()
    assert stats.events_dropped == 2
    assert stats.events_processed == 0


@pytest.mark.asyncio
async def test_start_drains_queue_and_stop_cancels_workers():
    config = BufferedProcessorConfig(processing_interval=0.01)
    processor, client, manager = build(config=config)
    await manager.get_buffer("default").buffer_events([make_event(1), make_event(2)])

    await processor.start()
    assert await processor.is_running() is True
    assert (await processor.get_stats()).worker_count == 2
    await asyncio.sleep(0.05)
    assert client.lists["default"] == []

    await processor.stop()
    assert await processor.is_running() is False
    stats = await processor.get_stats()
    assert stats.worker_count == 0
    assert stats.events_processed == 2