# mevrelay

Building blocks for a relay that moves swap events through Redis: typed
configuration, a shutdown signal, logging setup, an in-process metrics
registry with a Prometheus text exporter, application statistics, and
Redis-backed buffering, publishing and subscribing.

Network work (Redis) is asynchronous; everything else is plain Python
objects. A swap event is any mapping that can be encoded as JSON; the
messaging code reads its `source`, its `protocol.name` and, for caching,
its `transaction.hash`.

## Installation

Python 3.11 or later. Runtime dependencies are `redis` and `tomli-w`; the
`test` extra adds `pytest` and `pytest-asyncio`.

## Configuration

`mevrelay.infrastructure.config.Config` holds one dataclass per section:
`RedisConfig`, `EthereumConfig`, `MempoolConfig`, `FlashbotsConfig`,
`MetricsConfig`, `LoggingConfig`, `FilteringConfig` and `SubgraphConfig`,
each with defaults.

```python
from mevrelay.infrastructure.config import Config, ConfigError

config = Config()
config.validate()                 # raises ConfigError on bad settings

text = config.to_toml()
same = Config.from_toml(text)
assert same.redis.channel == "mev_swaps"
```

`validate()` raises `ConfigError` when the Redis URL or the Ethereum RPC URL
is empty, or when the chain id is zero. `from_dict` and `from_toml` require
every section and every field, check their types, and raise `ConfigError`
otherwise.

`load_config(path=None, environ=None)` merges, from lowest to highest
priority: the main TOML file (`path`, else the `CONFIG_PATH` variable, else
`config.toml`), `config/default.toml`, and environment variables named
`MEV_RELAY_<SECTION>_<FIELD>` (empty values are ignored, lists are
comma-separated). Missing files are skipped, but the merged result must
define every field; defaults are not filled in.

## Shutdown

```python
import asyncio
from mevrelay.infrastructure.shutdown import ShutdownSignal

async def worker(signal: ShutdownSignal) -> None:
    await signal.wait()
    print("stopping")

async def main() -> None:
    signal = ShutdownSignal()
    task = asyncio.create_task(worker(signal))
    await asyncio.sleep(0.01)
    signal.shutdown()
    await task

asyncio.run(main())
```

`subscribe()` returns an `asyncio.Event` that is set on shutdown, and
`is_set()` tells whether shutdown was requested.

## Logging

`mevrelay.infrastructure.logconfig.Logging(config, environ)` configures the
`mevrelay` logger from a `LoggingConfig`: `format` is `json` or anything else
for plain text, `output` is `stdout`, `stderr` or a file path. `init()`
installs the handler and returns the logger; the `LOG_LEVEL` environment
variable, when valid, overrides the configured level. `set_level()` and
`parse_level()` accept `error`, `warn`, `info`, `debug`, `trace` or the
numbers 1 to 5, and raise `ValueError` for anything else.

## Metrics

Counters, gauges and histograms live in a
`mevrelay.infrastructure.metrics.MetricsRegistry`, which renders its contents
in the Prometheus text format. The module-level helpers (`init_metrics`,
`record_event_processed`, `record_redis_publish`, `record_missed_block`,
`record_subgraph_cache_hit` and the rest) record the relay's standard metrics
into the given registry, or into a shared default one.

```python
from mevrelay.infrastructure.metrics import (
    MetricsRegistry,
    init_metrics,
    record_missed_block,
)

registry = MetricsRegistry()
init_metrics(registry)
record_missed_block(registry)
print(registry.counter_value("mev_relay_missed_blocks_total"))  # 1
print(registry.render())
```

`Metrics(config, registry)` offers the same kind of recording as methods,
converting gas prices from wei to gwei and transaction values from wei to
ether. `install()` starts an HTTP exporter on the configured host and port,
serving the registry at `/` and `/metrics`, and returns the bound address
(or `None` when metrics are disabled); `stop()` shuts it down.

## Application statistics

`mevrelay.infrastructure.app.AppStats` counts processed events, per source
and per protocol, errors, uptime, active monitoring services and the
publisher's status.

## Messaging

- `mevrelay.messaging.domain` defines the broker, publisher and subscriber
  interfaces, `BrokerStats`, `PublisherStats` (with a running mean latency),
  `SubscriberStats`, `ConnectionStatus`, `RetentionPolicy`, `ChannelConfig`,
  and the JSON helpers `serialize_event` and `deserialize_event`.
- `mevrelay.messaging.redis_broker.RedisPublisher.connect(config)` opens and
  pings a Redis client, then publishes events as JSON to the configured
  channel, singly or as a pipelined batch, and keeps `BrokerStats`. It is an
  async context manager that closes the client. `subscribe(channel)` returns
  a `RedisMessageReceiver` whose `receive()` waits up to the read timeout for
  the next message.
- `mevrelay.messaging.buffer.RedisBuffer.connect(url, queue_name, config)`
  queues events in a Redis list (oldest popped first), appends them to a
  capped stream, and caches them under keys with a time to live. A full queue
  drops events: `buffer_event` returns `False`, `buffer_events` returns how
  many were queued. Redis failures raise `BufferError`. `BufferManager` holds
  buffers by name.
- `mevrelay.messaging.buffered_processor.BufferedEventProcessor` filters
  incoming events with any object that has `filter_events(events)`, drops them
  when the `default` buffer's queue reaches the backpressure threshold, and
  otherwise buffers, caches and streams them; it raises `LookupError` when
  there is no `default` buffer. `start()` runs a loop draining that buffer and
  a buffer health monitor; `stop()` cancels both.
- `mevrelay.messaging.publisher.EventPublisherService` drains an async
  iterable of events, checks each has a source and protocol name, publishes
  it (through a `RedisPublisher` connected on start unless one is given), and
  keeps `PublisherStats`.
- `mevrelay.messaging.subscriber.EventSubscriberService` hands out
  `EventReceiverImpl` receivers over a broker's channel; they decode events
  and keep shared `SubscriberStats`.

## What the package does not do

There is no command to run a relay, no process that watches the mempool or
Flashbots for swaps, and no health-check service; the package provides the
pieces such a program would be assembled from.

## Tests

The test suite uses pytest with pytest-asyncio; the `test` extra installs
both.