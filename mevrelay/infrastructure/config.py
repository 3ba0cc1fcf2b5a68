"""Application configuration: typed sections, TOML round trips and layered loading."""

from __future__ import annotations

import logging
import os
import tomllib
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import tomli_w

logger = logging.getLogger(__name__)

ENV_PREFIX = "MEV_RELAY_"
DEFAULT_CONFIG_PATH = "config.toml"
SHARED_DEFAULTS_PATH = Path("config") / "default.toml"

_U16_MAX = 2**16 - 1
_U32_MAX = 2**32 - 1
_U64_MAX = 2**64 - 1

_TRUE_WORDS = frozenset({"true", "1", "yes", "on"})
_FALSE_WORDS = frozenset({"false", "0", "no", "off"})


class ConfigError(Exception):
    """Raised when configuration cannot be loaded, parsed or validated."""


def _bounded(maximum: int) -> dict[str, int]:
    return {"max": maximum}


@dataclass
class RedisConfig:
    url: str = "redis://localhost:6379"
    channel: str = "mev_swaps"
    pool_size: int = 10
    connection_timeout: int = 5000
    read_timeout: int = 3000


@dataclass
class EthereumConfig:
    rpc_url: str = "http://localhost:8545"
    ws_url: str = "ws://localhost:8546"
    chain_id: int = 1
    max_block_range: int = 1000
    block_timeout: int = 30000


@dataclass
class MempoolConfig:
    enabled: bool = True
    rpc_url: str = "http://localhost:8545"
    poll_interval: int = 100
    max_concurrent_requests: int = 50
    request_timeout: int = 10000
    batch_size: int = 100


@dataclass
class FlashbotsConfig:
    enabled: bool = True
    rpc_url: str = "https://relay.flashbots.net"
    poll_interval: int = 1000
    auth_header: str = ""
    max_concurrent_requests: int = 20
    request_timeout: int = 15000


@dataclass
class MetricsConfig:
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = field(default=9090, metadata=_bounded(_U16_MAX))


@dataclass
class LoggingConfig:
    level: str = "info"
    format: str = "json"
    output: str = "stdout"


def _default_pool_addresses() -> list[str]:
    return [
        # Uniswap V2 pools
        "0xB4e16d0168e52d35CaCD2c6185b44281Ec28C9Dc7",
        "0xA0b86a33E6441b8c4C8C3C8C3C8C3C8C3C8C3C8C",
        # Uniswap V3 pools
        "0x8ad599c3A0ff1De082011EFDDc58f1908eb6e6D8",
        "0x88e6A0c2dDD26FEEb64F039a2c41296FcB3f5640",
    ]


def _default_token_addresses() -> list[str]:
    return [
        "0xA0b86a33E6441b8c4C8C3C8C3C8C3C8C3C8C3C8C",
        "0x6B175474E89094C44Da98b954EedeAC495271d0F",
        "0xA0b86a33E6441b8c4C8C3C8C3C8C3C8C3C8C3C8C",
        "0xdAC17F958D2ee523a2206206994597C13D831ec7",
    ]


@dataclass
class FilteringConfig:
    enabled: bool = True
    pool_addresses: list[str] = field(default_factory=_default_pool_addresses)
    token_addresses: list[str] = field(default_factory=_default_token_addresses)
    min_liquidity_eth: float = 100.0
    min_volume_24h_eth: float = 1000.0
    exclude_contracts: list[str] = field(
        default_factory=lambda: ["0x0000000000000000000000000000000000000000"]
    )
    include_protocols: list[str] = field(
        default_factory=lambda: ["Uniswap V2", "Uniswap V3", "SushiSwap"]
    )


@dataclass
class SubgraphConfig:
    enabled: bool = True
    url: str = "http://localhost:8000"
    poll_interval: int = 60
    cache_ttl_seconds: int = 300
    max_concurrent_requests: int = 10
    request_timeout: int = 10000
    retry_attempts: int = field(default=3, metadata=_bounded(_U32_MAX))
    retry_delay_ms: int = 1000


@dataclass
class Config:
    """Complete relay configuration made of one dataclass per section."""

    redis: RedisConfig = field(default_factory=RedisConfig)
    ethereum: EthereumConfig = field(default_factory=EthereumConfig)
    mempool: MempoolConfig = field(default_factory=MempoolConfig)
    flashbots: FlashbotsConfig = field(default_factory=FlashbotsConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    filtering: FilteringConfig = field(default_factory=FilteringConfig)
    subgraph: SubgraphConfig = field(default_factory=SubgraphConfig)

    def validate(self) -> None:
        """Raise ConfigError if a required setting is missing or invalid."""
        if not self.redis.url:
            raise ConfigError("Redis URL cannot be empty")
        if not self.ethereum.rpc_url:
            raise ConfigError("Ethereum RPC URL cannot be empty")
        if self.ethereum.chain_id == 0:
            raise ConfigError("Chain ID must be greater than 0")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Config:
        """Build a Config from nested mappings; every section and field is required."""
        if not isinstance(data, Mapping):
            raise ConfigError("configuration must be a table")
        sections = {}
        for section in fields(cls):
            if section.name not in data:
                raise ConfigError(f"missing configuration section '{section.name}'")
            sections[section.name] = _section_from_dict(
                section.type_class, section.name, data[section.name]
            ) if hasattr(section, "type_class") else _section_from_dict(
                _SECTION_TYPES[section.name], section.name, data[section.name]
            )
        return cls(**sections)

    def to_toml(self) -> str:
        return tomli_w.dumps(self.to_dict())

    @classmethod
    def from_toml(cls, text: str) -> Config:
        try:
            data = tomllib.loads(text)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"invalid TOML: {exc}") from exc
        return cls.from_dict(data)


_SECTION_TYPES: dict[str, type] = {
    "redis": RedisConfig,
    "ethereum": EthereumConfig,
    "mempool": MempoolConfig,
    "flashbots": FlashbotsConfig,
    "metrics": MetricsConfig,
    "logging": LoggingConfig,
    "filtering": FilteringConfig,
    "subgraph": SubgraphConfig,
}

_FIELD_KINDS: dict[str, dict[str, str]] = {}


def _kind_of(annotation: Any) -> str:
    text = annotation if isinstance(annotation, str) else repr(annotation)
    if "list" in text:
        return "list"
    for kind in ("bool", "int", "float", "str"):
        if text == kind or getattr(annotation, "__name__", None) == kind:
            return kind
    raise TypeError(f"unsupported field type {annotation!r}")


def _field_kinds(section_cls: type) -> dict[str, str]:
    kinds = _FIELD_KINDS.get(section_cls.__name__)
    if kinds is None:
        kinds = {f.name: _kind_of(f.type) for f in fields(section_cls)}
        _FIELD_KINDS[section_cls.__name__] = kinds
    return kinds


def _check_value(kind: str, value: Any, path: str, maximum: int) -> Any:
    if kind == "bool":
        if not isinstance(value, bool):
            raise ConfigError(f"'{path}' must be a boolean")
        return value
    if kind == "int":
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"'{path}' must be an integer")
        if not 0 <= value <= maximum:
            raise ConfigError(f"'{path}' must be between 0 and {maximum}")
        return value
    if kind == "float":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(f"'{path}' must be a number")
        return float(value)
    if kind == "str":
        if not isinstance(value, str):
            raise ConfigError(f"'{path}' must be a string")
        return value
    if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"'{path}' must be a list of strings")
    return list(value)


def _section_from_dict(section_cls: type, name: str, raw: Any) -> Any:
    if not isinstance(raw, Mapping):
        raise ConfigError(f"configuration section '{name}' must be a table")
    kinds = _field_kinds(section_cls)
    values = {}
    for f in fields(section_cls):
        path = f"{name}.{f.name}"
        if f.name not in raw:
            raise ConfigError(f"missing configuration field '{path}'")
        maximum = f.metadata.get("max", _U64_MAX)
        values[f.name] = _check_value(kinds[f.name], raw[f.name], path, maximum)
    return section_cls(**values)


def _coerce_env(kind: str, text: str, path: str) -> Any:
    if kind == "bool":
        word = text.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
        raise ConfigError(f"'{path}' expects a boolean, got {text!r}")
    if kind == "int":
        try:
            return int(text.strip())
        except ValueError as exc:
            raise ConfigError(f"'{path}' expects an integer, got {text!r}") from exc
    if kind == "float":
        try:
            return float(text.strip())
        except ValueError as exc:
            raise ConfigError(f"'{path}' expects a number, got {text!r}") from exc
    if kind == "list":
        return [item.strip() for item in text.split(",") if item.strip()]
    return text


def _env_overrides(environ: Mapping[str, str]) -> dict[str, dict[str, Any]]:
    """Collect MEV_RELAY_<SECTION>_<FIELD> variables, skipping empty values."""
    overrides: dict[str, dict[str, Any]] = {}
    for key, value in environ.items():
        if not key.upper().startswith(ENV_PREFIX) or value == "":
            continue
        rest = key[len(ENV_PREFIX):].lower()
        for section_name, section_cls in _SECTION_TYPES.items():
            prefix = f"{section_name}_"
            if not rest.startswith(prefix):
                continue
            field_name = rest[len(prefix):]
            kinds = _field_kinds(section_cls)
            if field_name in kinds:
                path = f"{section_name}.{field_name}"
                overrides.setdefault(section_name, {})[field_name] = _coerce_env(
                    kinds[field_name], value, path
                )
            break
    return overrides


def _read_toml_file(path: Path) -> dict[str, Any]:
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except FileNotFoundError:
        return {}
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"cannot read {path}: {exc}") from exc


def _merge(base: dict[str, Any], overlay: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overlay.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = _merge(dict(merged[key]), value)
        else:
            merged[key] = value
    return merged


def load_config(
    path: str | os.PathLike[str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> Config:
    """Load configuration from files and the environment.

    Sources, from lowest to highest priority: the main file (``path``, else
    ``CONFIG_PATH``, else ``config.toml``), ``config/default.toml``, and
    ``MEV_RELAY_<SECTION>_<FIELD>`` environment variables. Missing files are
    skipped; the merged result must define every field.
    """
    env = os.environ if environ is None else environ
    config_path = Path(path) if path is not None else Path(env.get("CONFIG_PATH", DEFAULT_CONFIG_PATH))
    logger.info("Loading configuration from: %s", config_path)

    data: dict[str, Any] = {}
    for source in (config_path, SHARED_DEFAULTS_PATH):
        data = _merge(data, _read_toml_file(source))
    data = _merge(data, _env_overrides(env))

    config = Config.from_dict(data)
    logger.info("Configuration loaded successfully")
    return config