"""Configuration for gateways and nodes, read from a YAML or JSON file."""

from __future__ import annotations

import os
import re
import socket
from dataclasses import dataclass, field, fields
from datetime import timedelta
from fractions import Fraction
from pathlib import Path
from typing import Any

import yaml

SUPPORTED_SUFFIXES = (".yaml", ".yml", ".json")
DEFAULT_NODE_PORT = 8081

_UNIT_NANOSECONDS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_DURATION_PART = r"(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)"
_DURATION = re.compile(f"(?:{_DURATION_PART})+")
_PART = re.compile(_DURATION_PART)
_TRUE = {"1", "t", "true", "y", "yes", "on"}
_FALSE = {"0", "f", "false", "n", "no", "off", ""}
_KINDS: dict[str, type] = {"timedelta": timedelta, "bool": bool, "int": int, "str": str}


class ConfigError(Exception):
    """The configuration cannot be read or is not valid."""


def _env_or(key: str, default: str) -> str:
    value = os.environ.get(key)
    return value if value else default


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8080


@dataclass
class NodeConfig:
    id: str = field(default_factory=lambda: _env_or("NODE_ID", "node-1"))
    address: str = field(default_factory=lambda: _env_or("NODE_ADDRESS", "localhost:8081"))
    max_requests_per_minute: int = 100
    max_tokens_per_minute: int = 10000
    max_concurrent_tasks: int = 10
    max_queue_size: int = 1000
    worker_pool_size: int = 5
    heartbeat_interval: timedelta = timedelta(seconds=30)
    health_check_timeout: timedelta = timedelta(seconds=10)


@dataclass
class GatewayConfig:
    host: str = "0.0.0.0"
    port: int = 8080
    node_discovery_interval: timedelta = timedelta(seconds=60)
    load_balancing_strategy: str = "round_robin"
    circuit_breaker_enabled: bool = True
    circuit_breaker_threshold: int = 5


@dataclass
class QueueConfig:
    capacity: int = 1000
    priority_enabled: bool = True
    timeout: timedelta = timedelta(seconds=30)
    retry_attempts: int = 3
    retry_delay: timedelta = timedelta(seconds=5)


@dataclass
class LoggingConfig:
    level: str = "info"
    format: str = "json"
    output: str = "stdout"


@dataclass
class MetricsConfig:
    enabled: bool = True
    port: int = 9090
    path: str = "/metrics"


@dataclass
class Config:
    """All settings of a gateway or node."""

    server: ServerConfig = field(default_factory=ServerConfig)
    node: NodeConfig = field(default_factory=NodeConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)


_SECTIONS: dict[str, type] = {
    "server": ServerConfig,
    "node": NodeConfig,
    "gateway": GatewayConfig,
    "queue": QueueConfig,
    "logging": LoggingConfig,
    "metrics": MetricsConfig,
}


def parse_duration(value: Any) -> timedelta:
    """Parse a duration such as "30s", "1m30s" or "1.5h"; plain numbers are nanoseconds."""
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        return timedelta(microseconds=round(Fraction(value) / 1000))
    if not isinstance(value, str):
        raise ConfigError(f"invalid duration {value!r}")
    text = value.strip()
    sign = 1
    if text[:1] in ("+", "-"):
        sign = -1 if text[0] == "-" else 1
        text = text[1:]
    if text == "0":
        return timedelta(0)
    if not _DURATION.fullmatch(text):
        raise ConfigError(f"invalid duration {value!r}")
    total = sum(
        (Fraction(number) * _UNIT_NANOSECONDS[unit] for number, unit in _PART.findall(text)),
        Fraction(0),
    )
    return timedelta(microseconds=sign * round(total / 1000))


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        return int(value.strip(), 0)
    raise ValueError(f"cannot use {value!r} as an integer")


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
    raise ValueError(f"cannot use {value!r} as a boolean")


def _as_str(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return str(value)
    raise ValueError(f"cannot use {value!r} as a string")


def _field_kind(declared: Any) -> type:
    name = declared if isinstance(declared, str) else getattr(declared, "__name__", "str")
    return _KINDS.get(name, str)


def _convert(kind: type, value: Any, key: str) -> Any:
    try:
        if kind is timedelta:
            return parse_duration(value)
        if kind is bool:
            return _as_bool(value)
        if kind is int:
            return _as_int(value)
        return _as_str(value)
    except (ValueError, ConfigError) as exc:
        raise ConfigError(f"failed to unmarshal config: {key}: {exc}") from exc


def _section(name: str, cls: type, data: dict[str, Any]) -> Any:
    raw = data.get(name)
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"failed to unmarshal config: {name} must be a mapping")
    values = {str(key).lower(): value for key, value in raw.items()}
    kwargs: dict[str, Any] = {}
    for item in fields(cls):
        key = f"{name}.{item.name}"
        env_value = os.environ.get(key.upper())
        if env_value:
            value = env_value
        elif values.get(item.name) is not None:
            value = values[item.name]
        else:
            continue
        kwargs[item.name] = _convert(_field_kind(item.type), value, key)
    return cls(**kwargs)


def _validate(config: Config) -> None:
    checks = [
        (config.node.max_requests_per_minute, "max_requests_per_minute must be positive"),
        (config.node.max_tokens_per_minute, "max_tokens_per_minute must be positive"),
        (config.node.max_concurrent_tasks, "max_concurrent_tasks must be positive"),
        (config.node.max_queue_size, "max_queue_size must be positive"),
        (config.queue.capacity, "queue capacity must be positive"),
    ]
    for value, message in checks:
        if value <= 0:
            raise ConfigError(f"invalid configuration: {message}")


def load_config(path: str | os.PathLike[str]) -> Config:
    """Read a configuration file, fill in defaults and environment overrides, and validate."""
    config_path = Path(path)
    suffix = config_path.suffix.lower()
    if suffix not in SUPPORTED_SUFFIXES:
        raise ConfigError(f"failed to read config file: unsupported config type {suffix!r}")
    try:
        text = config_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"failed to read config file: {exc}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"failed to read config file: {exc}") from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError("failed to read config file: top level must be a mapping")
    lowered = {str(key).lower(): value for key, value in data.items()}
    config = Config(**{name: _section(name, cls, lowered) for name, cls in _SECTIONS.items()})
    _validate(config)
    return config


def node_id_from_env() -> str:
    """NODE_ID if set, otherwise the host name and process id."""
    node_id = os.environ.get("NODE_ID")
    if node_id:
        return node_id
    try:
        hostname = socket.gethostname() or "unknown"
    except OSError:
        hostname = "unknown"
    return f"{hostname}-{os.getpid()}"


def node_address_from_env() -> str:
    """NODE_ADDRESS if set, otherwise localhost on NODE_PORT or the default port."""
    address = os.environ.get("NODE_ADDRESS")
    if address:
        return address
    port = DEFAULT_NODE_PORT
    port_text = os.environ.get("NODE_PORT")
    if port_text:
        try:
            port = int(port_text)
        except ValueError:
            pass
    return f"localhost:{port}"