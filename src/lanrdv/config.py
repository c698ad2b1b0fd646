from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .constants import (
    DEFAULT_ACK_TIMEOUT_MS,
    DEFAULT_BROADCAST_ADDRESS,
    DEFAULT_BROADCAST_PORT,
    DEFAULT_DISCONNECT_TIMEOUT_MS,
    DEFAULT_DISCOVER_INTERVAL_MS,
    DEFAULT_KEEPALIVE_INTERVAL_MS,
    DEFAULT_MONITOR_INTERVAL_MS,
)


class ConfigError(ValueError):
    pass


def _check_port(name: str, value: int, allow_zero: bool = True) -> None:
    low = 0 if allow_zero else 1
    if not isinstance(value, int) or not low <= value <= 65535:
        raise ConfigError(f"{name} out of range: {value!r}")


def _check_positive(name: str, value: int) -> None:
    if not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"{name} must be positive: {value!r}")


@dataclass(frozen=True, slots=True)
class ClientConfig:
    local_port: int = 0
    broadcast_port: int = DEFAULT_BROADCAST_PORT
    broadcast_address: str = DEFAULT_BROADCAST_ADDRESS
    discover_interval_ms: int = DEFAULT_DISCOVER_INTERVAL_MS
    keepalive_interval_ms: int = DEFAULT_KEEPALIVE_INTERVAL_MS
    ack_timeout_ms: int = DEFAULT_ACK_TIMEOUT_MS
    payload: dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        _check_port("local_port", self.local_port)
        _check_port("broadcast_port", self.broadcast_port, allow_zero=False)
        if not self.broadcast_address:
            raise ConfigError("broadcast_address is empty")
        _check_positive("discover_interval_ms", self.discover_interval_ms)
        _check_positive("keepalive_interval_ms", self.keepalive_interval_ms)
        _check_positive("ack_timeout_ms", self.ack_timeout_ms)
        if not isinstance(self.payload, dict):
            raise ConfigError(f"payload must be a dict, got {type(self.payload).__name__}")


@dataclass(frozen=True, slots=True)
class ServerConfig:
    listen_port: int = DEFAULT_BROADCAST_PORT
    listen_host: str = "0.0.0.0"
    monitor_interval_ms: int = DEFAULT_MONITOR_INTERVAL_MS
    disconnect_timeout_ms: int = DEFAULT_DISCONNECT_TIMEOUT_MS

    def validate(self) -> None:
        _check_port("listen_port", self.listen_port)
        _check_positive("monitor_interval_ms", self.monitor_interval_ms)
        _check_positive("disconnect_timeout_ms", self.disconnect_timeout_ms)
