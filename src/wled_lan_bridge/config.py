"""Configuration loading for the WLED LAN bridge."""

from __future__ import annotations

import argparse
import json
import os
import re
import sys
import tomllib
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence


CONFIG_ENV_PREFIX = "WLED_BRIDGE_"
CONFIG_VERSION = 1
MIN_SUPPORTED_CONFIG_VERSION = 1

DEFAULT_BROADCAST_ADDRESSES = (
    "255.255.255.255",
    "10.0.1.255",
    "192.168.1.255",
    "192.168.0.255",
)


@dataclass(frozen=True)
class ManualDevice:
    """User-specified device that is connected without discovery."""

    host: str
    port: int = 80
    name: Optional[str] = None
    poll_interval: Optional[float] = None
    use_websockets: Optional[bool] = None
    enabled: bool = True


@dataclass(frozen=True)
class Config:
    """Application configuration."""

    poll_interval: float = 10.0
    use_websockets: bool = True
    http_timeout: float = 10.0
    reconnect_interval: float = 5.0
    reconnect_backoff_cap: int = 5
    reconnect_max_attempts: int = 10
    websocket_open_timeout: float = 10.0
    discovery_enabled: bool = True
    discovery_interval: float = 300.0
    discovery_window: float = 60.0
    discovery_probe_timeout: float = 20.0
    discovery_probe_delay: float = 2.0
    manual_probe_timeout: float = 5.0
    mdns_service_type: str = "_wled._tcp.local."
    sync_port: int = 21324
    http_port: int = 80
    broadcast_addresses: Sequence[str] = DEFAULT_BROADCAST_ADDRESSES
    manual_devices: Sequence[ManualDevice] = ()
    connect_discovered: bool = False
    metrics_port: Optional[int] = None
    log_format: str = "plain"
    log_level: str = "INFO"
    discovery_log_level: Optional[str] = None
    session_log_level: Optional[str] = None
    config_version: int = CONFIG_VERSION

    def __post_init__(self) -> None:
        _validate_config(self)

    def logging_dict(self) -> Dict[str, Any]:
        """Return a mapping suitable for structured logging."""

        manual_devices = [
            {
                "host": device.host,
                "port": device.port,
                "name": device.name,
                "poll_interval": device.poll_interval,
                "use_websockets": device.use_websockets,
                "enabled": device.enabled,
            }
            for device in self.manual_devices
        ]
        return {
            "config_version": self.config_version,
            "poll_interval": self.poll_interval,
            "use_websockets": self.use_websockets,
            "http_timeout": self.http_timeout,
            "reconnect_interval": self.reconnect_interval,
            "reconnect_backoff_cap": self.reconnect_backoff_cap,
            "reconnect_max_attempts": self.reconnect_max_attempts,
            "websocket_open_timeout": self.websocket_open_timeout,
            "discovery_enabled": self.discovery_enabled,
            "discovery_interval": self.discovery_interval,
            "discovery_window": self.discovery_window,
            "discovery_probe_timeout": self.discovery_probe_timeout,
            "discovery_probe_delay": self.discovery_probe_delay,
            "manual_probe_timeout": self.manual_probe_timeout,
            "mdns_service_type": self.mdns_service_type,
            "sync_port": self.sync_port,
            "http_port": self.http_port,
            "broadcast_addresses": list(self.broadcast_addresses),
            "manual_devices": manual_devices,
            "connect_discovered": self.connect_discovered,
            "metrics_port": self.metrics_port,
            "log_format": self.log_format,
            "log_level": self.log_level,
            "discovery_log_level": self.discovery_log_level,
            "session_log_level": self.session_log_level,
        }

    @classmethod
    def from_sources(cls, cli_args: Optional[Iterable[str]] = None) -> "Config":
        """Load configuration from defaults, file, env, and CLI (in that order)."""

        args = _parse_cli(cli_args)
        file_config = _load_file_config(
            args.config
            or _coerce_path(os.environ.get(f"{CONFIG_ENV_PREFIX}CONFIG"))
            or None
        )
        env_config = _load_env_config(CONFIG_ENV_PREFIX)
        cli_config = _cli_overrides(args)

        config = cls()
        config = _apply_mapping(config, file_config)
        config = _apply_mapping(config, env_config)
        config = _apply_mapping(config, cli_config)
        return config


def _validate_config(config: Config) -> None:
    _validate_version(config.config_version)
    _validate_range("poll_interval", config.poll_interval, 0.01, 86400.0)
    _validate_range("http_timeout", config.http_timeout, 0.1, 120.0)
    _validate_range("reconnect_interval", config.reconnect_interval, 0.0, 300.0)
    _validate_range("reconnect_backoff_cap", config.reconnect_backoff_cap, 1, 100)
    _validate_range("reconnect_max_attempts", config.reconnect_max_attempts, 0, 1000)
    _validate_range("websocket_open_timeout", config.websocket_open_timeout, 0.1, 120.0)
    _validate_range("discovery_interval", config.discovery_interval, 0.01, 86400.0)
    _validate_range("discovery_window", config.discovery_window, 0.01, 3600.0)
    _validate_range("discovery_probe_timeout", config.discovery_probe_timeout, 0.1, 300.0)
    _validate_range("discovery_probe_delay", config.discovery_probe_delay, 0.0, 60.0)
    _validate_range("manual_probe_timeout", config.manual_probe_timeout, 0.1, 300.0)
    _validate_range("sync_port", config.sync_port, 1, 65535)
    _validate_range("http_port", config.http_port, 1, 65535)
    if config.metrics_port is not None:
        _validate_range("metrics_port", config.metrics_port, 1, 65535)
    if not config.mdns_service_type.endswith(".local."):
        raise ValueError(
            f"mdns_service_type must be a fully qualified service type ending in '.local.'; "
            f"got {config.mdns_service_type}."
        )
    if config.log_format not in {"plain", "json"}:
        raise ValueError(f"log_format must be 'plain' or 'json'; got {config.log_format}.")
    for device in config.manual_devices:
        _validate_range("manual_devices.port", device.port, 1, 65535)
    for field_name, value in (
        ("log_level", config.log_level),
        ("discovery_log_level", config.discovery_log_level),
        ("session_log_level", config.session_log_level),
    ):
        _validate_log_level_value(value, field_name)


def _validate_version(version: int) -> None:
    if version < MIN_SUPPORTED_CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is too old; minimum supported is {MIN_SUPPORTED_CONFIG_VERSION}."
        )
    if version > CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is newer than supported ({CONFIG_VERSION}); please upgrade the bridge."
        )


def _validate_range(name: str, value: float, minimum: float, maximum: float) -> None:
    if value < minimum or value > maximum:
        raise ValueError(f"{name} must be between {minimum} and {maximum}; got {value}.")


def _validate_log_level_value(value: Optional[str], name: str) -> None:
    if value is None:
        return
    allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if value.upper() not in allowed:
        raise ValueError(f"{name} must be one of {sorted(allowed)}; got {value}.")


def _parse_cli(cli_args: Optional[Iterable[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="wled-lan-bridge",
        description="Discover WLED controllers and keep their state in sync.",
    )
    levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    parser.add_argument("--config", type=Path, help="Path to TOML config file.")
    parser.add_argument(
        "--poll-interval",
        type=float,
        help="Seconds between state polls when the push channel is unavailable.",
    )
    parser.add_argument(
        "--no-websockets",
        action="store_true",
        help="Disable the push channel and poll device state instead.",
    )
    parser.add_argument(
        "--http-timeout",
        type=float,
        help="Seconds to wait for device HTTP requests.",
    )
    parser.add_argument(
        "--reconnect-interval",
        type=float,
        help="Base delay in seconds between push channel reconnect attempts.",
    )
    parser.add_argument(
        "--reconnect-max-attempts",
        type=int,
        help="Reconnect attempts before falling back to polling.",
    )
    parser.add_argument(
        "--no-discovery",
        action="store_true",
        help="Disable network discovery.",
    )
    parser.add_argument(
        "--discovery-interval",
        type=float,
        help="Seconds between discovery runs.",
    )
    parser.add_argument(
        "--discovery-window",
        type=float,
        help="Seconds each discovery run keeps its scanners open.",
    )
    parser.add_argument(
        "--discovery-probe-timeout",
        type=float,
        help="Seconds to wait for a candidate to answer its identity probe.",
    )
    parser.add_argument(
        "--discovery-probe-delay",
        type=float,
        help="Seconds to wait between candidate probes.",
    )
    parser.add_argument(
        "--mdns-service-type",
        type=str,
        help="mDNS service type browsed for advertisements.",
    )
    parser.add_argument(
        "--sync-port",
        type=int,
        help="UDP sync port used for broadcast presence probing.",
    )
    parser.add_argument(
        "--broadcast-address",
        action="append",
        dest="broadcast_addresses",
        help="Broadcast address to probe (repeatable; replaces the defaults).",
    )
    parser.add_argument(
        "--device",
        action="append",
        dest="manual_devices",
        help="Connect to a device directly as host=<host>,port=<port>,name=<name>.",
    )
    parser.add_argument(
        "--connect-discovered",
        action="store_true",
        help="Open a session for every discovered device.",
    )
    parser.add_argument(
        "--metrics-port",
        type=int,
        help="Expose Prometheus metrics on this port.",
    )
    parser.add_argument(
        "--log-format",
        choices=["plain", "json"],
        help="Structured logging format.",
    )
    parser.add_argument("--log-level", choices=levels, help="Log verbosity level.")
    parser.add_argument(
        "--discovery-log-level",
        choices=levels,
        help="Log verbosity for discovery.",
    )
    parser.add_argument(
        "--session-log-level",
        choices=levels,
        help="Log verbosity for device sessions.",
    )
    parser.add_argument(
        "--config-version",
        type=int,
        help="Version of the configuration schema being supplied.",
    )
    return parser.parse_args(args=cli_args)


def _load_file_config(path: Optional[Path]) -> Dict[str, Any]:
    if path is None:
        return {}
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with path.open("rb") as f:
        parsed = tomllib.load(f)
    if not isinstance(parsed, Mapping):
        raise ValueError("Configuration file must contain a TOML table.")
    return {k.replace("-", "_"): v for k, v in parsed.items()}


def _load_env_config(prefix: str) -> Dict[str, Any]:
    mapping: Dict[str, Any] = {}
    for field in Config.__dataclass_fields__:
        env_key = f"{prefix}{field}".upper()
        if env_key in os.environ:
            mapping[field] = os.environ[env_key]
    return mapping


def _cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    mapping = {
        k: v
        for k, v in vars(args).items()
        if k not in ("config", "no_websockets", "no_discovery", "connect_discovered")
        and v is not None
    }
    if args.no_websockets:
        mapping["use_websockets"] = False
    if args.no_discovery:
        mapping["discovery_enabled"] = False
    if args.connect_discovered:
        mapping["connect_discovered"] = True
    return mapping


_INT_FIELDS = {
    "reconnect_backoff_cap",
    "reconnect_max_attempts",
    "sync_port",
    "http_port",
    "metrics_port",
    "config_version",
}
_FLOAT_FIELDS = {
    "poll_interval",
    "http_timeout",
    "reconnect_interval",
    "websocket_open_timeout",
    "discovery_interval",
    "discovery_window",
    "discovery_probe_timeout",
    "discovery_probe_delay",
    "manual_probe_timeout",
}
_BOOL_FIELDS = {"use_websockets", "discovery_enabled", "connect_discovered"}
_LEVEL_FIELDS = {"log_level", "discovery_log_level", "session_log_level"}


def _apply_mapping(config: Config, overrides: Mapping[str, Any]) -> Config:
    data: MutableMapping[str, Any] = {}
    for key, value in overrides.items():
        if value is None:
            continue
        if key in _INT_FIELDS:
            data[key] = int(value)
        elif key in _FLOAT_FIELDS:
            data[key] = float(value)
        elif key in _BOOL_FIELDS:
            data[key] = _coerce_bool(value)
        elif key in _LEVEL_FIELDS:
            data[key] = str(value).upper()
        elif key == "log_format":
            data[key] = str(value).lower()
        elif key == "broadcast_addresses":
            data[key] = _coerce_addresses(value)
        elif key == "manual_devices":
            data[key] = _coerce_manual_devices(value)
        else:
            data[key] = value
    return replace(config, **data)


def _coerce_path(value: Any) -> Optional[Path]:
    if value is None:
        return None
    return value if isinstance(value, Path) else Path(str(value)).expanduser()


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _coerce_addresses(value: Any) -> Sequence[str]:
    if isinstance(value, str):
        return tuple(part.strip() for part in value.split(",") if part.strip())
    return tuple(str(item) for item in value)


def _coerce_manual_devices(value: Any) -> Sequence[ManualDevice]:
    if value is None:
        return ()
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return (_manual_from_str(value),)
        return _coerce_manual_devices(parsed)

    if isinstance(value, ManualDevice):
        return (value,)
    if isinstance(value, Mapping):
        return (_manual_from_mapping(value),)

    if isinstance(value, Iterable):
        devices: List[ManualDevice] = []
        for item in value:
            if isinstance(item, ManualDevice):
                devices.append(item)
            elif isinstance(item, Mapping):
                devices.append(_manual_from_mapping(item))
            elif isinstance(item, str):
                devices.extend(_coerce_manual_devices(item))
            else:
                raise ValueError("Unsupported manual device entry")
        return tuple(devices)

    raise ValueError("Unsupported manual_devices configuration")


def _manual_from_mapping(value: Mapping[str, Any]) -> ManualDevice:
    if not value.get("host"):
        raise ValueError("Manual devices require a 'host' field")
    poll_interval = value.get("poll_interval", value.get("pollInterval"))
    use_websockets = value.get("use_websockets", value.get("useWebSockets"))
    return ManualDevice(
        host=str(value["host"]),
        port=int(value.get("port") or 80),
        name=str(value["name"]) if value.get("name") is not None else None,
        poll_interval=float(poll_interval) if poll_interval is not None else None,
        use_websockets=_coerce_bool(use_websockets) if use_websockets is not None else None,
        enabled=_coerce_bool(value.get("enabled", True)),
    )


_PAIR = re.compile(r"(?P<key>[^=]+)=(?P<value>.+)")


def _manual_from_str(value: str) -> ManualDevice:
    parts = [part.strip() for part in value.split(",") if part.strip()]
    mapping: Dict[str, Any] = {}
    for part in parts:
        match = _PAIR.match(part)
        if not match:
            if not mapping and ":" in part:
                host, _, port = part.rpartition(":")
                mapping.update(host=host, port=port)
                continue
            if not mapping:
                mapping["host"] = part
                continue
            raise ValueError(
                "Manual device arguments must be key=value pairs separated by commas"
            )
        mapping[match.group("key").strip()] = match.group("value").strip()
    return _manual_from_mapping(mapping)


def load_config(cli_args: Optional[Iterable[str]] = None) -> Config:
    """Public helper used by the entrypoint."""

    try:
        return Config.from_sources(cli_args)
    except Exception as exc:  # pragma: no cover
        print(f"Failed to load configuration: {exc}", file=sys.stderr)
        raise
