"""Configuration loading for transport-share."""

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigError


@dataclass
class DeviceConfig:
    id: str = ""  # Defaults to the hostname when empty
    name: str = "transport-share-device"


@dataclass
class StorageConfig:
    """Where the event log and its cursor sidecar live."""

    db_path: str = "~/.transport_share/events.db"
    cursor_db_path: str = "~/.transport_share/cursors.db"


@dataclass
class SyncConfig:
    """Configuration for sync sessions."""

    enabled: bool = True
    interval_seconds: int = 300
    batch_size: int = 100
    timeout_seconds: float = 30.0
    request_timeout_seconds: float = 2.0  # Per HTTP request
    retry_max_attempts: int = 5
    retry_base_seconds: float = 1.0
    retry_cap_seconds: float = 60.0


@dataclass
class ConnectivityConfig:
    """Configuration for the connectivity monitor."""

    enabled: bool = True
    probe_host: str = ""  # Empty: derive from the relay or first peer URL
    probe_port: int = 443
    check_interval_seconds: float = 30.0
    probe_timeout_seconds: float = 5.0


@dataclass
class PeerConfig:
    peer_id: str
    url: str = ""
    kind: str = "local"  # "local" or "relay"
    token: str | None = None


@dataclass
class RelayConfig:
    """Cloud relay used by peers with kind "relay"."""

    url: str = ""
    token: str | None = None


@dataclass
class DiscoveryConfig:
    """Configuration for mDNS/Zeroconf device discovery."""

    enabled: bool = True
    service_type: str = "_transportshare._tcp"
    announce: bool = True
    browse: bool = True


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8080


@dataclass
class Config:
    device: DeviceConfig = field(default_factory=DeviceConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    connectivity: ConnectivityConfig = field(default_factory=ConnectivityConfig)
    peers: list[PeerConfig] = field(default_factory=list)
    relay: RelayConfig = field(default_factory=RelayConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with TRANSPORT_SHARE_ prefix."""
    return os.environ.get(f"TRANSPORT_SHARE_{key}", default)


def _as_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    if device_id := _get_env("DEVICE_ID"):
        config.device.id = device_id
    if device_name := _get_env("DEVICE_NAME"):
        config.device.name = device_name

    if db_path := _get_env("DB_PATH"):
        config.storage.db_path = db_path
    if cursor_db_path := _get_env("CURSOR_DB_PATH"):
        config.storage.cursor_db_path = cursor_db_path

    if sync_enabled := _get_env("SYNC_ENABLED"):
        config.sync.enabled = _as_bool(sync_enabled)
    if sync_interval := _get_env("SYNC_INTERVAL"):
        config.sync.interval_seconds = int(sync_interval)
    if sync_timeout := _get_env("SYNC_TIMEOUT"):
        config.sync.timeout_seconds = float(sync_timeout)
    if request_timeout := _get_env("REQUEST_TIMEOUT"):
        config.sync.request_timeout_seconds = float(request_timeout)

    if probe_host := _get_env("PROBE_HOST"):
        config.connectivity.probe_host = probe_host
    if probe_port := _get_env("PROBE_PORT"):
        config.connectivity.probe_port = int(probe_port)

    if relay_url := _get_env("RELAY_URL"):
        config.relay.url = relay_url
    if relay_token := _get_env("RELAY_TOKEN"):
        config.relay.token = relay_token

    if discovery_enabled := _get_env("DISCOVERY_ENABLED"):
        config.discovery.enabled = _as_bool(discovery_enabled)

    if server_host := _get_env("SERVER_HOST"):
        config.server.host = server_host
    if server_port := _get_env("SERVER_PORT"):
        config.server.port = int(server_port)

    return config


def _parse_peers(data: list) -> list[PeerConfig]:
    """Parse peer configurations."""
    peers = []
    for peer_data in data:
        if "peer_id" not in peer_data:
            raise ConfigError(f"Peer entry missing peer_id: {peer_data}")
        peers.append(
            PeerConfig(
                peer_id=peer_data["peer_id"],
                url=peer_data.get("url", ""),
                kind=peer_data.get("kind", "local"),
                token=peer_data.get("token"),
            )
        )
    return peers


def _validate(config: Config) -> None:
    if config.sync.batch_size < 1:
        raise ConfigError("sync.batch_size must be at least 1")
    if config.sync.retry_max_attempts < 1:
        raise ConfigError("sync.retry_max_attempts must be at least 1")
    if config.sync.timeout_seconds <= 0:
        raise ConfigError("sync.timeout_seconds must be positive")
    if not 0 < config.sync.request_timeout_seconds <= config.sync.timeout_seconds:
        raise ConfigError(
            "sync.request_timeout_seconds must be positive and at most "
            "sync.timeout_seconds"
        )
    for peer in config.peers:
        if peer.kind not in ("local", "relay"):
            raise ConfigError(f"Peer {peer.peer_id} has unknown kind {peer.kind!r}")
        if peer.kind == "local" and not peer.url:
            raise ConfigError(f"Local peer {peer.peer_id} needs a url")
        if peer.kind == "relay" and not (peer.url or config.relay.url):
            raise ConfigError(f"Relay peer {peer.peer_id} needs relay.url")


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded and validated Config object.

    Raises:
        ConfigError: If a value is invalid.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            if "device" in data:
                device_data = data["device"]
                config.device = DeviceConfig(
                    id=device_data.get("id", config.device.id),
                    name=device_data.get("name", config.device.name),
                )

            if "storage" in data:
                storage_data = data["storage"]
                config.storage = StorageConfig(
                    db_path=storage_data.get("db_path", config.storage.db_path),
                    cursor_db_path=storage_data.get(
                        "cursor_db_path", config.storage.cursor_db_path
                    ),
                )

            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    enabled=sync_data.get("enabled", config.sync.enabled),
                    interval_seconds=sync_data.get(
                        "interval_seconds", config.sync.interval_seconds
                    ),
                    batch_size=sync_data.get("batch_size", config.sync.batch_size),
                    timeout_seconds=sync_data.get(
                        "timeout_seconds", config.sync.timeout_seconds
                    ),
                    request_timeout_seconds=sync_data.get(
                        "request_timeout_seconds",
                        config.sync.request_timeout_seconds,
                    ),
                    retry_max_attempts=sync_data.get(
                        "retry_max_attempts", config.sync.retry_max_attempts
                    ),
                    retry_base_seconds=sync_data.get(
                        "retry_base_seconds", config.sync.retry_base_seconds
                    ),
                    retry_cap_seconds=sync_data.get(
                        "retry_cap_seconds", config.sync.retry_cap_seconds
                    ),
                )

            if "connectivity" in data:
                conn_data = data["connectivity"]
                config.connectivity = ConnectivityConfig(
                    enabled=conn_data.get("enabled", config.connectivity.enabled),
                    probe_host=conn_data.get(
                        "probe_host", config.connectivity.probe_host
                    ),
                    probe_port=conn_data.get(
                        "probe_port", config.connectivity.probe_port
                    ),
                    check_interval_seconds=conn_data.get(
                        "check_interval_seconds",
                        config.connectivity.check_interval_seconds,
                    ),
                    probe_timeout_seconds=conn_data.get(
                        "probe_timeout_seconds",
                        config.connectivity.probe_timeout_seconds,
                    ),
                )

            if "peers" in data:
                config.peers = _parse_peers(data["peers"] or [])

            if "relay" in data:
                relay_data = data["relay"]
                config.relay = RelayConfig(
                    url=relay_data.get("url", config.relay.url),
                    token=relay_data.get("token"),
                )

            if "discovery" in data:
                disc_data = data["discovery"]
                config.discovery = DiscoveryConfig(
                    enabled=disc_data.get("enabled", config.discovery.enabled),
                    service_type=disc_data.get(
                        "service_type", config.discovery.service_type
                    ),
                    announce=disc_data.get("announce", config.discovery.announce),
                    browse=disc_data.get("browse", config.discovery.browse),
                )

            if "server" in data:
                server_data = data["server"]
                config.server = ServerConfig(
                    host=server_data.get("host", config.server.host),
                    port=server_data.get("port", config.server.port),
                )

    config = _apply_env_overrides(config)

    # Default device id
    if not config.device.id:
        config.device.id = socket.gethostname()

    _validate(config)
    return config
