"""Configuration loading for itemsync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class ServerConfig:
    base_url: str = "http://localhost:3000"
    items_path: str = "/api/item"
    timeout_seconds: float = 10.0
    retry_max_attempts: int = 2
    retry_backoff_seconds: float = 1.0


@dataclass
class EventsConfig:
    """Configuration for the MQTT change stream."""

    enabled: bool = True
    broker: str = "localhost"
    port: int = 1883
    topic: str = "items/events"
    username: str | None = None
    keepalive_seconds: int = 60
    queue_size: int = 256


@dataclass
class StoreConfig:
    db_path: str = "~/.itemsync/items.db"


@dataclass
class SyncConfig:
    """Configuration for the reconciliation engine and resync scheduling."""

    settle_delay_ms: int = 500  # Echo suppression window after a remote call
    resync_interval_minutes: int = 15
    max_backoff_seconds: int = 3600
    refresh_on_start: bool = True
    connectivity_poll_seconds: float = 30.0  # How often `run` probes the server

    @property
    def settle_delay_seconds(self) -> float:
        return self.settle_delay_ms / 1000


@dataclass
class AuthConfig:
    token: str | None = None


@dataclass
class Config:
    server: ServerConfig = field(default_factory=ServerConfig)
    events: EventsConfig = field(default_factory=EventsConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with ITEMSYNC_ prefix."""
    return os.environ.get(f"ITEMSYNC_{key}", default)


def _as_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Server overrides
    if base_url := _get_env("SERVER_URL"):
        config.server.base_url = base_url
    if timeout := _get_env("SERVER_TIMEOUT"):
        config.server.timeout_seconds = float(timeout)
    if retries := _get_env("SERVER_RETRIES"):
        config.server.retry_max_attempts = int(retries)

    # Event stream overrides
    if events_enabled := _get_env("EVENTS_ENABLED"):
        config.events.enabled = _as_bool(events_enabled)
    if broker := _get_env("EVENTS_BROKER"):
        config.events.broker = broker
    if port := _get_env("EVENTS_PORT"):
        config.events.port = int(port)
    if topic := _get_env("EVENTS_TOPIC"):
        config.events.topic = topic
    if username := _get_env("EVENTS_USERNAME"):
        config.events.username = username

    # Store overrides
    if db_path := _get_env("DB_PATH"):
        config.store.db_path = db_path

    # Sync overrides
    if settle := _get_env("SETTLE_DELAY_MS"):
        config.sync.settle_delay_ms = int(settle)
    if interval := _get_env("RESYNC_INTERVAL"):
        config.sync.resync_interval_minutes = int(interval)
    if refresh := _get_env("REFRESH_ON_START"):
        config.sync.refresh_on_start = _as_bool(refresh)
    if poll := _get_env("CONNECTIVITY_POLL"):
        config.sync.connectivity_poll_seconds = float(poll)

    # Auth overrides
    if token := _get_env("TOKEN"):
        config.auth.token = token

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            # Parse server config
            if "server" in data:
                server_data = data["server"]
                config.server = ServerConfig(
                    base_url=server_data.get("base_url", config.server.base_url),
                    items_path=server_data.get("items_path", config.server.items_path),
                    timeout_seconds=server_data.get(
                        "timeout_seconds", config.server.timeout_seconds
                    ),
                    retry_max_attempts=server_data.get(
                        "retry_max_attempts", config.server.retry_max_attempts
                    ),
                    retry_backoff_seconds=server_data.get(
                        "retry_backoff_seconds", config.server.retry_backoff_seconds
                    ),
                )

            # Parse event stream config
            if "events" in data:
                events_data = data["events"]
                config.events = EventsConfig(
                    enabled=events_data.get("enabled", config.events.enabled),
                    broker=events_data.get("broker", config.events.broker),
                    port=events_data.get("port", config.events.port),
                    topic=events_data.get("topic", config.events.topic),
                    username=events_data.get("username"),
                    keepalive_seconds=events_data.get(
                        "keepalive_seconds", config.events.keepalive_seconds
                    ),
                    queue_size=events_data.get("queue_size", config.events.queue_size),
                )

            # Parse store config
            if "store" in data:
                config.store = StoreConfig(
                    db_path=data["store"].get("db_path", config.store.db_path)
                )

            # Parse sync config
            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    settle_delay_ms=sync_data.get(
                        "settle_delay_ms", config.sync.settle_delay_ms
                    ),
                    resync_interval_minutes=sync_data.get(
                        "resync_interval_minutes", config.sync.resync_interval_minutes
                    ),
                    max_backoff_seconds=sync_data.get(
                        "max_backoff_seconds", config.sync.max_backoff_seconds
                    ),
                    refresh_on_start=sync_data.get(
                        "refresh_on_start", config.sync.refresh_on_start
                    ),
                    connectivity_poll_seconds=sync_data.get(
                        "connectivity_poll_seconds", config.sync.connectivity_poll_seconds
                    ),
                )

            # Parse auth config
            if "auth" in data:
                config.auth = AuthConfig(token=data["auth"].get("token"))

    return _apply_env_overrides(config)
