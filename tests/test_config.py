"""Tests for configuration loading."""

import pytest

from itemsync.config import Config, load_config


class TestLoadConfig:
    """Tests for load_config()."""

    def test_defaults(self):
        config = load_config(None)

        assert isinstance(config, Config)
        assert config.server.base_url == "http://localhost:3000"
        assert config.events.topic == "items/events"
        assert config.sync.settle_delay_ms == 500
        assert config.sync.settle_delay_seconds == 0.5
        assert config.auth.token is None

    def test_missing_file_uses_defaults(self, tmp_path):
        config = load_config(tmp_path / "nope.yaml")

        assert config.server.base_url == "http://localhost:3000"

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            """
server:
  base_url: http://api.example:8080
  retry_max_attempts: 5
events:
  enabled: false
  broker: mqtt.example
  topic: todo/changes
store:
  db_path: /tmp/items.db
sync:
  settle_delay_ms: 250
  resync_interval_minutes: 1
auth:
  token: secret
"""
        )

        config = load_config(path)

        assert config.server.base_url == "http://api.example:8080"
        assert config.server.retry_max_attempts == 5
        assert config.server.items_path == "/api/item"
        assert config.events.enabled is False
        assert config.events.broker == "mqtt.example"
        assert config.events.topic == "todo/changes"
        assert config.events.port == 1883
        assert config.store.db_path == "/tmp/items.db"
        assert config.sync.settle_delay_seconds == 0.25
        assert config.sync.resync_interval_minutes == 1
        assert config.sync.refresh_on_start is True
        assert config.sync.connectivity_poll_seconds == 30.0
        assert config.auth.token == "secret"

    def test_empty_yaml_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")

        config = load_config(path)

        assert config.server.base_url == "http://localhost:3000"

    def test_env_overrides(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text("server:\n  base_url: http://from-file\n")

        monkeypatch.setenv("ITEMSYNC_SERVER_URL", "http://from-env")
        monkeypatch.setenv("ITEMSYNC_EVENTS_ENABLED", "no")
        monkeypatch.setenv("ITEMSYNC_EVENTS_PORT", "8883")
        monkeypatch.setenv("ITEMSYNC_SETTLE_DELAY_MS", "100")
        monkeypatch.setenv("ITEMSYNC_TOKEN", "env-token")
        monkeypatch.setenv("ITEMSYNC_CONNECTIVITY_POLL", "5")

        config = load_config(path)

        assert config.server.base_url == "http://from-env"
        assert config.events.enabled is False
        assert config.events.port == 8883
        assert config.sync.settle_delay_ms == 100
        assert config.auth.token == "env-token"
        assert config.sync.connectivity_poll_seconds == 5.0
