from __future__ import annotations

import json

import pytest

from projectsync.config.settings import (
    ClientSettings,
    RelaySettings,
    load_client_settings,
    load_settings,
)

_ENV_NAMES = (
    "PROJECTSYNC_HOST",
    "PROJECTSYNC_PORT",
    "PORT",
    "PROJECTSYNC_HEARTBEAT_INTERVAL",
    "PROJECTSYNC_HEARTBEAT_TIMEOUT",
    "PROJECTSYNC_ALLOWED_ORIGINS",
    "ALLOWED_ORIGINS",
    "PROJECTSYNC_LOG_LEVEL",
    "LOG_LEVEL",
    "PROJECTSYNC_LOG_DIR",
    "LOG_DIR",
    "PROJECTSYNC_WS_URL",
    "PROJECTSYNC_RELAY_URL",
    "WEBSOCKET_SERVER_URL",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_defaults_without_config(tmp_path) -> None:
    cfg = load_settings([tmp_path / "missing.json"])
    assert cfg == RelaySettings()
    assert cfg.port == 3001
    assert cfg.heartbeat_interval == 30.0
    assert cfg.heartbeat_timeout == 60.0


def test_file_section_then_env_overrides(tmp_path, monkeypatch) -> None:
    path = tmp_path / "projectsync.json"
    path.write_text(
        json.dumps(
            {
                "relay": {
                    "host": "0.0.0.0",
                    "port": 4100,
                    "heartbeat_interval": 10,
                    "allowed_origins": ["https://a.example", "https://a.example"],
                    "log_level": "debug",
                }
            }
        ),
        encoding="utf-8",
    )
    cfg = load_settings([path])
    assert cfg.host == "0.0.0.0"
    assert cfg.port == 4100
    assert cfg.heartbeat_interval == 10.0
    assert cfg.allowed_origins == ("https://a.example",)
    assert cfg.log_level == "DEBUG"

    monkeypatch.setenv("PORT", "5000")
    monkeypatch.setenv("ALLOWED_ORIGINS", "https://b.example, https://c.example")
    monkeypatch.setenv("PROJECTSYNC_HEARTBEAT_TIMEOUT", "90")
    cfg = load_settings([path])
    assert cfg.port == 5000
    assert cfg.allowed_origins == ("https://b.example", "https://c.example")
    assert cfg.heartbeat_timeout == 90.0


def test_invalid_values_fall_back(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("PROJECTSYNC_PORT", "not-a-port")
    monkeypatch.setenv("PROJECTSYNC_HEARTBEAT_INTERVAL", "-5")
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")
    cfg = load_settings([path])
    assert cfg.port == 3001
    assert cfg.heartbeat_interval == 30.0


def test_client_settings_from_file_and_env(tmp_path, monkeypatch) -> None:
    path = tmp_path / "projectsync.json"
    path.write_text(
        json.dumps({"client": {"reconnect_interval": 1.5, "max_reconnect_attempts": 2}}),
        encoding="utf-8",
    )
    monkeypatch.setenv("WEBSOCKET_SERVER_URL", "http://relay.internal:3001/")
    cfg = load_client_settings([path])
    assert isinstance(cfg, ClientSettings)
    assert cfg.reconnect_interval == 1.5
    assert cfg.max_reconnect_attempts == 2
    assert cfg.relay_url == "http://relay.internal:3001"
    assert cfg.ws_url == "ws://localhost:3001/ws"
    assert cfg.connect_timeout == 10.0
