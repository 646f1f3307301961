from __future__ import annotations

import json
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Sequence

CONFIG_PATH = Path("config/projectsync.json")
CONFIG_CANDIDATES: tuple[Path, ...] = (CONFIG_PATH, Path("projectsync.json"))

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3001
DEFAULT_HEARTBEAT_INTERVAL = 30.0
DEFAULT_HEARTBEAT_TIMEOUT = 60.0
DEFAULT_ALLOWED_ORIGINS: tuple[str, ...] = ("http://localhost:3000",)
DEFAULT_WS_URL = "ws://localhost:3001/ws"
DEFAULT_RELAY_URL = "http://localhost:3001"
DEFAULT_RECONNECT_INTERVAL = 3.0
DEFAULT_MAX_RECONNECT_ATTEMPTS = 5
DEFAULT_CONNECT_TIMEOUT = 10.0

ENV_HOST = "PROJECTSYNC_HOST"
ENV_PORT = "PROJECTSYNC_PORT"
ENV_HEARTBEAT_INTERVAL = "PROJECTSYNC_HEARTBEAT_INTERVAL"
ENV_HEARTBEAT_TIMEOUT = "PROJECTSYNC_HEARTBEAT_TIMEOUT"
ENV_ORIGINS = "PROJECTSYNC_ALLOWED_ORIGINS"
ENV_LOG_LEVEL = "PROJECTSYNC_LOG_LEVEL"
ENV_LOG_DIR = "PROJECTSYNC_LOG_DIR"
ENV_WS_URL = "PROJECTSYNC_WS_URL"
ENV_RELAY_URL = "PROJECTSYNC_RELAY_URL"


@dataclass(frozen=True)
class RelaySettings:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL
    heartbeat_timeout: float = DEFAULT_HEARTBEAT_TIMEOUT
    allowed_origins: tuple[str, ...] = DEFAULT_ALLOWED_ORIGINS
    log_level: str = "INFO"
    log_dir: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "heartbeat_interval": self.heartbeat_interval,
            "heartbeat_timeout": self.heartbeat_timeout,
            "allowed_origins": list(self.allowed_origins),
            "log_level": self.log_level,
            "log_dir": self.log_dir,
        }


@dataclass(frozen=True)
class ClientSettings:
    ws_url: str = DEFAULT_WS_URL
    relay_url: str = DEFAULT_RELAY_URL
    reconnect_interval: float = DEFAULT_RECONNECT_INTERVAL
    max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT


def _read_json(path: Path) -> Dict[str, Any]:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except json.JSONDecodeError:
        return {}


def _load_section(name: str, candidates: Sequence[Path]) -> Dict[str, Any]:
    for path in candidates:
        payload = _read_json(path)
        section = payload.get(name) if isinstance(payload, dict) else None
        if isinstance(section, dict):
            return section
    return {}


def _as_port(value: Any, fallback: int) -> int:
    try:
        port = int(str(value).strip())
    except (TypeError, ValueError):
        return fallback
    if port <= 0 or port > 65535:
        return fallback
    return port


def _as_seconds(value: Any, fallback: float) -> float:
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return fallback
    return seconds if seconds > 0 else fallback


def _as_count(value: Any, fallback: int) -> int:
    try:
        count = int(value)
    except (TypeError, ValueError):
        return fallback
    return count if count >= 0 else fallback


def _as_origins(values: Iterable[Any] | str) -> tuple[str, ...]:
    if isinstance(values, str):
        values = values.split(",")
    origins = [str(item).strip() for item in values if str(item).strip()]
    return tuple(dict.fromkeys(origins))


def _first_env(*names: str) -> str | None:
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return None


def _apply_file(cfg: RelaySettings, section: Mapping[str, Any]) -> RelaySettings:
    updates: Dict[str, Any] = {}
    host = section.get("host")
    if isinstance(host, str) and host.strip():
        updates["host"] = host.strip()
    if "port" in section:
        updates["port"] = _as_port(section["port"], cfg.port)
    if "heartbeat_interval" in section:
        updates["heartbeat_interval"] = _as_seconds(
            section["heartbeat_interval"], cfg.heartbeat_interval
        )
    if "heartbeat_timeout" in section:
        updates["heartbeat_timeout"] = _as_seconds(
            section["heartbeat_timeout"], cfg.heartbeat_timeout
        )
    origins = section.get("allowed_origins")
    if isinstance(origins, (list, tuple, str)):
        updates["allowed_origins"] = _as_origins(origins) or cfg.allowed_origins
    level = section.get("log_level")
    if isinstance(level, str) and level.strip():
        updates["log_level"] = level.strip().upper()
    log_dir = section.get("log_dir")
    if isinstance(log_dir, str) and log_dir.strip():
        updates["log_dir"] = log_dir.strip()
    return replace(cfg, **updates) if updates else cfg


def _apply_env_overrides(cfg: RelaySettings) -> RelaySettings:
    updates: Dict[str, Any] = {}
    host = os.getenv(ENV_HOST)
    if host and host.strip():
        updates["host"] = host.strip()
    port = _first_env(ENV_PORT, "PORT")
    if port:
        updates["port"] = _as_port(port, cfg.port)
    interval = os.getenv(ENV_HEARTBEAT_INTERVAL)
    if interval:
        updates["heartbeat_interval"] = _as_seconds(interval, cfg.heartbeat_interval)
    timeout = os.getenv(ENV_HEARTBEAT_TIMEOUT)
    if timeout:
        updates["heartbeat_timeout"] = _as_seconds(timeout, cfg.heartbeat_timeout)
    origins = _first_env(ENV_ORIGINS, "ALLOWED_ORIGINS")
    if origins:
        updates["allowed_origins"] = _as_origins(origins) or cfg.allowed_origins
    level = _first_env(ENV_LOG_LEVEL, "LOG_LEVEL")
    if level:
        updates["log_level"] = level.strip().upper()
    log_dir = _first_env(ENV_LOG_DIR, "LOG_DIR")
    if log_dir:
        updates["log_dir"] = log_dir.strip()
    return replace(cfg, **updates) if updates else cfg


def load_settings(candidates: Sequence[Path] = CONFIG_CANDIDATES) -> RelaySettings:
    """Relay settings: defaults, then the ``relay`` config section, then env."""
    cfg = _apply_file(RelaySettings(), _load_section("relay", candidates))
    return _apply_env_overrides(cfg)


def load_client_settings(
    candidates: Sequence[Path] = CONFIG_CANDIDATES,
) -> ClientSettings:
    section = _load_section("client", candidates)
    cfg = ClientSettings()
    ws_url = _first_env(ENV_WS_URL) or section.get("ws_url")
    relay_url = _first_env("WEBSOCKET_SERVER_URL", ENV_RELAY_URL) or section.get(
        "relay_url"
    )
    return replace(
        cfg,
        ws_url=str(ws_url).strip() if ws_url else cfg.ws_url,
        relay_url=str(relay_url).strip().rstrip("/") if relay_url else cfg.relay_url,
        reconnect_interval=_as_seconds(
            section.get("reconnect_interval", cfg.reconnect_interval),
            cfg.reconnect_interval,
        ),
        max_reconnect_attempts=_as_count(
            section.get("max_reconnect_attempts", cfg.max_reconnect_attempts),
            cfg.max_reconnect_attempts,
        ),
        connect_timeout=_as_seconds(
            section.get("connect_timeout", cfg.connect_timeout), cfg.connect_timeout
        ),
    )


__all__ = [
    "ClientSettings",
    "RelaySettings",
    "load_client_settings",
    "load_settings",
]
