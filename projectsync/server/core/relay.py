from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from fastapi import Request, WebSocket

from projectsync.config.settings import RelaySettings
from projectsync.realtime import BroadcastRouter, ConnectionRegistry, LivenessMonitor

LOGGER = logging.getLogger(__name__)


@dataclass
class RelayRuntime:
    """Process-wide relay state, built once by ``create_app``."""

    registry: ConnectionRegistry
    router: BroadcastRouter
    monitor: LivenessMonitor
    started_at: float = field(default_factory=time.time)

    @property
    def uptime(self) -> float:
        return max(0.0, time.time() - self.started_at)

    def health(self) -> dict[str, Any]:
        return {
            "status": "healthy",
            "timestamp": int(time.time() * 1000),
            "clients": len(self.registry),
            "projects": len(self.registry.room_ids()),
            "uptime": round(self.uptime, 3),
        }


def build_runtime(settings: RelaySettings) -> RelayRuntime:
    registry = ConnectionRegistry()
    router = BroadcastRouter(registry)
    monitor = LivenessMonitor(
        router,
        interval=settings.heartbeat_interval,
        timeout=settings.heartbeat_timeout,
    )
    return RelayRuntime(registry=registry, router=router, monitor=monitor)


def get_runtime(request: Request) -> RelayRuntime:
    return request.app.state.relay


def get_ws_runtime(websocket: WebSocket) -> RelayRuntime:
    return websocket.app.state.relay


__all__ = ["RelayRuntime", "build_runtime", "get_runtime", "get_ws_runtime"]
