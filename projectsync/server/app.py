"""
ProjectSync relay FastAPI entrypoint.

Provides a ``create_app`` factory that configures logging, CORS, error
handlers, the websocket relay and the ingestion/diagnostics routes. The
relay runtime (registry, router, liveness monitor) is created once per app
and stored on ``app.state.relay``.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional, Sequence

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from projectsync import __version__
from projectsync.config.settings import RelaySettings, load_settings
from projectsync.logging_config import init_logging
from projectsync.server.core.errors import register_exception_handlers
from projectsync.server.core.middleware_ex import RequestContextMiddleware
from projectsync.server.core.relay import build_runtime
from projectsync.server.modules import relay_ws_api
from projectsync.server.routes import relay as relay_routes

LOGGER = logging.getLogger(__name__)
APP_VERSION = os.getenv("PROJECTSYNC_VERSION", __version__)


def _configure_logging(settings: RelaySettings) -> Path:
    log_path = init_logging(log_dir=settings.log_dir, level=settings.log_level)
    LOGGER.info(
        "Relay logging configured",
        extra={"log_path": str(log_path), "log_level": settings.log_level},
    )
    return log_path


def _resolve_cors_origins(
    settings: RelaySettings, allowed_origins: Optional[Sequence[str]]
) -> list[str]:
    origins = (
        list(allowed_origins)
        if allowed_origins is not None
        else list(settings.allowed_origins)
    )
    return list(dict.fromkeys(origins))


def create_app(
    settings: Optional[RelaySettings] = None,
    *,
    enable_cors: bool = True,
    allowed_origins: Optional[Sequence[str]] = None,
    configure_logging: bool = True,
) -> FastAPI:
    """Application factory used by both CLI launches and ASGI servers."""
    settings = settings or load_settings()
    log_path = _configure_logging(settings) if configure_logging else None

    app = FastAPI(title="ProjectSync Relay", version=APP_VERSION)
    app.state.version = APP_VERSION
    app.state.settings = settings
    app.state.log_path = log_path
    app.state.relay = build_runtime(settings)

    if enable_cors:
        origins = _resolve_cors_origins(settings, allowed_origins)
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
        LOGGER.info("CORS enabled", extra={"origins": origins})

    app.add_middleware(RequestContextMiddleware)
    register_exception_handlers(app)

    app.include_router(relay_ws_api.router)
    app.include_router(relay_routes.router)

    @app.on_event("startup")
    async def _on_startup() -> None:
        app.state.relay.monitor.start()
        LOGGER.info(
            "Relay started",
            extra={"host": settings.host, "port": settings.port},
        )

    @app.on_event("shutdown")
    async def _on_shutdown() -> None:
        runtime = app.state.relay
        await runtime.monitor.stop()
        for conn in runtime.registry.connections():
            try:
                await conn.transport.close(1001, "Server shutdown")
            except Exception as exc:
                LOGGER.debug("Close on shutdown failed for %s: %s", conn.client_id, exc)
            runtime.registry.unregister(conn.client_id)
        LOGGER.info("Relay stopped")

    return app


__all__ = ["APP_VERSION", "create_app"]
